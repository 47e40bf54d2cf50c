from __future__ import annotations

import logging
from typing import Any

from flemma.model import Message, Prompt, Role, Signature, Text, Thinking
from flemma.tools.ids import normalize_tool_id

from .base import (
    ORPHAN_RESULT_MESSAGE,
    PendingToolCall,
    ProviderAdapter,
    RequestContext,
    StreamCallbacks,
    UsageType,
    extract_error_message,
)

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"
MIN_THINKING_BUDGET = 1024


class AnthropicAdapter(ProviderAdapter):
    name = "anthropic"
    env_var = "ANTHROPIC_API_KEY"

    def endpoint(self) -> str:
        return self.settings.endpoint or DEFAULT_ENDPOINT

    def headers(self, api_key: str | None) -> dict[str, str]:
        return {
            "x-api-key": api_key or "",
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    def _cache_control(self) -> dict[str, str] | None:
        retention = self.settings.cache_retention
        if retention == "short":
            return {"type": "ephemeral"}
        if retention == "long":
            return {"type": "ephemeral", "ttl": "1h"}
        return None

    def _user_content(self, msg: Message) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        for result in self.resolved_results(msg):
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": normalize_tool_id(result.tool_use_id),
                "content": self._decode(result).text,
            }
            if result.is_error:
                block["is_error"] = True
            blocks.append(block)
        text = msg.text()
        if text.strip():
            blocks.append({"type": "text", "text": text})
        return blocks

    def _assistant_content(self, msg: Message) -> list[dict[str, Any]]:
        blocks: list[dict[str, Any]] = []
        for seg in msg.segments:
            if not isinstance(seg, Thinking):
                continue
            if seg.redacted:
                blocks.append({"type": "redacted_thinking", "data": seg.content})
            elif seg.signature is not None and seg.signature.provider == self.name:
                blocks.append({"type": "thinking", "thinking": seg.content, "signature": seg.signature.value})

        text = msg.text().strip()
        if text:
            blocks.append({"type": "text", "text": text})

        for use in msg.tool_uses():
            blocks.append(
                {"type": "tool_use", "id": normalize_tool_id(use.id), "name": use.name, "input": dict(use.input)}
            )
        return blocks

    def build_request(self, prompt: Prompt, context: RequestContext | None = None) -> dict[str, Any]:
        self.request_diagnostics = []
        cache_control = self._cache_control()

        messages: list[dict[str, Any]] = []
        for msg in self.turn_messages(prompt):
            content = self._user_content(msg) if msg.role is Role.USER else self._assistant_content(msg)
            if content:
                messages.append({"role": msg.role.value, "content": content})

        orphans = self.orphans(prompt)
        if orphans:
            synthetic = [
                {
                    "type": "tool_result",
                    "tool_use_id": normalize_tool_id(call.id),
                    "content": ORPHAN_RESULT_MESSAGE,
                    "is_error": True,
                }
                for call in orphans
            ]
            logger.info("orphan_tool_results_synthesized", extra={"provider": self.name, "count": len(orphans)})
            if messages and messages[-1]["role"] == "user":
                content = messages[-1]["content"]
                at = sum(1 for b in content if b["type"] == "tool_result")
                content[at:at] = synthetic
            else:
                messages.append({"role": "user", "content": synthetic})

        if cache_control is not None:
            for msg in reversed(messages):
                if msg["role"] == "user":
                    msg["content"][-1]["cache_control"] = dict(cache_control)
                    break

        body: dict[str, Any] = {
            "model": self.settings.model,
            "messages": messages,
            "max_tokens": self.settings.max_tokens,
            "stream": True,
        }
        if self.settings.temperature is not None:
            body["temperature"] = self.settings.temperature

        system = prompt.system
        if system:
            if cache_control is not None:
                body["system"] = [{"type": "text", "text": system, "cache_control": dict(cache_control)}]
            else:
                body["system"] = system

        tools = self.tools.export_all()
        if tools:
            if cache_control is not None:
                tools[-1]["cache_control"] = dict(cache_control)
            body["tools"] = tools
            body["tool_choice"] = {"type": "auto"}

        budget = self.settings.thinking_budget
        if budget is not None and budget >= MIN_THINKING_BUDGET:
            body["thinking"] = {"type": "enabled", "budget_tokens": budget}
            body.pop("temperature", None)
        elif budget:
            logger.warning(
                "thinking_budget_too_small",
                extra={"provider": self.name, "budget": budget, "minimum": MIN_THINKING_BUDGET},
            )
        return body

    # -- streaming ----------------------------------------------------------

    def _reset_stream(self) -> None:
        self._tool_blocks: dict[int, PendingToolCall] = {}
        self._thinking: list[str] = []
        self._signature = ""
        self._redacted: list[str] = []

    def handle_event(self, data: Any, callbacks: StreamCallbacks) -> None:
        if not isinstance(data, dict):
            return
        event = data.get("type")

        if event == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            self.emit_usage(callbacks, UsageType.INPUT, usage.get("input_tokens"))
            self.emit_usage(callbacks, UsageType.CACHE_READ, usage.get("cache_read_input_tokens"))
            self.emit_usage(callbacks, UsageType.CACHE_CREATION, usage.get("cache_creation_input_tokens"))

        usage = data.get("usage")
        if isinstance(usage, dict) and "output_tokens" in usage:
            self.emit_usage(callbacks, UsageType.OUTPUT, usage.get("output_tokens"))

        if event == "content_block_start":
            block = data.get("content_block") or {}
            kind = block.get("type")
            if kind == "tool_use":
                self._tool_blocks[data.get("index", 0)] = PendingToolCall(id=block["id"], name=block["name"])
            elif kind == "redacted_thinking":
                self._redacted.append(block.get("data", ""))
            elif kind == "thinking" and block.get("thinking"):
                self._thinking.append(block["thinking"])
            elif kind == "text" and block.get("text"):
                callbacks.on_content(Text(block["text"]))

        elif event == "content_block_delta":
            delta = data.get("delta") or {}
            kind = delta.get("type")
            if kind == "text_delta":
                if delta.get("text"):
                    callbacks.on_content(Text(delta["text"]))
            elif kind == "input_json_delta":
                pending = self._tool_blocks.get(data.get("index", 0))
                if pending is not None:
                    pending.chunks.append(delta.get("partial_json", ""))
            elif kind == "thinking_delta":
                self._thinking.append(delta.get("thinking", ""))
            elif kind == "signature_delta":
                self._signature += delta.get("signature", "")

        elif event == "content_block_stop":
            pending = self._tool_blocks.pop(data.get("index", 0), None)
            if pending is not None:
                self.emit_tool_use(callbacks, pending.id, pending.name, pending.arguments)

        elif event == "message_stop":
            for index in sorted(self._tool_blocks):
                pending = self._tool_blocks[index]
                self.emit_tool_use(callbacks, pending.id, pending.name, pending.arguments)
            self._tool_blocks.clear()
            self._flush_thinking(callbacks)
            self.complete(callbacks)

        elif event == "error":
            self.emit_error(callbacks, extract_error_message(data) or "Unknown Anthropic error")

    def _flush_thinking(self, callbacks: StreamCallbacks) -> None:
        text = "".join(self._thinking).strip()
        if text or self._signature:
            signature = Signature(value=self._signature, provider=self.name) if self._signature else None
            callbacks.on_content(Thinking(content=text, signature=signature))
        for data in self._redacted:
            callbacks.on_content(Thinking(content=data, redacted=True))
        self._thinking = []
        self._signature = ""
        self._redacted = []


__all__ = ["AnthropicAdapter", "API_VERSION", "DEFAULT_ENDPOINT"]
