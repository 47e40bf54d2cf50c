from __future__ import annotations

import json
import logging
from typing import Any

from flemma.model import Message, Prompt, Role, Text, Thinking, ToolUse
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

DEFAULT_ENDPOINT = "https://api.openai.com/v1/responses"
ERROR_PREFIX = "Error: "
ERROR_FALLBACK = "Tool execution failed"


class OpenAIAdapter(ProviderAdapter):
    """Responses API adapter.

    The Responses API takes a flat `input` list: tool calls and their outputs
    are top-level items rather than blocks nested in messages.
    """

    name = "openai"
    env_var = "OPENAI_API_KEY"

    def endpoint(self) -> str:
        return self.settings.endpoint or DEFAULT_ENDPOINT

    def headers(self, api_key: str | None) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key or ''}", "Content-Type": "application/json"}

    def _output_item(self, call_id: str, content: str, is_error: bool) -> dict[str, Any]:
        # No is_error field on this API; the prefix carries the error semantics.
        if is_error:
            content = ERROR_PREFIX + (content or ERROR_FALLBACK)
        return {"type": "function_call_output", "call_id": normalize_tool_id(call_id), "output": content}

    def _user_items(self, msg: Message) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        outputs = [
            self._output_item(r.tool_use_id, self._decode(r).text, r.is_error) for r in self.resolved_results(msg)
        ]
        parts = [
            {"type": "input_text", "text": seg.content}
            for seg in msg.segments
            if isinstance(seg, Text) and seg.content.strip()
        ]
        message = [{"role": "user", "content": parts}] if parts else []
        return outputs, message

    def _assistant_items(self, msg: Message) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        text: list[str] = []
        for seg in msg.segments:
            if isinstance(seg, Text):
                text.append(seg.content)
            elif isinstance(seg, ToolUse):
                pending = "".join(text)
                text = []
                if pending:
                    items.append({"role": "assistant", "content": pending})
                items.append(
                    {
                        "type": "function_call",
                        "call_id": normalize_tool_id(seg.id),
                        "name": seg.name,
                        "arguments": json.dumps(seg.input, ensure_ascii=False),
                    }
                )
        trailing = "".join(text)
        if trailing:
            items.append(
                {
                    "type": "message",
                    "role": "assistant",
                    "content": [{"type": "output_text", "text": trailing, "annotations": []}],
                    "status": "completed",
                }
            )
        return items

    def build_request(self, prompt: Prompt, context: RequestContext | None = None) -> dict[str, Any]:
        self.request_diagnostics = []
        reasoning = self.settings.reasoning or None

        items: list[dict[str, Any]] = []
        system = prompt.system
        if system:
            items.append({"role": "developer" if reasoning else "system", "content": system})

        history = prompt.history
        boundary = self.after_last_assistant(history)
        orphan_at: int | None = None
        for idx, msg in enumerate(history):
            if msg.role is Role.USER:
                outputs, message = self._user_items(msg)
                items.extend(outputs)
                if idx == boundary:
                    orphan_at = len(items)
                items.extend(message)
            elif msg.role is Role.ASSISTANT:
                items.extend(self._assistant_items(msg))
                if idx + 1 == boundary:
                    orphan_at = len(items)

        orphans = self.orphans(prompt)
        if orphans:
            logger.info("orphan_tool_results_synthesized", extra={"provider": self.name, "count": len(orphans)})
            synthetic = [self._output_item(call.id, ORPHAN_RESULT_MESSAGE, True) for call in orphans]
            at = len(items) if orphan_at is None else orphan_at
            items[at:at] = synthetic

        body: dict[str, Any] = {
            "model": self.settings.model,
            "input": items,
            "stream": True,
            "store": False,
            "max_output_tokens": self.settings.max_tokens,
        }

        tools = [
            {
                "type": "function",
                "name": t["name"],
                "description": t["description"],
                "parameters": t["input_schema"],
                "strict": t["strict"],
            }
            for t in self.tools.export_all()
        ]
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"

        if reasoning:
            body["reasoning"] = {"effort": reasoning}
        elif self.settings.temperature is not None:
            body["temperature"] = self.settings.temperature

        retention = self.settings.cache_retention
        if retention != "none":
            if context is not None and context.conversation_id:
                body["prompt_cache_key"] = context.conversation_id
            body["prompt_cache_retention"] = "24h" if retention == "long" else "in_memory"
        return body

    # -- streaming ----------------------------------------------------------

    def _reset_stream(self) -> None:
        self._call: PendingToolCall | None = None
        self._reasoning: list[str] = []

    def handle_event(self, data: Any, callbacks: StreamCallbacks) -> None:
        if not isinstance(data, dict):
            return
        if data.get("error"):
            self.emit_error(callbacks, extract_error_message(data) or "Unknown API error")
            return

        event = data.get("type")
        if event == "response.output_text.delta":
            if data.get("delta"):
                callbacks.on_content(Text(data["delta"]))

        elif event == "response.reasoning_summary_text.delta":
            self._reasoning.append(data.get("delta") or "")

        elif event == "response.output_item.added":
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                self._call = PendingToolCall(id=item.get("call_id") or "", name=item.get("name") or "")

        elif event == "response.function_call_arguments.delta":
            if self._call is not None and data.get("delta"):
                self._call.chunks.append(data["delta"])

        elif event == "response.output_item.done":
            item = data.get("item") or {}
            if item.get("type") == "function_call":
                pending = self._call
                self._call = None
                arguments = item.get("arguments")
                if arguments is None and pending is not None:
                    arguments = pending.arguments
                self.emit_tool_use(
                    callbacks,
                    item.get("call_id") or (pending.id if pending else ""),
                    item.get("name") or (pending.name if pending else ""),
                    arguments or "",
                )

        elif event == "response.completed":
            usage = (data.get("response") or {}).get("usage")
            if isinstance(usage, dict):
                self._emit_completed_usage(usage, callbacks)
            self._flush_reasoning(callbacks)
            self.complete(callbacks)

        elif event == "response.failed":
            error = (data.get("response") or {}).get("error") or {}
            self.emit_error(callbacks, error.get("message") or "Response failed")

    def _emit_completed_usage(self, usage: dict[str, Any], callbacks: StreamCallbacks) -> None:
        # input_tokens includes the cached prefix; report non-cached input only.
        cached = (usage.get("input_tokens_details") or {}).get("cached_tokens") or 0
        if isinstance(usage.get("input_tokens"), int):
            self.emit_usage(callbacks, UsageType.INPUT, usage["input_tokens"] - cached)
        self.emit_usage(callbacks, UsageType.OUTPUT, usage.get("output_tokens"))
        self.emit_usage(
            callbacks, UsageType.THOUGHTS, (usage.get("output_tokens_details") or {}).get("reasoning_tokens")
        )
        if cached > 0:
            self.emit_usage(callbacks, UsageType.CACHE_READ, cached)

    def _flush_reasoning(self, callbacks: StreamCallbacks) -> None:
        text = "".join(self._reasoning).strip()
        self._reasoning = []
        if text:
            callbacks.on_content(Thinking(content=text))
