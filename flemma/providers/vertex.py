from __future__ import annotations

import logging
from typing import Any

from flemma.errors import ConfigError
from flemma.model import Diagnostic, Message, Prompt, Role, Signature, Text, Thinking, ToolUse
from flemma.tools.ids import new_synthetic_id, tool_name_from_synthetic_id

from .base import (
    ORPHAN_RESULT_MESSAGE,
    ProviderAdapter,
    RequestContext,
    StreamCallbacks,
    UsageType,
    extract_error_message,
)

logger = logging.getLogger(__name__)

API_VERSION = "v1beta1"
UNKNOWN_FUNCTION = "unknown"
# Finish reasons that end a response normally.
_COMPLETE_REASONS = ("STOP", "MAX_TOKENS")


class VertexAdapter(ProviderAdapter):
    """Gemini on Vertex AI via `streamGenerateContent`.

    Vertex issues no call ids, so streamed function calls get synthetic ids
    that also encode the function name; results are matched back by name.
    """

    name = "vertex"
    env_var = "VERTEX_AI_ACCESS_TOKEN"

    def endpoint(self) -> str:
        if self.settings.endpoint:
            return self.settings.endpoint
        project_id = self.settings.project_id
        if not project_id:
            raise ConfigError("Vertex AI project_id is required", path="provider.project_id")
        location = self.settings.location or "global"
        host = "aiplatform.googleapis.com" if location == "global" else f"{location}-aiplatform.googleapis.com"
        return (
            f"https://{host}/{API_VERSION}/projects/{project_id}/locations/{location}"
            f"/publishers/google/models/{self.settings.model}:streamGenerateContent?alt=sse"
        )

    def headers(self, api_key: str | None) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key or ''}", "Content-Type": "application/json"}

    def _function_name(self, tool_use_id: str, uses: dict[str, ToolUse]) -> str:
        use = uses.get(tool_use_id)
        if use is not None:
            return use.name
        name = tool_name_from_synthetic_id(tool_use_id)
        if name is None:
            logger.warning("function_name_unresolved", extra={"tool_use_id": tool_use_id})
            return UNKNOWN_FUNCTION
        return name

    def _user_parts(self, msg: Message, uses: dict[str, ToolUse]) -> list[dict[str, Any]]:
        parts: list[dict[str, Any]] = []
        for result in self.resolved_results(msg):
            text = self._decode(result).text
            parts.append(
                {
                    "functionResponse": {
                        "name": self._function_name(result.tool_use_id, uses),
                        "response": {"error": text} if result.is_error else {"output": text},
                    }
                }
            )
        parts.extend(
            {"text": seg.content} for seg in msg.segments if isinstance(seg, Text) and seg.content.strip()
        )
        return parts or [{"text": ""}]

    def _model_parts(self, msg: Message) -> list[dict[str, Any]]:
        signature = None
        for seg in msg.segments:
            if isinstance(seg, Thinking) and seg.signature is not None and seg.signature.provider == self.name:
                signature = seg.signature.value

        calls: list[dict[str, Any]] = []
        for use in msg.tool_uses():
            part: dict[str, Any] = {"functionCall": {"name": use.name, "args": dict(use.input)}}
            # The signature travels on the first call when there are calls.
            if signature and not calls:
                part["thoughtSignature"] = signature
            calls.append(part)

        parts: list[dict[str, Any]] = []
        text = msg.text()
        if text or not calls:
            part = {"text": text}
            if signature and not calls:
                part["thoughtSignature"] = signature
            parts.append(part)
        parts.extend(calls)
        return parts

    def build_request(self, prompt: Prompt, context: RequestContext | None = None) -> dict[str, Any]:
        self.request_diagnostics = []
        uses = self.tool_use_index(prompt.history)

        contents: list[dict[str, Any]] = []
        for msg in self.turn_messages(prompt):
            if msg.role is Role.USER:
                contents.append({"role": "user", "parts": self._user_parts(msg, uses)})
            else:
                contents.append({"role": "model", "parts": self._model_parts(msg)})

        orphans = self.orphans(prompt)
        if orphans:
            logger.info("orphan_tool_results_synthesized", extra={"provider": self.name, "count": len(orphans)})
            contents.append(
                {
                    "role": "user",
                    "parts": [
                        {
                            "functionResponse": {
                                "name": call.name,
                                "response": {"error": ORPHAN_RESULT_MESSAGE, "success": False},
                            }
                        }
                        for call in orphans
                    ],
                }
            )

        generation: dict[str, Any] = {"maxOutputTokens": self.settings.max_tokens}
        if self.settings.temperature is not None:
            generation["temperature"] = self.settings.temperature
        budget = self.settings.thinking_budget
        if budget:
            generation["thinkingConfig"] = {"includeThoughts": True, "thinkingBudget": budget}

        body: dict[str, Any] = {"contents": contents, "generationConfig": generation}

        system = prompt.system
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        declarations = [
            {"name": t["name"], "description": t["description"], "parametersJsonSchema": t["input_schema"]}
            for t in self.tools.export_all()
        ]
        if declarations:
            body["tools"] = [{"functionDeclarations": declarations}]
            body["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}
        return body

    # -- streaming ----------------------------------------------------------

    def _reset_stream(self) -> None:
        self._thoughts: list[str] = []
        self._signature: str | None = None

    def handle_event(self, data: Any, callbacks: StreamCallbacks) -> None:
        if isinstance(data, list) or (isinstance(data, dict) and data.get("error")):
            self.emit_error(callbacks, extract_error_message(data) or "Unknown API error")
            return
        if not isinstance(data, dict):
            return

        candidates = data.get("candidates") or []
        candidate = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
        for part in (candidate.get("content") or {}).get("parts") or []:
            self._handle_part(part, callbacks)

        usage = data.get("usageMetadata")
        if isinstance(usage, dict):
            cached = usage.get("cachedContentTokenCount") or 0
            if isinstance(usage.get("promptTokenCount"), int):
                self.emit_usage(callbacks, UsageType.INPUT, usage["promptTokenCount"] - cached)
            self.emit_usage(callbacks, UsageType.OUTPUT, usage.get("candidatesTokenCount"))
            self.emit_usage(callbacks, UsageType.THOUGHTS, usage.get("thoughtsTokenCount"))
            if cached > 0:
                self.emit_usage(callbacks, UsageType.CACHE_READ, cached)

        reason = candidate.get("finishReason")
        if reason:
            self._flush_thoughts(callbacks)
            if reason == "MAX_TOKENS":
                logger.warning("response_truncated", extra={"provider": self.name, "finish_reason": reason})
            if reason in _COMPLETE_REASONS:
                self.complete(callbacks)
            else:
                self.emit_error(callbacks, f"Response blocked by Vertex AI ({reason})")

    def _handle_part(self, part: dict[str, Any], callbacks: StreamCallbacks) -> None:
        signature = part.get("thoughtSignature")
        # Empty chunks never clobber a captured signature.
        if isinstance(signature, str) and signature:
            self._signature = signature

        text = part.get("text")
        if part.get("thought"):
            if text:
                self._thoughts.append(text)
        elif isinstance(part.get("functionCall"), dict):
            call = part["functionCall"]
            name = call.get("name")
            if not name:
                return
            tool_id = new_synthetic_id(name)
            args = call.get("args")
            if args is None or isinstance(args, dict):
                callbacks.on_content(ToolUse(id=tool_id, name=name, input=dict(args or {})))
            else:
                logger.warning("tool_input_unparseable", extra={"tool_use_id": tool_id})
                self.emit_diagnostic(
                    callbacks,
                    Diagnostic(
                        severity="warning",
                        message=f"Tool input is not a JSON object (got {type(args).__name__}); raw text kept",
                        tool_use_id=tool_id,
                    ),
                )
                callbacks.on_content(ToolUse(id=tool_id, name=name, input={}, raw_input=str(args)))
        elif isinstance(text, str) and text.strip():
            callbacks.on_content(Text(text))

    def _flush_thoughts(self, callbacks: StreamCallbacks) -> None:
        text = "".join(self._thoughts).strip()
        if text or self._signature:
            signature = Signature(value=self._signature, provider=self.name) if self._signature else None
            callbacks.on_content(Thinking(content=text, signature=signature))
        self._thoughts = []
        self._signature = None
