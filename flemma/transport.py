"""Streaming HTTP transport for provider requests.

One request per conversation at a time: `send` holds
`conversation.request_in_flight` for the whole exchange, which also keeps the
tool executor from starting work on that conversation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass

import httpx

from flemma.conversation import Conversation
from flemma.model import Diagnostic, Segment
from flemma.observability import bind_conversation
from flemma.observability.ids import new_request_id
from flemma.providers.base import ProviderAdapter, RequestContext, StreamCallbacks, Usage, extract_error_message
from flemma.providers.errors import ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10.0
BUSY_MESSAGE = "A request is already in flight for this conversation"
INCOMPLETE_MESSAGE = "Response stream ended before completion"


@dataclass(slots=True)
class ResponseOutcome:
    completed: bool = False
    cancelled: bool = False
    error: ProviderError | None = None

    @property
    def ok(self) -> bool:
        return self.completed and self.error is None


class StreamingClient:
    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        self._http = http_client
        self._task: asyncio.Task[None] | None = None

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> bool:
        """Cancel the in-flight request; returns False when nothing is running."""

        if not self.busy:
            return False
        assert self._task is not None
        self._task.cancel()
        return True

    async def send(
        self,
        conversation: Conversation,
        adapter: ProviderAdapter,
        callbacks: StreamCallbacks,
    ) -> ResponseOutcome:
        outcome = ResponseOutcome()
        if conversation.request_in_flight:
            outcome.error = ProviderError(ProviderErrorKind.OTHER, BUSY_MESSAGE)
            return outcome

        conversation.request_in_flight = True
        request_id = new_request_id()
        bind_conversation(conversation_id=conversation.conversation_id, request_id=request_id)
        started = time.monotonic()
        try:
            task = asyncio.get_running_loop().create_task(
                self._exchange(conversation, adapter, self._tracking(callbacks, outcome))
            )
            self._task = task
            try:
                await asyncio.wait({task})
            except asyncio.CancelledError:
                task.cancel()
                raise
            if task.cancelled():
                outcome.cancelled = True
                logger.info("provider_request_cancelled", extra={"provider": adapter.name})
            elif (exc := task.exception()) is not None:
                raise exc
        finally:
            self._task = None
            conversation.request_in_flight = False

        if not outcome.cancelled and not outcome.completed and outcome.error is None:
            self._deliver_error(callbacks, outcome, ProviderError(ProviderErrorKind.OTHER, INCOMPLETE_MESSAGE))

        logger.info(
            "provider_request_finished",
            extra={
                "provider": adapter.name,
                "completed": outcome.completed,
                "cancelled": outcome.cancelled,
                "error_kind": outcome.error.kind.value if outcome.error else None,
                "elapsed_ms": round((time.monotonic() - started) * 1000),
            },
        )
        return outcome

    @staticmethod
    def _deliver_error(callbacks: StreamCallbacks, outcome: ResponseOutcome, error: ProviderError) -> None:
        outcome.error = error
        if callbacks.on_error is not None:
            callbacks.on_error(error)

    @staticmethod
    def _tracking(callbacks: StreamCallbacks, outcome: ResponseOutcome) -> StreamCallbacks:
        def on_content(segment: Segment) -> None:
            callbacks.on_content(segment)

        def on_usage(usage: Usage) -> None:
            if callbacks.on_usage is not None:
                callbacks.on_usage(usage)

        def on_complete() -> None:
            outcome.completed = True
            if callbacks.on_response_complete is not None:
                callbacks.on_response_complete()

        def on_error(error: ProviderError) -> None:
            # First error wins; later ones are usually fallout from it.
            if outcome.error is None:
                StreamingClient._deliver_error(callbacks, outcome, error)

        def on_diagnostic(diagnostic: Diagnostic) -> None:
            if callbacks.on_diagnostic is not None:
                callbacks.on_diagnostic(diagnostic)

        return StreamCallbacks(
            on_content=on_content,
            on_usage=on_usage,
            on_response_complete=on_complete,
            on_error=on_error,
            on_diagnostic=on_diagnostic,
        )

    async def _exchange(self, conversation: Conversation, adapter: ProviderAdapter, callbacks: StreamCallbacks) -> None:
        adapter.reset()
        body = adapter.build_request(
            conversation.prompt(), RequestContext(conversation_id=conversation.conversation_id)
        )
        for diagnostic in adapter.request_diagnostics:
            assert callbacks.on_diagnostic is not None
            callbacks.on_diagnostic(diagnostic)

        url = adapter.endpoint()
        headers = adapter.headers(adapter.settings.resolved_api_key())
        timeout = httpx.Timeout(adapter.settings.timeout_s, connect=CONNECT_TIMEOUT_S)
        logger.info("provider_request_started", extra={"provider": adapter.name, "model": adapter.settings.model})

        try:
            if self._http is not None:
                await self._stream(self._http, url, body, headers, timeout, adapter, callbacks)
            else:
                async with httpx.AsyncClient() as client:
                    await self._stream(client, url, body, headers, timeout, adapter, callbacks)
        except httpx.TimeoutException:
            assert callbacks.on_error is not None
            callbacks.on_error(ProviderError(ProviderErrorKind.OTHER, "Request timed out"))
        except httpx.HTTPError as e:
            assert callbacks.on_error is not None
            callbacks.on_error(ProviderError.from_message(f"HTTP error: {e}"))

    @staticmethod
    async def _stream(
        client: httpx.AsyncClient,
        url: str,
        body: dict,
        headers: dict[str, str],
        timeout: httpx.Timeout,
        adapter: ProviderAdapter,
        callbacks: StreamCallbacks,
    ) -> None:
        async with client.stream("POST", url, json=body, headers=headers, timeout=timeout) as resp:
            if resp.status_code >= 400:
                raw = (await resp.aread()).decode("utf-8", errors="replace")
                try:
                    message = extract_error_message(json.loads(raw))
                except ValueError:
                    message = None
                error = ProviderError.from_message(
                    message or raw.strip()[:500] or f"HTTP {resp.status_code}", status_code=resp.status_code
                )
                logger.error(
                    "provider_http_error",
                    extra={"provider": adapter.name, "status_code": resp.status_code, "error": error.message},
                )
                assert callbacks.on_error is not None
                callbacks.on_error(error)
                return
            async for line in resp.aiter_lines():
                adapter.process_streaming_line(line, callbacks)
        adapter.finalize(callbacks)
