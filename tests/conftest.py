from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from flemma.model import Diagnostic, Segment
from flemma.providers.base import StreamCallbacks, Usage
from flemma.providers.errors import ProviderError


@dataclass
class StreamRecorder:
    """Collects everything an adapter reports while parsing a stream."""

    content: list[Segment] = field(default_factory=list)
    usage: list[Usage] = field(default_factory=list)
    errors: list[ProviderError] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)
    completions: int = 0

    def _complete(self) -> None:
        self.completions += 1

    @property
    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(
            on_content=self.content.append,
            on_usage=self.usage.append,
            on_response_complete=self._complete,
            on_error=self.errors.append,
            on_diagnostic=self.diagnostics.append,
        )

    def usage_by_type(self) -> dict[str, int]:
        return {u.type.value: u.tokens for u in self.usage}


@pytest.fixture
def recorder() -> StreamRecorder:
    return StreamRecorder()
