from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class ProviderErrorKind(str, Enum):
    CONTEXT_OVERFLOW = "context_overflow"
    AUTH = "auth"
    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"
    OTHER = "other"


_PATTERNS: tuple[tuple[ProviderErrorKind, re.Pattern[str]], ...] = (
    (
        ProviderErrorKind.CONTEXT_OVERFLOW,
        re.compile(
            r"prompt is too long"
            r"|context[ _]length"
            r"|context window"
            r"|too many tokens"
            r"|maximum context"
            r"|input token count.*exceeds"
            r"|exceeds the maximum number of tokens"
            r"|reduce the length of the messages"
            r"|request too large",
            re.IGNORECASE | re.DOTALL,
        ),
    ),
    (
        ProviderErrorKind.AUTH,
        re.compile(
            r"invalid[ _]api[ _]key|authentication|unauthori[sz]ed|permission[ _]denied|\b401\b|\b403\b",
            re.IGNORECASE,
        ),
    ),
    (
        ProviderErrorKind.RATE_LIMITED,
        re.compile(
            r"rate[ _]limit|too many requests|overloaded|resource[ _]exhausted|quota|\b429\b|\b529\b",
            re.IGNORECASE,
        ),
    ),
    (
        ProviderErrorKind.BLOCKED,
        re.compile(r"response blocked|safety|content[ _]filter|prohibited[ _]content|recitation", re.IGNORECASE),
    ),
)


def classify_error(message: str | None) -> ProviderErrorKind:
    """Classify a vendor error message independent of its exact wording."""

    if not message:
        return ProviderErrorKind.OTHER
    for kind, pattern in _PATTERNS:
        if pattern.search(message):
            return kind
    return ProviderErrorKind.OTHER


def is_context_overflow(message: str | None) -> bool:
    return classify_error(message) is ProviderErrorKind.CONTEXT_OVERFLOW


@dataclass(frozen=True, slots=True)
class ProviderError:
    kind: ProviderErrorKind
    message: str
    status_code: int | None = None

    @classmethod
    def from_message(cls, message: str, *, status_code: int | None = None) -> ProviderError:
        kind = classify_error(message)
        if kind is ProviderErrorKind.OTHER and status_code is not None:
            kind = _STATUS_KINDS.get(status_code, kind)
        return cls(kind=kind, message=message, status_code=status_code)


_STATUS_KINDS = {
    401: ProviderErrorKind.AUTH,
    403: ProviderErrorKind.AUTH,
    413: ProviderErrorKind.CONTEXT_OVERFLOW,
    429: ProviderErrorKind.RATE_LIMITED,
    529: ProviderErrorKind.RATE_LIMITED,
}
