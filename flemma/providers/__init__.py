"""Vendor adapters between the canonical model and provider wire formats."""

from __future__ import annotations

from .anthropic import AnthropicAdapter
from .base import (
    ORPHAN_RESULT_MESSAGE,
    ProviderAdapter,
    RequestContext,
    StreamCallbacks,
    Usage,
    UsageType,
    parse_sse_line,
)
from .errors import ProviderError, ProviderErrorKind, classify_error, is_context_overflow
from .openai import OpenAIAdapter
from .registry import ProviderRegistry, default_registry, install_default_providers
from .vertex import VertexAdapter

__all__ = [
    "AnthropicAdapter",
    "ORPHAN_RESULT_MESSAGE",
    "OpenAIAdapter",
    "ProviderAdapter",
    "ProviderError",
    "ProviderErrorKind",
    "ProviderRegistry",
    "RequestContext",
    "StreamCallbacks",
    "Usage",
    "UsageType",
    "VertexAdapter",
    "classify_error",
    "default_registry",
    "install_default_providers",
    "parse_sse_line",
    "is_context_overflow",
]
