"""Tool-calling lifecycle and provider protocol core for LLM conversations."""

from __future__ import annotations

__version__ = "0.1.0"
