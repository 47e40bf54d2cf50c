from __future__ import annotations

from .context import bind_conversation, bind_tool, reset_tool, snapshot
from .logging import configure_logging

__all__ = ["bind_conversation", "bind_tool", "configure_logging", "reset_tool", "snapshot"]
