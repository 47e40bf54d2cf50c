"""Placeholder / result ledger.

Tool result slots live in the user message that follows the assistant turn
which issued the tool uses. Slots are always located by scanning the
conversation afresh: an insertion can shift every later segment, so no
position is ever cached across a mutation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from flemma.conversation import Conversation
from flemma.errors import ToolUseNotFoundError
from flemma.model import Message, Role, ToolResult, ToolStatus, ToolUse

from .registry import ExecutionResult
from .result_codec import format_execution_result

logger = logging.getLogger(__name__)

PLACEHOLDER_CONTENT = ""
DENIED_MESSAGE = "The tool was denied by a policy."
REJECTED_MESSAGE = "This tool has been rejected by the user."


@dataclass(frozen=True, slots=True)
class SlotPosition:
    message_index: int
    segment_index: int


class ReplaceOutcome(str, Enum):
    WRITTEN = "written"
    PRESERVED = "preserved"


@dataclass(frozen=True, slots=True)
class ToolSlot:
    tool_use: ToolUse
    result: ToolResult
    position: SlotPosition


@dataclass(slots=True)
class ToolStatusGroups:
    pending: list[ToolSlot] = field(default_factory=list)
    approved: list[ToolSlot] = field(default_factory=list)
    denied: list[ToolSlot] = field(default_factory=list)
    rejected: list[ToolSlot] = field(default_factory=list)
    resolved: list[ToolSlot] = field(default_factory=list)


def resolve_error_message(status: ToolStatus, content: str) -> str:
    if status is ToolStatus.DENIED:
        return DENIED_MESSAGE
    if status is ToolStatus.REJECTED and content.strip():
        return content
    return REJECTED_MESSAGE


def _holds_placeholder(result: ToolResult) -> bool:
    return result.content == PLACEHOLDER_CONTENT and not result.is_error


class ResultLedger:
    def __init__(self, conversation: Conversation) -> None:
        self._conversation = conversation

    @property
    def messages(self) -> list[Message]:
        return self._conversation.messages

    def _find_tool_use(self, tool_use_id: str) -> tuple[int, ToolUse]:
        for idx, msg in enumerate(self.messages):
            if msg.role is not Role.ASSISTANT:
                continue
            for tool_use in msg.tool_uses():
                if tool_use.id == tool_use_id:
                    return idx, tool_use
        raise ToolUseNotFoundError(tool_use_id)

    def locate(self, tool_use_id: str) -> SlotPosition | None:
        for m_idx, msg in enumerate(self.messages):
            if msg.role is not Role.USER:
                continue
            for s_idx, seg in enumerate(msg.segments):
                if isinstance(seg, ToolResult) and seg.tool_use_id == tool_use_id:
                    return SlotPosition(m_idx, s_idx)
        return None

    def get(self, tool_use_id: str) -> ToolResult | None:
        pos = self.locate(tool_use_id)
        if pos is None:
            return None
        seg = self.messages[pos.message_index].segments[pos.segment_index]
        assert isinstance(seg, ToolResult)
        return seg

    def insert_placeholder(self, tool_use_id: str, status: ToolStatus | str = ToolStatus.PENDING) -> SlotPosition:
        """Create the result slot for `tool_use_id` unless one exists.

        Slots in the following user message are kept in the order the
        assistant issued the tool uses.
        """

        existing = self.locate(tool_use_id)
        if existing is not None:
            return existing

        status = ToolStatus.parse(status)
        a_idx, _ = self._find_tool_use(tool_use_id)
        order = {tu.id: i for i, tu in enumerate(self.messages[a_idx].tool_uses())}
        ours = order[tool_use_id]
        slot = ToolResult(tool_use_id=tool_use_id, content=PLACEHOLDER_CONTENT, status=status)

        u_idx = a_idx + 1
        if u_idx >= len(self.messages) or self.messages[u_idx].role is not Role.USER:
            self.messages.insert(u_idx, Message(role=Role.USER, segments=[slot]))
            logger.debug("placeholder_inserted", extra={"tool_use_id": tool_use_id, "placement": "new_message"})
            return SlotPosition(u_idx, 0)

        segments = self.messages[u_idx].segments
        results = [(i, s) for i, s in enumerate(segments) if isinstance(s, ToolResult)]

        predecessor: int | None = None
        predecessor_order = -1
        for i, result in results:
            rank = order.get(result.tool_use_id, -1)
            if predecessor_order < rank < ours:
                predecessor, predecessor_order = i, rank

        if predecessor is not None:
            at = predecessor + 1
        elif results:
            at = results[0][0]
        else:
            at = 0

        segments.insert(at, slot)
        logger.debug("placeholder_inserted", extra={"tool_use_id": tool_use_id, "segment_index": at})
        return SlotPosition(u_idx, at)

    def replace_result(self, tool_use_id: str, outcome: ExecutionResult) -> ReplaceOutcome:
        """Write the final outcome into the slot.

        A slot that is not resolved and no longer holds the placeholder was
        edited by the user; it is left untouched.
        """

        self.insert_placeholder(tool_use_id, ToolStatus.APPROVED)
        slot = self.get(tool_use_id)
        assert slot is not None

        if slot.status is not ToolStatus.RESOLVED and not _holds_placeholder(slot):
            logger.info("tool_result_preserved", extra={"tool_use_id": tool_use_id})
            return ReplaceOutcome.PRESERVED

        formatted = format_execution_result(outcome)
        slot.content = formatted.content
        slot.is_error = formatted.is_error
        slot.format = formatted.format
        slot.status = ToolStatus.RESOLVED
        return ReplaceOutcome.WRITTEN

    def set_status(self, tool_use_id: str, status: ToolStatus | str) -> ToolResult:
        self.insert_placeholder(tool_use_id, status)
        slot = self.get(tool_use_id)
        assert slot is not None
        slot.status = ToolStatus.parse(status)
        return slot

    def _resolve_error(self, tool_use_id: str, status: ToolStatus) -> ToolResult:
        self.insert_placeholder(tool_use_id, status)
        slot = self.get(tool_use_id)
        assert slot is not None
        slot.content = resolve_error_message(status, slot.content if slot.status is not ToolStatus.RESOLVED else "")
        slot.is_error = True
        slot.format = None
        slot.status = ToolStatus.RESOLVED
        return slot

    def resolve_denied(self, tool_use_id: str) -> ToolResult:
        return self._resolve_error(tool_use_id, ToolStatus.DENIED)

    def resolve_rejected(self, tool_use_id: str) -> ToolResult:
        """Resolve as rejected; text the user typed into the slot becomes the reason."""

        return self._resolve_error(tool_use_id, ToolStatus.REJECTED)

    def resolve_user_content(self, tool_use_id: str) -> ToolResult:
        slot = self.get(tool_use_id)
        if slot is None:
            raise ToolUseNotFoundError(tool_use_id)
        slot.status = ToolStatus.RESOLVED
        return slot

    def _slots(self) -> list[ToolSlot]:
        uses: dict[str, ToolUse] = {}
        for msg in self.messages:
            if msg.role is Role.ASSISTANT:
                for tool_use in msg.tool_uses():
                    uses[tool_use.id] = tool_use

        slots: list[ToolSlot] = []
        for m_idx, msg in enumerate(self.messages):
            if msg.role is not Role.USER:
                continue
            for s_idx, seg in enumerate(msg.segments):
                if isinstance(seg, ToolResult) and seg.tool_use_id in uses:
                    slots.append(ToolSlot(uses[seg.tool_use_id], seg, SlotPosition(m_idx, s_idx)))
        return slots

    def resolve_all(self) -> ToolStatusGroups:
        groups = ToolStatusGroups()
        for slot in self._slots():
            getattr(groups, slot.result.status.value).append(slot)
        return groups

    def resolve_awaiting_execution(self) -> list[ToolUse]:
        """Tool uses whose pending slot is neither an error nor carries user content."""

        return [
            slot.tool_use
            for slot in self._slots()
            if slot.result.status is ToolStatus.PENDING and _holds_placeholder(slot.result)
        ]
