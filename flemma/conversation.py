from __future__ import annotations

from dataclasses import dataclass, field

from flemma.model import Message, Prompt, Role, Segment
from flemma.observability.ids import new_conversation_id


@dataclass(slots=True)
class Conversation:
    """Mutable owner of one conversation's message list.

    `request_in_flight` is the cooperative lock shared by the transport and the
    tool executor: provider requests and tool execution never overlap.
    """

    messages: list[Message] = field(default_factory=list)
    conversation_id: str = field(default_factory=new_conversation_id)
    request_in_flight: bool = False

    def append(self, role: Role, *segments: Segment) -> Message:
        msg = Message(role=role, segments=list(segments))
        self.messages.append(msg)
        return msg

    def prompt(self) -> Prompt:
        """Snapshot the history for a provider request."""

        return Prompt(history=[Message(role=m.role, segments=list(m.segments)) for m in self.messages])
