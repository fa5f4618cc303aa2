"""Message store module: durable chats, messages and delivery records."""

from .roster import ChatRoster
from .schemas import (
    Chat,
    ChatType,
    DeliveryRecord,
    DeliveryState,
    FileAttachment,
    Message,
    MessageContent,
    Participant,
    ParticipantRole,
    Reaction,
)
from .service import MessageStore

__all__ = [
    "Chat",
    "ChatRoster",
    "ChatType",
    "DeliveryRecord",
    "DeliveryState",
    "FileAttachment",
    "Message",
    "MessageContent",
    "MessageStore",
    "Participant",
    "ParticipantRole",
    "Reaction",
]
