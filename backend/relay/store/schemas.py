"""Pydantic schemas for chats, messages and per-recipient delivery state.

These are the wire shapes emitted to clients (``newMessage``,
``missedMessages``, ``messageUpdated`` ...) and returned by the HTTP routes.
Field names are camelCase because clients consume them directly.

Used by:
    - MessageStore: DuckDB persistence layer
    - DeliveryTracker: status promotion and aggregate recomputation
    - Broadcaster / ChatService: event payloads
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current UTC time as a naive datetime; TIMESTAMP columns carry no zone."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DeliveryState(str, Enum):
    """Delivery progress of a message towards one recipient.

    Ordered by rank: SENT < DELIVERED < SEEN. A record only moves forward.
    """
    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {
    DeliveryState.SENT: 0,
    DeliveryState.DELIVERED: 1,
    DeliveryState.SEEN: 2,
}


class ChatType(str, Enum):
    DM = "dm"
    GROUP = "group"


class ParticipantRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class StorageBackend(str, Enum):
    """Where an attachment's bytes live. The relay never reads them."""
    S3 = "s3"
    CLOUDINARY = "cloudinary"
    LOCAL = "local"


class FileAttachment(BaseModel):
    """Opaque descriptor produced by the object-storage service."""
    url: str = Field(..., description="Download URL")
    name: Optional[str] = Field(None, description="Original filename")
    size: Optional[int] = Field(None, description="Size in bytes")
    mimeType: Optional[str] = Field(None, description="MIME type")
    storage: StorageBackend = Field(
        default=StorageBackend.S3, description="Storage backend holding the file"
    )


class DeliveryRecord(BaseModel):
    """Delivery state of one message for one recipient."""
    userId: str = Field(..., description="Recipient user ID")
    status: DeliveryState = Field(default=DeliveryState.SENT)
    deliveredAt: Optional[datetime] = Field(None, description="Set once delivered")
    seenAt: Optional[datetime] = Field(None, description="Set once seen")


class Reaction(BaseModel):
    userId: str = Field(..., description="Reacting user ID")
    emoji: str = Field(..., description="Emoji glyph")


class Message(BaseModel):
    """A persisted chat message with its per-recipient delivery records.

    Attributes:
        id: Unique message identifier.
        chatId: Chat the message belongs to.
        senderId: Author's user ID.
        text: Optional text body.
        image: Optional legacy image URL.
        file: Optional attachment descriptor.
        status: Aggregate status, the lowest-ranked recipient status.
        deliveryStatus: One record per recipient, fixed at creation.
        createdAt: Creation timestamp (UTC).
        edited: True once the sender has edited the text.
        reactions: At most one entry per (userId, emoji).
        clientMessageId: Optional sender-supplied idempotency key.
    """
    id: str = Field(..., description="Unique message ID")
    chatId: str = Field(..., description="Chat ID")
    senderId: str = Field(..., description="Sender user ID")
    text: Optional[str] = None
    image: Optional[str] = None
    file: Optional[FileAttachment] = None
    status: DeliveryState = Field(default=DeliveryState.SENT)
    deliveryStatus: List[DeliveryRecord] = Field(default_factory=list)
    createdAt: datetime = Field(default_factory=utc_now)
    edited: bool = False
    reactions: List[Reaction] = Field(default_factory=list)
    clientMessageId: Optional[str] = None

    def record_for(self, user_id: str) -> Optional[DeliveryRecord]:
        for record in self.deliveryStatus:
            if record.userId == user_id:
                return record
        return None


class MessageContent(BaseModel):
    """Content of a send request: text and/or an attachment."""
    text: Optional[str] = Field(None, description="Message text")
    image: Optional[str] = Field(None, description="Legacy image URL")
    file: Optional[FileAttachment] = Field(None, description="Attachment descriptor")
    clientMessageId: Optional[str] = Field(
        None, description="Idempotency key; repeats return the stored message"
    )

    def is_empty(self) -> bool:
        return not (self.text or self.image or (self.file and self.file.url))


class Participant(BaseModel):
    userId: str = Field(..., description="Participant user ID")
    role: ParticipantRole = Field(default=ParticipantRole.MEMBER)


class Chat(BaseModel):
    """A dm or group conversation.

    Attributes:
        id: Unique chat identifier.
        type: dm (exactly two members) or group.
        participants: Roster with roles.
        name: Required for groups.
        groupPicture: Group avatar URL.
        lastMessage: Most recent message, when loaded.
        createdAt / updatedAt: Timestamps (UTC); updatedAt moves on every send.
    """
    id: str = Field(..., description="Unique chat ID")
    type: ChatType
    participants: List[Participant] = Field(default_factory=list)
    name: Optional[str] = None
    groupPicture: str = ""
    lastMessageId: Optional[str] = None
    lastMessage: Optional[Message] = None
    createdAt: datetime = Field(default_factory=utc_now)
    updatedAt: datetime = Field(default_factory=utc_now)

    def participant_ids(self) -> List[str]:
        return [p.userId for p in self.participants]

    def has_participant(self, user_id: str) -> bool:
        return any(p.userId == user_id for p in self.participants)

    def is_admin(self, user_id: str) -> bool:
        return any(
            p.userId == user_id and p.role == ParticipantRole.ADMIN
            for p in self.participants
        )


class GroupCreate(BaseModel):
    name: str = Field(..., description="Group name")
    participantIds: List[str] = Field(..., description="Members besides the creator")
    groupPicture: Optional[str] = Field(None, description="Group avatar URL")


class GroupUpdate(BaseModel):
    name: Optional[str] = None
    groupPicture: Optional[str] = None
    addParticipants: Optional[List[str]] = None
    removeParticipants: Optional[List[str]] = None


class MessageEdit(BaseModel):
    text: str = Field(..., description="Replacement text")


class ReactionToggle(BaseModel):
    emoji: str = Field(..., min_length=1, description="Emoji glyph")
