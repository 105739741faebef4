"""Data models exchanged between the Transport and the session engine.

Transports translate their native event shapes into these models once,
at the integration point. Nothing else in the engine sees native shapes.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# =============================================================================
# Enumerations
# =============================================================================


class MessageType(str, Enum):
    """Content type of an inbound message."""

    TEXT = "text"
    IMAGE = "image"
    STICKER = "sticker"
    VIDEO = "video"
    AUDIO = "audio"
    CONTACT = "contact"
    POLL = "poll"
    LOCATION = "location"
    UNKNOWN = "unknown"


class SenderType(str, Enum):
    """Kind of conversation a message arrived in."""

    GROUP = "group"
    INDIVIDUAL = "individual"
    UNKNOWN = "unknown"


class ConnectionState(str, Enum):
    """Transport connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class DisconnectReason(str, Enum):
    """Why the Transport connection closed."""

    LOGGED_OUT = "logged_out"
    CONNECTION_LOST = "connection_lost"
    CONNECTION_REPLACED = "connection_replaced"
    TIMED_OUT = "timed_out"
    RESTART_REQUIRED = "restart_required"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        """Only an explicit logout ends the session for good."""
        return self is DisconnectReason.LOGGED_OUT


class MembershipChangeKind(str, Enum):
    """Kind of membership event."""

    JOINED = "joined"
    UPDATED = "updated"


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Messages
# =============================================================================


class InboundMessage(BaseModel):
    """A message delivered by the Transport."""

    id: str
    conversation_id: str
    participant_id: str | None = None  # Set for messages inside groups
    from_self: bool = False
    type: MessageType = MessageType.UNKNOWN
    sender_type: SenderType = SenderType.UNKNOWN
    text: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    @property
    def sender_id(self) -> str:
        """Participant id in groups, conversation id in one-to-one chats."""
        return self.participant_id or self.conversation_id


class MessageUpdate(BaseModel):
    """An update to a previously delivered message (edit, receipt, reaction)."""

    id: str
    conversation_id: str
    participant_id: str | None = None
    from_self: bool = False
    type: MessageType = MessageType.UNKNOWN
    sender_type: SenderType = SenderType.UNKNOWN
    update: dict[str, Any] = Field(default_factory=dict)


class SentMessage(BaseModel):
    """Descriptor returned by the Transport for a delivered send."""

    id: str
    conversation_id: str
    timestamp: datetime = Field(default_factory=_utcnow)
    raw: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Conversations
# =============================================================================


class Participant(BaseModel):
    """A member of a group conversation."""

    id: str
    is_admin: bool = False


class ConversationMetadata(BaseModel):
    """Group conversation metadata.

    Only ``id`` is guaranteed; membership update events may carry
    partial metadata.
    """

    id: str
    subject: str | None = None
    description: str | None = None
    owner: str | None = None
    participants: list[Participant] = Field(default_factory=list)
    announce_only: bool | None = None
    restrict_settings: bool | None = None
    created_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class MembershipChange(BaseModel):
    """The bot joined a group, or a group it is in changed."""

    kind: MembershipChangeKind
    metadata: ConversationMetadata


# =============================================================================
# Connection
# =============================================================================


class ConnectionUpdate(BaseModel):
    """Connection state change reported by the Transport."""

    state: ConnectionState
    reason: DisconnectReason | None = None
    detail: str | None = None

    @property
    def is_closed(self) -> bool:
        return self.state == ConnectionState.DISCONNECTED

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN
