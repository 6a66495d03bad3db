"""Data models shared by the chat core components.

Field names are camelCase because these models are dumped straight onto the
wire (``model_dump()``) and the browser client reads them as-is.
"""
import time
import uuid
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

# Scope ids of private threads start with this; room names never do.
PRIVATE_SCOPE_PREFIX = "private:"


class MessageScope(str, Enum):
    """Where a message lives.

    Attributes:
        ROOM: Broadcast to a named room.
        PRIVATE: Two-party thread keyed by persistent identities.
    """
    ROOM = "room"
    PRIVATE = "private"


class InboundEvent(str, Enum):
    """Client -> server event types."""
    JOIN = "join"
    SEND_MESSAGE = "send_message"
    SEND_PRIVATE_MESSAGE = "send_private_message"
    MARK_READ = "mark_read"
    TYPING_START = "typing_start"
    TYPING_STOP = "typing_stop"
    SWITCH_ROOM = "switch_room"
    PRIVATE_HISTORY = "private_history"


class OutboundEvent(str, Enum):
    """Server -> client event types."""
    CONNECTED = "connected"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    USERS_ONLINE = "users_online"
    AVAILABLE_ROOMS = "available_rooms"
    ROOM_MESSAGE = "room_message"
    PRIVATE_MESSAGE = "private_message"
    MESSAGE_HISTORY = "message_history"
    MESSAGE_READ = "message_read"
    USER_TYPING = "user_typing"
    USER_STOPPED_TYPING = "user_stopped_typing"
    ERROR = "error"


class IdentityInfo(BaseModel):
    """Identity fields supplied on join, before validation.

    Required fields are Optional here on purpose: the registry decides what
    is missing and raises :class:`~huddle.chat.errors.ValidationError`.
    """
    displayName: Optional[str] = None
    persistentIdentity: Optional[str] = None
    email: Optional[str] = None
    avatar: Optional[str] = None
    authenticated: bool = False


class PresenceRecord(BaseModel):
    """Live state describing one online user's session.

    Attributes:
        connectionId: Ephemeral id of the live transport session.
        persistentIdentity: Stable id across reconnects and devices.
        displayName: Name shown in the UI.
        avatar: Avatar URL or reference.
        email: Contact email, if known.
        joinedAt: Unix timestamp of the join.
        authenticated: True if the identity came from a verified token.
    """
    connectionId: str = Field(..., description="Live connection id")
    persistentIdentity: str = Field(..., description="Durable user identity")
    displayName: str = Field(..., description="Display name shown in UI")
    avatar: Optional[str] = Field(default=None, description="Avatar reference")
    email: Optional[str] = Field(default=None, description="Email address")
    joinedAt: float = Field(default_factory=time.time, description="Join timestamp")
    authenticated: bool = Field(default=False, description="Token verified")


class ChatMessage(BaseModel):
    """A room or private message.

    Content and sender snapshot are frozen after creation; only ``read`` and
    ``readBy`` change.

    Attributes:
        id: Globally unique message id (UUID4).
        scope: Room or private.
        content: Trimmed message text.
        senderId: Sender's connection id at send time.
        senderIdentity: Sender's persistent identity.
        senderName: Sender's display name at send time.
        senderAvatar: Sender's avatar at send time.
        roomId: Room name (room scope only).
        recipientIdentity: Recipient identity (private scope only).
        recipientName: Recipient display name at send time (private only).
        ts: Unix timestamp (seconds since epoch).
        read: True once any non-sender has read it.
        readBy: Reader identities in the order they read it.
    """
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        frozen=True,
        description="Unique message ID"
    )
    scope: MessageScope = Field(default=MessageScope.ROOM, frozen=True)
    content: str = Field(..., frozen=True, description="Message content")
    senderId: str = Field(..., frozen=True, description="Sender connection id")
    senderIdentity: str = Field(..., frozen=True, description="Sender identity")
    senderName: str = Field(..., frozen=True, description="Sender display name")
    senderAvatar: Optional[str] = Field(default=None, frozen=True)
    roomId: Optional[str] = Field(default=None, frozen=True)
    recipientIdentity: Optional[str] = Field(default=None, frozen=True)
    recipientName: Optional[str] = Field(default=None, frozen=True)
    ts: float = Field(
        default_factory=time.time,
        frozen=True,
        description="Timestamp in seconds since epoch"
    )
    read: bool = Field(default=False, description="Read by someone other than the sender")
    readBy: List[str] = Field(default_factory=list, description="Reader identities")
