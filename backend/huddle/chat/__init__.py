"""Real-time chat core: presence, rooms, history, receipts and fanout."""

from .core import ChatCore
from .errors import AuthenticationError, ChatError, NotFoundError, ValidationError
from .models import ChatMessage, IdentityInfo, MessageScope, PresenceRecord

__all__ = [
    "AuthenticationError",
    "ChatCore",
    "ChatError",
    "ChatMessage",
    "IdentityInfo",
    "MessageScope",
    "NotFoundError",
    "PresenceRecord",
    "ValidationError",
]
