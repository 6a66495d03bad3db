"""Bounded, ordered message history for rooms and private threads.

Both stores keep a ``deque(maxlen=cap)`` per key, so appending past the cap
evicts the oldest entry. Append order is the only ordering; callers
serialize appends under the core lock.
"""
import logging
from collections import deque
from typing import Deque, Dict, Iterable, List, Tuple

from .models import ChatMessage

logger = logging.getLogger(__name__)

# Default number of messages kept per room / thread
DEFAULT_HISTORY_CAP = 100

# Default number of messages sent as a history window
DEFAULT_HISTORY_WINDOW = 50

ThreadKey = Tuple[str, str]


def thread_key(identity_a: str, identity_b: str) -> ThreadKey:
    """Canonical key for the thread between two identities.

    ``thread_key(a, b) == thread_key(b, a)`` for all a, b.
    """
    return tuple(sorted((identity_a, identity_b)))  # type: ignore[return-value]


def _window(messages: Deque[ChatMessage], limit: int) -> List[ChatMessage]:
    if limit <= 0:
        return []
    return list(messages)[-limit:]


def _find(messages: Iterable[ChatMessage], message_ids: Iterable[str]) -> List[ChatMessage]:
    wanted = set(message_ids)
    return [msg for msg in messages if msg.id in wanted]


def mark_read(messages: Iterable[ChatMessage], reader_identity: str) -> List[ChatMessage]:
    """Record that ``reader_identity`` has read ``messages``.

    The sender reading their own message changes nothing, and neither does
    a reader who is already in ``readBy``.

    Returns:
        The messages whose read state changed.
    """
    changed = []
    for msg in messages:
        if msg.senderIdentity == reader_identity:
            continue
        if reader_identity in msg.readBy:
            continue
        msg.read = True
        msg.readBy.append(reader_identity)
        changed.append(msg)
    return changed


class MessageStore:
    """Per-room bounded history."""

    def __init__(self, cap: int = DEFAULT_HISTORY_CAP) -> None:
        self.cap = cap
        # room name -> messages, oldest first
        self._rooms: Dict[str, Deque[ChatMessage]] = {}

    def append(self, room: str, message: ChatMessage) -> ChatMessage:
        """Store a message, evicting the oldest one if over the cap."""
        messages = self._rooms.setdefault(room, deque(maxlen=self.cap))
        if len(messages) == self.cap:
            logger.debug(f"[History] Room {room} at cap {self.cap}, evicting {messages[0].id}")
        messages.append(message)
        return message

    def history_of(self, room: str, limit: int = DEFAULT_HISTORY_WINDOW) -> List[ChatMessage]:
        """The most recent ``limit`` messages of a room, oldest first."""
        return _window(self._rooms.get(room, deque()), limit)

    def find(self, room: str, message_ids: Iterable[str]) -> List[ChatMessage]:
        return _find(self._rooms.get(room, ()), message_ids)

    def mark_read(
        self, room: str, message_ids: Iterable[str], reader_identity: str
    ) -> List[ChatMessage]:
        """Mark room messages read. Unknown ids are skipped."""
        return mark_read(self.find(room, message_ids), reader_identity)

    def total(self) -> int:
        return sum(len(messages) for messages in self._rooms.values())

    def clear(self) -> None:
        self._rooms.clear()


class PrivateChatIndex:
    """Per identity-pair bounded history.

    Keyed by persistent identities, never connection ids, so a thread
    survives reconnects and is shared by all devices of an identity.
    """

    def __init__(self, cap: int = DEFAULT_HISTORY_CAP) -> None:
        self.cap = cap
        self._threads: Dict[ThreadKey, Deque[ChatMessage]] = {}

    def append(self, identity_a: str, identity_b: str, message: ChatMessage) -> ChatMessage:
        key = thread_key(identity_a, identity_b)
        self._threads.setdefault(key, deque(maxlen=self.cap)).append(message)
        return message

    def history_of(
        self, identity_a: str, identity_b: str, limit: int = DEFAULT_HISTORY_WINDOW
    ) -> List[ChatMessage]:
        return _window(self._threads.get(thread_key(identity_a, identity_b), deque()), limit)

    def find(
        self, identity_a: str, identity_b: str, message_ids: Iterable[str]
    ) -> List[ChatMessage]:
        return _find(self._threads.get(thread_key(identity_a, identity_b), ()), message_ids)

    def mark_read(
        self,
        identity_a: str,
        identity_b: str,
        message_ids: Iterable[str],
        reader_identity: str,
    ) -> List[ChatMessage]:
        return mark_read(self.find(identity_a, identity_b, message_ids), reader_identity)

    def __len__(self) -> int:
        return len(self._threads)

    def clear(self) -> None:
        self._threads.clear()
