"""Chat core: the shared state object and its event handlers.

``ChatCore`` owns every mutable structure of a running chat server:

    - ConnectionRegistry: presence by connection id and by identity
    - RoomManager: one active room per connection
    - MessageStore: bounded room history
    - PrivateChatIndex: bounded history per identity pair
    - TypingState: who is typing where
    - Fanout: outboxes of live connections
    - ReadReceiptPropagator: read state + sender notifications

Each public method handles one inbound event to completion, state mutation
and every resulting outbox push, while holding ``self._lock``. Handlers
validate before they mutate, so an exception means nothing changed and
nothing was emitted. Nothing in here awaits; socket writes happen later in
the per-connection writer tasks owned by the transport.
"""
import logging
import threading
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence

from .errors import NotFoundError, ValidationError
from .fanout import Fanout, Outbox, TargetRule, build_event, direct, members
from .history import (
    DEFAULT_HISTORY_CAP,
    DEFAULT_HISTORY_WINDOW,
    MessageStore,
    PrivateChatIndex,
)
from .models import (
    PRIVATE_SCOPE_PREFIX,
    ChatMessage,
    IdentityInfo,
    MessageScope,
    OutboundEvent,
    PresenceRecord,
)
from .receipts import ReadReceiptPropagator, private_scope
from .registry import ConnectionRegistry
from .rooms import RoomManager
from .typing_state import TypingState

if TYPE_CHECKING:
    from huddle.config import ChatSettings

logger = logging.getLogger(__name__)

DEFAULT_SEED_ROOMS = ("general", "random", "help")


def _required_text(value: object, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


def _room_name(value: object) -> str:
    name = _required_text(value, "roomName")
    if name.startswith(PRIVATE_SCOPE_PREFIX):
        raise ValidationError(f"room names may not start with {PRIVATE_SCOPE_PREFIX!r}")
    return name


class ChatCore:
    """In-memory chat state for one server process.

    Args:
        seed_rooms: Rooms that exist from startup, in display order.
        default_room: Room every connection lands in on join.
        room_history_cap: Messages kept per room.
        private_history_cap: Messages kept per private thread.
        history_window: Messages sent in a ``message_history`` event.
    """

    def __init__(
        self,
        seed_rooms: Sequence[str] = DEFAULT_SEED_ROOMS,
        default_room: str = "general",
        room_history_cap: int = DEFAULT_HISTORY_CAP,
        private_history_cap: int = DEFAULT_HISTORY_CAP,
        history_window: int = DEFAULT_HISTORY_WINDOW,
    ) -> None:
        self._lock = threading.RLock()
        self.default_room = default_room
        self._history_window = history_window

        self.registry = ConnectionRegistry()
        self.rooms = RoomManager([_room_name(room) for room in (*seed_rooms, default_room)])
        self.store = MessageStore(cap=room_history_cap)
        self.private_index = PrivateChatIndex(cap=private_history_cap)
        self.typing = TypingState()
        self.fanout = Fanout()
        self.receipts = ReadReceiptPropagator(
            self.registry, self.rooms, self.store, self.private_index, self.fanout
        )

    @classmethod
    def from_settings(cls, settings: "ChatSettings") -> "ChatCore":
        return cls(
            seed_rooms=settings.seed_rooms,
            default_room=settings.default_room,
            room_history_cap=settings.room_history_cap,
            private_history_cap=settings.private_history_cap,
            history_window=settings.history_window,
        )

    # =========================================================================
    # Transport attachment
    # =========================================================================

    def attach(self, connection_id: str, outbox: Outbox) -> None:
        """Register the outbox of a newly accepted connection."""
        with self._lock:
            self.fanout.register(connection_id, outbox)

    # =========================================================================
    # Inbound events
    # =========================================================================

    def join(self, connection_id: str, identity: IdentityInfo) -> PresenceRecord:
        """Register presence and place the connection in the default room.

        Emits ``user_joined`` to every other joined connection and
        ``users_online`` to all of them, then ``available_rooms`` and
        ``message_history`` to the joiner. The joiner's outbox therefore holds
        the user list, the room list and the history window ahead of any later
        live event.

        Raises:
            ValidationError: If required identity fields are missing.
        """
        with self._lock:
            record = self.registry.register(connection_id, identity)
            previous = self.rooms.join(connection_id, self.default_room)
            if previous is not None and previous != self.default_room:
                self._stop_typing(connection_id, previous)

            self.fanout.emit(
                self._online(exclude=connection_id),
                build_event(OutboundEvent.USER_JOINED, user=record.model_dump()),
            )
            self._emit_users_online()
            self.fanout.emit(direct(connection_id), self._rooms_event())
            self._emit_room_history(connection_id, self.default_room)

            logger.info(
                f"[Core] {record.displayName} ({record.persistentIdentity}) joined as "
                f"{connection_id}, authenticated={record.authenticated}"
            )
            return record

    def send_room_message(
        self, connection_id: str, content: object, room_id: Optional[str] = None
    ) -> ChatMessage:
        """Store a room message and deliver it to every member, sender included.

        An active typing flag of the sender in that room is cleared first, so
        members see ``user_stopped_typing`` before the message.

        Raises:
            ValidationError: If the content is empty after trimming.
            NotFoundError: If the sender has no presence or is not a member
                of the target room.
        """
        with self._lock:
            sender = self._require_presence(connection_id)
            text = _required_text(content, "content")
            target_room = self._resolve_member_room(connection_id, room_id)

            self._stop_typing(connection_id, target_room)

            message = ChatMessage(
                scope=MessageScope.ROOM,
                content=text,
                senderId=connection_id,
                senderIdentity=sender.persistentIdentity,
                senderName=sender.displayName,
                senderAvatar=sender.avatar,
                roomId=target_room,
            )
            self.store.append(target_room, message)
            self.fanout.emit(
                members(self.rooms.members_of(target_room)),
                build_event(OutboundEvent.ROOM_MESSAGE, **message.model_dump()),
            )
            logger.info(f"[Core] Message from {sender.displayName} in {target_room}: {text[:50]}")
            return message

    def send_private_message(
        self,
        connection_id: str,
        content: object,
        recipient_id: Optional[str] = None,
        recipient_identity: Optional[str] = None,
    ) -> ChatMessage:
        """Store a private message and deliver it to sender and recipient.

        The recipient is named either by live connection id or by persistent
        identity. A connection id must resolve. An identity may be offline:
        the message is then stored for later retrieval and no event is
        emitted at all.

        Raises:
            ValidationError: If content or recipient is missing.
            NotFoundError: If the sender has no presence, or ``recipient_id``
                is not a live connection.
        """
        with self._lock:
            sender = self._require_presence(connection_id)
            text = _required_text(content, "content")

            recipient_connection: Optional[str] = None
            recipient_name: Optional[str] = None
            if recipient_id:
                recipient = self.registry.lookup(recipient_id)
                if recipient is None:
                    raise NotFoundError(f"recipient connection {recipient_id} is not live")
                target_identity = recipient.persistentIdentity
                recipient_connection = recipient.connectionId
                recipient_name = recipient.displayName
            else:
                target_identity = _required_text(recipient_identity, "recipient")
                recipient = self.registry.lookup_by_identity(target_identity)
                if recipient is not None:
                    recipient_connection = recipient.connectionId
                    recipient_name = recipient.displayName

            message = ChatMessage(
                scope=MessageScope.PRIVATE,
                content=text,
                senderId=connection_id,
                senderIdentity=sender.persistentIdentity,
                senderName=sender.displayName,
                senderAvatar=sender.avatar,
                recipientIdentity=target_identity,
                recipientName=recipient_name,
            )
            self.private_index.append(sender.persistentIdentity, target_identity, message)

            if recipient_connection is None:
                logger.info(
                    f"[Core] Private message from {sender.displayName} stored for offline "
                    f"identity {target_identity}"
                )
                return message

            self.fanout.emit(
                direct(connection_id, recipient_connection),
                build_event(OutboundEvent.PRIVATE_MESSAGE, **message.model_dump()),
            )
            logger.info(
                f"[Core] Private message from {sender.displayName} to {recipient_name} "
                f"({recipient_connection})"
            )
            return message

    def mark_read(
        self, connection_id: str, scope_id: str, message_ids: Iterable[str]
    ) -> List[ChatMessage]:
        """Apply read receipts. See :class:`ReadReceiptPropagator`."""
        with self._lock:
            return self.receipts.on_mark_read(connection_id, scope_id, message_ids)

    def typing_start(self, connection_id: str, room_id: Optional[str] = None) -> bool:
        return self.set_typing(connection_id, room_id, True)

    def typing_stop(self, connection_id: str, room_id: Optional[str] = None) -> bool:
        return self.set_typing(connection_id, room_id, False)

    def set_typing(self, connection_id: str, room_id: Optional[str], active: bool) -> bool:
        """Change a typing flag and tell the rest of the room.

        Repeating the current state emits nothing.

        Returns:
            True if the state changed.

        Raises:
            NotFoundError: If the connection has no presence or is not in
                the room.
        """
        with self._lock:
            record = self._require_presence(connection_id)
            target_room = self._resolve_member_room(connection_id, room_id)
            if not self.typing.set_typing(connection_id, target_room, active):
                return False

            if active:
                event = build_event(
                    OutboundEvent.USER_TYPING,
                    userId=connection_id,
                    displayName=record.displayName,
                    avatar=record.avatar,
                    roomId=target_room,
                )
            else:
                event = build_event(
                    OutboundEvent.USER_STOPPED_TYPING,
                    userId=connection_id,
                    roomId=target_room,
                )
            self.fanout.emit(members(self.rooms.members_of(target_room), exclude=connection_id), event)
            return True

    def switch_room(self, connection_id: str, room_name: object) -> Optional[str]:
        """Leave the current room, join ``room_name`` and resend its history.

        Switching to the current room only resends history. Switching to an
        unknown room creates it and broadcasts the new room list.

        Returns:
            The room the connection was in before.

        Raises:
            ValidationError: If the room name is blank.
            NotFoundError: If the connection has no presence.
        """
        with self._lock:
            self._require_presence(connection_id)
            target = _room_name(room_name)
            created = not self.rooms.has_room(target)

            previous = self.rooms.join(connection_id, target)
            if previous is not None and previous != target:
                self._stop_typing(connection_id, previous)
            if created:
                self.fanout.emit(self._online(), self._rooms_event())
            self._emit_room_history(connection_id, target)

            logger.info(f"[Core] {connection_id} switched room {previous} -> {target}")
            return previous

    def private_history(
        self, connection_id: str, peer_identity: object, limit: Optional[int] = None
    ) -> List[ChatMessage]:
        """Send the caller the history window of a private thread."""
        with self._lock:
            record = self._require_presence(connection_id)
            peer = _required_text(peer_identity, "peerIdentity")
            messages = self.private_index.history_of(
                record.persistentIdentity, peer, self._window_size(limit)
            )
            self.fanout.emit(
                direct(connection_id),
                build_event(
                    OutboundEvent.MESSAGE_HISTORY,
                    scopeId=private_scope(peer),
                    messages=[msg.model_dump() for msg in messages],
                ),
            )
            return messages

    def disconnect(self, connection_id: str) -> Optional[PresenceRecord]:
        """Tear down a connection: presence, room, typing, outbox.

        Remaining connections get ``user_stopped_typing`` for any room the
        connection was typing in, then ``user_left`` and ``users_online``.

        Returns:
            The removed PresenceRecord, or None if the connection never joined.
        """
        with self._lock:
            self.fanout.unregister(connection_id)
            record = self.registry.remove(connection_id)
            for typing_room in self.typing.clear_connection(connection_id):
                self.fanout.emit(
                    members(self.rooms.members_of(typing_room), exclude=connection_id),
                    build_event(
                        OutboundEvent.USER_STOPPED_TYPING,
                        userId=connection_id,
                        roomId=typing_room,
                    ),
                )
            self.rooms.leave(connection_id)

            if record is None:
                return None

            self.fanout.emit(
                self._online(),
                build_event(OutboundEvent.USER_LEFT, user=record.model_dump()),
            )
            self._emit_users_online()
            logger.info(f"[Core] {record.displayName} disconnected ({connection_id})")
            return record

    # =========================================================================
    # Read-only queries
    # =========================================================================

    def online_users(self) -> List[PresenceRecord]:
        with self._lock:
            return self.registry.online_users()

    def history_window(self, room_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
        with self._lock:
            return self.store.history_of(room_id, self._window_size(limit))

    def list_rooms(self) -> List[str]:
        with self._lock:
            return self.rooms.list_rooms()

    def total_messages(self) -> int:
        """Room messages currently held, across all rooms."""
        with self._lock:
            return self.store.total()

    def private_chat_count(self) -> int:
        """Private threads with at least one stored message."""
        with self._lock:
            return len(self.private_index)

    def typing_users(self, room_id: str) -> List[PresenceRecord]:
        """Presence records of connections typing in a room.

        Names are resolved now, not when typing started, so a rename shows.
        """
        with self._lock:
            records = [self.registry.lookup(cid) for cid in self.typing.typing_in(room_id)]
            return [record for record in records if record is not None]

    def close(self) -> None:
        """Discard all state. Called once at shutdown."""
        with self._lock:
            self.fanout.clear()
            self.typing.clear()
            self.private_index.clear()
            self.store.clear()
            self.rooms.clear()
            self.registry.clear()

    # =========================================================================
    # Helpers (caller holds the lock)
    # =========================================================================

    def _require_presence(self, connection_id: str) -> PresenceRecord:
        record = self.registry.lookup(connection_id)
        if record is None:
            raise NotFoundError(f"no live presence for {connection_id}")
        return record

    def _resolve_member_room(self, connection_id: str, room_id: Optional[str]) -> str:
        current = self.rooms.room_of(connection_id)
        target = room_id.strip() if isinstance(room_id, str) and room_id.strip() else current
        if target is None:
            raise NotFoundError(f"{connection_id} is not in any room")
        if not self.rooms.has_room(target):
            raise NotFoundError(f"unknown room {target}")
        if target != current:
            raise NotFoundError(f"{connection_id} is not a member of {target}")
        return target

    def _window_size(self, limit: Optional[int]) -> int:
        if limit is None:
            return self._history_window
        # bool is an int subclass; JSON floats (including 1e400 -> inf) are rejected
        if not isinstance(limit, int) or isinstance(limit, bool):
            raise ValidationError(f"invalid limit: {limit!r}")
        return max(0, limit)

    def _stop_typing(self, connection_id: str, room_id: str) -> None:
        if self.typing.set_typing(connection_id, room_id, False):
            self.fanout.emit(
                members(self.rooms.members_of(room_id), exclude=connection_id),
                build_event(
                    OutboundEvent.USER_STOPPED_TYPING,
                    userId=connection_id,
                    roomId=room_id,
                ),
            )

    def _online(self, exclude: Optional[str] = None) -> TargetRule:
        # Joined connections only; sockets that have not sent "join" yet
        # get no presence traffic.
        return members(
            [record.connectionId for record in self.registry.online_users()],
            exclude=exclude,
        )

    def _emit_users_online(self) -> None:
        self.fanout.emit(
            self._online(),
            build_event(
                OutboundEvent.USERS_ONLINE,
                users=[record.model_dump() for record in self.registry.online_users()],
            ),
        )

    def _rooms_event(self) -> dict:
        return build_event(OutboundEvent.AVAILABLE_ROOMS, rooms=self.rooms.list_rooms())

    def _emit_room_history(self, connection_id: str, room_id: str) -> None:
        messages = self.store.history_of(room_id, self._history_window)
        self.fanout.emit(
            direct(connection_id),
            build_event(
                OutboundEvent.MESSAGE_HISTORY,
                scopeId=room_id,
                roomId=room_id,
                messages=[msg.model_dump() for msg in messages],
            ),
        )
