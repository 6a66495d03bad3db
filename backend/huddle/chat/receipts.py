"""Read receipts: apply read state and tell the original senders.

Scope ids name either a room (``"general"``) or a private thread from the
reader's point of view (``"private:<peer persistent identity>"``).

For every message whose read state changed, the sender's live connection gets
a ``message_read`` event addressed to it alone. Room reads also broadcast one
``message_read`` event with all changed ids to the rest of the room, which is
what drives shared "seen by" UI. Private reads have no other party, so only
the sender hears about them, under ``private:<reader identity>``, the scope
id of that thread from the sender's side.
"""
import logging
import time
from typing import Iterable, List, Optional

from .errors import NotFoundError, ValidationError
from .fanout import Fanout, build_event, direct, members
from .history import MessageStore, PrivateChatIndex
from .models import PRIVATE_SCOPE_PREFIX, ChatMessage, OutboundEvent, PresenceRecord
from .registry import ConnectionRegistry
from .rooms import RoomManager

logger = logging.getLogger(__name__)


def private_scope(peer_identity: str) -> str:
    """Scope id of the private thread with ``peer_identity``."""
    return f"{PRIVATE_SCOPE_PREFIX}{peer_identity}"


def parse_private_scope(scope_id: str) -> Optional[str]:
    """Peer identity named by a private scope id, or None for room scopes.

    Raises:
        ValidationError: If the scope is private but names no peer.
    """
    if not scope_id.startswith(PRIVATE_SCOPE_PREFIX):
        return None
    peer = scope_id[len(PRIVATE_SCOPE_PREFIX):].strip()
    if not peer:
        raise ValidationError("private scope requires a peer identity")
    return peer


class ReadReceiptPropagator:
    """Mutates read state and notifies original senders."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomManager,
        store: MessageStore,
        private_index: PrivateChatIndex,
        fanout: Fanout,
    ) -> None:
        self.registry = registry
        self.rooms = rooms
        self.store = store
        self.private_index = private_index
        self.fanout = fanout

    def on_mark_read(
        self, reader_connection_id: str, scope_id: str, message_ids: Iterable[str]
    ) -> List[ChatMessage]:
        """Mark messages read by the reader and propagate receipts.

        Unknown ids and ids this reader already read are skipped one by one;
        partial success is normal.

        Args:
            reader_connection_id: Connection doing the reading.
            scope_id: Room name or ``private:<peer identity>``.
            message_ids: Ids of messages the reader has seen.

        Returns:
            The messages whose read state changed.

        Raises:
            ValidationError: If scope or ids are missing.
            NotFoundError: If the reader is not live, or is not a member of
                the room named by the scope.
        """
        reader = self.registry.lookup(reader_connection_id)
        if reader is None:
            raise NotFoundError(f"no live presence for {reader_connection_id}")
        if not scope_id or not isinstance(scope_id, str):
            raise ValidationError("scopeId is required")
        ids = [mid for mid in (message_ids or []) if isinstance(mid, str) and mid]
        if not ids:
            raise ValidationError("messageIds must be a non-empty list")

        peer = parse_private_scope(scope_id)
        if peer is not None:
            changed = self.private_index.mark_read(
                reader.persistentIdentity, peer, ids, reader.persistentIdentity
            )
        else:
            if self.rooms.room_of(reader_connection_id) != scope_id:
                raise NotFoundError(f"{reader_connection_id} is not in room {scope_id}")
            changed = self.store.mark_read(scope_id, ids, reader.persistentIdentity)

        # The sender sees a private thread under the reader's identity.
        sender_scope = scope_id if peer is None else private_scope(reader.persistentIdentity)
        now = time.time()
        for msg in changed:
            sender_connection = self._live_sender_connection(msg)
            if sender_connection is None:
                continue
            self.fanout.emit(
                direct(sender_connection),
                self._read_event(reader, sender_scope, [msg], now),
            )

        if peer is None and changed:
            self.fanout.emit(
                members(self.rooms.members_of(scope_id), exclude=reader_connection_id),
                self._read_event(reader, scope_id, changed, now),
            )

        logger.info(
            f"[Receipts] {reader.displayName} read {len(changed)}/{len(ids)} message(s) in {scope_id}"
        )
        return changed

    def _live_sender_connection(self, msg: ChatMessage) -> Optional[str]:
        # Prefer the exact sending connection; fall back to any live
        # connection of the sender identity (they may have reconnected).
        record = self.registry.lookup(msg.senderId)
        if record is not None and record.persistentIdentity == msg.senderIdentity:
            return record.connectionId
        record = self.registry.lookup_by_identity(msg.senderIdentity)
        return record.connectionId if record else None

    @staticmethod
    def _read_event(
        reader: PresenceRecord, scope_id: str, messages: List[ChatMessage], ts: float
    ) -> dict:
        return build_event(
            OutboundEvent.MESSAGE_READ,
            scopeId=scope_id,
            messageIds=[msg.id for msg in messages],
            readerId=reader.connectionId,
            readerIdentity=reader.persistentIdentity,
            readerName=reader.displayName,
            ts=ts,
        )
