"""Room membership tracking.

Each connection is in at most one room. ``join`` moves a connection between
rooms in one step: the caller holds the core lock, and both index updates
happen before control returns, so no observer sees a connection in two rooms
or in none.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


class RoomManager:
    """Tracks room membership and each connection's active room."""

    def __init__(self, seed_rooms: Iterable[str] = ()) -> None:
        # room name -> member connection ids (dict keeps creation order)
        self._members: Dict[str, Set[str]] = {}

        # connection_id -> room name
        self._room_of: Dict[str, str] = {}

        for room in seed_rooms:
            self._ensure_room(room)

    def join(self, connection_id: str, room: str) -> Optional[str]:
        """Move a connection into ``room``, creating the room if unknown.

        Joining the room the connection is already in leaves membership
        unchanged.

        Args:
            connection_id: Live connection id.
            room: Target room name.

        Returns:
            The previous room name, or None if the connection had none.
        """
        previous = self._room_of.get(connection_id)
        if previous == room:
            return previous

        members = self._ensure_room(room)
        if previous is not None:
            self._members[previous].discard(connection_id)
        members.add(connection_id)
        self._room_of[connection_id] = room

        logger.debug(f"[Rooms] {connection_id} moved {previous} -> {room}")
        return previous

    def leave(self, connection_id: str) -> Optional[str]:
        """Remove a connection from its room. Returns the room it left."""
        room = self._room_of.pop(connection_id, None)
        if room is not None:
            self._members[room].discard(connection_id)
        return room

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._room_of.get(connection_id)

    def members_of(self, room: str) -> Set[str]:
        """Current member set of a room (a copy; empty for unknown rooms)."""
        return set(self._members.get(room, ()))

    def list_rooms(self) -> List[str]:
        """Known room names in creation order."""
        return list(self._members)

    def has_room(self, room: str) -> bool:
        return room in self._members

    def clear(self) -> None:
        self._members.clear()
        self._room_of.clear()

    def _ensure_room(self, room: str) -> Set[str]:
        if room not in self._members:
            self._members[room] = set()
            logger.info(f"[Rooms] Created room {room}")
        return self._members[room]
