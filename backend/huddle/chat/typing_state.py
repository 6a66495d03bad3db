"""Ephemeral typing flags per (room, connection).

Event driven only: there is no expiry timer. An entry exists exactly while
the connection is typing in that room.
"""
from typing import Dict, List, Set


class TypingState:
    """Tracks which connections are typing in which rooms."""

    def __init__(self) -> None:
        # room name -> connection ids currently typing (dict keeps start order)
        self._typing: Dict[str, Dict[str, None]] = {}

    def set_typing(self, connection_id: str, room: str, active: bool) -> bool:
        """Set a connection's typing flag in a room.

        Returns:
            True if the state changed, False if it was already in that state.
        """
        typists = self._typing.get(room, {})
        if active == (connection_id in typists):
            return False
        if active:
            self._typing.setdefault(room, {})[connection_id] = None
        else:
            del typists[connection_id]
            if not typists:
                del self._typing[room]
        return True

    def is_typing(self, connection_id: str, room: str) -> bool:
        return connection_id in self._typing.get(room, {})

    def typing_in(self, room: str) -> List[str]:
        """Connection ids typing in a room, in the order they started."""
        return list(self._typing.get(room, {}))

    def clear_connection(self, connection_id: str) -> Set[str]:
        """Stop every typing entry of a connection.

        Returns:
            The rooms in which the connection had been typing.
        """
        rooms = {room for room, typists in self._typing.items() if connection_id in typists}
        for room in rooms:
            self.set_typing(connection_id, room, False)
        return rooms

    def clear(self) -> None:
        self._typing.clear()
