"""Connection registry: presence records indexed two ways.

The registry keeps two explicit indices:

    - by connection id: one record per live transport session
    - by persistent identity: the live connection ids of that identity, in
      registration order (one user may have several tabs or devices)

Only the identity index is meaningful across reconnects; connection ids die
with their socket. The registry never notifies anyone, callers own fanout.
"""
import logging
from typing import Dict, List, Optional

from .errors import ValidationError
from .models import IdentityInfo, PresenceRecord

logger = logging.getLogger(__name__)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class ConnectionRegistry:
    """Maps live connections to presence records."""

    def __init__(self) -> None:
        # connection_id -> PresenceRecord
        self._by_connection: Dict[str, PresenceRecord] = {}

        # persistent identity -> [connection_id, ...] (oldest first)
        self._by_identity: Dict[str, List[str]] = {}

    def register(self, connection_id: str, identity: IdentityInfo) -> PresenceRecord:
        """Create the presence record for a connection.

        Any stale record for the same connection id is replaced, including
        its identity-index entry.

        Args:
            connection_id: Live connection id.
            identity: Identity fields from the join request.

        Returns:
            The new PresenceRecord.

        Raises:
            ValidationError: If the display name or persistent identity is
                missing or blank.
        """
        if not connection_id:
            raise ValidationError("connection id is required")
        display_name = _clean(identity.displayName)
        persistent_identity = _clean(identity.persistentIdentity)
        if not display_name:
            raise ValidationError("displayName is required")
        if not persistent_identity:
            raise ValidationError("persistentIdentity is required")

        record = PresenceRecord(
            connectionId=connection_id,
            persistentIdentity=persistent_identity,
            displayName=display_name,
            avatar=_clean(identity.avatar),
            email=_clean(identity.email),
            authenticated=identity.authenticated,
        )

        if connection_id in self._by_connection:
            logger.info(f"[Registry] Replacing stale record for {connection_id}")
            self._unindex(self._by_connection[connection_id])

        self._by_connection[connection_id] = record
        self._by_identity.setdefault(persistent_identity, []).append(connection_id)
        return record

    def lookup(self, connection_id: str) -> Optional[PresenceRecord]:
        """Get the live record for a connection id, if any."""
        return self._by_connection.get(connection_id)

    def lookup_by_identity(self, persistent_identity: str) -> Optional[PresenceRecord]:
        """Get the most recently registered live record for an identity."""
        connection_ids = self._by_identity.get(persistent_identity)
        if not connection_ids:
            return None
        return self._by_connection[connection_ids[-1]]

    def connections_for_identity(self, persistent_identity: str) -> List[str]:
        """Get every live connection id of an identity, oldest first."""
        return list(self._by_identity.get(persistent_identity, []))

    def remove(self, connection_id: str) -> Optional[PresenceRecord]:
        """Evict a connection's record and return it for downstream cleanup."""
        record = self._by_connection.pop(connection_id, None)
        if record is not None:
            self._unindex(record)
        return record

    def online_users(self) -> List[PresenceRecord]:
        """Snapshot of all live records in registration order."""
        return list(self._by_connection.values())

    def __len__(self) -> int:
        return len(self._by_connection)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._by_connection

    def clear(self) -> None:
        self._by_connection.clear()
        self._by_identity.clear()

    def _unindex(self, record: PresenceRecord) -> None:
        connection_ids = self._by_identity.get(record.persistentIdentity)
        if not connection_ids:
            return
        if record.connectionId in connection_ids:
            connection_ids.remove(record.connectionId)
        if not connection_ids:
            del self._by_identity[record.persistentIdentity]
