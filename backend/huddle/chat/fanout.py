"""Fanout: deliver one event to a computed set of connections.

The core never talks to a socket. It hands ``Fanout.emit`` a target rule and
a payload; the rule picks connection ids out of the registered outboxes and
each selected outbox gets the event pushed onto it.

Outboxes decouple the core from the transport:

    - ``push`` never blocks and never raises, so a slow or dead peer cannot
      stall the handler that produced the event.
    - Each outbox is FIFO, so the order events are pushed for one connection
      is the order that connection sees them. This is what makes "history
      before live messages" hold on join.

``QueueOutbox`` is the WebSocket implementation: an ``asyncio.Queue``
drained by a writer task (see ``QueueOutbox.pump``).
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Collection, Dict, Iterable, List, Optional, Protocol

from .models import OutboundEvent

logger = logging.getLogger(__name__)

TargetRule = Callable[[Collection[str]], Iterable[str]]


class Outbox(Protocol):
    """Per-connection sink for outbound events."""

    def push(self, event: dict) -> None:
        ...


def build_event(event_type: OutboundEvent, **payload: Any) -> dict:
    """Wire form of an outbound event: ``{"type": ..., **payload}``."""
    return {"type": event_type.value, **payload}


# =============================================================================
# Target rules
# =============================================================================


def members(connection_ids: Iterable[str], exclude: Optional[str] = None) -> TargetRule:
    """A member set (a room, or everyone online), optionally minus the sender."""
    targets = [cid for cid in connection_ids if cid != exclude]

    def select(registered: Collection[str]) -> Iterable[str]:
        return [cid for cid in targets if cid in registered]
    return select


def direct(*connection_ids: Optional[str]) -> TargetRule:
    """Exactly the given connections, deduplicated, in the given order."""
    targets = list(dict.fromkeys(cid for cid in connection_ids if cid))

    def select(registered: Collection[str]) -> Iterable[str]:
        return [cid for cid in targets if cid in registered]
    return select


# =============================================================================
# Fanout
# =============================================================================


class Fanout:
    """Registry of outboxes plus the single delivery primitive."""

    def __init__(self) -> None:
        # connection_id -> Outbox (dict keeps registration order)
        self._outboxes: Dict[str, Outbox] = {}

    def register(self, connection_id: str, outbox: Outbox) -> None:
        self._outboxes[connection_id] = outbox

    def unregister(self, connection_id: str) -> Optional[Outbox]:
        return self._outboxes.pop(connection_id, None)

    def is_registered(self, connection_id: str) -> bool:
        return connection_id in self._outboxes

    def emit(self, rule: TargetRule, event: dict) -> List[str]:
        """Push ``event`` onto every outbox selected by ``rule``.

        Returns:
            The connection ids the event was pushed to.
        """
        targets = list(rule(self._outboxes.keys()))
        for connection_id in targets:
            self._outboxes[connection_id].push(event)
        logger.debug(f"[Fanout] {event.get('type')} -> {len(targets)} connection(s)")
        return targets

    def clear(self) -> None:
        self._outboxes.clear()


class QueueOutbox:
    """Outbox backed by an ``asyncio.Queue`` and drained by ``pump``.

    When the queue is full the event is dropped and counted; delivery is
    best effort while online.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def push(self, event: dict) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"[Fanout] Outbox full, dropped {event.get('type')} event")

    async def pump(self, send: Callable[[dict], Awaitable[None]]) -> None:
        """Send queued events in order until the connection fails.

        Args:
            send: Coroutine function writing one event to the transport,
                typically ``websocket.send_json``.
        """
        while True:
            event = await self._queue.get()
            try:
                await send(event)
            except Exception as e:
                logger.debug(f"Failed to send to connection: {e}")
                return
