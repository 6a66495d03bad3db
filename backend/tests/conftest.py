"""Shared test fixtures and configuration for backend tests."""
from typing import List

import pytest
from fastapi.testclient import TestClient

from huddle.chat.core import ChatCore
from huddle.chat.models import IdentityInfo
from huddle.config import AppSettings
from huddle.main import create_app


class RecordingOutbox:
    """Outbox that keeps every pushed event, for asserting fanout."""

    def __init__(self) -> None:
        self.events: List[dict] = []

    def push(self, event: dict) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event["type"] for event in self.events]

    def of_type(self, event_type: str) -> List[dict]:
        return [event for event in self.events if event["type"] == event_type]

    def clear(self) -> None:
        self.events.clear()


def identity(name: str, **extra) -> IdentityInfo:
    """Join fields for a test user whose persistent identity is ``user-<name>``."""
    return IdentityInfo(displayName=name, persistentIdentity=f"user-{name.lower()}", **extra)


@pytest.fixture
def core():
    """A fresh chat core with the default seed rooms."""
    chat_core = ChatCore()
    yield chat_core
    chat_core.close()


@pytest.fixture
def connect(core):
    """Attach a recording outbox for a connection id and optionally join.

    Usage:
        alice = connect("c-alice", "Alice")    # attached and joined
        ghost = connect("c-ghost")             # attached only
    """
    def _connect(connection_id: str, name: str = None, clear: bool = True) -> RecordingOutbox:
        outbox = RecordingOutbox()
        core.attach(connection_id, outbox)
        if name is not None:
            core.join(connection_id, identity(name))
            if clear:
                outbox.clear()
        return outbox
    return _connect


@pytest.fixture
def api_client():
    """Provide a TestClient for a freshly built app (own chat core).

    Entered as a context manager so every WebSocket shares one event loop.
    """
    with TestClient(create_app(AppSettings())) as client:
        yield client
