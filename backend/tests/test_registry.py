"""Tests for the connection registry (dual keying by connection and identity)."""
import pytest

from huddle.chat.errors import ValidationError
from huddle.chat.models import IdentityInfo
from huddle.chat.registry import ConnectionRegistry


def make_identity(**overrides) -> IdentityInfo:
    fields = {"displayName": "Alice", "persistentIdentity": "user-alice"}
    fields.update(overrides)
    return IdentityInfo(**fields)


class TestRegister:
    def test_register_creates_record(self):
        registry = ConnectionRegistry()
        record = registry.register("c1", make_identity(email="a@example.com", avatar="a.png"))

        assert record.connectionId == "c1"
        assert record.persistentIdentity == "user-alice"
        assert record.displayName == "Alice"
        assert record.email == "a@example.com"
        assert record.avatar == "a.png"
        assert record.authenticated is False
        assert record.joinedAt > 0

    def test_register_trims_fields(self):
        registry = ConnectionRegistry()
        record = registry.register("c1", make_identity(displayName="  Alice  ", email="  "))

        assert record.displayName == "Alice"
        assert record.email is None

    @pytest.mark.parametrize("field", ["displayName", "persistentIdentity"])
    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_register_rejects_missing_required_field(self, field, value):
        registry = ConnectionRegistry()
        with pytest.raises(ValidationError):
            registry.register("c1", make_identity(**{field: value}))
        assert len(registry) == 0

    def test_register_replaces_stale_record(self):
        registry = ConnectionRegistry()
        registry.register("c1", make_identity())
        record = registry.register("c1", make_identity(displayName="Bob", persistentIdentity="user-bob"))

        assert registry.lookup("c1") == record
        assert len(registry) == 1
        assert registry.lookup_by_identity("user-alice") is None
        assert registry.lookup_by_identity("user-bob") == record


class TestLookup:
    def test_lookup_unknown_connection(self):
        assert ConnectionRegistry().lookup("nope") is None

    def test_lookup_by_identity_returns_latest_connection(self):
        registry = ConnectionRegistry()
        registry.register("tab-1", make_identity())
        second = registry.register("tab-2", make_identity())

        assert registry.lookup_by_identity("user-alice") == second
        assert registry.connections_for_identity("user-alice") == ["tab-1", "tab-2"]

    def test_identity_lookup_falls_back_after_remove(self):
        registry = ConnectionRegistry()
        first = registry.register("tab-1", make_identity())
        registry.register("tab-2", make_identity())

        registry.remove("tab-2")

        assert registry.lookup_by_identity("user-alice") == first

    def test_online_users_in_registration_order(self):
        registry = ConnectionRegistry()
        registry.register("c1", make_identity())
        registry.register("c2", make_identity(displayName="Bob", persistentIdentity="user-bob"))

        assert [r.connectionId for r in registry.online_users()] == ["c1", "c2"]


class TestRemove:
    def test_remove_returns_record_and_clears_both_indices(self):
        registry = ConnectionRegistry()
        record = registry.register("c1", make_identity())

        assert registry.remove("c1") == record
        assert registry.lookup("c1") is None
        assert registry.lookup_by_identity("user-alice") is None
        assert "c1" not in registry

    def test_remove_unknown_is_none(self):
        assert ConnectionRegistry().remove("nope") is None
