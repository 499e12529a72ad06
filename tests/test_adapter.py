"""
Tests for the backend stream adapter.

Tests cover:
- Record shape written by append
- Decoding and skipping of malformed records
- Error mapping for append, patch and subscribe
- Exactly-once unsubscribe and the subscription gauge
"""

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from streamchat.adapter import BackendStreamAdapter, decode_snapshot
from streamchat.errors import BackendReadError, BackendWriteError
from streamchat.schemas import MessageDraft
from streamchat.storage import RealtimeStore

from conftest import insert_raw, run


def make_draft(body="hello", author_id="u1", display_name="Alice", avatar_url=None):
    return MessageDraft(author_id=author_id, display_name=display_name, avatar_url=avatar_url, body=body)


def active_subscriptions() -> float:
    return REGISTRY.get_sample_value("chat_active_subscriptions")


class TestAppend:
    """Test message creation."""

    def test_append_writes_backend_record_shape(self, adapter, store, clock):
        expected_ts = clock.now

        message_id = run(adapter.append("messages", make_draft(avatar_url="https://cdn.example/a.png")))

        assert store.get("messages", message_id) == {
            "authorId": "u1",
            "displayName": "Alice",
            "avatarUrl": "https://cdn.example/a.png",
            "body": "hello",
            "sentAt": expected_ts,
            "deleted": False,
        }

    def test_append_omits_missing_avatar(self, adapter, store):
        message_id = run(adapter.append("messages", make_draft()))
        assert "avatarUrl" not in store.get("messages", message_id)

    def test_append_failure_raises_write_error(self, tmp_path):
        class BrokenWrites(RealtimeStore):
            def push(self, path, value):
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        adapter = BackendStreamAdapter(BrokenWrites(f"sqlite:///{tmp_path / 'broken.db'}"))

        with pytest.raises(BackendWriteError) as exc_info:
            run(adapter.append("messages", make_draft()))
        assert isinstance(exc_info.value.cause, OperationalError)


class TestPatch:
    """Test partial updates."""

    def test_patch_merges_fields(self, adapter, store):
        message_id = run(adapter.append("messages", make_draft()))

        run(adapter.patch("messages", message_id, {"deleted": True, "deletedAt": 5, "deletedBy": "Mod1"}))

        record = store.get("messages", message_id)
        assert record["deleted"] is True
        assert record["deletedBy"] == "Mod1"
        assert record["body"] == "hello"

    def test_patch_missing_record_raises_write_error(self, adapter):
        with pytest.raises(BackendWriteError):
            run(adapter.patch("messages", "missing", {"deleted": True}))


class TestDecode:
    """Test the validated decode step."""

    def test_valid_record(self):
        messages = decode_snapshot([
            ("k1", {"authorId": "u1", "displayName": "Alice", "body": "hi", "sentAt": 10, "deleted": False}),
        ])
        assert len(messages) == 1
        assert messages[0].id == "k1"
        assert messages[0].author_id == "u1"
        assert messages[0].deleted is False

    def test_malformed_records_are_skipped(self):
        snapshot = [
            ("ok", {"authorId": "u1", "displayName": "Alice", "body": "hi", "sentAt": 10}),
            ("no-body", {"authorId": "u1", "displayName": "Alice", "sentAt": 11}),
            ("bad-ts", {"authorId": "u1", "displayName": "Alice", "body": "hi", "sentAt": "yesterday"}),
            ("half-deleted", {"authorId": "u1", "displayName": "Alice", "body": "hi", "sentAt": 12, "deleted": True}),
            ("stray-audit", {"authorId": "u1", "displayName": "Alice", "body": "hi", "sentAt": 13, "deletedBy": "Mod1"}),
        ]

        messages = decode_snapshot(snapshot)

        assert [m.id for m in messages] == ["ok"]

    @pytest.mark.parametrize("data", ["not an object", ["a", "b"], 42, None])
    def test_non_object_records_are_skipped(self, data):
        messages = decode_snapshot([
            ("bad", data),
            ("ok", {"authorId": "u1", "displayName": "Alice", "body": "hi", "sentAt": 10}),
        ])

        assert [m.id for m in messages] == ["ok"]

    def test_subscription_skips_malformed_records(self, adapter, store):
        store.push("messages", {"garbage": True})
        run(adapter.append("messages", make_draft(body="valid")))
        deliveries = []

        adapter.subscribe_ordered("messages", "sentAt", 10, deliveries.append)

        assert [m.body for m in deliveries[-1]] == ["valid"]

    def test_subscription_skips_non_object_records(self, adapter, store):
        insert_raw(store, "-raw", "not an object")
        run(adapter.append("messages", make_draft(body="valid")))
        deliveries = []

        subscription = adapter.subscribe_ordered("messages", "sentAt", 10, deliveries.append)

        assert [m.body for m in deliveries[-1]] == ["valid"]
        subscription.unsubscribe()
        assert store.listener_count() == 0


class TestSubscription:
    """Test subscription lifetime."""

    def test_unsubscribe_exactly_once(self, adapter, store):
        before = active_subscriptions()
        subscription = adapter.subscribe_ordered("messages", "sentAt", 10, lambda messages: None)
        assert subscription.active
        assert active_subscriptions() == before + 1

        subscription.unsubscribe()
        subscription.unsubscribe()

        assert not subscription.active
        assert store.listener_count() == 0
        assert active_subscriptions() == before

    def test_read_failure_delivered_as_backend_read_error(self, tmp_path):
        class BrokenReads(RealtimeStore):
            def query(self, path, order_by, limit_to_last):
                raise OperationalError("SELECT", {}, Exception("database is locked"))

        store = BrokenReads(f"sqlite:///{tmp_path / 'broken.db'}")
        adapter = BackendStreamAdapter(store)
        errors = []

        subscription = adapter.subscribe_ordered("messages", "sentAt", 10, lambda messages: None, errors.append)

        assert len(errors) == 1
        assert isinstance(errors[0], BackendReadError)
        assert subscription.active
        subscription.unsubscribe()
        store.dispose()
