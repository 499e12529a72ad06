"""
Tests for the realtime store.

Tests cover:
- Push key generation and ordering
- Server timestamps on push and update
- Partial updates (merge semantics)
- Ordered, windowed queries
- Listener delivery, redelivery rules and unsubscribe
- Read failures routed to the listener's error channel
"""

import pytest
from sqlalchemy.exc import OperationalError

from streamchat.storage import SERVER_TIMESTAMP, RealtimeStore, RecordNotFound
from streamchat.utils import PUSH_CHARS, PushIdGenerator


class TestPushIds:
    """Test chronologically sortable record keys."""

    def test_key_length_and_alphabet(self):
        key = PushIdGenerator().generate(1_700_000_000_000)
        assert len(key) == 20
        assert all(c in PUSH_CHARS for c in key)

    def test_keys_sort_by_time(self):
        gen = PushIdGenerator()
        earlier = gen.generate(1_700_000_000_000)
        later = gen.generate(1_700_000_000_001)
        assert earlier < later

    def test_same_millisecond_keys_stay_ordered(self):
        gen = PushIdGenerator()
        keys = [gen.generate(1_700_000_000_000) for _ in range(50)]
        assert keys == sorted(keys)
        assert len(set(keys)) == 50
        # time prefix is shared, only the random suffix moves
        assert len({k[:8] for k in keys}) == 1


class TestWrites:
    """Test push and update."""

    def test_push_resolves_server_timestamp(self, store, clock):
        expected_ts = clock.now
        key = store.push("messages", {"body": "hi", "sentAt": SERVER_TIMESTAMP})

        record = store.get("messages", key)
        assert record == {"body": "hi", "sentAt": expected_ts}

    def test_update_merges_fields(self, store):
        key = store.push("messages", {"body": "hi", "sentAt": SERVER_TIMESTAMP, "deleted": False})
        before = store.get("messages", key)

        store.update("messages", key, {"deleted": True, "deletedBy": "Mod1"})

        after = store.get("messages", key)
        assert after["deleted"] is True
        assert after["deletedBy"] == "Mod1"
        assert after["body"] == "hi"
        assert after["sentAt"] == before["sentAt"]

    def test_update_resolves_server_timestamp(self, store, clock):
        key = store.push("messages", {"body": "hi"})
        expected_ts = clock.now

        store.update("messages", key, {"deletedAt": SERVER_TIMESTAMP})

        assert store.get("messages", key)["deletedAt"] == expected_ts

    def test_update_missing_key_raises(self, store):
        with pytest.raises(RecordNotFound):
            store.update("messages", "does-not-exist", {"deleted": True})

    def test_paths_are_isolated(self, store):
        key = store.push("messages", {"body": "hi"})
        assert store.get("other", key) is None


class TestQuery:
    """Test ordered, windowed reads."""

    def test_query_returns_most_recent_window_ascending(self, store):
        keys = [store.push("messages", {"n": i, "sentAt": SERVER_TIMESTAMP}) for i in range(5)]

        window = store.query("messages", "sentAt", 3)

        assert [k for k, _ in window] == keys[2:]
        assert [d["n"] for _, d in window] == [2, 3, 4]

    def test_query_orders_by_child_not_insertion(self, store):
        store.push("messages", {"name": "late", "sentAt": 3000})
        store.push("messages", {"name": "early", "sentAt": 1000})
        store.push("messages", {"name": "middle", "sentAt": 2000})

        window = store.query("messages", "sentAt", 10)

        assert [d["name"] for _, d in window] == ["early", "middle", "late"]

    def test_empty_path(self, store):
        assert store.query("messages", "sentAt", 10) == []


class TestListeners:
    """Test live listeners."""

    def test_initial_snapshot_delivered_immediately(self, store):
        store.push("messages", {"body": "first", "sentAt": SERVER_TIMESTAMP})
        deliveries = []

        store.listen("messages", "sentAt", 10, deliveries.append)

        assert len(deliveries) == 1
        assert [d["body"] for _, d in deliveries[0]] == ["first"]

    def test_every_write_delivers_full_window(self, store):
        deliveries = []
        store.listen("messages", "sentAt", 10, deliveries.append)

        key = store.push("messages", {"body": "one", "sentAt": SERVER_TIMESTAMP})
        store.push("messages", {"body": "two", "sentAt": SERVER_TIMESTAMP})
        store.update("messages", key, {"deleted": True})

        assert len(deliveries) == 4
        assert deliveries[0] == []
        assert [d["body"] for _, d in deliveries[2]] == ["one", "two"]
        assert deliveries[3][0][1]["deleted"] is True

    def test_writes_elsewhere_do_not_redeliver(self, store):
        deliveries = []
        store.listen("messages", "sentAt", 10, deliveries.append)

        store.push("other", {"body": "elsewhere"})

        assert len(deliveries) == 1

    def test_change_outside_window_does_not_redeliver(self, store):
        old_key = store.push("messages", {"body": "old", "sentAt": SERVER_TIMESTAMP})
        store.push("messages", {"body": "new", "sentAt": SERVER_TIMESTAMP})
        deliveries = []
        store.listen("messages", "sentAt", 1, deliveries.append)

        store.update("messages", old_key, {"deleted": True})

        assert len(deliveries) == 1

    def test_unsubscribe_stops_delivery_and_is_idempotent(self, store):
        deliveries = []
        unsubscribe = store.listen("messages", "sentAt", 10, deliveries.append)
        assert store.listener_count("messages") == 1

        unsubscribe()
        unsubscribe()
        store.push("messages", {"body": "late"})

        assert store.listener_count() == 0
        assert len(deliveries) == 1

    def test_delivered_snapshot_is_a_copy(self, store):
        store.push("messages", {"body": "hi"})
        deliveries = []
        store.listen("messages", "sentAt", 10, deliveries.append)

        deliveries[0][0][1]["body"] = "tampered"

        assert store.get("messages", deliveries[0][0][0])["body"] == "hi"

    def test_read_failure_goes_to_error_channel(self, tmp_path):
        class BrokenReads(RealtimeStore):
            def query(self, path, order_by, limit_to_last):
                raise OperationalError("SELECT", {}, Exception("database is locked"))

        store = BrokenReads(f"sqlite:///{tmp_path / 'broken.db'}")
        store.init_db()
        values, errors = [], []

        store.listen("messages", "sentAt", 10, values.append, errors.append)

        assert values == []
        assert len(errors) == 1
        assert isinstance(errors[0], OperationalError)
        # the listener is not torn down on error
        assert store.listener_count("messages") == 1
        store.dispose()

    def test_failed_first_delivery_unregisters_listener(self, store):
        def crash(snapshot):
            raise RuntimeError("handler crashed")

        with pytest.raises(RuntimeError):
            store.listen("messages", "sentAt", 10, crash)

        assert store.listener_count() == 0

    def test_failing_listener_does_not_fail_write(self, store):
        calls = []

        def crash_after_first(snapshot):
            calls.append(snapshot)
            if len(calls) > 1:
                raise RuntimeError("handler crashed")

        deliveries = []
        store.listen("messages", "sentAt", 10, crash_after_first)
        store.listen("messages", "sentAt", 10, deliveries.append)

        key = store.push("messages", {"body": "hi", "sentAt": SERVER_TIMESTAMP})

        assert store.get("messages", key)["body"] == "hi"
        assert [d["body"] for _, d in deliveries[-1]] == ["hi"]


class TestHealth:
    def test_ping_healthy(self, store):
        assert store.ping() is True

    def test_ping_without_schema(self, store):
        store.drop_db()
        assert store.ping() is False
