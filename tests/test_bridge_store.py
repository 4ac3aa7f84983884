"""
Tests for the bridge store and its key-value backends.
"""

import json
import os
import threading
from unittest.mock import MagicMock

import pytest
import redis

from callbridge.core.models import IncomingCallFact, PendingAction, PendingRecord
from callbridge.exceptions import StoreError
from callbridge.store import BridgeStore, InMemoryBackend, JsonFileBackend, RedisBackend, create_backend
from callbridge.config.schema import StoreConfig

from conftest import T0


def record(action=PendingAction.ACCEPT, call_id="c1", stored_at=T0):
    return PendingRecord.from_fact(action, IncomingCallFact("alice", call_id=call_id), stored_at)


class TestActiveCallGuard:
    """Guard set, clear and staleness."""

    def test_mark_and_read(self, store):
        store.mark_active_call("c1")
        assert store.get_active_call_key() == "c1"

    def test_clear(self, store):
        store.mark_active_call("c1")
        store.clear_active_call()
        assert store.get_active_call_key() is None

    def test_guard_expires_without_clear(self, store, clock):
        store.mark_active_call("c1")
        clock.advance(120_000)
        assert store.get_active_call_key() == "c1"
        clock.advance(1)
        assert store.get_active_call_key() is None
        # The stale guard is gone from the backend too
        assert store.get_active_call_guard().call_key is None

    def test_guard_without_timestamp_never_expires(self, store, backend, clock):
        backend.set("test:active_call_id", "legacy")
        clock.advance(10**9)
        assert store.get_active_call_key() == "legacy"


    def test_try_reserve_when_free(self, store):
        assert store.try_reserve_active_call("c1") is True
        assert store.get_active_call_key() == "c1"

    def test_try_reserve_when_held(self, store):
        store.mark_active_call("c1")
        assert store.try_reserve_active_call("c2") is False
        assert store.get_active_call_key() == "c1"

    def test_try_reserve_replaces_stale_guard(self, store, clock):
        store.mark_active_call("c1")
        clock.advance(120_001)
        assert store.try_reserve_active_call("c2") is True
        assert store.get_active_call_key() == "c2"

    def test_concurrent_reservations_have_one_winner(self, store):
        barrier = threading.Barrier(8)
        winners = []

        def reserve(n):
            barrier.wait()
            if store.try_reserve_active_call(f"c{n}"):
                winners.append(n)

        threads = [threading.Thread(target=reserve, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(winners) == 1
        assert store.get_active_call_key() == f"c{winners[0]}"


class TestLastProcessed:
    """Dedup history."""

    def test_record_and_read(self, store):
        store.record_last_processed("c1", 900)
        last = store.get_last_processed()
        assert last.call_id == "c1"
        assert last.server_ts_ms == 900

    def test_absent_values_clear_fields(self, store):
        store.record_last_processed("c1", 900)
        store.record_last_processed(None, None)
        last = store.get_last_processed()
        assert last.call_id is None
        assert last.server_ts_ms is None


class TestOfferCache:
    """Single-slot offer cache."""

    def test_take_matching_offer_consumes_it(self, store):
        store.cache_offer("alice", "c1", T0, "sdp-1")
        assert store.take_offer_if_matching("alice", "c1") == "sdp-1"
        assert store.get_cached_offer() is None

    def test_mismatched_offer_is_kept(self, store):
        store.cache_offer("alice", "c1", T0, "sdp-1")
        assert store.take_offer_if_matching("bob", "c1") is None
        assert store.take_offer_if_matching("alice", "c2") is None
        assert store.get_cached_offer().payload == "sdp-1"

    def test_new_offer_replaces_old(self, store):
        store.cache_offer("alice", "c1", T0, "sdp-1")
        store.cache_offer("bob", None, None, "sdp-2")
        offer = store.get_cached_offer()
        assert offer.caller_key == "bob"
        assert offer.call_id is None
        assert offer.server_ts_ms == 0
        assert offer.payload == "sdp-2"


class TestMailbox:
    """Single-slot, overwrite-on-write, destructive-read mailbox."""

    def test_read_and_clear_is_idempotent(self, store):
        store.publish_pending(PendingAction.ACCEPT, record())
        assert store.take_and_clear_pending(PendingAction.ACCEPT) == record()
        assert store.take_and_clear_pending(PendingAction.ACCEPT) is None

    def test_slots_are_independent(self, store):
        store.publish_pending(PendingAction.REJECT, record(PendingAction.REJECT))
        assert store.take_and_clear_pending("accept") is None
        assert store.take_and_clear_pending("reject").action is PendingAction.REJECT

    def test_unread_value_is_overwritten(self, store):
        store.publish_pending(PendingAction.ACCEPT, record(call_id="c1"))
        store.publish_pending(PendingAction.ACCEPT, record(call_id="c2"))
        assert store.take_and_clear_pending(PendingAction.ACCEPT).call_id == "c2"

    def test_unreadable_record_is_discarded(self, store, backend):
        backend.set("test:pending_accept_json", "{not json")
        assert store.take_and_clear_pending(PendingAction.ACCEPT) is None
        assert store.peek_pending(PendingAction.ACCEPT) is None

    def test_concurrent_readers_get_one_record(self, store):
        store.publish_pending(PendingAction.ACCEPT, record())
        results = []
        barrier = threading.Barrier(8)

        def reader():
            barrier.wait()
            results.append(store.take_and_clear_pending(PendingAction.ACCEPT))

        threads = [threading.Thread(target=reader) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(1 for r in results if r is not None) == 1


class TestRegistrationLatch:
    """One-time account registration latch."""

    def test_latch(self, store):
        assert store.is_registration_done() is False
        store.set_registration_done()
        assert store.is_registration_done() is True
        store.set_registration_done(False)
        assert store.is_registration_done() is False


class TestSnapshot:
    """Namespaced snapshot."""

    def test_snapshot_strips_namespace(self, store, backend):
        backend.set("other:active_call_id", "x")
        store.mark_active_call("c1")
        snapshot = store.snapshot()
        assert snapshot["active_call_id"] == "c1"
        assert str(T0) == snapshot["active_call_set_at_ms"]
        assert "other:active_call_id" not in snapshot


class TestJsonFileBackend:
    """File-backed persistence."""

    def test_state_survives_reopen(self, tmp_path, clock):
        path = tmp_path / "store.json"
        store = BridgeStore(JsonFileBackend(str(path)), clock=clock)
        store.mark_active_call("c1")
        store.publish_pending(PendingAction.ACCEPT, record())

        reopened = BridgeStore(JsonFileBackend(str(path)), clock=clock)
        assert reopened.get_active_call_key() == "c1"
        assert reopened.take_and_clear_pending(PendingAction.ACCEPT) == record()
        assert "callbridge:pending_accept_json" not in json.loads(path.read_text())

    def test_corrupt_file_starts_empty(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{broken")
        backend = JsonFileBackend(str(path))
        assert backend.items() == {}

    def test_write_failure_raises_store_error(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        backend = JsonFileBackend(str(blocker / "store.json"))
        with pytest.raises(StoreError):
            backend.set("k", "v")

    def test_failed_write_rolls_back(self, tmp_path, monkeypatch):
        path = tmp_path / "store.json"
        backend = JsonFileBackend(str(path))
        backend.set("k", "v1")

        def fail_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", fail_replace)
        with pytest.raises(StoreError):
            backend.set("k", "v2")
        with pytest.raises(StoreError):
            backend.pop("k")
        with pytest.raises(StoreError):
            backend.delete("k")

        assert backend.get("k") == "v1"
        assert json.loads(path.read_text()) == {"k": "v1"}
        assert [p.name for p in tmp_path.iterdir()] == ["store.json"]


class TestRedisBackend:
    """Redis backend against a mocked client."""

    @pytest.fixture
    def client(self):
        return MagicMock(spec=redis.Redis)

    def test_connect_pings(self, client):
        backend = RedisBackend(client=client).connect()
        client.ping.assert_called_once()
        assert backend.client is client

    def test_pop_uses_getdel(self, client):
        client.getdel.return_value = "value"
        backend = RedisBackend(client=client)
        assert backend.pop("k") == "value"
        client.getdel.assert_called_once_with("k")

    def test_items_scans_prefix(self, client):
        client.scan_iter.return_value = iter(["ns:a", "ns:b"])
        client.mget.return_value = ["1", None]
        backend = RedisBackend(client=client)
        assert backend.items("ns:") == {"ns:a": "1"}
        client.scan_iter.assert_called_once_with(match="ns:*")

    def test_redis_errors_become_store_errors(self, client):
        client.get.side_effect = redis.exceptions.ConnectionError("down")
        backend = RedisBackend(client=client)
        with pytest.raises(StoreError):
            backend.get("k")

    def test_unconnected_backend_raises(self):
        with pytest.raises(StoreError):
            RedisBackend().get("k")

    def test_close(self, client):
        backend = RedisBackend(client=client)
        backend.close()
        client.close.assert_called_once()
        assert backend.client is None


class TestCreateBackend:
    """Backend selection from settings."""

    def test_memory(self):
        assert isinstance(create_backend(StoreConfig(backend="memory")), InMemoryBackend)

    def test_file(self, tmp_path):
        backend = create_backend(StoreConfig(backend="file", file_path=str(tmp_path / "s.json")))
        assert isinstance(backend, JsonFileBackend)
