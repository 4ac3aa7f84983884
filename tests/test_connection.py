"""
Tests for the incoming connection state machine.
"""

import threading
from unittest.mock import MagicMock

import pytest

from callbridge.core.connection import ConnectionState, DisconnectCause, IncomingConnection
from callbridge.core.models import PendingAction
from callbridge.exceptions import StoreError

from conftest import T0, make_fact


@pytest.fixture
def connection(store, registry, ui, clock):
    store.mark_active_call("call-1")
    return IncomingConnection(make_fact(), store=store, registry=registry, ui=ui, clock=clock)


@pytest.fixture
def ringing(connection):
    connection.set_ringing()
    return connection


class TestRinging:
    """Initial state and ringing."""

    def test_starts_initializing(self, connection, registry):
        assert connection.state is ConnectionState.INITIALIZING
        assert registry.lookup("call-1") is None

    def test_set_initializing_registers_without_showing(self, connection, registry, ui):
        assert connection.set_initializing() is True
        assert connection.state is ConnectionState.INITIALIZING
        assert registry.lookup("call-1") is connection
        assert ui.events == []

    def test_set_initializing_after_ringing_is_ignored(self, ringing):
        assert ringing.set_initializing() is False
        assert ringing.state is ConnectionState.RINGING

    def test_set_ringing_registers_and_shows(self, ringing, registry, ui):
        assert ringing.state is ConnectionState.RINGING
        assert registry.lookup("call-1") is ringing
        assert ui.events == [("show", "call-1", "Alice")]

    def test_display_name_falls_back_to_caller_key(self, store, registry, ui, clock):
        conn = IncomingConnection(make_fact(caller_name=None), store=store, registry=registry,
                                  ui=ui, clock=clock, display_name_length=5)
        conn.set_ringing()
        assert ui.last("show") == ("show", "call-1", "alice")

    def test_ringing_twice_is_ignored(self, ringing, ui):
        assert ringing.set_ringing() is False
        assert ui.kinds() == ["show"]

    def test_failing_ui_does_not_break_ringing(self, store, registry, clock):
        ui = MagicMock()
        ui.show_incoming_call.side_effect = RuntimeError("no window")
        conn = IncomingConnection(make_fact(), store=store, registry=registry, ui=ui, clock=clock)
        assert conn.set_ringing() is True
        assert conn.state is ConnectionState.RINGING


class TestAnswer:
    """User answers the ringing call."""

    def test_answer_hands_off_to_application(self, ringing, store, registry, ui):
        store.cache_offer("alice-0001", "call-1", T0, "sdp-offer")
        assert ringing.answer() is True

        assert ringing.state is ConnectionState.DISCONNECTED
        assert ringing.disconnect_cause is DisconnectCause.LOCAL
        assert ringing.previous_state is ConnectionState.ACTIVE
        assert ringing.destroyed is True

        record = store.take_and_clear_pending(PendingAction.ACCEPT)
        assert record.caller_key == "alice-0001"
        assert record.call_id == "call-1"
        assert record.caller_name == "Alice"
        assert record.offer_payload == "sdp-offer"
        assert record.stored_at_ms == T0

        assert store.get_cached_offer() is None
        assert store.get_active_call_key() is None
        assert registry.lookup("call-1") is None
        assert ui.kinds() == ["show", "close", "launch"]
        assert ui.last("launch") == ("launch", "accept")

    def test_answer_ignores_offer_for_other_caller(self, ringing, store):
        store.cache_offer("bob", None, T0, "sdp-bob")
        ringing.answer()
        assert store.take_and_clear_pending(PendingAction.ACCEPT).offer_payload is None
        assert store.get_cached_offer() is None

    def test_state_is_settled_before_close_signal(self, ringing, store, registry, ui):
        """The UI sees post-transition state when it reacts to close."""
        seen = {}

        def on_close(key):
            seen["lookup"] = registry.lookup(key)
            seen["active"] = store.get_active_call_key()
            seen["pending"] = store.peek_pending(PendingAction.ACCEPT)

        ui.on_close = on_close
        ringing.answer()
        assert seen["lookup"] is None
        assert seen["active"] is None
        assert seen["pending"] is not None

    def test_answer_only_from_ringing(self, connection):
        assert connection.answer() is False
        assert connection.state is ConnectionState.INITIALIZING

    def test_store_failure_still_tears_down(self, ringing, registry, ui):
        ringing.store = MagicMock()
        ringing.store.take_offer_if_matching.side_effect = StoreError("disk full")
        ringing.store.publish_pending.side_effect = StoreError("disk full")
        ringing.store.clear_offer.side_effect = StoreError("disk full")
        ringing.store.clear_active_call.side_effect = StoreError("disk full")

        assert ringing.answer() is True
        assert ringing.state is ConnectionState.DISCONNECTED
        assert registry.lookup("call-1") is None
        assert ui.last("close") == ("close", "call-1")


class TestReject:
    """User declines the ringing call."""

    def test_reject_publishes_without_offer(self, ringing, store, registry, ui):
        store.cache_offer("alice-0001", "call-1", T0, "sdp-offer")
        assert ringing.reject() is True

        assert ringing.state is ConnectionState.DISCONNECTED
        assert ringing.disconnect_cause is DisconnectCause.REJECTED
        record = store.take_and_clear_pending(PendingAction.REJECT)
        assert record.action is PendingAction.REJECT
        assert record.offer_payload is None
        assert store.take_and_clear_pending(PendingAction.ACCEPT) is None
        assert store.get_cached_offer() is None
        assert store.get_active_call_key() is None
        assert registry.lookup("call-1") is None
        assert ui.kinds() == ["show", "close", "launch"]
        assert ui.last("launch") == ("launch", "reject")

    def test_reject_after_answer_is_ignored(self, ringing, store):
        ringing.answer()
        assert ringing.reject() is False
        assert store.take_and_clear_pending(PendingAction.REJECT) is None


class TestDisconnectAndAbort:
    """Hangups and cancellations."""

    def test_disconnect_while_ringing(self, ringing, store, registry, ui):
        assert ringing.disconnect() is True
        assert ringing.disconnect_cause is DisconnectCause.LOCAL
        assert store.get_active_call_key() is None
        assert registry.lookup("call-1") is None
        assert ui.kinds() == ["show", "close"]
        assert store.take_and_clear_pending(PendingAction.ACCEPT) is None
        assert store.take_and_clear_pending(PendingAction.REJECT) is None

    def test_abort_before_ringing(self, connection, store, ui):
        assert connection.abort() is True
        assert connection.disconnect_cause is DisconnectCause.CANCELED
        assert store.get_active_call_key() is None
        assert ui.kinds() == ["close"]

    def test_abort_while_ringing(self, ringing, registry):
        assert ringing.abort() is True
        assert ringing.disconnect_cause is DisconnectCause.CANCELED
        assert registry.lookup("call-1") is None

    def test_disconnect_while_initializing_releases_guard(self, connection, store, registry, ui):
        connection.set_initializing()
        assert connection.disconnect() is True
        assert connection.disconnect_cause is DisconnectCause.LOCAL
        assert store.get_active_call_key() is None
        assert registry.lookup("call-1") is None
        assert ui.kinds() == ["close"]

    def test_answer_after_hangup_returns_false(self, manager, registry):
        manager.show_incoming_call(make_fact())
        conn = registry.lookup("call-1")
        assert conn.disconnect() is True
        assert conn.answer() is False
        assert conn.reject() is False

    def test_terminal_state_ignores_everything(self, ringing):
        ringing.disconnect()
        assert ringing.is_terminal
        for event in (ringing.set_ringing, ringing.answer, ringing.reject,
                      ringing.disconnect, ringing.abort):
            assert event() is False

    def test_late_disconnect_keeps_replacement_registered(self, ringing, store, registry, ui, clock):
        """A stale connection never removes a newer one under the same key."""
        ringing.answer()
        newer = IncomingConnection(make_fact(), store=store, registry=registry, ui=ui, clock=clock)
        newer.set_ringing()
        ringing.registry.unregister("call-1", ringing)
        assert registry.lookup("call-1") is newer


class TestExactlyOnce:
    """Concurrent user actions race on one connection."""

    def test_answer_and_reject_race(self, ringing, store):
        barrier = threading.Barrier(2)
        results = {}

        def run(name, action):
            barrier.wait()
            results[name] = action()

        threads = [
            threading.Thread(target=run, args=("answer", ringing.answer)),
            threading.Thread(target=run, args=("reject", ringing.reject)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(results.values()) == [False, True]
        accept = store.take_and_clear_pending(PendingAction.ACCEPT)
        reject = store.take_and_clear_pending(PendingAction.REJECT)
        assert (accept is None) != (reject is None)


class TestStateInfo:
    """Diagnostics."""

    def test_state_info(self, ringing):
        info = ringing.get_state_info()
        assert info["connection_key"] == "call-1"
        assert info["current_state"] == "ringing"
        assert info["previous_state"] == "initializing"
        assert info["disconnect_cause"] is None
        assert info["destroyed"] is False
