"""
Shared fixtures for the callbridge test suite.

Time is driven by ``FakeClock`` and the bridge store runs on the in-memory
backend, so every scenario is deterministic.
"""

import pytest

from callbridge.core.call_manager import CallManager
from callbridge.core.circuit_breaker import CircuitBreaker
from callbridge.core.models import IncomingCallFact
from callbridge.core.ports import CallUi, LoopbackSignalingStack
from callbridge.core.registry import ConnectionRegistry
from callbridge.store import BridgeStore, InMemoryBackend

T0 = 1_700_000_000_000


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms
        return self.now


class RecordingCallUi(CallUi):
    """Call UI that records every event it receives."""

    def __init__(self):
        self.events = []
        self.on_close = None

    def show_incoming_call(self, connection_key, display_name):
        self.events.append(("show", connection_key, display_name))

    def close_incoming_call(self, connection_key):
        self.events.append(("close", connection_key))
        if self.on_close is not None:
            self.on_close(connection_key)

    def launch_application(self, action):
        self.events.append(("launch", action))

    def enable_call_mode(self):
        self.events.append(("call_mode", True))

    def disable_call_mode(self):
        self.events.append(("call_mode", False))

    def kinds(self):
        return [event[0] for event in self.events]

    def last(self, kind):
        for event in reversed(self.events):
            if event[0] == kind:
                return event
        return None


def make_fact(caller_key="alice-0001", call_id="call-1", caller_name="Alice",
              server_ts_ms=T0, native_signaling=True, offer_payload=None):
    return IncomingCallFact(
        caller_key=caller_key,
        call_id=call_id,
        caller_name=caller_name,
        server_ts_ms=server_ts_ms,
        native_signaling=native_signaling,
        offer_payload=offer_payload,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def store(backend, clock):
    return BridgeStore(backend, namespace="test", clock=clock)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def ui():
    return RecordingCallUi()


@pytest.fixture
def signaling():
    return LoopbackSignalingStack()


@pytest.fixture
def manager(store, registry, ui, signaling, clock):
    manager = CallManager(
        store,
        registry=registry,
        ui=ui,
        signaling=signaling,
        clock=clock,
        breaker=CircuitBreaker(fail_max=3, reset_timeout=60, name="test-signaling"),
    )
    signaling.bind(manager)
    return manager
