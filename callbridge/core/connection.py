"""
Incoming Connection State Machine

This module drives one incoming call's connection through its lifecycle:
initializing -> ringing -> {active -> disconnected(local)} |
disconnected(rejected) | disconnected(canceled).

Every transition mutates the bridge store and the connection registry before
the incoming-call UI is told to close, so a UI surface that reacts to the
close signal and re-queries the registry always sees the post-transition
state.
"""

import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from ..clock import Clock, now_ms
from ..exceptions import StoreError
from ..logging_config import correlation_scope, get_logger
from ..store.bridge_store import BridgeStore
from .models import DEFAULT_DISPLAY_NAME_LENGTH, IncomingCallFact, PendingAction, PendingRecord
from .ports import CallUi, best_effort
from .registry import ConnectionRegistry

logger = get_logger(__name__)


class ConnectionState(Enum):
    """Connection state enumeration."""
    INITIALIZING = "initializing"
    RINGING = "ringing"
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class DisconnectCause(Enum):
    """Why a connection reached the disconnected state."""
    LOCAL = "local"
    REJECTED = "rejected"
    CANCELED = "canceled"


class IncomingConnection:
    """
    Lifecycle of one admitted incoming call.

    The connection is owned by whoever created it (the call manager); the
    registry only holds a lookup reference that is dropped on every terminal
    transition. User actions and remote hangups may arrive on different
    threads; a per-connection lock makes the hand-off happen exactly once.
    """

    # Valid state transitions
    VALID_TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
        ConnectionState.INITIALIZING: {ConnectionState.RINGING, ConnectionState.DISCONNECTED},
        ConnectionState.RINGING: {ConnectionState.ACTIVE, ConnectionState.DISCONNECTED},
        ConnectionState.ACTIVE: {ConnectionState.DISCONNECTED},
        ConnectionState.DISCONNECTED: set(),  # Terminal state
    }

    def __init__(
        self,
        fact: IncomingCallFact,
        store: BridgeStore,
        registry: ConnectionRegistry,
        ui: CallUi,
        clock: Clock = now_ms,
        display_name_length: int = DEFAULT_DISPLAY_NAME_LENGTH,
    ):
        self.fact = fact
        self.key = fact.connection_key
        self.display_name = fact.display_name(display_name_length)
        self.store = store
        self.registry = registry
        self.ui = ui
        self.clock = clock

        self.state = ConnectionState.INITIALIZING
        self.previous_state: Optional[ConnectionState] = None
        self.disconnect_cause: Optional[DisconnectCause] = None
        self.destroyed = False
        self.created_at = time.time()
        self.state_entry_time = self.created_at

        self._lock = threading.RLock()
        logger.info("Connection initializing", connection_key=self.key, call_id=fact.call_id)

    def __repr__(self) -> str:
        return f"IncomingConnection(key={self.key!r}, state={self.state.value})"

    # State bookkeeping

    def _can_transition(self, new_state: ConnectionState) -> bool:
        return new_state in self.VALID_TRANSITIONS.get(self.state, set())

    def _transition_to_state(self, new_state: ConnectionState,
                             cause: Optional[DisconnectCause] = None) -> None:
        self.previous_state = self.state
        self.state = new_state
        self.state_entry_time = time.time()
        if new_state is ConnectionState.DISCONNECTED:
            self.disconnect_cause = cause or DisconnectCause.LOCAL

        logger.info("Connection state transition",
                    connection_key=self.key,
                    from_state=self.previous_state.value, to_state=new_state.value,
                    cause=self.disconnect_cause.value if self.disconnect_cause else None)

    def _ignore(self, event: str) -> bool:
        logger.warning("Ignoring connection event in current state",
                       connection_key=self.key, connection_event=event, state=self.state.value)
        return False

    @property
    def is_terminal(self) -> bool:
        return self.state is ConnectionState.DISCONNECTED

    # Side effects

    def _store_op(self, action: str, func: Callable[..., Any], *args) -> Any:
        """Run a store mutation; a failing backend is logged, not propagated."""
        try:
            return func(*args)
        except StoreError as e:
            logger.error("Bridge store operation failed", connection_key=self.key,
                         action=action, error=str(e))
            return None

    def _publish(self, action: PendingAction, with_offer: bool) -> None:
        offer = None
        if with_offer:
            offer = self._store_op("take_offer", self.store.take_offer_if_matching,
                                   self.fact.caller_key, self.fact.call_id)
        record = PendingRecord.from_fact(action, self.fact, self.clock(), offer_payload=offer)
        self._store_op("publish_pending", self.store.publish_pending, action, record)

    def _release(self) -> None:
        """Guard and registry cleanup shared by every terminal transition."""
        self._store_op("clear_active_call", self.store.clear_active_call)
        self.registry.unregister(self.key, self)

    def _close_ui(self) -> None:
        best_effort("close_incoming_call", self.ui.close_incoming_call, self.key)

    def _destroy(self) -> None:
        self.destroyed = True
        logger.debug("Connection destroyed", connection_key=self.key)

    # Lifecycle

    def set_initializing(self) -> bool:
        """Make the connection reachable through the registry before it rings."""
        with self._lock, correlation_scope(self.key):
            if self.state is not ConnectionState.INITIALIZING:
                return self._ignore("initialize")
            self.registry.register(self.key, self)
            return True

    def set_ringing(self) -> bool:
        """Register with the registry and ask the UI to present the call."""
        with self._lock, correlation_scope(self.key):
            if not self._can_transition(ConnectionState.RINGING):
                return self._ignore("ring")
            self._transition_to_state(ConnectionState.RINGING)
            self.registry.register(self.key, self)
            self.show_incoming_ui()
            return True

    def show_incoming_ui(self) -> bool:
        return best_effort("show_incoming_call", self.ui.show_incoming_call,
                           self.key, self.display_name)

    def answer(self) -> bool:
        """
        The user answered.

        Ownership of the call moves to the application layer: the accept
        record (with any matching cached offer) goes into the mailbox, the
        guard is released, and the native connection is torn down as a
        local disconnect.
        """
        with self._lock, correlation_scope(self.key):
            if self.state is not ConnectionState.RINGING:
                return self._ignore("answer")
            self._transition_to_state(ConnectionState.ACTIVE)

            self._publish(PendingAction.ACCEPT, with_offer=True)
            self._store_op("clear_offer", self.store.clear_offer)
            self._release()
            self._close_ui()
            best_effort("launch_application", self.ui.launch_application, PendingAction.ACCEPT.value)

            self._transition_to_state(ConnectionState.DISCONNECTED, DisconnectCause.LOCAL)
            self._destroy()
            return True

    def reject(self) -> bool:
        """The user declined; the application is launched to notify the far end."""
        with self._lock, correlation_scope(self.key):
            if self.state is not ConnectionState.RINGING:
                return self._ignore("reject")

            self._publish(PendingAction.REJECT, with_offer=False)
            self._store_op("clear_offer", self.store.clear_offer)
            self._release()
            self._transition_to_state(ConnectionState.DISCONNECTED, DisconnectCause.REJECTED)
            self._close_ui()
            best_effort("launch_application", self.ui.launch_application, PendingAction.REJECT.value)
            self._destroy()
            return True

    def disconnect(self) -> bool:
        """Local or remote hangup, in any non-terminal state."""
        return self._terminate("disconnect", DisconnectCause.LOCAL,
                               {ConnectionState.INITIALIZING, ConnectionState.RINGING,
                                ConnectionState.ACTIVE})

    def abort(self) -> bool:
        """The call went away before it was answered."""
        return self._terminate("abort", DisconnectCause.CANCELED,
                               {ConnectionState.INITIALIZING, ConnectionState.RINGING})

    def _terminate(self, event: str, cause: DisconnectCause, allowed: Set[ConnectionState]) -> bool:
        with self._lock, correlation_scope(self.key):
            if self.state not in allowed:
                return self._ignore(event)
            self._release()
            self._transition_to_state(ConnectionState.DISCONNECTED, cause)
            self._close_ui()
            self._destroy()
            return True

    def get_state_info(self) -> Dict[str, Any]:
        """Get current state information."""
        return {
            'connection_key': self.key,
            'call_id': self.fact.call_id,
            'caller_key': self.fact.caller_key,
            'display_name': self.display_name,
            'current_state': self.state.value,
            'previous_state': self.previous_state.value if self.previous_state else None,
            'disconnect_cause': self.disconnect_cause.value if self.disconnect_cause else None,
            'state_duration': time.time() - self.state_entry_time,
            'destroyed': self.destroyed,
        }
