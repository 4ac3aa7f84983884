"""
Call Manager

Coordinates an incoming fact through admission, the native signaling stack
and the connection lifecycle. Everything here is best-effort: signaling
refusals, an open circuit breaker or a failing store are logged and reported
to the caller as False, never raised. A False result tells the transport to
fall back to its own notification.
"""

from typing import Any, Mapping, Optional

from ..clock import Clock, now_ms
from ..exceptions import SignalingPermissionError, SignalingUnavailableError, StoreError
from ..logging_config import correlation_scope, get_logger
from ..store.bridge_store import BridgeStore
from .admission import (
    DEFAULT_DEDUP_BUCKET_MS,
    DEFAULT_FUTURE_TOLERANCE_MS,
    DEFAULT_STALE_GUARD_MS,
    DEFAULT_TTL_MS,
    decide,
)
from .circuit_breaker import CircuitBreaker, CircuitBreakerError
from .connection import IncomingConnection
from .models import DEFAULT_DISPLAY_NAME_LENGTH, AdmissionDecision, AdmissionReason, IncomingCallFact
from .ports import CallUi, SignalingStack
from .registry import ConnectionRegistry

logger = get_logger(__name__)

DEFAULT_ACCOUNT_ID = "callbridge_voip"
DEFAULT_ACCOUNT_LABEL = "CallBridge"


class CallManager:
    """
    Connection lifecycle coordinator.

    Owns the connections it creates; the registry only lets UI surfaces find
    them by key.
    """

    def __init__(
        self,
        store: BridgeStore,
        registry: Optional[ConnectionRegistry] = None,
        ui: Optional[CallUi] = None,
        signaling: Optional[SignalingStack] = None,
        clock: Clock = now_ms,
        ttl_ms: int = DEFAULT_TTL_MS,
        stale_guard_ms: int = DEFAULT_STALE_GUARD_MS,
        future_tolerance_ms: int = DEFAULT_FUTURE_TOLERANCE_MS,
        dedup_bucket_ms: int = DEFAULT_DEDUP_BUCKET_MS,
        display_name_length: int = DEFAULT_DISPLAY_NAME_LENGTH,
        breaker: Optional[CircuitBreaker] = None,
        account_id: str = DEFAULT_ACCOUNT_ID,
        account_label: str = DEFAULT_ACCOUNT_LABEL,
    ):
        self.store = store
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.ui = ui or CallUi()
        self.signaling = signaling
        self.clock = clock
        self.ttl_ms = ttl_ms
        self.stale_guard_ms = stale_guard_ms
        self.future_tolerance_ms = future_tolerance_ms
        self.dedup_bucket_ms = dedup_bucket_ms
        self.display_name_length = display_name_length
        self.breaker = breaker or CircuitBreaker(name="signaling")
        self.account_id = account_id
        self.account_label = account_label

        # Statistics
        self.stats = {
            'facts_received': 0,
            'facts_admitted': 0,
            'facts_rejected': 0,
            'signaling_failures': 0,
            'connections_created': 0,
        }

    @classmethod
    def from_settings(cls, settings, store: BridgeStore, registry=None, ui=None,
                      signaling=None, clock: Clock = now_ms) -> "CallManager":
        """Build a manager from ``BridgeSettings``."""
        return cls(
            store=store,
            registry=registry,
            ui=ui,
            signaling=signaling if settings.signaling.enabled else None,
            clock=clock,
            ttl_ms=settings.admission.ttl_ms,
            stale_guard_ms=settings.admission.stale_guard_ms,
            future_tolerance_ms=settings.admission.future_tolerance_ms,
            dedup_bucket_ms=settings.admission.dedup_bucket_ms,
            display_name_length=settings.ui.display_name_length,
            breaker=CircuitBreaker(
                fail_max=settings.signaling.breaker_fail_max,
                reset_timeout=settings.signaling.breaker_reset_timeout,
                name="signaling",
            ),
            account_id=settings.signaling.account_id,
            account_label=settings.signaling.account_label,
        )

    # Admission

    def evaluate(self, fact: IncomingCallFact, now: Optional[int] = None) -> AdmissionDecision:
        """Run the admission engine against the persisted history."""
        now = self.clock() if now is None else now
        guard = self.store.get_active_call_guard()
        if guard.call_key is not None and guard.is_stale(now, self.stale_guard_ms):
            # Applies the staleness rule and releases the stale guard
            self.store.get_active_call_key(now)
        decision = decide(
            now,
            fact,
            last=self.store.get_last_processed(),
            guard=guard,
            ttl_ms=self.ttl_ms,
            stale_guard_ms=self.stale_guard_ms,
            future_tolerance_ms=self.future_tolerance_ms,
            dedup_bucket_ms=self.dedup_bucket_ms,
        )
        if decision.clock_skew_ms is not None:
            logger.warning("Call signal timestamp is in the future",
                           call_id=fact.call_id, clock_skew_ms=decision.clock_skew_ms)
        return decision

    def _require_signaling(self) -> SignalingStack:
        if self.signaling is None:
            raise SignalingUnavailableError("No signaling stack available")
        return self.signaling

    def show_incoming_call(self, fact: IncomingCallFact) -> bool:
        """
        Try to start the native incoming-call flow for ``fact``.

        Returns True when the core handles the fact (the caller must then
        suppress its own notification): the call was admitted and handed to
        the signaling stack, or it was rejected as a duplicate or because a
        call is already in flight. Returns False for expired facts and on any
        failure.
        """
        with correlation_scope(fact.connection_key):
            self.stats['facts_received'] += 1
            try:
                self._require_signaling()
            except SignalingUnavailableError as e:
                logger.info("Incoming call not handled", call_id=fact.call_id, error=str(e))
                return False

            try:
                now = self.clock()
                decision = self.evaluate(fact, now)
                if decision.should_process and not self.store.try_reserve_active_call(fact.connection_key, now):
                    # Another admission took the guard after this one was evaluated
                    decision = AdmissionDecision.reject(AdmissionReason.ACTIVE_CALL_EXISTS,
                                                        decision.clock_skew_ms)
            except StoreError as e:
                logger.error("Admission failed, bridge store unavailable",
                             call_id=fact.call_id, error=str(e))
                return False

            if not decision.should_process:
                self.stats['facts_rejected'] += 1
                logger.info("Incoming call ignored", call_id=fact.call_id,
                            caller_key=fact.caller_key, reason=decision.reason.value)
                return decision.reason.reports_handled

            self.stats['facts_admitted'] += 1
            return self._start_signaling(fact)

    def _start_signaling(self, fact: IncomingCallFact) -> bool:
        """Hand an admitted fact, whose guard is already held, to the signaling stack."""
        self.ensure_account_registered()

        if fact.offer_payload is not None:
            try:
                self.store.cache_offer(fact.caller_key, fact.call_id,
                                       fact.server_ts_ms, fact.offer_payload)
            except StoreError as e:
                logger.error("Failed to cache offer", call_id=fact.call_id, error=str(e))
                self._release_guard()
                return False

        try:
            self.breaker.call(self._require_signaling().add_new_incoming_call,
                              fact, fact.to_signaling_extras())
        except CircuitBreakerError as e:
            logger.error("Signaling circuit open, incoming call not handled",
                         call_id=fact.call_id, error=str(e))
            return self._signaling_failed(fact)
        except SignalingPermissionError as e:
            logger.error("Signaling permission error on incoming call",
                         call_id=fact.call_id, error=str(e))
            return self._signaling_failed(fact)
        except Exception as e:
            logger.error("Signaling incoming call request failed",
                         call_id=fact.call_id, error=str(e), exc_info=True)
            return self._signaling_failed(fact)

        try:
            self.store.record_last_processed(fact.call_id, fact.server_ts_ms)
        except StoreError as e:
            # The call is already ringing; only dedup history is lost
            logger.error("Failed to record last processed call", call_id=fact.call_id, error=str(e))

        logger.info("Incoming call requested from signaling stack",
                    call_id=fact.call_id, caller_key=fact.caller_key)
        return True

    def _signaling_failed(self, fact: IncomingCallFact) -> bool:
        self.stats['signaling_failures'] += 1
        if fact.offer_payload is not None:
            try:
                self.store.clear_offer()
            except StoreError as e:
                logger.error("Failed to clear cached offer", error=str(e))
        self._release_guard()
        return False

    def _release_guard(self) -> None:
        try:
            self.store.clear_active_call()
        except StoreError as e:
            logger.error("Failed to clear active call guard", error=str(e))

    # Signaling account

    def ensure_account_registered(self) -> bool:
        """
        Register the signaling account once.

        The latch lives in the bridge store and survives restarts; it is
        never reset by the call lifecycle.
        """
        try:
            signaling = self._require_signaling()
            if self.store.is_registration_done():
                return True
            signaling.register_account(self.account_id, self.account_label)
            self.store.set_registration_done()
            logger.info("Signaling account registered", account_id=self.account_id)
            return True
        except SignalingUnavailableError as e:
            logger.info("Signaling account not registered", error=str(e))
        except SignalingPermissionError as e:
            logger.error("Signaling account registration refused", error=str(e))
        except StoreError as e:
            logger.error("Registration latch unavailable", error=str(e))
        except Exception as e:
            logger.error("Signaling account registration failed", error=str(e), exc_info=True)
        return False

    # Signaling stack callbacks

    def on_create_incoming_connection(self, extras: Optional[Mapping[str, Any]]) -> IncomingConnection:
        """Build, register and ring the connection for an accepted request."""
        fact = IncomingCallFact.from_signaling_extras(extras)
        with correlation_scope(fact.connection_key):
            connection = IncomingConnection(
                fact,
                store=self.store,
                registry=self.registry,
                ui=self.ui,
                clock=self.clock,
                display_name_length=self.display_name_length,
            )
            connection.set_initializing()
            connection.set_ringing()
            self.stats['connections_created'] += 1
            logger.info("Incoming connection created",
                        call_id=fact.call_id, caller_key=fact.caller_key)
            return connection

    def on_create_incoming_connection_failed(self, extras: Optional[Mapping[str, Any]] = None) -> None:
        """The stack could not create the connection; release the guard."""
        fact = IncomingCallFact.from_signaling_extras(extras) if extras else None
        logger.error("Incoming connection failed",
                     call_id=fact.call_id if fact else None)
        self._release_guard()

    # Application-facing helpers

    def lookup_connection(self, key: str) -> Optional[IncomingConnection]:
        return self.registry.lookup(key)

    def clear_active_call(self) -> bool:
        """Force-release the guard."""
        try:
            self.store.clear_active_call()
            return True
        except StoreError as e:
            logger.error("Failed to clear active call guard", error=str(e))
            return False
