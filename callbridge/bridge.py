"""
Application-facing surface of the call bridge.

``CallBridge`` is what the application layer talks to: it routes push
messages, drains the pending-action mailbox, caches offers and exposes the
escape hatches. Every method degrades to a "not handled" result plus a
logged diagnostic instead of raising into the host.
"""

from typing import Any, Mapping, Optional

from .clock import Clock, now_ms
from .config.schema import BridgeSettings
from .core.call_manager import CallManager
from .core.connection import IncomingConnection
from .core.models import IncomingCallFact, PendingAction, PendingRecord
from .core.ports import CallUi, LoopbackSignalingStack, SignalingStack, best_effort
from .core.registry import ConnectionRegistry
from .exceptions import StoreError
from .logging_config import get_logger
from .store import BridgeStore, create_backend

logger = get_logger(__name__)


class CallBridge:
    """Facade over the call manager and the bridge store."""

    def __init__(self, manager: CallManager):
        self.manager = manager
        self.store = manager.store
        self._call_mode_enabled = False

    @classmethod
    def from_settings(
        cls,
        settings: BridgeSettings,
        ui: Optional[CallUi] = None,
        signaling: Optional[SignalingStack] = None,
        clock: Clock = now_ms,
    ) -> "CallBridge":
        """
        Assemble a bridge from configuration.

        Without an explicit signaling stack an in-process loopback stack is
        used, bound to the new manager.
        """
        store = BridgeStore(
            create_backend(settings.store),
            namespace=settings.store.namespace,
            stale_guard_ms=settings.admission.stale_guard_ms,
            clock=clock,
        )
        loopback = signaling is None
        if loopback:
            signaling = LoopbackSignalingStack()
        manager = CallManager.from_settings(
            settings, store, registry=ConnectionRegistry(), ui=ui,
            signaling=signaling, clock=clock,
        )
        if loopback:
            signaling.bind(manager)
        return cls(manager)

    @property
    def ui(self) -> CallUi:
        return self.manager.ui

    @property
    def is_call_mode_enabled(self) -> bool:
        return self._call_mode_enabled

    # Push routing

    def handle_push(self, data: Mapping[str, Any]) -> bool:
        """
        Route a data-only push message.

        Returns True when the core took the message over; False means the
        caller should run its regular notification path.
        """
        try:
            fact = IncomingCallFact.from_push_data(data)
        except Exception as e:
            logger.error("Unparseable push message", error=str(e), exc_info=True)
            return False

        if fact is None:
            return False
        if not fact.native_signaling:
            logger.debug("Call push without native signaling, leaving to application",
                         call_id=fact.call_id)
            return False

        logger.info("Native call push received", call_id=fact.call_id)
        return self.show_incoming_call(fact)

    def show_incoming_call(self, fact: IncomingCallFact) -> bool:
        """Whether the core admitted and is handling ``fact``."""
        try:
            return self.manager.show_incoming_call(fact)
        except Exception as e:
            logger.error("Incoming call handling error", call_id=fact.call_id,
                         error=str(e), exc_info=True)
            return False

    # Mailbox

    def _take_pending(self, kind: PendingAction) -> Optional[PendingRecord]:
        try:
            return self.store.take_and_clear_pending(kind)
        except StoreError as e:
            logger.error("Failed to read pending action", action=kind.value, error=str(e))
            return None

    def get_and_clear_pending_accept(self) -> Optional[PendingRecord]:
        return self._take_pending(PendingAction.ACCEPT)

    def get_and_clear_pending_reject(self) -> Optional[PendingRecord]:
        return self._take_pending(PendingAction.REJECT)

    # Offer cache

    def cache_incoming_offer(self, caller_key: str, call_id: Optional[str],
                             server_ts_ms: Optional[int], payload: str) -> bool:
        try:
            self.store.cache_offer(caller_key, call_id, server_ts_ms, payload)
            return True
        except StoreError as e:
            logger.error("Failed to cache offer", caller_key=caller_key, error=str(e))
            return False

    # Escape hatches and presentation toggles

    def clear_active_call(self) -> bool:
        logger.info("Active call guard force-released by application")
        return self.manager.clear_active_call()

    def ensure_account_registered(self) -> bool:
        return self.manager.ensure_account_registered()

    def lookup_connection(self, key: str) -> Optional[IncomingConnection]:
        return self.manager.lookup_connection(key)

    def enable_call_mode(self) -> bool:
        self._call_mode_enabled = True
        return best_effort("enable_call_mode", self.ui.enable_call_mode)

    def disable_call_mode(self) -> bool:
        self._call_mode_enabled = False
        return best_effort("disable_call_mode", self.ui.disable_call_mode)

    def close(self) -> None:
        self.store.backend.close()
