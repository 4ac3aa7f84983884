"""
Bridge Store

Persisted state shared between the signaling callbacks and the application
layer: the active-call guard, the last-processed marker used for dedup, the
single-slot pending-action mailbox, the offer cache and the one-time account
registration latch.

All fields are scalars stored under flat namespaced keys. Each operation is
atomic at the key level only; grouped writes are not transactional.
"""

import threading
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from ..clock import Clock, now_ms
from ..core.admission import DEFAULT_STALE_GUARD_MS
from ..core.models import (
    ActiveCallGuard,
    CachedOffer,
    LastProcessed,
    PendingAction,
    PendingRecord,
)
from ..logging_config import get_logger
from .backends import KeyValueBackend

logger = get_logger(__name__)

# Field names (prefixed with the namespace in the backend)
KEY_PENDING_ACCEPT = "pending_accept_json"
KEY_PENDING_REJECT = "pending_reject_json"
KEY_LAST_CALL_ID = "last_call_id"
KEY_LAST_CALL_TS_MS = "last_call_ts_ms"
KEY_ACTIVE_CALL_ID = "active_call_id"
KEY_ACTIVE_CALL_SET_AT_MS = "active_call_set_at_ms"
KEY_CACHED_CALLER_KEY = "cached_caller_key"
KEY_CACHED_CALL_ID = "cached_call_id"
KEY_CACHED_SERVER_TS_MS = "cached_server_ts_ms"
KEY_CACHED_OFFER_JSON = "cached_offer_json"
KEY_ACCOUNT_REGISTERED = "signaling_account_registered"

PENDING_KEYS = {
    PendingAction.ACCEPT: KEY_PENDING_ACCEPT,
    PendingAction.REJECT: KEY_PENDING_REJECT,
}

OFFER_KEYS = (
    KEY_CACHED_CALLER_KEY,
    KEY_CACHED_CALL_ID,
    KEY_CACHED_SERVER_TS_MS,
    KEY_CACHED_OFFER_JSON,
)


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class BridgeStore:
    """
    Typed access to the persisted bridge state.

    The backend is injected so tests can use an in-memory map and production
    a file or Redis backend.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        namespace: str = "callbridge",
        stale_guard_ms: int = DEFAULT_STALE_GUARD_MS,
        clock: Clock = now_ms,
    ):
        self.backend = backend
        self.namespace = namespace
        self.stale_guard_ms = stale_guard_ms
        self.clock = clock
        self._lock = threading.RLock()

    def _key(self, field: str) -> str:
        return f"{self.namespace}:{field}" if self.namespace else field

    def _get(self, field: str) -> Optional[str]:
        return self.backend.get(self._key(field))

    def _set(self, field: str, value: Any) -> None:
        self.backend.set(self._key(field), str(value))

    def _delete(self, *fields: str) -> None:
        self.backend.delete(*(self._key(f) for f in fields))

    # Active call guard

    def mark_active_call(self, call_key: str, now_ms: Optional[int] = None) -> None:
        """Take the single-active-call guard for ``call_key``."""
        set_at = self.clock() if now_ms is None else now_ms
        with self._lock:
            self._set(KEY_ACTIVE_CALL_ID, call_key)
            self._set(KEY_ACTIVE_CALL_SET_AT_MS, set_at)
        logger.debug("Active call guard set", call_key=call_key, set_at_ms=set_at)

    def try_reserve_active_call(self, call_key: str, now_ms: Optional[int] = None) -> bool:
        """
        Take the guard unless another call holds it.

        The staleness check and the write happen under one lock, so of two
        concurrent callers in this process exactly one wins.
        """
        now = self.clock() if now_ms is None else now_ms
        with self._lock:
            if self.get_active_call_key(now) is not None:
                return False
            self.mark_active_call(call_key, now)
            return True

    def clear_active_call(self) -> None:
        """Release the guard."""
        with self._lock:
            self._delete(KEY_ACTIVE_CALL_ID, KEY_ACTIVE_CALL_SET_AT_MS)
        logger.debug("Active call guard cleared")

    def get_active_call_guard(self) -> ActiveCallGuard:
        """Raw guard record, without the staleness rule applied."""
        with self._lock:
            return ActiveCallGuard(
                call_key=self._get(KEY_ACTIVE_CALL_ID),
                set_at_ms=_to_int(self._get(KEY_ACTIVE_CALL_SET_AT_MS)),
            )

    def get_active_call_key(self, now_ms: Optional[int] = None) -> Optional[str]:
        """
        Key of the call in flight, or None.

        A guard older than ``stale_guard_ms`` is treated as absent and cleared,
        which recovers from a process that died without releasing it.
        """
        now = self.clock() if now_ms is None else now_ms
        with self._lock:
            guard = self.get_active_call_guard()
            if guard.call_key is None:
                return None
            if guard.is_stale(now, self.stale_guard_ms):
                logger.warning("Stale active call guard released",
                               call_key=guard.call_key, set_at_ms=guard.set_at_ms)
                self.clear_active_call()
                return None
            return guard.call_key

    # Dedup history

    def record_last_processed(self, call_id: Optional[str], server_ts_ms: Optional[int]) -> None:
        with self._lock:
            if call_id is not None:
                self._set(KEY_LAST_CALL_ID, call_id)
            else:
                self._delete(KEY_LAST_CALL_ID)
            if server_ts_ms is not None:
                self._set(KEY_LAST_CALL_TS_MS, server_ts_ms)
            else:
                self._delete(KEY_LAST_CALL_TS_MS)

    def get_last_processed(self) -> LastProcessed:
        with self._lock:
            return LastProcessed(
                call_id=self._get(KEY_LAST_CALL_ID),
                server_ts_ms=_to_int(self._get(KEY_LAST_CALL_TS_MS)),
            )

    # Offer cache

    def cache_offer(
        self,
        caller_key: str,
        call_id: Optional[str],
        server_ts_ms: Optional[int],
        payload: str,
    ) -> None:
        """Cache the offer that came with a call, replacing any previous one."""
        with self._lock:
            self._set(KEY_CACHED_CALLER_KEY, caller_key)
            if call_id is not None:
                self._set(KEY_CACHED_CALL_ID, call_id)
            else:
                self._delete(KEY_CACHED_CALL_ID)
            self._set(KEY_CACHED_SERVER_TS_MS, server_ts_ms or 0)
            self._set(KEY_CACHED_OFFER_JSON, payload)
        logger.debug("Offer cached", caller_key=caller_key, call_id=call_id)

    def get_cached_offer(self) -> Optional[CachedOffer]:
        with self._lock:
            caller_key = self._get(KEY_CACHED_CALLER_KEY)
            payload = self._get(KEY_CACHED_OFFER_JSON)
            if caller_key is None or payload is None:
                return None
            return CachedOffer(
                caller_key=caller_key,
                payload=payload,
                call_id=self._get(KEY_CACHED_CALL_ID),
                server_ts_ms=_to_int(self._get(KEY_CACHED_SERVER_TS_MS)) or 0,
            )

    def take_offer_if_matching(self, caller_key: str, call_id: Optional[str]) -> Optional[str]:
        """
        Return the cached offer payload if it belongs to this call.

        The cached caller must match; when both sides carry a call id those
        must match as well. A matching offer is consumed.
        """
        with self._lock:
            offer = self.get_cached_offer()
            if offer is None or not offer.matches(caller_key, call_id):
                return None
            self.clear_offer()
            return offer.payload

    def clear_offer(self) -> None:
        with self._lock:
            self._delete(*OFFER_KEYS)

    # Pending-action mailbox

    def publish_pending(self, kind: Union[PendingAction, str], record: PendingRecord) -> None:
        """Write ``record`` into the ``kind`` slot. An unread value is overwritten."""
        kind = PendingAction(kind)
        self._set(PENDING_KEYS[kind], record.to_json())
        logger.info("Pending action published", action=kind.value,
                    caller_key=record.caller_key, call_id=record.call_id)

    def take_and_clear_pending(self, kind: Union[PendingAction, str]) -> Optional[PendingRecord]:
        """Destructively read the ``kind`` slot."""
        kind = PendingAction(kind)
        raw = self.backend.pop(self._key(PENDING_KEYS[kind]))
        if raw is None:
            return None
        try:
            return PendingRecord.from_json(raw)
        except ValidationError as e:
            logger.error("Discarding unreadable pending record", action=kind.value, error=str(e))
            return None

    def peek_pending(self, kind: Union[PendingAction, str]) -> Optional[str]:
        """Raw mailbox content, left in place. Diagnostics only."""
        return self._get(PENDING_KEYS[PendingAction(kind)])

    # One-time registration latch

    def is_registration_done(self) -> bool:
        return self._get(KEY_ACCOUNT_REGISTERED) == "1"

    def set_registration_done(self, value: bool = True) -> None:
        if value:
            self._set(KEY_ACCOUNT_REGISTERED, "1")
        else:
            self._delete(KEY_ACCOUNT_REGISTERED)

    def snapshot(self) -> Dict[str, str]:
        """Every stored field of this namespace, keyed by field name."""
        prefix = self._key("")
        return {k[len(prefix):]: v for k, v in self.backend.items(prefix).items()}
