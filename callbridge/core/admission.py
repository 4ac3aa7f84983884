"""
Admission engine.

Pure decision logic: given the current time, an incoming fact and the history
read from the bridge store, decide whether the fact starts a new call
lifecycle. No I/O; identical inputs always yield identical decisions.
"""

from typing import Optional

from .models import (
    ActiveCallGuard,
    AdmissionDecision,
    AdmissionReason,
    IncomingCallFact,
    LastProcessed,
)

DEFAULT_TTL_MS = 60_000
DEFAULT_STALE_GUARD_MS = 120_000
DEFAULT_FUTURE_TOLERANCE_MS = 5_000
DEFAULT_DEDUP_BUCKET_MS = 2_000


def decide(
    now_ms: int,
    fact: IncomingCallFact,
    last: Optional[LastProcessed] = None,
    guard: Optional[ActiveCallGuard] = None,
    ttl_ms: int = DEFAULT_TTL_MS,
    stale_guard_ms: int = DEFAULT_STALE_GUARD_MS,
    future_tolerance_ms: int = DEFAULT_FUTURE_TOLERANCE_MS,
    dedup_bucket_ms: int = DEFAULT_DEDUP_BUCKET_MS,
) -> AdmissionDecision:
    """
    Decide whether ``fact`` should be processed.

    Checks run in order: active call guard, TTL, call id dedup, then the
    timestamp bucket fallback for transports that omit the call id.
    """
    last = last or LastProcessed()
    guard = guard or ActiveCallGuard()

    if guard.is_held(now_ms, stale_guard_ms):
        return AdmissionDecision.reject(AdmissionReason.ACTIVE_CALL_EXISTS)

    clock_skew_ms = None
    if fact.server_ts_ms is not None:
        age = now_ms - fact.server_ts_ms
        if age > ttl_ms:
            return AdmissionDecision.reject(AdmissionReason.EXPIRED_TTL)
        # Timestamps from the future are tolerated, only flagged
        if age < -future_tolerance_ms:
            clock_skew_ms = -age

    if fact.call_id is not None and fact.call_id == last.call_id:
        return AdmissionDecision.reject(AdmissionReason.DUPLICATE_CALL_ID, clock_skew_ms)

    if fact.call_id is None and fact.server_ts_ms is not None and last.server_ts_ms:
        if abs(fact.server_ts_ms - last.server_ts_ms) < dedup_bucket_ms:
            return AdmissionDecision.reject(AdmissionReason.DUPLICATE_TIMESTAMP_BUCKET, clock_skew_ms)

    return AdmissionDecision.accept(clock_skew_ms)
