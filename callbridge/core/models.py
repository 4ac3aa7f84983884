"""
Core data models for the call bridge.

Incoming-call facts, admission decisions, the persisted guard/history/offer
records and the pending-action mailbox record exchanged with the
application layer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

# Push message types that carry an incoming call
TYPE_INCOMING_CALL = "incoming_call"
TYPE_CALL_LEGACY = "call"
CALL_MESSAGE_TYPES = frozenset({TYPE_INCOMING_CALL, TYPE_CALL_LEGACY})

# Signaling extras keys
EXTRA_CALL_ID = "call_id"
EXTRA_CALLER_KEY = "caller_key"
EXTRA_CALLER_NAME = "caller_name"
EXTRA_SERVER_TS_MS = "server_ts_ms"
EXTRA_OFFER_DATA = "offer_data"

UNKNOWN_CALLER = "unknown"
DEFAULT_DISPLAY_NAME_LENGTH = 8


def _parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _parse_flag(value: Any) -> bool:
    if value is True:
        return True
    if isinstance(value, int) and not isinstance(value, bool):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return False


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class IncomingCallFact:
    """An incoming-call signal as delivered by the transport."""
    caller_key: str
    call_id: Optional[str] = None
    caller_name: Optional[str] = None
    server_ts_ms: Optional[int] = None
    native_signaling: bool = False
    offer_payload: Optional[str] = None

    @property
    def connection_key(self) -> str:
        """Key the connection is registered under."""
        return self.call_id or self.caller_key

    def display_name(self, max_length: int = DEFAULT_DISPLAY_NAME_LENGTH) -> str:
        """Caller name, or a truncated caller key when no name was sent."""
        return self.caller_name or self.caller_key[:max_length]

    @classmethod
    def from_push_data(cls, data: Mapping[str, Any]) -> Optional["IncomingCallFact"]:
        """
        Parse a data-only push message.

        Returns None for anything that is not a call signal: an unknown
        ``type`` or a missing ``caller_key``.
        """
        if data.get("type") not in CALL_MESSAGE_TYPES:
            return None

        caller_key = data.get("caller_key")
        if not isinstance(caller_key, str) or not caller_key.strip():
            return None

        call_id = data.get("call_id")
        call_id = str(call_id).strip() if call_id is not None else ""

        return cls(
            caller_key=caller_key,
            call_id=call_id or None,
            caller_name=_optional_str(data.get("caller_name")),
            server_ts_ms=_parse_int(data.get("server_ts_ms")),
            native_signaling=_parse_flag(data.get("native_telecom")),
            offer_payload=_optional_str(data.get(EXTRA_OFFER_DATA)),
        )

    def to_signaling_extras(self) -> Dict[str, Any]:
        """Extras handed to the signaling stack with the incoming call request."""
        extras: Dict[str, Any] = {
            EXTRA_CALL_ID: self.call_id,
            EXTRA_CALLER_KEY: self.caller_key,
            EXTRA_CALLER_NAME: self.caller_name,
        }
        if self.server_ts_ms is not None:
            extras[EXTRA_SERVER_TS_MS] = self.server_ts_ms
        return extras

    @classmethod
    def from_signaling_extras(cls, extras: Optional[Mapping[str, Any]]) -> "IncomingCallFact":
        """Rebuild a fact from the extras the signaling stack echoes back."""
        extras = extras or {}
        server_ts_ms = _parse_int(extras.get(EXTRA_SERVER_TS_MS))
        if server_ts_ms is not None and server_ts_ms <= 0:
            server_ts_ms = None
        return cls(
            caller_key=extras.get(EXTRA_CALLER_KEY) or UNKNOWN_CALLER,
            call_id=extras.get(EXTRA_CALL_ID) or None,
            caller_name=extras.get(EXTRA_CALLER_NAME),
            server_ts_ms=server_ts_ms,
            native_signaling=True,
        )


class AdmissionReason(Enum):
    """Why an incoming fact was admitted or rejected."""
    OK = "ok"
    ACTIVE_CALL_EXISTS = "active_call_exists"
    EXPIRED_TTL = "expired_ttl"
    DUPLICATE_CALL_ID = "duplicate_call_id"
    DUPLICATE_TIMESTAMP_BUCKET = "duplicate_timestamp_bucket"

    @property
    def reports_handled(self) -> bool:
        """
        Whether the transport should treat the fact as handled.

        Duplicates and calls blocked by an active call are handled (the user
        already sees a call screen); an expired fact is not, so a fallback
        missed-call notification may still be shown.
        """
        return self in (
            AdmissionReason.OK,
            AdmissionReason.ACTIVE_CALL_EXISTS,
            AdmissionReason.DUPLICATE_CALL_ID,
            AdmissionReason.DUPLICATE_TIMESTAMP_BUCKET,
        )


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of the admission engine for one fact."""
    should_process: bool
    reason: AdmissionReason
    clock_skew_ms: Optional[int] = None

    @classmethod
    def accept(cls, clock_skew_ms: Optional[int] = None) -> "AdmissionDecision":
        return cls(True, AdmissionReason.OK, clock_skew_ms)

    @classmethod
    def reject(cls, reason: AdmissionReason, clock_skew_ms: Optional[int] = None) -> "AdmissionDecision":
        return cls(False, reason, clock_skew_ms)


@dataclass(frozen=True)
class ActiveCallGuard:
    """Single-active-call lock with staleness-based auto-release."""
    call_key: Optional[str] = None
    set_at_ms: Optional[int] = None

    def is_stale(self, now_ms: int, stale_after_ms: int) -> bool:
        # Legacy guards without a timestamp never expire on their own
        if not self.set_at_ms:
            return False
        return now_ms - self.set_at_ms > stale_after_ms

    def is_held(self, now_ms: int, stale_after_ms: int) -> bool:
        return self.call_key is not None and not self.is_stale(now_ms, stale_after_ms)


@dataclass(frozen=True)
class LastProcessed:
    """Dedup history: the last admitted fact."""
    call_id: Optional[str] = None
    server_ts_ms: Optional[int] = None


@dataclass(frozen=True)
class CachedOffer:
    """Single-slot cache of the offer payload that arrived with a call."""
    caller_key: str
    payload: str
    call_id: Optional[str] = None
    server_ts_ms: int = 0

    def matches(self, caller_key: str, call_id: Optional[str]) -> bool:
        if self.caller_key != caller_key:
            return False
        if call_id is not None and self.call_id is not None and self.call_id != call_id:
            return False
        return True


class PendingAction(str, Enum):
    """Mailbox slots."""
    ACCEPT = "accept"
    REJECT = "reject"


class PendingRecord(BaseModel):
    """A user action waiting in the mailbox for the application layer."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action: PendingAction = Field(..., description="Mailbox slot the record belongs to")
    caller_key: str = Field(..., description="Stable identity of the caller")
    call_id: Optional[str] = Field(None, description="Call identifier, when the transport sent one")
    caller_name: Optional[str] = Field(None, description="Caller display name")
    server_ts_ms: Optional[int] = Field(None, description="Server timestamp of the call signal")
    offer_payload: Optional[str] = Field(None, alias="offer_data", description="Cached offer for accepted calls")
    stored_at_ms: int = Field(..., alias="stored_ts_ms", description="When the record was written")

    @classmethod
    def from_fact(
        cls,
        action: PendingAction,
        fact: IncomingCallFact,
        stored_at_ms: int,
        offer_payload: Optional[str] = None,
    ) -> "PendingRecord":
        return cls(
            action=action,
            caller_key=fact.caller_key,
            call_id=fact.call_id,
            caller_name=fact.caller_name,
            server_ts_ms=fact.server_ts_ms,
            offer_payload=offer_payload,
            stored_at_ms=stored_at_ms,
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_json(cls, raw: str) -> "PendingRecord":
        return cls.model_validate_json(raw)
