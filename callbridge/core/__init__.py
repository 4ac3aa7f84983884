"""Call admission, connection registry and connection lifecycle."""

from .admission import decide
from .call_manager import CallManager
from .connection import ConnectionState, DisconnectCause, IncomingConnection
from .models import (
    ActiveCallGuard,
    AdmissionDecision,
    AdmissionReason,
    CachedOffer,
    IncomingCallFact,
    LastProcessed,
    PendingAction,
    PendingRecord,
)
from .ports import CallUi, LoopbackSignalingStack, SignalingStack
from .registry import ConnectionRegistry

__all__ = [
    "ActiveCallGuard",
    "AdmissionDecision",
    "AdmissionReason",
    "CachedOffer",
    "CallManager",
    "CallUi",
    "ConnectionRegistry",
    "ConnectionState",
    "DisconnectCause",
    "IncomingCallFact",
    "IncomingConnection",
    "LastProcessed",
    "LoopbackSignalingStack",
    "PendingAction",
    "PendingRecord",
    "SignalingStack",
    "decide",
]
