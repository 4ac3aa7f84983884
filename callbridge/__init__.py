"""
callbridge: admission, dedup and lifecycle coordination for incoming calls.

Incoming-call signals from push messages or a native signaling stack are
turned into a single, non-duplicated call lifecycle whose outcome is handed
to the application layer through a persisted mailbox.
"""

from .bridge import CallBridge
from .config import BridgeSettings, get_config
from .core import (
    AdmissionDecision,
    AdmissionReason,
    CallManager,
    CallUi,
    ConnectionRegistry,
    ConnectionState,
    DisconnectCause,
    IncomingCallFact,
    IncomingConnection,
    LoopbackSignalingStack,
    PendingAction,
    PendingRecord,
    SignalingStack,
    decide,
)
from .store import BridgeStore

__version__ = "1.0.0"

__all__ = [
    "AdmissionDecision",
    "AdmissionReason",
    "BridgeSettings",
    "BridgeStore",
    "CallBridge",
    "CallManager",
    "CallUi",
    "ConnectionRegistry",
    "ConnectionState",
    "DisconnectCause",
    "IncomingCallFact",
    "IncomingConnection",
    "LoopbackSignalingStack",
    "PendingAction",
    "PendingRecord",
    "SignalingStack",
    "decide",
    "get_config",
]
