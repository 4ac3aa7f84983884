"""
Error taxonomy for the call bridge.

Signaling errors come from the native signaling stack (registration or
incoming-call requests). They never leave the coordinator: every call site
collapses them into a boolean outcome plus a logged diagnostic.
"""


class CallBridgeError(Exception):
    """Base class for call bridge errors."""


class SignalingError(CallBridgeError):
    """The native signaling stack refused or failed a request."""


class SignalingPermissionError(SignalingError):
    """The signaling stack rejected the request for lack of permission."""


class SignalingUnavailableError(SignalingError):
    """No signaling stack is available in this process."""


class StoreError(CallBridgeError):
    """A bridge store backend failed to read or write a key."""
