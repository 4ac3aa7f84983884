"""
Ports to the collaborators the core drives but does not implement.

``CallUi`` is the presentation side: the incoming-call screen, its close
signal, launching the application surface and the call-mode toggles.
``SignalingStack`` is the native signaling side: one-time account
registration and "add new incoming call" requests. UI calls go through
``best_effort`` so a failing collaborator never breaks the state machine.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

from ..exceptions import SignalingUnavailableError
from ..logging_config import get_logger
from .models import IncomingCallFact

logger = get_logger(__name__)


def best_effort(action: str, func: Callable[..., Any], *args, **kwargs) -> bool:
    """Run a collaborator call, collapsing any failure into False plus a log entry."""
    try:
        func(*args, **kwargs)
        return True
    except Exception as e:
        logger.error("Collaborator call failed", action=action, error=str(e), exc_info=True)
        return False


class CallUi:
    """
    Presentation collaborator.

    The default implementation only logs; hosts override what they render.
    """

    def show_incoming_call(self, connection_key: str, display_name: str) -> None:
        """Present the incoming-call screen for ``connection_key``."""
        logger.info("Show incoming call", connection_key=connection_key, display_name=display_name)

    def close_incoming_call(self, connection_key: str) -> None:
        """Close the incoming-call screen bound to ``connection_key``."""
        logger.info("Close incoming call", connection_key=connection_key)

    def launch_application(self, action: str) -> None:
        """Bring up the application surface so it can drain the mailbox."""
        logger.info("Launch application", action=action)

    def enable_call_mode(self) -> None:
        logger.debug("Call mode enabled")

    def disable_call_mode(self) -> None:
        logger.debug("Call mode disabled")


class SignalingStack(ABC):
    """Native signaling collaborator."""

    @abstractmethod
    def register_account(self, account_id: str, label: str) -> None:
        """Register the calling account. Raises SignalingError on refusal."""

    @abstractmethod
    def add_new_incoming_call(self, fact: IncomingCallFact, extras: Dict[str, Any]) -> None:
        """
        Ask the stack to start an incoming call.

        The stack answers later through ``CallManager.on_create_incoming_connection``
        or ``CallManager.on_create_incoming_connection_failed``. Raises
        SignalingError when the request is refused.
        """


class LoopbackSignalingStack(SignalingStack):
    """
    In-process signaling stack.

    Accepts every request and calls straight back into the bound manager on
    the caller's thread, as a native stack would from its own callback.
    """

    def __init__(self, manager=None):
        self.manager = manager
        self.registrations = 0
        self.account: Optional[Tuple[str, str]] = None

    def bind(self, manager) -> "LoopbackSignalingStack":
        self.manager = manager
        return self

    def register_account(self, account_id: str, label: str) -> None:
        self.registrations += 1
        self.account = (account_id, label)
        logger.info("Loopback signaling account registered", account_id=account_id, label=label)

    def add_new_incoming_call(self, fact: IncomingCallFact, extras: Dict[str, Any]) -> None:
        if self.manager is None:
            raise SignalingUnavailableError("Loopback signaling stack is not bound to a call manager")
        self.manager.on_create_incoming_connection(extras)
