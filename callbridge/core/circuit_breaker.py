"""
Circuit Breaker Module

Wraps the 'pybreaker' library around calls into the native signaling stack.
After repeated refusals the breaker opens and incoming calls go straight to
the fallback notification path instead of waiting on a broken stack.
"""

import pybreaker
from pybreaker import CircuitBreaker as PyCircuitBreaker, CircuitBreakerError

from ..logging_config import get_logger

logger = get_logger(__name__)

__all__ = ["CircuitBreaker", "CircuitBreakerError"]


class _LoggingListener(pybreaker.CircuitBreakerListener):
    """Log breaker state changes."""

    def state_change(self, cb, old_state, new_state):
        logger.warning("Circuit breaker state changed", breaker=cb.name,
                       old_state=getattr(old_state, "name", str(old_state)),
                       new_state=getattr(new_state, "name", str(new_state)))


class CircuitBreaker:
    """A wrapper around pybreaker.CircuitBreaker."""

    def __init__(self, fail_max=5, reset_timeout=60, name=None):
        self._breaker = PyCircuitBreaker(
            fail_max=fail_max,
            reset_timeout=reset_timeout,
            name=name,
            listeners=[_LoggingListener()],
        )

    def call(self, func, *args, **kwargs):
        """Execute a function within the circuit breaker."""
        return self._breaker.call(func, *args, **kwargs)

    def reset(self):
        self._breaker.close()

    @property
    def state(self):
        return self._breaker.current_state

    @property
    def fail_counter(self):
        return self._breaker.fail_counter
