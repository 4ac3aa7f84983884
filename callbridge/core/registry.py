"""
In-memory connection registry.

Maps a connection key to the live connection handle so an incoming-call UI
surface can reach the right connection. The registry never owns a
connection: the coordinator inserts handles when a connection starts
ringing and removes them on every terminal transition. Nothing here is
persisted; after a restart every lookup misses, which callers must treat as
"connection already gone".
"""

import threading
from typing import Dict, Generic, List, Optional, TypeVar

from ..logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ConnectionRegistry(Generic[T]):
    """Thread-safe key -> connection lookup table."""

    def __init__(self):
        self._by_key: Dict[str, T] = {}
        self._lock = threading.Lock()

    def register(self, key: str, handle: T) -> None:
        with self._lock:
            replaced = self._by_key.get(key)
            self._by_key[key] = handle
        if replaced is not None and replaced is not handle:
            logger.warning("Connection registry entry replaced", connection_key=key)
        logger.debug("Connection registered", connection_key=key)

    def lookup(self, key: str) -> Optional[T]:
        with self._lock:
            return self._by_key.get(key)

    def unregister(self, key: str, handle: Optional[T] = None) -> bool:
        """
        Remove ``key``. When ``handle`` is given, only remove the entry if it
        still points at that handle. Returns whether an entry was removed.
        """
        with self._lock:
            current = self._by_key.get(key)
            if current is None or (handle is not None and current is not handle):
                return False
            del self._by_key[key]
        logger.debug("Connection unregistered", connection_key=key)
        return True

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._by_key)

    def clear(self) -> None:
        with self._lock:
            self._by_key.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._by_key
