"""
Key-value backends for the bridge store.

Each backend is a flat string-to-string map with per-key atomic operations:
``get``, ``set``, ``delete`` and a destructive ``pop``. Grouped writes are
not transactional; callers must tolerate interleavings.
"""

import json
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import redis
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..exceptions import StoreError
from ..logging_config import get_logger

logger = get_logger(__name__)


class KeyValueBackend(ABC):
    """Flat persisted key-value map."""

    name = "abstract"

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored under ``key`` or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, overwriting any previous value."""

    @abstractmethod
    def delete(self, *keys: str) -> None:
        """Remove ``keys``; missing keys are ignored."""

    @abstractmethod
    def pop(self, key: str) -> Optional[str]:
        """Atomically read and remove ``key``."""

    @abstractmethod
    def items(self, prefix: str = "") -> Dict[str, str]:
        """All entries whose key starts with ``prefix``."""

    def close(self) -> None:
        """Release backend resources."""


class InMemoryBackend(KeyValueBackend):
    """Process-local backend, used for tests and ephemeral runs."""

    name = "memory"

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def pop(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.pop(key, None)

    def items(self, prefix: str = "") -> Dict[str, str]:
        with self._lock:
            return {k: v for k, v in self._data.items() if k.startswith(prefix)}


class JsonFileBackend(KeyValueBackend):
    """
    Backend persisted as a single flat JSON object.

    Every write rewrites the file through a temporary file and an atomic
    rename, so a crash leaves either the old or the new state on disk.
    Safe across threads of one process; concurrent processes are not
    coordinated.
    """

    name = "file"

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.error("Failed to load bridge store file, starting empty",
                         path=str(self.path), error=str(e))
            return {}
        if not isinstance(raw, dict):
            logger.error("Bridge store file is not a JSON object, starting empty",
                         path=str(self.path))
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    def _flush(self) -> None:
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=self.path.name, suffix=".tmp"
            )
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            raise StoreError(f"Failed to write bridge store file {self.path}: {e}") from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.warning("Failed to remove temporary store file", path=tmp_path)

    def _commit(self, previous: Dict[str, str]) -> None:
        """Flush, restoring ``previous`` in memory when the write fails."""
        try:
            self._flush()
        except StoreError:
            self._data = previous
            raise

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            previous = dict(self._data)
            self._data[key] = value
            self._commit(previous)

    def delete(self, *keys: str) -> None:
        with self._lock:
            if not any(key in self._data for key in keys):
                return
            previous = dict(self._data)
            for key in keys:
                self._data.pop(key, None)
            self._commit(previous)

    def pop(self, key: str) -> Optional[str]:
        with self._lock:
            if key not in self._data:
                return None
            previous = dict(self._data)
            value = self._data.pop(key)
            self._commit(previous)
            return value

    def items(self, prefix: str = "") -> Dict[str, str]:
        with self._lock:
            return {k: v for k, v in self._data.items() if k.startswith(prefix)}


class RedisBackend(KeyValueBackend):
    """Backend on a Redis server; per-key atomicity comes from Redis itself."""

    name = "redis"

    def __init__(self, url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None):
        self.url = url
        self.client = client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        retry=retry_if_exception_type(redis.exceptions.ConnectionError),
        reraise=True,
    )
    def connect(self) -> "RedisBackend":
        """Connect to Redis with retry logic."""
        if self.client is None:
            self.client = redis.Redis.from_url(
                self.url,
                decode_responses=True,
                retry_on_timeout=True,
                socket_keepalive=True,
            )
        try:
            self.client.ping()
        except redis.exceptions.ConnectionError as e:
            logger.error("Failed to connect to Redis", error=str(e))
            raise
        logger.info("Connected to Redis bridge store")
        return self

    def _require_client(self) -> redis.Redis:
        if self.client is None:
            raise StoreError("Redis backend is not connected")
        return self.client

    def get(self, key: str) -> Optional[str]:
        try:
            return self._require_client().get(key)
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Redis GET {key} failed: {e}") from e

    def set(self, key: str, value: str) -> None:
        try:
            self._require_client().set(key, value)
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Redis SET {key} failed: {e}") from e

    def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            self._require_client().delete(*keys)
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Redis DEL failed: {e}") from e

    def pop(self, key: str) -> Optional[str]:
        try:
            return self._require_client().getdel(key)
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Redis GETDEL {key} failed: {e}") from e

    def items(self, prefix: str = "") -> Dict[str, str]:
        client = self._require_client()
        try:
            keys = list(client.scan_iter(match=f"{prefix}*"))
            if not keys:
                return {}
            values = client.mget(keys)
        except redis.exceptions.RedisError as e:
            raise StoreError(f"Redis scan failed: {e}") from e
        return {k: v for k, v in zip(keys, values) if v is not None}

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None
            logger.info("Disconnected from Redis bridge store")
