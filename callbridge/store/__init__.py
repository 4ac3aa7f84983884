"""
Bridge store package.

``create_backend`` builds the key-value backend named in the store settings.
"""

from .backends import InMemoryBackend, JsonFileBackend, KeyValueBackend, RedisBackend
from .bridge_store import BridgeStore


def create_backend(store_config) -> KeyValueBackend:
    """Instantiate the backend selected by ``store_config.backend``."""
    if store_config.backend == "memory":
        return InMemoryBackend()
    if store_config.backend == "file":
        return JsonFileBackend(store_config.file_path)
    if store_config.backend == "redis":
        return RedisBackend(store_config.redis_url).connect()
    raise ValueError(f"Unknown store backend: {store_config.backend}")


__all__ = [
    "BridgeStore",
    "InMemoryBackend",
    "JsonFileBackend",
    "KeyValueBackend",
    "RedisBackend",
    "create_backend",
]
