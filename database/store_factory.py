"""
Store Factory — Create the right session store backend from configuration.

Configuration in settings.yaml:
    sessions:
      # Session store backend — where sticky-routing state lives
      #   "memory"   — In-memory dict (development, testing)
      #   "file"     — JSON file on disk (small deployments, demos)
      #   "redis"    — Redis (several worker processes)
      store_backend: "memory"
      store_file_dir: "./data"
      redis_url: "redis://localhost:6379"

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(config)     # Create from config dict
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

from typing import Optional

import structlog

from database.store_base import BaseSessionStore

logger = structlog.get_logger()

_instance: Optional[BaseSessionStore] = None


def create_store(config: dict = None) -> BaseSessionStore:
    """
    Factory: create the appropriate session store backend.

    Args:
        config: dict with keys:
            store_backend: "memory" | "file" | "redis"  (default: "memory")
            store_file_dir: str (for file backend, default: "./data")
            redis_url, key_prefix, lock_timeout (for redis backend)
    """
    global _instance
    if _instance is not None:
        return _instance

    config = config or {}
    backend = config.get("store_backend", "memory")

    if backend == "redis":
        from database.store_redis import RedisSessionStore
        _instance = RedisSessionStore(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            key_prefix=config.get("key_prefix", "flow-session:"),
            lock_timeout=float(config.get("lock_timeout", 10.0)),
        )
        logger.info("store_created", backend="redis")

    elif backend == "file":
        from database.store_file import FileSessionStore
        data_dir = config.get("store_file_dir", "./data")
        _instance = FileSessionStore(data_dir=data_dir)
        logger.info("store_created", backend="file", data_dir=data_dir)

    else:  # "memory" or default
        from database.store_memory import InMemorySessionStore
        _instance = InMemorySessionStore()
        logger.info("store_created", backend="memory")

    return _instance


def get_store() -> BaseSessionStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
