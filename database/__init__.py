"""
Session persistence — Multi-backend storage for sticky-routing sessions.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (JSON on disk, for small deployments)
  - Redis (shared across worker processes)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  session = await store.get("contact-1", "flow-1")
"""
from database.store_base import BaseSessionStore, SessionStoreError, KeyedLocks
from database.store_memory import InMemorySessionStore
from database.store_file import FileSessionStore
from database.store_redis import RedisSessionStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # Store interface
    "BaseSessionStore", "SessionStoreError", "KeyedLocks",
    # Store backends
    "InMemorySessionStore", "FileSessionStore", "RedisSessionStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
