"""
Abstract Session Store — Interface for all session storage backends.

Implementations:
  - InMemorySessionStore (dict-based, single-process, no persistence)
  - FileSessionStore     (JSON file on disk, single-process, durable)
  - RedisSessionStore    (shared across processes, native TTL)

Sessions are keyed by ``(contact_id, flow_id)``. Read-modify-write on one
key must be serialized; ``lock()`` hands out the per-key mutex the trigger
engine holds while it decides and updates a session.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

from models.schemas import Session, session_key


class SessionStoreError(Exception):
    """The backing store could not be read or written."""


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class BaseSessionStore(ABC):
    """Interface that all session store backends must implement."""

    def __init__(self):
        self._keyed_locks = KeyedLocks()

    @abstractmethod
    async def get(self, contact_id: str, flow_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def set(self, session: Session) -> None:
        ...

    @abstractmethod
    async def delete(self, contact_id: str, flow_id: str) -> bool:
        """Remove a session. Returns True when one existed."""
        ...

    @abstractmethod
    async def list_sessions(self, flow_id: str = None) -> list[Session]:
        ...

    async def purge_expired(self, now: datetime) -> int:
        """Housekeeping sweep. Correctness never depends on it (expiry is checked on read)."""
        removed = 0
        for session in await self.list_sessions():
            if session.is_expired(now):
                if await self.delete(session.contact_id, session.flow_id):
                    removed += 1
        return removed

    def lock(self, contact_id: str, flow_id: str):
        """Async context manager serializing work on one session key."""
        return self._keyed_locks.hold(session_key(contact_id, flow_id))

    async def close(self) -> None:
        pass
