"""
RedisSessionStore — Sessions shared by every worker process.

Each session is one JSON string under ``{prefix}{contact_id}:{flow_id}``
written with a PX expiry equal to the session timeout, so Redis drops
idle sessions by itself. ``lock()`` returns a Redis lock,
which serializes the same key across processes rather than just
within one event loop.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

from database.store_base import BaseSessionStore, SessionStoreError
from models.schemas import Session, session_key

logger = structlog.get_logger()


class RedisSessionStore(BaseSessionStore):

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "flow-session:",
        lock_timeout: float = 10.0,
        client=None,
    ):
        super().__init__()
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._lock_prefix = f"{key_prefix}lock:"
        self._lock_timeout = lock_timeout
        self._redis = client

    async def _client(self):
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            logger.info("redis_session_store_connected", url=self._redis_url)
        return self._redis

    def _key(self, contact_id: str, flow_id: str) -> str:
        return f"{self._prefix}{session_key(contact_id, flow_id)}"

    async def get(self, contact_id: str, flow_id: str) -> Optional[Session]:
        try:
            client = await self._client()
            raw = await client.get(self._key(contact_id, flow_id))
        except Exception as e:
            raise SessionStoreError(f"redis get failed: {e}") from e
        return Session.model_validate_json(raw) if raw else None

    async def set(self, session: Session) -> None:
        # Measured from last activity, not the wall clock.
        ttl_ms = int((session.expires_at - session.last_activity_at).total_seconds() * 1000)
        try:
            client = await self._client()
            await client.set(
                self._key(session.contact_id, session.flow_id),
                session.model_dump_json(by_alias=True),
                px=max(ttl_ms, 1),
            )
        except Exception as e:
            raise SessionStoreError(f"redis set failed: {e}") from e

    async def delete(self, contact_id: str, flow_id: str) -> bool:
        try:
            client = await self._client()
            return bool(await client.delete(self._key(contact_id, flow_id)))
        except Exception as e:
            raise SessionStoreError(f"redis delete failed: {e}") from e

    async def list_sessions(self, flow_id: str = None) -> list[Session]:
        try:
            client = await self._client()
            sessions = []
            async for key in client.scan_iter(match=f"{self._prefix}*"):
                if key.startswith(self._lock_prefix):
                    continue
                raw = await client.get(key)
                if raw:
                    sessions.append(Session.model_validate_json(raw))
        except Exception as e:
            raise SessionStoreError(f"redis scan failed: {e}") from e
        if flow_id is not None:
            sessions = [s for s in sessions if s.flow_id == flow_id]
        return sessions

    @asynccontextmanager
    async def _redis_lock(self, key: str) -> AsyncIterator[None]:
        try:
            client = await self._client()
            lock = client.lock(f"{self._lock_prefix}{key}", timeout=self._lock_timeout)
            await lock.acquire()
        except Exception as e:
            raise SessionStoreError(f"redis lock failed: {e}") from e
        try:
            yield
        finally:
            try:
                await lock.release()
            except Exception as e:
                logger.warning("redis_lock_release_failed", key=key, error=str(e))

    def lock(self, contact_id: str, flow_id: str):
        return self._redis_lock(session_key(contact_id, flow_id))

    async def close(self) -> None:
        if self._redis:
            await self._redis.close()
            self._redis = None
