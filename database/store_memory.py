"""
InMemorySessionStore — Dict-backed session store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Per-key asyncio locks (single event loop)
  - All sessions lost on process restart

Best for: local development, unit tests, single-process deployments.
"""
from __future__ import annotations

from typing import Optional

import structlog

from database.store_base import BaseSessionStore
from models.schemas import Session, session_key

logger = structlog.get_logger()


class InMemorySessionStore(BaseSessionStore):
    """Sessions held in a dict keyed by ``contact_id:flow_id``."""

    def __init__(self):
        super().__init__()
        self._sessions: dict[str, dict] = {}           # key → session dict (JSON form)
        logger.info("inmemory_session_store_initialized")

    async def get(self, contact_id: str, flow_id: str) -> Optional[Session]:
        data = self._sessions.get(session_key(contact_id, flow_id))
        return Session.model_validate(data) if data else None

    async def set(self, session: Session) -> None:
        # Stored as plain data so callers never share a mutable Session instance.
        self._sessions[session.key] = session.model_dump(mode="json", by_alias=True)

    async def delete(self, contact_id: str, flow_id: str) -> bool:
        return self._sessions.pop(session_key(contact_id, flow_id), None) is not None

    async def list_sessions(self, flow_id: str = None) -> list[Session]:
        sessions = [Session.model_validate(d) for d in self._sessions.values()]
        if flow_id is not None:
            sessions = [s for s in sessions if s.flow_id == flow_id]
        return sessions

    @property
    def count(self) -> int:
        return len(self._sessions)
