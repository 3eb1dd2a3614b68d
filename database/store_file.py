"""
FileSessionStore — JSON file-backed session store with persistence across restarts.

Data layout:
  {data_dir}/
    sessions.json        {"contact_id:flow_id": {...session...}, ...}

Features:
  - Survives process restarts (unlike InMemorySessionStore)
  - No external dependencies (no database server, no Redis)
  - Every mutation flushes to disk via write-to-temp + rename
  - Single-process only (the per-key locks are in-process)

Best for: small deployments, demos, edge devices.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import structlog

from database.store_base import SessionStoreError
from database.store_memory import InMemorySessionStore
from models.schemas import Session, session_key

logger = structlog.get_logger()


class FileSessionStore(InMemorySessionStore):
    """
    Extends InMemorySessionStore with JSON file persistence.

    On init: loads all sessions from disk into memory.
    On every write: flushes the sessions file.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SessionStoreError(f"cannot create session directory {data_dir}: {e}") from e
        self._load()
        logger.info("file_session_store_initialized", data_dir=str(self._data_dir),
                    sessions=len(self._sessions))

    @property
    def path(self) -> Path:
        return self._data_dir / "sessions.json"

    def _load(self):
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data: Any = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_session_store_load_error", path=str(self.path), error=str(e))
            return
        self._sessions = data if isinstance(data, dict) else {}

    def _flush(self):
        tmp_path = self.path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(self._sessions, f, indent=2, default=str)
            tmp_path.replace(self.path)  # atomic on POSIX
        except OSError as e:
            logger.error("file_session_store_flush_error", path=str(self.path), error=str(e))
            raise SessionStoreError(f"cannot write {self.path}: {e}") from e

    # ── Override write methods to trigger persistence ──────

    async def set(self, session: Session) -> None:
        previous = self._sessions.get(session.key)
        await super().set(session)
        try:
            self._flush()
        except SessionStoreError:
            self._restore(session.key, previous)
            raise

    async def delete(self, contact_id: str, flow_id: str) -> bool:
        key = session_key(contact_id, flow_id)
        previous = self._sessions.get(key)
        removed = await super().delete(contact_id, flow_id)
        if removed:
            try:
                self._flush()
            except SessionStoreError:
                self._restore(key, previous)
                raise
        return removed

    def _restore(self, key: str, previous: Optional[dict]):
        # Memory must not hold anything the file does not.
        if previous is None:
            self._sessions.pop(key, None)
        else:
            self._sessions[key] = previous
