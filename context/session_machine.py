"""
Session State Machine — Sticky routing state per contact × flow.

Two states, one transition table:

    NoSession ──(trigger condition matches, persistence on)──▶ SessionActive
    SessionActive ──(message before expiresAt)──▶ SessionActive (refreshed)
    SessionActive ──(now >= expiresAt)──▶ NoSession   (lazy, on next read)
    SessionActive ──(hard reset keyword)──▶ NoSession

The functions here are pure; reading and writing the store is the
trigger engine's job.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from models.schemas import Session, TimeoutUnit


@dataclass(frozen=True)
class NoSession:
    expired: Optional[Session] = None         # the stale record, when expiry caused this state

    @property
    def is_active(self) -> bool:
        return False


@dataclass(frozen=True)
class SessionActive:
    session: Session

    @property
    def is_active(self) -> bool:
        return True


SessionState = Union[NoSession, SessionActive]


def resolve_state(session: Optional[Session], now: datetime) -> SessionState:
    if session is None:
        return NoSession()
    if session.is_expired(now):
        return NoSession(expired=session)
    return SessionActive(session)


_UNIT_SECONDS = {
    TimeoutUnit.SECONDS: 1,
    TimeoutUnit.MINUTES: 60,
    TimeoutUnit.HOURS: 3600,
    TimeoutUnit.DAYS: 86400,
}


def timeout_delta(value: float, unit: Union[str, TimeoutUnit]) -> timedelta:
    """Raises ValueError for an unknown unit or a non-positive value."""
    unit = TimeoutUnit(unit)
    if value <= 0:
        raise ValueError(f"session timeout must be positive, got {value}")
    return timedelta(seconds=float(value) * _UNIT_SECONDS[unit])


def open_session(
    contact_id: str,
    flow_id: str,
    trigger_node_id: str,
    channel_type: str,
    now: datetime,
    timeout_value: float = 30,
    timeout_unit: Union[str, TimeoutUnit] = TimeoutUnit.MINUTES,
) -> Session:
    return Session(
        contact_id=contact_id,
        flow_id=flow_id,
        trigger_node_id=trigger_node_id,
        channel_type=channel_type,
        last_activity_at=now,
        expires_at=now + timeout_delta(timeout_value, timeout_unit),
        timeout_value=timeout_value,
        timeout_unit=TimeoutUnit(timeout_unit),
    )


def refresh_session(session: Session, now: datetime) -> Session:
    """Return a copy with the idle timer restarted at ``now``."""
    return session.model_copy(update={
        "last_activity_at": now,
        "expires_at": now + timeout_delta(session.timeout_value, session.timeout_unit),
    })
