"""
Trigger Engine — Decides whether an inbound message activates a flow.

For one (contact, flow) pair, under that pair's lock:

  1. Draft flows never match.
  2. Only triggers listening on the message's channel are candidates.
  3. A hard-reset keyword deletes the session and returns the trigger's
     confirmation message. Nothing else is considered.
  4. A live session on the same channel is refreshed and the contact is
     routed back into the flow without re-evaluating any condition.
  5. An expired session is deleted on sight.
  6. Otherwise trigger conditions are evaluated in node order; the first
     match enters the flow and, if persistence is on, opens a session.

Store failures fail closed: the outcome is ``error`` and the flow is not
entered.

Usage:
    engine = TriggerEngine(store)
    outcome = await engine.process(flow, message, contact)
    if outcome.kind in ("entered", "resumed"):
        ...
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

import structlog

from config.settings import get_settings
from context.session_machine import (
    NoSession, SessionActive, open_session, refresh_session, resolve_state,
)
from database.store_base import BaseSessionStore, SessionStoreError
from models.schemas import (
    ContactInfo, Diagnostic, Flow, InboundMessage, Keyword, MessageContext,
    Node, Session, TimeoutUnit,
)
from routing.keywords import coerce_keywords, keyword_matches, parse_keyword_string
from utils.conditions import evaluate
from utils.interpolation import build_render_context, known_variables_for_node, render

logger = structlog.get_logger()

Clock = Callable[[], datetime]

DEFAULT_CHANNELS = ["whatsapp_unofficial"]

# Outcome kinds
NO_MATCH = "no_match"
ENTERED = "entered"
RESUMED = "resumed"
HARD_RESET = "hard_reset"
ERROR = "error"


# ──────────────────────────────────────────────────────────────
#  Trigger configuration
# ──────────────────────────────────────────────────────────────

@dataclass
class TriggerConfig:
    node_id: str
    channel_types: list[str] = field(default_factory=lambda: list(DEFAULT_CHANNELS))
    condition_type: str = "any"
    condition_value: str = ""
    case_sensitive: bool = False
    keywords: list[Keyword] = field(default_factory=list)
    condition: str = ""                        # condition DSL, for condition_type "condition"
    hard_reset_keyword: str = ""
    hard_reset_case_sensitive: bool = False
    hard_reset_confirmation_message: str = ""
    enable_session_persistence: bool = True
    session_timeout: float = 30
    session_timeout_unit: TimeoutUnit = TimeoutUnit.MINUTES

    @classmethod
    def from_node(cls, node: Node) -> "TriggerConfig":
        data = node.data
        channels = data.get("channelTypes", DEFAULT_CHANNELS)
        if isinstance(channels, str):
            channels = [channels]
        keywords_cs = bool(data.get("keywordsCaseSensitive", False))

        if data.get("keywords"):
            keywords = coerce_keywords(data["keywords"])
        else:
            keywords = parse_keyword_string(data.get("multipleKeywords") or "", keywords_cs)

        timeout = data.get("sessionTimeout", 30)
        try:
            timeout = float(timeout)
            if timeout <= 0:
                raise ValueError(timeout)
        except (TypeError, ValueError):
            logger.warning("trigger_invalid_session_timeout", node_id=node.id, value=timeout)
            timeout = float(get_settings().sessions.default_timeout)

        unit = data.get("sessionTimeoutUnit") or get_settings().sessions.default_timeout_unit
        try:
            unit = TimeoutUnit(unit)
        except ValueError:
            logger.warning("trigger_invalid_session_unit", node_id=node.id, value=unit)
            unit = TimeoutUnit.MINUTES

        return cls(
            node_id=node.id,
            channel_types=[str(c) for c in channels or []],
            condition_type=str(data.get("conditionType") or "any"),
            condition_value=str(data.get("conditionValue") or ""),
            case_sensitive=bool(data.get("caseSensitive", False)),
            keywords=keywords,
            condition=str(data.get("condition") or ""),
            hard_reset_keyword=str(data.get("hardResetKeyword") or ""),
            hard_reset_case_sensitive=bool(data.get("hardResetCaseSensitive", False)),
            hard_reset_confirmation_message=str(data.get("hardResetConfirmationMessage") or ""),
            enable_session_persistence=data.get("enableSessionPersistence", True) is not False,
            session_timeout=timeout,
            session_timeout_unit=unit,
        )

    def accepts_channel(self, channel_type: str) -> bool:
        return not self.channel_types or channel_type in self.channel_types

    def is_hard_reset(self, text: str) -> bool:
        keyword = self.hard_reset_keyword.strip()
        if not keyword:
            return False
        text = (text or "").strip()
        if self.hard_reset_case_sensitive:
            return text == keyword
        return text.casefold() == keyword.casefold()

    def _fold(self, text: str) -> str:
        return text if self.case_sensitive else text.casefold()

    def matches(self, context: MessageContext, diagnostics: list[Diagnostic]) -> bool:
        """Evaluate this trigger's condition. Never raises."""
        text = context.message_text or ""
        kind = self.condition_type
        value = self.condition_value

        if kind == "any":
            return True
        if kind == "contains":
            return bool(value) and self._fold(value) in self._fold(text)
        if kind in ("exact", "equals"):
            return bool(value) and self._fold(value.strip()) == self._fold(text.strip())
        if kind == "starts_with":
            return bool(value) and self._fold(text.strip()).startswith(self._fold(value))
        if kind == "ends_with":
            return bool(value) and self._fold(text.strip()).endswith(self._fold(value))
        if kind == "multiple_keywords":
            return any(keyword_matches(k, text) for k in self.keywords if k.value)
        if kind == "regex":
            try:
                pattern = re.compile(value, 0 if self.case_sensitive else re.IGNORECASE)
            except re.error as e:
                diagnostics.append(Diagnostic(code="invalid_regex", node_id=self.node_id,
                                              message=f"invalid trigger pattern {value!r}: {e}"))
                return False
            return pattern.search(text) is not None
        if kind == "media":
            if not context.media_type:
                return False
            return not value or value.casefold() == context.media_type.casefold()
        if kind == "condition":
            local: list[Diagnostic] = []
            matched = evaluate(self.condition or value, context, local)
            for d in local:
                diagnostics.append(d.model_copy(update={"node_id": self.node_id}))
            return matched

        diagnostics.append(Diagnostic(code="unknown_condition_type", node_id=self.node_id,
                                      message=f"unknown trigger condition type '{kind}'"))
        return False


# ──────────────────────────────────────────────────────────────
#  Outcome
# ──────────────────────────────────────────────────────────────

@dataclass
class TriggerOutcome:
    kind: str
    flow_id: str
    trigger_node_id: Optional[str] = None
    session: Optional[Session] = None
    resume_node_id: Optional[str] = None       # paused node to continue from, when resumed
    message: Optional[str] = None              # rendered hard-reset confirmation
    diagnostics: list[Diagnostic] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def matched(self) -> bool:
        return self.kind in (ENTERED, RESUMED)

    def __repr__(self):
        return f"<TriggerOutcome {self.kind} flow={self.flow_id} node={self.trigger_node_id}>"


# ──────────────────────────────────────────────────────────────
#  Engine
# ──────────────────────────────────────────────────────────────

class TriggerEngine:

    def __init__(
        self,
        store: BaseSessionStore,
        clock: Optional[Clock] = None,
        timezone_name: Optional[str] = None,
    ):
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._timezone = timezone_name or get_settings().timezone

    @property
    def store(self) -> BaseSessionStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    def session_lock(self, contact_id: str, flow_id: str):
        return self._store.lock(contact_id, flow_id)

    async def process(
        self,
        flow: Flow,
        message: InboundMessage,
        contact: Optional[ContactInfo] = None,
    ) -> TriggerOutcome:
        async with self.session_lock(message.contact_id, flow.id):
            return await self.evaluate_locked(flow, message, contact)

    async def evaluate_locked(
        self,
        flow: Flow,
        message: InboundMessage,
        contact: Optional[ContactInfo] = None,
    ) -> TriggerOutcome:
        """Same as ``process`` but the caller already holds ``session_lock``."""
        if not flow.is_active:
            return TriggerOutcome(kind=NO_MATCH, flow_id=flow.id)

        candidates = [
            TriggerConfig.from_node(node) for node in flow.trigger_nodes()
        ]
        candidates = [c for c in candidates if c.accepts_channel(message.channel_type)]
        if not candidates:
            return TriggerOutcome(kind=NO_MATCH, flow_id=flow.id)

        try:
            return await self._decide(flow, message, contact, candidates)
        except SessionStoreError as e:
            logger.error("trigger_session_store_error", flow_id=flow.id,
                         contact_id=message.contact_id, error=str(e))
            return TriggerOutcome(kind=ERROR, flow_id=flow.id, error=str(e))

    async def _decide(
        self,
        flow: Flow,
        message: InboundMessage,
        contact: Optional[ContactInfo],
        candidates: list[TriggerConfig],
    ) -> TriggerOutcome:
        now = self.now()
        contact_id = message.contact_id

        # ── Hard reset ─────────────────────────────────────────
        for config in candidates:
            if config.is_hard_reset(message.text):
                cleared = await self._store.delete(contact_id, flow.id)
                confirmation = self._render_confirmation(flow, config, message, contact)
                logger.info("trigger_hard_reset", flow_id=flow.id, contact_id=contact_id,
                            node_id=config.node_id, session_cleared=cleared)
                return TriggerOutcome(
                    kind=HARD_RESET, flow_id=flow.id, trigger_node_id=config.node_id,
                    message=confirmation.result,
                    diagnostics=self._unknown_variable_diagnostics(config.node_id, confirmation.unknown_variables),
                )

        # ── Sticky session ─────────────────────────────────────
        state = resolve_state(await self._store.get(contact_id, flow.id), now)

        if isinstance(state, SessionActive):
            session = state.session
            if flow.get_node(session.trigger_node_id) is None:
                logger.info("trigger_session_orphaned", flow_id=flow.id, contact_id=contact_id,
                            node_id=session.trigger_node_id)
                await self._store.delete(contact_id, flow.id)
            elif session.channel_type == message.channel_type:
                refreshed = refresh_session(session, now)
                await self._store.set(refreshed)
                logger.debug("trigger_session_resumed", flow_id=flow.id, contact_id=contact_id,
                             expires_at=refreshed.expires_at.isoformat())
                return TriggerOutcome(
                    kind=RESUMED, flow_id=flow.id, trigger_node_id=session.trigger_node_id,
                    session=refreshed, resume_node_id=session.current_node_id,
                )
        elif isinstance(state, NoSession) and state.expired is not None:
            await self._store.delete(contact_id, flow.id)
            logger.info("trigger_session_expired", flow_id=flow.id, contact_id=contact_id)

        # ── Condition evaluation ───────────────────────────────
        context = MessageContext.from_message(message, contact, self._timezone)
        diagnostics: list[Diagnostic] = []
        for config in candidates:
            if not config.matches(context, diagnostics):
                continue
            session = None
            if config.enable_session_persistence:
                session = open_session(
                    contact_id=contact_id,
                    flow_id=flow.id,
                    trigger_node_id=config.node_id,
                    channel_type=message.channel_type,
                    now=now,
                    timeout_value=config.session_timeout,
                    timeout_unit=config.session_timeout_unit,
                )
                await self._store.set(session)
            logger.info("trigger_entered", flow_id=flow.id, contact_id=contact_id,
                        node_id=config.node_id, session=session is not None)
            return TriggerOutcome(kind=ENTERED, flow_id=flow.id, trigger_node_id=config.node_id,
                                  session=session, diagnostics=diagnostics)

        return TriggerOutcome(kind=NO_MATCH, flow_id=flow.id, diagnostics=diagnostics)

    def _render_confirmation(self, flow, config, message, contact):
        context = build_render_context(message, contact, self._timezone)
        known = known_variables_for_node(flow, config.node_id)
        return render(config.hard_reset_confirmation_message, context, known)

    @staticmethod
    def _unknown_variable_diagnostics(node_id: str, names: list[str]) -> list[Diagnostic]:
        return [
            Diagnostic(code="unknown_variable", node_id=node_id, message=f"unknown variable '{name}'")
            for name in names
        ]

    async def record_position(
        self,
        target: Union[Session, tuple[str, str]],
        node_id: Optional[str],
        variables: Optional[dict[str, Any]] = None,
    ) -> Optional[Session]:
        """
        Remember the node a contact is paused on (None clears it) and, when
        given, the variables captured so far. Call while holding
        ``session_lock``. Returns the updated session, or None when the pair
        has no session (persistence disabled or reset meanwhile).
        """
        contact_id, flow_id = (target.contact_id, target.flow_id) if isinstance(target, Session) else target
        session = await self._store.get(contact_id, flow_id)
        if session is None:
            return None
        update: dict[str, Any] = {"current_node_id": node_id}
        if variables is not None:
            update["variables"] = dict(variables)
        updated = session.model_copy(update=update)
        await self._store.set(updated)
        return updated

    async def sweep_expired(self) -> int:
        removed = await self._store.purge_expired(self.now())
        if removed:
            logger.info("trigger_sessions_swept", removed=removed)
        return removed
