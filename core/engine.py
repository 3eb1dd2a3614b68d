"""
Flow Engine — Routes inbound messages into flows and runs them.

Owns the registry of flows and their channel assignments, and ties the
pieces together for one inbound message:

    InboundMessage
      → candidate flows (active, assigned to the channel when one is given)
      → flows holding a live session for the contact first
      → TriggerEngine (under the contact × flow lock)
      → FlowExecutor  (same lock)
      → paused node recorded on the session

Setting a flow back to draft deactivates every channel assignment of
that flow. Reactivating the flow leaves them inactive; each assignment
has to be switched on again.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional, Union

import structlog

from backend.contacts import ContactDirectory, ContactLookupError, create_contact_directory
from config.settings import Settings, get_settings
from context.trigger_engine import ERROR, HARD_RESET, NO_MATCH, RESUMED, TriggerEngine, TriggerOutcome
from core.executor import ExecutionResult, FlowExecutor, OutboundAction
from database.store_base import BaseSessionStore, SessionStoreError
from database.store_factory import create_store
from models.schemas import (
    ContactInfo, Diagnostic, Flow, FlowAssignment, FlowStatus, InboundMessage,
)

logger = structlog.get_logger()


class FlowNotActive(Exception):
    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"flow '{flow_id}' is not active")


class UnknownFlow(KeyError):
    def __init__(self, flow_id: str):
        self.flow_id = flow_id
        super().__init__(f"unknown flow '{flow_id}'")


class UnknownAssignment(KeyError):
    def __init__(self, assignment_id: str):
        self.assignment_id = assignment_id
        super().__init__(f"unknown assignment '{assignment_id}'")


@dataclass
class EngineResult:
    """What happened to one inbound message."""
    outcome: Optional[TriggerOutcome] = None
    execution: Optional[ExecutionResult] = None
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def flow_id(self) -> Optional[str]:
        return self.outcome.flow_id if self.outcome else None

    @property
    def kind(self) -> str:
        return self.outcome.kind if self.outcome else NO_MATCH

    @property
    def matched(self) -> bool:
        return self.outcome is not None and self.outcome.matched

    @property
    def actions(self) -> list[OutboundAction]:
        return self.execution.actions if self.execution else []


class FlowEngine:

    def __init__(
        self,
        store: Optional[BaseSessionStore] = None,
        contacts: Optional[ContactDirectory] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or create_store(asdict(self.settings.sessions))
        self.contacts = contacts or create_contact_directory(self.settings.contacts)
        self.triggers = TriggerEngine(self.store, clock=clock, timezone_name=self.settings.timezone)
        self.executor = FlowExecutor(self.settings.executor.max_steps, self.settings.timezone)
        self._flows: dict[str, Flow] = {}
        self._assignments: dict[str, FlowAssignment] = {}

    # ── Flow registry ─────────────────────────────────────────

    def register_flow(self, flow: Flow) -> Flow:
        """Add or replace a flow. The engine keeps its own copy."""
        stored = flow.model_copy(deep=True)
        self._flows[stored.id] = stored
        logger.info("flow_registered", flow_id=stored.id, status=stored.status.value,
                    version=stored.version, nodes=len(stored.nodes))
        return stored

    def get_flow(self, flow_id: str) -> Flow:
        if flow_id not in self._flows:
            raise UnknownFlow(flow_id)
        return self._flows[flow_id]

    def list_flows(self) -> list[Flow]:
        return list(self._flows.values())

    def remove_flow(self, flow_id: str) -> bool:
        if self._flows.pop(flow_id, None) is None:
            return False
        self._assignments = {k: a for k, a in self._assignments.items() if a.flow_id != flow_id}
        logger.info("flow_removed", flow_id=flow_id)
        return True

    def set_flow_status(self, flow_id: str, status: Union[str, FlowStatus]) -> Flow:
        flow = self.get_flow(flow_id)
        status = FlowStatus(status)
        flow.status = status
        if status == FlowStatus.DRAFT:
            deactivated = 0
            for assignment in self._assignments.values():
                if assignment.flow_id == flow_id and assignment.is_active:
                    assignment.is_active = False
                    deactivated += 1
            logger.info("flow_assignments_deactivated", flow_id=flow_id, count=deactivated)
        logger.info("flow_status_changed", flow_id=flow_id, status=status.value)
        return flow

    # ── Channel assignments ───────────────────────────────────

    def assign(self, flow_id: str, channel_id: str, channel_type: Optional[str] = None) -> FlowAssignment:
        """Bind a flow to a channel connection. New assignments start inactive."""
        self.get_flow(flow_id)
        assignment = FlowAssignment(flow_id=flow_id, channel_id=channel_id, channel_type=channel_type)
        self._assignments[assignment.id] = assignment
        return assignment

    def set_assignment_active(self, assignment_id: str, active: bool) -> FlowAssignment:
        assignment = self._assignments.get(assignment_id)
        if assignment is None:
            raise UnknownAssignment(assignment_id)
        if active and not self.get_flow(assignment.flow_id).is_active:
            raise FlowNotActive(assignment.flow_id)
        assignment.is_active = active
        logger.info("flow_assignment_updated", assignment_id=assignment_id,
                    flow_id=assignment.flow_id, active=active)
        return assignment

    def assignments(self, flow_id: Optional[str] = None) -> list[FlowAssignment]:
        return [a for a in self._assignments.values() if flow_id is None or a.flow_id == flow_id]

    # ── Inbound ───────────────────────────────────────────────

    def _candidate_flows(self, message: InboundMessage) -> list[Flow]:
        flows = [f for f in self._flows.values() if f.is_active]
        if message.channel_id:
            assigned = {
                a.flow_id for a in self._assignments.values()
                if a.is_active and a.channel_id == message.channel_id
            }
            flows = [f for f in flows if f.id in assigned]
        return flows

    async def _sticky_first(self, flows: list[Flow], contact_id: str) -> list[Flow]:
        now = self.triggers.now()
        live, rest = [], []
        for flow in flows:
            try:
                session = await self.store.get(contact_id, flow.id)
            except SessionStoreError:
                session = None                 # the locked pass reports the error
            (live if session and not session.is_expired(now) else rest).append(flow)
        return live + rest

    async def _lookup_contact(self, contact_id: str) -> ContactInfo:
        try:
            contact = await self.contacts.get_contact(contact_id)
        except ContactLookupError as e:
            logger.warning("contact_lookup_degraded", contact_id=contact_id, error=str(e))
            contact = None
        return contact or ContactInfo(id=contact_id)

    async def handle_inbound(self, message: InboundMessage) -> EngineResult:
        flows = self._candidate_flows(message)
        if not flows:
            return EngineResult()
        contact = await self._lookup_contact(message.contact_id)
        flows = await self._sticky_first(flows, message.contact_id)

        for flow in flows:
            async with self.triggers.session_lock(message.contact_id, flow.id):
                outcome = await self.triggers.evaluate_locked(flow, message, contact)
                if outcome.kind == NO_MATCH:
                    continue
                return await self._run_locked(flow, outcome, message, contact)
        return EngineResult()

    async def _run_locked(
        self,
        flow: Flow,
        outcome: TriggerOutcome,
        message: InboundMessage,
        contact: ContactInfo,
    ) -> EngineResult:
        result = EngineResult(outcome=outcome, diagnostics=list(outcome.diagnostics))

        if outcome.kind == ERROR:
            return result

        if outcome.kind == HARD_RESET:
            execution = ExecutionResult()
            if outcome.message:
                execution.actions.append(OutboundAction(
                    kind="message", node_id=outcome.trigger_node_id, text=outcome.message,
                ))
            result.execution = execution
            return result

        variables = dict(outcome.session.variables) if outcome.session else {}
        if outcome.kind == RESUMED and outcome.resume_node_id and flow.get_node(outcome.resume_node_id):
            execution = self.executor.resume(flow, outcome.resume_node_id, message, contact, variables)
        else:
            execution = self.executor.run(flow, outcome.trigger_node_id, message, contact, variables)
        result.execution = execution
        result.diagnostics.extend(execution.diagnostics)

        if outcome.session is None:
            return result
        try:
            if execution.reset_requested:
                await self.store.delete(message.contact_id, flow.id)
                logger.info("flow_session_reset_by_node", flow_id=flow.id, contact_id=message.contact_id)
            else:
                await self.triggers.record_position(outcome.session, execution.paused_at, execution.variables)
        except SessionStoreError as e:
            logger.error("flow_session_update_failed", flow_id=flow.id,
                         contact_id=message.contact_id, error=str(e))
            result.diagnostics.append(Diagnostic(code="session_update_failed", severity="error",
                                                 message=str(e)))
        logger.info("flow_message_handled", flow_id=flow.id, contact_id=message.contact_id,
                    kind=outcome.kind, actions=len(execution.actions), paused_at=execution.paused_at)
        return result

    async def sweep_sessions(self) -> int:
        return await self.triggers.sweep_expired()

    async def close(self):
        await self.contacts.close()
        await self.store.close()
