"""
Flow Executor — Walks a flow downstream from an entry node.

The executor does not send anything. It returns the outbound actions a
channel adapter should perform, in order, plus where the walk paused:

    trigger ──▶ message ──▶ condition ─yes─▶ quickreply   (pauses)
                                     └─no──▶ message

Per node type:
  - message / media          → render text (or caption), emit, continue
  - quickreply / input / ... → emit the prompt, pause for the reply
  - nodes with keyword outputs (enableKeywordTriggers) → emit, pause
  - condition                → evaluate data.condition, follow yes / no
  - wait                     → emit a wait action, continue
  - botDisable               → emit, stop everything
  - botReset                 → emit, continue
  - integrations             → emit an integration action, continue

On resume the inbound text is routed from the paused node (keyword,
option or no-match handle) and the walk continues from there.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from config.settings import get_settings
from models.schemas import (
    NO_MATCH_HANDLE, ContactInfo, Diagnostic, Edge, Flow, InboundMessage,
    MessageContext, Node, NodeCategory, NodeType, node_category,
    requires_user_input,
)
from routing.keywords import (
    RouteDecision, coerce_keywords, is_keyword_handle, parse_keyword_string,
    route, route_quick_reply,
)
from utils.conditions import evaluate
from utils.interpolation import build_render_context, known_variables_for_node, render

logger = structlog.get_logger()

# Handles that only carry traffic when explicitly selected.
_ROUTED_HANDLES = {"yes", "no", NO_MATCH_HANDLE}

_PROMPT_KINDS = {
    NodeType.QUICK_REPLY: "quick_reply",
    NodeType.INPUT: "input",
    NodeType.WHATSAPP_INTERACTIVE_BUTTONS: "interactive_buttons",
    NodeType.WHATSAPP_POLL: "poll",
}


@dataclass
class OutboundAction:
    kind: str                                  # message | media | quick_reply | input | wait | integration | ...
    node_id: str
    text: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    unknown_variables: list[str] = field(default_factory=list)


@dataclass
class ExecutionResult:
    actions: list[OutboundAction] = field(default_factory=list)
    visited: list[str] = field(default_factory=list)
    paused_at: Optional[str] = None
    stopped: bool = False
    diagnostics: list[Diagnostic] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)     # session variables after the walk

    @property
    def reset_requested(self) -> bool:
        return any(a.kind == "bot_reset" for a in self.actions)


def _keywords_of(node: Node):
    if node.data.get("keywords"):
        return coerce_keywords(node.data["keywords"])
    if node.data.get("multipleKeywords"):
        return parse_keyword_string(node.data["multipleKeywords"],
                                    bool(node.data.get("keywordsCaseSensitive", False)))
    return []


def _default_edges(edges: list[Edge]) -> list[Edge]:
    return [
        e for e in edges
        if e.source_handle is None
        or not (e.source_handle in _ROUTED_HANDLES or is_keyword_handle(e.source_handle)
                or e.source_handle.startswith("option-"))
    ]


class _Run:
    """State of one walk. Not reused."""

    def __init__(self, executor: "FlowExecutor", flow: Flow, message: InboundMessage,
                 contact: Optional[ContactInfo], variables: dict[str, Any]):
        self.executor = executor
        self.flow = flow
        self.message = message
        self.contact = contact or ContactInfo(id=message.contact_id)
        self.variables = dict(variables)
        self.result = ExecutionResult(variables=self.variables)
        self.outgoing: dict[str, list[Edge]] = {}
        for edge in flow.edges:
            self.outgoing.setdefault(edge.source, []).append(edge)

    # ── helpers ────────────────────────────────────────────────

    def edges_from(self, node_id: str, handle: Any = None, default: bool = False) -> list[Edge]:
        edges = self.outgoing.get(node_id, [])
        if default:
            return _default_edges(edges)
        return [e for e in edges if e.source_handle == handle]

    def render(self, node: Node, template: str) -> tuple[str, list[str]]:
        context = build_render_context(self.message, self.contact, self.executor.timezone, self.variables)
        known = known_variables_for_node(self.flow, node.id, extra=_variable_paths(self.variables))
        rendered = render(template or "", context, known)
        for name in rendered.unknown_variables:
            self.result.diagnostics.append(Diagnostic(
                code="unknown_variable", node_id=node.id, message=f"unknown variable '{name}'",
            ))
        return rendered.result, rendered.unknown_variables

    def emit(self, kind: str, node: Node, text: Optional[str] = None,
             unknown: Optional[list[str]] = None, **payload) -> None:
        self.result.actions.append(OutboundAction(
            kind=kind, node_id=node.id, text=text, payload=payload,
            unknown_variables=list(unknown or []),
        ))

    def route_reply(self, node: Node) -> RouteDecision:
        text = self.message.text or ""
        if node.type in (NodeType.QUICK_REPLY, NodeType.WHATSAPP_POLL):
            return route_quick_reply(node.data.get("options") or [], text)
        if node.type == NodeType.WHATSAPP_INTERACTIVE_BUTTONS:
            return route_quick_reply(node.data.get("buttons") or [], text)
        keywords = _keywords_of(node)
        if keywords:
            return route(keywords, text)
        return RouteDecision(handle_id="")

    def follow_reply(self, node: Node) -> list[Edge]:
        """Edges selected by the inbound text at a node that routes replies."""
        decision = self.route_reply(node)
        if not decision.handle_id:
            return self.edges_from(node.id, default=True)
        edges = self.edges_from(node.id, decision.handle_id)
        logger.debug("reply_routed", node_id=node.id, handle=decision.handle_id, edges=len(edges))
        if not edges and decision.matched:
            return self.edges_from(node.id, default=True)
        return edges

    # ── node handlers ──────────────────────────────────────────

    def visit(self, node: Node) -> Optional[list[Edge]]:
        """Handle one node. Returns the edges to follow, or None to halt."""
        data = node.data
        category = node_category(node.type)

        if node.type == NodeType.TRIGGER:
            routed = self.follow_reply(node) if _keywords_of(node) else []
            return routed or self.edges_from(node.id, default=True)

        if node.type == NodeType.CONDITION:
            diagnostics: list[Diagnostic] = []
            context = MessageContext.from_message(self.message, self.contact, self.executor.timezone)
            matched = evaluate(str(data.get("condition") or ""), context, diagnostics)
            self.result.diagnostics.extend(d.model_copy(update={"node_id": node.id}) for d in diagnostics)
            return self.edges_from(node.id, "yes" if matched else "no")

        if node.type == NodeType.WAIT:
            self.emit("wait", node, timeout=data.get("timeout"), time_unit=data.get("timeUnit"))
            return self.edges_from(node.id, default=True)

        if node.type == NodeType.BOT_DISABLE:
            self.emit("bot_disable", node, data=dict(data))
            self.result.stopped = True
            return None

        if node.type == NodeType.BOT_RESET:
            text, unknown = self.render(node, str(data.get("message") or ""))
            self.emit("bot_reset", node, text=text or None, unknown=unknown)
            return self.edges_from(node.id, default=True)

        if category == NodeCategory.MEDIA:
            caption, unknown = self.render(node, str(data.get("caption") or ""))
            self.emit("media", node, text=caption, unknown=unknown,
                      media_type=node.type.value, media_url=data.get("mediaUrl"))
            return self.edges_from(node.id, default=True)

        if requires_user_input(node.type):
            prompt = data.get("message") or data.get("question") or ""
            text, unknown = self.render(node, str(prompt))
            payload = {}
            for key in ("options", "buttons", "variableName"):
                if key in data:
                    payload[key] = data[key]
            self.emit(_PROMPT_KINDS[node.type], node, text=text, unknown=unknown, **payload)
            self.result.paused_at = node.id
            return None

        if category == NodeCategory.MESSAGE:
            text, unknown = self.render(node, str(data.get("message") or ""))
            self.emit("message", node, text=text, unknown=unknown)
            if data.get("enableKeywordTriggers") and _keywords_of(node):
                self.result.paused_at = node.id
                return None
            return self.edges_from(node.id, default=True)

        self.emit("integration", node, type=node.type.value, data=dict(data))
        return self.edges_from(node.id, default=True)

    # ── traversal ──────────────────────────────────────────────

    def walk(self, start: list[Edge], entry: Optional[Node] = None) -> ExecutionResult:
        max_steps = self.executor.max_steps
        queue: deque = deque()
        if entry is not None:
            queue.append(entry.id)
        queue.extend(e.target for e in start)

        steps = 0
        while queue:
            node_id = queue.popleft()
            node = self.flow.get_node(node_id)
            if node is None:
                self.result.diagnostics.append(Diagnostic(
                    code="dangling_edge", node_id=node_id, message=f"edge points at missing node '{node_id}'",
                ))
                continue
            if steps >= max_steps:
                self.result.diagnostics.append(Diagnostic(
                    code="max_steps_exceeded", severity="error", node_id=node_id,
                    message=f"stopped after {max_steps} steps",
                ))
                logger.warning("flow_max_steps_exceeded", flow_id=self.flow.id, max_steps=max_steps)
                break
            steps += 1
            self.result.visited.append(node_id)
            follow = self.visit(node)
            if follow is None:
                if queue:
                    logger.debug("flow_branches_dropped", flow_id=self.flow.id, node_id=node_id,
                                 pending=len(queue))
                break
            queue.extend(e.target for e in follow)
        return self.result


def _variable_paths(variables: dict[str, Any], prefix: str = "") -> list[str]:
    paths = []
    for key, value in variables.items():
        path = f"{prefix}{key}"
        paths.append(path)
        if isinstance(value, dict):
            paths.extend(_variable_paths(value, prefix=f"{path}."))
    return paths


class FlowExecutor:

    def __init__(self, max_steps: Optional[int] = None, timezone_name: Optional[str] = None):
        settings = get_settings()
        self.max_steps = max_steps or settings.executor.max_steps
        self.timezone = timezone_name or settings.timezone

    def run(
        self,
        flow: Flow,
        entry_node_id: str,
        message: InboundMessage,
        contact: Optional[ContactInfo] = None,
        variables: Optional[dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Execute from ``entry_node_id`` (normally the matched trigger)."""
        run = _Run(self, flow, message, contact, variables or {})
        entry = flow.get_node(entry_node_id)
        if entry is None:
            run.result.diagnostics.append(Diagnostic(
                code="unknown_node", severity="error", node_id=entry_node_id,
                message=f"entry node '{entry_node_id}' not in flow",
            ))
            return run.result
        result = run.walk([], entry=entry)
        logger.debug("flow_executed", flow_id=flow.id, entry=entry_node_id,
                     actions=len(result.actions), paused_at=result.paused_at)
        return result

    def resume(
        self,
        flow: Flow,
        paused_node_id: str,
        message: InboundMessage,
        contact: Optional[ContactInfo] = None,
        variables: Optional[dict[str, Any]] = None,
    ) -> ExecutionResult:
        """Continue after the contact replied to the node the flow paused on."""
        run = _Run(self, flow, message, contact, variables or {})
        node = flow.get_node(paused_node_id)
        if node is None:
            run.result.diagnostics.append(Diagnostic(
                code="unknown_node", severity="error", node_id=paused_node_id,
                message=f"paused node '{paused_node_id}' not in flow",
            ))
            return run.result
        variable_name = node.data.get("variableName")
        if variable_name and node.type in (NodeType.INPUT, NodeType.DATA_CAPTURE):
            run.variables[str(variable_name)] = message.text
        result = run.walk(run.follow_reply(node))
        logger.debug("flow_resumed", flow_id=flow.id, node_id=paused_node_id,
                     actions=len(result.actions), paused_at=result.paused_at)
        return result
