"""
Variable interpolation for outgoing text (messages, captions, confirmations).

    render("Hi {{contact.name}}", {"contact": {"name": "Ana"}}, ["contact.name"])
    → RenderResult(result="Hi Ana", unknown_variables=[])

Only names in ``known_variable_names`` are substituted. Anything else is
left verbatim and reported, so a typo in one template never blocks the
rest of the flow.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Iterable, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from models.schemas import ContactInfo, Flow, InboundMessage, NodeType
from utils.conditions import get_nested_value

logger = structlog.get_logger()

TOKEN_RE = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

BASE_VARIABLES: tuple[str, ...] = (
    "contact.name",
    "contact.phone",
    "contact.email",
    "message.content",
    "date.today",
    "time.now",
)

# Variables a node makes available to everything downstream of it.
NODE_VARIABLES: dict[NodeType, tuple[str, ...]] = {
    NodeType.GOOGLE_CALENDAR: ("availability",),
    NodeType.HTTP_REQUEST: ("response",),
    NodeType.WEBHOOK: ("response",),
    NodeType.AI_ASSISTANT: ("ai.response",),
}

# Nodes whose data.variableName names the variable they capture.
_CAPTURE_NODES = {NodeType.INPUT, NodeType.DATA_CAPTURE}


@dataclass
class RenderResult:
    result: str
    unknown_variables: list[str] = field(default_factory=list)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ", ".join(_stringify(v) for v in value)
    return str(value)


def render(
    template: str,
    context: dict[str, Any],
    known_variable_names: Iterable[str],
) -> RenderResult:
    """Substitute {{path}} tokens. Never raises for unknown or missing values."""
    if not template:
        return RenderResult(result="")

    known = set(known_variable_names)
    unknown: list[str] = []

    def replacer(match: re.Match) -> str:
        path = match.group(1)
        if path not in known:
            if path not in unknown:
                unknown.append(path)
            return match.group(0)
        return _stringify(get_nested_value(context, path))

    result = TOKEN_RE.sub(replacer, template)
    if unknown:
        logger.debug("template_unknown_variables", variables=unknown)
    return RenderResult(result=result, unknown_variables=unknown)


def template_variables(template: str) -> list[str]:
    """List the variable paths a template references, in order, without duplicates."""
    seen: list[str] = []
    for match in TOKEN_RE.finditer(template or ""):
        if match.group(1) not in seen:
            seen.append(match.group(1))
    return seen


def _ancestors(flow: Flow, node_id: str) -> list[str]:
    parents: dict[str, list[str]] = {}
    for edge in flow.edges:
        parents.setdefault(edge.target, []).append(edge.source)
    seen: set[str] = set()
    order: list[str] = []
    stack = list(parents.get(node_id, []))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        order.append(current)
        stack.extend(parents.get(current, []))
    return order


def known_variables_for_node(
    flow: Union[Flow, Any],
    node_id: str,
    extra: Iterable[str] = (),
) -> list[str]:
    """
    Variables a template on ``node_id`` may reference: the base set, plus
    whatever upstream nodes contribute (``availability`` after a calendar
    node, captured input names, ...), plus ``extra``.
    """
    flow = getattr(flow, "flow", flow)          # accept a FlowGraph too
    names = list(BASE_VARIABLES)
    for ancestor_id in _ancestors(flow, node_id):
        node = flow.get_node(ancestor_id)
        if node is None:
            continue
        names.extend(NODE_VARIABLES.get(node.type, ()))
        if node.type in _CAPTURE_NODES and node.data.get("variableName"):
            names.append(str(node.data["variableName"]))
    names.extend(extra)
    return list(dict.fromkeys(names))


def build_render_context(
    message: Optional[InboundMessage],
    contact: Optional[ContactInfo],
    tz: str = "UTC",
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Build the nested dict templates resolve against."""
    try:
        zone = ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("render_unknown_timezone", timezone=tz)
        zone = timezone.utc

    ctx: dict[str, Any] = {
        "contact": contact.model_dump() if contact else {},
        "message": {},
    }
    if message is not None:
        ts = message.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        local = ts.astimezone(zone)
        ctx["message"] = {
            "content": message.text,
            "mediaType": message.media_type,
            "channelType": message.channel_type,
        }
        ctx["date"] = {"today": local.date().isoformat()}
        ctx["time"] = {"now": local.strftime("%H:%M")}
    if extra:
        ctx.update(extra)
    return ctx
