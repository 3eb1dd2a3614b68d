"""
Flow Graph — structural edits on one flow's nodes and edges.

Every mutation validates first and then applies, so a rejected edit
(unknown endpoint, second singleton, stale keyword handle) leaves the
graph exactly as it was.

Invariants kept after every call:
  - every edge's source/target names an existing node
  - a keyword handle on an edge names a live keyword of its source node
  - singleton node types appear at most once
  - condition ``yes``/``no`` handles carry at most one edge each

Usage:
    graph = FlowGraph(flow)
    trigger = graph.add_node("trigger", {"x": 0, "y": 0}, {"channelTypes": ["webchat"]})
    reply = graph.add_node("message", {"x": 0, "y": 200}, {"message": "Hi {{contact.name}}"})
    graph.connect(trigger, None, reply)
    flow = graph.save()
"""
from __future__ import annotations

import copy
from typing import Any, Iterable, Optional, Union

import structlog

from config.settings import get_settings
from models.schemas import (
    Diagnostic, Edge, Flow, Keyword, NO_MATCH_HANDLE, Node, NodeType, Position,
    new_id, normalize_node_type,
)
from routing.keywords import (
    OPTION_HANDLE_PREFIX, coerce_keywords, is_keyword_handle,
    normalize_keywords, parse_keyword_string,
)

logger = structlog.get_logger()

DUPLICATE_OFFSET = 30

# Handles that accept a single outgoing edge; connecting again replaces it.
SINGLE_OUTPUT_HANDLES: dict[NodeType, frozenset[str]] = {
    NodeType.CONDITION: frozenset({"yes", "no"}),
}

_ANY = object()


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class GraphError(Exception):
    """Base class for rejected structural edits."""


class UnknownNode(GraphError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"unknown node '{node_id}'")


class SingletonViolation(GraphError):
    def __init__(self, node_type: NodeType):
        self.node_type = node_type
        super().__init__(f"only one '{node_type.value}' node is allowed per flow")


class UnknownKeyword(GraphError):
    def __init__(self, node_id: str, keyword_id: str):
        self.node_id = node_id
        self.keyword_id = keyword_id
        super().__init__(f"node '{node_id}' has no keyword '{keyword_id}'")


class UnknownHandle(GraphError):
    def __init__(self, node_id: str, handle: str):
        self.node_id = node_id
        self.handle = handle
        super().__init__(f"node '{node_id}' has no output handle '{handle}'")


def _to_position(position: Union[Position, dict[str, float], tuple, None]) -> Position:
    if position is None:
        return Position()
    if isinstance(position, Position):
        return position.model_copy()
    if isinstance(position, dict):
        return Position.model_validate(position)
    x, y = position
    return Position(x=x, y=y)


def live_keyword_handles(node: Node) -> set[str]:
    """Keyword handles currently defined on a node (list form and legacy comma string)."""
    handles = {k.handle_id for k in coerce_keywords(node.data.get("keywords") or [])}
    if node.data.get("multipleKeywords"):
        handles.update(k.handle_id for k in parse_keyword_string(node.data["multipleKeywords"]))
    return handles


class FlowGraph:
    """Owns one Flow document and every structural edit made to it."""

    def __init__(self, flow: Optional[Flow] = None, singleton_types: Optional[Iterable[str]] = None):
        self.flow = flow if flow is not None else Flow()
        if singleton_types is None:
            singleton_types = get_settings().singleton_node_types
        self.singleton_types: set[NodeType] = {normalize_node_type(t) for t in singleton_types}

    # ── Queries ───────────────────────────────────────────────

    @property
    def nodes(self) -> list[Node]:
        return self.flow.nodes

    @property
    def edges(self) -> list[Edge]:
        return self.flow.edges

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.flow.get_node(node_id)

    def require_node(self, node_id: str) -> Node:
        node = self.get_node(node_id)
        if node is None:
            raise UnknownNode(node_id)
        return node

    def nodes_of_type(self, node_type: Union[str, NodeType]) -> list[Node]:
        wanted = normalize_node_type(node_type)
        return [n for n in self.flow.nodes if n.type == wanted]

    def outgoing(self, node_id: str, handle: Any = _ANY) -> list[Edge]:
        """Edges leaving ``node_id``; pass ``handle`` (None included) to filter by source handle."""
        return [
            e for e in self.flow.edges
            if e.source == node_id and (handle is _ANY or e.source_handle == handle)
        ]

    def incoming(self, node_id: str) -> list[Edge]:
        return [e for e in self.flow.edges if e.target == node_id]

    def keywords(self, node_id: str) -> list[Keyword]:
        return coerce_keywords(self.require_node(node_id).data.get("keywords") or [])

    # ── Node mutations ────────────────────────────────────────

    def _check_singleton(self, node_type: NodeType) -> None:
        if node_type in self.singleton_types and any(n.type == node_type for n in self.flow.nodes):
            raise SingletonViolation(node_type)

    def add_node(
        self,
        node_type: Union[str, NodeType],
        position: Union[Position, dict[str, float], tuple, None] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> str:
        """Add a node and return its id. Raises SingletonViolation."""
        kind = normalize_node_type(node_type)
        self._check_singleton(kind)

        payload = copy.deepcopy(data or {})
        if "keywords" in payload:
            payload["keywords"] = self._dump_keywords(normalize_keywords(payload["keywords"]))

        node = Node(id=new_id("node"), type=kind, position=_to_position(position), data=payload)
        self.flow.nodes.append(node)
        logger.debug("node_added", flow_id=self.flow.id, node_id=node.id, node_type=kind.value)
        return node.id

    def remove_node(self, node_id: str) -> None:
        """Remove a node and every edge touching it. Unknown ids are ignored."""
        if self.get_node(node_id) is None:
            return
        self.flow.nodes = [n for n in self.flow.nodes if n.id != node_id]
        before = len(self.flow.edges)
        self.flow.edges = [
            e for e in self.flow.edges
            if e.source != node_id and e.target != node_id
        ]
        logger.debug("node_removed", flow_id=self.flow.id, node_id=node_id,
                     edges_removed=before - len(self.flow.edges))

    def duplicate_node(self, node_id: str) -> str:
        """Clone a node next to the original and select only the clone."""
        original = self.require_node(node_id)
        self._check_singleton(original.type)

        clone = original.model_copy(deep=True)
        clone.id = new_id("node")
        clone.position = Position(
            x=original.position.x + DUPLICATE_OFFSET,
            y=original.position.y + DUPLICATE_OFFSET,
        )
        for node in self.flow.nodes:
            node.selected = False
        clone.selected = True
        self.flow.nodes.append(clone)
        logger.debug("node_duplicated", flow_id=self.flow.id, source_id=node_id, node_id=clone.id)
        return clone.id

    def update_node_data(self, node_id: str, updates: dict[str, Any]) -> Node:
        """Shallow-merge ``updates`` into node data; keyword changes prune stale edges."""
        node = self.require_node(node_id)
        updates = copy.deepcopy(updates)
        if "keywords" in updates:
            updates["keywords"] = self._dump_keywords(normalize_keywords(updates["keywords"]))
        node.data = {**node.data, **updates}
        if "keywords" in updates or "multipleKeywords" in updates:
            self._prune_keyword_edges(node)
        return node

    def set_positions(self, positions: dict[str, Position]) -> dict[str, Position]:
        """Apply new positions and return the previous ones (for undo)."""
        previous: dict[str, Position] = {}
        for node in self.flow.nodes:
            if node.id in positions:
                previous[node.id] = node.position.model_copy()
                node.position = _to_position(positions[node.id])
        return previous

    # ── Edge mutations ────────────────────────────────────────

    def connect(
        self,
        source: str,
        source_handle: Optional[str],
        target: str,
        target_handle: Optional[str] = None,
    ) -> str:
        """Connect two nodes and return the new edge id."""
        source_node = self.require_node(source)
        self.require_node(target)
        if is_keyword_handle(source_handle) and source_handle not in live_keyword_handles(source_node):
            raise UnknownHandle(source, source_handle)

        single = SINGLE_OUTPUT_HANDLES.get(source_node.type, frozenset())
        if source_handle in single:
            replaced = [e.id for e in self.outgoing(source, source_handle)]
            if replaced:
                self.flow.edges = [e for e in self.flow.edges if e.id not in replaced]
                logger.debug("edge_replaced", flow_id=self.flow.id, source=source,
                             handle=source_handle, replaced=replaced)

        edge = Edge(
            id=new_id("edge"),
            source=source,
            source_handle=source_handle,
            target=target,
            target_handle=target_handle,
        )
        self.flow.edges.append(edge)
        return edge.id

    def disconnect(self, edge_id: str) -> None:
        self.flow.edges = [e for e in self.flow.edges if e.id != edge_id]

    # ── Keyword mutations ─────────────────────────────────────

    @staticmethod
    def _dump_keywords(keywords: list[Keyword]) -> list[dict[str, Any]]:
        return [k.model_dump(by_alias=True) for k in keywords]

    def _store_keywords(self, node: Node, keywords: list[Keyword]) -> None:
        node.data = {**node.data, "keywords": self._dump_keywords(normalize_keywords(keywords))}
        self._prune_keyword_edges(node)

    def add_keyword(self, node_id: str, value: str, case_sensitive: bool = False, label: str = "") -> Keyword:
        node = self.require_node(node_id)
        keyword = Keyword(value=value, case_sensitive=case_sensitive, label=label)
        self._store_keywords(node, self.keywords(node_id) + [keyword])
        return keyword

    def update_keyword(
        self,
        node_id: str,
        keyword_id: str,
        value: Optional[str] = None,
        case_sensitive: Optional[bool] = None,
        label: Optional[str] = None,
    ) -> Keyword:
        """Edit one keyword. Only a new ``value`` changes its handle id."""
        node = self.require_node(node_id)
        keywords = self.keywords(node_id)
        index = next((i for i, k in enumerate(keywords) if k.id == keyword_id), None)
        if index is None:
            raise UnknownKeyword(node_id, keyword_id)

        keyword = keywords[index]
        if value is not None and value != keyword.value:
            keyword = keyword.with_value(value)
        updates: dict[str, Any] = {}
        if case_sensitive is not None:
            updates["case_sensitive"] = case_sensitive
        if label is not None:
            updates["label"] = label
        if updates:
            keyword = keyword.model_copy(update=updates)

        keywords[index] = keyword
        self._store_keywords(node, keywords)
        return keyword

    def remove_keyword(self, node_id: str, keyword_id: str) -> None:
        node = self.require_node(node_id)
        keywords = self.keywords(node_id)
        remaining = [k for k in keywords if k.id != keyword_id]
        if len(remaining) == len(keywords):
            raise UnknownKeyword(node_id, keyword_id)
        self._store_keywords(node, remaining)

    def _prune_keyword_edges(self, node: Node) -> list[Edge]:
        live = live_keyword_handles(node)
        stale = [
            e for e in self.flow.edges
            if e.source == node.id and is_keyword_handle(e.source_handle) and e.source_handle not in live
        ]
        if stale:
            stale_ids = {e.id for e in stale}
            self.flow.edges = [e for e in self.flow.edges if e.id not in stale_ids]
            logger.info("stale_keyword_edges_pruned", flow_id=self.flow.id, node_id=node.id,
                        handles=sorted({e.source_handle for e in stale}))
        return stale

    # ── Validation & save ─────────────────────────────────────

    def validate(self) -> list[Diagnostic]:
        """Report structural problems in a loaded (possibly hand-edited) document."""
        problems: list[Diagnostic] = []
        ids = {n.id for n in self.flow.nodes}
        if len(ids) != len(self.flow.nodes):
            problems.append(Diagnostic(code="duplicate_node_id", message="node ids are not unique",
                                       severity="error"))
        for node_type in self.singleton_types:
            if len(self.nodes_of_type(node_type)) > 1:
                problems.append(Diagnostic(code="singleton_violation", severity="error",
                                           message=f"more than one '{node_type.value}' node"))
        for edge in self.flow.edges:
            for end in (edge.source, edge.target):
                if end not in ids:
                    problems.append(Diagnostic(code="dangling_edge", severity="error", edge_id=edge.id,
                                               message=f"edge references missing node '{end}'"))
            source = self.get_node(edge.source)
            if source is None or edge.source_handle is None:
                continue
            handle = edge.source_handle
            if is_keyword_handle(handle) and handle not in live_keyword_handles(source):
                problems.append(Diagnostic(code="stale_keyword_handle", edge_id=edge.id, node_id=source.id,
                                           message=f"handle '{handle}' has no matching keyword"))
            elif source.type == NodeType.CONDITION and handle not in ("yes", "no"):
                problems.append(Diagnostic(code="unknown_handle", edge_id=edge.id, node_id=source.id,
                                           message=f"condition node has no '{handle}' output"))
        for node in self.nodes_of_type(NodeType.CONDITION):
            for handle in ("yes", "no"):
                if len(self.outgoing(node.id, handle)) > 1:
                    problems.append(Diagnostic(code="multiple_edges_on_single_output", node_id=node.id,
                                               message=f"'{handle}' has more than one edge"))
        return problems

    def handles_for(self, node_id: str) -> list[str]:
        """Named output handles a node exposes (empty list means the default output only)."""
        node = self.require_node(node_id)
        if node.type == NodeType.CONDITION:
            return ["yes", "no"]
        if node.type == NodeType.QUICK_REPLY:
            options = node.data.get("options") or []
            return [f"{OPTION_HANDLE_PREFIX}{i}" for i in range(1, len(options) + 1)] + [NO_MATCH_HANDLE]
        live = [k.handle_id for k in coerce_keywords(node.data.get("keywords") or [])]
        if node.data.get("multipleKeywords"):
            live += [k.handle_id for k in parse_keyword_string(node.data["multipleKeywords"])]
        live = list(dict.fromkeys(live))
        return live + [NO_MATCH_HANDLE] if live else []

    def save(self) -> Flow:
        """Bump the version and return a detached copy of the flow document."""
        self.flow.version += 1
        logger.info("flow_saved", flow_id=self.flow.id, version=self.flow.version,
                    nodes=len(self.flow.nodes), edges=len(self.flow.edges))
        return self.flow.model_copy(deep=True)
