"""
Auto-Arrange — Top-to-bottom hierarchical layout for a flow.

Pipeline:
  1. Cycle breaking  — self-loops are ignored in one pass; then, inside each
                       strongly connected component, the edge with the
                       smallest (source, target) is ignored and only that
                       component is searched again. Past max_cycle_breaks
                       the rest is cut at DFS back edges. Edges stay in the
                       flow.
  2. Leveling        — longest path from the roots (Kahn order). The part of
                       the graph holding the trigger roots is laid out first;
                       every other weakly connected component is leveled on
                       its own and stacked below.
  3. Ordering        — alternating barycenter sweeps (down on parents, up
                       on children), stable sorts.
  4. Positioning     — per row, x accumulates node width + gap and the row is
                       centred on origin_x; y = origin_y + row * row_height.

The result depends only on nodes, edges and declared node sizes, never on
current positions, so arranging twice gives the same layout.
"""
from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

import structlog

from config.settings import get_settings
from models.schemas import Diagnostic, Edge, Flow, Node, NodeType, Position

logger = structlog.get_logger()


@dataclass
class LayoutOptions:
    node_width: float = 280
    node_height: float = 120
    horizontal_gap: float = 80
    row_height: float = 200
    component_gap: int = 1
    passes: int = 4
    max_nodes: int = 5000
    max_cycle_breaks: int = 1000
    origin_x: float = 0
    origin_y: float = 0

    @classmethod
    def from_settings(cls) -> "LayoutOptions":
        cfg = get_settings().layout
        return cls(
            node_width=cfg.node_width,
            node_height=cfg.node_height,
            horizontal_gap=cfg.horizontal_gap,
            row_height=cfg.row_height,
            component_gap=cfg.component_gap,
            passes=cfg.passes,
            max_nodes=cfg.max_nodes,
            max_cycle_breaks=cfg.max_cycle_breaks,
        )


@dataclass
class LayoutResult:
    positions: dict[str, Position] = field(default_factory=dict)
    rows: dict[str, int] = field(default_factory=dict)          # node id → global row
    levels: int = 0                                             # rows used
    node_count: int = 0
    ignored_edges: list[str] = field(default_factory=list)      # edge ids skipped for leveling
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return bool(self.positions) or self.node_count == 0


# ──────────────────────────────────────────────────────────────
#  Cycle breaking
# ──────────────────────────────────────────────────────────────

def _strongly_connected(node_ids: list[str], children: dict[str, list[str]]) -> dict[str, int]:
    """Tarjan's algorithm, iterative. Returns node id → component index."""
    index: dict[str, int] = {}
    low: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    component: dict[str, int] = {}
    counter = 0
    components = 0

    for start in node_ids:
        if start in index:
            continue
        work = [(start, 0)]
        while work:
            node, child_pos = work.pop()
            if child_pos == 0:
                index[node] = low[node] = counter
                counter += 1
                stack.append(node)
                on_stack.add(node)
            succ = children.get(node, [])
            if child_pos < len(succ):
                work.append((node, child_pos + 1))
                nxt = succ[child_pos]
                if nxt not in index:
                    work.append((nxt, 0))
                elif nxt in on_stack:
                    low[node] = min(low[node], index[nxt])
                continue
            if low[node] == index[node]:
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component[member] = components
                    if member == node:
                        break
                components += 1
            if work:
                parent = work[-1][0]
                low[parent] = min(low[parent], low[node])
    return component


def _cyclic_groups(members: list[str], pairs: Iterable[tuple[str, str]]) -> list[list[str]]:
    """Strongly connected components of more than one node, members in input order."""
    children: dict[str, list[str]] = defaultdict(list)
    for s, t in pairs:
        children[s].append(t)
    component = _strongly_connected(members, children)
    groups: dict[int, list[str]] = defaultdict(list)
    for nid in members:
        groups[component[nid]].append(nid)
    return [g for g in groups.values() if len(g) > 1]


def _back_edges(members: list[str], pairs: list[tuple[str, str]]) -> list[tuple[str, str]]:
    """Edges closing a cycle in one DFS, children visited in (source, target) order."""
    children: dict[str, list[str]] = defaultdict(list)
    for s, t in sorted(pairs):
        children[s].append(t)
    on_path: dict[str, bool] = {}               # True while on the DFS path, False once finished
    back: list[tuple[str, str]] = []
    for start in members:
        if start in on_path:
            continue
        on_path[start] = True
        work = [(start, iter(children[start]))]
        while work:
            node, remaining = work[-1]
            nxt = next(remaining, None)
            if nxt is None:
                on_path[node] = False
                work.pop()
            elif nxt not in on_path:
                on_path[nxt] = True
                work.append((nxt, iter(children[nxt])))
            elif on_path[nxt]:
                back.append((node, nxt))
    return back


def _break_cycles(
    node_ids: list[str],
    pairs: list[tuple[str, str]],
    max_rounds: int,
) -> tuple[list[tuple[str, str]], list[tuple[str, str]], bool]:
    """
    Return (kept pairs, ignored pairs, limited) such that the kept pairs form
    a DAG. Self-loops go in one pass; then, inside each cyclic component, the
    smallest (source, target) edge is ignored and only that component is
    searched again. After ``max_rounds`` removals the remaining components
    are cut at the back edges of a single DFS and ``limited`` is True.
    """
    ignored = [p for p in pairs if p[0] == p[1]]
    out: dict[str, set[str]] = defaultdict(set)
    for s, t in pairs:
        if s != t:
            out[s].add(t)

    stack = _cyclic_groups(node_ids, [(s, t) for s in node_ids for t in out[s]])
    rounds = 0
    limited = False
    while stack:
        group = stack.pop()
        members = set(group)
        internal = sorted((s, t) for s in group for t in out[s] if t in members)
        if rounds >= max_rounds:
            limited = True
            cut = _back_edges(group, internal)
        else:
            cut = internal[:1]
            rounds += 1
        for s, t in cut:
            out[s].discard(t)
            ignored.append((s, t))
        if not limited:
            stack.extend(_cyclic_groups(group, internal[1:]))

    dropped = set(ignored)
    return [p for p in pairs if p not in dropped], sorted(ignored), limited


# ──────────────────────────────────────────────────────────────
#  Leveling
# ──────────────────────────────────────────────────────────────

def _weak_components(node_ids: list[str], pairs: list[tuple[str, str]]) -> list[list[str]]:
    neighbours: dict[str, list[str]] = defaultdict(list)
    for s, t in pairs:
        neighbours[s].append(t)
        neighbours[t].append(s)
    order = {nid: i for i, nid in enumerate(node_ids)}
    seen: set[str] = set()
    components = []
    for start in node_ids:
        if start in seen:
            continue
        members = []
        queue = deque([start])
        seen.add(start)
        while queue:
            current = queue.popleft()
            members.append(current)
            for nxt in neighbours[current]:
                if nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
        components.append(sorted(members, key=order.__getitem__))
    return components


def _longest_path_levels(
    members: list[str],
    children: dict[str, list[str]],
    parents: dict[str, list[str]],
) -> dict[str, int]:
    """Kahn's algorithm over one acyclic component; level = longest distance from a root."""
    member_set = set(members)
    in_degree = {nid: sum(1 for p in parents[nid] if p in member_set) for nid in members}
    queue = deque(nid for nid in members if in_degree[nid] == 0)
    level = {nid: 0 for nid in members}
    while queue:
        node = queue.popleft()
        for child in children[node]:
            if child not in member_set:
                continue
            level[child] = max(level[child], level[node] + 1)
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)
    return level


def _discovery_order(
    members: list[str],
    roots: list[str],
    children: dict[str, list[str]],
) -> list[str]:
    member_set = set(members)
    seen: set[str] = set()
    order: list[str] = []
    queue = deque()
    for root in roots + members:
        if root in seen:
            continue
        seen.add(root)
        queue.append(root)
        while queue:
            current = queue.popleft()
            order.append(current)
            for child in children[current]:
                if child in member_set and child not in seen:
                    seen.add(child)
                    queue.append(child)
    return order


# ──────────────────────────────────────────────────────────────
#  Ordering
# ──────────────────────────────────────────────────────────────

def _slot_offsets(rows: list[list[str]]) -> dict[str, float]:
    """Slot relative to the row centre, so rows of different width line up."""
    offsets = {}
    for row in rows:
        centre = (len(row) - 1) / 2
        for slot, nid in enumerate(row):
            offsets[nid] = slot - centre
    return offsets


def _barycenter_sweeps(
    rows: list[list[str]],
    children: dict[str, list[str]],
    parents: dict[str, list[str]],
    passes: int,
) -> list[list[str]]:
    rows = [list(r) for r in rows]
    offsets = _slot_offsets(rows)
    for p in range(passes):
        downward = p % 2 == 0
        indices = range(1, len(rows)) if downward else range(len(rows) - 2, -1, -1)
        neighbours = parents if downward else children
        for i in indices:

            def key(nid: str) -> float:
                linked = [offsets[n] for n in neighbours[nid] if n in offsets]
                return sum(linked) / len(linked) if linked else offsets[nid]

            rows[i] = sorted(rows[i], key=key)
            offsets.update(_slot_offsets([rows[i]]))
    return rows


# ──────────────────────────────────────────────────────────────
#  Entry points
# ──────────────────────────────────────────────────────────────

def _split_input(
    flow_or_nodes: Union[Flow, Iterable[Node], object],
    edges: Optional[Iterable[Edge]],
) -> tuple[list[Node], list[Edge]]:
    flow = getattr(flow_or_nodes, "flow", flow_or_nodes)        # FlowGraph → Flow
    if isinstance(flow, Flow):
        return list(flow.nodes), list(flow.edges if edges is None else edges)
    return list(flow_or_nodes), list(edges or [])


def auto_arrange(
    flow_or_nodes: Union[Flow, Iterable[Node], object],
    edges: Optional[Iterable[Edge]] = None,
    options: Optional[LayoutOptions] = None,
) -> LayoutResult:
    """Compute a position for every node. Pure: nothing passed in is modified."""
    options = options or LayoutOptions.from_settings()
    nodes, edges = _split_input(flow_or_nodes, edges)
    result = LayoutResult(node_count=len(nodes))

    if len(nodes) > options.max_nodes:
        result.diagnostics.append(Diagnostic(
            code="layout_too_large", severity="error",
            message=f"{len(nodes)} nodes exceeds the layout limit of {options.max_nodes}",
        ))
        logger.warning("layout_too_large", nodes=len(nodes), max_nodes=options.max_nodes)
        return result
    if not nodes:
        return result

    by_id: dict[str, Node] = {}
    for node in nodes:
        by_id.setdefault(node.id, node)
    node_ids = list(by_id)

    edge_ids_by_pair: dict[tuple[str, str], list[str]] = defaultdict(list)
    for edge in edges:
        if edge.source in by_id and edge.target in by_id:
            edge_ids_by_pair[(edge.source, edge.target)].append(edge.id)
    pairs = list(edge_ids_by_pair)

    kept, ignored, limited = _break_cycles(node_ids, pairs, options.max_cycle_breaks)
    for source, target in ignored:
        ids = edge_ids_by_pair[(source, target)]
        result.ignored_edges.extend(ids)
        result.diagnostics.append(Diagnostic(
            code="cycle_broken", severity="info", edge_id=ids[0],
            message=f"edge {source} -> {target} ignored for layout to break a cycle",
        ))
    if ignored:
        logger.info("layout_cycles_broken", ignored=len(ignored))
    if limited:
        result.diagnostics.append(Diagnostic(
            code="cycle_break_limit", severity="warning",
            message=f"more than {options.max_cycle_breaks} cycles; remaining cycles cut at DFS back edges",
        ))
        logger.warning("layout_cycle_break_limit", max_cycle_breaks=options.max_cycle_breaks)

    children: dict[str, list[str]] = defaultdict(list)
    parents: dict[str, list[str]] = defaultdict(list)
    for s, t in kept:
        children[s].append(t)
        parents[t].append(s)

    roots = [nid for nid in node_ids if not parents[nid]]
    main_roots = [nid for nid in roots if by_id[nid].type == NodeType.TRIGGER] or roots[:1]

    # Components holding a main root go first, merged; the rest follow in node order.
    components = _weak_components(node_ids, kept)
    main_root_set = set(main_roots)
    main_members = [nid for comp in components if main_root_set.intersection(comp) for nid in comp]
    order = {nid: i for i, nid in enumerate(node_ids)}
    main_members.sort(key=order.__getitem__)
    groups = [main_members] if main_members else []
    groups += [comp for comp in components if not main_root_set.intersection(comp)]

    row_offset = 0
    for members in groups:
        level = _longest_path_levels(members, children, parents)
        depth = max(level.values()) + 1
        member_roots = [nid for nid in main_roots if nid in level] + \
                       [nid for nid in members if not parents[nid]]
        rows: list[list[str]] = [[] for _ in range(depth)]
        for nid in _discovery_order(members, member_roots, children):
            rows[level[nid]].append(nid)
        rows = _barycenter_sweeps(rows, children, parents, options.passes)

        for i, row in enumerate(rows):
            widths = [by_id[nid].width or options.node_width for nid in row]
            total = sum(widths) + options.horizontal_gap * (len(row) - 1)
            x = options.origin_x - total / 2
            y = options.origin_y + (row_offset + i) * options.row_height
            for nid, width in zip(row, widths):
                result.positions[nid] = Position(x=x, y=y)
                result.rows[nid] = row_offset + i
                x += width + options.horizontal_gap
        row_offset += depth + options.component_gap

    result.levels = max(result.rows.values()) + 1
    logger.debug("layout_computed", nodes=len(node_ids), rows=result.levels, components=len(groups))
    return result


def apply_layout(graph, options: Optional[LayoutOptions] = None) -> tuple[LayoutResult, dict[str, Position]]:
    """
    Arrange a FlowGraph in place. Returns the layout and the positions it
    replaced, which ``graph.set_positions(previous)`` restores (undo).
    """
    result = auto_arrange(graph.flow, options=options)
    previous = graph.set_positions(result.positions) if result.positions else {}
    return result, previous
