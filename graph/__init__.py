"""Flow graph model: structural edits, invariants and JSON persistence."""
from graph.flow_graph import (
    FlowGraph,
    GraphError,
    UnknownNode,
    SingletonViolation,
    UnknownKeyword,
    UnknownHandle,
    SINGLE_OUTPUT_HANDLES,
    live_keyword_handles,
)
from graph.serializer import serialize, deserialize, flow_to_dict

__all__ = [
    "FlowGraph", "GraphError", "UnknownNode", "SingletonViolation",
    "UnknownKeyword", "UnknownHandle", "SINGLE_OUTPUT_HANDLES",
    "live_keyword_handles",
    "serialize", "deserialize", "flow_to_dict",
]
