#!/usr/bin/env python3
"""
Auto-arrange a saved flow document.

Usage:
    python -m scripts.arrange_flow flow.json                 # rewrite in place
    python -m scripts.arrange_flow flow.json -o out.json     # write elsewhere
    python -m scripts.arrange_flow flow.json --verbose       # debug logging

Diagnostics (broken cycles, oversized graphs) are printed to stderr.
Exit code is 1 when the flow could not be read or laid out.
"""
import argparse
import logging
import os
import sys
from pathlib import Path

import structlog
from dotenv import load_dotenv

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def configure_logging(verbose: bool = False):
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG if verbose else logging.WARNING),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def arrange_file(source: Path, target: Path) -> int:
    from config.settings import load_settings
    from graph.flow_graph import FlowGraph
    from graph.serializer import deserialize, serialize
    from layout.auto_arrange import apply_layout

    settings = load_settings()
    try:
        flow = deserialize(source.read_text())
    except (OSError, ValueError) as e:
        print(f"cannot read {source}: {e}", file=sys.stderr)
        return 1

    graph = FlowGraph(flow, singleton_types=settings.singleton_node_types)
    result, _ = apply_layout(graph)
    for diagnostic in result.diagnostics:
        print(f"{diagnostic.severity}: {diagnostic.code}: {diagnostic.message}", file=sys.stderr)
    if not result.applied:
        return 1

    target.write_text(serialize(graph.flow, indent=2))
    print(f"Arranged {result.node_count} nodes in {result.levels} rows → {target}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description="Auto-arrange a flow document")
    parser.add_argument("flow", help="Path to the flow JSON document")
    parser.add_argument("-o", "--output", help="Output path (default: overwrite input)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    load_dotenv()
    configure_logging(args.verbose)
    source = Path(args.flow)
    return arrange_file(source, Path(args.output) if args.output else source)


if __name__ == "__main__":
    sys.exit(main())
