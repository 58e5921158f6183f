# src/netsynth/engine/diagnostics.py
"""Postmortem dumps of a component graph.

Each dump writes two canonical JSON node-link documents next to each other:
the dataflow view and the hierarchy view. Dumps are numbered sequentially
within the output directory.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import networkx as nx

from netsynth.core.canonical import CANONICAL_VERSION, canonical_json
from netsynth.core.config import DiagnosticsSettings
from netsynth.core.graph import ComponentGraph, ComponentNode
from netsynth.core.logging import get_logger

logger = get_logger(__name__)


def node_attributes(node: ComponentNode) -> dict[str, Any]:
    return {
        "model": node.model.name,
        "abstract": node.abstract,
        "arguments": node.arguments,
        "setup_state": node.setup_state,
        "deployed": str(node.deployed) if node.deployed is not None else None,
        "stop_requested": node.stop_requested,
    }


def dataflow_view(graph: ComponentGraph) -> nx.MultiDiGraph:
    view = nx.MultiDiGraph()
    for node in graph.nodes():
        view.add_node(node.node_id, **node_attributes(node))
    for edge in graph.each_connection():
        view.add_edge(
            edge.source,
            edge.sink,
            source_port=edge.source_port,
            sink_port=edge.sink_port,
            policy=edge.policy.to_dict(),
        )
    return view


def hierarchy_view(graph: ComponentGraph) -> nx.DiGraph:
    view = nx.DiGraph()
    for node in graph.nodes():
        view.add_node(node.node_id, root=graph.is_root(node), **node_attributes(node))
    for dep in graph.each_dependency():
        view.add_edge(dep.parent, dep.child, roles=sorted(dep.roles))
    return view


def next_dump_index(output_dir: Path, prefix: str) -> int:
    pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)-(dataflow|hierarchy)\.json$")
    indexes = [
        int(m.group(1))
        for path in output_dir.glob(f"{prefix}-*.json")
        if (m := pattern.match(path.name))
    ]
    return max(indexes, default=0) + 1


def dump_graph(
    graph: ComponentGraph, settings: DiagnosticsSettings, *, reason: str | None = None
) -> tuple[Path, Path]:
    """Write the dataflow and hierarchy views of graph.

    Returns:
        (dataflow path, hierarchy path)
    """
    output_dir = settings.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)
    index = next_dump_index(output_dir, settings.prefix)

    paths = []
    for kind, view in (("dataflow", dataflow_view(graph)), ("hierarchy", hierarchy_view(graph))):
        document = {
            "version": CANONICAL_VERSION,
            "view": kind,
            "reason": reason,
            "graph": nx.node_link_data(view, edges="links"),
        }
        path = output_dir / f"{settings.prefix}-{index}-{kind}.json"
        path.write_text(canonical_json(document), encoding="utf-8")
        paths.append(path)

    logger.info("graph dumped", dataflow=str(paths[0]), hierarchy=str(paths[1]))
    return paths[0], paths[1]
