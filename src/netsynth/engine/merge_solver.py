# src/netsynth/engine/merge_solver.py
"""Structural deduplication of component nodes.

Two nodes are merged when one of them can stand for the other: same
concrete model (or a concrete model that fulfills an abstract one),
compatible arguments, compatible inputs and children. The absorbed node's
relations move to the survivor, and the replacement is recorded in a
MergeGroup so that references held outside of the graph can be remapped.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable, Iterator

from netsynth.contracts import (
    InternalError,
    ServiceModel,
    SetupState,
    SpecError,
    port_mapping,
)
from netsynth.core.graph import (
    ComponentGraph,
    ComponentNode,
    FulfilledModel,
    SpecializationRecord,
)
from netsynth.core.logging import get_logger

logger = get_logger(__name__)


class MergeGroup:
    """Absorbed node id -> surviving node id."""

    def __init__(self) -> None:
        self._replacements: dict[str, str] = {}

    def record(self, absorbed: str, survivor: str) -> None:
        if absorbed == survivor:
            raise InternalError(f"{absorbed} cannot replace itself")
        self._replacements[absorbed] = survivor

    def replacement_for(self, node_id: str) -> str:
        """Follow the merge chain from node_id to the node that survived."""
        seen = {node_id}
        while node_id in self._replacements:
            node_id = self._replacements[node_id]
            if node_id in seen:
                raise InternalError(f"merge chain loops on {node_id}")
            seen.add(node_id)
        return node_id

    def update(self, other: MergeGroup) -> None:
        self._replacements.update(other._replacements)

    def items(self) -> Iterator[tuple[str, str]]:
        for absorbed in self._replacements:
            yield absorbed, self.replacement_for(absorbed)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._replacements

    def __len__(self) -> int:
        return len(self._replacements)


class MergeSolver:
    """Detects and collapses equivalent nodes of a component graph.

    Args:
        graph: Graph to deduplicate in place
        group: Merge group to record replacements into
        ignore_arguments: Argument names that never prevent a merge
        endpoint_key: Key under which connection sources are compared.
            Defaults to the source node id.
    """

    def __init__(
        self,
        graph: ComponentGraph,
        group: MergeGroup | None = None,
        *,
        ignore_arguments: Iterable[str] = (),
        endpoint_key: Callable[[str], Hashable] | None = None,
    ) -> None:
        self.graph = graph
        self.group = group if group is not None else MergeGroup()
        self.ignore_arguments = frozenset(ignore_arguments)
        self.endpoint_key = endpoint_key or (lambda node_id: node_id)

    def replacement_for(self, node: ComponentNode | str) -> ComponentNode:
        node_id = node if isinstance(node, str) else node.node_id
        return self.graph[self.group.replacement_for(node_id)]

    def can_absorb(self, a: ComponentNode, b: ComponentNode) -> bool:
        """Whether b can replace a in the graph."""
        if a is b or not a.discardable or a.stop_requested:
            return False
        if b.abstract and not a.abstract:
            return False
        if not b.reusable or b.stop_requested:
            return False
        if not self._models_compatible(a, b):
            return False
        if not _arguments_compatible(a, b, self.ignore_arguments):
            return False
        if a.deployed is not None and b.deployed is not None and a.deployed != b.deployed:
            return False
        if not _services_compatible(a, b):
            return False
        if self.graph.is_ancestor(a, b) or self.graph.is_ancestor(b, a):
            return False
        if a.is_composition and b.is_composition and not self._children_compatible(a, b):
            return False
        return self._inputs_compatible(a, b)

    def _models_compatible(self, a: ComponentNode, b: ComponentNode) -> bool:
        if not a.abstract and not b.abstract:
            return a.model is b.model
        if not b.fullfills(a.model):
            return False
        return all(b.fullfills(srv.model) for srv in a.each_local_service())

    def _children_compatible(self, a: ComponentNode, b: ComponentNode) -> bool:
        a_children = self.graph.children_by_role(a)
        b_children = self.graph.children_by_role(b)
        return all(
            a_children[role] is b_children[role]
            for role in a_children.keys() & b_children.keys()
        )

    def _inputs_compatible(self, a: ComponentNode, b: ComponentNode) -> bool:
        if a.is_composition or b.is_composition:
            return True
        try:
            mapping = _mapping(a, b)
        except SpecError as e:
            logger.debug("cannot map ports", absorbed=a.node_id, survivor=b.node_id, reason=str(e))
            return False
        b_inputs: dict[str, set[tuple[str, str]]] = {}
        for conn in self.graph.concrete_input_connections(b):
            b_inputs.setdefault(conn.sink_port, set()).add(
                (self.endpoint_key(conn.source), conn.source_port)
            )
        for conn in self.graph.concrete_input_connections(a):
            sink_port = mapping.get(conn.sink_port, conn.sink_port)
            existing = b_inputs.get(sink_port)
            if not existing:
                continue
            port = b.find_port(sink_port)
            if port is not None and port.multiplexes:
                continue
            source = conn.source if conn.source != a.node_id else b.node_id
            if existing != {(self.endpoint_key(source), conn.source_port)}:
                return False
        return True

    def merge(self, a: ComponentNode, b: ComponentNode) -> ComponentNode:
        """Replace a by b and record the replacement.

        Returns:
            b, the surviving node
        """
        for key, value in a.arguments.items():
            b.arguments.setdefault(key, value)
        b.fullfilled_model = _merge_fullfilled(a.fullfilled_model, b.fullfilled_model)
        for srv in a.each_local_service():
            if not b.fullfills(srv.model) and b.find_service(srv.name) is None:
                if b.specialization is None:
                    b.specialization = SpecializationRecord(b.model.name)
                b.specialization.services[srv.name] = srv
        b.dynamic_ports = {**a.dynamic_ports, **b.dynamic_ports}
        b.deployment_hints = tuple(dict.fromkeys((*b.deployment_hints, *a.deployment_hints)))
        if b.deployed is None:
            b.deployed = a.deployed

        self.graph.replace_node(a, b, _mapping(a, b))
        self.group.record(a.node_id, b.node_id)
        logger.debug("merged", absorbed=a.node_id, survivor=b.node_id)
        return b

    def merge_identical_tasks(self) -> MergeGroup:
        """Merge absorbable pairs until none are left.

        Each merge removes one node, so the loop terminates.
        """
        count = 0
        while True:
            merged = False
            for a in sorted(self.graph.nodes(), key=_absorb_order):
                if a not in self.graph:
                    continue
                for b in self._candidates_for(a):
                    if self.can_absorb(a, b):
                        self.merge(a, b)
                        count += 1
                        merged = True
                        break
            if not merged:
                break
        if count:
            logger.debug("merge pass finished", merged=count, nodes=self.graph.node_count)
        return self.group

    def _candidates_for(self, a: ComponentNode) -> list[ComponentNode]:
        candidates = [
            b for b in self.graph.nodes()
            if b is not a and b.fullfills(a.model)
        ]
        return sorted(candidates, key=_survivor_order)


def merge_identical_tasks(graph: ComponentGraph, group: MergeGroup | None = None) -> MergeGroup:
    """Run the merge solver on graph until a fixpoint is reached."""
    return MergeSolver(graph, group).merge_identical_tasks()


def _mapping(a: ComponentNode, b: ComponentNode) -> dict[str, str]:
    """Port renaming from a service placeholder a to its replacement b."""
    if not isinstance(a.model, ServiceModel) or isinstance(b.model, ServiceModel):
        return {}
    result = port_mapping(b.model, a.model, b.each_local_service())
    for srv in a.each_local_service():
        result.update(port_mapping(b.model, srv.model, b.each_local_service()))
    return result


def _arguments_compatible(
    a: ComponentNode, b: ComponentNode, ignored: frozenset[str] = frozenset()
) -> bool:
    return all(
        a.arguments[key] == b.arguments[key]
        for key in (a.arguments.keys() & b.arguments.keys()) - ignored
    )


def _services_compatible(a: ComponentNode, b: ComponentNode) -> bool:
    for srv in a.each_local_service():
        existing = b.find_service(srv.name)
        if existing is not None and existing != srv:
            return False
    return True


def _merge_fullfilled(
    a: FulfilledModel | None, b: FulfilledModel | None
) -> FulfilledModel | None:
    """Combine two fulfilled-model annotations.

    The model is the most general of the two; arguments are the union, with
    b's values winning.
    """
    if a is None:
        return b
    if b is None:
        return a
    model = a.model if b.model.fullfills(a.model) else b.model
    return FulfilledModel(model, {**a.arguments, **b.arguments})


def _absorb_order(node: ComponentNode) -> tuple[int, int, str]:
    # abstract placeholders are absorbed first, then plain scratch nodes
    return (
        0 if node.abstract else 1,
        1 if node.setup_state != SetupState.NOT_SETUP or node.deployed is not None else 0,
        node.node_id,
    )


def _survivor_order(node: ComponentNode) -> tuple[int, int, str]:
    # prefer concrete nodes that are already set up or deployed
    return (
        0 if not node.abstract else 1,
        0 if node.setup_state != SetupState.NOT_SETUP else 1,
        node.node_id,
    )
