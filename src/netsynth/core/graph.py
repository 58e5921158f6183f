# src/netsynth/core/graph.py
"""Transactional component graph.

Uses NetworkX for the three relations between component nodes:
- dependency (DiGraph, parent -> child, role labels; always acyclic)
- dataflow (MultiDiGraph, source -> sink, port names and connection policy)
- precedence (DiGraph, node -> target, "configure after target's event")

Nodes are keyed by their node_id in all three relations; the ComponentNode
objects themselves live in a side dictionary, the same way ExecutionGraph
attaches NodeInfo to node ids.

Transactions are copy-on-write: begin() returns a new ComponentGraph holding
copies of every node and relation. Mutations stay local to the transaction
until commit(), which writes them back into the parent in one step.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import networkx as nx

from netsynth.contracts import (
    BoundService,
    ConfiguredDeployment,
    ConnectionPolicy,
    GraphEventKind,
    InternalError,
    InvalidSetupTransition,
    Model,
    PortModel,
    ProcessState,
    SetupState,
    SpecError,
)


@dataclass
class SpecializationRecord:
    """Services attached to a single node on top of its model's services.

    Replaces per-instance subtyping: two nodes with the same base model and
    structurally equal records provide the same interface.
    """

    base_model: str
    services: dict[str, BoundService] = field(default_factory=dict)

    def copy(self) -> SpecializationRecord:
        return SpecializationRecord(self.base_model, dict(self.services))


@dataclass(frozen=True)
class FulfilledModel:
    """What the caller asked for when this node was created."""

    model: Model
    arguments: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeployedComponent:
    """Binding of a node to an activity of a deployment process."""

    process_name: str
    activity: str

    def __str__(self) -> str:
        return f"{self.process_name}.{self.activity}"


@dataclass(eq=False)
class ComponentNode:
    """One component instance, abstract or concrete."""

    node_id: str
    model: Model
    arguments: dict[str, Any] = field(default_factory=dict)
    reusable: bool = True
    setup_state: SetupState = SetupState.NOT_SETUP
    specialization: SpecializationRecord | None = None
    fullfilled_model: FulfilledModel | None = None
    deployed: DeployedComponent | None = None
    deployment_hints: tuple[str, ...] = ()
    stop_requested: bool = False
    needs_reconfiguration: bool = False
    dynamic_ports: dict[str, PortModel] = field(default_factory=dict)

    @property
    def abstract(self) -> bool:
        return self.model.abstract

    @property
    def is_composition(self) -> bool:
        return self.model.is_composition

    @property
    def discardable(self) -> bool:
        """Whether garbage collection may drop this node without stopping it."""
        return self.setup_state not in (SetupState.SETUP, SetupState.SETTING_UP)

    def find_port(self, name: str) -> PortModel | None:
        """Port of the node's model, or a dynamic port created on this node."""
        finder = getattr(self.model, "find_port", None)
        port = finder(name) if finder is not None else None
        if port is None:
            port = self.dynamic_ports.get(name)
        return port

    def each_local_service(self) -> Iterator[BoundService]:
        if self.specialization is not None:
            yield from self.specialization.services.values()

    def find_service(self, name: str) -> BoundService | None:
        if self.specialization is not None and name in self.specialization.services:
            return self.specialization.services[name]
        return self.model.find_service(name) if hasattr(self.model, "find_service") else None

    def fullfills(self, model: Model) -> bool:
        if self.model.fullfills(model):
            return True
        return any(srv.model.fullfills(model) for srv in self.each_local_service())

    # Setup state machine

    def start_setup(self) -> None:
        self._transition(SetupState.NOT_SETUP, SetupState.SETTING_UP, "start setup")

    def setup_succeeded(self) -> None:
        self._transition(SetupState.SETTING_UP, SetupState.SETUP, "finish setup")

    def setup_failed(self) -> None:
        self._transition(SetupState.SETTING_UP, SetupState.SETUP_FAILED, "fail setup")

    def reset_setup(self) -> None:
        """External reset of a failed setup."""
        self._transition(SetupState.SETUP_FAILED, SetupState.NOT_SETUP, "reset setup")

    def _transition(self, expected: SetupState, target: SetupState, action: str) -> None:
        if self.setup_state != expected:
            raise InvalidSetupTransition(self, self.setup_state, action)
        self.setup_state = target

    def copy(self) -> ComponentNode:
        """Copy for use in a transaction. Models are shared, state is not."""
        return ComponentNode(
            node_id=self.node_id,
            model=self.model,
            arguments=dict(self.arguments),
            reusable=self.reusable,
            setup_state=self.setup_state,
            specialization=self.specialization.copy() if self.specialization else None,
            fullfilled_model=self.fullfilled_model,
            deployed=self.deployed,
            deployment_hints=self.deployment_hints,
            stop_requested=self.stop_requested,
            needs_reconfiguration=self.needs_reconfiguration,
            dynamic_ports=dict(self.dynamic_ports),
        )

    def assign_from(self, other: ComponentNode) -> None:
        """Take over the state of a transaction copy of this node."""
        if other.node_id != self.node_id:
            raise InternalError(f"cannot assign {other} onto {self}")
        self.model = other.model
        self.arguments = other.arguments
        self.reusable = other.reusable
        self.setup_state = other.setup_state
        self.specialization = other.specialization
        self.fullfilled_model = other.fullfilled_model
        self.deployed = other.deployed
        self.deployment_hints = other.deployment_hints
        self.stop_requested = other.stop_requested
        self.needs_reconfiguration = other.needs_reconfiguration
        self.dynamic_ports = other.dynamic_ports

    def __str__(self) -> str:
        return self.node_id

    def __repr__(self) -> str:
        return f"<ComponentNode {self.node_id} {self.setup_state.value}>"


@dataclass(frozen=True)
class DependencyEdge:
    parent: str
    child: str
    roles: frozenset[str]
    options: Mapping[str, Any]


@dataclass(frozen=True)
class DataflowEdge:
    source: str
    source_port: str
    sink: str
    sink_port: str
    policy: ConnectionPolicy
    key: int


@dataclass(frozen=True)
class ConcreteConnection:
    """Leaf-to-leaf connection and the dataflow edges it goes through."""

    source: str
    source_port: str
    sink: str
    sink_port: str
    chain: tuple[DataflowEdge, ...]

    @property
    def label(self) -> str:
        return f"{self.source}.{self.source_port} -> {self.sink}.{self.sink_port}"


@dataclass(frozen=True)
class PrecedenceEdge:
    """node must be configured after target emitted event."""

    node: str
    target: str
    event: str


@dataclass(eq=False)
class DeploymentInstance:
    """A deployment process tracked by the graph.

    A process that replaces one still shutting down names it in
    `predecessor` (an instance id) and is started once it is gone.
    """

    deployment: ConfiguredDeployment
    state: ProcessState = ProcessState.PENDING
    handle: Any = None
    predecessor: str | None = None
    instance_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def process_name(self) -> str:
        return self.deployment.process_name

    def copy(self) -> DeploymentInstance:
        return DeploymentInstance(
            self.deployment, self.state, self.handle, self.predecessor, self.instance_id
        )

    def __str__(self) -> str:
        return str(self.deployment)


@dataclass(frozen=True)
class GraphEvent:
    kind: GraphEventKind
    node_ids: tuple[str, ...] = ()


GraphListener = Callable[[GraphEvent], None]

_ENDING_STATES = frozenset({ProcessState.FINISHING, ProcessState.FINISHED})


def new_node_id(model: Model) -> str:
    return f"{model.name}#{uuid.uuid4().hex[:8]}"


class ComponentGraph:
    """Component nodes with dependency, dataflow and precedence relations."""

    def __init__(self) -> None:
        self._nodes: dict[str, ComponentNode] = {}
        self._dependency: nx.DiGraph[str] = nx.DiGraph()
        self._dataflow: nx.MultiDiGraph[str] = nx.MultiDiGraph()
        self._precedence: nx.DiGraph[str] = nx.DiGraph()
        self._roots: set[str] = set()
        self._processes: dict[str, DeploymentInstance] = {}
        self._listeners: list[GraphListener] = []
        self._parent: ComponentGraph | None = None
        self._closed = False

    # Nodes

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def dependency_graph(self) -> nx.DiGraph[str]:
        """Read-only view of the dependency relation."""
        return self._dependency.copy(as_view=True)

    @property
    def dataflow_graph(self) -> nx.MultiDiGraph[str]:
        """Read-only view of the dataflow relation."""
        return self._dataflow.copy(as_view=True)

    def __contains__(self, node: ComponentNode | str) -> bool:
        return _id(node) in self._nodes

    def __getitem__(self, node_id: str) -> ComponentNode:
        return self._nodes[node_id]

    def __iter__(self) -> Iterator[ComponentNode]:
        return iter(list(self._nodes.values()))

    def nodes(self) -> list[ComponentNode]:
        return list(self._nodes.values())

    def find_nodes(self, model: Model) -> list[ComponentNode]:
        """Nodes whose model fulfills the given model."""
        return [n for n in self._nodes.values() if n.fullfills(model)]

    def add_node(
        self,
        model: Model,
        arguments: Mapping[str, Any] | None = None,
        *,
        node_id: str | None = None,
        **attrs: Any,
    ) -> ComponentNode:
        """Create a node for model and add it to the graph."""
        node = ComponentNode(
            node_id=node_id or new_node_id(model),
            model=model,
            arguments=dict(arguments or {}),
            **attrs,
        )
        return self.insert(node)

    def insert(self, node: ComponentNode) -> ComponentNode:
        """Add an existing node object."""
        self._check_open()
        if node.node_id in self._nodes:
            raise InternalError(f"{node} is already in the graph")
        self._nodes[node.node_id] = node
        self._dependency.add_node(node.node_id)
        self._dataflow.add_node(node.node_id)
        self._precedence.add_node(node.node_id)
        self._emit(GraphEventKind.NODE_ADDED, node.node_id)
        return node

    def remove_node(self, node: ComponentNode | str) -> None:
        self._check_open()
        node_id = _id(node)
        had_dataflow = self._dataflow.degree(node_id) > 0
        del self._nodes[node_id]
        self._dependency.remove_node(node_id)
        self._dataflow.remove_node(node_id)
        self._precedence.remove_node(node_id)
        self._roots.discard(node_id)
        self._emit(GraphEventKind.NODE_REMOVED, node_id)
        if had_dataflow:
            self._emit(GraphEventKind.DATAFLOW_CHANGED, node_id)

    # Roots

    def mark_root(self, node: ComponentNode | str) -> None:
        self._roots.add(_id(node))

    def unmark_root(self, node: ComponentNode | str) -> None:
        self._roots.discard(_id(node))

    def roots(self) -> list[ComponentNode]:
        return [self._nodes[n] for n in sorted(self._roots)]

    def is_root(self, node: ComponentNode | str) -> bool:
        return _id(node) in self._roots

    def clear_roots(self) -> None:
        self._roots.clear()

    def reachable_from_roots(self) -> set[str]:
        """Ids of the roots and of every node they depend on."""
        result = set(self._roots)
        for root in self._roots:
            result.update(nx.descendants(self._dependency, root))
        return result

    # Dependency relation

    def add_dependency(
        self,
        parent: ComponentNode | str,
        child: ComponentNode | str,
        role: str,
        **options: Any,
    ) -> None:
        """Make parent depend on child under the given role.

        Raises:
            SpecError: If the role is already used by another child of parent,
                or if the dependency would create a cycle
        """
        self._check_open()
        parent_id, child_id = _id(parent), _id(child)
        existing = self.child_for_role(parent_id, role)
        if existing is not None and existing.node_id != child_id:
            raise SpecError(
                f"{parent_id} already has a child in role {role}: {existing}"
            )
        if parent_id == child_id or nx.has_path(self._dependency, child_id, parent_id):
            raise SpecError(
                f"adding {parent_id} -> {child_id} ({role}) would create a dependency cycle"
            )
        if self._dependency.has_edge(parent_id, child_id):
            data = self._dependency.edges[parent_id, child_id]
            data["roles"] = data["roles"] | {role}
            data["options"] = {**data["options"], **options}
        else:
            self._dependency.add_edge(
                parent_id, child_id, roles=frozenset({role}), options=dict(options)
            )
        self._emit(GraphEventKind.DEPENDENCY_CHANGED, parent_id, child_id)

    def remove_dependency(
        self, parent: ComponentNode | str, child: ComponentNode | str
    ) -> None:
        self._check_open()
        parent_id, child_id = _id(parent), _id(child)
        if self._dependency.has_edge(parent_id, child_id):
            self._dependency.remove_edge(parent_id, child_id)
            self._emit(GraphEventKind.DEPENDENCY_CHANGED, parent_id, child_id)

    def remove_roles(
        self, parent: ComponentNode | str, child: ComponentNode | str, roles: Iterable[str]
    ) -> None:
        """Remove roles from a dependency, removing the edge if none remain."""
        parent_id, child_id = _id(parent), _id(child)
        data = self._dependency.edges[parent_id, child_id]
        remaining = data["roles"] - set(roles)
        if remaining:
            data["roles"] = remaining
            self._emit(GraphEventKind.DEPENDENCY_CHANGED, parent_id, child_id)
        else:
            self.remove_dependency(parent_id, child_id)

    def children(self, node: ComponentNode | str) -> list[tuple[str, ComponentNode]]:
        """(role, child) pairs of node, sorted by role."""
        result = []
        for _, child_id, data in self._dependency.out_edges(_id(node), data=True):
            for role in data["roles"]:
                result.append((role, self._nodes[child_id]))
        return sorted(result, key=lambda rc: rc[0])

    def children_by_role(self, node: ComponentNode | str) -> dict[str, ComponentNode]:
        return dict(self.children(node))

    def child_for_role(self, node: ComponentNode | str, role: str) -> ComponentNode | None:
        for _, child_id, data in self._dependency.out_edges(_id(node), data=True):
            if role in data["roles"]:
                return self._nodes[child_id]
        return None

    def parents(self, node: ComponentNode | str) -> list[ComponentNode]:
        return [self._nodes[p] for p in self._dependency.predecessors(_id(node))]

    def roles_of(self, parent: ComponentNode | str, child: ComponentNode | str) -> frozenset[str]:
        parent_id, child_id = _id(parent), _id(child)
        if not self._dependency.has_edge(parent_id, child_id):
            return frozenset()
        roles: frozenset[str] = self._dependency.edges[parent_id, child_id]["roles"]
        return roles

    def each_dependency(self) -> Iterator[DependencyEdge]:
        for parent, child, data in self._dependency.edges(data=True):
            yield DependencyEdge(parent, child, data["roles"], data["options"])

    def is_ancestor(self, ancestor: ComponentNode | str, node: ComponentNode | str) -> bool:
        a, n = _id(ancestor), _id(node)
        return a != n and nx.has_path(self._dependency, a, n)

    def descendants(self, node: ComponentNode | str) -> set[str]:
        return set(nx.descendants(self._dependency, _id(node)))

    def is_acyclic(self) -> bool:
        return nx.is_directed_acyclic_graph(self._dependency)

    def validate_acyclic(self) -> None:
        """Raise SpecError describing a dependency cycle if one exists."""
        if self.is_acyclic():
            return
        try:
            cycle = nx.find_cycle(self._dependency)
            cycle_str = " -> ".join(f"{u}" for u, v in cycle)
            raise SpecError(f"dependency graph contains a cycle: {cycle_str}")
        except nx.NetworkXNoCycle:
            raise SpecError("dependency graph contains a cycle") from None

    def dependency_order(self) -> list[ComponentNode]:
        """Nodes with children before their parents."""
        try:
            order = list(nx.topological_sort(self._dependency))
        except nx.NetworkXUnfeasible as e:
            raise SpecError(f"cannot sort dependency graph: {e}") from e
        return [self._nodes[n] for n in reversed(order)]

    # Dataflow relation

    def add_connection(
        self,
        source: ComponentNode | str,
        source_port: str,
        sink: ComponentNode | str,
        sink_port: str,
        policy: ConnectionPolicy | None = None,
    ) -> int:
        """Connect source.source_port to sink.sink_port.

        An existing connection between the same two ports is updated by
        folding the policies instead of being duplicated.
        """
        self._check_open()
        source_id, sink_id = _id(source), _id(sink)
        policy = policy or ConnectionPolicy()
        existing = self._find_connection(source_id, source_port, sink_id, sink_port)
        if existing is not None:
            data = self._dataflow.edges[source_id, sink_id, existing]
            link = f"{source_id}.{source_port} -> {sink_id}.{sink_port}"
            data["policy"] = data["policy"].fold(policy, link=link)
            key = existing
        else:
            key = self._dataflow.add_edge(
                source_id,
                sink_id,
                source_port=source_port,
                sink_port=sink_port,
                policy=policy,
            )
        self._emit(GraphEventKind.DATAFLOW_CHANGED, source_id, sink_id)
        return key

    def _find_connection(
        self, source_id: str, source_port: str, sink_id: str, sink_port: str
    ) -> int | None:
        if not self._dataflow.has_edge(source_id, sink_id):
            return None
        for key, data in self._dataflow[source_id][sink_id].items():
            if data["source_port"] == source_port and data["sink_port"] == sink_port:
                return key
        return None

    def set_policy(self, edge: DataflowEdge, policy: ConnectionPolicy) -> None:
        self._dataflow.edges[edge.source, edge.sink, edge.key]["policy"] = policy
        self._emit(GraphEventKind.DATAFLOW_CHANGED, edge.source, edge.sink)

    def remove_connection(self, edge: DataflowEdge) -> None:
        self._check_open()
        self._dataflow.remove_edge(edge.source, edge.sink, edge.key)
        self._emit(GraphEventKind.DATAFLOW_CHANGED, edge.source, edge.sink)

    def remove_connections_of(self, node: ComponentNode | str) -> None:
        node_id = _id(node)
        edges = self.input_connections(node_id) + self.output_connections(node_id)
        for edge in edges:
            if self._dataflow.has_edge(edge.source, edge.sink, edge.key):
                self.remove_connection(edge)

    def each_connection(self) -> Iterator[DataflowEdge]:
        for source, sink, key, data in self._dataflow.edges(keys=True, data=True):
            yield _dataflow_edge(source, sink, key, data)

    def input_connections(self, node: ComponentNode | str) -> list[DataflowEdge]:
        return [
            _dataflow_edge(u, v, k, d)
            for u, v, k, d in self._dataflow.in_edges(_id(node), keys=True, data=True)
        ]

    def output_connections(self, node: ComponentNode | str) -> list[DataflowEdge]:
        return [
            _dataflow_edge(u, v, k, d)
            for u, v, k, d in self._dataflow.out_edges(_id(node), keys=True, data=True)
        ]

    def concrete_input_connections(
        self, node: ComponentNode | str
    ) -> list[ConcreteConnection]:
        """Connections feeding node, resolved through composition exports.

        Each result names the leaf source and the chain of dataflow edges
        between it and node, in flow order.
        """
        sink_id = _id(node)
        result = []
        for edge in self.input_connections(sink_id):
            for source, source_port, chain in self._resolve_sources(
                edge.source, edge.source_port, (edge,), frozenset()
            ):
                result.append(
                    ConcreteConnection(source, source_port, sink_id, edge.sink_port, chain)
                )
        return result

    def each_concrete_connection(self) -> Iterator[ConcreteConnection]:
        """Leaf-to-leaf connections of the whole graph."""
        for node in list(self._nodes.values()):
            if not node.is_composition:
                yield from self.concrete_input_connections(node)

    def _resolve_sources(
        self,
        node_id: str,
        port: str,
        chain: tuple[DataflowEdge, ...],
        seen: frozenset[tuple[str, str]],
    ) -> Iterator[tuple[str, str, tuple[DataflowEdge, ...]]]:
        if not self._nodes[node_id].is_composition:
            yield node_id, port, chain
            return
        if (node_id, port) in seen:
            return
        seen = seen | {(node_id, port)}
        for edge in self.input_connections(node_id):
            if edge.sink_port == port:
                yield from self._resolve_sources(
                    edge.source, edge.source_port, (edge, *chain), seen
                )

    # Precedence relation

    def configure_after(
        self, node: ComponentNode | str, target: ComponentNode | str, event: str = "stop"
    ) -> None:
        """node must not be configured before target emits event."""
        self._check_open()
        self._precedence.add_edge(_id(node), _id(target), event=event)

    def precedences(self, node: ComponentNode | str) -> list[PrecedenceEdge]:
        return [
            PrecedenceEdge(u, v, d["event"])
            for u, v, d in self._precedence.out_edges(_id(node), data=True)
        ]

    def each_precedence(self) -> Iterator[PrecedenceEdge]:
        for u, v, d in self._precedence.edges(data=True):
            yield PrecedenceEdge(u, v, d["event"])

    # Node replacement

    def replace_node(
        self,
        old: ComponentNode | str,
        new: ComponentNode | str,
        port_mapping: Mapping[str, str] | None = None,
    ) -> None:
        """Move every relation of old onto new, then remove old.

        port_mapping renames old's ports on redirected connections (used when
        a service placeholder is replaced by a component providing it).
        """
        self._check_open()
        old_id, new_id = _id(old), _id(new)
        if old_id == new_id:
            raise InternalError(f"trying to replace {old_id} by itself")
        mapping = port_mapping or {}

        in_deps = list(self._dependency.in_edges(old_id, data=True))
        out_deps = list(self._dependency.out_edges(old_id, data=True))
        # roles held by old must be free before new takes them over
        self._dependency.remove_edges_from([(u, v) for u, v, _ in in_deps + out_deps])
        for parent_id, _, data in in_deps:
            if parent_id != new_id:
                for role in sorted(data["roles"]):
                    self.add_dependency(parent_id, new_id, role, **data["options"])
        for _, child_id, data in out_deps:
            if child_id != new_id:
                for role in sorted(data["roles"]):
                    self.add_dependency(new_id, child_id, role, **data["options"])

        for edge in self.input_connections(old_id):
            source = new_id if edge.source == old_id else edge.source
            source_port = mapping.get(edge.source_port, edge.source_port) if edge.source == old_id else edge.source_port
            self.add_connection(
                source, source_port, new_id,
                mapping.get(edge.sink_port, edge.sink_port), edge.policy,
            )
        for edge in self.output_connections(old_id):
            if edge.sink == old_id:
                continue
            self.add_connection(
                new_id, mapping.get(edge.source_port, edge.source_port),
                edge.sink, edge.sink_port, edge.policy,
            )

        for u, _, d in list(self._precedence.in_edges(old_id, data=True)):
            if u != new_id:
                self._precedence.add_edge(u, new_id, **d)
        for _, v, d in list(self._precedence.out_edges(old_id, data=True)):
            if v != new_id:
                self._precedence.add_edge(new_id, v, **d)

        if old_id in self._roots:
            self._roots.add(new_id)
        self.remove_node(old_id)

    def import_graph(self, other: ComponentGraph) -> list[ComponentNode]:
        """Copy every node and relation of other into this graph.

        Roots of other become roots here. Node ids are kept, so other must
        not share any node with this graph.

        Returns:
            The imported node copies
        """
        self._check_open()
        clashes = sorted(self._nodes.keys() & other._nodes.keys())
        if clashes:
            raise InternalError(f"cannot import graph, nodes already present: {clashes}")
        imported = [self.insert(node.copy()) for node in other.nodes()]
        for u, v, data in other._dependency.edges(data=True):
            self._dependency.add_edge(u, v, roles=data["roles"], options=dict(data["options"]))
        for u, v, data in other._dataflow.edges(data=True):
            self._dataflow.add_edge(u, v, **data)
        for u, v, data in other._precedence.edges(data=True):
            self._precedence.add_edge(u, v, **data)
        self._roots.update(other._roots)
        if other._dataflow.number_of_edges():
            self._emit(GraphEventKind.DATAFLOW_CHANGED, *sorted(other._nodes))
        self._emit(GraphEventKind.DEPENDENCY_CHANGED, *sorted(other._nodes))
        return imported

    # Garbage collection

    def static_garbage_collect(
        self, keep: Callable[[ComponentNode], bool] | None = None
    ) -> list[ComponentNode]:
        """Remove every node not reachable from a root or a kept node.

        Reachability follows dependency edges from parents to children.

        Returns:
            The removed nodes
        """
        stack = list(self._roots)
        if keep is not None:
            stack.extend(n.node_id for n in self._nodes.values() if keep(n))
        marked: set[str] = set()
        while stack:
            node_id = stack.pop()
            if node_id in marked:
                continue
            marked.add(node_id)
            stack.extend(self._dependency.successors(node_id))

        removed = [n for n in self._nodes.values() if n.node_id not in marked]
        for node in removed:
            self.remove_node(node.node_id)
        return removed

    # Processes

    def add_process(self, instance: DeploymentInstance) -> DeploymentInstance:
        """Track a deployment process.

        A process with the same name may only be added while the existing
        one is shutting down or gone.

        Raises:
            InternalError: If a live process with the same name exists
        """
        existing = self.find_process(instance.process_name)
        if existing is not None and existing.state not in _ENDING_STATES:
            raise InternalError(
                f"more than one process named {instance.process_name} in the graph"
            )
        self._processes[instance.instance_id] = instance
        return instance

    def find_process(self, process_name: str) -> DeploymentInstance | None:
        """The most recent process named process_name that is not finished."""
        found = [
            p for p in self._processes.values()
            if p.process_name == process_name and p.state != ProcessState.FINISHED
        ]
        found.sort(key=lambda p: p.state in _ENDING_STATES)
        return found[0] if found else None

    def process_by_id(self, instance_id: str) -> DeploymentInstance | None:
        return self._processes.get(instance_id)

    def processes(self) -> list[DeploymentInstance]:
        return sorted(self._processes.values(), key=lambda p: (p.process_name, p.instance_id))

    def successors_of(self, instance: DeploymentInstance) -> list[DeploymentInstance]:
        return [
            p for p in self.processes() if p.predecessor == instance.instance_id
        ]

    def remove_process(self, instance: DeploymentInstance) -> None:
        self._processes.pop(instance.instance_id, None)

    def nodes_deployed_on(self, process_name: str) -> list[ComponentNode]:
        return [
            n for n in self._nodes.values()
            if n.deployed is not None and n.deployed.process_name == process_name
        ]

    # Events

    def subscribe(self, listener: GraphListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: GraphListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, kind: GraphEventKind, *node_ids: str) -> None:
        event = GraphEvent(kind, tuple(node_ids))
        for listener in list(self._listeners):
            listener(event)

    # Transactions

    @property
    def in_transaction(self) -> bool:
        return self._parent is not None

    @property
    def closed(self) -> bool:
        """Whether this transaction was committed or discarded."""
        return self._closed

    @property
    def parent(self) -> ComponentGraph | None:
        return self._parent

    def copy(self) -> ComponentGraph:
        """Independent copy with copied nodes and relations, no listeners."""
        result = ComponentGraph()
        result._nodes = {k: n.copy() for k, n in self._nodes.items()}
        result._dependency = self._dependency.copy()
        for _, _, data in result._dependency.edges(data=True):
            data["options"] = dict(data["options"])
        result._dataflow = self._dataflow.copy()
        result._precedence = self._precedence.copy()
        result._roots = set(self._roots)
        result._processes = {k: p.copy() for k, p in self._processes.items()}
        return result

    def begin(self) -> ComponentGraph:
        """Start a copy-on-write transaction on this graph."""
        trsc = self.copy()
        trsc._parent = self
        return trsc

    def commit(self) -> None:
        """Write the transaction back into its parent graph.

        Nodes that already existed in the parent keep their object identity
        and take over the transaction's state.
        """
        self._check_open()
        parent = self._parent
        if parent is None:
            raise InternalError("commit() called on a graph that is not a transaction")

        removed = [n for n in parent._nodes if n not in self._nodes]
        added = [n for n in self._nodes if n not in parent._nodes]
        nodes: dict[str, ComponentNode] = {}
        for node_id, node in self._nodes.items():
            existing = parent._nodes.get(node_id)
            if existing is not None:
                existing.assign_from(node)
                nodes[node_id] = existing
            else:
                nodes[node_id] = node
        parent._nodes = nodes
        parent._dependency = self._dependency
        parent._dataflow = self._dataflow
        parent._precedence = self._precedence
        parent._roots = self._roots
        processes = {}
        for instance_id, process in self._processes.items():
            existing_process = parent._processes.get(instance_id)
            if existing_process is not None:
                existing_process.state = process.state
                existing_process.handle = process.handle
                existing_process.predecessor = process.predecessor
                processes[instance_id] = existing_process
            else:
                processes[instance_id] = process
        parent._processes = processes
        self._closed = True
        parent._emit(GraphEventKind.COMMITTED, *sorted(removed + added))

    def discard(self) -> None:
        """Drop the transaction. The parent graph is left untouched."""
        if self._parent is None:
            raise InternalError("discard() called on a graph that is not a transaction")
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise InternalError("transaction has already been committed or discarded")


def _id(node: ComponentNode | str) -> str:
    return node if isinstance(node, str) else node.node_id


def _dataflow_edge(source: str, sink: str, key: int, data: Mapping[str, Any]) -> DataflowEdge:
    return DataflowEdge(
        source=source,
        source_port=data["source_port"],
        sink=sink,
        sink_port=data["sink_port"],
        policy=data["policy"],
        key=key,
    )
