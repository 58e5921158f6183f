# src/netsynth/engine/dataflow.py
"""Port dynamics and connection policies.

Each output port of a leaf component is described by its PortDynamics: the
set of triggers (period, samples per period) that cause it to be written.
Dynamics start from what is known without looking at the dataflow (task
periods, devices, busses) and are propagated through the concrete
connections until nothing more can be computed.

Connection policies are then sized from the dynamics of the source port and
the reading latency of the sink.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field

from netsynth.contracts import (
    BufferKind,
    ComponentModel,
    ConnectionPolicy,
    DeviceInstance,
    GraphEventKind,
    InternalError,
    SpecError,
    fold_chain,
)
from netsynth.core.graph import (
    ComponentGraph,
    ComponentNode,
    ConcreteConnection,
    DataflowEdge,
    GraphEvent,
)
from netsynth.core.logging import get_logger
from netsynth.core.registry import RobotDefinition
from netsynth.engine.devices import BUS_ARGUMENT, attached_devices

logger = get_logger(__name__)

# (node id, port name); a None port stands for the task itself
InfoKey = tuple[str, str | None]
ConnectionKey = tuple[str, str, str, str]


@dataclass(frozen=True)
class Trigger:
    """sample_count samples every period seconds (period 0: a one-off burst)."""

    name: str
    period: float
    sample_count: int


@dataclass
class PortDynamics:
    """Triggers that cause a port (or a task) to produce samples."""

    name: str
    sample_size: int = 1
    triggers: list[Trigger] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.triggers

    def add_trigger(self, name: str, period: float, sample_count: int) -> None:
        if sample_count != 0:
            self.triggers.append(Trigger(name, period, sample_count))

    def merge(self, other: PortDynamics) -> None:
        self.triggers.extend(other.triggers)

    def minimal_period(self) -> float | None:
        if not self.triggers:
            return None
        return min(t.period for t in self.triggers)

    def sample_count(self, duration: float) -> int:
        """Samples produced over duration. Contributions add up."""
        total = 0
        for trigger in self.triggers:
            if trigger.period == 0:
                total += trigger.sample_count
            else:
                total += math.floor(duration / trigger.period) * trigger.sample_count
        return total

    def queue_size(self, duration: float) -> int:
        return (1 + self.sample_count(duration)) * self.sample_size

    def sampled_at(self, duration: float) -> PortDynamics:
        """Dynamics seen by a task reading this port every duration seconds."""
        result = PortDynamics(self.name, self.sample_size)
        names = ",".join(t.name for t in self.triggers)
        result.add_trigger(f"{self.name}.resample({names},{duration})", duration, self.queue_size(duration))
        return result


class ConcreteConnectionIndex:
    """Cache of leaf-to-leaf connections and their effective policies.

    The index listens to the graph and is invalidated whenever dataflow
    edges or nodes change.
    """

    def __init__(self, graph: ComponentGraph) -> None:
        self.graph = graph
        self._connections: dict[ConnectionKey, list[ConcreteConnection]] | None = None
        self._policies: dict[ConnectionKey, ConnectionPolicy] = {}
        graph.subscribe(self._on_graph_event)

    def close(self) -> None:
        self.graph.unsubscribe(self._on_graph_event)

    def _on_graph_event(self, event: GraphEvent) -> None:
        if event.kind in (GraphEventKind.DATAFLOW_CHANGED, GraphEventKind.NODE_REMOVED):
            self.invalidate()
        elif event.kind == GraphEventKind.COMMITTED:
            # policies are carried over by remap()
            self._connections = None

    def invalidate(self) -> None:
        self._connections = None
        self._policies.clear()

    @property
    def valid(self) -> bool:
        return self._connections is not None

    def connections(self) -> dict[ConnectionKey, list[ConcreteConnection]]:
        if self._connections is None:
            index: dict[ConnectionKey, list[ConcreteConnection]] = {}
            for conn in self.graph.each_concrete_connection():
                key = (conn.source, conn.source_port, conn.sink, conn.sink_port)
                index.setdefault(key, []).append(conn)
            self._connections = index
        return self._connections

    def __iter__(self) -> Iterator[ConcreteConnection]:
        for conns in self.connections().values():
            yield from conns

    def effective_policy(
        self, source: str, source_port: str, sink: str, sink_port: str
    ) -> ConnectionPolicy:
        """Policy of a leaf-to-leaf connection, folded along its chain.

        Raises:
            InternalError: If the two ports are not connected
            IncompatiblePolicy: If the chain does not fold
        """
        key = (source, source_port, sink, sink_port)
        cached = self._policies.get(key)
        if cached is not None:
            return cached
        conns = self.connections().get(key)
        if not conns:
            raise InternalError(
                f"{source}.{source_port} is not connected to {sink}.{sink_port}"
            )
        policy = fold_chain(_chain_links(c for c in conns))
        self._policies[key] = policy
        return policy

    def remap(self, replacements: Iterable[tuple[str, str]]) -> None:
        """Rewrite cached keys after nodes were replaced by others."""
        mapping = dict(replacements)
        if not mapping:
            return
        policies = {}
        for (source, source_port, sink, sink_port), policy in self._policies.items():
            key = (mapping.get(source, source), source_port, mapping.get(sink, sink), sink_port)
            policies[key] = policy
        self._connections = None
        self._policies = policies

    def update(self, policies: Mapping[ConnectionKey, ConnectionPolicy]) -> None:
        self._policies.update(policies)

    def cached_policies(self) -> dict[ConnectionKey, ConnectionPolicy]:
        return dict(self._policies)


def _chain_links(conns: Iterable[ConcreteConnection]) -> Iterator[tuple[str, ConnectionPolicy]]:
    for conn in conns:
        for edge in conn.chain:
            yield f"{edge.source}.{edge.source_port} -> {edge.sink}.{edge.sink_port}", edge.policy


class DataflowPolicyPropagator:
    """Computes port dynamics and fills connection policies."""

    def __init__(
        self,
        graph: ComponentGraph,
        robot: RobotDefinition,
        *,
        buffer_size_margin: float = 0.1,
        index: ConcreteConnectionIndex | None = None,
    ) -> None:
        if buffer_size_margin < 0:
            raise ValueError(f"buffer_size_margin must be positive, got {buffer_size_margin}")
        self.graph = graph
        self.robot = robot
        self.buffer_size_margin = buffer_size_margin
        self.index = index if index is not None else ConcreteConnectionIndex(graph)
        self._info: dict[InfoKey, PortDynamics] = {}
        self._done: set[InfoKey] = set()
        self._triggers: dict[InfoKey, set[InfoKey]] = {}

    def effective_policy(
        self, source: str, source_port: str, sink: str, sink_port: str
    ) -> ConnectionPolicy:
        return self.index.effective_policy(source, source_port, sink, sink_port)

    # Dynamics

    def port_info(self, node: ComponentNode | str, port: str | None) -> PortDynamics | None:
        """Final dynamics of a port (None for the task), if they are known."""
        key = (_id(node), port)
        return self._info.get(key) if key in self._done else None

    def task_info(self, node: ComponentNode | str) -> PortDynamics | None:
        return self.port_info(node, None)

    def propagate(self, nodes: Iterable[ComponentNode] | None = None) -> dict[InfoKey, PortDynamics]:
        """Compute the dynamics of the given leaf nodes (default: all).

        Returns:
            The final dynamics that could be computed
        """
        self._info.clear()
        self._done.clear()
        self._triggers.clear()
        if nodes is None:
            nodes = self.graph.nodes()
        tasks = [n for n in nodes if not n.is_composition and not n.abstract]

        for node in tasks:
            self._initial_information(node)
        for node in tasks:
            self._triggering_inputs(node)

        pending = {key for key in self._triggers if key not in self._done}
        while pending:
            progress = False
            for key in sorted(pending, key=lambda k: (k[0], k[1] or "")):
                if self._compute_info_for(key):
                    pending.discard(key)
                    progress = True
            if not progress:
                break
        if pending:
            logger.debug(
                "dynamics left unknown",
                ports=sorted(f"{n}.{p or 'task'}" for n, p in pending),
            )
        return {key: self._info[key] for key in self._done if key in self._info}

    def _dynamics(self, key: InfoKey) -> PortDynamics:
        info = self._info.get(key)
        if info is None:
            node_id, port = key
            info = PortDynamics(f"{node_id}.{port or 'main'}")
            self._info[key] = info
        return info

    def _initial_information(self, node: ComponentNode) -> None:
        model = node.model
        self._dynamics((node.node_id, None))
        if not isinstance(model, ComponentModel):
            return
        for port in model.each_port():
            if port.is_output:
                self._dynamics((node.node_id, port.name)).sample_size = port.sample_size

        self._initial_device_information(node, model)
        if BUS_ARGUMENT in node.arguments:
            self._initial_combus_information(node)

        if model.period is not None:
            self._dynamics((node.node_id, None)).add_trigger(
                f"{node.node_id}.main-period", model.period, 1
            )
            self._done.add((node.node_id, None))
        elif not any(p.trigger for p in model.each_port() if p.is_input):
            self._done.add((node.node_id, None))

    def _initial_device_information(self, node: ComponentNode, model: ComponentModel) -> None:
        devices = attached_devices(node, self.robot)
        for srv_name, device in sorted(devices.items()):
            if not isinstance(device, DeviceInstance):
                continue
            srv = model.find_service(srv_name)
            if srv is None:
                continue
            dynamics = PortDynamics(device.name, 1)
            if device.period is not None:
                dynamics.add_trigger(device.name, device.period, 1)
            dynamics.add_trigger(f"{device.name}-burst", 0, device.burst)
            if dynamics.empty:
                continue

            outputs = [srv.map_port(p.name) for p in srv.model.each_port() if p.is_output]
            if model.period is not None:
                for port_name in outputs:
                    self._dynamics((node.node_id, port_name)).add_trigger(
                        device.name, model.period, dynamics.queue_size(model.period)
                    )
                    self._done.add((node.node_id, port_name))
            else:
                self._dynamics((node.node_id, None)).merge(dynamics)
                for port_name in outputs:
                    self._dynamics((node.node_id, port_name)).merge(dynamics)
                    self._done.add((node.node_id, port_name))

    def _initial_combus_information(self, node: ComponentNode) -> None:
        bus_name = node.arguments[BUS_ARGUMENT]
        for device in self.robot.devices.values():
            if bus_name not in device.com_busses:
                continue
            port = node.find_port(device.name)
            if port is None or not port.is_output:
                continue
            dynamics = self._dynamics((node.node_id, device.name))
            dynamics.sample_size = device.sample_size
            if device.period is not None:
                dynamics.add_trigger(device.name, device.period, 1)
                dynamics.add_trigger(device.name, device.period * device.burst, device.burst)
            self._done.add((node.node_id, device.name))

    def _triggering_inputs(self, node: ComponentNode) -> None:
        model = node.model
        if not isinstance(model, ComponentModel):
            return
        connected = {c.sink_port for c in self.index if c.sink == node.node_id}
        task_key = (node.node_id, None)
        self._triggers.setdefault(task_key, set())
        for port in model.each_port():
            if port.is_input and port.trigger and port.name in connected:
                self._triggers[task_key].add((node.node_id, port.name))
        for port in model.each_port():
            if not port.is_output:
                continue
            key = (node.node_id, port.name)
            if key in self._done:
                continue
            triggers = self._triggers.setdefault(key, set())
            if port.triggered_on_update:
                triggers.add(task_key)
            for name in port.triggered_by:
                if name in connected:
                    triggers.add((node.node_id, name))
            if not triggers:
                del self._triggers[key]
                self._done.add(key)

    def _input_info(self, key: InfoKey) -> PortDynamics | None:
        """Dynamics of an input port: the merge of its sources' dynamics."""
        node_id, port = key
        result = PortDynamics(f"{node_id}.{port}")
        for conn in self.index:
            if conn.sink != node_id or conn.sink_port != port:
                continue
            source_key = (conn.source, conn.source_port)
            if source_key not in self._done:
                return None
            source = self._info.get(source_key)
            if source is not None:
                result.sample_size = max(result.sample_size, source.sample_size)
                result.merge(source)
        return result

    def _compute_info_for(self, key: InfoKey) -> bool:
        node_id, _ = key
        task_infos = []
        input_infos = []
        for trigger_key in sorted(self._triggers.get(key, ()), key=lambda k: k[1] or ""):
            if trigger_key[1] is None:
                if trigger_key not in self._done:
                    return False
                task_infos.append(self._info.get(trigger_key))
            else:
                info = self._input_info(trigger_key)
                if info is None:
                    return False
                input_infos.append(info)

        model = self.graph[node_id].model
        period = model.period if isinstance(model, ComponentModel) else None
        target = self._dynamics(key)
        for info in task_infos:
            if info is not None:
                target.merge(info)
        # a periodic task reads its inputs once per period
        for info in input_infos:
            target.merge(info.sampled_at(period) if period is not None else info)
        self._done.add(key)
        return True

    # Policies

    def compute_connection_policies(
        self, nodes: Iterable[ComponentNode] | None = None
    ) -> dict[ConnectionKey, ConnectionPolicy]:
        """Fill the policy of every concrete connection that has no kind yet.

        Policies are written on the last edge of each connection chain.

        Returns:
            Connection key -> effective policy of the connection once the
            computed policy has been written
        """
        selected = list(nodes) if nodes is not None else None
        self.propagate(selected)
        allowed = {n.node_id for n in selected} if selected is not None else None

        computed: list[tuple[ConcreteConnection, ConnectionPolicy]] = []
        for conn in list(self.index):
            if allowed is not None and conn.source not in allowed:
                continue
            current = fold_chain(_chain_links([conn]))
            computed.append((conn, self.policy_for(conn, current)))
        self._apply(computed)

        keys = dict.fromkeys(
            (conn.source, conn.source_port, conn.sink, conn.sink_port) for conn, _ in computed
        )
        policies = {key: self.index.effective_policy(*key) for key in keys}
        logger.debug("connection policies computed", connections=len(policies))
        return policies

    def _apply(self, computed: list[tuple[ConcreteConnection, ConnectionPolicy]]) -> None:
        # several connections can end on the same edge, fold them all first
        pending: dict[tuple[str, str, int], tuple[DataflowEdge, ConnectionPolicy]] = {}
        for conn, policy in computed:
            last = conn.chain[-1]
            edge_id = (last.source, last.sink, last.key)
            _, merged = pending.get(edge_id, (last, last.policy.without_fallback()))
            pending[edge_id] = (last, merged.fold(policy, link=conn.label))
        for last, merged in pending.values():
            if merged != last.policy:
                self.graph.set_policy(last, merged)

    def policy_for(self, conn: ConcreteConnection, policy: ConnectionPolicy) -> ConnectionPolicy:
        """Policy for one connection given the current knowledge.

        Raises:
            InternalError: If a port of the connection does not exist
            SpecError: If dynamics are missing and no fallback policy is set
        """
        fallback = policy.fallback
        policy = policy.without_fallback()
        if policy.kind is not None:
            return policy

        source, sink = self.graph[conn.source], self.graph[conn.sink]
        source_port = source.find_port(conn.source_port)
        sink_port = sink.find_port(conn.sink_port)
        if source_port is None or not source_port.is_output:
            raise InternalError(f"{conn.source_port} is not an output port of {source}")
        if sink_port is None or not sink_port.is_input:
            raise InternalError(f"{conn.sink_port} is not an input port of {sink}")

        if not sink_port.needs_reliable_connection:
            if sink_port.required_connection_type == BufferKind.DATA:
                return ConnectionPolicy(kind=BufferKind.DATA, pull=policy.pull)
            if sink_port.required_connection_type == BufferKind.BUFFER:
                return ConnectionPolicy(
                    kind=BufferKind.BUFFER, size=max(1, policy.size or 0), pull=policy.pull
                )

        input_dynamics = self.port_info(source, source_port.name)
        if input_dynamics is not None and input_dynamics.empty:
            input_dynamics = None
        sink_dynamics = self.task_info(sink)
        latency = getattr(sink.model, "trigger_latency", 0.0)
        reading_latency: float | None
        if sink_port.trigger:
            reading_latency = latency
        elif sink_dynamics is not None and sink_dynamics.minimal_period() is not None:
            reading_latency = sink_dynamics.minimal_period() + latency
        else:
            reading_latency = None

        if input_dynamics is None or reading_latency is None:
            if fallback is not None:
                logger.warning(
                    "using fallback policy",
                    connection=conn.label,
                    reason="no source dynamics" if input_dynamics is None else "no sink period",
                    policy=fallback.to_dict(),
                )
                return fallback
            if input_dynamics is None:
                raise SpecError(
                    f"the period information for output port {source}.{source_port.name} "
                    f"cannot be computed. This is needed to compute the policy to "
                    f"connect to {sink}.{sink_port.name}"
                )
            raise SpecError(
                f"{sink} has no minimal period, needed to compute reading latency "
                f"on {sink_port.name}"
            )

        size = int((1.0 + self.buffer_size_margin) * input_dynamics.queue_size(reading_latency)) + 1
        # an explicit size on the connection is a lower bound
        size = max(size, policy.size or 0)
        return ConnectionPolicy(kind=BufferKind.BUFFER, size=size, pull=policy.pull)


def _id(node: ComponentNode | str) -> str:
    return node if isinstance(node, str) else node.node_id
