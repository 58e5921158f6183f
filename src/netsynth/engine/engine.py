# src/netsynth/engine/engine.py
"""Engine: full resolution cycle against a live component graph.

Coordinates:
- Network generation on a scratch graph
- Deployment and connection policy computation
- Reconciliation inside a transaction on the live graph
- Commit, then process spawns and kills

A failure anywhere before the commit leaves the live graph untouched unless
`engine.on_error` says otherwise.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from netsynth.contracts import (
    ConcurrentResolutionError,
    ConfiguredDeployment,
    ConnectionPolicy,
    OnError,
    ProcessServer,
    ProcessState,
    Requirement,
    SetupExecutor,
    SetupState,
)
from netsynth.core.canonical import stable_hash
from netsynth.core.config import NetsynthSettings
from netsynth.core.graph import ComponentGraph, ComponentNode, DeploymentInstance
from netsynth.core.logging import get_logger
from netsynth.core.registry import ModelRegistry, RobotDefinition
from netsynth.engine.dataflow import (
    ConcreteConnectionIndex,
    ConnectionKey,
    DataflowPolicyPropagator,
)
from netsynth.engine.deployer import Deployer, DeploymentGroup
from netsynth.engine.diagnostics import dump_graph
from netsynth.engine.generator import GeneratedNetwork, SystemNetworkGenerator
from netsynth.engine.hookspecs import PostprocessingManager
from netsynth.engine.merge_solver import MergeGroup
from netsynth.engine.reconciler import DeploymentReconciler, ReconciliationResult
from netsynth.engine.setup import schedule_setup
from netsynth.engine.specialization import SpecializationResolver

logger = get_logger(__name__)


class ResolutionRegistry:
    """State owned by one resolution.

    The engine creates one on construction and replaces it after every
    commit or discard, so nothing leaks from one resolution to the next.
    """

    def __init__(self) -> None:
        self.requirements: list[Requirement] = []
        self.scratch: ComponentGraph | None = None
        self.generated: GeneratedNetwork | None = None
        self.propagator: DataflowPolicyPropagator | None = None
        self.policies: dict[ConnectionKey, ConnectionPolicy] = {}
        self.trsc: ComponentGraph | None = None
        self.merge_groups: list[MergeGroup] = []
        self.closed = False

    def add_merge_group(self, group: MergeGroup) -> None:
        self.merge_groups.append(group)

    def replacement_for(self, node_id: str) -> str:
        """Follow node_id through every merge of this resolution."""
        for group in self.merge_groups:
            node_id = group.replacement_for(node_id)
        return node_id

    def remapped_policies(self) -> dict[ConnectionKey, ConnectionPolicy]:
        """Computed policies, keyed by the ids the nodes have after merging."""
        result = {}
        for (source, source_port, sink, sink_port), policy in self.policies.items():
            key = (self.replacement_for(source), source_port, self.replacement_for(sink), sink_port)
            result[key] = policy
        return result

    def close(self) -> None:
        if self.propagator is not None:
            self.propagator.index.close()
        self.closed = True


@dataclass
class ResolutionResult:
    """Result of a committed resolution.

    Attributes:
        signature: Stable hash of the resulting live network
        root_nodes: Live node of each requirement, in requirement order
        reconciliation: What was reused, replaced and spawned
        started: Processes started after the commit
        killed: Processes killed after the commit
    """

    signature: str
    root_nodes: list[ComponentNode]
    reconciliation: ReconciliationResult
    started: list[DeploymentInstance] = field(default_factory=list)
    killed: list[DeploymentInstance] = field(default_factory=list)


class Engine:
    """Resolves requirements into the live graph it owns.

    Args:
        registry: Model registry
        robot: Devices and busses of the system
        settings: Netsynth settings (defaults apply when omitted)
        process_server: Starts and kills deployment processes. Without one,
            spawned processes stay pending.
        deployments: Deployments available to host components
        plugins: Postprocessing plugin manager. A manager with the built-in
            device plugins is created when omitted.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        robot: RobotDefinition | None = None,
        *,
        settings: NetsynthSettings | None = None,
        process_server: ProcessServer | None = None,
        deployments: Iterable[ConfiguredDeployment] = (),
        plugins: PostprocessingManager | None = None,
    ) -> None:
        self.registry = registry
        self.robot = robot if robot is not None else RobotDefinition()
        self.settings = settings if settings is not None else NetsynthSettings()
        self.process_server = process_server
        self.deployments = DeploymentGroup(deployments)
        if plugins is None:
            plugins = PostprocessingManager()
            plugins.register_builtin_plugins()
        self.plugins = plugins
        self.plan = ComponentGraph()
        self.resolver = SpecializationResolver(registry)
        self.index = ConcreteConnectionIndex(self.plan)
        self._lock = threading.Lock()
        self._resolution = ResolutionRegistry()

    @property
    def resolution(self) -> ResolutionRegistry:
        return self._resolution

    def generator(self) -> SystemNetworkGenerator:
        engine_settings = self.settings.engine
        return SystemNetworkGenerator(
            self.registry,
            self.robot,
            self.resolver,
            self.plugins,
            garbage_collect=engine_settings.garbage_collect,
            validate=engine_settings.validate_network,
        )

    # Resolution

    def resolve(self, requirements: Sequence[Requirement]) -> ResolutionResult:
        """Bring the live graph to requirements.

        Raises:
            ConcurrentResolutionError: If a resolution is already running
            SpecError: If the requirements cannot be satisfied
        """
        if not self._lock.acquire(blocking=False):
            raise ConcurrentResolutionError("a resolution is already running on this engine")
        try:
            return self._resolve(list(requirements))
        finally:
            self._lock.release()

    def _resolve(self, requirements: list[Requirement]) -> ResolutionResult:
        resolution = self._resolution
        resolution.requirements = requirements
        resolution.scratch = ComponentGraph()
        try:
            generated = self.generator().generate(requirements, resolution.scratch)
            resolution.generated = generated
            resolution.add_merge_group(generated.merge_group)
            if self.settings.engine.compute_deployments:
                self.compute_deployed_network(generated)

            trsc = self.plan.begin()
            resolution.trsc = trsc
            reconciliation = DeploymentReconciler(trsc, self.deployments).reconcile(generated.graph)
            resolution.add_merge_group(reconciliation.merge_group)
            root_ids = [resolution.replacement_for(n.node_id) for n in generated.root_nodes]
            trsc.commit()
        except Exception as e:
            self._handle_failure(resolution, e)
            raise

        self.index.invalidate()
        self.index.update(resolution.remapped_policies())
        self._close_resolution()

        killed = self._kill(reconciliation.killed)
        started = self._start(reconciliation.spawned)
        signature = network_signature(self.plan)
        logger.info(
            "resolution committed",
            requirements=len(requirements),
            nodes=self.plan.node_count,
            signature=signature,
        )
        return ResolutionResult(
            signature=signature,
            root_nodes=[self.plan[n] for n in root_ids],
            reconciliation=reconciliation,
            started=started,
            killed=killed,
        )

    def compute_deployed_network(self, generated: GeneratedNetwork) -> None:
        """Deploy the generated network and compute its connection policies."""
        graph, context = generated.graph, generated.context
        Deployer(self.deployments).deploy(graph)
        context.deployments = self.deployments.deployments()
        self.plugins.run_deployment(context)
        if self.settings.engine.compute_policies:
            propagator = DataflowPolicyPropagator(
                graph,
                self.robot,
                buffer_size_margin=self.settings.engine.buffer_size_margin,
            )
            self._resolution.propagator = propagator
            self._resolution.policies = propagator.compute_connection_policies()
        self.plugins.run_final_network(context)

    def _handle_failure(self, resolution: ResolutionRegistry, error: Exception) -> None:
        on_error = self.settings.engine.on_error
        trsc = resolution.trsc
        logger.warning("resolution failed", error=str(error), on_error=on_error.value)
        try:
            if on_error == OnError.SAVE:
                graph = trsc if trsc is not None else resolution.scratch
                if graph is not None:
                    try:
                        dump_graph(graph, self.settings.diagnostics, reason=str(error))
                    except OSError as dump_error:
                        logger.warning("could not write diagnostics", error=str(dump_error))
            if trsc is not None and not trsc.closed:
                if on_error == OnError.COMMIT:
                    trsc.commit()
                    self.index.invalidate()
                else:
                    trsc.discard()
        finally:
            self._close_resolution()

    def _close_resolution(self) -> None:
        self._resolution.close()
        self._resolution = ResolutionRegistry()

    # Processes

    def _start(self, spawned: list[DeploymentInstance]) -> list[DeploymentInstance]:
        started = []
        for instance in spawned:
            live = self.plan.process_by_id(instance.instance_id)
            if live is None or live.predecessor is not None:
                continue
            if self._start_process(live):
                started.append(live)
        return started

    def _start_process(self, instance: DeploymentInstance) -> bool:
        if self.process_server is None:
            logger.debug("no process server, process left pending", process=instance.process_name)
            return False
        deployment = instance.deployment
        instance.handle = self.process_server.start(deployment, deployment.host)
        instance.state = ProcessState.RUNNING
        logger.info("process started", process=instance.process_name, host=deployment.host)
        return True

    def _kill(self, killed: list[DeploymentInstance]) -> list[DeploymentInstance]:
        result = []
        for instance in killed:
            live = self.plan.process_by_id(instance.instance_id)
            if live is None:
                continue
            if live.handle is not None and self.process_server is not None:
                self.process_server.kill(live.handle)
                logger.info("process killed", process=live.process_name)
            result.append(live)
        return result

    def process_finished(self, process_name: str) -> list[DeploymentInstance]:
        """Record that a process exited.

        Nodes that were stopping on it are removed. When the process was not
        asked to stop, every node it hosted is removed. Processes waiting on
        it are started.

        Returns:
            The processes started as a consequence
        """
        candidates = [
            p for p in self.plan.processes()
            if p.process_name == process_name and p.state != ProcessState.FINISHED
        ]
        if not candidates:
            logger.warning("unknown process finished", process=process_name)
            return []
        candidates.sort(key=lambda p: p.state != ProcessState.FINISHING)
        instance = candidates[0]
        expected = instance.state == ProcessState.FINISHING
        instance.state = ProcessState.FINISHED

        for node in self.plan.nodes_deployed_on(process_name):
            if node.stop_requested or not expected:
                self.plan.remove_node(node)
        if not expected:
            logger.warning("process exited unexpectedly", process=process_name)

        started = []
        for successor in self.plan.successors_of(instance):
            successor.predecessor = None
            if self._start_process(successor):
                started.append(successor)
        self.plan.remove_process(instance)
        return started

    # Setup

    def node_stopped(self, node: ComponentNode | str) -> None:
        """Record that a node stopped and drop it from the live graph."""
        node_id = node if isinstance(node, str) else node.node_id
        if node_id in self.plan:
            self.plan.remove_node(node_id)
            logger.debug("node stopped", node=node_id)

    def ready_to_configure(self, node: ComponentNode | str) -> bool:
        """Whether every precedence constraint of node is satisfied.

        A "stop" constraint holds once its target left the graph. A "start"
        constraint holds once its target is set up.
        """
        for edge in self.plan.precedences(node):
            target = self.plan[edge.target] if edge.target in self.plan else None
            if edge.event == "stop" and target is not None:
                return False
            if edge.event == "start" and (
                target is None or target.setup_state != SetupState.SETUP
            ):
                return False
        return True

    def setup_ready_nodes(
        self, executor: SetupExecutor, setup: Callable[[ComponentNode], Any]
    ) -> dict[str, Future[Any]]:
        """Schedule the setup of every node that can be configured now.

        A node can be configured when it is deployed on a running process,
        was never set up, and its precedence constraints hold.

        Returns:
            node id -> setup future
        """
        running = {
            p.process_name for p in self.plan.processes() if p.state == ProcessState.RUNNING
        }
        futures = {}
        for node in self.plan.nodes():
            if node.setup_state != SetupState.NOT_SETUP or node.stop_requested:
                continue
            if node.deployed is None or node.deployed.process_name not in running:
                continue
            if not self.ready_to_configure(node):
                continue
            futures[node.node_id] = schedule_setup(node, executor, _bind(setup, node))
        return futures


def _bind(fn: Callable[[ComponentNode], Any], node: ComponentNode) -> Callable[[], Any]:
    return lambda: fn(node)


def network_signature(graph: ComponentGraph) -> str:
    """Stable hash of a network, independent of node ids."""

    def describe(node_id: str) -> list[Any]:
        node = graph[node_id]
        return [node.model.name, node.arguments, str(node.deployed) if node.deployed else None]

    nodes = sorted((describe(n.node_id) for n in graph.nodes()), key=repr)
    connections = sorted(
        (
            [describe(edge.source), edge.source_port, describe(edge.sink), edge.sink_port,
             edge.policy.to_dict()]
            for edge in graph.each_connection()
        ),
        key=repr,
    )
    return stable_hash({"nodes": nodes, "connections": connections})
