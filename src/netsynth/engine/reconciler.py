# src/netsynth/engine/reconciler.py
"""Adaptation of a running network to a newly generated one.

Works inside a transaction opened on the live graph. The desired network
(a deployed scratch graph) is imported next to the live nodes, then each of
its deployed nodes is matched with the live node running the same activity:

- reuse: the live node can stand for the desired one and none of its static
  inputs change. The desired node is merged into the live one.
- replace: the desired node is kept, configured after the live node stopped.
  The live node loses its dependents and is scheduled to stop.
- spawn: the process does not run (or is shutting down, or runs another
  deployment). A new process is started for it.

Reuse is preferred over replacement, and replacement over a fresh spawn.
The desired dataflow replaces the live one.
"""

from __future__ import annotations

from collections.abc import Hashable
from dataclasses import dataclass, field

import networkx as nx

from netsynth.contracts import ProcessClass, ProcessState, SetupState
from netsynth.core.graph import ComponentGraph, ComponentNode, DeploymentInstance
from netsynth.core.logging import get_logger
from netsynth.engine.deployer import DeploymentGroup
from netsynth.engine.merge_solver import MergeGroup, MergeSolver

logger = get_logger(__name__)

# Argument that can change on a running node without restarting it
CONFIGURATION_ARGUMENT = "conf"

InputSignature = frozenset[tuple[Hashable, str]]


@dataclass
class ReconciliationResult:
    """What a reconciliation did to the transaction.

    Attributes:
        reused: Live nodes that absorbed a desired node
        replaced: (live node, replacement) pairs
        reconfigured: Reused nodes whose configuration changed
        stopped: Live nodes scheduled to stop
        spawned: Processes to start once committed
        killed: Processes to kill once committed
        classes: Classification of the live processes, by instance id
        merge_group: Desired node id -> live node id
    """

    reused: list[str] = field(default_factory=list)
    replaced: list[tuple[str, str]] = field(default_factory=list)
    reconfigured: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    spawned: list[DeploymentInstance] = field(default_factory=list)
    killed: list[DeploymentInstance] = field(default_factory=list)
    classes: dict[str, ProcessClass] = field(default_factory=dict)
    merge_group: MergeGroup = field(default_factory=MergeGroup)


class DeploymentReconciler:
    """Reconciles a desired network into a transaction on the live graph."""

    def __init__(self, trsc: ComponentGraph, deployments: DeploymentGroup) -> None:
        self.trsc = trsc
        self.deployments = deployments

    def classify(self, needed: set[str]) -> dict[str, ProcessClass]:
        """Classify the live processes of the transaction.

        Args:
            needed: Names of the processes the desired network runs on

        Returns:
            instance id -> class, for every process that is not finished
        """
        classes: dict[str, ProcessClass] = {}
        for process in self.trsc.processes():
            if process.state == ProcessState.FINISHED:
                continue
            if process.state == ProcessState.FINISHING:
                classes[process.instance_id] = ProcessClass.FINISHING
            elif (
                process.process_name in needed
                and self.deployments.find_deployment(process.process_name) == process.deployment
            ):
                classes[process.instance_id] = ProcessClass.NEEDED
            else:
                classes[process.instance_id] = ProcessClass.SUPERSEDED
        return classes

    def reconcile(self, desired: ComponentGraph) -> ReconciliationResult:
        """Bring the transaction to the desired network."""
        trsc = self.trsc
        result = ReconciliationResult()
        needed = {
            n.deployed.process_name for n in desired.nodes() if n.deployed is not None
        }
        result.classes = self.classify(needed)
        self._update_processes(needed, result)

        running = {
            p.process_name for p in trsc.processes()
            if result.classes.get(p.instance_id) == ProcessClass.NEEDED
        }
        live_by_activity = {
            n.deployed: n
            for n in trsc.nodes()
            if n.deployed is not None
            and n.deployed.process_name in running
            and not n.stop_requested
        }
        static_inputs = {n.node_id: self._static_inputs(n) for n in live_by_activity.values()}

        for edge in list(trsc.each_connection()):
            trsc.remove_connection(edge)
        trsc.clear_roots()
        imported = trsc.import_graph(desired)

        solver = MergeSolver(
            trsc,
            result.merge_group,
            ignore_arguments=(CONFIGURATION_ARGUMENT,),
            endpoint_key=self._endpoint_key,
        )
        for node in self._static_order(imported):
            if node.deployed is None:
                continue
            live = live_by_activity.get(node.deployed)
            if live is None:
                continue
            if self._can_reuse(solver, node, live, static_inputs[live.node_id]):
                self._reuse(solver, node, live, result)
            else:
                self._replace(node, live, result)

        solver.merge_identical_tasks()
        trsc.static_garbage_collect(keep=lambda n: not n.discardable)
        reachable = trsc.reachable_from_roots()
        for node in trsc.nodes():
            if node.node_id not in reachable and not node.stop_requested:
                self._request_stop(node, result)

        logger.info(
            "network reconciled",
            reused=len(result.reused),
            replaced=len(result.replaced),
            reconfigured=len(result.reconfigured),
            spawned=[p.process_name for p in result.spawned],
            killed=[p.process_name for p in result.killed],
        )
        return result

    def _update_processes(self, needed: set[str], result: ReconciliationResult) -> None:
        trsc = self.trsc
        for process in trsc.processes():
            if result.classes.get(process.instance_id) == ProcessClass.SUPERSEDED:
                process.state = ProcessState.FINISHING
                result.killed.append(process)
                for node in trsc.nodes_deployed_on(process.process_name):
                    self._request_stop(node, result)

        for name in sorted(needed):
            deployment = self.deployments.find_deployment(name)
            if deployment is None:
                continue
            current = trsc.find_process(name)
            if current is not None and current.state not in (
                ProcessState.FINISHING, ProcessState.FINISHED
            ):
                continue
            instance = DeploymentInstance(
                deployment,
                predecessor=current.instance_id if current is not None else None,
            )
            trsc.add_process(instance)
            result.spawned.append(instance)
            logger.debug("process spawned", process=name, after=instance.predecessor)

    def _static_order(self, nodes: list[ComponentNode]) -> list[ComponentNode]:
        """Nodes ordered so that static sources are decided before their sinks."""
        by_id = {n.node_id: n for n in nodes}
        static = nx.DiGraph()
        static.add_nodes_from(by_id)
        for node in nodes:
            for conn in self.trsc.concrete_input_connections(node):
                port = node.find_port(conn.sink_port)
                if port is not None and port.static and conn.source in by_id:
                    static.add_edge(conn.source, node.node_id)
        try:
            order = list(nx.lexicographical_topological_sort(static))
        except nx.NetworkXUnfeasible:
            logger.warning("static inputs form a cycle", nodes=len(nodes))
            order = sorted(by_id)
        return [by_id[node_id] for node_id in order]

    def _endpoint_key(self, node_id: str) -> Hashable:
        node = self.trsc[node_id]
        return node.deployed if node.deployed is not None else node_id

    def _static_inputs(self, node: ComponentNode) -> dict[str, InputSignature]:
        result: dict[str, set[tuple[Hashable, str]]] = {}
        for conn in self.trsc.concrete_input_connections(node):
            port = node.find_port(conn.sink_port)
            if port is not None and port.static:
                # a reused source was merged into its live node, so ids compare
                result.setdefault(conn.sink_port, set()).add((conn.source, conn.source_port))
        return {k: frozenset(v) for k, v in result.items()}

    def _can_reuse(
        self,
        solver: MergeSolver,
        node: ComponentNode,
        live: ComponentNode,
        live_static_inputs: dict[str, InputSignature],
    ) -> bool:
        if live.setup_state == SetupState.SETUP_FAILED:
            return False
        if not solver.can_absorb(node, live):
            return False
        if self._static_inputs(node) != live_static_inputs:
            logger.debug("static inputs changed", node=live.node_id)
            return False
        return True

    def _reuse(
        self,
        solver: MergeSolver,
        node: ComponentNode,
        live: ComponentNode,
        result: ReconciliationResult,
    ) -> None:
        conf = node.arguments.get(CONFIGURATION_ARGUMENT)
        solver.merge(node, live)
        if conf is not None and live.arguments.get(CONFIGURATION_ARGUMENT) != conf:
            live.arguments[CONFIGURATION_ARGUMENT] = conf
            live.needs_reconfiguration = True
            result.reconfigured.append(live.node_id)
        result.reused.append(live.node_id)
        logger.debug("live node reused", node=live.node_id, activity=str(live.deployed))

    def _replace(
        self, node: ComponentNode, live: ComponentNode, result: ReconciliationResult
    ) -> None:
        trsc = self.trsc
        trsc.configure_after(node, live, "stop")
        for parent in trsc.parents(live):
            trsc.remove_dependency(parent, live)
        trsc.unmark_root(live)
        self._request_stop(live, result)
        result.replaced.append((live.node_id, node.node_id))
        logger.debug("live node replaced", node=live.node_id, replacement=node.node_id)

    @staticmethod
    def _request_stop(node: ComponentNode, result: ReconciliationResult) -> None:
        node.stop_requested = True
        node.reusable = False
        result.stopped.append(node.node_id)
