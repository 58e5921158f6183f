# src/netsynth/engine/deployer.py
"""Deployment of a generated network.

Each concrete leaf node is bound to one activity of one configured
deployment. An activity hosts at most one node. When more than one free
activity can host a node, the node's deployment hints (regular
expressions) narrow the choice; a tie that survives them is an error.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from netsynth.contracts import (
    AmbiguousDeployment,
    ComponentModel,
    ConfiguredDeployment,
    MissingDeployments,
    SpecError,
)
from netsynth.core.graph import ComponentGraph, ComponentNode, DeployedComponent
from netsynth.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeploymentSlot:
    """One activity of a configured deployment."""

    deployment: ConfiguredDeployment
    activity: str
    model: ComponentModel

    @property
    def binding(self) -> DeployedComponent:
        return DeployedComponent(self.deployment.process_name, self.activity)

    def matches(self, pattern: re.Pattern[str]) -> bool:
        return any(
            pattern.search(name)
            for name in (
                self.deployment.process_name,
                self.activity,
                self.deployment.model.name,
            )
        )

    def __str__(self) -> str:
        return str(self.binding)


class DeploymentGroup:
    """The deployments available to a resolution."""

    def __init__(self, deployments: Iterable[ConfiguredDeployment] = ()) -> None:
        self._deployments: dict[str, ConfiguredDeployment] = {}
        for deployment in deployments:
            self.add(deployment)

    def add(self, deployment: ConfiguredDeployment) -> ConfiguredDeployment:
        """Make deployment available.

        Raises:
            SpecError: If another deployment uses the same process name
        """
        existing = self._deployments.get(deployment.process_name)
        if existing is not None and existing != deployment:
            raise SpecError(
                f"process name {deployment.process_name} is used by both "
                f"{existing.model} and {deployment.model}"
            )
        self._deployments[deployment.process_name] = deployment
        return deployment

    def find_deployment(self, process_name: str) -> ConfiguredDeployment | None:
        return self._deployments.get(process_name)

    def deployments(self) -> list[ConfiguredDeployment]:
        return [self._deployments[k] for k in sorted(self._deployments)]

    def each_slot(self) -> Iterator[DeploymentSlot]:
        for deployment in self.deployments():
            for activity, model in sorted(deployment.model.activities.items()):
                yield DeploymentSlot(deployment, activity, model)

    def find_slot(self, binding: DeployedComponent) -> DeploymentSlot | None:
        deployment = self._deployments.get(binding.process_name)
        if deployment is None:
            return None
        model = deployment.model.activities.get(binding.activity)
        if model is None:
            return None
        return DeploymentSlot(deployment, binding.activity, model)

    def candidates_for(self, node: ComponentNode) -> list[DeploymentSlot]:
        """Slots whose activity runs exactly the node's model."""
        return [slot for slot in self.each_slot() if slot.model is node.model]

    def __len__(self) -> int:
        return len(self._deployments)


class Deployer:
    """Binds the concrete nodes of a graph to deployment slots."""

    def __init__(self, group: DeploymentGroup) -> None:
        self.group = group

    def deploy(self, graph: ComponentGraph) -> dict[str, DeployedComponent]:
        """Bind every concrete leaf node of graph that is not bound yet.

        Returns:
            node id -> binding, for the nodes bound by this call

        Raises:
            AmbiguousDeployment: If more than one slot is left for a node
            MissingDeployments: If some nodes have no free slot
            SpecError: If a node is bound to a slot that does not exist, or
                has a deployment hint that is not a valid regular expression
        """
        taken: dict[DeployedComponent, str] = {}
        for node in graph.nodes():
            if node.deployed is None:
                continue
            if self.group.find_slot(node.deployed) is None:
                raise SpecError(f"{node} is deployed on unknown activity {node.deployed}")
            other = taken.get(node.deployed)
            if other is not None:
                raise SpecError(f"{node} and {other} are both deployed on {node.deployed}")
            taken[node.deployed] = node.node_id

        todo = [
            n for n in graph.nodes()
            if n.deployed is None and not n.abstract and not n.is_composition
        ]
        todo.sort(key=lambda n: (not n.deployment_hints, n.node_id))

        bound: dict[str, DeployedComponent] = {}
        missing: list[ComponentNode] = []
        for node in todo:
            candidates = [
                slot for slot in self.group.candidates_for(node)
                if slot.binding not in taken
            ]
            if len(candidates) > 1 and node.deployment_hints:
                candidates = _apply_hints(node, candidates)
            if not candidates:
                missing.append(node)
                continue
            if len(candidates) > 1:
                raise AmbiguousDeployment(node, candidates)
            binding = candidates[0].binding
            node.deployed = binding
            taken[binding] = node.node_id
            bound[node.node_id] = binding
            logger.debug("node deployed", node=node.node_id, activity=str(binding))

        if missing:
            raise MissingDeployments(missing)
        return bound


def _apply_hints(node: ComponentNode, candidates: list[DeploymentSlot]) -> list[DeploymentSlot]:
    patterns = []
    for hint in node.deployment_hints:
        try:
            patterns.append(re.compile(hint))
        except re.error as e:
            raise SpecError(f"{node}: invalid deployment hint {hint!r}: {e}") from e
    selected = [slot for slot in candidates if any(slot.matches(p) for p in patterns)]
    return selected or candidates
