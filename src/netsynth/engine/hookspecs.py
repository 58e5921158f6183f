# src/netsynth/engine/hookspecs.py
"""pluggy hook specifications for network postprocessing.

Postprocessing plugins run at fixed stages of a resolution. They receive a
NetworkContext and mutate its graph in place.

Usage (implementing a plugin):
    from netsynth.engine.hookspecs import hookimpl

    class MyPlugin:
        @hookimpl
        def netsynth_instanciated_network(self, context):
            ...

Stages, in order:
    instanciation           requirements instantiated, nothing merged yet
    instanciated_network    first merge pass done (devices and busses attach here)
    system_network          network generated and validated
    deployment              nodes bound to deployment slots
    final_network           policies computed, about to reconcile
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import pluggy

if TYPE_CHECKING:
    from netsynth.contracts import ConfiguredDeployment, Requirement
    from netsynth.core.graph import ComponentGraph, ComponentNode
    from netsynth.core.registry import ModelRegistry, RobotDefinition

# Project name for pluggy
PROJECT_NAME = "netsynth"

# Hook specification marker
hookspec = pluggy.HookspecMarker(PROJECT_NAME)

# Hook implementation marker (for plugins to use)
hookimpl = pluggy.HookimplMarker(PROJECT_NAME)


@dataclass
class NetworkContext:
    """What postprocessing plugins get to work on.

    Attributes:
        graph: The graph being built (a scratch graph during generation)
        registry: Model registry
        robot: Devices and busses of the system
        requirements: Requirements of this resolution
        root_nodes: Node created for each requirement, in requirement order
        deployments: Deployments available for this resolution
        state: Free-form storage shared by plugins during one resolution
    """

    graph: ComponentGraph
    registry: ModelRegistry
    robot: RobotDefinition
    requirements: Sequence[Requirement] = ()
    root_nodes: list[ComponentNode] = field(default_factory=list)
    deployments: Sequence[ConfiguredDeployment] = ()
    state: dict[str, Any] = field(default_factory=dict)


class NetsynthNetworkSpec:
    """Hook specifications for network generation stages."""

    @hookspec
    def netsynth_instanciation(self, context: NetworkContext) -> None:
        """Called once every requirement has been instantiated."""

    @hookspec
    def netsynth_instanciated_network(self, context: NetworkContext) -> None:
        """Called after the first merge pass.

        Device allocation and bus linking run at this stage; the generator
        runs another merge pass afterwards.
        """

    @hookspec
    def netsynth_system_network(self, context: NetworkContext) -> None:
        """Called on the generated, validated network."""


class NetsynthDeploymentSpec:
    """Hook specifications for deployment stages."""

    @hookspec
    def netsynth_deployment(self, context: NetworkContext) -> None:
        """Called once every concrete node is bound to a deployment slot."""

    @hookspec
    def netsynth_final_network(self, context: NetworkContext) -> None:
        """Called on the deployed network before it is reconciled."""


class PostprocessingManager:
    """Per-engine plugin manager for postprocessing hooks.

    Usage:
        manager = PostprocessingManager()
        manager.register_builtin_plugins()
        manager.register(MyPlugin())
    """

    def __init__(self) -> None:
        self._pm = pluggy.PluginManager(PROJECT_NAME)
        self._pm.add_hookspecs(NetsynthNetworkSpec)
        self._pm.add_hookspecs(NetsynthDeploymentSpec)

    def register_builtin_plugins(self) -> None:
        """Register device allocation and bus linking."""
        from netsynth.engine.devices import BUILTIN_POSTPROCESSING

        for plugin_class in BUILTIN_POSTPROCESSING:
            self.register(plugin_class())

    def register(self, plugin: Any) -> None:
        self._pm.register(plugin)

    def unregister(self, plugin: Any) -> None:
        self._pm.unregister(plugin)

    def is_registered(self, plugin: Any) -> bool:
        return self._pm.is_registered(plugin)

    def plugins(self) -> list[Any]:
        return list(self._pm.get_plugins())

    def run_instanciation(self, context: NetworkContext) -> None:
        self._pm.hook.netsynth_instanciation(context=context)

    def run_instanciated_network(self, context: NetworkContext) -> None:
        self._pm.hook.netsynth_instanciated_network(context=context)

    def run_system_network(self, context: NetworkContext) -> None:
        self._pm.hook.netsynth_system_network(context=context)

    def run_deployment(self, context: NetworkContext) -> None:
        self._pm.hook.netsynth_deployment(context=context)

    def run_final_network(self, context: NetworkContext) -> None:
        self._pm.hook.netsynth_final_network(context=context)
