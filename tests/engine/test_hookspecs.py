# tests/engine/test_hookspecs.py
"""Tests for postprocessing hook stages."""

from typing import Any

from factories import SampleSystem
from netsynth.contracts import Requirement
from netsynth.engine.hookspecs import NetworkContext, PostprocessingManager, hookimpl


class RecordingPlugin:
    """Records each stage with a snapshot of the context."""

    def __init__(self) -> None:
        self.stages: list[tuple[str, dict[str, Any]]] = []

    def _record(self, stage: str, context: NetworkContext) -> None:
        self.stages.append(
            (
                stage,
                {
                    "nodes": context.graph.node_count,
                    "roots": [n.model.name for n in context.root_nodes],
                    "deployed": sorted(
                        str(n.deployed) for n in context.graph.nodes() if n.deployed is not None
                    ),
                    "deployments": len(context.deployments),
                },
            )
        )
        context.state.setdefault("stages", []).append(stage)

    @hookimpl
    def netsynth_instanciation(self, context: NetworkContext) -> None:
        self._record("instanciation", context)

    @hookimpl
    def netsynth_instanciated_network(self, context: NetworkContext) -> None:
        self._record("instanciated_network", context)

    @hookimpl
    def netsynth_system_network(self, context: NetworkContext) -> None:
        self._record("system_network", context)

    @hookimpl
    def netsynth_deployment(self, context: NetworkContext) -> None:
        self._record("deployment", context)

    @hookimpl
    def netsynth_final_network(self, context: NetworkContext) -> None:
        self._record("final_network", context)


def _engine(system: SampleSystem, plugins: PostprocessingManager | None = None):
    from netsynth.engine.engine import Engine

    return Engine(
        system.registry, system.robot, deployments=system.deployments, plugins=plugins
    )


def _pipeline() -> Requirement:
    return Requirement("Pipeline", selections={"camera": "Camera"})


class TestStages:
    """Stages run in order through a resolution."""

    def test_all_stages_run_in_order(self, system: SampleSystem) -> None:
        engine = _engine(system)
        plugin = RecordingPlugin()
        engine.plugins.register(plugin)

        engine.resolve([_pipeline()])

        assert [stage for stage, _ in plugin.stages] == [
            "instanciation",
            "instanciated_network",
            "system_network",
            "deployment",
            "final_network",
        ]

    def test_context_contents(self, system: SampleSystem) -> None:
        engine = _engine(system)
        plugin = RecordingPlugin()
        engine.plugins.register(plugin)

        engine.resolve([_pipeline()])

        snapshots = dict(plugin.stages)
        assert snapshots["system_network"]["nodes"] == 3
        assert snapshots["system_network"]["roots"] == ["Pipeline"]
        assert snapshots["system_network"]["deployed"] == []
        assert snapshots["deployment"]["deployed"] == [
            "camera_proc.camera",
            "processing.processor",
        ]
        assert snapshots["deployment"]["deployments"] == 3

    def test_state_is_shared_within_a_resolution(self, system: SampleSystem) -> None:
        seen: list[list[str]] = []

        class Reader:
            @hookimpl
            def netsynth_final_network(self, context: NetworkContext) -> None:
                seen.append(list(context.state["stages"]))

        engine = _engine(system)
        engine.plugins.register(RecordingPlugin())
        engine.plugins.register(Reader())

        engine.resolve([_pipeline()])
        engine.resolve([_pipeline()])

        # state starts empty on every resolution
        assert len(seen) == 2
        assert seen[0] == seen[1]
        assert seen[0][:4] == [
            "instanciation",
            "instanciated_network",
            "system_network",
            "deployment",
        ]

    def test_deployment_stages_skipped_without_deployments(self, system: SampleSystem) -> None:
        from netsynth.core.config import EngineSettings, NetsynthSettings
        from netsynth.engine.engine import Engine

        engine = Engine(
            system.registry,
            system.robot,
            settings=NetsynthSettings(engine=EngineSettings(compute_deployments=False)),
            deployments=system.deployments,
        )
        plugin = RecordingPlugin()
        engine.plugins.register(plugin)

        engine.resolve([_pipeline()])

        assert [stage for stage, _ in plugin.stages] == [
            "instanciation",
            "instanciated_network",
            "system_network",
        ]

    def test_plugin_can_change_the_network(self, system: SampleSystem) -> None:
        class AddCalibrator:
            @hookimpl
            def netsynth_system_network(self, context: NetworkContext) -> None:
                node = context.graph.add_node(system.calibrator)
                context.graph.mark_root(node)

        engine = _engine(system)
        engine.plugins.register(AddCalibrator())

        engine.resolve([_pipeline()])

        (calib,) = engine.plan.find_nodes(system.calibrator)
        assert str(calib.deployed) == "processing.calibrator"


class TestManager:
    """PostprocessingManager registration."""

    def test_builtin_plugins_registered_by_default(self, system: SampleSystem) -> None:
        from netsynth.engine.devices import BUILTIN_POSTPROCESSING

        engine = _engine(system)

        assert {type(p) for p in engine.plugins.plugins()} == set(BUILTIN_POSTPROCESSING)

    def test_builtin_plugins_are_not_shared_between_engines(self, system: SampleSystem) -> None:
        first = _engine(system).plugins.plugins()
        second = _engine(system).plugins.plugins()

        assert not {id(p) for p in first} & {id(p) for p in second}

    def test_explicit_manager_is_used_as_is(self, system: SampleSystem) -> None:
        manager = PostprocessingManager()
        engine = _engine(system, manager)

        assert engine.plugins is manager
        assert manager.plugins() == []

    def test_unregister(self, system: SampleSystem) -> None:
        engine = _engine(system)
        plugin = RecordingPlugin()
        engine.plugins.register(plugin)
        engine.plugins.unregister(plugin)

        engine.resolve([_pipeline()])

        assert not engine.plugins.is_registered(plugin)
        assert plugin.stages == []
