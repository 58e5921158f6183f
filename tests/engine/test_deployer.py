# tests/engine/test_deployer.py
"""Tests for binding nodes to deployment slots."""

import pytest

from factories import SampleSystem, deployment


def _deployer(*deployments):
    from netsynth.engine.deployer import Deployer, DeploymentGroup

    return Deployer(DeploymentGroup(deployments))


class TestDeploymentGroup:
    """Available deployments and their slots."""

    def test_slots_are_sorted(self, system: SampleSystem) -> None:
        from netsynth.engine.deployer import DeploymentGroup

        group = DeploymentGroup(system.deployments)

        assert [str(slot) for slot in group.each_slot()] == [
            "camera_proc.camera",
            "other_camera_proc.camera",
            "processing.calibrator",
            "processing.processor",
        ]
        assert len(group) == 3

    def test_process_name_clash(self, system: SampleSystem) -> None:
        from netsynth.contracts import SpecError
        from netsynth.engine.deployer import DeploymentGroup

        group = DeploymentGroup(system.deployments)
        group.add(system.deployments[0])

        with pytest.raises(SpecError, match="process name camera_proc is used by both"):
            group.add(deployment("camera_proc", camera=system.other_camera))

    def test_candidates_match_exact_model(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.deployer import DeploymentGroup

        node = ComponentGraph().add_node(system.camera)

        (slot,) = DeploymentGroup(system.deployments).candidates_for(node)

        assert slot.deployment.process_name == "camera_proc"


class TestDeploy:
    """Deployer.deploy()."""

    def test_binds_leaf_nodes(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph, DeployedComponent

        graph = ComponentGraph()
        root = graph.add_node(system.pipeline)
        cam = graph.add_node(system.camera)
        proc = graph.add_node(system.processor)
        placeholder = graph.add_node(system.image)

        bound = _deployer(*system.deployments).deploy(graph)

        assert bound == {
            cam.node_id: DeployedComponent("camera_proc", "camera"),
            proc.node_id: DeployedComponent("processing", "processor"),
        }
        assert cam.deployed == DeployedComponent("camera_proc", "camera")
        assert root.deployed is None
        assert placeholder.deployed is None

    def test_already_bound_nodes_are_kept(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph, DeployedComponent

        graph = ComponentGraph()
        graph.add_node(system.camera, deployed=DeployedComponent("camera_proc", "camera"))

        assert _deployer(*system.deployments).deploy(graph) == {}

    def test_no_free_slot(self, system: SampleSystem) -> None:
        from netsynth.contracts import MissingDeployments
        from netsynth.core.graph import ComponentGraph

        graph = ComponentGraph()
        graph.add_node(system.camera, {"rate": 1})
        graph.add_node(system.camera, {"rate": 2})
        graph.add_node(system.calibrator)
        calibrators = graph.find_nodes(system.calibrator)

        with pytest.raises(MissingDeployments) as exc_info:
            _deployer(deployment("camera_proc", camera=system.camera)).deploy(graph)

        assert len(exc_info.value.nodes) == 2
        assert calibrators[0] in exc_info.value.nodes

    def test_ambiguous_slots(self, system: SampleSystem) -> None:
        from netsynth.contracts import AmbiguousDeployment
        from netsynth.core.graph import ComponentGraph

        graph = ComponentGraph()
        graph.add_node(system.camera)

        with pytest.raises(AmbiguousDeployment) as exc_info:
            _deployer(
                deployment("left", camera=system.camera),
                deployment("right", camera=system.camera),
            ).deploy(graph)

        assert [str(s) for s in exc_info.value.candidates] == ["left.camera", "right.camera"]

    def test_hint_selects_slot(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph, DeployedComponent

        graph = ComponentGraph()
        cam = graph.add_node(system.camera, deployment_hints=("^ri",))

        _deployer(
            deployment("left", camera=system.camera),
            deployment("right", camera=system.camera),
        ).deploy(graph)

        assert cam.deployed == DeployedComponent("right", "camera")

    def test_hinted_nodes_go_first(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph, DeployedComponent

        graph = ComponentGraph()
        plain = graph.add_node(system.camera, {"rate": 1}, node_id="a")
        hinted = graph.add_node(system.camera, {"rate": 2}, node_id="b", deployment_hints=("left",))

        _deployer(
            deployment("left", camera=system.camera),
            deployment("right", camera=system.camera),
        ).deploy(graph)

        assert hinted.deployed == DeployedComponent("left", "camera")
        assert plain.deployed == DeployedComponent("right", "camera")

    def test_hint_matching_nothing_is_ignored(self, system: SampleSystem) -> None:
        from netsynth.contracts import AmbiguousDeployment
        from netsynth.core.graph import ComponentGraph

        graph = ComponentGraph()
        graph.add_node(system.camera, deployment_hints=("front",))

        with pytest.raises(AmbiguousDeployment):
            _deployer(
                deployment("left", camera=system.camera),
                deployment("right", camera=system.camera),
            ).deploy(graph)

    def test_invalid_hint(self, system: SampleSystem) -> None:
        from netsynth.contracts import SpecError
        from netsynth.core.graph import ComponentGraph

        graph = ComponentGraph()
        graph.add_node(system.camera, deployment_hints=("(",))

        with pytest.raises(SpecError, match="invalid deployment hint"):
            _deployer(
                deployment("left", camera=system.camera),
                deployment("right", camera=system.camera),
            ).deploy(graph)

    def test_unknown_activity(self, system: SampleSystem) -> None:
        from netsynth.contracts import SpecError
        from netsynth.core.graph import ComponentGraph, DeployedComponent

        graph = ComponentGraph()
        graph.add_node(system.camera, deployed=DeployedComponent("camera_proc", "lens"))

        with pytest.raises(SpecError, match="unknown activity camera_proc.lens"):
            _deployer(*system.deployments).deploy(graph)

    def test_slot_used_twice(self, system: SampleSystem) -> None:
        from netsynth.contracts import SpecError
        from netsynth.core.graph import ComponentGraph, DeployedComponent

        binding = DeployedComponent("camera_proc", "camera")
        graph = ComponentGraph()
        graph.add_node(system.camera, {"rate": 1}, deployed=binding)
        graph.add_node(system.camera, {"rate": 2}, deployed=binding)

        with pytest.raises(SpecError, match="are both deployed on camera_proc.camera"):
            _deployer(*system.deployments).deploy(graph)
