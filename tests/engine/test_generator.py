# tests/engine/test_generator.py
"""Tests for system network generation."""

import pytest

from factories import SampleSystem, composition


def _generator(system: SampleSystem, resolver=None, **kwargs):
    from netsynth.engine.generator import SystemNetworkGenerator
    from netsynth.engine.hookspecs import PostprocessingManager
    from netsynth.engine.specialization import SpecializationResolver

    plugins = PostprocessingManager()
    plugins.register_builtin_plugins()
    return SystemNetworkGenerator(
        system.registry,
        system.robot,
        resolver or SpecializationResolver(system.registry),
        plugins,
        **kwargs,
    )


class TestInstanciation:
    """Requirements turned into nodes and connections."""

    def test_pipeline_with_selected_camera(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement

        network = _generator(system).generate(
            [Requirement("Pipeline", selections={"camera": "Camera"})]
        )
        graph = network.graph

        assert graph.node_count == 3
        (root,) = network.root_nodes
        assert root.model is system.pipeline
        (cam,) = graph.find_nodes(system.camera)
        (proc,) = graph.find_nodes(system.processor)
        assert graph.children_by_role(root) == {"camera": cam, "processor": proc}

        (conn,) = graph.concrete_input_connections(proc)
        assert (conn.source, conn.source_port, conn.sink_port) == (cam.node_id, "image", "in")
        exported = graph.output_connections(proc)
        assert [(e.sink, e.sink_port) for e in exported] == [(root.node_id, "result")]

    def test_selection_by_model_name(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement

        network = _generator(system).generate(
            [Requirement("Pipeline", selections={"Image": "OtherCamera"})]
        )

        (cam,) = network.graph.find_nodes(system.other_camera)
        (proc,) = network.graph.find_nodes(system.processor)
        (conn,) = network.graph.concrete_input_connections(proc)
        assert (conn.source, conn.source_port) == (cam.node_id, "img")

    def test_selection_must_fill_role(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement, SpecError

        with pytest.raises(SpecError, match="which requires Image"):
            _generator(system).generate(
                [Requirement("Pipeline", selections={"camera": "Processor"})]
            )

    def test_conflicting_model_selections(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement, ServiceModel, SpecError

        stamped = system.registry.register(ServiceModel("Stamped"))
        system.registry.register(composition("Dual", {"source": {system.image, stamped}}))

        with pytest.raises(SpecError, match="conflicting selections"):
            _generator(system).generate(
                [Requirement("Dual", selections={"Image": "Camera", "Stamped": "OtherCamera"})]
            )

    def test_arguments_reach_node(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement

        network = _generator(system).generate(
            [
                Requirement(
                    "Pipeline",
                    selections={"camera": Requirement("Camera", arguments={"rate": 5})},
                )
            ]
        )

        (cam,) = network.graph.find_nodes(system.camera)
        assert cam.arguments == {"rate": 5}

    def test_nested_deployment_hints_pick_the_slot(self, system: SampleSystem) -> None:
        from factories import deployment
        from netsynth.contracts import Requirement
        from netsynth.core.graph import DeployedComponent
        from netsynth.engine.deployer import Deployer, DeploymentGroup

        network = _generator(system).generate(
            [
                Requirement(
                    "Pipeline",
                    selections={"camera": Requirement("Camera", deployment_hints=("^right",))},
                    deployment_hints=("proc",),
                )
            ]
        )
        graph = network.graph
        (cam,) = graph.find_nodes(system.camera)
        (proc,) = graph.find_nodes(system.processor)
        assert cam.deployment_hints == ("proc", "^right")
        assert proc.deployment_hints == ("proc",)

        Deployer(
            DeploymentGroup(
                [
                    deployment("left", camera=system.camera),
                    deployment("right", camera=system.camera),
                    deployment("processing", processor=system.processor),
                ]
            )
        ).deploy(graph)

        assert cam.deployed == DeployedComponent("right", "camera")

    def test_selection_by_device_name(self, system: SampleSystem) -> None:
        from netsynth.contracts import (
            BoundService,
            ComponentModel,
            DeviceInstance,
            Requirement,
            ServiceModel,
        )
        from factories import output

        cam_dev = system.registry.register(ServiceModel("CameraDev", device=True))
        usb = system.registry.register(
            ComponentModel(
                "UsbCamera",
                ports=(output("image", "/Image"),),
                services=(
                    BoundService("dev", cam_dev),
                    BoundService("image", system.image, {"frame": "image"}),
                ),
            )
        )
        system.robot.add_device(DeviceInstance("cam0", usb, "dev"))

        network = _generator(system).generate(
            [Requirement("Pipeline", selections={"camera": "cam0"})]
        )

        (node,) = network.graph.find_nodes(usb)
        assert node.arguments == {"dev_dev": "cam0"}

    def test_autoconnect(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement

        system.registry.register(
            composition(
                "Wired",
                {"camera": system.camera, "processor": system.processor},
                autoconnect=True,
            )
        )

        network = _generator(system).generate([Requirement("Wired")])

        (cam,) = network.graph.find_nodes(system.camera)
        (proc,) = network.graph.find_nodes(system.processor)
        (conn,) = network.graph.concrete_input_connections(proc)
        assert (conn.source, conn.source_port, conn.sink_port) == (cam.node_id, "image", "in")


class TestMerging:
    """Deduplication during generation."""

    def test_identical_requirements_share_a_node(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement

        network = _generator(system).generate([Requirement("Camera"), Requirement("Camera")])

        assert network.graph.node_count == 1
        assert network.root_nodes[0] is network.root_nodes[1]

    def test_placeholder_filled_by_other_requirement(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement

        network = _generator(system).generate([Requirement("Pipeline"), Requirement("Camera")])

        assert network.graph.node_count == 3
        pipeline, cam = network.root_nodes
        assert network.graph.child_for_role(pipeline, "camera") is cam
        assert len(network.merge_group) == 1


class TestCleanupAndValidation:
    """Optional children and network validation."""

    def test_unselected_placeholder_fails(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement, TaskAllocationFailed

        with pytest.raises(TaskAllocationFailed) as exc_info:
            _generator(system).generate([Requirement("Pipeline")])

        (node,) = exc_info.value.nodes
        assert node.model is system.image
        assert sorted(exc_info.value.candidates[node.node_id]) == ["Camera", "OtherCamera"]

    def test_unresolved_optional_child_is_removed(self, system: SampleSystem) -> None:
        from netsynth.contracts import CompositionChild, CompositionModel, Requirement

        system.registry.register(
            CompositionModel(
                "MaybeCamera",
                children={
                    "camera": CompositionChild("camera", frozenset({system.image}), optional=True),
                    "processor": CompositionChild("processor", frozenset({system.processor})),
                },
            )
        )

        network = _generator(system).generate([Requirement("MaybeCamera")])

        assert network.graph.node_count == 2
        assert len(network.removed_optional) == 1
        assert not network.graph.find_nodes(system.image)

    def test_selected_optional_child_is_kept(self, system: SampleSystem) -> None:
        from netsynth.contracts import CompositionChild, CompositionModel, Requirement

        system.registry.register(
            CompositionModel(
                "MaybeCamera",
                children={
                    "camera": CompositionChild("camera", frozenset({system.image}), optional=True),
                },
            )
        )

        network = _generator(system).generate(
            [Requirement("MaybeCamera", selections={"camera": "Camera"})]
        )

        assert network.graph.node_count == 2
        assert network.removed_optional == []

    def test_input_without_multiplexing(self, system: SampleSystem) -> None:
        from netsynth.contracts import SpecError
        from netsynth.core.graph import ComponentGraph

        graph = ComponentGraph()
        cam1 = graph.add_node(system.camera, {"rate": 1})
        cam2 = graph.add_node(system.camera, {"rate": 2})
        proc = graph.add_node(system.processor)
        graph.add_connection(cam1, "image", proc, "in")
        graph.add_connection(cam2, "image", proc, "in")

        with pytest.raises(SpecError, match="do not multiplex"):
            _generator(system).validate(graph)

    def test_validation_can_be_disabled(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement

        network = _generator(system, validate=False).generate([Requirement("Pipeline")])

        assert network.graph.find_nodes(system.image)


class TestSpecializationDuringGeneration:
    """Compositions are replaced by their most specific variant."""

    def test_variant_is_used(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement
        from netsynth.engine.specialization import SpecializationResolver

        resolver = SpecializationResolver(system.registry)
        resolver.specialize(system.pipeline, "camera", [system.camera])

        network = _generator(system, resolver).generate(
            [Requirement("Pipeline", selections={"camera": "Camera"})]
        )

        (root,) = network.root_nodes
        assert root.model is not system.pipeline
        assert root.model.root is system.pipeline
        assert root.fullfills(system.pipeline)
        assert root.fullfilled_model.model is system.pipeline

    def test_no_variant_without_matching_selection(self, system: SampleSystem) -> None:
        from netsynth.contracts import Requirement
        from netsynth.engine.specialization import SpecializationResolver

        resolver = SpecializationResolver(system.registry)
        resolver.specialize(system.pipeline, "camera", [system.camera])

        network = _generator(system, resolver).generate(
            [Requirement("Pipeline", selections={"camera": "OtherCamera"})]
        )

        assert network.root_nodes[0].model is system.pipeline
