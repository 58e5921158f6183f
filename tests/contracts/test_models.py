# tests/contracts/test_models.py
"""Tests for model descriptors and port mapping."""

import pytest

from factories import SampleSystem, input_port, output


class TestModelRelations:
    """fullfills() and ancestors."""

    def test_component_fullfills_its_services(self, system: SampleSystem) -> None:
        assert system.camera.fullfills(system.image)
        assert system.camera.fullfills(system.camera)
        assert not system.processor.fullfills(system.image)

    def test_service_inherits_parent(self) -> None:
        from netsynth.contracts import ServiceModel

        base = ServiceModel("Base", ports=(output("out", "/T"),))
        derived = ServiceModel("Derived", ports=(output("extra", "/U"),), parents=(base,))

        assert derived.fullfills(base)
        assert not base.fullfills(derived)
        assert [p.name for p in derived.each_port()] == ["extra", "out"]

    def test_submodel_inherits_ports(self) -> None:
        from netsynth.contracts import ComponentModel

        base = ComponentModel("Base", ports=(output("out", "/T"),), period=1.0)
        derived = ComponentModel("Derived", ports=(input_port("in", "/T"),), supermodel=base)

        assert derived.fullfills(base)
        assert derived.find_output_port("out") is not None
        assert derived.find_input_port("out") is None

    def test_models_compare_by_identity(self) -> None:
        from netsynth.contracts import ComponentModel

        assert ComponentModel("Same") != ComponentModel("Same")

    def test_composition_export_renames_port(self, system: SampleSystem) -> None:
        port = system.pipeline.find_port("result")

        assert port is not None
        assert port.name == "result"
        assert port.type_name == "/Result"
        assert port.is_output


class TestPortMapping:
    """port_mapping() between a provider and a required model."""

    def test_same_model_maps_nothing(self, system: SampleSystem) -> None:
        from netsynth.contracts import port_mapping

        assert port_mapping(system.camera, system.camera) == {}

    def test_service_uses_bound_mapping(self, system: SampleSystem) -> None:
        from netsynth.contracts import port_mapping

        assert port_mapping(system.camera, system.image) == {"frame": "image"}
        assert port_mapping(system.other_camera, system.image) == {"frame": "img"}

    def test_not_provided_raises(self, system: SampleSystem) -> None:
        from netsynth.contracts import SpecError, port_mapping

        with pytest.raises(SpecError, match="does not provide Image"):
            port_mapping(system.processor, system.image)

    def test_ambiguous_service_raises(self, system: SampleSystem) -> None:
        from netsynth.contracts import BoundService, ComponentModel, SpecError, port_mapping

        stereo = ComponentModel(
            "Stereo",
            ports=(output("left", "/Image"), output("right", "/Image")),
            services=(
                BoundService("left", system.image, {"frame": "left"}),
                BoundService("right", system.image, {"frame": "right"}),
            ),
        )

        with pytest.raises(SpecError, match="more than one service"):
            port_mapping(stereo, system.image)


class TestRequirement:
    """Requirement builder methods."""

    def test_chaining(self) -> None:
        from netsynth.contracts import Requirement

        req = (
            Requirement("Pipeline")
            .use(camera="Camera")
            .with_arguments(rate=10)
            .prefer_deployed_tasks("cam.*")
        )

        assert req.selections == {"camera": "Camera"}
        assert req.arguments == {"rate": 10}
        assert req.deployment_hints == ("cam.*",)
        assert str(req) == "Pipeline"

    def test_named_requirement(self) -> None:
        from netsynth.contracts import Requirement

        assert str(Requirement("Pipeline", name="front")) == "front"
