"""Model registry and robot definition.

The registry resolves model names to immutable descriptors. It is owned by
the caller and shared read-only by the pipeline; the only thing that grows
after models are registered is the list of declared specializations.
"""

from __future__ import annotations

from collections.abc import Iterator

from netsynth.contracts import (
    ComBusInstance,
    ComponentModel,
    CompositionModel,
    DeploymentModel,
    DeviceInstance,
    Model,
    ServiceModel,
    Specialization,
    SpecError,
)


class ModelRegistry:
    """Name -> descriptor registry for models and deployments."""

    def __init__(self) -> None:
        self._models: dict[str, Model] = {}
        self._deployments: dict[str, DeploymentModel] = {}
        self._specializations: dict[str, list[Specialization]] = {}

    def register(self, model: Model) -> Model:
        """Register a model under its name.

        Raises:
            SpecError: If another model is already registered under that name
        """
        existing = self._models.get(model.name)
        if existing is not None and existing is not model:
            raise SpecError(f"a model named {model.name} is already registered")
        self._models[model.name] = model
        return model

    def resolve(self, name: str) -> Model:
        """Return the model registered under name.

        Raises:
            SpecError: If no such model exists
        """
        try:
            return self._models[name]
        except KeyError:
            raise SpecError(f"unknown model {name!r}") from None

    def has_model(self, name: str) -> bool:
        return name in self._models

    def each_model(self) -> Iterator[Model]:
        yield from self._models.values()

    def each_service(self) -> Iterator[ServiceModel]:
        for model in self._models.values():
            if isinstance(model, ServiceModel):
                yield model

    def each_component(self) -> Iterator[ComponentModel]:
        for model in self._models.values():
            if isinstance(model, ComponentModel):
                yield model

    def each_composition(self) -> Iterator[CompositionModel]:
        for model in self._models.values():
            if isinstance(model, CompositionModel):
                yield model

    def register_deployment(self, deployment: DeploymentModel) -> DeploymentModel:
        if deployment.name in self._deployments:
            raise SpecError(
                f"a deployment named {deployment.name} is already registered"
            )
        self._deployments[deployment.name] = deployment
        return deployment

    def resolve_deployment(self, name: str) -> DeploymentModel:
        try:
            return self._deployments[name]
        except KeyError:
            raise SpecError(f"unknown deployment {name!r}") from None

    def add_specialization(self, specialization: Specialization) -> None:
        self._specializations.setdefault(
            specialization.composition.name, []
        ).append(specialization)

    def specializations_of(self, composition: CompositionModel) -> tuple[Specialization, ...]:
        """Specializations declared on the root of composition."""
        root = composition.root_model
        return tuple(self._specializations.get(root.name, ()))


class RobotDefinition:
    """Devices and communication busses available on the system."""

    def __init__(self) -> None:
        self.devices: dict[str, DeviceInstance] = {}
        self.com_busses: dict[str, ComBusInstance] = {}

    def add_com_bus(self, bus: ComBusInstance) -> ComBusInstance:
        if bus.name in self.com_busses or bus.name in self.devices:
            raise SpecError(f"a device or bus named {bus.name} already exists")
        self.com_busses[bus.name] = bus
        return bus

    def add_device(self, device: DeviceInstance) -> DeviceInstance:
        """Declare a device.

        Raises:
            SpecError: If the name is taken, the driver has no device service
                with the given name, or a bus is unknown
        """
        if device.name in self.devices or device.name in self.com_busses:
            raise SpecError(f"a device or bus named {device.name} already exists")
        srv = device.driver.find_service(device.service)
        if srv is None or not srv.model.device:
            raise SpecError(
                f"{device.driver.name} has no device service named {device.service}"
            )
        unknown = [b for b in device.com_busses if b not in self.com_busses]
        if unknown:
            raise SpecError(
                f"device {device.name} is attached to unknown busses: "
                f"{', '.join(sorted(unknown))}"
            )
        self.devices[device.name] = device
        return device

    def find_device(self, name: str) -> DeviceInstance | None:
        return self.devices.get(name)

    def find_com_bus(self, name: str) -> ComBusInstance | None:
        return self.com_busses.get(name)
