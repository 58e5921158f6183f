"""Immutable model descriptors.

Descriptors are created once, registered in a ModelRegistry, and never
mutated afterwards. They compare by identity: two descriptors are the same
model only if they are the same object.

Model kinds:
- ServiceModel: an interface (set of ports), always abstract
- ComponentModel: a leaf component type (one task activity at runtime)
- CompositionModel: a component made of named child roles
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Union

from netsynth.contracts.enums import BufferKind, PortDirection
from netsynth.contracts.errors import SpecError
from netsynth.contracts.policy import ConnectionPolicy


@dataclass(frozen=True)
class PortModel:
    """A port declared by a service or component model.

    Trigger model (output ports):
        triggered_on_update: the port is written each time the task runs
        triggered_by: names of input ports whose updates cause a write

    Input ports:
        trigger: an update on this port triggers the task (event port)
        static: connections may only change while the component is stopped
        multiplexes: accepts connections from several distinct sources
    """

    name: str
    direction: PortDirection
    type_name: str
    static: bool = False
    multiplexes: bool = False
    trigger: bool = False
    triggered_on_update: bool = True
    triggered_by: tuple[str, ...] = ()
    sample_size: int = 1
    burst_size: int = 0
    burst_period: float = 0.0
    required_connection_type: BufferKind | None = None
    needs_reliable_connection: bool = False

    @property
    def is_input(self) -> bool:
        return self.direction == PortDirection.INPUT

    @property
    def is_output(self) -> bool:
        return self.direction == PortDirection.OUTPUT

    def renamed(self, name: str) -> PortModel:
        """Same port definition under another name."""
        return PortModel(
            name=name,
            direction=self.direction,
            type_name=self.type_name,
            static=self.static,
            multiplexes=self.multiplexes,
            trigger=self.trigger,
            triggered_on_update=self.triggered_on_update,
            triggered_by=self.triggered_by,
            sample_size=self.sample_size,
            burst_size=self.burst_size,
            burst_period=self.burst_period,
            required_connection_type=self.required_connection_type,
            needs_reliable_connection=self.needs_reliable_connection,
        )


def _port_index(ports: tuple[PortModel, ...]) -> Mapping[str, PortModel]:
    return MappingProxyType({p.name: p for p in ports})


@dataclass(frozen=True, eq=False)
class ServiceModel:
    """A data service: a named interface that components can provide.

    Services are always abstract. A node whose model is a service is a
    placeholder that must be merged with a concrete component before the
    network is valid.
    """

    name: str
    ports: tuple[PortModel, ...] = ()
    parents: tuple[ServiceModel, ...] = ()
    device: bool = False

    is_composition = False

    @property
    def abstract(self) -> bool:
        return True

    def ancestors(self) -> set[Model]:
        result: set[Model] = {self}
        for parent in self.parents:
            result |= parent.ancestors()
        return result

    def fullfills(self, other: Model) -> bool:
        return other in self.ancestors()

    def each_port(self) -> Iterator[PortModel]:
        seen = set()
        for port in self.ports:
            seen.add(port.name)
            yield port
        for parent in self.parents:
            for port in parent.each_port():
                if port.name not in seen:
                    seen.add(port.name)
                    yield port

    def find_port(self, name: str) -> PortModel | None:
        return next((p for p in self.each_port() if p.name == name), None)

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<ServiceModel {self.name}>"


@dataclass(frozen=True)
class BoundService:
    """A service provided by a component under a given name.

    port_mappings maps service port names to component port names; ports
    that are not listed keep their name.
    """

    name: str
    model: ServiceModel
    port_mappings: Mapping[str, str] = field(default_factory=dict)

    def map_port(self, service_port: str) -> str:
        return self.port_mappings.get(service_port, service_port)


@dataclass(frozen=True, eq=False)
class ComponentModel:
    """A leaf component type.

    Attributes:
        period: Activity period in seconds for periodic components, None for
            components triggered by their inputs
        trigger_latency: Delay between a trigger and the task reading its
            inputs, used when sizing buffers
        abstract: Abstract component models cannot be deployed
        dynamic_port_type: Message type of ports this component can create
            on demand (communication bus drivers)
    """

    name: str
    ports: tuple[PortModel, ...] = ()
    services: tuple[BoundService, ...] = ()
    supermodel: ComponentModel | None = None
    period: float | None = None
    trigger_latency: float = 0.0
    abstract: bool = False
    dynamic_port_type: str | None = None

    is_composition = False

    def ancestors(self) -> set[Model]:
        result: set[Model] = {self}
        if self.supermodel is not None:
            result |= self.supermodel.ancestors()
        for srv in self.services:
            result |= srv.model.ancestors()
        return result

    def fullfills(self, other: Model) -> bool:
        return other in self.ancestors()

    def each_port(self) -> Iterator[PortModel]:
        seen = set()
        for port in self.ports:
            seen.add(port.name)
            yield port
        if self.supermodel is not None:
            for port in self.supermodel.each_port():
                if port.name not in seen:
                    seen.add(port.name)
                    yield port

    def find_port(self, name: str) -> PortModel | None:
        return next((p for p in self.each_port() if p.name == name), None)

    def find_input_port(self, name: str) -> PortModel | None:
        port = self.find_port(name)
        return port if port is not None and port.is_input else None

    def find_output_port(self, name: str) -> PortModel | None:
        port = self.find_port(name)
        return port if port is not None and port.is_output else None

    def each_service(self) -> Iterator[BoundService]:
        yield from self.services
        if self.supermodel is not None:
            names = {s.name for s in self.services}
            for srv in self.supermodel.each_service():
                if srv.name not in names:
                    yield srv

    def find_service(self, name: str) -> BoundService | None:
        return next((s for s in self.each_service() if s.name == name), None)

    def find_services_fullfilling(self, service: ServiceModel) -> list[BoundService]:
        return [s for s in self.each_service() if s.model.fullfills(service)]

    def each_device_service(self) -> Iterator[BoundService]:
        """Services through which this component drives a device."""
        for srv in self.each_service():
            if srv.model.device:
                yield srv

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<ComponentModel {self.name}>"


@dataclass(frozen=True)
class CompositionChild:
    """A child role of a composition.

    models: the set of models the selected child must fulfill
    """

    role: str
    models: frozenset[Model]
    optional: bool = False
    arguments: Mapping[str, Any] = field(default_factory=dict)

    def model_names(self) -> list[str]:
        return sorted(m.name for m in self.models)


@dataclass(frozen=True)
class CompositionConnection:
    """Explicit connection between two children of a composition.

    Port names are those of the role's required models; they are mapped to
    the selected component's actual ports at instantiation.
    """

    source_role: str
    source_port: str
    sink_role: str
    sink_port: str
    policy: ConnectionPolicy = field(default_factory=ConnectionPolicy)


@dataclass(frozen=True)
class CompositionExport:
    """A child port exported as a port of the composition."""

    name: str
    role: str
    port: str


@dataclass(frozen=True, eq=False)
class CompositionModel:
    """A composition of child roles.

    Variants created by specialization share the root's connections and
    exports and only narrow the models of some child roles; they point back
    to the root through `root` and list the specializations that produced
    them in `applied`.
    """

    name: str
    children: Mapping[str, CompositionChild] = field(default_factory=dict)
    connections: tuple[CompositionConnection, ...] = ()
    exports: tuple[CompositionExport, ...] = ()
    services: tuple[BoundService, ...] = ()
    autoconnect: bool = False
    supermodel: CompositionModel | None = None
    root: CompositionModel | None = None
    applied: tuple[Any, ...] = ()

    is_composition = True

    @property
    def abstract(self) -> bool:
        return False

    @property
    def root_model(self) -> CompositionModel:
        return self.root if self.root is not None else self

    @property
    def is_specialized(self) -> bool:
        return self.root is not None

    def ancestors(self) -> set[Model]:
        result: set[Model] = {self}
        if self.root is not None:
            result |= self.root.ancestors()
        if self.supermodel is not None:
            result |= self.supermodel.ancestors()
        for srv in self.services:
            result |= srv.model.ancestors()
        return result

    def fullfills(self, other: Model) -> bool:
        return other in self.ancestors()

    def find_child(self, role: str) -> CompositionChild | None:
        return self.children.get(role)

    def find_export(self, name: str) -> CompositionExport | None:
        return next((e for e in self.exports if e.name == name), None)

    def find_port(self, name: str) -> PortModel | None:
        """Exported port, described by the child port it exports."""
        export = self.find_export(name)
        if export is None:
            return None
        child = self.children.get(export.role)
        if child is None:
            return None
        for model in sorted(child.models, key=lambda m: m.name):
            finder = getattr(model, "find_port", None)
            port = finder(export.port) if finder is not None else None
            if port is not None:
                return port.renamed(name)
        return None

    def each_port(self) -> Iterator[PortModel]:
        for export in self.exports:
            port = self.find_port(export.name)
            if port is not None:
                yield port

    def find_service(self, name: str) -> BoundService | None:
        return next((s for s in self.services if s.name == name), None)

    def find_services_fullfilling(self, service: ServiceModel) -> list[BoundService]:
        return [s for s in self.services if s.model.fullfills(service)]

    def each_device_service(self) -> Iterator[BoundService]:
        return iter(())

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<CompositionModel {self.name}>"


Model = Union[ServiceModel, ComponentModel, CompositionModel]


@dataclass(frozen=True, eq=False)
class DeploymentModel:
    """An OS-process definition hosting a fixed set of named activities."""

    name: str
    activities: Mapping[str, ComponentModel] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class ConfiguredDeployment:
    """A deployment model made available on a given host.

    The process name is the identity of the process: two processes with the
    same name are the same deployment.
    """

    process_name: str
    model: DeploymentModel
    host: str = "localhost"

    def __str__(self) -> str:
        return f"{self.process_name}[{self.model.name}@{self.host}]"


@dataclass(frozen=True)
class DeviceInstance:
    """A physical device declared on the robot.

    Attributes:
        driver: Component model that drives the device
        service: Name of the driver's device service bound to this device
        period: Period at which the device produces samples, if periodic
        burst: Number of samples the device can produce at once
        com_busses: Names of the communication busses the device is on
    """

    name: str
    driver: ComponentModel
    service: str
    period: float | None = None
    burst: int = 0
    sample_size: int = 1
    com_busses: tuple[str, ...] = ()

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class ComBusInstance:
    """A communication bus declared on the robot."""

    name: str
    driver: ComponentModel
    message_type: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True, eq=False)
class Specialization:
    """A declared specialization of a composition on one child role.

    Attributes:
        composition: The root composition being specialized
        role: Child role the specialization constrains
        models: Models the role's selection must fulfill for the variant to
            apply; they must strictly refine the role's own models
        exclusions: The specialization does not apply to selections that
            fulfill any of these models
        default: Preferred when several specializations tie on this role
    """

    composition: CompositionModel
    role: str
    models: frozenset[Model]
    exclusions: frozenset[Model] = frozenset()
    default: bool = False

    @property
    def name(self) -> str:
        models = ",".join(sorted(m.name for m in self.models))
        return f"{self.composition.name}/{self.role}.is_a?({models})"

    def __str__(self) -> str:
        return self.name


def port_mapping(
    provider: Model,
    required: Model,
    extra_services: Iterable[BoundService] = (),
) -> dict[str, str]:
    """Map the port names of required onto the ports of provider.

    Ports keep their names when provider is, or derives from, required
    without going through a service. When required is a service provided
    by provider, the bound service's port mappings are used.

    Raises:
        SpecError: If provider does not provide required, or provides it
            through more than one service
    """
    if provider is required:
        return {}
    if not isinstance(required, ServiceModel):
        if provider.fullfills(required):
            return {}
        raise SpecError(f"{provider.name} does not fullfill {required.name}")
    if isinstance(provider, ServiceModel):
        if provider.fullfills(required):
            return {}
        raise SpecError(f"{provider.name} does not fullfill {required.name}")

    candidates = provider.find_services_fullfilling(required)
    candidates += [s for s in extra_services if s.model.fullfills(required)]
    if not candidates:
        raise SpecError(f"{provider.name} does not provide {required.name}")
    if len(candidates) > 1:
        names = ", ".join(sorted(s.name for s in candidates))
        raise SpecError(
            f"{provider.name} provides {required.name} through more than one "
            f"service ({names}), select one explicitly"
        )
    return dict(candidates[0].port_mappings)
