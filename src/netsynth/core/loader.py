# src/netsynth/core/loader.py
"""YAML system descriptions.

A system description declares models, deployments, the robot and the
requirements to resolve, in one file:

    services:
      - name: ImageProvider
        ports:
          - {name: frame, direction: output, type: /Image}
    components:
      - name: Camera
        period: 0.1
        ports:
          - {name: image, direction: output, type: /Image}
        services:
          - {name: image, model: ImageProvider, port_mappings: {frame: image}}
    compositions:
      - name: Vision
        children:
          camera: {models: [ImageProvider]}
    deployments:
      - name: camera_deployment
        activities: {camera: Camera}
    processes:
      - {name: cam, deployment: camera_deployment}
    requirements:
      - {model: Vision}

Declarations are validated with Pydantic, then turned into registry
descriptors in dependency order (services, components, compositions).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, Field, field_validator

from netsynth.contracts import (
    BoundService,
    BufferKind,
    ComBusInstance,
    ComponentModel,
    CompositionChild,
    CompositionConnection,
    CompositionExport,
    CompositionModel,
    ConfiguredDeployment,
    ConnectionPolicy,
    DeploymentModel,
    DeviceInstance,
    Model,
    PortDirection,
    PortModel,
    Requirement,
    ServiceModel,
    SpecError,
)
from netsynth.core.registry import ModelRegistry, RobotDefinition

if TYPE_CHECKING:
    from netsynth.contracts import ProcessServer
    from netsynth.core.config import NetsynthSettings
    from netsynth.engine.engine import Engine

_FROZEN = {"frozen": True, "extra": "forbid"}


class PortDecl(BaseModel):
    model_config = _FROZEN

    name: str
    direction: PortDirection
    type: str
    static: bool = False
    multiplexes: bool = False
    trigger: bool = False
    triggered_on_update: bool = True
    triggered_by: tuple[str, ...] = ()
    sample_size: int = Field(default=1, ge=1)
    burst_size: int = Field(default=0, ge=0)
    burst_period: float = Field(default=0.0, ge=0)
    required_connection_type: BufferKind | None = None
    needs_reliable_connection: bool = False


class ServiceBindingDecl(BaseModel):
    model_config = _FROZEN

    name: str
    model: str
    port_mappings: dict[str, str] = Field(default_factory=dict)


class ServiceDecl(BaseModel):
    model_config = _FROZEN

    name: str
    ports: tuple[PortDecl, ...] = ()
    parents: tuple[str, ...] = ()
    device: bool = False


class ComponentDecl(BaseModel):
    model_config = _FROZEN

    name: str
    ports: tuple[PortDecl, ...] = ()
    services: tuple[ServiceBindingDecl, ...] = ()
    supermodel: str | None = None
    period: float | None = Field(default=None, gt=0)
    trigger_latency: float = Field(default=0.0, ge=0)
    abstract: bool = False
    dynamic_port_type: str | None = None


class PolicyDecl(BaseModel):
    model_config = _FROZEN

    kind: BufferKind | None = None
    size: int | None = Field(default=None, ge=1)
    pull: bool | None = None
    fallback: PolicyDecl | None = None

    def build(self) -> ConnectionPolicy:
        return ConnectionPolicy(
            kind=self.kind,
            size=self.size,
            pull=self.pull,
            fallback=self.fallback.build() if self.fallback is not None else None,
        )


class ChildDecl(BaseModel):
    model_config = _FROZEN

    models: tuple[str, ...]
    optional: bool = False
    arguments: dict[str, Any] = Field(default_factory=dict)


class ConnectionDecl(BaseModel):
    """A connection between two children, as `role.port` endpoints."""

    model_config = _FROZEN

    source: str
    sink: str
    policy: PolicyDecl = Field(default_factory=PolicyDecl)

    @field_validator("source", "sink")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        role, _, port = v.partition(".")
        if not role or not port:
            raise ValueError(f"connection endpoint must be role.port, got {v!r}")
        return v


class ExportDecl(BaseModel):
    model_config = _FROZEN

    name: str
    role: str
    port: str


class CompositionDecl(BaseModel):
    model_config = _FROZEN

    name: str
    children: dict[str, ChildDecl] = Field(default_factory=dict)
    connections: tuple[ConnectionDecl, ...] = ()
    exports: tuple[ExportDecl, ...] = ()
    services: tuple[ServiceBindingDecl, ...] = ()
    autoconnect: bool = False
    supermodel: str | None = None


class SpecializationDecl(BaseModel):
    model_config = _FROZEN

    composition: str
    role: str
    models: tuple[str, ...]
    exclusions: tuple[str, ...] = ()
    default: bool = False


class DeploymentDecl(BaseModel):
    model_config = _FROZEN

    name: str
    activities: dict[str, str]


class ProcessDecl(BaseModel):
    model_config = _FROZEN

    name: str
    deployment: str
    host: str = "localhost"


class ComBusDecl(BaseModel):
    model_config = _FROZEN

    name: str
    driver: str
    message_type: str


class DeviceDecl(BaseModel):
    model_config = _FROZEN

    name: str
    driver: str
    service: str
    period: float | None = Field(default=None, gt=0)
    burst: int = Field(default=0, ge=0)
    sample_size: int = Field(default=1, ge=1)
    com_busses: tuple[str, ...] = ()


class RobotDecl(BaseModel):
    model_config = _FROZEN

    com_busses: tuple[ComBusDecl, ...] = ()
    devices: tuple[DeviceDecl, ...] = ()


class RequirementDecl(BaseModel):
    model_config = _FROZEN

    model: str
    name: str | None = None
    selections: dict[str, str | RequirementDecl] = Field(default_factory=dict)
    arguments: dict[str, Any] = Field(default_factory=dict)
    deployment_hints: tuple[str, ...] = ()
    specialization_hints: dict[str, str] = Field(default_factory=dict)

    def build(self) -> Requirement:
        selections = {
            key: value if isinstance(value, str) else value.build()
            for key, value in self.selections.items()
        }
        return Requirement(
            model=self.model,
            selections=selections,
            arguments=dict(self.arguments),
            deployment_hints=self.deployment_hints,
            specialization_hints=dict(self.specialization_hints),
            name=self.name,
        )


class SystemDocument(BaseModel):
    """Top-level layout of a system description file."""

    model_config = _FROZEN

    services: tuple[ServiceDecl, ...] = ()
    components: tuple[ComponentDecl, ...] = ()
    compositions: tuple[CompositionDecl, ...] = ()
    specializations: tuple[SpecializationDecl, ...] = ()
    deployments: tuple[DeploymentDecl, ...] = ()
    processes: tuple[ProcessDecl, ...] = ()
    robot: RobotDecl = Field(default_factory=RobotDecl)
    requirements: tuple[RequirementDecl, ...] = ()


@dataclass
class SystemDescription:
    """Everything a system description file declares, resolved."""

    registry: ModelRegistry
    robot: RobotDefinition
    deployments: list[ConfiguredDeployment] = field(default_factory=list)
    requirements: list[Requirement] = field(default_factory=list)
    specializations: tuple[SpecializationDecl, ...] = ()

    def create_engine(
        self,
        settings: NetsynthSettings | None = None,
        process_server: ProcessServer | None = None,
    ) -> Engine:
        """Engine on this system, with the declared specializations."""
        from netsynth.engine.engine import Engine

        engine = Engine(
            self.registry,
            self.robot,
            settings=settings,
            process_server=process_server,
            deployments=self.deployments,
        )
        for decl in self.specializations:
            composition = self.registry.resolve(decl.composition)
            if not isinstance(composition, CompositionModel):
                raise SpecError(f"{decl.composition} is not a composition")
            engine.resolver.specialize(
                composition,
                decl.role,
                [self.registry.resolve(m) for m in decl.models],
                exclusions=[self.registry.resolve(m) for m in decl.exclusions],
                default=decl.default,
            )
        return engine


def load_system(path: Path) -> SystemDescription:
    """Load a system description from a YAML file.

    Raises:
        FileNotFoundError: If path does not exist
        pydantic.ValidationError: If the document does not have the
            expected layout
        SpecError: If declarations reference unknown or mismatching models
    """
    if not path.exists():
        raise FileNotFoundError(f"System description not found: {path}")
    with path.open(encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return build_system(SystemDocument.model_validate(raw))


def build_system(document: SystemDocument) -> SystemDescription:
    """Turn a validated document into registry descriptors."""
    registry = ModelRegistry()
    for service in document.services:
        registry.register(
            ServiceModel(
                name=service.name,
                ports=_ports(service.ports),
                parents=tuple(_service(registry, p) for p in service.parents),
                device=service.device,
            )
        )
    for component in document.components:
        supermodel = None
        if component.supermodel is not None:
            supermodel = _typed(registry, component.supermodel, ComponentModel)
        registry.register(
            ComponentModel(
                name=component.name,
                ports=_ports(component.ports),
                services=_bindings(registry, component.services),
                supermodel=supermodel,
                period=component.period,
                trigger_latency=component.trigger_latency,
                abstract=component.abstract,
                dynamic_port_type=component.dynamic_port_type,
            )
        )
    for composition in document.compositions:
        registry.register(_composition(registry, composition))

    for deployment in document.deployments:
        activities = {
            name: _typed(registry, model, ComponentModel)
            for name, model in deployment.activities.items()
        }
        registry.register_deployment(DeploymentModel(deployment.name, activities))
    processes = [
        ConfiguredDeployment(p.name, registry.resolve_deployment(p.deployment), p.host)
        for p in document.processes
    ]

    robot = RobotDefinition()
    for bus in document.robot.com_busses:
        robot.add_com_bus(
            ComBusInstance(bus.name, _typed(registry, bus.driver, ComponentModel), bus.message_type)
        )
    for device in document.robot.devices:
        robot.add_device(
            DeviceInstance(
                name=device.name,
                driver=_typed(registry, device.driver, ComponentModel),
                service=device.service,
                period=device.period,
                burst=device.burst,
                sample_size=device.sample_size,
                com_busses=device.com_busses,
            )
        )

    return SystemDescription(
        registry=registry,
        robot=robot,
        deployments=processes,
        requirements=[r.build() for r in document.requirements],
        specializations=document.specializations,
    )


def _ports(decls: tuple[PortDecl, ...]) -> tuple[PortModel, ...]:
    return tuple(
        PortModel(
            name=p.name,
            direction=p.direction,
            type_name=p.type,
            static=p.static,
            multiplexes=p.multiplexes,
            trigger=p.trigger,
            triggered_on_update=p.triggered_on_update,
            triggered_by=p.triggered_by,
            sample_size=p.sample_size,
            burst_size=p.burst_size,
            burst_period=p.burst_period,
            required_connection_type=p.required_connection_type,
            needs_reliable_connection=p.needs_reliable_connection,
        )
        for p in decls
    )


def _bindings(
    registry: ModelRegistry, decls: tuple[ServiceBindingDecl, ...]
) -> tuple[BoundService, ...]:
    return tuple(
        BoundService(d.name, _service(registry, d.model), dict(d.port_mappings))
        for d in decls
    )


def _composition(registry: ModelRegistry, decl: CompositionDecl) -> CompositionModel:
    supermodel = None
    if decl.supermodel is not None:
        supermodel = _typed(registry, decl.supermodel, CompositionModel)
    children = {
        role: CompositionChild(
            role=role,
            models=frozenset(registry.resolve(m) for m in child.models),
            optional=child.optional,
            arguments=dict(child.arguments),
        )
        for role, child in decl.children.items()
    }
    connections = []
    for conn in decl.connections:
        source_role, _, source_port = conn.source.partition(".")
        sink_role, _, sink_port = conn.sink.partition(".")
        for role in (source_role, sink_role):
            if role not in children:
                raise SpecError(f"{decl.name}: connection on unknown child {role}")
        connections.append(
            CompositionConnection(source_role, source_port, sink_role, sink_port, conn.policy.build())
        )
    for export in decl.exports:
        if export.role not in children:
            raise SpecError(f"{decl.name}: export {export.name} on unknown child {export.role}")
    return CompositionModel(
        name=decl.name,
        children=children,
        connections=tuple(connections),
        exports=tuple(CompositionExport(e.name, e.role, e.port) for e in decl.exports),
        services=_bindings(registry, decl.services),
        autoconnect=decl.autoconnect,
        supermodel=supermodel,
    )


def _service(registry: ModelRegistry, name: str) -> ServiceModel:
    return _typed(registry, name, ServiceModel)


def _typed(registry: ModelRegistry, name: str, kind: type[Any]) -> Any:
    model: Model = registry.resolve(name)
    if not isinstance(model, kind):
        raise SpecError(f"{name} is not a {_KIND_NAMES[kind]}")
    return model


_KIND_NAMES = {
    ServiceModel: "service",
    ComponentModel: "component",
    CompositionModel: "composition",
}

