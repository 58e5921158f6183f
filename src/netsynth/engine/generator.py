# src/netsynth/engine/generator.py
"""System network generation.

Turns a list of requirements into a fully allocated, validated network on a
scratch graph:

1. instantiate requirements (compositions recursively, with specialization)
2. merge identical nodes
3. postprocessing hooks (device allocation, bus linking, user plugins)
4. merge again
5. drop unresolved optional children
6. garbage collect what no requirement reaches
7. validate

Any failure raises and the scratch graph is dropped by the caller.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from netsynth.contracts import (
    BoundService,
    CompositionChild,
    CompositionModel,
    ConflictingDeviceAllocation,
    DeviceAllocationFailed,
    Model,
    PortModel,
    Requirement,
    Selection,
    ServiceModel,
    SpecError,
    TaskAllocationFailed,
    port_mapping,
)
from netsynth.core.graph import (
    ComponentGraph,
    ComponentNode,
    FulfilledModel,
    SpecializationRecord,
)
from netsynth.core.logging import get_logger
from netsynth.core.registry import ModelRegistry, RobotDefinition
from netsynth.engine.devices import attached_devices, device_argument, missing_devices
from netsynth.engine.hookspecs import NetworkContext, PostprocessingManager
from netsynth.engine.merge_solver import MergeGroup, MergeSolver
from netsynth.engine.specialization import SpecializationResolver

logger = get_logger(__name__)


@dataclass
class _ChildPlan:
    """How one child role is going to be instantiated."""

    model: Model
    arguments: dict[str, Any]
    selections: dict[str, Selection]
    hints: dict[str, str]
    explicit: bool
    deployment_hints: tuple[str, ...] = ()


@dataclass
class GeneratedNetwork:
    """Result of a generation.

    Attributes:
        graph: Scratch graph holding the network
        root_nodes: Node of each requirement, in requirement order
        merge_group: Every merge done during generation
        context: Context the postprocessing hooks saw
    """

    graph: ComponentGraph
    root_nodes: list[ComponentNode]
    merge_group: MergeGroup
    context: NetworkContext
    removed_optional: list[str] = field(default_factory=list)


class SystemNetworkGenerator:
    """Instantiates requirements into an abstract network and resolves it."""

    def __init__(
        self,
        registry: ModelRegistry,
        robot: RobotDefinition,
        resolver: SpecializationResolver,
        plugins: PostprocessingManager,
        *,
        garbage_collect: bool = True,
        validate: bool = True,
    ) -> None:
        self.registry = registry
        self.robot = robot
        self.resolver = resolver
        self.plugins = plugins
        self.garbage_collect = garbage_collect
        self.validate_network = validate

    def generate(
        self, requirements: Sequence[Requirement], graph: ComponentGraph | None = None
    ) -> GeneratedNetwork:
        """Generate the network for requirements on a scratch graph.

        graph defaults to a new empty graph. The caller keeps a reference to
        it to dump what was built when generation fails.

        Raises:
            SpecError: If the requirements cannot be turned into a valid
                network (see validate())
        """
        if graph is None:
            graph = ComponentGraph()
        context = NetworkContext(
            graph=graph,
            registry=self.registry,
            robot=self.robot,
            requirements=list(requirements),
        )

        roots = []
        for requirement in requirements:
            node = self.instanciate(graph, requirement)
            graph.mark_root(node)
            roots.append(node)
        context.root_nodes = roots
        self.plugins.run_instanciation(context)

        solver = MergeSolver(graph)
        solver.merge_identical_tasks()
        context.root_nodes = [solver.replacement_for(n) for n in roots]

        self.plugins.run_instanciated_network(context)
        solver.merge_identical_tasks()
        context.root_nodes = [solver.replacement_for(n) for n in roots]

        removed = self.remove_optional_children(graph)
        if self.garbage_collect:
            graph.static_garbage_collect()
        if self.validate_network:
            self.validate(graph)
        self.plugins.run_system_network(context)

        logger.info(
            "network generated",
            requirements=len(requirements),
            nodes=graph.node_count,
            merged=len(solver.group),
        )
        return GeneratedNetwork(
            graph=graph,
            root_nodes=context.root_nodes,
            merge_group=solver.group,
            context=context,
            removed_optional=removed,
        )

    # Instantiation

    def instanciate(
        self,
        graph: ComponentGraph,
        requirement: Requirement,
        inherited: Mapping[str, Selection] | None = None,
        deployment_hints: tuple[str, ...] = (),
    ) -> ComponentNode:
        """Instantiate one requirement and everything below it."""
        model = self.registry.resolve(requirement.model)
        selections = {**(inherited or {}), **requirement.selections}
        hints = (*deployment_hints, *requirement.deployment_hints)
        return self._instanciate_model(
            graph,
            model,
            dict(requirement.arguments),
            selections,
            dict(requirement.specialization_hints),
            hints,
            required=frozenset({model}),
        )

    def _instanciate_model(
        self,
        graph: ComponentGraph,
        model: Model,
        arguments: dict[str, Any],
        selections: dict[str, Selection],
        specialization_hints: dict[str, str],
        deployment_hints: tuple[str, ...],
        required: frozenset[Model],
    ) -> ComponentNode:
        if isinstance(model, CompositionModel):
            return self._instanciate_composition(
                graph, model, arguments, selections, specialization_hints, deployment_hints
            )

        fullfilled = FulfilledModel(_most_specific(required), dict(arguments))
        node = graph.add_node(
            model,
            arguments,
            fullfilled_model=fullfilled,
            deployment_hints=deployment_hints,
        )
        extra = [
            m for m in required
            if isinstance(m, ServiceModel) and not model.fullfills(m)
        ]
        if extra:
            node.specialization = SpecializationRecord(
                model.name,
                {srv.name: BoundService(srv.name, srv) for srv in extra},
            )
        return node

    def _instanciate_composition(
        self,
        graph: ComponentGraph,
        model: CompositionModel,
        arguments: dict[str, Any],
        selections: dict[str, Selection],
        specialization_hints: dict[str, str],
        deployment_hints: tuple[str, ...],
    ) -> ComponentNode:
        plans = {
            role: self._plan_child(model, child, selections)
            for role, child in sorted(model.children.items())
        }
        explicit = {role: plan.model for role, plan in plans.items() if plan.explicit}
        hints = {
            role: self.registry.resolve(name)
            for role, name in specialization_hints.items()
        }
        variant = self.resolver.find_specializations(model, explicit, hints)
        if variant is not model:
            plans = {
                role: self._plan_child(variant, child, selections)
                for role, child in sorted(variant.children.items())
            }

        node = graph.add_node(
            variant,
            arguments,
            fullfilled_model=FulfilledModel(model, dict(arguments)),
            deployment_hints=deployment_hints,
        )
        children: dict[str, tuple[ComponentNode, frozenset[Model]]] = {}
        for role, plan in plans.items():
            child = variant.children[role]
            child_node = self._instanciate_model(
                graph,
                plan.model,
                plan.arguments,
                plan.selections,
                plan.hints,
                (*deployment_hints, *plan.deployment_hints),
                required=child.models,
            )
            graph.add_dependency(node, child_node, role, optional=child.optional)
            # connections and exports name the ports of the root's role models
            children[role] = (child_node, variant.root_model.children[role].models)

        self._instanciate_connections(graph, node, variant, children)
        logger.debug("composition instantiated", node=node.node_id, model=variant.name)
        return node

    def _plan_child(
        self,
        composition: CompositionModel,
        child: CompositionChild,
        selections: Mapping[str, Selection],
    ) -> _ChildPlan:
        propagated = {
            key: value for key, value in selections.items()
            if key not in composition.children
        }
        selection = selections.get(child.role)
        if selection is None:
            matches = {
                model.name: selections[model.name]
                for model in child.models
                if model.name in selections
            }
            distinct = {_selection_key(v) for v in matches.values()}
            if len(distinct) > 1:
                raise SpecError(
                    f"{composition.name}.{child.role}: conflicting selections "
                    f"{', '.join(sorted(distinct))}"
                )
            if matches:
                selection = next(iter(matches.values()))

        arguments = dict(child.arguments)
        nested: dict[str, Selection] = dict(propagated)
        hints: dict[str, str] = {}
        deployment_hints: tuple[str, ...] = ()
        if selection is None:
            model = _most_specific(child.models)
            explicit = False
        elif isinstance(selection, Requirement):
            model = self.registry.resolve(selection.model)
            arguments.update(selection.arguments)
            nested.update(selection.selections)
            hints = dict(selection.specialization_hints)
            deployment_hints = tuple(selection.deployment_hints)
            explicit = True
        else:
            model, device_arguments = self._resolve_name(selection)
            arguments.update(device_arguments)
            explicit = True

        if not _can_fill(model, child.models):
            raise SpecError(
                f"{model.name} selected for {composition.name}.{child.role}, "
                f"which requires {', '.join(child.model_names())}"
            )
        return _ChildPlan(model, arguments, nested, hints, explicit, deployment_hints)

    def _resolve_name(self, name: str) -> tuple[Model, dict[str, Any]]:
        """Model for a selection name, which is either a device or a model."""
        device = self.robot.find_device(name)
        if device is not None:
            return device.driver, {device_argument(device.service): device.name}
        return self.registry.resolve(name), {}

    def _instanciate_connections(
        self,
        graph: ComponentGraph,
        node: ComponentNode,
        model: CompositionModel,
        children: Mapping[str, tuple[ComponentNode, frozenset[Model]]],
    ) -> None:
        explicit_inputs: set[tuple[str, str]] = set()
        for conn in model.connections:
            if conn.source_role not in children or conn.sink_role not in children:
                raise SpecError(
                    f"{model.name}: connection between unknown roles "
                    f"{conn.source_role} and {conn.sink_role}"
                )
            source, source_models = children[conn.source_role]
            sink, sink_models = children[conn.sink_role]
            source_port = _child_port(source, source_models, conn.source_port, conn.source_role)
            sink_port = _child_port(sink, sink_models, conn.sink_port, conn.sink_role)
            graph.add_connection(source, source_port, sink, sink_port, conn.policy)
            explicit_inputs.add((sink.node_id, sink_port))

        for export in model.exports:
            if export.role not in children:
                raise SpecError(f"{model.name}: export {export.name} of unknown role {export.role}")
            child, child_models = children[export.role]
            port_name = _child_port(child, child_models, export.port, export.role)
            port = child.find_port(port_name) or _required_port(child_models, export.port)
            if port is not None and port.is_output:
                graph.add_connection(child, port_name, node, export.name)
            else:
                graph.add_connection(node, export.name, child, port_name)
                explicit_inputs.add((child.node_id, port_name))

        if model.autoconnect:
            self._autoconnect(graph, children, explicit_inputs)

    def _autoconnect(
        self,
        graph: ComponentGraph,
        children: Mapping[str, tuple[ComponentNode, frozenset[Model]]],
        explicit_inputs: set[tuple[str, str]],
    ) -> None:
        """Connect ports of matching types when the match is unique."""
        outputs = []
        for role, (child, _) in sorted(children.items()):
            for port in _each_port(child):
                if port.is_output:
                    outputs.append((role, child, port))
        for role, (child, _) in sorted(children.items()):
            for port in _each_port(child):
                if not port.is_input or (child.node_id, port.name) in explicit_inputs:
                    continue
                matches = [
                    (src, out) for src_role, src, out in outputs
                    if src_role != role and out.type_name == port.type_name
                ]
                if len(matches) == 1:
                    source, out = matches[0]
                    graph.add_connection(source, out.name, child, port.name)

    # Cleanup

    def remove_optional_children(self, graph: ComponentGraph) -> list[str]:
        """Drop optional children that are still abstract.

        Returns:
            Ids of the removed nodes
        """
        removed = []
        for edge in list(graph.each_dependency()):
            if not edge.options.get("optional"):
                continue
            if edge.child not in graph or edge.parent not in graph:
                continue
            child = graph[edge.child]
            if not child.abstract:
                continue
            graph.remove_dependency(edge.parent, edge.child)
            if not graph.parents(child) and not graph.is_root(child):
                graph.remove_connections_of(child)
                graph.remove_node(child)
                removed.append(edge.child)
                logger.debug("optional child removed", node=edge.child, role=sorted(edge.roles))
        return removed

    # Validation

    def validate(self, graph: ComponentGraph) -> None:
        """Check that graph is a valid system network.

        Raises:
            SpecError: On a dependency cycle, or on an input port connected to
                more than one source without multiplexing
            TaskAllocationFailed: If abstract nodes remain
            DeviceAllocationFailed: If device drivers lack their device
            ConflictingDeviceAllocation: If a device has more than one driver
        """
        graph.validate_acyclic()

        abstract = [n for n in graph.nodes() if n.abstract]
        if abstract:
            candidates = {
                n.node_id: [
                    m.name for m in self.registry.each_component()
                    if not m.abstract and m.fullfills(n.model)
                ]
                for n in abstract
            }
            raise TaskAllocationFailed(abstract, candidates)

        self._validate_inputs(graph)

        missing = [n for n in graph.nodes() if missing_devices(n)]
        if missing:
            raise DeviceAllocationFailed(missing)

        by_device: dict[str, list[ComponentNode]] = {}
        for node in graph.nodes():
            for device in attached_devices(node, self.robot).values():
                by_device.setdefault(device.name, []).append(node)
        for device_name, nodes in sorted(by_device.items()):
            if len(nodes) > 1:
                raise ConflictingDeviceAllocation(device_name, nodes)

    def _validate_inputs(self, graph: ComponentGraph) -> None:
        offenders = []
        for node in graph.nodes():
            if node.is_composition:
                continue
            sources: dict[str, set[tuple[str, str]]] = {}
            for conn in graph.concrete_input_connections(node):
                sources.setdefault(conn.sink_port, set()).add((conn.source, conn.source_port))
            for port_name, port_sources in sorted(sources.items()):
                port = node.find_port(port_name)
                if len(port_sources) > 1 and not (port is not None and port.multiplexes):
                    offenders.append(f"{node}.{port_name}")
        if offenders:
            raise SpecError(
                "the following input ports are connected to more than one "
                f"output and do not multiplex: {', '.join(offenders)}"
            )


def _selection_key(selection: Selection) -> str:
    return selection.model if isinstance(selection, Requirement) else selection


def _most_specific(models: frozenset[Model]) -> Model:
    """The model of the set that fulfills all the others, if any.

    Falls back to the first model by name; the missing services are then
    attached to the node as local services.
    """
    for model in sorted(models, key=lambda m: m.name):
        if all(model.fullfills(other) for other in models):
            return model
    concrete = [m for m in models if not isinstance(m, ServiceModel)]
    if len(concrete) > 1:
        names = ", ".join(sorted(m.name for m in models))
        raise SpecError(f"no single model can fullfill all of {names}")
    if concrete:
        return concrete[0]
    return sorted(models, key=lambda m: m.name)[0]


def _can_fill(model: Model, required: frozenset[Model]) -> bool:
    """Whether a node of model can stand for a role requiring required.

    A service placeholder can take the services it lacks as local services.
    """
    for other in required:
        if model.fullfills(other):
            continue
        if isinstance(model, ServiceModel) and isinstance(other, ServiceModel):
            continue
        return False
    return True


def _required_port(models: frozenset[Model], port: str) -> PortModel | None:
    for model in sorted(models, key=lambda m: m.name):
        finder = getattr(model, "find_port", None)
        found = finder(port) if finder is not None else None
        if found is not None:
            return found
    return None


def _child_port(
    child: ComponentNode, required: frozenset[Model], port: str, role: str
) -> str:
    """Name on child of a port declared by one of the role's required models."""
    for model in sorted(required, key=lambda m: m.name):
        finder = getattr(model, "find_port", None)
        if finder is None or finder(port) is None:
            continue
        if isinstance(model, ServiceModel) and not isinstance(child.model, ServiceModel):
            mapping = port_mapping(child.model, model, child.each_local_service())
            return mapping.get(port, port)
        return port
    if child.find_port(port) is not None:
        return port
    raise SpecError(f"role {role} ({child.model.name}) has no port named {port}")


def _each_port(node: ComponentNode) -> Iterator[PortModel]:
    each_port = getattr(node.model, "each_port", None)
    if each_port is not None:
        yield from each_port()
    yield from node.dynamic_ports.values()
