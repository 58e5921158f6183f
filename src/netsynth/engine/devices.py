# src/netsynth/engine/devices.py
"""Built-in postprocessing: device allocation and communication bus linking.

A node drives a device through each device service of its model. The device
is recorded as the `<service>_dev` argument of the node, so that two nodes
driving the same device have equal arguments and get merged.
"""

from __future__ import annotations

from netsynth.contracts import (
    ComBusInstance,
    ComponentModel,
    DeviceInstance,
    PortDirection,
    PortModel,
    SpecError,
)
from netsynth.core.graph import ComponentGraph, ComponentNode
from netsynth.core.logging import get_logger
from netsynth.core.registry import RobotDefinition
from netsynth.engine.hookspecs import NetworkContext, hookimpl

logger = get_logger(__name__)

# Argument holding the name of the bus a bus driver node handles
BUS_ARGUMENT = "com_bus"


def device_argument(service_name: str) -> str:
    return f"{service_name}_dev"


def device_services(node: ComponentNode) -> list[str]:
    """Names of the device services the node's model drives."""
    if not isinstance(node.model, ComponentModel):
        return []
    return [srv.name for srv in node.model.each_device_service()]


def attached_devices(
    node: ComponentNode, robot: RobotDefinition
) -> dict[str, DeviceInstance | ComBusInstance]:
    """Device service name -> device for the devices attached to node.

    Raises:
        SpecError: If an argument names a device the robot does not have
    """
    result: dict[str, DeviceInstance | ComBusInstance] = {}
    for srv_name in device_services(node):
        name = node.arguments.get(device_argument(srv_name))
        if name is None:
            continue
        device = robot.find_device(name) or robot.find_com_bus(name)
        if device is None:
            raise SpecError(f"{node}: no device named {name} on this system")
        result[srv_name] = device
    return result


def missing_devices(node: ComponentNode) -> list[str]:
    """Device services of node that have no device attached."""
    return [
        srv_name
        for srv_name in device_services(node)
        if node.arguments.get(device_argument(srv_name)) is None
    ]


class DeviceAllocation:
    """Attach devices to driver nodes that were not given one explicitly.

    The device is taken from the nearest parents that set the same
    `<service>_dev` argument, or else is the only free device of the robot
    that this driver can handle.
    """

    @hookimpl(tryfirst=True)
    def netsynth_instanciated_network(self, context: NetworkContext) -> None:
        graph, robot = context.graph, context.robot
        allocated = {
            device.name
            for node in graph.nodes()
            for device in attached_devices(node, robot).values()
        }
        for node in sorted(graph.nodes(), key=lambda n: n.node_id):
            for srv_name in missing_devices(node):
                key = device_argument(srv_name)
                name = _from_parents(graph, node, key)
                if name is None:
                    device = _unique_free_device(robot, node, srv_name, allocated)
                    name = device.name if device is not None else None
                if name is None:
                    continue
                node.arguments[key] = name
                allocated.add(name)
                logger.debug("device allocated", node=node.node_id, service=srv_name, device=name)


def _from_parents(graph: ComponentGraph, node: ComponentNode, key: str) -> str | None:
    frontier = graph.parents(node)
    seen: set[str] = set()
    while frontier:
        values = {p.arguments[key] for p in frontier if key in p.arguments}
        if len(values) == 1:
            return next(iter(values))
        if len(values) > 1:
            return None
        seen.update(p.node_id for p in frontier)
        frontier = [
            grand
            for p in frontier
            for grand in graph.parents(p)
            if grand.node_id not in seen
        ]
    return None


def _unique_free_device(
    robot: RobotDefinition, node: ComponentNode, srv_name: str, allocated: set[str]
) -> DeviceInstance | None:
    candidates = [
        device
        for device in robot.devices.values()
        if device.service == srv_name
        and node.model.fullfills(device.driver)
        and device.name not in allocated
    ]
    return candidates[0] if len(candidates) == 1 else None


class ComBusLinking:
    """Connect device drivers to the drivers of their communication busses.

    One bus driver node exists per bus. Each device node depends on it under
    the role `com_bus_<bus>`, is configured after the bus driver started,
    and has its message-typed ports connected to dynamic ports of the bus.
    """

    @hookimpl(trylast=True)
    def netsynth_instanciated_network(self, context: NetworkContext) -> None:
        graph, robot = context.graph, context.robot
        for node in sorted(graph.nodes(), key=lambda n: n.node_id):
            if node not in graph:
                continue
            for device in attached_devices(node, robot).values():
                if not isinstance(device, DeviceInstance):
                    continue
                for bus_name in device.com_busses:
                    bus = robot.com_busses[bus_name]
                    self.link(graph, node, device, bus)

    def link(
        self,
        graph: ComponentGraph,
        node: ComponentNode,
        device: DeviceInstance,
        bus: ComBusInstance,
    ) -> ComponentNode:
        bus_node = self.bus_node(graph, bus)
        role = f"com_bus_{bus.name}"
        if graph.child_for_role(node, role) is None:
            graph.add_dependency(node, bus_node, role)
        graph.configure_after(node, bus_node, "start")

        model = node.model
        if not isinstance(model, ComponentModel):
            return bus_node
        for port in model.each_port():
            if port.type_name != bus.message_type:
                continue
            if port.is_output:
                bus_port = _bus_port(bus_node, bus, f"{device.name}w", PortDirection.INPUT)
                graph.add_connection(node, port.name, bus_node, bus_port.name)
            else:
                bus_port = _bus_port(bus_node, bus, device.name, PortDirection.OUTPUT)
                graph.add_connection(bus_node, bus_port.name, node, port.name)
        logger.debug("device linked to bus", node=node.node_id, device=device.name, bus=bus.name)
        return bus_node

    @staticmethod
    def bus_node(graph: ComponentGraph, bus: ComBusInstance) -> ComponentNode:
        """The driver node of bus, created if the graph has none."""
        for candidate in graph.nodes():
            if candidate.model is bus.driver and candidate.arguments.get(BUS_ARGUMENT) == bus.name:
                return candidate
        arguments = {BUS_ARGUMENT: bus.name}
        for srv in bus.driver.each_device_service():
            arguments[device_argument(srv.name)] = bus.name
        return graph.add_node(bus.driver, arguments)


def _bus_port(
    bus_node: ComponentNode, bus: ComBusInstance, name: str, direction: PortDirection
) -> PortModel:
    existing = bus_node.find_port(name)
    if existing is not None:
        return existing
    dynamic_type = bus.driver.dynamic_port_type
    if dynamic_type is not None and dynamic_type != bus.message_type:
        raise SpecError(
            f"bus driver {bus.driver.name} creates ports of type {dynamic_type}, "
            f"bus {bus.name} needs {bus.message_type}"
        )
    port = PortModel(name=name, direction=direction, type_name=bus.message_type)
    bus_node.dynamic_ports[name] = port
    return port


# plugin classes, instantiated once per plugin manager
BUILTIN_POSTPROCESSING = (DeviceAllocation, ComBusLinking)
