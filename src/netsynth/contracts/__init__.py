"""Shared contracts for cross-boundary data types.

Descriptors, requirements, policies, enums and the exception taxonomy used
by both the core graph layer and the engine are defined here.

Import pattern:
    from netsynth.contracts import Requirement, SetupState, SpecError
"""

# isort: skip_file
# Import order is load-bearing: models imports policy, which imports errors.

from netsynth.contracts.enums import (
    BufferKind,
    GraphEventKind,
    ModelComparison,
    OnError,
    PortDirection,
    ProcessClass,
    ProcessState,
    SetupState,
)
from netsynth.contracts.errors import (
    AmbiguousDeployment,
    AmbiguousSpecialization,
    ConcurrentResolutionError,
    ConflictingDeviceAllocation,
    DeviceAllocationFailed,
    IncompatiblePolicy,
    InternalError,
    InvalidSetupTransition,
    MissingDeployments,
    SpecError,
    TaskAllocationFailed,
)
from netsynth.contracts.policy import ConnectionPolicy, fold_chain
from netsynth.contracts.models import (
    BoundService,
    ComBusInstance,
    ComponentModel,
    CompositionChild,
    CompositionConnection,
    CompositionExport,
    CompositionModel,
    ConfiguredDeployment,
    DeploymentModel,
    DeviceInstance,
    Model,
    PortModel,
    ServiceModel,
    Specialization,
    port_mapping,
)
from netsynth.contracts.requirements import Requirement, Selection
from netsynth.contracts.protocols import ProcessHandle, ProcessServer, SetupExecutor

__all__ = [
    "AmbiguousDeployment",
    "AmbiguousSpecialization",
    "BoundService",
    "BufferKind",
    "ComBusInstance",
    "ComponentModel",
    "CompositionChild",
    "CompositionConnection",
    "CompositionExport",
    "CompositionModel",
    "ConcurrentResolutionError",
    "ConfiguredDeployment",
    "ConflictingDeviceAllocation",
    "ConnectionPolicy",
    "DeploymentModel",
    "DeviceAllocationFailed",
    "DeviceInstance",
    "GraphEventKind",
    "IncompatiblePolicy",
    "InternalError",
    "InvalidSetupTransition",
    "MissingDeployments",
    "Model",
    "ModelComparison",
    "OnError",
    "PortDirection",
    "PortModel",
    "ProcessClass",
    "ProcessHandle",
    "ProcessServer",
    "ProcessState",
    "Requirement",
    "Selection",
    "ServiceModel",
    "SetupExecutor",
    "SetupState",
    "SpecError",
    "Specialization",
    "TaskAllocationFailed",
    "fold_chain",
    "port_mapping",
]
