# src/netsynth/core/__init__.py
"""Core infrastructure: Canonical, Configuration, Graph, Logging, Registry."""

from netsynth.core.canonical import (
    CANONICAL_VERSION,
    canonical_json,
    stable_hash,
)
from netsynth.core.config import (
    DiagnosticsSettings,
    EngineSettings,
    LoggingSettings,
    NetsynthSettings,
    load_settings,
)
from netsynth.core.graph import (
    ComponentGraph,
    ComponentNode,
    DeployedComponent,
    DeploymentInstance,
)
from netsynth.core.logging import (
    configure_logging,
    get_logger,
)
from netsynth.core.registry import (
    ModelRegistry,
    RobotDefinition,
)

__all__ = [
    "CANONICAL_VERSION",
    "ComponentGraph",
    "ComponentNode",
    "DeployedComponent",
    "DeploymentInstance",
    "DiagnosticsSettings",
    "EngineSettings",
    "LoggingSettings",
    "ModelRegistry",
    "NetsynthSettings",
    "RobotDefinition",
    "canonical_json",
    "configure_logging",
    "get_logger",
    "load_settings",
    "stable_hash",
]
