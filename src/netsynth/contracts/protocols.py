"""Protocols for the collaborators the engine calls into.

The process server and the setup executor are supplied by the caller. The
engine only calls them after a resolution has been committed.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from concurrent.futures import Future
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from netsynth.contracts.models import ConfiguredDeployment


@runtime_checkable
class ProcessHandle(Protocol):
    """Handle on a process started by a process server."""

    name: str
    host: str


@runtime_checkable
class ProcessServer(Protocol):
    """Starts and kills deployment processes."""

    def start(self, deployment: ConfiguredDeployment, host: str) -> ProcessHandle:
        """Start the process for a deployment on the given host."""
        ...

    def kill(self, handle: ProcessHandle) -> None:
        """Kill a process previously started by this server."""
        ...

    def live_activities(self, handle: ProcessHandle) -> Mapping[str, Any]:
        """Activity name -> connection handle for a running process."""
        ...


@runtime_checkable
class SetupExecutor(Protocol):
    """Runs component setup computations outside of the engine."""

    def submit(self, fn: Callable[[], Any]) -> Future[Any]:
        """Schedule fn and return its future."""
        ...
