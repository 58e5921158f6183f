"""Exception taxonomy for network generation and reconciliation.

Every error that is about more than one object lists all of them, not only
the first one found, so a failed resolution can be fixed in one pass.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any


def _names(objs: Iterable[Any]) -> str:
    return ", ".join(sorted(str(o) for o in objs))


class SpecError(Exception):
    """Raised when declarative constraints are used in an invalid way."""

    pass


class InternalError(Exception):
    """Raised when an invariant of the pipeline is violated."""

    pass


class InvalidSetupTransition(InternalError):
    """Raised on a setup state change the state machine does not allow."""

    def __init__(self, node: Any, current: Any, requested: str) -> None:
        self.node = node
        self.current = current
        self.requested = requested
        super().__init__(
            f"{node}: cannot {requested} while in setup state {current.value}"
        )


class ConcurrentResolutionError(Exception):
    """Raised when a resolution starts while another one is in progress."""

    pass


class AmbiguousSpecialization(SpecError):
    """Raised when more than one specialization variant is maximal.

    Attributes:
        composition: Name of the composition being specialized
        selection: The child selections that were used
        candidates: Every tied variant
    """

    def __init__(
        self,
        composition: str,
        selection: Mapping[str, Any],
        candidates: Iterable[Any],
    ) -> None:
        self.composition = composition
        self.selection = dict(selection)
        self.candidates = list(candidates)
        sel = ", ".join(f"{k}={v}" for k, v in sorted(self.selection.items()))
        super().__init__(
            f"ambiguous specialization of {composition} for selection "
            f"({sel}): candidates are {_names(self.candidates)}"
        )


class AmbiguousDeployment(SpecError):
    """Raised when more than one deployment slot can host a node."""

    def __init__(self, node: Any, candidates: Iterable[Any]) -> None:
        self.node = node
        self.candidates = list(candidates)
        super().__init__(
            f"more than one deployment can host {node}: {_names(self.candidates)}"
        )


class MissingDeployments(SpecError):
    """Raised when some concrete nodes have no deployment slot."""

    def __init__(self, nodes: Iterable[Any]) -> None:
        self.nodes = list(nodes)
        super().__init__(
            f"no deployment available for the following tasks: {_names(self.nodes)}"
        )


class TaskAllocationFailed(SpecError):
    """Raised when abstract nodes remain after network generation."""

    def __init__(
        self,
        nodes: Iterable[Any],
        candidates: Mapping[Any, Iterable[str]] | None = None,
    ) -> None:
        self.nodes = list(nodes)
        self.candidates = {k: list(v) for k, v in (candidates or {}).items()}
        super().__init__(
            "could not find implementation for the following abstract tasks: "
            f"{_names(self.nodes)}"
        )


class DeviceAllocationFailed(SpecError):
    """Raised when device drivers are left without their device."""

    def __init__(self, nodes: Iterable[Any]) -> None:
        self.nodes = list(nodes)
        super().__init__(
            f"could not allocate devices for the following tasks: {_names(self.nodes)}"
        )


class ConflictingDeviceAllocation(SpecError):
    """Raised when the same device is attached to more than one node."""

    def __init__(self, device: str, nodes: Iterable[Any]) -> None:
        self.device = device
        self.nodes = list(nodes)
        super().__init__(
            f"device {device} is attached to more than one task: {_names(self.nodes)}"
        )


class IncompatiblePolicy(SpecError):
    """Raised when two connection policies of a chain cannot be folded.

    Attributes:
        link: Label of the first link that does not fold
        field: Policy field that mismatches
    """

    def __init__(self, link: str, field: str, left: Any, right: Any) -> None:
        self.link = link
        self.field = field
        self.left = left
        self.right = right
        super().__init__(
            f"incompatible connection policy at {link}: {field} {left!r} != {right!r}"
        )
