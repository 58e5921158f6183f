"""Requirements: what the caller wants to run."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

Selection = Union[str, "Requirement"]


@dataclass
class Requirement:
    """Desired spec for one component instance.

    Attributes:
        model: Name of the required model (service, component or composition)
        selections: Child selections. Keys are either a child role name, which
            applies to this composition only, or a model name, which applies to
            every descendant role that requires that model. Values are a
            model name, a device name or a nested Requirement.
        arguments: Argument map for the instance
        deployment_hints: Regular expressions matched against deployment
            process and activity names when several can host the instance
        specialization_hints: Facet hints (child role -> model name) used to
            break ties between specializations
        name: Optional instance name, used in logs and diagnostics
    """

    model: str
    selections: dict[str, Selection] = field(default_factory=dict)
    arguments: dict[str, Any] = field(default_factory=dict)
    deployment_hints: tuple[str, ...] = ()
    specialization_hints: dict[str, str] = field(default_factory=dict)
    name: str | None = None

    def use(self, **selections: Selection) -> Requirement:
        """Add child selections, returning self for chaining."""
        self.selections.update(selections)
        return self

    def with_arguments(self, **arguments: Any) -> Requirement:
        """Add arguments, returning self for chaining."""
        self.arguments.update(arguments)
        return self

    def prefer_deployed_tasks(self, *patterns: str) -> Requirement:
        """Add deployment hints, returning self for chaining."""
        self.deployment_hints = (*self.deployment_hints, *patterns)
        return self

    def __str__(self) -> str:
        return self.name or self.model
