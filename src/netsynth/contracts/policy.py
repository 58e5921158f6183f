"""Connection policies."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from typing import Any

from netsynth.contracts.enums import BufferKind
from netsynth.contracts.errors import IncompatiblePolicy


@dataclass(frozen=True)
class ConnectionPolicy:
    """How data flows on a single port-to-port connection.

    Unset fields (None) are compatible with any value. fallback is used by
    policy computation when port dynamics are not available.
    """

    kind: BufferKind | None = None
    size: int | None = None
    pull: bool | None = None
    fallback: ConnectionPolicy | None = None

    @property
    def empty(self) -> bool:
        return self.kind is None and self.size is None and self.pull is None

    def fold(self, other: ConnectionPolicy, *, link: str = "") -> ConnectionPolicy:
        """Merge two policies.

        Buffer size is the max of both sizes. kind and pull must be equal
        when set on both sides.

        Raises:
            IncompatiblePolicy: If kind or pull mismatch
        """
        kind = _fold_exact("kind", self.kind, other.kind, link)
        pull = _fold_exact("pull", self.pull, other.pull, link)
        if self.size is None:
            size = other.size
        elif other.size is None:
            size = self.size
        else:
            size = max(self.size, other.size)

        if self.fallback is not None and other.fallback is not None:
            fallback: ConnectionPolicy | None = self.fallback.fold(
                other.fallback, link=link
            )
        else:
            fallback = self.fallback or other.fallback
        return ConnectionPolicy(kind=kind, size=size, pull=pull, fallback=fallback)

    def without_fallback(self) -> ConnectionPolicy:
        return replace(self, fallback=None)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.kind is not None:
            result["kind"] = self.kind.value
        if self.size is not None:
            result["size"] = self.size
        if self.pull is not None:
            result["pull"] = self.pull
        return result


def _fold_exact(name: str, left: Any, right: Any, link: str) -> Any:
    if left is None:
        return right
    if right is None or left == right:
        return left
    raise IncompatiblePolicy(link, name, left, right)


def fold_chain(links: Iterable[tuple[str, ConnectionPolicy]]) -> ConnectionPolicy:
    """Fold the policies of a connection chain left to right.

    Args:
        links: (label, policy) pairs in chain order

    Raises:
        IncompatiblePolicy: Naming the first link that does not fold with
            the policies before it
    """
    result = ConnectionPolicy()
    for label, policy in links:
        result = result.fold(policy, link=label)
    return result
