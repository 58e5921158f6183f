"""
Canonical JSON serialization for deterministic hashing and dumps.

Two-phase approach:
1. Normalize: Convert enums, sets, tuples and paths to JSON-safe primitives
2. Serialize: Produce deterministic JSON per RFC 8785/JCS (rfc8785 package)

IMPORTANT: NaN and Infinity are strictly REJECTED, not silently converted.
Periods and buffer sizes in a dump must be real numbers.
"""

import hashlib
import math
from enum import Enum
from pathlib import Path
from typing import Any

import rfc8785

# Version string stored in every diagnostics dump
CANONICAL_VERSION = "sha256-rfc8785-v1"


def _normalize_value(obj: Any) -> Any:
    """Convert a single value to a JSON-safe primitive.

    Raises:
        ValueError: If value is NaN or Infinity
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(
                f"Cannot canonicalize non-finite float: {obj}. "
                "Use None for missing values, not NaN."
            )
        return obj

    if obj is None or isinstance(obj, (str, int, bool)):
        return obj

    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted((_normalize_value(x) for x in obj), key=repr)
    if isinstance(obj, (list, tuple)):
        return [_normalize_value(x) for x in obj]
    if isinstance(obj, dict):
        return {str(k): _normalize_value(v) for k, v in obj.items()}

    # Descriptors and nodes serialize by name
    return str(obj)


def canonical_json(obj: Any) -> str:
    """Serialize obj to canonical JSON text."""
    return rfc8785.dumps(_normalize_value(obj)).decode("utf-8")


def stable_hash(obj: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of obj."""
    return hashlib.sha256(canonical_json(obj).encode("utf-8")).hexdigest()
