# tests/core/test_canonical.py
"""Tests for canonical JSON serialization and hashing."""

import math
from enum import Enum
from pathlib import Path

import pytest
from hypothesis import given
from hypothesis import strategies as st


class Color(str, Enum):
    RED = "red"


class TestNormalization:
    """Values are normalized to JSON primitives before serialization."""

    def test_key_order_does_not_matter(self) -> None:
        from netsynth.core.canonical import canonical_json

        assert canonical_json({"b": 1, "a": 2}) == canonical_json({"a": 2, "b": 1})
        assert canonical_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'

    def test_enums_paths_and_sets(self) -> None:
        from netsynth.core.canonical import canonical_json

        result = canonical_json(
            {"color": Color.RED, "path": Path("/tmp/x"), "roles": {"b", "a"}, "t": (1, 2)}
        )

        assert result == '{"color":"red","path":"/tmp/x","roles":["a","b"],"t":[1,2]}'

    def test_objects_serialize_by_str(self) -> None:
        from netsynth.contracts import ComponentModel
        from netsynth.core.canonical import canonical_json

        assert canonical_json([ComponentModel("Camera")]) == '["Camera"]'

    @pytest.mark.parametrize("value", [math.nan, math.inf, -math.inf])
    def test_non_finite_floats_rejected(self, value: float) -> None:
        from netsynth.core.canonical import canonical_json

        with pytest.raises(ValueError, match="non-finite"):
            canonical_json({"period": value})


class TestStableHash:
    """stable_hash() is deterministic."""

    def test_hex_digest(self) -> None:
        from netsynth.core.canonical import stable_hash

        digest = stable_hash({"a": 1})

        assert len(digest) == 64
        int(digest, 16)

    @given(
        st.dictionaries(
            st.text(min_size=1, max_size=8),
            st.one_of(st.integers(), st.booleans(), st.text(max_size=8), st.none()),
            max_size=8,
        )
    )
    def test_insertion_order_independent(self, data: dict[str, object]) -> None:
        from netsynth.core.canonical import stable_hash

        reversed_data = dict(reversed(list(data.items())))

        assert stable_hash(data) == stable_hash(reversed_data)
