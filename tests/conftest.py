# tests/conftest.py
"""Shared test fixtures and configuration.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/
"""

import os
from pathlib import Path

import pytest
from hypothesis import Phase, Verbosity, settings

from factories import FakeProcessServer, SampleSystem, build_sample_system
from netsynth.core.config import DiagnosticsSettings, NetsynthSettings

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def system() -> SampleSystem:
    """Sample registry with cameras, processor and deployments."""
    return build_sample_system()


@pytest.fixture
def process_server() -> FakeProcessServer:
    return FakeProcessServer()


@pytest.fixture
def diagnostics_settings(tmp_path: Path) -> NetsynthSettings:
    """Settings writing diagnostics dumps under tmp_path."""
    return NetsynthSettings(
        diagnostics=DiagnosticsSettings(output_dir=tmp_path / "diagnostics"),
    )
