# tests/core/test_logging.py
"""Tests for structured logging setup."""

import json
from collections.abc import Iterator

import pytest
import structlog


@pytest.fixture(autouse=True)
def reset_structlog() -> Iterator[None]:
    yield
    structlog.reset_defaults()


class TestConfigureLogging:
    """configure_logging() and get_logger()."""

    def test_json_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        from netsynth.core.logging import configure_logging, get_logger

        configure_logging("INFO", json_output=True)
        get_logger("netsynth.test").info("network generated", nodes=3)

        line = capsys.readouterr().err.strip().splitlines()[-1]
        event = json.loads(line)
        assert event["event"] == "network generated"
        assert event["nodes"] == 3
        assert event["level"] == "info"

    def test_level_filters_debug(self, capsys: pytest.CaptureFixture[str]) -> None:
        from netsynth.core.logging import configure_logging, get_logger

        configure_logging("WARNING", json_output=True)
        get_logger("netsynth.test").info("hidden")

        assert "hidden" not in capsys.readouterr().err

    def test_unknown_level(self) -> None:
        from netsynth.core.logging import configure_logging

        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging("LOUD")
