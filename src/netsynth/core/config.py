"""
Configuration schema and loading for netsynth.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from netsynth.contracts.enums import OnError


class EngineSettings(BaseModel):
    """Behavior of a resolution cycle.

    Example YAML:
        engine:
          on_error: save
          buffer_size_margin: 0.2
    """

    model_config = {"frozen": True}

    on_error: OnError = Field(
        default=OnError.DISCARD,
        description="What to do with the transaction when resolution fails",
    )
    garbage_collect: bool = Field(
        default=True,
        description="Remove nodes that no requirement root can reach",
    )
    validate_network: bool = Field(
        default=True,
        description="Validate the generated network before deploying it",
    )
    compute_deployments: bool = Field(
        default=True,
        description="Assign deployment slots and reconcile with running processes",
    )
    compute_policies: bool = Field(
        default=True,
        description="Compute connection policies from port dynamics",
    )
    buffer_size_margin: float = Field(
        default=0.1,
        ge=0,
        description="Relative margin added to computed buffer sizes",
    )

    @model_validator(mode="after")
    def validate_policies_need_deployments(self) -> "EngineSettings":
        """Policy computation relies on deployed activities."""
        if self.compute_policies and not self.compute_deployments:
            raise ValueError(
                "compute_policies requires compute_deployments to be enabled"
            )
        return self


class DiagnosticsSettings(BaseModel):
    """Where postmortem graph dumps are written."""

    model_config = {"frozen": True}

    output_dir: Path = Field(
        default=Path(".netsynth/diagnostics"),
        description="Directory receiving the dataflow and hierarchy dumps",
    )
    prefix: str = Field(
        default="netsynth-plan",
        description="File name prefix for dumps",
    )

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Prefix ends up in file names."""
        if not v or "/" in v:
            raise ValueError(f"invalid dump prefix: {v!r}")
        return v


class LoggingSettings(BaseModel):
    """Logging output configuration."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level",
    )
    json_output: bool = Field(
        default=False,
        description="Render log events as JSON lines",
    )


class NetsynthSettings(BaseModel):
    """Top-level netsynth configuration."""

    model_config = {"frozen": True}

    engine: EngineSettings = Field(
        default_factory=EngineSettings,
        description="Resolution cycle behavior",
    )
    diagnostics: DiagnosticsSettings = Field(
        default_factory=DiagnosticsSettings,
        description="Postmortem dump configuration",
    )
    logging: LoggingSettings = Field(
        default_factory=LoggingSettings,
        description="Logging configuration",
    )


def load_settings(config_path: Path) -> NetsynthSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (NETSYNTH_*) - highest priority
    2. Config file (settings.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: NETSYNTH_ENGINE__ON_ERROR for nested keys.

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="NETSYNTH",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase keys and its own bookkeeping entries
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {
        k.lower(): _lower_keys(v)
        for k, v in dynaconf_settings.as_dict().items()
        if k not in internal_keys
    }
    return NetsynthSettings(**raw_config)


def _lower_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    return value


def resolve_config(settings: NetsynthSettings) -> dict[str, Any]:
    """Convert validated settings to a dict for diagnostics dumps."""
    return settings.model_dump(mode="json")
