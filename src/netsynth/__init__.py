"""netsynth: component network synthesis and live reconciliation."""

__version__ = "0.1.0"
