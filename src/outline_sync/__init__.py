"""Directory to Outline reconciliation."""

__version__ = "0.1.0"
