"""Loom — Linear agent that drives v0 UI generation from delegated issues."""

__version__ = "0.1.0"
