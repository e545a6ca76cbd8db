"""Agent task orchestration and execution engine."""

__version__ = "0.4.0"
