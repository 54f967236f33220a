"""Parallel work-unit build orchestrator."""

__version__ = "0.1.0"
