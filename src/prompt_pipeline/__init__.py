"""Durable multi-stage prompt pipeline orchestrator."""

__version__ = "0.1.0"
