"""Workflow graph simulator and validator."""

__version__ = "1.0.0"
