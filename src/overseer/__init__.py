"""Overseer task orchestration core."""

__version__ = "0.4.0"
