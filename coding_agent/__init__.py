"""Coding Agent - a terminal coding assistant backed by a hosted model."""

__version__ = "0.1.0"

__all__ = ["__version__"]
