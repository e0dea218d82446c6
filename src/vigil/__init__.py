"""Vigil - control verification and health scoring engine."""

__version__ = "1.0.0"
