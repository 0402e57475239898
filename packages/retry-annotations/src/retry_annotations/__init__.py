"""Marker-driven retrying of failing pytest tests."""

__version__ = "0.1.0"
