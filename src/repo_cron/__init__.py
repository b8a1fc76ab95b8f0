"""Sharded batch pipeline for periodic repository analysis."""

__version__ = "0.1.0"
