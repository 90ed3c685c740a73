"""Hybrid retrieval index for study notes and lecture slides."""

__version__ = "0.1.0"
