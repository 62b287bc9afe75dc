"""Batch script runner with live output capture and progress tracking."""

__version__ = "0.1.0"
