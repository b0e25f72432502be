"""Gateway-backed service health monitoring with change-aware reports."""

__version__ = "0.1.0"
