"""Persistent task storage and priority queue for test orchestration."""

__version__ = "0.1.0"