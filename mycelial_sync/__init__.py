"""Realtime entity synchronization client for mycelial nodes."""

__version__ = "0.1.0"
