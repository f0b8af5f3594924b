"""Parley realtime chat library: client-side synchronization and server fan-out."""

__version__ = "0.1.0"
