"""Persistent email notification queue with leasing, backoff and recovery sweeps."""

__version__ = "0.1.0"
