"""Scheduling of dispatch workers and maintenance sweeps."""

from .service import SchedulerService

__all__ = [
    "SchedulerService",
]
