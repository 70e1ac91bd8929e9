"""Dispatch workers that pull, claim and deliver queue items."""

from .models import WorkerRunResult
from .runner import DeliveryWorker

__all__ = ["DeliveryWorker", "WorkerRunResult"]
