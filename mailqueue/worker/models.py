"""Data models for dispatch cycle reporting."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class WorkerRunResult:
    """
    Outcome of one dispatch cycle of a worker.

    Attributes:
        worker_id: Identity the worker claims with
        run_started_at: UTC timestamp when the cycle began
        run_finished_at: UTC timestamp when the cycle completed
        candidates: Items returned by the batch query
        claimed: Items this worker won the claim for
        skipped: Lost claims plus claimed items that needed no send
        sent: Items delivered successfully
        failed: Items whose attempt failed (retry scheduled or terminal)
        duration_seconds: Time spent on the cycle
        run_skipped: Whether the cycle was skipped (previous cycle still running)
    """

    worker_id: str
    run_started_at: datetime
    run_finished_at: datetime
    candidates: int = 0
    claimed: int = 0
    skipped: int = 0
    sent: int = 0
    failed: int = 0
    duration_seconds: float = 0.0
    run_skipped: bool = False

    def __post_init__(self):
        if self.duration_seconds == 0.0:
            delta = self.run_finished_at - self.run_started_at
            self.duration_seconds = delta.total_seconds()
