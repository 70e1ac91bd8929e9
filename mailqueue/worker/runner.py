"""Dispatch worker: pulls due items, claims them and hands them to delivery."""

import threading
from typing import Optional

from mailqueue.logging import get_logger
from mailqueue.logging.context import log_context
from mailqueue.notifications.service import DeliveryService
from mailqueue.queue import NotificationQueueService
from mailqueue.utils.identity import generate_worker_id
from mailqueue.utils.timestamps import Clock, utc_now

from .models import WorkerRunResult

logger = get_logger(__name__, component="worker")


class DeliveryWorker:
    """
    One dispatch loop with its own claim identity.

    Several workers may poll the same queue concurrently. Their batches can
    overlap; the atomic claim decides which of them delivers each item.
    """

    def __init__(
        self,
        queue: NotificationQueueService,
        delivery_service: DeliveryService,
        worker_id: Optional[str] = None,
        batch_size: int = 10,
        clock: Clock = utc_now,
    ):
        """
        Initialize the worker.

        Args:
            queue: Queue to pull from and claim against
            delivery_service: Delivers claimed items and records outcomes
            worker_id: Claim identity (a fresh random identity if None)
            batch_size: Maximum items fetched per cycle
            clock: Returns the current UTC time (cycle timing only)
        """
        self.queue = queue
        self.delivery_service = delivery_service
        self.worker_id = worker_id or generate_worker_id("worker")
        self.batch_size = batch_size
        self._clock = clock
        self._lock = threading.Lock()

    def run_once(self) -> WorkerRunResult:
        """
        Run one dispatch cycle.

        Fetches a batch, claims each candidate, delivers the ones won and
        counts outcomes. Errors on individual items are logged and the cycle
        moves on to the next item.

        Returns:
            WorkerRunResult with per-cycle counts
        """
        run_started_at = self._clock()

        if not self._lock.acquire(blocking=False):
            logger.warning(
                "Dispatch cycle skipped: previous cycle still in progress",
                extra={"event": "worker.run.skipped", "worker_id": self.worker_id},
            )
            return WorkerRunResult(
                worker_id=self.worker_id,
                run_started_at=run_started_at,
                run_finished_at=self._clock(),
                run_skipped=True,
            )

        try:
            with log_context(worker_id=self.worker_id):
                return self._run_cycle(run_started_at)
        finally:
            self._lock.release()

    def _run_cycle(self, run_started_at) -> WorkerRunResult:
        batch = self.queue.get_next_batch(self.batch_size)
        claimed = skipped = sent = failed = 0

        for candidate in batch:
            try:
                item = self.queue.claim_for_processing(candidate.id, self.worker_id)
            except Exception as e:
                logger.error(
                    f"Claim of queue item {candidate.id} failed: {e}",
                    extra={"event": "worker.claim.error", "queue_item_id": candidate.id},
                    exc_info=True,
                )
                continue

            if item is None:
                skipped += 1
                continue

            claimed += 1
            try:
                outcome = self.delivery_service.deliver(item)
            except Exception as e:
                failed += 1
                logger.error(
                    f"Delivery of queue item {item.id} failed: {e}",
                    extra={
                        "event": "worker.item.error",
                        "queue_item_id": item.id,
                        "notification_id": item.notification_id,
                        "error_type": type(e).__name__,
                    },
                    exc_info=True,
                )
                continue

            if outcome.status == "sent":
                sent += 1
            elif outcome.status == "skipped":
                skipped += 1
            else:
                failed += 1

        result = WorkerRunResult(
            worker_id=self.worker_id,
            run_started_at=run_started_at,
            run_finished_at=self._clock(),
            candidates=len(batch),
            claimed=claimed,
            skipped=skipped,
            sent=sent,
            failed=failed,
        )

        if batch:
            logger.info(
                "Dispatch cycle completed",
                extra={
                    "event": "worker.run.completed",
                    "candidates": result.candidates,
                    "claimed": result.claimed,
                    "skipped": result.skipped,
                    "sent": result.sent,
                    "failed": result.failed,
                    "duration_ms": int(result.duration_seconds * 1000),
                },
            )
        return result
