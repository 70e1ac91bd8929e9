"""Notification queue service.

Admission, dispatch ordering, claiming, outcome recording and the three
maintenance sweeps (retry reactivation, stuck-item reclaim, retention) over a
shared :class:`~mailqueue.persistence.Database`.

Every status change is a compare-and-set: the item is read, the next state is
computed, and a single ``UPDATE ... WHERE status = ? AND retry_count = ?``
writes it. A writer that loses the race re-reads and decides again, so a
dispatch worker and a sweeper touching the same item never overwrite each
other silently.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from mailqueue.domain.models import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    DEFAULT_QUEUE_NAME,
    NotificationStatus,
    QueueItem,
    QueueStats,
    QueueStatus,
)
from mailqueue.logging import get_logger
from mailqueue.persistence import Database, NotificationRepository, QueueRepository
from mailqueue.utils.timestamps import Clock, format_timestamp_for_log, utc_now

from .backoff import compute_backoff_minutes, next_attempt_at
from .exceptions import InvalidStateTransitionError, QueueError, QueueItemNotFoundError

logger = get_logger(__name__, component="queue")
sweep_logger = get_logger(__name__, component="sweeper")

STUCK_ITEM_ERROR = "Processing timeout - item was stuck"

# Attempts at a compare-and-set before giving up on a contended item
_CAS_ATTEMPTS = 5

_CLEAR_CLAIM = {"claimed_by": None, "claimed_at": None}

# Records the stuck sweep may overwrite; SENT and CANCELLED are left alone
_RECLAIMABLE_RECORD_STATUSES = (NotificationStatus.PENDING, NotificationStatus.FAILED)

TransitionPlan = Callable[[QueueItem, datetime], Optional[Dict[str, Any]]]


class NotificationQueueService:
    """Persistent priority queue of delivery jobs."""

    def __init__(
        self,
        database: Database,
        clock: Clock = utc_now,
        max_retries: int = DEFAULT_MAX_RETRIES,
        default_priority: int = DEFAULT_PRIORITY,
        stale_threshold_seconds: int = 600,
        stuck_retry_delay_seconds: int = 300,
        queue_name: str = DEFAULT_QUEUE_NAME,
    ):
        """Initialize queue service.

        Args:
            database: Database holding the queue tables
            clock: Returns the current UTC time; replaced by a fake in tests
            max_retries: Retry ceiling for newly enqueued items
            default_priority: Priority used when enqueue() is given none
            stale_threshold_seconds: Lease age after which a PROCESSING item is stuck
            stuck_retry_delay_seconds: Fixed delay before a reclaimed item is retried
            queue_name: Logical queue name stored on new items
        """
        self._database = database
        self._clock = clock
        self.max_retries = max_retries
        self.default_priority = default_priority
        self.stale_threshold = timedelta(seconds=stale_threshold_seconds)
        self.stuck_retry_delay = timedelta(seconds=stuck_retry_delay_seconds)
        self.queue_name = queue_name

    @classmethod
    def from_config(cls, database: Database, queue_config, clock: Clock = utc_now):
        """Build a service from a :class:`~mailqueue.config.QueueConfig`."""
        return cls(
            database,
            clock=clock,
            max_retries=queue_config.max_retries,
            default_priority=queue_config.default_priority,
            stale_threshold_seconds=queue_config.stale_threshold_seconds,
            stuck_retry_delay_seconds=queue_config.stuck_retry_delay_seconds,
        )

    # ------------------------------------------------------------------
    # Admission and dispatch
    # ------------------------------------------------------------------

    def enqueue(
        self,
        notification_id: str,
        priority: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> QueueItem:
        """Create a PENDING item for a notification record.

        Args:
            notification_id: Id of the correlated notification record
            priority: Lower values are served first (default from config)
            scheduled_at: Earliest dispatch time (default now)

        Returns:
            The new queue item

        Raises:
            DataIntegrityError: If the notification is already queued
        """
        now = self._clock()
        item = QueueItem(
            id=str(uuid.uuid4()),
            notification_id=notification_id,
            status=QueueStatus.PENDING,
            priority=self.default_priority if priority is None else priority,
            scheduled_at=scheduled_at or now,
            retry_count=0,
            max_retries=self.max_retries,
            queue_name=self.queue_name,
            created_at=now,
            updated_at=now,
        )

        with self._database.session() as session:
            QueueRepository(session).add(item)

        logger.info(
            f"Enqueued notification {notification_id}",
            extra={
                "event": "queue.item.enqueued",
                "queue_item_id": item.id,
                "notification_id": notification_id,
                "priority": item.priority,
                "scheduled_at": format_timestamp_for_log(item.scheduled_at),
            },
        )
        return item

    def get_next_batch(self, batch_size: int) -> List[QueueItem]:
        """Up to ``batch_size`` due PENDING items, highest priority first.

        Read-only: concurrent callers may see overlapping batches. Only
        :meth:`claim_for_processing` decides who processes an item.
        """
        if batch_size <= 0:
            return []

        with self._database.session() as session:
            return QueueRepository(session).find_due_pending(self._clock(), batch_size)

    def claim_for_processing(self, item_id: str, worker_id: str) -> Optional[QueueItem]:
        """Lease a PENDING item for ``worker_id``.

        Returns:
            The claimed item, or None if the item is unknown or no longer
            PENDING (another worker won the race)
        """
        if not worker_id:
            raise ValueError("worker_id must be a non-empty string")

        now = self._clock()
        with self._database.session() as session:
            repo = QueueRepository(session)
            claimed = repo.compare_and_set(
                item_id,
                {"status": QueueStatus.PENDING},
                {
                    "status": QueueStatus.PROCESSING,
                    "claimed_by": worker_id,
                    "claimed_at": now,
                    "updated_at": now,
                },
            )
            if not claimed:
                logger.debug(
                    f"Claim lost for queue item {item_id}",
                    extra={
                        "event": "queue.item.claim_lost",
                        "queue_item_id": item_id,
                        "worker_id": worker_id,
                    },
                )
                return None

            item = repo.get_by_id(item_id)

        logger.info(
            f"Claimed queue item {item_id}",
            extra={
                "event": "queue.item.claimed",
                "queue_item_id": item_id,
                "notification_id": item.notification_id,
                "worker_id": worker_id,
            },
        )
        return item

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    def mark_as_completed(self, item_id: str) -> QueueItem:
        """Transition an item to COMPLETED.

        Completing an already COMPLETED item is a no-op.

        Raises:
            QueueItemNotFoundError: If the item is unknown
            InvalidStateTransitionError: If the item is FAILED or CANCELLED
        """

        def plan(item: QueueItem, now: datetime) -> Optional[Dict[str, Any]]:
            if item.status == QueueStatus.COMPLETED:
                return None
            if item.status.is_terminal:
                raise InvalidStateTransitionError(
                    f"Cannot complete queue item {item.id} in status {item.status.value}",
                    current_status=item.status,
                )
            return {
                "status": QueueStatus.COMPLETED,
                "processed_at": now,
                "updated_at": now,
                **_CLEAR_CLAIM,
            }

        item = self._transition(item_id, plan)
        logger.info(
            f"Queue item {item_id} completed",
            extra={
                "event": "queue.item.completed",
                "queue_item_id": item_id,
                "notification_id": item.notification_id,
            },
        )
        return item

    def mark_as_failed(self, item_id: str, error: str) -> QueueItem:
        """Record a failed delivery attempt.

        While ``retry_count < max_retries`` the item moves to RETRY_SCHEDULED
        with ``scheduled_at = now + 2**retry_count minutes`` (pre-increment
        count) and ``retry_count`` is incremented. Otherwise it becomes FAILED.

        Raises:
            QueueItemNotFoundError: If the item is unknown
            InvalidStateTransitionError: If the item is not PROCESSING
        """

        def plan(item: QueueItem, now: datetime) -> Optional[Dict[str, Any]]:
            if item.status != QueueStatus.PROCESSING:
                raise InvalidStateTransitionError(
                    f"Cannot fail queue item {item.id} in status {item.status.value}",
                    current_status=item.status,
                )
            if item.can_retry():
                return {
                    "status": QueueStatus.RETRY_SCHEDULED,
                    "retry_count": item.retry_count + 1,
                    "last_error": error,
                    "scheduled_at": next_attempt_at(now, item.retry_count),
                    "updated_at": now,
                    **_CLEAR_CLAIM,
                }
            return {
                "status": QueueStatus.FAILED,
                "last_error": error,
                "processed_at": now,
                "updated_at": now,
                **_CLEAR_CLAIM,
            }

        item = self._transition(item_id, plan)

        if item.status == QueueStatus.RETRY_SCHEDULED:
            logger.warning(
                f"Queue item {item_id} failed, retry {item.retry_count}/{item.max_retries} "
                f"in {compute_backoff_minutes(item.retry_count - 1)} min",
                extra={
                    "event": "queue.item.retry_scheduled",
                    "queue_item_id": item_id,
                    "notification_id": item.notification_id,
                    "retry_count": item.retry_count,
                    "scheduled_at": format_timestamp_for_log(item.scheduled_at),
                    "error": error,
                },
            )
        else:
            logger.error(
                f"Queue item {item_id} permanently failed after {item.retry_count} retries",
                extra={
                    "event": "queue.item.failed",
                    "queue_item_id": item_id,
                    "notification_id": item.notification_id,
                    "retry_count": item.retry_count,
                    "error": error,
                },
            )
        return item

    def mark_as_permanently_failed(self, item_id: str, error: str) -> QueueItem:
        """Move a non-terminal item straight to FAILED without using a retry.

        Used for errors that no retry can fix, such as a missing template.

        Raises:
            QueueItemNotFoundError: If the item is unknown
            InvalidStateTransitionError: If the item is already terminal
        """

        def plan(item: QueueItem, now: datetime) -> Optional[Dict[str, Any]]:
            if item.status.is_terminal:
                raise InvalidStateTransitionError(
                    f"Cannot fail queue item {item.id} in status {item.status.value}",
                    current_status=item.status,
                )
            return {
                "status": QueueStatus.FAILED,
                "last_error": error,
                "processed_at": now,
                "updated_at": now,
                **_CLEAR_CLAIM,
            }

        item = self._transition(item_id, plan)
        logger.error(
            f"Queue item {item_id} failed without retry",
            extra={
                "event": "queue.item.failed",
                "queue_item_id": item_id,
                "notification_id": item.notification_id,
                "retry_count": item.retry_count,
                "error": error,
                "retryable": False,
            },
        )
        return item

    def cancel(self, item_id: str) -> QueueItem:
        """Cancel an item that has not been dispatched.

        Raises:
            QueueItemNotFoundError: If the item is unknown
            InvalidStateTransitionError: If the item is PROCESSING or terminal
        """

        def plan(item: QueueItem, now: datetime) -> Optional[Dict[str, Any]]:
            if item.status not in (QueueStatus.PENDING, QueueStatus.RETRY_SCHEDULED):
                raise InvalidStateTransitionError(
                    f"Cannot cancel queue item {item.id} in status {item.status.value}",
                    current_status=item.status,
                )
            return {
                "status": QueueStatus.CANCELLED,
                "processed_at": now,
                "updated_at": now,
            }

        item = self._transition(item_id, plan)
        logger.info(
            f"Queue item {item_id} cancelled",
            extra={
                "event": "queue.item.cancelled",
                "queue_item_id": item_id,
                "notification_id": item.notification_id,
            },
        )
        return item

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def process_retryable_items(self) -> int:
        """Re-admit due RETRY_SCHEDULED items to the PENDING pool.

        Returns:
            Number of items re-admitted
        """
        now = self._clock()
        with self._database.session() as session:
            candidates = QueueRepository(session).find_retryable(now)

        reactivated = 0
        for item in candidates:
            try:
                with self._database.session() as session:
                    updated = QueueRepository(session).compare_and_set(
                        item.id,
                        {
                            "status": QueueStatus.RETRY_SCHEDULED,
                            "retry_count": item.retry_count,
                        },
                        {
                            "status": QueueStatus.PENDING,
                            "scheduled_at": now,
                            "updated_at": now,
                        },
                    )
                if updated:
                    reactivated += 1
                    sweep_logger.debug(
                        f"Re-admitted queue item {item.id}",
                        extra={
                            "event": "sweep.retry.reactivated",
                            "queue_item_id": item.id,
                            "retry_count": item.retry_count,
                        },
                    )
            except Exception as e:
                sweep_logger.error(
                    f"Failed to re-admit queue item {item.id}: {e}",
                    extra={"event": "sweep.retry.item_error", "queue_item_id": item.id},
                    exc_info=True,
                )

        if candidates:
            sweep_logger.info(
                f"Retry sweep re-admitted {reactivated} of {len(candidates)} items",
                extra={
                    "event": "sweep.retry.completed",
                    "candidates": len(candidates),
                    "reactivated": reactivated,
                },
            )
        return reactivated

    def handle_stuck_items(self, stale_threshold: Optional[timedelta] = None) -> int:
        """Recover PROCESSING items whose lease is older than ``stale_threshold``.

        Retryable items are rescheduled after a fixed delay (not exponential,
        since the outcome of the abandoned attempt is unknown) with
        ``retry_count`` incremented. Others become FAILED.

        The notification record gets the same outcome in the same transaction,
        so a record whose item was failed here never stays PENDING.

        The claiming worker is not consulted: if it is merely slow it may
        still finish and the notification can be delivered twice.

        Returns:
            Number of items recovered
        """
        threshold = stale_threshold if stale_threshold is not None else self.stale_threshold
        now = self._clock()
        cutoff = now - threshold

        with self._database.session() as session:
            stuck_items = QueueRepository(session).find_stuck(cutoff)

        if stuck_items:
            sweep_logger.info(
                f"Found {len(stuck_items)} stuck processing items",
                extra={"event": "sweep.stuck.found", "count": len(stuck_items)},
            )

        recovered = 0
        for item in stuck_items:
            try:
                if item.can_retry():
                    changes = {
                        "status": QueueStatus.RETRY_SCHEDULED,
                        "retry_count": item.retry_count + 1,
                        "scheduled_at": now + self.stuck_retry_delay,
                        "last_error": STUCK_ITEM_ERROR,
                        "updated_at": now,
                        **_CLEAR_CLAIM,
                    }
                else:
                    changes = {
                        "status": QueueStatus.FAILED,
                        "last_error": STUCK_ITEM_ERROR,
                        "processed_at": now,
                        "updated_at": now,
                        **_CLEAR_CLAIM,
                    }

                with self._database.session() as session:
                    updated = QueueRepository(session).compare_and_set(
                        item.id,
                        {
                            "status": QueueStatus.PROCESSING,
                            "claimed_by": item.claimed_by,
                            "claimed_at": item.claimed_at,
                            "retry_count": item.retry_count,
                        },
                        changes,
                    )
                    if updated:
                        NotificationRepository(session).update_fields(
                            item.notification_id,
                            _record_outcome(item, changes, now),
                            allowed_statuses=_RECLAIMABLE_RECORD_STATUSES,
                        )

                if not updated:
                    continue

                recovered += 1
                if changes["status"] == QueueStatus.RETRY_SCHEDULED:
                    sweep_logger.warning(
                        f"Reset stuck item {item.id} for retry",
                        extra={
                            "event": "sweep.stuck.reclaimed",
                            "queue_item_id": item.id,
                            "claimed_by": item.claimed_by,
                            "retry_count": item.retry_count + 1,
                        },
                    )
                else:
                    sweep_logger.error(
                        f"Marked stuck item {item.id} as permanently failed",
                        extra={
                            "event": "sweep.stuck.failed",
                            "queue_item_id": item.id,
                            "claimed_by": item.claimed_by,
                        },
                    )
            except Exception as e:
                sweep_logger.error(
                    f"Failed to recover stuck item {item.id}: {e}",
                    extra={"event": "sweep.stuck.item_error", "queue_item_id": item.id},
                    exc_info=True,
                )

        return recovered

    def cleanup_old_items(self, days_to_keep: int = 30) -> int:
        """Delete COMPLETED and FAILED items processed more than ``days_to_keep`` ago.

        Returns:
            Number of items deleted
        """
        if days_to_keep < 0:
            raise ValueError(f"days_to_keep must be non-negative, got {days_to_keep}")

        cutoff = self._clock() - timedelta(days=days_to_keep)
        with self._database.session() as session:
            deleted = QueueRepository(session).delete_processed_before(cutoff)

        sweep_logger.info(
            f"Cleaned up {deleted} old queue items",
            extra={
                "event": "sweep.retention.completed",
                "deleted": deleted,
                "cutoff": format_timestamp_for_log(cutoff),
            },
        )
        return deleted

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_queue_stats(self) -> QueueStats:
        with self._database.session() as session:
            counts = QueueRepository(session).count_by_status()

        return QueueStats(
            pending=counts.get(QueueStatus.PENDING, 0),
            processing=counts.get(QueueStatus.PROCESSING, 0),
            completed=counts.get(QueueStatus.COMPLETED, 0),
            failed=counts.get(QueueStatus.FAILED, 0),
            retry_scheduled=counts.get(QueueStatus.RETRY_SCHEDULED, 0),
            cancelled=counts.get(QueueStatus.CANCELLED, 0),
        )

    def get_item(self, item_id: str) -> Optional[QueueItem]:
        with self._database.session() as session:
            return QueueRepository(session).get_by_id(item_id)

    def get_by_notification_id(self, notification_id: str) -> Optional[QueueItem]:
        with self._database.session() as session:
            return QueueRepository(session).get_by_notification_id(notification_id)

    def get_items_by_status(self, status: QueueStatus, limit: int = 100) -> List[QueueItem]:
        with self._database.session() as session:
            return QueueRepository(session).list_by_status(status, limit)

    # ------------------------------------------------------------------

    def _transition(self, item_id: str, plan: TransitionPlan) -> QueueItem:
        """Read an item, compute its next state and write it with compare-and-set.

        ``plan`` returns the column changes, or None to leave the item as is.
        It may raise to reject the transition. On a lost race the item is
        re-read and ``plan`` consulted again.
        """
        for attempt in range(1, _CAS_ATTEMPTS + 1):
            with self._database.session() as session:
                repo = QueueRepository(session)
                item = repo.get_by_id(item_id)
                if item is None:
                    raise QueueItemNotFoundError(item_id)

                changes = plan(item, self._clock())
                if changes is None:
                    return item

                updated = repo.compare_and_set(
                    item_id,
                    {"status": item.status, "retry_count": item.retry_count},
                    changes,
                )
                if updated:
                    return repo.get_by_id(item_id)

            logger.debug(
                f"Concurrent update on queue item {item_id}, re-reading (attempt {attempt})",
                extra={"event": "queue.item.cas_conflict", "queue_item_id": item_id},
            )

        raise QueueError(
            f"Gave up updating queue item {item_id} after {_CAS_ATTEMPTS} concurrent modifications"
        )


def _record_outcome(item: QueueItem, changes: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Notification record columns mirroring a stuck item's new state."""
    outcome = {
        "status": NotificationStatus.FAILED,
        "error_message": changes["last_error"],
        "retry_count": changes.get("retry_count", item.retry_count),
        "updated_at": now,
    }
    if changes["status"] == QueueStatus.RETRY_SCHEDULED:
        outcome["scheduled_at"] = changes["scheduled_at"]
    return outcome
