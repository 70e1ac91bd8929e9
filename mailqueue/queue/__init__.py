"""Notification queue: admission, claiming, outcome recording and sweeps."""

from .backoff import compute_backoff_minutes, next_attempt_at
from .exceptions import (
    InvalidStateTransitionError,
    QueueError,
    QueueItemNotFoundError,
)
from .service import STUCK_ITEM_ERROR, NotificationQueueService

__all__ = [
    "NotificationQueueService",
    "STUCK_ITEM_ERROR",
    "compute_backoff_minutes",
    "next_attempt_at",
    "QueueError",
    "QueueItemNotFoundError",
    "InvalidStateTransitionError",
]
