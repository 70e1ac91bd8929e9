"""Domain models for the mail queue."""

from .models import (
    EmailTemplate,
    NotificationPreference,
    NotificationRecord,
    NotificationRequest,
    NotificationStatus,
    NotificationType,
    QueueItem,
    QueueStats,
    QueueStatus,
)

__all__ = [
    "QueueItem",
    "QueueStatus",
    "QueueStats",
    "NotificationRecord",
    "NotificationRequest",
    "NotificationStatus",
    "NotificationType",
    "NotificationPreference",
    "EmailTemplate",
]
