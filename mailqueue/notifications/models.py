"""Data models and exceptions for the delivery pipeline.

This module defines result types and custom exceptions used by the
preference gate, template renderer, transport and delivery service.
"""

from dataclasses import dataclass
from typing import Optional

from mailqueue.domain.models import NotificationRecord, NotificationType


class NotificationError(Exception):
    """Base exception for notification-related errors."""

    pass


class NotificationNotFoundError(NotificationError):
    """Raised when a notification id is unknown."""

    def __init__(self, notification_id: str):
        self.notification_id = notification_id
        super().__init__(f"Notification not found: {notification_id}")


class NotificationBlockedError(NotificationError):
    """Raised when the recipient's preferences disable this notification type."""

    def __init__(self, user_id: str, notification_type: NotificationType):
        self.user_id = user_id
        self.notification_type = notification_type
        super().__init__(
            f"Notification type {NotificationType(notification_type).value} "
            f"is disabled for user {user_id}"
        )


class NotificationTemplateError(NotificationError):
    """Raised when template rendering fails due to syntax or missing variables."""

    pass


class TemplateNotFoundError(NotificationTemplateError):
    """Raised when a template is absent or inactive. Never retried."""

    def __init__(self, template_name: str):
        self.template_name = template_name
        super().__init__(f"Template not found: {template_name}")


class TransportError(NotificationError):
    """Raised when the transport could not hand the message off. Retryable."""

    pass


class SMTPDeliveryError(TransportError):
    """Raised when SMTP delivery fails (protocol error, network error or timeout)."""

    pass


@dataclass(frozen=True)
class RenderedEmail:
    """Subject and bodies produced from a template."""

    subject: str
    html_body: str
    text_body: str


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt for a notification.

    Attributes:
        record: Notification record after the attempt
        status: "sent", "retry_scheduled", "failed", "skipped" or "deferred"
        error: Error message if the attempt failed
    """

    record: NotificationRecord
    status: str
    error: Optional[str] = None

    def is_success(self) -> bool:
        return self.status == "sent"
