"""Core domain models for the notification queue.

This module defines the data structures shared by the queue, the delivery
pipeline and the persistence layer:
- QueueItem: one scheduled delivery job and its lease/retry state
- NotificationRecord: the message itself and its latest observed outcome
- NotificationPreference: per-user opt-outs and quiet hours
- EmailTemplate: stored subject/body templates
- NotificationRequest: what callers submit to the delivery pipeline
- QueueStats: per-status counts
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_PRIORITY = 3
DEFAULT_MAX_RETRIES = 3
DEFAULT_QUEUE_NAME = "email-notifications"


class QueueStatus(str, Enum):
    """Lifecycle states of a queue item."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_QUEUE_STATUSES


TERMINAL_QUEUE_STATUSES = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.CANCELLED}
)


class NotificationStatus(str, Enum):
    """Reported delivery status of a notification record."""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class NotificationType(str, Enum):
    """Kinds of notification a user can opt out of individually."""

    REGISTRATION_CONFIRMATION = "REGISTRATION_CONFIRMATION"
    APPLICATION_STATUS_UPDATE = "APPLICATION_STATUS_UPDATE"
    JOB_APPLICATION_RECEIVED = "JOB_APPLICATION_RECEIVED"
    EMPLOYER_APPROVAL = "EMPLOYER_APPROVAL"
    SYSTEM_NOTIFICATION = "SYSTEM_NOTIFICATION"


def _to_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class QueueItem(BaseModel):
    """A delivery job in the queue.

    The queue item is the only owner of attempt and backoff bookkeeping. It
    references its notification record by id and never owns it.

    Invariants:
    - status == PROCESSING implies claimed_by and claimed_at are set
    - claimed_by and claimed_at are None in every other status
    - retry_count never decreases and never exceeds max_retries
    """

    id: str = Field(..., description="Queue item identifier")
    notification_id: str = Field(..., description="Correlated notification record id")
    status: QueueStatus = Field(QueueStatus.PENDING, description="Current lifecycle state")
    priority: int = Field(DEFAULT_PRIORITY, description="Lower values are served first")
    scheduled_at: datetime = Field(..., description="Earliest dispatch time (UTC)")
    claimed_by: Optional[str] = Field(None, description="Worker holding the lease")
    claimed_at: Optional[datetime] = Field(None, description="Lease start (UTC)")
    retry_count: int = Field(0, ge=0, description="Failed attempts so far")
    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0, description="Retry ceiling")
    last_error: Optional[str] = Field(None, description="Most recent failure reason")
    queue_name: str = Field(DEFAULT_QUEUE_NAME, description="Logical queue name")
    created_at: datetime = Field(..., description="When the item was enqueued (UTC)")
    updated_at: datetime = Field(..., description="Last state change (UTC)")
    processed_at: Optional[datetime] = Field(None, description="When a terminal state was reached")

    @field_validator("scheduled_at", "claimed_at", "created_at", "updated_at", "processed_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Ensure datetimes are timezone-aware UTC."""
        return _to_utc(v)

    @model_validator(mode="after")
    def validate_claim_fields(self):
        """A PROCESSING item must carry its lease holder and lease start."""
        if self.status == QueueStatus.PROCESSING and (
            self.claimed_by is None or self.claimed_at is None
        ):
            raise ValueError("PROCESSING queue item must have claimed_by and claimed_at")
        return self

    def can_retry(self) -> bool:
        """Check whether another failure may still be retried."""
        return self.retry_count < self.max_retries

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class NotificationRecord(BaseModel):
    """A message to deliver and its latest observed delivery outcome.

    ``retry_count`` and ``error_message`` mirror the correlated queue item
    after each attempt; they are a reported projection, not a second retry
    counter.
    """

    id: str = Field(..., description="Notification identifier")
    recipient_email: str = Field(..., description="Recipient address")
    recipient_name: Optional[str] = Field(None, description="Recipient display name")
    template_name: str = Field(..., description="Template to render")
    template_variables: Dict[str, Any] = Field(
        default_factory=dict, description="Variables passed to the template"
    )
    notification_type: NotificationType = Field(
        NotificationType.SYSTEM_NOTIFICATION, description="Notification category"
    )
    user_id: Optional[str] = Field(None, description="Target user, if known")
    status: NotificationStatus = Field(NotificationStatus.PENDING)
    priority: int = Field(DEFAULT_PRIORITY, description="Queue priority used on admission")
    subject: Optional[str] = Field(None, description="Rendered subject")
    html_content: Optional[str] = Field(None, description="Rendered HTML body")
    text_content: Optional[str] = Field(None, description="Rendered plain text body")
    scheduled_at: datetime = Field(..., description="When delivery is next due (UTC)")
    sent_at: Optional[datetime] = Field(None, description="When delivery succeeded (UTC)")
    retry_count: int = Field(0, ge=0)
    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0)
    error_message: Optional[str] = Field(None)
    deferred: bool = Field(False, description="Held back for quiet hours and not queued yet")
    created_at: datetime = Field(...)
    updated_at: datetime = Field(...)

    @field_validator("scheduled_at", "sent_at", "created_at", "updated_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Ensure datetimes are timezone-aware UTC."""
        return _to_utc(v)


class NotificationRequest(BaseModel):
    """A request to send one templated email."""

    recipient_email: str = Field(..., min_length=3, description="Recipient address")
    recipient_name: Optional[str] = Field(None, description="Recipient display name")
    template_name: str = Field(..., min_length=1, description="Template to render")
    template_variables: Dict[str, Any] = Field(default_factory=dict)
    notification_type: NotificationType = Field(NotificationType.SYSTEM_NOTIFICATION)
    user_id: Optional[str] = Field(None, description="Target user for preference checks")
    priority: Optional[int] = Field(None, ge=1, le=5, description="Queue priority override")
    scheduled_at: Optional[datetime] = Field(None, description="Deliver no earlier than (UTC)")

    @field_validator("recipient_email", "template_name")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        """Strip whitespace from string fields."""
        stripped = v.strip()
        if not stripped:
            raise ValueError("Field cannot be empty or whitespace-only")
        return stripped

    @field_validator("scheduled_at")
    @classmethod
    def ensure_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _to_utc(v)


class NotificationPreference(BaseModel):
    """Per-user notification preferences.

    Quiet hours are whole hours of the day in the user's timezone. The window
    is ``[quiet_hours_start, quiet_hours_end)`` and wraps past midnight when
    start > end. Equal values disable quiet hours.
    """

    user_id: str = Field(..., min_length=1)
    user_email: Optional[str] = None
    user_name: Optional[str] = None
    email_enabled: bool = True
    registration_confirmation_enabled: bool = True
    application_status_update_enabled: bool = True
    job_application_received_enabled: bool = True
    employer_approval_enabled: bool = True
    system_notification_enabled: bool = True
    quiet_hours_start: int = Field(22, ge=0, le=23)
    quiet_hours_end: int = Field(8, ge=0, le=23)
    timezone: str = Field("UTC", description="IANA timezone name")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_type_enabled(self, notification_type: NotificationType) -> bool:
        """Check the per-type flag for a notification type."""
        return bool(getattr(self, preference_field_for(notification_type)))


def preference_field_for(notification_type: NotificationType) -> str:
    """Name of the NotificationPreference flag that gates a notification type."""
    return f"{NotificationType(notification_type).value.lower()}_enabled"


class EmailTemplate(BaseModel):
    """A stored email template.

    ``subject`` uses literal ``${key}`` placeholders; ``html_content`` and
    ``text_content`` are Jinja2 sources.
    """

    name: str = Field(..., min_length=1)
    subject: str = Field(...)
    html_content: str = Field(...)
    text_content: Optional[str] = None
    default_variables: Dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class QueueStats:
    """Count of queue items per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retry_scheduled: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return (
            self.pending
            + self.processing
            + self.completed
            + self.failed
            + self.retry_scheduled
            + self.cancelled
        )

    def as_dict(self) -> Dict[str, int]:
        return {
            QueueStatus.PENDING.value: self.pending,
            QueueStatus.PROCESSING.value: self.processing,
            QueueStatus.COMPLETED.value: self.completed,
            QueueStatus.FAILED.value: self.failed,
            QueueStatus.RETRY_SCHEDULED.value: self.retry_scheduled,
            QueueStatus.CANCELLED.value: self.cancelled,
            "TOTAL": self.total,
        }
