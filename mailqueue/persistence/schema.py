"""Database schema definition and ORM models.

Timestamps are stored as fixed-width ISO 8601 strings (see
``mailqueue.utils.timestamps.STORAGE_FORMAT``) so that ordering and range
filters work as plain string comparisons on every backend.
"""

import logging

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String, Text, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base

from mailqueue.domain.models import (
    EmailTemplate,
    NotificationPreference,
    NotificationRecord,
    NotificationStatus,
    NotificationType,
    QueueItem,
    QueueStatus,
)
from mailqueue.utils.timestamps import from_storage, to_storage

logger = logging.getLogger(__name__)

Base = declarative_base()


class QueueItemModel(Base):
    """ORM model for the notification_queue table."""

    __tablename__ = "notification_queue"

    id = Column(String(64), primary_key=True, nullable=False)
    # One queue item per notification record
    notification_id = Column(String(64), nullable=False, unique=True)
    status = Column(String(20), nullable=False)
    priority = Column(Integer, nullable=False)
    queue_name = Column(String(100), nullable=False)

    scheduled_at = Column(String(32), nullable=False)
    claimed_by = Column(String(255), nullable=True)
    claimed_at = Column(String(32), nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False)
    last_error = Column(Text, nullable=True)

    created_at = Column(String(32), nullable=False)
    updated_at = Column(String(32), nullable=False)
    processed_at = Column(String(32), nullable=True)

    __table_args__ = (
        # Dispatch: WHERE status = ? AND scheduled_at <= ? ORDER BY priority, scheduled_at
        Index("idx_queue_dispatch", "status", "priority", "scheduled_at"),
        Index("idx_queue_claimed_at", "status", "claimed_at"),
        Index("idx_queue_processed_at", "status", "processed_at"),
    )

    def to_domain(self) -> QueueItem:
        return QueueItem(
            id=self.id,
            notification_id=self.notification_id,
            status=QueueStatus(self.status),
            priority=self.priority,
            queue_name=self.queue_name,
            scheduled_at=from_storage(self.scheduled_at),
            claimed_by=self.claimed_by,
            claimed_at=from_storage(self.claimed_at),
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            last_error=self.last_error,
            created_at=from_storage(self.created_at),
            updated_at=from_storage(self.updated_at),
            processed_at=from_storage(self.processed_at),
        )

    @classmethod
    def from_domain(cls, item: QueueItem) -> "QueueItemModel":
        return cls(
            id=item.id,
            notification_id=item.notification_id,
            status=item.status.value,
            priority=item.priority,
            queue_name=item.queue_name,
            scheduled_at=to_storage(item.scheduled_at),
            claimed_by=item.claimed_by,
            claimed_at=to_storage(item.claimed_at),
            retry_count=item.retry_count,
            max_retries=item.max_retries,
            last_error=item.last_error,
            created_at=to_storage(item.created_at),
            updated_at=to_storage(item.updated_at),
            processed_at=to_storage(item.processed_at),
        )


class NotificationModel(Base):
    """ORM model for the email_notifications table."""

    __tablename__ = "email_notifications"

    id = Column(String(64), primary_key=True, nullable=False)
    recipient_email = Column(String(320), nullable=False)
    recipient_name = Column(String(255), nullable=True)
    template_name = Column(String(255), nullable=False)
    template_variables = Column(JSON, nullable=False, default=dict)
    notification_type = Column(String(50), nullable=False)
    user_id = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False)
    priority = Column(Integer, nullable=False)

    subject = Column(Text, nullable=True)
    html_content = Column(Text, nullable=True)
    text_content = Column(Text, nullable=True)

    scheduled_at = Column(String(32), nullable=False)
    sent_at = Column(String(32), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False)
    error_message = Column(Text, nullable=True)
    deferred = Column(Boolean, nullable=False, default=False)

    created_at = Column(String(32), nullable=False)
    updated_at = Column(String(32), nullable=False)

    __table_args__ = (
        Index("idx_notifications_recipient", "recipient_email", "created_at"),
        Index("idx_notifications_user", "user_id", "created_at"),
        Index("idx_notifications_status_scheduled", "status", "scheduled_at"),
    )

    def to_domain(self) -> NotificationRecord:
        return NotificationRecord(
            id=self.id,
            recipient_email=self.recipient_email,
            recipient_name=self.recipient_name,
            template_name=self.template_name,
            template_variables=dict(self.template_variables or {}),
            notification_type=NotificationType(self.notification_type),
            user_id=self.user_id,
            status=NotificationStatus(self.status),
            priority=self.priority,
            subject=self.subject,
            html_content=self.html_content,
            text_content=self.text_content,
            scheduled_at=from_storage(self.scheduled_at),
            sent_at=from_storage(self.sent_at),
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            error_message=self.error_message,
            deferred=bool(self.deferred),
            created_at=from_storage(self.created_at),
            updated_at=from_storage(self.updated_at),
        )

    @classmethod
    def from_domain(cls, record: NotificationRecord) -> "NotificationModel":
        return cls(
            id=record.id,
            recipient_email=record.recipient_email,
            recipient_name=record.recipient_name,
            template_name=record.template_name,
            template_variables=dict(record.template_variables),
            notification_type=record.notification_type.value,
            user_id=record.user_id,
            status=record.status.value,
            priority=record.priority,
            subject=record.subject,
            html_content=record.html_content,
            text_content=record.text_content,
            scheduled_at=to_storage(record.scheduled_at),
            sent_at=to_storage(record.sent_at),
            retry_count=record.retry_count,
            max_retries=record.max_retries,
            error_message=record.error_message,
            deferred=record.deferred,
            created_at=to_storage(record.created_at),
            updated_at=to_storage(record.updated_at),
        )


class PreferenceModel(Base):
    """ORM model for the notification_preferences table."""

    __tablename__ = "notification_preferences"

    user_id = Column(String(64), primary_key=True, nullable=False)
    user_email = Column(String(320), nullable=True)
    user_name = Column(String(255), nullable=True)
    email_enabled = Column(Boolean, nullable=False, default=True)
    registration_confirmation_enabled = Column(Boolean, nullable=False, default=True)
    application_status_update_enabled = Column(Boolean, nullable=False, default=True)
    job_application_received_enabled = Column(Boolean, nullable=False, default=True)
    employer_approval_enabled = Column(Boolean, nullable=False, default=True)
    system_notification_enabled = Column(Boolean, nullable=False, default=True)
    quiet_hours_start = Column(Integer, nullable=False)
    quiet_hours_end = Column(Integer, nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    created_at = Column(String(32), nullable=True)
    updated_at = Column(String(32), nullable=True)

    FLAG_COLUMNS = (
        "email_enabled",
        "registration_confirmation_enabled",
        "application_status_update_enabled",
        "job_application_received_enabled",
        "employer_approval_enabled",
        "system_notification_enabled",
    )

    def to_domain(self) -> NotificationPreference:
        return NotificationPreference(
            user_id=self.user_id,
            user_email=self.user_email,
            user_name=self.user_name,
            quiet_hours_start=self.quiet_hours_start,
            quiet_hours_end=self.quiet_hours_end,
            timezone=self.timezone,
            created_at=from_storage(self.created_at),
            updated_at=from_storage(self.updated_at),
            **{flag: bool(getattr(self, flag)) for flag in self.FLAG_COLUMNS},
        )

    def apply(self, preference: NotificationPreference) -> None:
        """Copy mutable fields from a domain model onto this row."""
        self.user_email = preference.user_email
        self.user_name = preference.user_name
        self.quiet_hours_start = preference.quiet_hours_start
        self.quiet_hours_end = preference.quiet_hours_end
        self.timezone = preference.timezone
        for flag in self.FLAG_COLUMNS:
            setattr(self, flag, getattr(preference, flag))


class TemplateModel(Base):
    """ORM model for the email_templates table."""

    __tablename__ = "email_templates"

    name = Column(String(255), primary_key=True, nullable=False)
    subject = Column(Text, nullable=False)
    html_content = Column(Text, nullable=False)
    text_content = Column(Text, nullable=True)
    default_variables = Column(JSON, nullable=False, default=dict)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(String(32), nullable=True)
    updated_at = Column(String(32), nullable=True)

    def to_domain(self) -> EmailTemplate:
        return EmailTemplate(
            name=self.name,
            subject=self.subject,
            html_content=self.html_content,
            text_content=self.text_content,
            default_variables=dict(self.default_variables or {}),
            active=bool(self.active),
            created_at=from_storage(self.created_at),
            updated_at=from_storage(self.updated_at),
        )

    def apply(self, template: EmailTemplate) -> None:
        """Copy mutable fields from a domain model onto this row."""
        self.subject = template.subject
        self.html_content = template.html_content
        self.text_content = template.text_content
        self.default_variables = dict(template.default_variables)
        self.active = template.active


def create_schema(engine: Engine) -> None:
    """Create all tables and indexes if they don't exist (idempotent).

    Args:
        engine: SQLAlchemy engine instance
    """
    try:
        Base.metadata.create_all(engine, checkfirst=True)
        tables = inspect(engine).get_table_names()
        logger.info(f"Database schema ready. Tables: {', '.join(sorted(tables))}")
    except Exception as e:
        logger.error(f"Failed to create database schema: {e}", exc_info=True)
        raise
