"""Data access layer (repositories) for persistence operations.

Repositories encapsulate database operations and return domain models rather
than ORM models. Every queue status change goes through
:meth:`QueueRepository.compare_and_set`, a single ``UPDATE ... WHERE`` whose
row count tells the caller whether its precondition still held.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from mailqueue.domain.models import (
    EmailTemplate,
    NotificationPreference,
    NotificationRecord,
    NotificationStatus,
    QueueItem,
    QueueStatus,
)
from mailqueue.utils.timestamps import to_storage

from .exceptions import DataIntegrityError, PersistenceError
from .schema import NotificationModel, PreferenceModel, QueueItemModel, TemplateModel

logger = logging.getLogger(__name__)


def _column_value(value: Any) -> Any:
    """Convert a domain value to its stored representation."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_storage(value)
    return value


def _column_values(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: _column_value(value) for key, value in values.items()}


class QueueRepository:
    """Repository for queue item operations."""

    def __init__(self, session: Session):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy session for database operations
        """
        self.session = session

    def add(self, item: QueueItem) -> QueueItem:
        """Insert a new queue item.

        Raises:
            DataIntegrityError: If the id or notification id is already queued
            PersistenceError: If database error occurs
        """
        try:
            self.session.add(QueueItemModel.from_domain(item))
            self.session.flush()
            return item

        except IntegrityError as e:
            logger.error(f"Integrity error inserting queue item {item.id}: {e}")
            raise DataIntegrityError(
                f"Queue item for notification {item.notification_id} already exists"
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"Error inserting queue item {item.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to insert queue item: {e}") from e

    def get_by_id(self, item_id: str) -> Optional[QueueItem]:
        """Retrieve a queue item by id, or None."""
        try:
            model = self.session.get(QueueItemModel, item_id, populate_existing=True)
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving queue item {item_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve queue item: {e}") from e

    def get_by_notification_id(self, notification_id: str) -> Optional[QueueItem]:
        """Retrieve the queue item correlated with a notification, or None."""
        try:
            stmt = (
                select(QueueItemModel)
                .where(QueueItemModel.notification_id == notification_id)
                .execution_options(populate_existing=True)
            )
            model = self.session.execute(stmt).scalar_one_or_none()
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(
                f"Error retrieving queue item for notification {notification_id}: {e}",
                exc_info=True,
            )
            raise PersistenceError(f"Failed to retrieve queue item: {e}") from e

    def find_due_pending(self, now: datetime, limit: int) -> List[QueueItem]:
        """PENDING items due at ``now`` in dispatch order.

        Ordered by priority ascending, then scheduled_at, then created_at.
        """
        try:
            stmt = (
                select(QueueItemModel)
                .where(
                    QueueItemModel.status == QueueStatus.PENDING.value,
                    QueueItemModel.scheduled_at <= to_storage(now),
                )
                .order_by(
                    QueueItemModel.priority.asc(),
                    QueueItemModel.scheduled_at.asc(),
                    QueueItemModel.created_at.asc(),
                )
                .limit(limit)
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars()]

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving pending batch: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve pending batch: {e}") from e

    def compare_and_set(
        self,
        item_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> bool:
        """Apply ``changes`` only if every ``expected`` column still matches.

        Both mappings are keyed by column name. A None expectation matches
        SQL NULL.

        Returns:
            True if exactly one row was updated
        """
        try:
            conditions = [QueueItemModel.id == item_id]
            for column, value in expected.items():
                attribute = getattr(QueueItemModel, column)
                if value is None:
                    conditions.append(attribute.is_(None))
                else:
                    conditions.append(attribute == _column_value(value))

            stmt = (
                update(QueueItemModel)
                .where(*conditions)
                .values(**_column_values(changes))
                .execution_options(synchronize_session=False)
            )
            result = self.session.execute(stmt)
            return result.rowcount == 1

        except SQLAlchemyError as e:
            logger.error(f"Error updating queue item {item_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update queue item: {e}") from e

    def find_retryable(self, now: datetime) -> List[QueueItem]:
        """RETRY_SCHEDULED items that are due and within their retry ceiling."""
        try:
            stmt = (
                select(QueueItemModel)
                .where(
                    QueueItemModel.status == QueueStatus.RETRY_SCHEDULED.value,
                    QueueItemModel.retry_count <= QueueItemModel.max_retries,
                    QueueItemModel.scheduled_at <= to_storage(now),
                )
                .order_by(QueueItemModel.scheduled_at.asc())
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars()]

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving retryable items: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve retryable items: {e}") from e

    def find_stuck(self, cutoff: datetime) -> List[QueueItem]:
        """PROCESSING items whose lease started before ``cutoff``."""
        try:
            stmt = (
                select(QueueItemModel)
                .where(
                    QueueItemModel.status == QueueStatus.PROCESSING.value,
                    QueueItemModel.claimed_at < to_storage(cutoff),
                )
                .order_by(QueueItemModel.claimed_at.asc())
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars()]

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving stuck items: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve stuck items: {e}") from e

    def delete_processed_before(self, cutoff: datetime) -> int:
        """Delete COMPLETED and FAILED items processed before ``cutoff``.

        Returns:
            Number of rows deleted
        """
        try:
            stmt = delete(QueueItemModel).where(
                QueueItemModel.status.in_(
                    [QueueStatus.COMPLETED.value, QueueStatus.FAILED.value]
                ),
                QueueItemModel.processed_at.is_not(None),
                QueueItemModel.processed_at < to_storage(cutoff),
            )
            result = self.session.execute(stmt)
            return result.rowcount

        except SQLAlchemyError as e:
            logger.error(f"Error deleting old queue items: {e}", exc_info=True)
            raise PersistenceError(f"Failed to delete old queue items: {e}") from e

    def count_by_status(self) -> Dict[QueueStatus, int]:
        """Count items grouped by status (absent statuses are omitted)."""
        try:
            stmt = select(QueueItemModel.status, func.count()).group_by(QueueItemModel.status)
            return {QueueStatus(status): count for status, count in self.session.execute(stmt)}

        except SQLAlchemyError as e:
            logger.error(f"Error counting queue items: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count queue items: {e}") from e

    def list_by_status(self, status: QueueStatus, limit: int) -> List[QueueItem]:
        try:
            stmt = (
                select(QueueItemModel)
                .where(QueueItemModel.status == QueueStatus(status).value)
                .order_by(QueueItemModel.created_at.asc())
                .limit(limit)
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars()]

        except SQLAlchemyError as e:
            logger.error(f"Error listing {status} queue items: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list queue items: {e}") from e


class NotificationRepository:
    """Repository for notification record operations."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, record: NotificationRecord) -> NotificationRecord:
        """Insert a new notification record.

        Raises:
            DataIntegrityError: If the id already exists
            PersistenceError: If database error occurs
        """
        try:
            self.session.add(NotificationModel.from_domain(record))
            self.session.flush()
            return record

        except IntegrityError as e:
            logger.error(f"Integrity error inserting notification {record.id}: {e}")
            raise DataIntegrityError(f"Notification {record.id} already exists") from e
        except SQLAlchemyError as e:
            logger.error(f"Error inserting notification {record.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to insert notification: {e}") from e

    def get_by_id(self, notification_id: str) -> Optional[NotificationRecord]:
        try:
            model = self.session.get(NotificationModel, notification_id, populate_existing=True)
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving notification {notification_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve notification: {e}") from e

    def update_fields(
        self,
        notification_id: str,
        changes: Mapping[str, Any],
        expected_status: Optional[NotificationStatus] = None,
        allowed_statuses: Optional[Iterable[NotificationStatus]] = None,
    ) -> bool:
        """Update columns of one record, optionally guarded by its status.

        ``expected_status`` requires one exact status; ``allowed_statuses``
        accepts any of several.

        Returns:
            True if the record was updated
        """
        try:
            conditions = [NotificationModel.id == notification_id]
            if expected_status is not None:
                conditions.append(
                    NotificationModel.status == NotificationStatus(expected_status).value
                )
            if allowed_statuses is not None:
                conditions.append(
                    NotificationModel.status.in_(
                        [NotificationStatus(status).value for status in allowed_statuses]
                    )
                )

            stmt = (
                update(NotificationModel)
                .where(*conditions)
                .values(**_column_values(changes))
                .execution_options(synchronize_session=False)
            )
            result = self.session.execute(stmt)
            return result.rowcount == 1

        except SQLAlchemyError as e:
            logger.error(f"Error updating notification {notification_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to update notification: {e}") from e

    def find_deferred_due(self, now: datetime, limit: int = 100) -> List[NotificationRecord]:
        """Deferred PENDING records with no queue item whose scheduled time has come."""
        try:
            stmt = (
                select(NotificationModel)
                .outerjoin(
                    QueueItemModel,
                    QueueItemModel.notification_id == NotificationModel.id,
                )
                .where(
                    QueueItemModel.id.is_(None),
                    NotificationModel.deferred.is_(True),
                    NotificationModel.status == NotificationStatus.PENDING.value,
                    NotificationModel.scheduled_at <= to_storage(now),
                )
                .order_by(NotificationModel.scheduled_at.asc())
                .limit(limit)
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars()]

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving deferred notifications: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve deferred notifications: {e}") from e

    def find_by_recipient(self, recipient_email: str, limit: int) -> List[NotificationRecord]:
        """Most recent records for a recipient address."""
        try:
            stmt = (
                select(NotificationModel)
                .where(NotificationModel.recipient_email == recipient_email)
                .order_by(NotificationModel.created_at.desc())
                .limit(limit)
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars()]

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving notifications for {recipient_email}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve notifications: {e}") from e

    def find_by_user(self, user_id: str, limit: int) -> List[NotificationRecord]:
        """Most recent records for a user id."""
        try:
            stmt = (
                select(NotificationModel)
                .where(NotificationModel.user_id == user_id)
                .order_by(NotificationModel.created_at.desc())
                .limit(limit)
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars()]

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving notifications for user {user_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve notifications: {e}") from e


class PreferenceRepository:
    """Repository for per-user notification preferences."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: str) -> Optional[NotificationPreference]:
        try:
            model = self.session.get(PreferenceModel, user_id)
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving preferences for {user_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve preferences: {e}") from e

    def save(self, preference: NotificationPreference, now: datetime) -> NotificationPreference:
        """Insert or update preferences for ``preference.user_id``.

        Returns:
            The stored preferences
        """
        try:
            model = self.session.get(PreferenceModel, preference.user_id)
            if model is None:
                model = PreferenceModel(user_id=preference.user_id, created_at=to_storage(now))
                self.session.add(model)
            model.apply(preference)
            model.updated_at = to_storage(now)
            self.session.flush()
            return model.to_domain()

        except IntegrityError as e:
            logger.error(f"Integrity error saving preferences for {preference.user_id}: {e}")
            raise DataIntegrityError(f"Failed to save preferences: {e}") from e
        except SQLAlchemyError as e:
            logger.error(
                f"Error saving preferences for {preference.user_id}: {e}", exc_info=True
            )
            raise PersistenceError(f"Failed to save preferences: {e}") from e

    def delete(self, user_id: str) -> bool:
        """Delete preferences for a user. Returns True if a row was removed."""
        try:
            stmt = delete(PreferenceModel).where(PreferenceModel.user_id == user_id)
            return self.session.execute(stmt).rowcount == 1

        except SQLAlchemyError as e:
            logger.error(f"Error deleting preferences for {user_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to delete preferences: {e}") from e


class TemplateRepository:
    """Repository for stored email templates."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, name: str) -> Optional[EmailTemplate]:
        try:
            model = self.session.get(TemplateModel, name)
            return model.to_domain() if model is not None else None

        except SQLAlchemyError as e:
            logger.error(f"Error retrieving template {name}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve template: {e}") from e

    def exists(self, name: str) -> bool:
        try:
            stmt = select(func.count()).where(TemplateModel.name == name)
            return self.session.execute(stmt).scalar_one() > 0

        except SQLAlchemyError as e:
            logger.error(f"Error checking template {name}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to check template: {e}") from e

    def save(self, template: EmailTemplate, now: datetime) -> EmailTemplate:
        """Insert or update a template by name."""
        try:
            model = self.session.get(TemplateModel, template.name)
            if model is None:
                model = TemplateModel(name=template.name, created_at=to_storage(now))
                self.session.add(model)
            model.apply(template)
            model.updated_at = to_storage(now)
            self.session.flush()
            return model.to_domain()

        except SQLAlchemyError as e:
            logger.error(f"Error saving template {template.name}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save template: {e}") from e

    def list_active(self) -> List[EmailTemplate]:
        try:
            stmt = (
                select(TemplateModel)
                .where(TemplateModel.active)
                .order_by(TemplateModel.name.asc())
            )
            return [model.to_domain() for model in self.session.execute(stmt).scalars()]

        except SQLAlchemyError as e:
            logger.error(f"Error listing templates: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list templates: {e}") from e
