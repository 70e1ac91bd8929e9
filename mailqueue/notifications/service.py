"""Delivery pipeline for templated email notifications.

This module provides the DeliveryService class that orchestrates one
notification from submission to outcome: preference gating, record creation,
queue admission, template rendering, transport send and outcome recording.

The queue item is the only retry authority. After every attempt the record's
status, error, retry count and next scheduled time are copied from the queue
item, so the record reports what the queue decided rather than keeping a
counter of its own.
"""

import uuid
from typing import List, Optional, Protocol

from mailqueue.domain.models import (
    NotificationRecord,
    NotificationRequest,
    NotificationStatus,
    NotificationType,
    QueueItem,
    QueueStatus,
)
from mailqueue.logging import get_logger
from mailqueue.logging.context import log_context
from mailqueue.persistence import Database, DataIntegrityError, NotificationRepository
from mailqueue.queue import InvalidStateTransitionError, NotificationQueueService
from mailqueue.utils.identity import generate_worker_id
from mailqueue.utils.timestamps import Clock, format_timestamp_for_log, utc_now

from .models import (
    DeliveryOutcome,
    NotificationBlockedError,
    NotificationNotFoundError,
    NotificationTemplateError,
    RenderedEmail,
    TransportError,
)
from .smtp_client import validate_recipient

logger = get_logger(__name__, component="delivery")

MISSING_RECORD_ERROR = "Notification record not found"


class PreferenceGate(Protocol):
    def should_send(self, user_id: str, notification_type: NotificationType) -> bool: ...

    def is_in_quiet_hours(self, user_id: str) -> bool: ...

    def quiet_hours_end(self, user_id: str): ...


class Renderer(Protocol):
    def render(self, template_name: str, variables: dict) -> RenderedEmail: ...


class Transport(Protocol):
    def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> None: ...


class DeliveryService:
    """Submits notifications and delivers claimed queue items."""

    def __init__(
        self,
        database: Database,
        queue: NotificationQueueService,
        renderer: Renderer,
        transport: Transport,
        preferences: Optional[PreferenceGate] = None,
        worker_id: Optional[str] = None,
        clock: Clock = utc_now,
    ):
        """Initialize delivery service.

        Args:
            database: Database holding the notification records
            queue: Queue service used for admission and outcome recording
            renderer: Turns a template name and variables into a RenderedEmail
            transport: Sends a rendered email; raises TransportError on failure
            preferences: Preference gate (None disables preference checks)
            worker_id: Identity used to claim items submitted for immediate delivery
            clock: Returns the current UTC time
        """
        self._database = database
        self.queue = queue
        self.renderer = renderer
        self.transport = transport
        self.preferences = preferences
        self.worker_id = worker_id or generate_worker_id("submit")
        self._clock = clock

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, request: NotificationRequest) -> NotificationRecord:
        """Accept a notification request and attempt delivery right away.

        - Preferences disable the type: NotificationBlockedError, nothing stored.
        - Recipient in quiet hours: a PENDING record scheduled for the end of
          the quiet window is stored; it is not queued and nothing is sent.
        - ``request.scheduled_at`` in the future: record stored and queued
          for that time.
        - Otherwise: record stored, queued, claimed and delivered at once.
          Transport failures are recorded and retried by the queue; the
          returned record shows the outcome.

        Raises:
            ValueError: If the recipient address is invalid
            NotificationBlockedError: If the user's preferences block the type
            NotificationTemplateError: If the template is missing, inactive or broken
        """
        recipient = validate_recipient(request.recipient_email)
        now = self._clock()

        with log_context(
            recipient=recipient,
            template_name=request.template_name,
            notification_type=request.notification_type.value,
        ):
            if request.user_id and self.preferences is not None:
                if not self.preferences.should_send(request.user_id, request.notification_type):
                    logger.info(
                        f"Notification blocked by preferences for user {request.user_id}",
                        extra={"event": "notification.blocked", "user_id": request.user_id},
                    )
                    raise NotificationBlockedError(request.user_id, request.notification_type)

                if self.preferences.is_in_quiet_hours(request.user_id):
                    deferred_until = self.preferences.quiet_hours_end(request.user_id) or now
                    if request.scheduled_at is not None and request.scheduled_at > deferred_until:
                        deferred_until = request.scheduled_at

                    record = self._create_record(request, recipient, deferred_until, deferred=True)
                    logger.info(
                        f"Recipient in quiet hours, notification {record.id} deferred",
                        extra={
                            "event": "notification.deferred",
                            "notification_id": record.id,
                            "user_id": request.user_id,
                            "scheduled_at": format_timestamp_for_log(deferred_until),
                        },
                    )
                    return record

            if request.scheduled_at is not None and request.scheduled_at > now:
                record = self._create_record(request, recipient, request.scheduled_at)
                self.queue.enqueue(record.id, record.priority, scheduled_at=request.scheduled_at)
                logger.info(
                    f"Notification {record.id} scheduled",
                    extra={
                        "event": "notification.scheduled",
                        "notification_id": record.id,
                        "scheduled_at": format_timestamp_for_log(request.scheduled_at),
                    },
                )
                return record

            record = self._create_record(request, recipient, now)
            item = self.queue.enqueue(record.id, record.priority, scheduled_at=now)

            claimed = self.queue.claim_for_processing(item.id, self.worker_id)
            if claimed is None:
                # A dispatch worker took it first and will deliver it
                logger.debug(
                    f"Queue item {item.id} claimed by a worker before immediate delivery",
                    extra={"event": "notification.immediate.claim_lost", "queue_item_id": item.id},
                )
                return record

            outcome = self._attempt(record, claimed)
            return outcome.record

    # ------------------------------------------------------------------
    # Delivery of claimed items
    # ------------------------------------------------------------------

    def deliver(self, item: QueueItem) -> DeliveryOutcome:
        """Render, send and record the outcome for a claimed queue item.

        Records already SENT or CANCELLED are completed without sending.

        Raises:
            NotificationNotFoundError: If the record is gone (the item is failed)
            NotificationTemplateError: If the template cannot be rendered
                (the item is failed without retry)
        """
        record = self.get_notification(item.notification_id)
        if record is None:
            self.queue.mark_as_permanently_failed(item.id, MISSING_RECORD_ERROR)
            raise NotificationNotFoundError(item.notification_id)

        if record.status in (NotificationStatus.SENT, NotificationStatus.CANCELLED):
            self.queue.mark_as_completed(item.id)
            logger.info(
                f"Notification {record.id} already {record.status.value.lower()}, not sending",
                extra={
                    "event": "notification.skip",
                    "notification_id": record.id,
                    "queue_item_id": item.id,
                    "reason": record.status.value.lower(),
                },
            )
            return DeliveryOutcome(record=record, status="skipped")

        return self._attempt(record, item)

    def _attempt(self, record: NotificationRecord, item: QueueItem) -> DeliveryOutcome:
        with log_context(notification_id=record.id, queue_item_id=item.id):
            try:
                rendered = self.renderer.render(record.template_name, record.template_variables)
            except NotificationTemplateError as e:
                error = str(e)
                failed_item = self.queue.mark_as_permanently_failed(item.id, error)
                self._project_failure(record.id, failed_item, error)
                logger.error(
                    f"Template error for notification {record.id}: {error}",
                    extra={"event": "notification.template_error", "error": error},
                )
                raise
            except Exception as e:
                self._fail_unexpected(record, item, "render", e)
                raise

            try:
                self.transport.send(
                    record.recipient_email,
                    rendered.subject,
                    rendered.html_body,
                    rendered.text_body,
                )
            except TransportError as e:
                return self._record_transport_failure(record, item, str(e))
            except Exception as e:
                self._fail_unexpected(record, item, "send", e)
                raise

            updated = self._record_sent(record.id, rendered)
            try:
                self.queue.mark_as_completed(item.id)
            except InvalidStateTransitionError as e:
                # The lease was reclaimed and the item failed while we were sending
                logger.warning(
                    f"Notification {record.id} sent after its queue item left processing: {e}",
                    extra={"event": "notification.send.late_completion"},
                )

            logger.info(
                f"Notification {record.id} sent to {record.recipient_email}",
                extra={"event": "notification.send.success"},
            )
            return DeliveryOutcome(record=updated, status="sent")

    def _record_transport_failure(
        self, record: NotificationRecord, item: QueueItem, error: str
    ) -> DeliveryOutcome:
        try:
            failed_item = self.queue.mark_as_failed(item.id, error)
        except InvalidStateTransitionError as e:
            # The stuck sweep already took the item back and recorded its outcome
            logger.warning(
                f"Notification {record.id} failed after its queue item left processing: {e}",
                extra={"event": "notification.send.late_failure", "error": error},
            )
            current = self.get_notification(record.id) or record
            return DeliveryOutcome(record=current, status="skipped", error=error)

        updated = self._project_failure(record.id, failed_item, error)
        status = (
            "retry_scheduled" if failed_item.status == QueueStatus.RETRY_SCHEDULED else "failed"
        )
        logger.warning(
            f"Failed to send notification {record.id}: {error}",
            extra={
                "event": "notification.send.failed",
                "retry_count": failed_item.retry_count,
                "outcome": status,
            },
        )
        return DeliveryOutcome(record=updated, status=status, error=error)

    def _fail_unexpected(
        self, record: NotificationRecord, item: QueueItem, stage: str, exc: Exception
    ) -> None:
        """Put the item on the failure path before an unexpected error propagates."""
        error = f"{type(exc).__name__}: {exc}"
        logger.error(
            f"Unexpected error during {stage} of notification {record.id}: {error}",
            extra={"event": "notification.unexpected_error", "stage": stage, "error": error},
            exc_info=True,
        )
        self._record_transport_failure(record, item, error)

    # ------------------------------------------------------------------
    # Cancellation and deferred release
    # ------------------------------------------------------------------

    def cancel_notification(self, notification_id: str) -> NotificationRecord:
        """Cancel a notification that has not been sent.

        Allowed while the record is PENDING or FAILED (including a failure
        awaiting retry). The queue item, if still waiting, is cancelled too.

        Raises:
            NotificationNotFoundError: If the id is unknown
            InvalidStateTransitionError: If the notification was sent, is
                already cancelled, or is being delivered right now
        """
        record = self.get_notification(notification_id)
        if record is None:
            raise NotificationNotFoundError(notification_id)

        if record.status in (NotificationStatus.SENT, NotificationStatus.CANCELLED):
            raise InvalidStateTransitionError(
                f"Cannot cancel notification {notification_id} in status {record.status.value}",
                current_status=record.status,
            )

        item = self.queue.get_by_notification_id(notification_id)
        if item is not None:
            if item.status == QueueStatus.PROCESSING:
                raise InvalidStateTransitionError(
                    f"Notification {notification_id} is being delivered and cannot be cancelled",
                    current_status=item.status,
                )
            if item.status in (QueueStatus.PENDING, QueueStatus.RETRY_SCHEDULED):
                self.queue.cancel(item.id)

        now = self._clock()
        with self._database.session() as session:
            repo = NotificationRepository(session)
            updated = repo.update_fields(
                notification_id,
                {"status": NotificationStatus.CANCELLED, "updated_at": now},
                expected_status=record.status,
            )
            current = repo.get_by_id(notification_id)

        if not updated:
            raise InvalidStateTransitionError(
                f"Notification {notification_id} changed to {current.status.value} while cancelling",
                current_status=current.status,
            )

        logger.info(
            f"Notification {notification_id} cancelled",
            extra={"event": "notification.cancelled", "notification_id": notification_id},
        )
        return current

    def release_deferred_notifications(self, limit: int = 100) -> int:
        """Queue deferred records that are now due.

        These are records created during the recipient's quiet hours; they
        carry the ``deferred`` flag and have no queue item until this sweep
        admits them. Admission clears the flag, so a record whose queue item
        is later purged by retention is never queued a second time.

        Returns:
            Number of notifications queued
        """
        now = self._clock()
        with self._database.session() as session:
            due = NotificationRepository(session).find_deferred_due(now, limit)

        released = 0
        for record in due:
            try:
                self.queue.enqueue(record.id, record.priority, scheduled_at=now)
                with self._database.session() as session:
                    NotificationRepository(session).update_fields(
                        record.id, {"deferred": False, "updated_at": now}
                    )
                released += 1
            except DataIntegrityError:
                logger.debug(
                    f"Notification {record.id} was queued concurrently",
                    extra={"event": "sweep.deferred.already_queued", "notification_id": record.id},
                )
            except Exception as e:
                logger.error(
                    f"Failed to release deferred notification {record.id}: {e}",
                    extra={"event": "sweep.deferred.item_error", "notification_id": record.id},
                    exc_info=True,
                )

        if due:
            logger.info(
                f"Released {released} deferred notifications",
                extra={"event": "sweep.deferred.completed", "released": released},
            )
        return released

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        with self._database.session() as session:
            return NotificationRepository(session).get_by_id(notification_id)

    def get_notifications_by_recipient(
        self, recipient_email: str, limit: int = 50
    ) -> List[NotificationRecord]:
        with self._database.session() as session:
            return NotificationRepository(session).find_by_recipient(recipient_email, limit)

    def get_notifications_by_user(self, user_id: str, limit: int = 50) -> List[NotificationRecord]:
        with self._database.session() as session:
            return NotificationRepository(session).find_by_user(user_id, limit)

    # ------------------------------------------------------------------

    def _create_record(
        self,
        request: NotificationRequest,
        recipient: str,
        scheduled_at,
        deferred: bool = False,
    ) -> NotificationRecord:
        now = self._clock()
        record = NotificationRecord(
            id=str(uuid.uuid4()),
            recipient_email=recipient,
            recipient_name=request.recipient_name,
            template_name=request.template_name,
            template_variables=dict(request.template_variables),
            notification_type=request.notification_type,
            user_id=request.user_id,
            status=NotificationStatus.PENDING,
            priority=request.priority if request.priority is not None else self.queue.default_priority,
            scheduled_at=scheduled_at,
            retry_count=0,
            max_retries=self.queue.max_retries,
            deferred=deferred,
            created_at=now,
            updated_at=now,
        )
        with self._database.session() as session:
            NotificationRepository(session).add(record)

        logger.debug(
            f"Created notification record {record.id}",
            extra={"event": "notification.created", "notification_id": record.id},
        )
        return record

    def _record_sent(self, notification_id: str, rendered: RenderedEmail) -> NotificationRecord:
        now = self._clock()
        with self._database.session() as session:
            repo = NotificationRepository(session)
            repo.update_fields(
                notification_id,
                {
                    "status": NotificationStatus.SENT,
                    "sent_at": now,
                    "subject": rendered.subject,
                    "html_content": rendered.html_body,
                    "text_content": rendered.text_body,
                    "error_message": None,
                    "updated_at": now,
                },
            )
            return repo.get_by_id(notification_id)

    def _project_failure(
        self, notification_id: str, item: QueueItem, error: str
    ) -> NotificationRecord:
        """Copy the queue item's failure state onto the record."""
        changes = {
            "status": NotificationStatus.FAILED,
            "error_message": error,
            "retry_count": item.retry_count,
            "updated_at": self._clock(),
        }
        if item.status == QueueStatus.RETRY_SCHEDULED:
            changes["scheduled_at"] = item.scheduled_at

        with self._database.session() as session:
            repo = NotificationRepository(session)
            repo.update_fields(notification_id, changes)
            return repo.get_by_id(notification_id)
