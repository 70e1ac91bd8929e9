"""Unit tests for the notification queue service."""

from datetime import timedelta

import pytest

from mailqueue.domain.models import QueueStatus
from mailqueue.persistence import Database, DataIntegrityError, RecordNotFoundError
from mailqueue.queue import (
    STUCK_ITEM_ERROR,
    InvalidStateTransitionError,
    NotificationQueueService,
    QueueItemNotFoundError,
    compute_backoff_minutes,
)
from tests.helpers import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database():
    db = Database("sqlite:///:memory:")
    yield db
    db.close()


@pytest.fixture
def queue(database, clock):
    return NotificationQueueService(database, clock=clock)


def fail_claimed(queue, item_id, error="boom"):
    """Claim an item the way a worker does, then record a failed attempt."""
    assert queue.claim_for_processing(item_id, "worker-a") is not None
    return queue.mark_as_failed(item_id, error)


class TestBackoff:
    """Tests for the backoff formula."""

    def test_delays_double_per_prior_failure(self):
        """Test 1, 2, 4, 8 minute delays for 0..3 prior failures."""
        assert [compute_backoff_minutes(n) for n in range(4)] == [1, 2, 4, 8]

    def test_negative_retry_count_rejected(self):
        """Test that a negative retry count is a programming error."""
        with pytest.raises(ValueError):
            compute_backoff_minutes(-1)


class TestEnqueue:
    """Tests for admission."""

    def test_enqueue_creates_pending_item_with_defaults(self, queue, clock):
        """Test that enqueue uses default priority, retries and now."""
        item = queue.enqueue("notif-1")

        assert item.status == QueueStatus.PENDING
        assert item.priority == 3
        assert item.max_retries == 3
        assert item.retry_count == 0
        assert item.scheduled_at == clock.now
        assert item.claimed_by is None

        stored = queue.get_item(item.id)
        assert stored == item

    def test_enqueue_same_notification_twice_fails(self, queue):
        """Test that a notification has at most one queue item."""
        queue.enqueue("notif-1")

        with pytest.raises(DataIntegrityError):
            queue.enqueue("notif-1")

    def test_get_by_notification_id(self, queue):
        """Test lookup by correlated notification id."""
        item = queue.enqueue("notif-1")

        assert queue.get_by_notification_id("notif-1").id == item.id
        assert queue.get_by_notification_id("missing") is None


class TestGetNextBatch:
    """Tests for dispatch ordering."""

    def test_lower_priority_value_served_first(self, queue):
        """Test that priority 1 comes before priority 5 at equal scheduled time."""
        low = queue.enqueue("notif-low", priority=5)
        high = queue.enqueue("notif-high", priority=1)

        batch = queue.get_next_batch(2)

        assert [item.id for item in batch] == [high.id, low.id]

    def test_earlier_scheduled_first_within_priority(self, queue, clock):
        """Test scheduled_at ascending as tie-break for equal priority."""
        later = queue.enqueue("notif-later", scheduled_at=clock.now - timedelta(minutes=1))
        earlier = queue.enqueue("notif-earlier", scheduled_at=clock.now - timedelta(minutes=5))

        batch = queue.get_next_batch(10)

        assert [item.id for item in batch] == [earlier.id, later.id]

    def test_future_items_not_returned_until_due(self, queue, clock):
        """Test that items scheduled in the future are held back."""
        item = queue.enqueue("notif-1", scheduled_at=clock.now + timedelta(minutes=5))

        assert queue.get_next_batch(10) == []

        clock.advance(minutes=5)
        assert [i.id for i in queue.get_next_batch(10)] == [item.id]

    def test_batch_size_limits_results(self, queue):
        """Test that at most batch_size items are returned."""
        for n in range(5):
            queue.enqueue(f"notif-{n}")

        assert len(queue.get_next_batch(3)) == 3
        assert queue.get_next_batch(0) == []

    def test_batch_does_not_claim(self, queue):
        """Test that get_next_batch is read-only."""
        item = queue.enqueue("notif-1")

        queue.get_next_batch(1)
        queue.get_next_batch(1)

        assert queue.get_item(item.id).status == QueueStatus.PENDING

    def test_only_pending_items_returned(self, queue):
        """Test that claimed items drop out of the batch."""
        claimed = queue.enqueue("notif-1")
        waiting = queue.enqueue("notif-2")
        queue.claim_for_processing(claimed.id, "worker-a")

        assert [i.id for i in queue.get_next_batch(10)] == [waiting.id]


class TestClaimForProcessing:
    """Tests for claiming."""

    def test_claim_sets_lease(self, queue, clock):
        """Test that a successful claim records the worker and time."""
        item = queue.enqueue("notif-1")

        claimed = queue.claim_for_processing(item.id, "worker-a")

        assert claimed.status == QueueStatus.PROCESSING
        assert claimed.claimed_by == "worker-a"
        assert claimed.claimed_at == clock.now

    def test_second_claim_returns_none(self, queue):
        """Test that a lost claim is reported as None, not an error."""
        item = queue.enqueue("notif-1")
        queue.claim_for_processing(item.id, "worker-a")

        assert queue.claim_for_processing(item.id, "worker-b") is None
        assert queue.get_item(item.id).claimed_by == "worker-a"

    def test_claim_unknown_item_returns_none(self, queue):
        """Test that claiming an unknown id is also just a miss."""
        assert queue.claim_for_processing("missing", "worker-a") is None

    def test_claim_requires_worker_id(self, queue):
        """Test that an empty worker identity is rejected."""
        item = queue.enqueue("notif-1")

        with pytest.raises(ValueError):
            queue.claim_for_processing(item.id, "")


class TestMarkAsCompleted:
    """Tests for completion."""

    def test_complete_processing_item(self, queue, clock):
        """Test PROCESSING -> COMPLETED clears the lease."""
        item = queue.enqueue("notif-1")
        queue.claim_for_processing(item.id, "worker-a")
        clock.advance(seconds=3)

        completed = queue.mark_as_completed(item.id)

        assert completed.status == QueueStatus.COMPLETED
        assert completed.processed_at == clock.now
        assert completed.claimed_by is None
        assert completed.claimed_at is None

    def test_complete_twice_is_noop(self, queue, clock):
        """Test that completing a COMPLETED item changes nothing."""
        item = queue.enqueue("notif-1")
        first = queue.mark_as_completed(item.id)
        clock.advance(minutes=1)

        second = queue.mark_as_completed(item.id)

        assert second.status == QueueStatus.COMPLETED
        assert second.processed_at == first.processed_at

    def test_complete_unknown_item_raises(self, queue):
        """Test that an unknown id raises a not-found error."""
        with pytest.raises(QueueItemNotFoundError) as exc_info:
            queue.mark_as_completed("missing")

        assert isinstance(exc_info.value, RecordNotFoundError)

    def test_complete_failed_item_raises(self, queue):
        """Test that a FAILED item cannot be completed."""
        item = queue.enqueue("notif-1")
        queue.mark_as_permanently_failed(item.id, "Template not found")

        with pytest.raises(InvalidStateTransitionError):
            queue.mark_as_completed(item.id)


class TestMarkAsFailed:
    """Tests for failure recording and backoff."""

    def test_successive_failures_back_off_then_fail(self, queue, clock):
        """Test delays of 1, 2, 4 minutes and terminal FAILED on the 4th failure."""
        item = queue.enqueue("notif-1")

        for expected_minutes, expected_count in [(1, 1), (2, 2), (4, 3)]:
            failed = fail_claimed(queue, item.id, "SMTP unavailable")

            assert failed.status == QueueStatus.RETRY_SCHEDULED
            assert failed.retry_count == expected_count
            assert failed.scheduled_at == clock.now + timedelta(minutes=expected_minutes)
            assert failed.last_error == "SMTP unavailable"
            clock.advance(minutes=expected_minutes)
            queue.process_retryable_items()

        final = fail_claimed(queue, item.id, "SMTP unavailable")

        assert final.status == QueueStatus.FAILED
        assert final.retry_count == 3
        assert final.processed_at == clock.now

    def test_failure_clears_lease(self, queue):
        """Test that a failed PROCESSING item is no longer claimed."""
        item = queue.enqueue("notif-1")
        queue.claim_for_processing(item.id, "worker-a")

        failed = queue.mark_as_failed(item.id, "timeout")

        assert failed.claimed_by is None
        assert failed.claimed_at is None

    def test_zero_max_retries_fails_immediately(self, database, clock):
        """Test that an item without retries goes straight to FAILED."""
        queue = NotificationQueueService(database, clock=clock, max_retries=0)
        item = queue.enqueue("notif-1")

        failed = fail_claimed(queue, item.id)

        assert failed.status == QueueStatus.FAILED
        assert failed.retry_count == 0

    def test_fail_terminal_item_raises(self, queue):
        """Test that a COMPLETED item cannot be failed."""
        item = queue.enqueue("notif-1")
        queue.mark_as_completed(item.id)

        with pytest.raises(InvalidStateTransitionError):
            queue.mark_as_failed(item.id, "late error")

    @pytest.mark.parametrize("reschedule", [False, True])
    def test_fail_unclaimed_item_raises(self, queue, reschedule):
        """Test that only a PROCESSING item can record a failed attempt."""
        item = queue.enqueue("notif-1")
        if reschedule:
            fail_claimed(queue, item.id)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            queue.mark_as_failed(item.id, "late error")

        expected = QueueStatus.RETRY_SCHEDULED if reschedule else QueueStatus.PENDING
        assert exc_info.value.current_status == expected
        assert queue.get_item(item.id).retry_count == (1 if reschedule else 0)

    def test_permanent_failure_keeps_retry_count(self, queue):
        """Test that a non-retryable failure does not use a retry slot."""
        item = queue.enqueue("notif-1")
        queue.claim_for_processing(item.id, "worker-a")

        failed = queue.mark_as_permanently_failed(item.id, "Template not found: x")

        assert failed.status == QueueStatus.FAILED
        assert failed.retry_count == 0
        assert failed.last_error == "Template not found: x"


class TestProcessRetryableItems:
    """Tests for the retry reactivation sweep."""

    def test_due_item_readmitted(self, queue, clock):
        """Test that a due RETRY_SCHEDULED item becomes PENDING at now."""
        item = queue.enqueue("notif-1")
        fail_claimed(queue, item.id)

        assert queue.process_retryable_items() == 0

        clock.advance(minutes=1)
        assert queue.process_retryable_items() == 1

        readmitted = queue.get_item(item.id)
        assert readmitted.status == QueueStatus.PENDING
        assert readmitted.scheduled_at == clock.now
        assert readmitted.retry_count == 1

    def test_full_retry_cycle_through_worker_path(self, queue, clock):
        """Test claim/fail/reactivate three times, then terminal failure."""
        item = queue.enqueue("notif-1")

        for delay in (1, 2, 4):
            assert queue.claim_for_processing(item.id, "worker-a") is not None
            queue.mark_as_failed(item.id, "SMTP unavailable")
            clock.advance(minutes=delay)
            assert queue.process_retryable_items() == 1

        assert queue.claim_for_processing(item.id, "worker-a") is not None
        final = queue.mark_as_failed(item.id, "SMTP unavailable")

        assert final.status == QueueStatus.FAILED
        assert final.retry_count == 3
        assert queue.process_retryable_items() == 0


class TestHandleStuckItems:
    """Tests for the stuck item reclaim sweep."""

    def test_stale_item_rescheduled_with_fixed_delay(self, queue, clock):
        """Test 11-minute-old lease with 10-minute threshold -> retry in 5 minutes."""
        item = queue.enqueue("notif-1")
        queue.claim_for_processing(item.id, "worker-a")
        clock.advance(minutes=11)

        assert queue.handle_stuck_items(timedelta(minutes=10)) == 1

        reclaimed = queue.get_item(item.id)
        assert reclaimed.status == QueueStatus.RETRY_SCHEDULED
        assert reclaimed.retry_count == 1
        assert reclaimed.scheduled_at == clock.now + timedelta(minutes=5)
        assert reclaimed.claimed_by is None
        assert reclaimed.last_error == STUCK_ITEM_ERROR

    def test_fixed_delay_does_not_grow_with_retries(self, queue, clock):
        """Test that the reclaim delay stays 5 minutes after earlier failures."""
        item = queue.enqueue("notif-1")
        fail_claimed(queue, item.id)
        clock.advance(minutes=1)
        queue.process_retryable_items()
        fail_claimed(queue, item.id)
        clock.advance(minutes=2)
        queue.process_retryable_items()
        queue.claim_for_processing(item.id, "worker-a")
        clock.advance(minutes=11)

        queue.handle_stuck_items()

        reclaimed = queue.get_item(item.id)
        assert reclaimed.retry_count == 3
        assert reclaimed.scheduled_at == clock.now + timedelta(minutes=5)

    def test_fresh_lease_left_alone(self, queue, clock):
        """Test that a lease younger than the threshold is not reclaimed."""
        item = queue.enqueue("notif-1")
        queue.claim_for_processing(item.id, "worker-a")
        clock.advance(minutes=9)

        assert queue.handle_stuck_items() == 0
        assert queue.get_item(item.id).status == QueueStatus.PROCESSING

    def test_exhausted_item_marked_failed(self, database, clock):
        """Test that a stuck item with no retries left becomes FAILED."""
        queue = NotificationQueueService(database, clock=clock, max_retries=0)
        item = queue.enqueue("notif-1")
        queue.claim_for_processing(item.id, "worker-a")
        clock.advance(minutes=11)

        assert queue.handle_stuck_items() == 1

        failed = queue.get_item(item.id)
        assert failed.status == QueueStatus.FAILED
        assert failed.last_error == STUCK_ITEM_ERROR
        assert failed.processed_at == clock.now


class TestCancel:
    """Tests for queue item cancellation."""

    def test_cancel_pending_item(self, queue):
        item = queue.enqueue("notif-1")

        cancelled = queue.cancel(item.id)

        assert cancelled.status == QueueStatus.CANCELLED

    def test_cancel_retry_scheduled_item(self, queue):
        item = queue.enqueue("notif-1")
        fail_claimed(queue, item.id)

        assert queue.cancel(item.id).status == QueueStatus.CANCELLED

    def test_cancel_processing_item_raises(self, queue):
        """Test that a dispatched item cannot be cancelled."""
        item = queue.enqueue("notif-1")
        queue.claim_for_processing(item.id, "worker-a")

        with pytest.raises(InvalidStateTransitionError):
            queue.cancel(item.id)

    def test_cancelled_item_not_dispatched(self, queue):
        item = queue.enqueue("notif-1")
        queue.cancel(item.id)

        assert queue.get_next_batch(10) == []
        assert queue.claim_for_processing(item.id, "worker-a") is None


class TestCleanupOldItems:
    """Tests for the retention sweep."""

    def test_only_old_terminal_items_deleted(self, queue, clock):
        """Test that 40-day-old COMPLETED and FAILED go, PENDING stays."""
        completed = queue.enqueue("notif-completed")
        queue.mark_as_completed(completed.id)
        failed = queue.enqueue("notif-failed")
        queue.mark_as_permanently_failed(failed.id, "boom")
        pending = queue.enqueue("notif-pending")

        clock.advance(days=40)
        recent = queue.enqueue("notif-recent")
        queue.mark_as_completed(recent.id)

        assert queue.cleanup_old_items(30) == 2

        assert queue.get_item(completed.id) is None
        assert queue.get_item(failed.id) is None
        assert queue.get_item(pending.id).status == QueueStatus.PENDING
        assert queue.get_item(recent.id).status == QueueStatus.COMPLETED

    def test_retry_and_processing_items_never_deleted(self, queue, clock):
        retrying = queue.enqueue("notif-retry")
        fail_claimed(queue, retrying.id)
        processing = queue.enqueue("notif-processing")
        queue.claim_for_processing(processing.id, "worker-a")

        clock.advance(days=90)

        assert queue.cleanup_old_items(30) == 0

    def test_negative_days_rejected(self, queue):
        with pytest.raises(ValueError):
            queue.cleanup_old_items(-1)


class TestQueueStats:
    """Tests for queue statistics."""

    def test_counts_per_status(self, queue):
        queue.enqueue("notif-1")
        processing = queue.enqueue("notif-2")
        queue.claim_for_processing(processing.id, "worker-a")
        completed = queue.enqueue("notif-3")
        queue.mark_as_completed(completed.id)
        retrying = queue.enqueue("notif-4")
        fail_claimed(queue, retrying.id)
        cancelled = queue.enqueue("notif-5")
        queue.cancel(cancelled.id)

        stats = queue.get_queue_stats()

        assert stats.pending == 1
        assert stats.processing == 1
        assert stats.completed == 1
        assert stats.retry_scheduled == 1
        assert stats.cancelled == 1
        assert stats.failed == 0
        assert stats.total == 5
        assert stats.as_dict()["TOTAL"] == 5

    def test_empty_queue(self, queue):
        assert queue.get_queue_stats().total == 0

    def test_items_by_status(self, queue):
        first = queue.enqueue("notif-1")
        queue.enqueue("notif-2")
        queue.claim_for_processing(first.id, "worker-a")

        processing = queue.get_items_by_status(QueueStatus.PROCESSING)

        assert [item.id for item in processing] == [first.id]
