"""Queue subsystem exceptions.

A lost claim race is not an error: ``claim_for_processing`` returns None and
the caller moves on to the next candidate.
"""

from mailqueue.persistence.exceptions import RecordNotFoundError


class QueueError(Exception):
    """Base exception for queue operations."""

    pass


class QueueItemNotFoundError(QueueError, RecordNotFoundError):
    """Raised when a queue item id is unknown."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__(f"Queue item not found: {item_id}")


class InvalidStateTransitionError(QueueError):
    """Raised when an operation is not allowed from the current status.

    Examples:
    - Completing a FAILED or CANCELLED item
    - Cancelling an item that is already being processed
    - Cancelling a notification that was already sent
    """

    def __init__(self, message: str, current_status=None):
        self.current_status = current_status
        super().__init__(message)

