"""Retry delay computation."""

from datetime import datetime, timedelta

BACKOFF_BASE = 2


def compute_backoff_minutes(retry_count: int) -> int:
    """Delay before the next attempt, in whole minutes.

    ``retry_count`` is the number of failures recorded *before* the current
    one, so the first failure waits 1 minute, the second 2, the third 4.

    Example:
        >>> [compute_backoff_minutes(n) for n in range(4)]
        [1, 2, 4, 8]
    """
    if retry_count < 0:
        raise ValueError(f"retry_count must be non-negative, got {retry_count}")
    return BACKOFF_BASE**retry_count


def next_attempt_at(now: datetime, retry_count: int) -> datetime:
    """When an item that just failed with ``retry_count`` prior failures is due again."""
    return now + timedelta(minutes=compute_backoff_minutes(retry_count))
