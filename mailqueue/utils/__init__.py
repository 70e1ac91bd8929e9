"""Utility functions for time handling and worker identity."""

from .identity import generate_worker_id
from .timestamps import (
    Clock,
    ensure_utc,
    format_timestamp_for_log,
    from_storage,
    to_storage,
    utc_now,
)

__all__ = [
    # Identity
    "generate_worker_id",
    # Timestamps
    "Clock",
    "utc_now",
    "ensure_utc",
    "to_storage",
    "from_storage",
    "format_timestamp_for_log",
]
