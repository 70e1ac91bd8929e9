"""Additional validation utilities for configuration."""

import warnings
from typing import Any, Dict, List

from .duration import DurationParseError, parse_duration


def check_for_warnings(config_dict: Dict[str, Any]) -> List[str]:
    """
    Check configuration for settings that are valid but probably unintended.

    Args:
        config_dict: Raw configuration dictionary

    Returns:
        List of warning messages
    """
    warning_messages = []

    queue = config_dict.get("queue") or {}
    sweeps = config_dict.get("sweeps") or {}
    worker = config_dict.get("worker") or {}

    if isinstance(queue, dict):
        max_retries = queue.get("max_retries")
        if max_retries == 0:
            warning_messages.append(
                "queue.max_retries is 0: every delivery failure will be permanent"
            )

        batch_size = queue.get("batch_size")
        if isinstance(batch_size, int) and batch_size > 100:
            warning_messages.append(
                f"Large queue.batch_size ({batch_size}) may let one worker hold many items "
                "while other workers sit idle"
            )

    # A stuck sweep slower than the stale threshold delays recovery by up to one interval
    if isinstance(queue, dict) and isinstance(sweeps, dict):
        stale = _seconds_or_none(queue.get("stale_threshold", "10m"))
        stuck_interval = _seconds_or_none(sweeps.get("stuck_interval", "10m"))
        if stale and stuck_interval and stuck_interval > stale:
            warning_messages.append(
                f"sweeps.stuck_interval ({sweeps.get('stuck_interval')}) is longer than "
                f"queue.stale_threshold ({queue.get('stale_threshold', '10m')}); stuck items "
                "may wait more than one threshold before they are reclaimed"
            )

    if isinstance(worker, dict):
        concurrency = worker.get("concurrency")
        if isinstance(concurrency, int) and concurrency > 8:
            warning_messages.append(
                f"worker.concurrency ({concurrency}) above 8 increases claim contention "
                "on SQLite databases"
            )

    return warning_messages


def _seconds_or_none(value: Any):
    try:
        return parse_duration(value)
    except DurationParseError:
        return None


def emit_warnings(warning_messages: List[str]) -> None:
    """
    Emit warning messages using Python's warnings module.

    Args:
        warning_messages: List of warning messages to emit
    """
    for message in warning_messages:
        warnings.warn(message, UserWarning, stacklevel=2)
