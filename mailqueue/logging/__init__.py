"""Structured logging helpers for the mail queue.

Loggers obtained through :func:`get_logger` carry a ``component`` field
(``queue``, ``worker``, ``sweeper``, ``delivery``...) on every record, so log
lines from concurrent workers and sweepers can be told apart.
"""

import logging
from typing import Optional


class ComponentLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges the component field with per-call extra."""

    def process(self, msg, kwargs):
        # Per-call extra wins over the adapter default
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str, component: Optional[str] = None):
    """Get a logger, optionally tagged with a default component.

    Args:
        name: Logger name (typically __name__)
        component: Optional component identifier to inject into all logs

    Returns:
        Logger or ComponentLoggerAdapter instance

    Example:
        >>> logger = get_logger(__name__, component="queue")
        >>> logger.info("Item claimed", extra={"event": "queue.item.claimed"})
    """
    logger = logging.getLogger(name)

    if component:
        return ComponentLoggerAdapter(logger, {"component": component})

    return logger


__all__ = ["ComponentLoggerAdapter", "get_logger"]
