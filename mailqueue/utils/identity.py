"""Worker identity generation."""

import socket
from typing import Optional
from uuid import uuid4


def generate_worker_id(prefix: Optional[str] = None) -> str:
    """Generate a globally unique worker identity.

    The identity is a random UUID, so two processes started in the same
    millisecond on the same host still get distinct values. The hostname is
    included only to make log lines readable.

    Args:
        prefix: Optional label prepended to the identity (e.g. "dispatch-0")

    Returns:
        Identity string such as ``mailhost-3f2a...`` or ``dispatch-0-mailhost-3f2a...``

    Example:
        >>> a = generate_worker_id()
        >>> b = generate_worker_id()
        >>> a != b
        True
    """
    host = socket.gethostname().split(".")[0] or "worker"
    identity = f"{host}-{uuid4().hex}"
    if prefix:
        return f"{prefix}-{identity}"
    return identity
