"""Persistence layer for the mail queue.

Exposes the :class:`Database` handle, the ORM schema and the repositories
that translate between rows and domain models.
"""

from .database import Database, init_database
from .exceptions import (
    DatabaseConnectionError,
    DataIntegrityError,
    PersistenceError,
    RecordNotFoundError,
)
from .repositories import (
    NotificationRepository,
    PreferenceRepository,
    QueueRepository,
    TemplateRepository,
)
from .schema import Base, create_schema

__all__ = [
    # Database
    "Database",
    "init_database",
    "Base",
    "create_schema",
    # Repositories
    "QueueRepository",
    "NotificationRepository",
    "PreferenceRepository",
    "TemplateRepository",
    # Exceptions
    "PersistenceError",
    "DatabaseConnectionError",
    "RecordNotFoundError",
    "DataIntegrityError",
]
