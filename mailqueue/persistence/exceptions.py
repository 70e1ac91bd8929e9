"""Persistence layer exceptions.

All persistence exceptions inherit from PersistenceError so callers can catch
every storage failure with a single except clause.
"""


class PersistenceError(Exception):
    """Base exception for all persistence layer errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Raised when database connection or initialization fails.

    Examples:
    - Invalid database URL format
    - Database file not accessible
    - Session requested from a closed Database
    """

    pass


class RecordNotFoundError(PersistenceError):
    """Raised when a required database record is not found.

    Lookups that may legitimately miss return None instead.
    """

    pass


class DataIntegrityError(PersistenceError):
    """Raised on constraint violations.

    Examples:
    - A second queue item for the same notification id
    - Duplicate template name or preference user id
    """

    pass
