"""Persistence layer exceptions.

Every persistence failure derives from PersistenceError. The orchestrator
treats any of them as run-fatal: once a write fails, partial durability of
the batch cannot be assumed.
"""


class PersistenceError(Exception):
    """Base exception for all persistence layer errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Database could not be reached, initialized, or was used before init_database()."""

    pass


class DataIntegrityError(PersistenceError):
    """A constraint was violated (duplicate key, NOT NULL, unique period/category)."""

    pass
