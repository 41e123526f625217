"""Persistence layer: database lifecycle, repositories, record writes and watermarks.

Public API:
    # Database initialization and session management
    - init_database(database_url: str) -> None
    - get_session() -> ContextManager[Session]
    - close_database() -> None
    - get_engine() -> Engine

    # Repositories (caller owns the transaction)
    - RunRepository: pipeline_runs rows
    - WatermarkRepository: watermarks rows
    - RecordRepository: business-table upserts and counts

    # Two-phase write
    - write_records(...) -> PersistReceipt
    - WatermarkStore.advance(receipt)

Example usage:
    >>> init_database("sqlite:///./data/studio_pipeline.db")
    >>> receipt = write_records(ReportCategory.ORDERS, rows, window, run_id)
    >>> WatermarkStore().advance(receipt)
"""

from .database import close_database, get_engine, get_session, init_database
from .exceptions import (
    DatabaseConnectionError,
    DataIntegrityError,
    PersistenceError,
)
from .records import PersistReceipt, write_records
from .repositories import RecordRepository, RunRepository, UpsertResult, WatermarkRepository
from .watermarks import WatermarkStore

__all__ = [
    # Database functions
    "init_database",
    "get_session",
    "close_database",
    "get_engine",
    # Repositories
    "RunRepository",
    "WatermarkRepository",
    "RecordRepository",
    "UpsertResult",
    # Writes and watermarks
    "write_records",
    "PersistReceipt",
    "WatermarkStore",
    # Exceptions
    "PersistenceError",
    "DatabaseConnectionError",
    "DataIntegrityError",
]
