"""Durable record writes that issue persistence receipts.

write_records() is the only producer of PersistReceipt. A receipt exists
only once the batch is committed, and WatermarkStore.advance() refuses
anything else, so a watermark can never move ahead of the rows it covers.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from studio_pipeline.domain.models import FetchWindow, ReportCategory
from studio_pipeline.logging import get_logger
from studio_pipeline.parsing.schemas import ReportRow
from studio_pipeline.utils.timestamps import utc_now

from .database import get_session
from .exceptions import PersistenceError
from .repositories import RecordRepository

logger = get_logger(__name__, component="persistence")

_SEAL = object()


@dataclass(frozen=True)
class PersistReceipt:
    """Proof that a category's rows were committed.

    Attributes:
        category: Category the rows belong to
        run_id: Run that wrote them
        inserted / updated / unchanged: Upsert outcome counts
        observed_max_date: Latest business-event date among the rows
        window: Fetch window the rows came from
        committed_at: UTC time the transaction committed
    """

    category: ReportCategory
    run_id: str
    inserted: int
    updated: int
    unchanged: int
    observed_max_date: Optional[date]
    window: FetchWindow
    committed_at: datetime
    _seal: object = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self._seal is not _SEAL:
            raise TypeError("PersistReceipt can only be issued by write_records()")

    @property
    def record_count(self) -> int:
        return self.inserted + self.updated + self.unchanged


def write_records(
    category: ReportCategory,
    rows: Sequence[ReportRow],
    window: FetchWindow,
    run_id: str,
) -> PersistReceipt:
    """Upsert rows in one transaction and return a receipt after commit.

    Args:
        category: Report category being written
        rows: Parsed rows
        window: Window the rows were fetched for
        run_id: Run performing the write

    Raises:
        PersistenceError: If the upsert or commit fails
    """
    with get_session() as session:
        result = RecordRepository(session).upsert(category, rows, window, run_id)
        try:
            session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to commit {category.value} rows: {e}") from e

    receipt = PersistReceipt(
        category=category,
        run_id=run_id,
        inserted=result.inserted,
        updated=result.updated,
        unchanged=result.unchanged,
        observed_max_date=result.observed_max_date,
        window=window,
        committed_at=utc_now(),
        _seal=_SEAL,
    )

    logger.info(
        f"Persisted {receipt.record_count} {category.value} rows",
        extra={
            "event": "persistence.records.committed",
            "category": category.value,
            "inserted": receipt.inserted,
            "updated": receipt.updated,
            "unchanged": receipt.unchanged,
            "observed_max_date": receipt.observed_max_date,
        },
    )
    return receipt
