"""Watermark store: per-category incremental fetch state."""

import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from studio_pipeline.config.models import WatermarkConfig
from studio_pipeline.domain.models import FetchWindow, ReportCategory, WatermarkEntry
from studio_pipeline.logging import get_logger
from studio_pipeline.utils.timestamps import utc_now

from .database import get_session
from .records import PersistReceipt
from .repositories import WatermarkRepository

logger = get_logger(__name__, component="watermarks")


class WatermarkStore:
    """Computes fetch windows and advances high-water dates.

    Windows always overlap the previous high-water date so rows that arrive
    late for that day are picked up on the next run. A category that has not
    been fetched for ``stale_after_days`` gets a wider lookback instead.
    """

    def __init__(self, config: Optional[WatermarkConfig] = None, clock: Callable[[], datetime] = utc_now):
        self.config = config or WatermarkConfig()
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, category: ReportCategory) -> Optional[WatermarkEntry]:
        with get_session() as session:
            return WatermarkRepository(session).get(category)

    def list_all(self) -> List[WatermarkEntry]:
        with get_session() as session:
            return WatermarkRepository(session).list_all()

    def window_for(self, category: ReportCategory) -> FetchWindow:
        """Next fetch window for ``category``, ending today (UTC)."""
        now = self._clock()
        until = now.date()
        entry = self.get(category)

        if entry is None or entry.high_water_date is None:
            since = self.config.backfill_start
            reason = "backfill"
        else:
            lookback = self.config.overlap_days
            reason = "incremental"
            stale_cutoff = now - timedelta(days=self.config.stale_after_days)
            if entry.last_fetched is None or entry.last_fetched < stale_cutoff:
                lookback = self.config.stale_lookback_days
                reason = "stale"
            since = entry.high_water_date - timedelta(days=lookback)

        window = FetchWindow(since=min(since, until), until=until)

        logger.debug(
            f"Fetch window for {category.value}: {window.since} to {window.until}",
            extra={
                "event": "watermark.window",
                "category": category.value,
                "since": window.since,
                "until": window.until,
                "reason": reason,
            },
        )
        return window

    def advance(self, receipt: PersistReceipt) -> WatermarkEntry:
        """Move the category's watermark forward after a committed write.

        ``highWaterDate`` becomes max(existing, observed); it never moves
        backwards. ``lastFetched`` and ``recordCount`` always reflect the
        latest successful fetch, even when it returned no rows.

        Raises:
            TypeError: If ``receipt`` is not a PersistReceipt
            PersistenceError: If the watermark cannot be saved
        """
        if not isinstance(receipt, PersistReceipt):
            raise TypeError("advance() requires a PersistReceipt from write_records()")

        with self._lock, get_session() as session:
            repo = WatermarkRepository(session)
            entry = repo.get(receipt.category) or WatermarkEntry(category=receipt.category)
            previous = entry.high_water_date

            observed = receipt.observed_max_date
            if observed is not None and (previous is None or observed > previous):
                entry.high_water_date = observed

            entry.last_fetched = receipt.committed_at
            entry.record_count = receipt.record_count
            entry.notes = (
                f"run {receipt.run_id}: {receipt.inserted} new, {receipt.updated} updated, "
                f"window {receipt.window.since}..{receipt.window.until}"
            )
            repo.save(entry)

        logger.info(
            f"Watermark for {receipt.category.value} at {entry.high_water_date}",
            extra={
                "event": "watermark.advanced",
                "category": receipt.category.value,
                "previous_high_water_date": previous,
                "high_water_date": entry.high_water_date,
                "record_count": entry.record_count,
            },
        )
        return entry
