"""Read-only data freshness summary for the dashboard."""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from studio_pipeline.config.models import FreshnessConfig
from studio_pipeline.domain.models import ReportCategory
from studio_pipeline.logging import get_logger
from studio_pipeline.persistence.database import get_session
from studio_pipeline.persistence.repositories import RecordRepository, RunRepository
from studio_pipeline.persistence.watermarks import WatermarkStore
from studio_pipeline.utils.timestamps import format_timestamp, utc_now

logger = get_logger(__name__, component="freshness")

FRESH = "fresh"
AGING = "aging"
STALE = "stale"
NEVER = "never"


class FreshnessReporter:
    """Summarizes watermarks, recent runs and table sizes.

    Each category is classified by the age of its last successful fetch:
    fresh (under ``fresh_hours``), aging (under ``aging_hours``), stale, or
    never when it has not been fetched at all.
    """

    def __init__(
        self,
        config: Optional[FreshnessConfig] = None,
        watermarks: Optional[WatermarkStore] = None,
        orchestrator=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config or FreshnessConfig()
        self.watermarks = watermarks or WatermarkStore(clock=clock)
        self.orchestrator = orchestrator
        self._clock = clock

    def classify(self, last_fetched: Optional[datetime], now: Optional[datetime] = None) -> str:
        if last_fetched is None:
            return NEVER
        age_hours = ((now or self._clock()) - last_fetched).total_seconds() / 3600
        if age_hours < self.config.fresh_hours:
            return FRESH
        if age_hours < self.config.aging_hours:
            return AGING
        return STALE

    def snapshot(self) -> Dict[str, Any]:
        now = self._clock()
        entries = {entry.category: entry for entry in self.watermarks.list_all()}

        sources: Dict[str, Dict[str, Any]] = {}
        for category in ReportCategory:
            entry = entries.get(category)
            last_fetched = entry.last_fetched if entry else None
            sources[category.value] = {
                "label": category.label,
                "lastFetched": format_timestamp(last_fetched) or None,
                "ageHours": round((now - last_fetched).total_seconds() / 3600, 1) if last_fetched else None,
                "status": self.classify(last_fetched, now),
            }

        with get_session() as session:
            runs = RunRepository(session).recent(self.config.recent_runs)
            table_counts = RecordRepository(session).table_counts()

        # Storage only holds the queued copy of the active run
        active = self.orchestrator.current() if self.orchestrator is not None else None
        if active is not None:
            runs = [active if run.id == active.id else run for run in runs]

        last_run = runs[0] if runs else None
        last_run_age = (
            int((now - last_run.started_at).total_seconds() // 60) if last_run else None
        )

        logger.debug(
            "Freshness snapshot computed",
            extra={
                "event": "freshness.snapshot",
                "stale": [key for key, value in sources.items() if value["status"] == STALE],
            },
        )
        return {
            "generatedAt": format_timestamp(now),
            "sources": sources,
            "watermarks": [entry.to_dict() for entry in entries.values()],
            "lastRun": last_run.to_dict() if last_run else None,
            "lastRunAgeMinutes": last_run_age,
            "recentRuns": [run.to_dict() for run in runs],
            "tableCounts": table_counts,
            "activeRunId": active.id if active else None,
        }
