"""Data access layer (repositories) for persistence operations.

Repositories wrap a session, translate SQLAlchemy failures into
PersistenceError subclasses, and hand back domain models rather than ORM rows.
They never commit; the caller owns the transaction.
"""

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from studio_pipeline.domain.models import FetchWindow, PipelineRun, ReportCategory, RunState, WatermarkEntry
from studio_pipeline.parsing.schemas import ReportRow
from studio_pipeline.utils.timestamps import format_timestamp, utc_now

from .exceptions import DataIntegrityError, PersistenceError
from .schema import BUSINESS_MODELS, MODEL_FOR_CATEGORY, PipelineRunModel, WatermarkModel

logger = logging.getLogger(__name__)


class RunRepository:
    """Repository for pipeline run records."""

    def __init__(self, session: Session):
        self.session = session

    def save(self, run: PipelineRun) -> None:
        """Insert or overwrite a run row.

        Raises:
            PersistenceError: If database error occurs
        """
        try:
            existing = self.session.get(PipelineRunModel, run.id)
            if existing:
                existing.apply(run)
            else:
                self.session.add(PipelineRunModel.from_domain(run))
            self.session.flush()
        except SQLAlchemyError as e:
            logger.error(f"Error saving run {run.id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save run: {e}") from e

    def get(self, run_id: str) -> Optional[PipelineRun]:
        try:
            model = self.session.get(PipelineRunModel, run_id)
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving run {run_id}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve run: {e}") from e

    def recent(self, limit: int = 10) -> List[PipelineRun]:
        """Most recent runs first."""
        try:
            stmt = select(PipelineRunModel).order_by(PipelineRunModel.started_at.desc()).limit(limit)
            return [model.to_domain() for model in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing recent runs: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list runs: {e}") from e

    def mark_interrupted(self, message: str) -> List[str]:
        """Move every queued/running run to error. Returns the affected run ids."""
        active_states = (RunState.QUEUED.value, RunState.RUNNING.value)
        try:
            stmt = select(PipelineRunModel.id).where(PipelineRunModel.state.in_(active_states))
            run_ids = list(self.session.execute(stmt).scalars().all())
            if run_ids:
                self.session.execute(
                    update(PipelineRunModel)
                    .where(PipelineRunModel.id.in_(run_ids))
                    .values(
                        state=RunState.ERROR.value,
                        error_message=message,
                        error_kind="generic",
                        finished_at=format_timestamp(utc_now(), include_microseconds=True),
                    )
                )
                self.session.flush()
            return run_ids
        except SQLAlchemyError as e:
            logger.error(f"Error marking interrupted runs: {e}", exc_info=True)
            raise PersistenceError(f"Failed to mark interrupted runs: {e}") from e


class WatermarkRepository:
    """Repository for per-category watermark rows."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, category: ReportCategory) -> Optional[WatermarkEntry]:
        try:
            model = self.session.get(WatermarkModel, category.value)
            return model.to_domain() if model else None
        except SQLAlchemyError as e:
            logger.error(f"Error retrieving watermark {category.value}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to retrieve watermark: {e}") from e

    def list_all(self) -> List[WatermarkEntry]:
        try:
            stmt = select(WatermarkModel).order_by(WatermarkModel.category)
            return [model.to_domain() for model in self.session.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Error listing watermarks: {e}", exc_info=True)
            raise PersistenceError(f"Failed to list watermarks: {e}") from e

    def save(self, entry: WatermarkEntry) -> WatermarkEntry:
        try:
            fresh = WatermarkModel.from_domain(entry)
            existing = self.session.get(WatermarkModel, entry.category.value)
            if existing:
                existing.last_fetched_at = fresh.last_fetched_at
                existing.high_water_date = fresh.high_water_date
                existing.record_count = fresh.record_count
                existing.notes = fresh.notes
            else:
                self.session.add(fresh)
            self.session.flush()
            return entry
        except SQLAlchemyError as e:
            logger.error(f"Error saving watermark {entry.category.value}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to save watermark: {e}") from e


@dataclass
class UpsertResult:
    """Counts from one upsert batch (not yet committed)."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    observed_max_date: Optional[date] = None

    @property
    def record_count(self) -> int:
        return self.inserted + self.updated + self.unchanged


class RecordRepository:
    """Idempotent upserts of parsed report rows into the business tables."""

    def __init__(self, session: Session):
        self.session = session

    def upsert(
        self,
        category: ReportCategory,
        rows: Sequence[ReportRow],
        window: FetchWindow,
        run_id: str,
    ) -> UpsertResult:
        """Insert new rows and merge into existing ones by natural key.

        Merge is non-destructive: blank incoming values never overwrite stored
        values, and write-once columns are only filled while still empty.

        Raises:
            DataIntegrityError: On constraint violations
            PersistenceError: On any other database error
        """
        model = MODEL_FOR_CATEGORY[category]
        result = UpsertResult()
        now = format_timestamp(utc_now(), include_microseconds=True)

        try:
            for row in rows:
                values = model.values_from_row(row, category, window)
                key = {column: values[column] for column in model.natural_key}

                event_date = row.event_date()
                if event_date is None and model.dated_by_window:
                    event_date = window.until
                if event_date is not None and (
                    result.observed_max_date is None or event_date > result.observed_max_date
                ):
                    result.observed_max_date = event_date

                existing = self.session.execute(
                    select(model).filter_by(**key)
                ).scalar_one_or_none()

                if existing is None:
                    self.session.add(
                        model(
                            **values,
                            first_seen_run_id=run_id,
                            last_seen_run_id=run_id,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    result.inserted += 1
                    continue

                existing.last_seen_run_id = run_id
                if _merge(existing, values, model.natural_key, model.write_once):
                    existing.updated_at = now
                    result.updated += 1
                else:
                    result.unchanged += 1

            self.session.flush()
            return result

        except IntegrityError as e:
            logger.error(f"Integrity error upserting {category.value}: {e}", exc_info=True)
            raise DataIntegrityError(
                f"Failed to upsert {category.value} due to constraint violation: {e}"
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"Error upserting {category.value}: {e}", exc_info=True)
            raise PersistenceError(f"Failed to upsert {category.value}: {e}") from e

    def table_counts(self) -> Dict[str, int]:
        """Row count per business table."""
        try:
            return {
                model.__tablename__: self.session.execute(
                    select(func.count()).select_from(model)
                ).scalar_one()
                for model in BUSINESS_MODELS
            }
        except SQLAlchemyError as e:
            logger.error(f"Error counting table rows: {e}", exc_info=True)
            raise PersistenceError(f"Failed to count rows: {e}") from e


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _merge(existing, values: Dict[str, Any], key_columns, write_once) -> bool:
    """Apply incoming values onto a stored row. Returns True if anything changed."""
    changed = False
    for column, incoming in values.items():
        if column in key_columns or _is_blank(incoming):
            continue
        current = getattr(existing, column)
        if column in write_once and not _is_blank(current):
            continue
        if current != incoming:
            setattr(existing, column, incoming)
            changed = True
    return changed
