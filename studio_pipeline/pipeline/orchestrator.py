"""Single-flight run orchestration.

One run at a time executes on a background worker thread. The active run is
owned by the orchestrator and only mutated under its lock; callers get deep
copies. Every mutation made on behalf of a worker first checks that the
worker's run is still the active one, so results from a run that was reset
(or replaced) are discarded instead of applied.

Lock order is write lock, then run lock. Record writes and watermark
advances happen under the write lock only; no database I/O happens while
the run lock is held.
"""

import re
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Deque, Iterator, List, Optional
from uuid import uuid4

from studio_pipeline.config.models import AppConfig
from studio_pipeline.domain.models import (
    CATEGORY_ORDER,
    CategoryState,
    ErrorKind,
    PipelineRun,
    ReportCategory,
    RunState,
)
from studio_pipeline.fetchers.exceptions import FetcherConfigurationError
from studio_pipeline.fetchers.factory import FetcherRegistry
from studio_pipeline.logging import get_logger
from studio_pipeline.logging.context import log_context
from studio_pipeline.parsing import ParseError, parse_report, schema_for
from studio_pipeline.persistence.database import get_session
from studio_pipeline.persistence.records import write_records
from studio_pipeline.persistence.repositories import RunRepository
from studio_pipeline.persistence.watermarks import WatermarkStore
from studio_pipeline.utils.timestamps import to_epoch_ms, utc_now

from .exceptions import AlreadyRunningError, RunAbandonedError, RunNotFoundError
from .progress import COMPLETE, ERROR, PROGRESS, ProgressEvent, ProgressStreamer

logger = get_logger(__name__, component="orchestrator")

RESET_MESSAGE = "Manually reset by user"
INTERRUPTED_MESSAGE = "Interrupted by process restart"

AUTH_ERROR_PATTERN = re.compile(
    r"401|403|unauthori[sz]ed|forbidden|auth.*expired|session expired|login required|invalid token",
    re.IGNORECASE,
)


def classify_error(message: Optional[str]) -> ErrorKind:
    """Classify a failure message as an auth problem or a generic failure."""
    if message and AUTH_ERROR_PATTERN.search(message):
        return ErrorKind.AUTH_EXPIRED
    return ErrorKind.GENERIC


def truncate_message(message: str, max_length: int) -> str:
    message = " ".join(str(message).split())
    if len(message) <= max_length:
        return message
    return message[: max_length - 3].rstrip() + "..."


def terminal_event(run: PipelineRun) -> ProgressEvent:
    """The complete/error event for a finished run."""
    if run.state is RunState.ERROR:
        return ProgressEvent(
            ERROR,
            run.id,
            {
                "jobId": run.id,
                "message": run.error_message or "Pipeline failed",
                "kind": (run.error_kind or ErrorKind.GENERIC).value,
            },
        )
    return ProgressEvent(
        COMPLETE,
        run.id,
        {
            "jobId": run.id,
            "duration": run.duration_ms,
            "recordCounts": dict(run.record_counts),
            "warnings": list(run.warnings),
            "categories": run.progress_payload()["categories"],
        },
    )


class PipelineOrchestrator:
    """Owns the run lifecycle: start, status, reset and the worker loop.

    Args:
        app_config: Application configuration
        fetchers: FetcherRegistry, or a plain mapping of category to fetcher
        watermarks: WatermarkStore used for windows and advances
        streamer: ProgressStreamer receiving progress and terminal events
        clock: Source of the current UTC time
    """

    def __init__(
        self,
        app_config: AppConfig,
        fetchers=None,
        watermarks: Optional[WatermarkStore] = None,
        streamer: Optional[ProgressStreamer] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.app_config = app_config
        self.fetchers = fetchers if isinstance(fetchers, FetcherRegistry) else FetcherRegistry(fetchers)
        self.watermarks = watermarks or WatermarkStore(app_config.watermarks, clock=clock)
        self.streamer = streamer or ProgressStreamer(app_config.orchestrator.progress_queue_size)
        self._clock = clock
        self._settings = app_config.orchestrator

        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._active: Optional[PipelineRun] = None
        self._thread: Optional[threading.Thread] = None
        self._history: Deque[PipelineRun] = deque(maxlen=self._settings.history_size)

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    def start(self) -> str:
        """Atomically claim the single-flight slot and launch a run.

        Returns:
            The new run id

        Raises:
            AlreadyRunningError: If a run is queued or running
            PersistenceError: If the queued run cannot be recorded
        """
        with self._lock:
            if self._active is not None:
                raise AlreadyRunningError(self._active.id)

            started_at = self._clock()
            run_id = f"pipeline-{to_epoch_ms(started_at)}-{uuid4().hex[:6]}"
            run = PipelineRun.new(run_id, started_at, CATEGORY_ORDER)
            self._active = run
            queued = run.snapshot()

        try:
            self._save(queued)
        except Exception:
            with self._lock:
                if self._active is run:
                    self._active = None
            raise

        with self._lock:
            final = None if self._active is run else run.snapshot()
            if final is None:
                self._publish_progress(queued)
                self._thread = threading.Thread(
                    target=self._execute,
                    args=(run_id,),
                    name=run_id,
                    daemon=True,
                )
                self._thread.start()

        if final is not None:
            # Reset while the queued row was being written; it may have
            # replaced the final row
            self._save_final(final)
            logger.warning(
                f"Pipeline run {run_id} was reset before it started",
                extra={"event": "pipeline.run.reset_before_start", "run_id": run_id},
            )
            return run_id

        logger.info(
            f"Pipeline run {run_id} queued",
            extra={"event": "pipeline.run.queued", "run_id": run_id},
        )
        return run_id

    def reset(self, message: str = RESET_MESSAGE) -> Optional[str]:
        """Force the active run (if any) to error and free the slot.

        Fetchers still in flight are not interrupted; their results are
        discarded when they return. A record write already under way is
        allowed to finish first. Safe to call when nothing is running.

        Returns:
            The id of the run that was cleared, or None
        """
        with self._write_lock, self._lock:
            run = self._active
            if run is None:
                return None
            snapshot = self._terminate(run, RunState.ERROR, message)

        self._save_final(snapshot)
        logger.warning(
            f"Pipeline run {snapshot.id} reset: {message}",
            extra={"event": "pipeline.run.reset", "run_id": snapshot.id},
        )
        return snapshot.id

    def reset_if_stuck(self, stuck_after_minutes: Optional[int] = None) -> Optional[str]:
        """Reset the active run if it started longer ago than the threshold."""
        minutes = self._settings.stuck_after_minutes if stuck_after_minutes is None else stuck_after_minutes
        if minutes <= 0:
            return None

        with self._write_lock, self._lock:
            run = self._active
            if run is None or self._clock() - run.started_at < timedelta(minutes=minutes):
                return None
            snapshot = self._terminate(
                run, RunState.ERROR, f"{RESET_MESSAGE} (stuck for over {minutes} minutes)"
            )

        self._save_final(snapshot)
        logger.warning(
            f"Pipeline run {snapshot.id} exceeded {minutes} minutes and was reset",
            extra={"event": "pipeline.run.stuck", "run_id": snapshot.id, "stuck_after_minutes": minutes},
        )
        return snapshot.id

    def status(self, run_id: str) -> PipelineRun:
        """Snapshot of a run, from memory first and storage second.

        Raises:
            RunNotFoundError: If the id is unknown
        """
        with self._lock:
            if self._active is not None and self._active.id == run_id:
                return self._active.snapshot()
            for run in self._history:
                if run.id == run_id:
                    return run.snapshot()

        with get_session() as session:
            run = RunRepository(session).get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def current(self) -> Optional[PipelineRun]:
        with self._lock:
            return self._active.snapshot() if self._active else None

    def history(self) -> List[PipelineRun]:
        """Recently finished runs held in memory, newest first."""
        with self._lock:
            return [run.snapshot() for run in self._history]

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the most recent worker thread. Returns True if it has exited."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def recover_interrupted(self) -> List[str]:
        """Mark runs left queued/running by a previous process as errored."""
        with get_session() as session:
            run_ids = RunRepository(session).mark_interrupted(INTERRUPTED_MESSAGE)
        if run_ids:
            logger.warning(
                f"Marked {len(run_ids)} interrupted run(s) as failed",
                extra={"event": "pipeline.run.recovered", "run_ids": run_ids},
            )
        return run_ids

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _execute(self, run_id: str) -> None:
        with log_context(run_id=run_id):
            try:
                with self._owned(run_id) as run:
                    run.state = RunState.RUNNING
                    run.step = "Starting"
                    self._publish_progress(run)

                logger.info(
                    "Pipeline run started",
                    extra={"event": "pipeline.run.started", "run_id": run_id},
                )

                for category in CATEGORY_ORDER:
                    with log_context(category=category.value):
                        self._process_category(run_id, category)

                self._finish(run_id, RunState.COMPLETE)

            except RunAbandonedError:
                logger.info(
                    "Run no longer active; discarding remaining work",
                    extra={"event": "pipeline.run.abandoned", "run_id": run_id},
                )
            except Exception as e:
                logger.error(
                    f"Pipeline run failed: {e}",
                    extra={"event": "pipeline.run.failed", "run_id": run_id, "error_type": type(e).__name__},
                    exc_info=True,
                )
                try:
                    self._finish(run_id, RunState.ERROR, str(e) or type(e).__name__)
                except RunAbandonedError:
                    logger.info(
                        "Run was reset before its failure could be recorded",
                        extra={"event": "pipeline.run.abandoned", "run_id": run_id},
                    )

    def _process_category(self, run_id: str, category: ReportCategory) -> None:
        label = category.label

        if not self.app_config.is_category_enabled(category):
            self._transition(run_id, category, CategoryState.SKIPPED, f"Skipped {label} (disabled)")
            return

        try:
            fetcher = self.fetchers.get(category)
        except FetcherConfigurationError as e:
            self._fail_category(run_id, category, e)
            return

        if fetcher is None:
            if category.optional:
                self._transition(run_id, category, CategoryState.SKIPPED, f"Skipped {label} (no source)")
            else:
                self._fail_category(run_id, category, f"No source configured for {label}")
            return

        window = self.watermarks.window_for(category)
        self._transition(run_id, category, CategoryState.DOWNLOADING, f"Downloading {label}...")

        try:
            report = fetcher.fetch(category, window)
        except Exception as e:
            self._fail_category(run_id, category, e)
            return

        self._transition(
            run_id,
            category,
            CategoryState.PARSING,
            f"Parsing {label}...",
            delivery_method=report.delivery_method,
        )

        try:
            parsed = parse_report(report, schema_for(category))
        except ParseError as e:
            self._fail_category(run_id, category, e)
            return

        with self._write_lock:
            self._ensure_owned(run_id)
            receipt = write_records(category, parsed.data, window, run_id)
            self.watermarks.advance(receipt)

        with self._owned(run_id) as run:
            run.warnings.extend(f"{label}: {warning}" for warning in parsed.warnings)
            run.categories[category].advance(CategoryState.SAVED, record_count=receipt.record_count)
            run.step = f"Saved {receipt.record_count} {label}"
            run.percent = _percent(run)
            self._publish_progress(run)

    def _fail_category(self, run_id: str, category: ReportCategory, error) -> None:
        message = truncate_message(str(error) or type(error).__name__, self._settings.error_message_max_length)
        logger.warning(
            f"{category.label} failed: {message}",
            extra={
                "event": "pipeline.category.failed",
                "category": category.value,
                "error_type": type(error).__name__,
                "error_kind": classify_error(message).value,
            },
        )
        self._transition(
            run_id,
            category,
            CategoryState.FAILED,
            f"{category.label} failed",
            error=message,
        )

    def _transition(
        self,
        run_id: str,
        category: ReportCategory,
        state: CategoryState,
        step: str,
        **details,
    ) -> None:
        with self._owned(run_id) as run:
            run.categories[category].advance(state, **details)
            run.step = step
            run.percent = _percent(run)
            self._publish_progress(run)

    def _finish(self, run_id: str, state: RunState, error: Optional[str] = None) -> None:
        with self._owned(run_id) as run:
            snapshot = self._terminate(run, state, error)
        self._save_final(snapshot)

        logger.info(
            f"Pipeline run {state.value} in {snapshot.duration_ms} ms",
            extra={
                "event": f"pipeline.run.{state.value}",
                "run_id": run_id,
                "duration_ms": snapshot.duration_ms,
                "record_counts": snapshot.record_counts,
                "warning_count": len(snapshot.warnings),
            },
        )

    # ------------------------------------------------------------------
    # Lock-held helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _owned(self, run_id: str) -> Iterator[PipelineRun]:
        """Hold the lock and yield the active run, if it is still ``run_id``."""
        with self._lock:
            run = self._active
            if run is None or run.id != run_id:
                raise RunAbandonedError(run_id)
            yield run

    def _ensure_owned(self, run_id: str) -> None:
        """Raise RunAbandonedError unless ``run_id`` is still active.

        Holding the write lock keeps the answer valid until it is released.
        """
        with self._owned(run_id):
            pass

    def _terminate(self, run: PipelineRun, state: RunState, error: Optional[str]) -> PipelineRun:
        """Finalize ``run`` exactly once. Caller holds the lock."""
        now = self._clock()
        run.state = state
        run.finished_at = now
        run.duration_ms = max(0, int((now - run.started_at).total_seconds() * 1000))
        run.record_counts = {
            category.value: status.record_count or 0
            for category, status in run.categories.items()
            if status.state is CategoryState.SAVED
        }

        if state is RunState.ERROR:
            message = truncate_message(error or "Pipeline failed", self._settings.error_message_max_length)
            run.error_message = message
            run.error_kind = classify_error(message)
            run.step = "Failed"
            for status in run.categories.values():
                if not status.state.terminal:
                    status.advance(CategoryState.FAILED, error=message)
        else:
            run.step = "Complete"
            run.percent = 100

        self._active = None
        self._history.appendleft(run)
        self.streamer.publish(terminal_event(run))
        return run.snapshot()

    def _publish_progress(self, run: PipelineRun) -> None:
        self.streamer.publish(ProgressEvent(PROGRESS, run.id, run.progress_payload()))

    def _save(self, run: PipelineRun) -> None:
        with get_session() as session:
            RunRepository(session).save(run)

    def _save_final(self, snapshot: PipelineRun) -> None:
        # Already terminal in memory; only the durable copy is lost
        try:
            self._save(snapshot)
        except Exception as e:
            logger.error(
                f"Failed to record final state of run {snapshot.id}: {e}",
                extra={"event": "pipeline.run.save_failed", "run_id": snapshot.id},
                exc_info=True,
            )


def _percent(run: PipelineRun) -> int:
    total = len(run.categories)
    if not total:
        return 0
    done = sum(1 for status in run.categories.values() if status.state.terminal)
    return int(done * 100 / total)
