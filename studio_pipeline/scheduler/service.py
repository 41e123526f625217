"""Cron-driven pipeline triggering and the stuck-run watchdog."""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from studio_pipeline.config.models import ScheduleConfig
from studio_pipeline.logging import get_logger
from studio_pipeline.pipeline.exceptions import AlreadyRunningError
from studio_pipeline.pipeline.orchestrator import PipelineOrchestrator

logger = get_logger(__name__, component="scheduler")

RUN_JOB_ID = "pipeline-run"
WATCHDOG_JOB_ID = "pipeline-watchdog"


class SchedulerService:
    """
    Wraps APScheduler to start pipeline runs on a cron schedule.

    A scheduled tick only asks the orchestrator to start; the run itself
    executes on the orchestrator's worker thread. Ticks that find a run
    already active are logged and skipped.
    """

    def __init__(
        self,
        orchestrator: PipelineOrchestrator,
        schedule: Optional[ScheduleConfig] = None,
        stuck_after_minutes: int = 0,
        watchdog_interval_seconds: int = 60,
    ):
        """
        Args:
            orchestrator: Orchestrator receiving start()/reset_if_stuck() calls
            schedule: Cron expression and timezone for automatic runs
            stuck_after_minutes: Watchdog threshold (0 disables the watchdog)
            watchdog_interval_seconds: How often the watchdog checks
        """
        self.orchestrator = orchestrator
        self.schedule = schedule or ScheduleConfig()
        self.stuck_after_minutes = stuck_after_minutes
        self.watchdog_interval_seconds = watchdog_interval_seconds

        self.scheduler = BackgroundScheduler(
            job_defaults={
                "max_instances": 1,
                "coalesce": True,
                "misfire_grace_time": 300,
            },
            timezone=timezone.utc,
        )

    def start(self) -> None:
        """Register the enabled jobs and start the scheduler thread."""
        if self.schedule.enabled:
            self.scheduler.add_job(
                func=self.trigger_run,
                trigger=CronTrigger.from_crontab(self.schedule.cron, timezone=ZoneInfo(self.schedule.timezone)),
                id=RUN_JOB_ID,
                name="Studio ingestion pipeline",
                replace_existing=True,
            )

        if self.stuck_after_minutes > 0:
            self.scheduler.add_job(
                func=self.check_stuck,
                trigger=IntervalTrigger(seconds=self.watchdog_interval_seconds, timezone=timezone.utc),
                id=WATCHDOG_JOB_ID,
                name="Stuck run watchdog",
                replace_existing=True,
            )

        self.scheduler.start()

        next_run = self.get_next_run_time()
        logger.info(
            f"Scheduler started ({self.schedule.cron} {self.schedule.timezone})"
            if self.schedule.enabled
            else "Scheduler started without a run schedule",
            extra={
                "event": "scheduler.started",
                "cron": self.schedule.cron if self.schedule.enabled else None,
                "timezone": self.schedule.timezone,
                "next_run_time": next_run.isoformat() if next_run else None,
                "watchdog_minutes": self.stuck_after_minutes,
            },
        )

    def trigger_run(self) -> Optional[str]:
        """Start a run now. Returns the run id, or None if one is already active."""
        try:
            run_id = self.orchestrator.start()
        except AlreadyRunningError as e:
            logger.warning(
                "Scheduled run skipped: previous run still in progress",
                extra={
                    "event": "scheduler.run.skipped",
                    "reason": "already_running",
                    "active_run_id": e.active_run_id,
                },
            )
            return None

        logger.info(
            f"Scheduled run {run_id} started",
            extra={"event": "scheduler.run.triggered", "run_id": run_id},
        )
        return run_id

    def check_stuck(self) -> Optional[str]:
        return self.orchestrator.reset_if_stuck(self.stuck_after_minutes)

    def shutdown(self, wait: bool = False) -> None:
        logger.info(
            "Shutting down scheduler",
            extra={"event": "scheduler.stopping", "wait_for_jobs": wait},
        )
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler shutdown complete", extra={"event": "scheduler.stopped"})

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_next_run_time(self) -> Optional[datetime]:
        job = self.scheduler.get_job(RUN_JOB_ID)
        return job.next_run_time if job else None
