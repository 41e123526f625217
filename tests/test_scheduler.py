"""Unit tests for the scheduler service.

Tests the SchedulerService including:
- Job defaults (no overlap, coalescing)
- Cron job registration when the schedule is enabled
- Watchdog registration
- Skipping ticks while a run is active
- Start/shutdown lifecycle
"""

from unittest.mock import Mock

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from studio_pipeline.config.models import ScheduleConfig
from studio_pipeline.pipeline.exceptions import AlreadyRunningError
from studio_pipeline.scheduler import RUN_JOB_ID, WATCHDOG_JOB_ID, SchedulerService


class TestSchedulerService:
    """Test suite for SchedulerService."""

    def test_scheduler_initialization(self):
        """Scheduler is created stopped, with non-overlapping job defaults."""
        orchestrator = Mock()
        scheduler = SchedulerService(orchestrator, stuck_after_minutes=20)

        assert scheduler.orchestrator is orchestrator
        assert scheduler.schedule == ScheduleConfig()
        assert scheduler.scheduler._job_defaults["max_instances"] == 1
        assert scheduler.scheduler._job_defaults["coalesce"] is True
        assert not scheduler.is_running()

    def test_start_registers_cron_job(self):
        """An enabled schedule registers the run job with a cron trigger."""
        scheduler = SchedulerService(
            Mock(),
            schedule=ScheduleConfig(enabled=True, cron="30 5 * * *", timezone="America/New_York"),
        )

        scheduler.start()
        try:
            assert scheduler.is_running()
            job = scheduler.scheduler.get_job(RUN_JOB_ID)
            assert job is not None
            assert isinstance(job.trigger, CronTrigger)
            next_run = scheduler.get_next_run_time()
            assert next_run is not None
            assert (next_run.hour, next_run.minute) == (5, 30)
            assert scheduler.scheduler.get_job(WATCHDOG_JOB_ID) is None
        finally:
            scheduler.shutdown(wait=False)

        assert not scheduler.is_running()

    def test_disabled_schedule_registers_no_run_job(self):
        """Without a schedule only the watchdog is registered."""
        scheduler = SchedulerService(Mock(), schedule=ScheduleConfig(enabled=False), stuck_after_minutes=20)

        scheduler.start()
        try:
            assert scheduler.scheduler.get_job(RUN_JOB_ID) is None
            assert scheduler.get_next_run_time() is None
            watchdog = scheduler.scheduler.get_job(WATCHDOG_JOB_ID)
            assert isinstance(watchdog.trigger, IntervalTrigger)
        finally:
            scheduler.shutdown(wait=False)

    def test_shutdown_when_not_started(self):
        """Shutdown is safe before start."""
        scheduler = SchedulerService(Mock())
        scheduler.shutdown()
        assert not scheduler.is_running()


class TestTriggerRun:
    """Test suite for scheduled run triggering."""

    def test_trigger_run_starts_pipeline(self):
        orchestrator = Mock()
        orchestrator.start.return_value = "pipeline-1-abcdef"
        scheduler = SchedulerService(orchestrator)

        assert scheduler.trigger_run() == "pipeline-1-abcdef"
        orchestrator.start.assert_called_once_with()

    def test_trigger_run_skips_when_already_running(self):
        """A tick during an active run is skipped, not queued."""
        orchestrator = Mock()
        orchestrator.start.side_effect = AlreadyRunningError("pipeline-1-abcdef")
        scheduler = SchedulerService(orchestrator)

        assert scheduler.trigger_run() is None

    def test_check_stuck_uses_threshold(self):
        orchestrator = Mock()
        orchestrator.reset_if_stuck.return_value = "pipeline-1-abcdef"
        scheduler = SchedulerService(orchestrator, stuck_after_minutes=20)

        assert scheduler.check_stuck() == "pipeline-1-abcdef"
        orchestrator.reset_if_stuck.assert_called_once_with(20)
