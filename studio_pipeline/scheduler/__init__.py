"""Scheduling of automatic pipeline runs."""

from .service import RUN_JOB_ID, WATCHDOG_JOB_ID, SchedulerService

__all__ = [
    "SchedulerService",
    "RUN_JOB_ID",
    "WATCHDOG_JOB_ID",
]
