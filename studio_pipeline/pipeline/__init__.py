"""Run orchestration, progress streaming and freshness reporting."""

from .exceptions import AlreadyRunningError, OrchestratorError, RunAbandonedError, RunNotFoundError
from .freshness import FreshnessReporter
from .orchestrator import (
    INTERRUPTED_MESSAGE,
    RESET_MESSAGE,
    PipelineOrchestrator,
    classify_error,
    truncate_message,
)
from .progress import ProgressEvent, ProgressStreamer, Subscription

__all__ = [
    "PipelineOrchestrator",
    "ProgressStreamer",
    "ProgressEvent",
    "Subscription",
    "FreshnessReporter",
    "classify_error",
    "truncate_message",
    "RESET_MESSAGE",
    "INTERRUPTED_MESSAGE",
    "OrchestratorError",
    "AlreadyRunningError",
    "RunNotFoundError",
    "RunAbandonedError",
]
