"""Exceptions raised by the run orchestrator."""

from typing import Optional


class OrchestratorError(Exception):
    """Base exception for run lifecycle errors."""

    pass


class AlreadyRunningError(OrchestratorError):
    """start() was called while another run holds the single-flight slot."""

    def __init__(self, active_run_id: str) -> None:
        super().__init__(f"A pipeline run is already in progress: {active_run_id}")
        self.active_run_id = active_run_id


class RunNotFoundError(OrchestratorError):
    """No run with the requested id is known, in memory or in storage."""

    def __init__(self, run_id: Optional[str]) -> None:
        super().__init__(f"Job not found: {run_id}")
        self.run_id = run_id


class RunAbandonedError(OrchestratorError):
    """The run was reset or replaced; its late results must be discarded."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} is no longer active")
        self.run_id = run_id
