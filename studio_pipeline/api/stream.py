"""Server-sent event stream for one pipeline run."""

import json
import time
from typing import Any, Callable, Dict, Iterator

from studio_pipeline.logging import get_logger
from studio_pipeline.pipeline.exceptions import RunNotFoundError
from studio_pipeline.pipeline.orchestrator import PipelineOrchestrator, terminal_event

logger = get_logger(__name__, component="api")

KEEPALIVE = ": keepalive\n\n"


def format_sse(event: str, data: Dict[str, Any]) -> str:
    """Encode one SSE frame.

    Example:
        >>> format_sse("progress", {"percent": 10})
        'event: progress\\ndata: {"percent": 10}\\n\\n'
    """
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def run_event_stream(
    orchestrator: PipelineOrchestrator,
    run_id: str,
    timeout_seconds: float = 1800,
    keepalive_seconds: float = 15,
    monotonic: Callable[[], float] = time.monotonic,
) -> Iterator[str]:
    """Yield SSE frames for ``run_id`` until its terminal event.

    The subscription is opened before the current state is read, so a
    terminal event published in between is either seen in the snapshot or
    delivered by the subscription, never lost and never sent twice.
    """
    subscription = orchestrator.streamer.subscribe(run_id)
    try:
        try:
            run = orchestrator.status(run_id)
        except RunNotFoundError:
            yield format_sse("error", {"message": "Job not found"})
            return

        if not run.is_active:
            event = terminal_event(run)
            yield format_sse(event.type, event.payload)
            return

        yield format_sse("progress", run.progress_payload())

        deadline = monotonic() + timeout_seconds
        while True:
            remaining = deadline - monotonic()
            if remaining <= 0:
                logger.info(
                    f"Status stream for {run_id} timed out",
                    extra={"event": "api.stream.timed_out", "run_id": run_id},
                )
                yield format_sse("error", {"message": "Job timed out"})
                return

            event = subscription.get(timeout=min(keepalive_seconds, remaining))
            if event is None:
                yield KEEPALIVE
                continue

            yield format_sse(event.type, event.payload)
            if event.terminal:
                return
    finally:
        subscription.close()
