"""In-process broadcast of run progress to status-stream subscribers.

Publishing never blocks: each subscriber owns a bounded buffer and the
oldest buffered progress event is dropped when it fills. A terminal event is
never dropped, and once a run's terminal event is queued that run's
subscriptions stop accepting events and end after draining.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterator, List, Optional

from studio_pipeline.logging import get_logger

logger = get_logger(__name__, component="progress")

PROGRESS = "progress"
COMPLETE = "complete"
ERROR = "error"


@dataclass(frozen=True)
class ProgressEvent:
    """One message on the status stream."""

    type: str
    run_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.type in (COMPLETE, ERROR)


class Subscription:
    """A subscriber's view of the stream.

    Iterating yields events until the subscribed run's terminal event has
    been consumed or the subscription is closed.
    """

    def __init__(self, streamer: "ProgressStreamer", run_id: Optional[str], maxsize: int):
        self.run_id = run_id
        self.dropped = 0
        self._streamer = streamer
        self._events: Deque[ProgressEvent] = deque()
        self._maxsize = maxsize
        self._cond = threading.Condition()
        self._finished = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _offer(self, event: ProgressEvent) -> None:
        if self.run_id is not None and event.run_id != self.run_id:
            return
        with self._cond:
            if self._finished or self._closed:
                return
            if len(self._events) >= self._maxsize:
                self._drop_oldest_progress()
            self._events.append(event)
            if event.terminal and self.run_id is not None:
                self._finished = True
            self._cond.notify_all()

    def _drop_oldest_progress(self) -> None:
        for index, queued in enumerate(self._events):
            if not queued.terminal:
                del self._events[index]
                self.dropped += 1
                return

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None on timeout or once the stream has ended."""
        with self._cond:
            self._cond.wait_for(lambda: self._events or self._done(), timeout)
            if not self._events:
                return None
            return self._events.popleft()

    def _done(self) -> bool:
        return self._closed or self._finished

    @property
    def exhausted(self) -> bool:
        """True once nothing more will ever be returned."""
        with self._cond:
            return self._done() and not self._events

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event
            if event.terminal and self.run_id is not None:
                return

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._events.clear()
            self._cond.notify_all()
        self._streamer.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class ProgressStreamer:
    """Fan-out channel from the orchestrator to any number of subscribers."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, run_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, run_id, self.queue_size)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription._offer(event)
        if event.terminal:
            # Run-scoped subscriptions are finished; drop them from fan-out
            with self._lock:
                self._subscribers = [
                    s for s in self._subscribers if s.run_id != event.run_id
                ]

        logger.debug(
            f"Published {event.type} for {event.run_id}",
            extra={
                "event": "progress.published",
                "event_type": event.type,
                "run_id": event.run_id,
                "subscribers": len(subscribers),
            },
        )
