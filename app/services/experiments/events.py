"""
Event dispatch from the experimentation engine to the analytics sink.

The engine never calls the sink directly. Events are put on a bounded
queue and a background worker thread hands them to ``EventSink.emit``,
so lock-holding engine code never waits on sink I/O.

Usage:
    dispatcher = EventDispatcher(LoggingEventSink())
    dispatcher.start()
    dispatcher.publish("ab_test_assignment", {"experiment_id": "exp_1", ...})
    ...
    dispatcher.stop()
"""

import queue
import threading
from typing import Any, Dict, Optional, Protocol

import structlog

logger = structlog.get_logger()

ASSIGNMENT_EVENT = "ab_test_assignment"
CONVERSION_EVENT = "ab_test_conversion"

_STOP = object()


class EventSink(Protocol):
    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingEventSink:
    """Writes experiment events to the structured log."""

    def __init__(self, logger_name: str = "experiments.events"):
        self._logger = structlog.get_logger(logger_name)

    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        self._logger.info(event_name, **payload)


class NullEventSink:
    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        return None


class EventDispatcher:
    def __init__(self, sink: EventSink, max_queue_size: int = 10000):
        self.sink = sink
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max_queue_size)
        self._worker: Optional[threading.Thread] = None
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def start(self) -> None:
        if self.is_running:
            return

        self._worker = threading.Thread(
            target=self._worker_loop, name="ExperimentEventDispatcher", daemon=True
        )
        self._worker.start()
        logger.info("event_dispatcher_started", max_queue_size=self._queue.maxsize)

    def stop(self, timeout: float = 5.0) -> None:
        """Deliver whatever is queued, then stop the worker."""
        if not self.is_running:
            return

        # Blocking put: the stop marker must not be dropped on a full queue
        self._queue.put(_STOP)
        self._worker.join(timeout)
        self._worker = None
        logger.info("event_dispatcher_stopped", dropped=self.dropped)

    def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        """Queue an event without blocking. A full queue drops the event."""
        try:
            self._queue.put_nowait((event_name, dict(payload)))
        except queue.Full:
            self.dropped += 1
            logger.warning("experiment_event_dropped", event_name=event_name, reason="queue_full")

    def drain(self) -> None:
        """Block until every queued event has been handed to the sink."""
        if not self.is_running:
            return
        self._queue.join()

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                event_name, payload = item
                self._deliver(event_name, payload)
            finally:
                self._queue.task_done()

    def _deliver(self, event_name: str, payload: Dict[str, Any]) -> None:
        try:
            self.sink.emit(event_name, payload)
        except Exception as e:
            # Delivery is best-effort: a failing sink must not take the worker down
            logger.error(
                "experiment_event_delivery_failed",
                event_name=event_name,
                error=str(e),
                error_type=type(e).__name__,
            )
