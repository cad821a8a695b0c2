# src/libs/query-metrics/query_metrics/bridge.py
import functools
import logging
import threading
import time
from typing import Any, Callable, Optional

from .events import QUERY_FAILED, QUERY_STARTED, QUERY_SUCCEEDED, EventSource, describe_error
from .instruments import MetricInstrumentSet
from .tracker import CorrelationTracker

logger = logging.getLogger(__name__)


def _guarded(handler: Callable) -> Callable:
    """
    Wraps a bridge event handler so that nothing it raises reaches the event
    source's dispatch loop. A failing event is logged and skipped.
    """
    @functools.wraps(handler)
    def wrapper(self, payload: Any) -> None:
        if not self._active:
            return
        try:
            handler(self, payload)
        except Exception:
            logger.warning(
                f"Skipping query event that could not be processed: {handler.__name__}.",
                exc_info=True,
            )
    return wrapper


class QueryMetricsBridge:
    """
    Correlates query lifecycle events and turns them into metric updates.

    On "started" the start time is recorded against the query's correlation id.
    On "succeeded" the elapsed time is observed into the duration histogram; on
    "failed" the error counter is incremented, with or without a matching start.
    """
    def __init__(
        self,
        instruments: MetricInstrumentSet,
        tracker: Optional[CorrelationTracker] = None,
        clock: Callable[[], float] = time.perf_counter,
        max_pending_age: Optional[float] = None,
    ):
        self.instruments = instruments
        self.tracker = tracker if tracker is not None else CorrelationTracker()
        self.clock = clock
        self.max_pending_age = max_pending_age
        self._source: Optional[EventSource] = None
        self._active = False
        self._lock = threading.Lock()

    @property
    def attached(self) -> bool:
        return self._active

    def attach(self, source: EventSource) -> Callable[[], None]:
        """
        Subscribes to the three lifecycle channels of `source`.

        Returns:
            The bridge's `detach` callable.
        """
        with self._lock:
            if self._source is not None:
                raise RuntimeError("Bridge is already attached to an event source.")
            self._source = source
            self._active = True
            source.subscribe(QUERY_STARTED, self.on_query_started)
            source.subscribe(QUERY_SUCCEEDED, self.on_query_succeeded)
            source.subscribe(QUERY_FAILED, self.on_query_failed)
        logger.info(f"Query metrics attached to {type(source).__name__}.")
        return self.detach

    def detach(self) -> None:
        """
        Unsubscribes from all channels. Safe to call repeatedly and while events
        are being delivered: once this returns, later events change nothing.
        """
        with self._lock:
            source = self._source
            if source is None:
                return
            self._active = False
            self._source = None
            source.unsubscribe(QUERY_STARTED, self.on_query_started)
            source.unsubscribe(QUERY_SUCCEEDED, self.on_query_succeeded)
            source.unsubscribe(QUERY_FAILED, self.on_query_failed)
            pending = len(self.tracker)
            self.tracker.clear()
        logger.info(
            f"Query metrics detached from {type(source).__name__}.",
            extra={"dropped_pending_queries": pending}
        )

    @_guarded
    def on_query_started(self, payload: Any) -> None:
        correlation_id = payload.correlation_id
        now = self.clock()
        if self.max_pending_age is not None:
            evicted = self.tracker.evict_older_than(self.max_pending_age, now)
            if evicted:
                logger.debug(f"Evicted {evicted} queries pending for more than {self.max_pending_age}s.")
        self.tracker.record_start(correlation_id, now)
        # A detach that ran while this start was in flight has already cleared the tracker.
        if not self._active:
            self.tracker.take_and_remove(correlation_id)

    @_guarded
    def on_query_succeeded(self, payload: Any) -> None:
        start_time = self.tracker.take_and_remove(payload.correlation_id)
        if start_time is None:
            logger.debug("Query succeeded without a recorded start. Skipping duration.")
            return
        self.instruments.observe_duration(self.clock() - start_time)

    @_guarded
    def on_query_failed(self, payload: Any) -> None:
        correlation_id = payload.correlation_id
        message = describe_error(payload.error)
        self.tracker.take_and_remove(correlation_id)
        self.instruments.increment_errors(message)
