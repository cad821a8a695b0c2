# src/libs/query-metrics/query_metrics/sqlalchemy_source.py
import logging
import threading
from typing import Any, Callable, Dict, List

from sqlalchemy import event
from sqlalchemy.engine import Engine

from .events import (
    CHANNELS,
    QUERY_FAILED,
    QUERY_STARTED,
    QUERY_SUCCEEDED,
    EventHandler,
    QueryFailedEvent,
    QueryStartedEvent,
    QuerySucceededEvent,
)

logger = logging.getLogger(__name__)

# Engine events backing each lifecycle channel.
ENGINE_EVENTS = {
    QUERY_STARTED: "before_cursor_execute",
    QUERY_SUCCEEDED: "after_cursor_execute",
    QUERY_FAILED: "handle_error",
}


def is_sqlalchemy_engine(target: Any) -> bool:
    """True for a sync Engine or an AsyncEngine wrapping one."""
    return isinstance(getattr(target, "sync_engine", target), Engine)


class SQLAlchemyEventSource:
    """
    Publishes the query lifecycle of a SQLAlchemy engine on the three channels.

    Each statement's ExecutionContext is used as its correlation id: SQLAlchemy
    creates one per execution and passes the same object to the before/after
    cursor hooks and to `handle_error`. Engine listeners are only installed while
    a channel has at least one subscriber.
    """
    def __init__(self, engine: Any):
        # AsyncEngine only exposes events through its sync facade.
        self.engine: Engine = getattr(engine, "sync_engine", engine)
        if not isinstance(self.engine, Engine):
            raise TypeError(f"Expected a SQLAlchemy Engine or AsyncEngine, got {type(engine).__name__}.")
        self._handlers: Dict[str, List[EventHandler]] = {channel: [] for channel in CHANNELS}
        self._listeners: Dict[str, Callable] = {
            QUERY_STARTED: self._before_cursor_execute,
            QUERY_SUCCEEDED: self._after_cursor_execute,
            QUERY_FAILED: self._handle_error,
        }
        self._lock = threading.Lock()

    def subscribe(self, channel: str, handler: EventHandler) -> None:
        self._check_channel(channel)
        with self._lock:
            handlers = self._handlers[channel]
            if handler in handlers:
                return
            handlers.append(handler)
            if len(handlers) == 1:
                event.listen(self.engine, ENGINE_EVENTS[channel], self._listeners[channel])
                logger.debug(f"Listening to '{ENGINE_EVENTS[channel]}' on engine {self.engine.url!r}.")

    def unsubscribe(self, channel: str, handler: EventHandler) -> None:
        self._check_channel(channel)
        with self._lock:
            handlers = self._handlers[channel]
            if handler not in handlers:
                return
            handlers.remove(handler)
            if not handlers:
                event.remove(self.engine, ENGINE_EVENTS[channel], self._listeners[channel])
                logger.debug(f"Stopped listening to '{ENGINE_EVENTS[channel]}' on engine {self.engine.url!r}.")

    def listener_count(self, channel: str) -> int:
        self._check_channel(channel)
        with self._lock:
            return len(self._handlers[channel])

    def _check_channel(self, channel: str) -> None:
        if channel not in self._handlers:
            raise ValueError(f"Unknown channel '{channel}'. Expected one of {CHANNELS}.")

    def _dispatch(self, channel: str, payload: Any) -> None:
        with self._lock:
            handlers = tuple(self._handlers[channel])
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                # Never let instrumentation break statement execution.
                logger.warning(f"Handler for '{channel}' failed.", exc_info=True)

    def _before_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        self._dispatch(QUERY_STARTED, QueryStartedEvent(correlation_id=context, statement=statement))

    def _after_cursor_execute(self, conn, cursor, statement, parameters, context, executemany):
        self._dispatch(QUERY_SUCCEEDED, QuerySucceededEvent(correlation_id=context, statement=statement))

    def _handle_error(self, exception_context):
        self._dispatch(
            QUERY_FAILED,
            QueryFailedEvent(
                correlation_id=exception_context.execution_context,
                error=exception_context.original_exception,
                statement=exception_context.statement,
            ),
        )
