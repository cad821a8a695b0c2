# src/libs/query-metrics/query_metrics/events.py
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

# Lifecycle channels every instrumented client must provide.
QUERY_STARTED = "query_started"
QUERY_SUCCEEDED = "query_succeeded"
QUERY_FAILED = "query_failed"

CHANNELS = (QUERY_STARTED, QUERY_SUCCEEDED, QUERY_FAILED)

EventHandler = Callable[[Any], None]


class QueryStartedEvent(BaseModel):
    """Emitted when a query is handed to the database."""
    model_config = ConfigDict(frozen=True)

    correlation_id: Any = Field(..., description="Opaque id unique among in-flight queries.")
    statement: Optional[str] = None


class QuerySucceededEvent(BaseModel):
    """Emitted when a query completed without error. Any result is ignored."""
    model_config = ConfigDict(frozen=True)

    correlation_id: Any = Field(..., description="Id of the matching QueryStartedEvent.")
    statement: Optional[str] = None


class QueryFailedEvent(BaseModel):
    """
    Emitted when a query raised. `correlation_id` may be None for failures that
    happen before a statement was ever started (e.g. a refused connection).
    """
    model_config = ConfigDict(frozen=True)

    correlation_id: Any = Field(..., description="Id of the matching QueryStartedEvent, if any.")
    error: Any = Field(..., description="The raised exception, or anything carrying a message.")
    statement: Optional[str] = None


class EventSource(Protocol):
    """
    A protocol for anything that publishes query lifecycle events on the three
    named channels. Subscribing the same handler twice, or unsubscribing one that
    is not subscribed, must be a no-op.
    """
    def subscribe(self, channel: str, handler: EventHandler) -> None:
        ...

    def unsubscribe(self, channel: str, handler: EventHandler) -> None:
        ...


def describe_error(error: Any) -> str:
    """
    Returns the human readable message of a failure payload.

    Strings are used as-is, objects exposing a string `message` attribute use it,
    everything else (exceptions included) falls back to `str(error)`.
    """
    if isinstance(error, str):
        return error
    message = getattr(error, "message", None)
    if isinstance(message, str):
        return message
    return str(error)


class LocalEventSource:
    """
    In-process event emitter implementing EventSource.

    Lets a database client without native hooks publish its own lifecycle
    events: call `emit(QUERY_STARTED, QueryStartedEvent(...))` and so on.
    """
    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {channel: [] for channel in CHANNELS}
        self._lock = threading.Lock()

    def _check_channel(self, channel: str) -> None:
        if channel not in self._handlers:
            raise ValueError(f"Unknown channel '{channel}'. Expected one of {CHANNELS}.")

    def subscribe(self, channel: str, handler: EventHandler) -> None:
        self._check_channel(channel)
        with self._lock:
            if handler not in self._handlers[channel]:
                self._handlers[channel].append(handler)

    def unsubscribe(self, channel: str, handler: EventHandler) -> None:
        self._check_channel(channel)
        with self._lock:
            if handler in self._handlers[channel]:
                self._handlers[channel].remove(handler)

    def listener_count(self, channel: str) -> int:
        self._check_channel(channel)
        with self._lock:
            return len(self._handlers[channel])

    def emit(self, channel: str, payload: Any) -> None:
        """Delivers `payload` synchronously to every handler of `channel`, in subscription order."""
        self._check_channel(channel)
        with self._lock:
            handlers = tuple(self._handlers[channel])
        for handler in handlers:
            handler(payload)
