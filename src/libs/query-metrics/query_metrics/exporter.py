# src/libs/query-metrics/query_metrics/exporter.py
import logging
import time
from typing import Any, Callable, Dict, Optional, Sequence

from prometheus_client import CollectorRegistry
from pydantic import ValidationError

from . import config
from .bridge import QueryMetricsBridge
from .exceptions import ExporterConfigurationError
from .instruments import InstrumentOptions, MetricInstrumentSet
from .sqlalchemy_source import SQLAlchemyEventSource, is_sqlalchemy_engine

logger = logging.getLogger(__name__)


class ExporterHandle:
    """
    What `instrument` hands back to the caller.

    Attributes:
        registry: The registry created for this exporter when the caller did not
            pass one, so it can be rendered. None when an explicit registry was used.
        instruments: The registered histogram and counter.
        bridge: The event bridge driving them.
    """
    def __init__(
        self,
        bridge: QueryMetricsBridge,
        instruments: MetricInstrumentSet,
        registry: Optional[CollectorRegistry],
    ):
        self.bridge = bridge
        self.instruments = instruments
        self.registry = registry

    def detach(self) -> None:
        """Stops listening to the client. Metric values stay registered. Idempotent."""
        self.bridge.detach()

    def unregister(self) -> None:
        """Detaches, then removes both instruments from their registry."""
        self.bridge.detach()
        self.instruments.unregister()


def instrument(
    source: Any,
    *,
    registry: Optional[CollectorRegistry] = None,
    prefix: str = config.QUERY_METRICS_PREFIX,
    extra_labels: Optional[Dict[str, Any]] = None,
    duration_metric_name: str = config.QUERY_METRICS_DURATION_NAME,
    buckets: Sequence[float] = config.QUERY_METRICS_DURATION_BUCKETS,
    error_metric_name: str = config.QUERY_METRICS_ERROR_NAME,
    error_label: bool = config.QUERY_METRICS_ERROR_LABEL,
    max_pending_age: Optional[float] = config.QUERY_METRICS_MAX_PENDING_AGE,
    clock: Callable[[], float] = time.perf_counter,
) -> ExporterHandle:
    """
    Instruments a database client with a query duration histogram and a query
    error counter.

    Args:
        source: A SQLAlchemy Engine/AsyncEngine, or any EventSource publishing
            the query_started/query_succeeded/query_failed channels.
        registry: Where to register the metrics. A new CollectorRegistry is
            created (and returned on the handle) when omitted.
        prefix: Prepended to both metric names.
        extra_labels: Fixed labels added to every series. Values are converted
            with str(), so {"port": 5432} is exposed as port="5432".
        duration_metric_name: Histogram name, without prefix.
        buckets: Ascending histogram boundaries in seconds.
        error_metric_name: Counter name, without prefix.
        error_label: Label error increments with the error message.
        max_pending_age: Forget queries still pending after this many seconds.
            None keeps them until their terminal event.
        clock: Monotonic clock in seconds.

    Returns:
        An ExporterHandle exposing `detach()` and, for an implicit registry, `registry`.

    Raises:
        ExporterConfigurationError: on a missing source or invalid options.
        MetricRegistrationError: when a metric name is already registered.

    Example:
        handle = instrument(engine, prefix="app_")
        ...
        print(render_metrics(handle.registry))
        handle.detach()
    """
    if source is None:
        raise ExporterConfigurationError("An event source (e.g. a SQLAlchemy engine) is required.")
    if max_pending_age is not None and max_pending_age <= 0:
        raise ExporterConfigurationError(f"max_pending_age must be positive, got {max_pending_age}.")

    try:
        options = InstrumentOptions(
            prefix=prefix,
            duration_metric_name=duration_metric_name,
            buckets=tuple(buckets),
            error_metric_name=error_metric_name,
            error_label=error_label,
            extra_labels=dict(extra_labels or {}),
        )
    except ValidationError as e:
        raise ExporterConfigurationError(f"Invalid query metrics options: {e}") from e

    event_source = SQLAlchemyEventSource(source) if is_sqlalchemy_engine(source) else source
    for method in ("subscribe", "unsubscribe"):
        if not callable(getattr(event_source, method, None)):
            raise ExporterConfigurationError(
                f"{type(source).__name__} is neither a SQLAlchemy engine nor an event source."
            )

    implicit_registry = registry is None
    target_registry = CollectorRegistry() if implicit_registry else registry

    try:
        instruments = MetricInstrumentSet(options)
    except ValueError as e:
        raise ExporterConfigurationError(f"Invalid query metrics options: {e}") from e
    instruments.register(target_registry)

    bridge = QueryMetricsBridge(instruments, clock=clock, max_pending_age=max_pending_age)
    try:
        bridge.attach(event_source)
    except Exception:
        bridge.detach()
        instruments.unregister()
        raise

    return ExporterHandle(
        bridge=bridge,
        instruments=instruments,
        registry=target_registry if implicit_registry else None,
    )
