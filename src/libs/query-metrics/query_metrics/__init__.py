"""Prometheus query duration and error metrics for SQLAlchemy and other event-emitting database clients."""

from .bridge import QueryMetricsBridge
from .events import (
    QUERY_FAILED,
    QUERY_STARTED,
    QUERY_SUCCEEDED,
    EventSource,
    LocalEventSource,
    QueryFailedEvent,
    QueryStartedEvent,
    QuerySucceededEvent,
)
from .exceptions import ExporterConfigurationError, MetricRegistrationError
from .exporter import ExporterHandle, instrument
from .instruments import InstrumentOptions, MetricInstrumentSet, render_metrics
from .sqlalchemy_source import SQLAlchemyEventSource
from .tracker import CorrelationTracker

__all__ = [
    "QUERY_FAILED",
    "QUERY_STARTED",
    "QUERY_SUCCEEDED",
    "CorrelationTracker",
    "EventSource",
    "ExporterConfigurationError",
    "ExporterHandle",
    "InstrumentOptions",
    "LocalEventSource",
    "MetricInstrumentSet",
    "MetricRegistrationError",
    "QueryFailedEvent",
    "QueryMetricsBridge",
    "QueryStartedEvent",
    "QuerySucceededEvent",
    "SQLAlchemyEventSource",
    "instrument",
    "render_metrics",
]
