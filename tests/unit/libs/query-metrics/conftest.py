# tests/unit/libs/query-metrics/conftest.py
import pytest
from prometheus_client import CollectorRegistry

from query_metrics.bridge import QueryMetricsBridge
from query_metrics.events import LocalEventSource
from query_metrics.instruments import InstrumentOptions, MetricInstrumentSet


class FakeClock:
    """A manually advanced monotonic clock."""
    def __init__(self, start: float = 100.0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def registry() -> CollectorRegistry:
    """Provides an empty, isolated Prometheus registry."""
    return CollectorRegistry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source() -> LocalEventSource:
    return LocalEventSource()


@pytest.fixture
def make_bridge(registry, clock, source):
    """
    Builds a registered instrument set with the given options and attaches a
    bridge for it to the local event source.
    """
    def _make(**options) -> QueryMetricsBridge:
        options.setdefault("prefix", "test_")
        instruments = MetricInstrumentSet(InstrumentOptions(**options))
        instruments.register(registry)
        bridge = QueryMetricsBridge(instruments, clock=clock)
        bridge.attach(source)
        return bridge
    return _make
