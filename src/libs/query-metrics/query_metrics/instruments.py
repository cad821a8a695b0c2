# src/libs/query-metrics/query_metrics/instruments.py
import logging
import math
import re
import threading
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest
from prometheus_client.metrics_core import Metric
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from . import config
from .exceptions import MetricRegistrationError

logger = logging.getLogger(__name__)

METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

ERROR_LABEL = "error"
DURATION_HELP = "histogram of query responses"
ERROR_HELP = "counter of query errors"


class InstrumentOptions(BaseModel):
    """
    Naming, bucketing and labelling of the exporter's two instruments.
    Defaults come from the QUERY_METRICS_* environment variables.
    """
    model_config = ConfigDict(frozen=True, validate_default=True)

    prefix: str = Field(default=config.QUERY_METRICS_PREFIX, description="Prepended to both metric names.")
    duration_metric_name: str = Field(
        default=config.QUERY_METRICS_DURATION_NAME, description="Query duration histogram name, without prefix."
    )
    buckets: Tuple[float, ...] = Field(
        default=config.QUERY_METRICS_DURATION_BUCKETS, description="Ascending histogram bucket boundaries in seconds."
    )
    error_metric_name: str = Field(
        default=config.QUERY_METRICS_ERROR_NAME, description="Query error counter name, without prefix."
    )
    error_label: bool = Field(
        default=config.QUERY_METRICS_ERROR_LABEL,
        description="Label every error increment with the failing query's error message.",
    )
    extra_labels: Dict[str, str] = Field(
        default_factory=dict, description="Fixed labels applied to every series of both instruments."
    )

    @field_validator("extra_labels", mode="before")
    @classmethod
    def _stringify_label_values(cls, value: Any) -> Any:
        # Label values are rendered as text, so `{"port": 5432}` becomes "5432".
        if isinstance(value, Mapping):
            return {key: str(item) for key, item in value.items()}
        return value

    @property
    def duration_name(self) -> str:
        return f"{self.prefix}{self.duration_metric_name}"

    @property
    def error_name(self) -> str:
        return f"{self.prefix}{self.error_metric_name}"

    @property
    def extra_label_names(self) -> Tuple[str, ...]:
        return tuple(sorted(self.extra_labels))

    @field_validator("buckets")
    @classmethod
    def _check_buckets(cls, value: Tuple[float, ...]) -> Tuple[float, ...]:
        if not value:
            raise ValueError("at least one bucket boundary is required")
        for boundary in value:
            if not math.isfinite(boundary) or boundary <= 0:
                raise ValueError(f"bucket boundaries must be positive and finite, got {boundary}")
        if any(upper <= lower for lower, upper in zip(value, value[1:])):
            raise ValueError(f"bucket boundaries must be strictly ascending, got {list(value)}")
        return value

    @model_validator(mode="after")
    def _check_names(self) -> "InstrumentOptions":
        for name in (self.duration_name, self.error_name):
            if not METRIC_NAME_RE.match(name):
                raise ValueError(f"'{name}' is not a valid metric name")
        # Counters are exposed as `<base>_total`; the base alone must still be a valid name.
        error_base = self.error_name[:-len("_total")] if self.error_name.endswith("_total") else self.error_name
        if not METRIC_NAME_RE.match(error_base):
            raise ValueError(f"'{self.error_name}' leaves no valid counter name once '_total' is removed")
        for label in self.extra_labels:
            if not LABEL_NAME_RE.match(label) or label.startswith("__"):
                raise ValueError(f"'{label}' is not a valid label name")
            if label == "le":
                raise ValueError("'le' is reserved for histogram buckets")
            if self.error_label and label == ERROR_LABEL:
                raise ValueError(f"'{ERROR_LABEL}' clashes with the error message label")
        return self


class WithoutCreatedSamples:
    """
    Registry-facing view of a prometheus_client metric that leaves out its
    `<name>_created` timestamp samples, so each instrument exposes only its
    own family: buckets, `_count` and `_sum` for the histogram, `_total` for
    the counter.
    """
    def __init__(self, metric):
        self.metric = metric

    def describe(self) -> Iterable[Metric]:
        return self.metric.describe()

    def collect(self) -> Iterator[Metric]:
        for family in self.metric.collect():
            created = f"{family.name}_created"
            family.samples = [sample for sample in family.samples if sample.name != created]
            yield family


class MetricInstrumentSet:
    """
    Owns the query duration histogram and the query error counter.

    Both are created unregistered and only land in a registry through
    `register`, which adds both or neither.
    """
    def __init__(self, options: InstrumentOptions):
        self.options = options
        extra_names = list(options.extra_label_names)

        self.duration_histogram = Histogram(
            options.duration_name,
            DURATION_HELP,
            labelnames=extra_names,
            buckets=options.buckets,
            registry=None,
        )

        error_help = ERROR_HELP
        error_names = list(extra_names)
        if options.error_label:
            error_names = sorted(error_names + [ERROR_LABEL])
            error_help += f" with labels: {ERROR_LABEL}"

        self.error_counter = Counter(
            options.error_name,
            error_help,
            labelnames=error_names,
            registry=None,
        )

        # Label-less series are bound up front so they render as 0 before any query.
        self._duration_series = (
            self.duration_histogram.labels(**options.extra_labels) if extra_names else self.duration_histogram
        )
        self._error_series: Optional[Counter] = None
        if not options.error_label:
            self._error_series = (
                self.error_counter.labels(**options.extra_labels) if extra_names else self.error_counter
            )

        # What actually goes into a registry; see WithoutCreatedSamples.
        self._duration_collector = WithoutCreatedSamples(self.duration_histogram)
        self._error_collector = WithoutCreatedSamples(self.error_counter)
        self._registry: Optional[CollectorRegistry] = None
        self._lock = threading.Lock()

    @property
    def registry(self) -> Optional[CollectorRegistry]:
        return self._registry

    def register(self, registry: CollectorRegistry) -> None:
        """
        Registers both instruments into `registry`.

        Raises:
            MetricRegistrationError: if either name is already taken. If the
                histogram was registered before the counter failed, it is
                removed again so the registry is left untouched.
        """
        with self._lock:
            if self._registry is not None:
                raise MetricRegistrationError(
                    f"Instruments '{self.options.duration_name}' and '{self.options.error_name}' are already registered."
                )
            try:
                registry.register(self._duration_collector)
            except ValueError as e:
                raise MetricRegistrationError(
                    f"Cannot register '{self.options.duration_name}': {e}"
                ) from e
            try:
                registry.register(self._error_collector)
            except ValueError as e:
                registry.unregister(self._duration_collector)
                raise MetricRegistrationError(
                    f"Cannot register '{self.options.error_name}': {e}"
                ) from e
            self._registry = registry

        logger.info(
            "Registered query metrics.",
            extra={
                "duration_metric": self.options.duration_name,
                "error_metric": self.options.error_name,
                "extra_labels": self.options.extra_labels,
            }
        )

    def unregister(self) -> None:
        """Removes both instruments from the registry they were added to. Idempotent."""
        with self._lock:
            registry = self._registry
            if registry is None:
                return
            registry.unregister(self._duration_collector)
            registry.unregister(self._error_collector)
            self._registry = None
        logger.info(f"Unregistered query metrics '{self.options.duration_name}' and '{self.options.error_name}'.")

    def observe_duration(self, seconds: float) -> None:
        """Records one successful query taking `seconds`, tagged with the extra labels."""
        self._duration_series.observe(seconds)

    def increment_errors(self, message: str) -> None:
        """
        Counts one failed query. The message only becomes a label value when the
        error label is enabled; otherwise all failures share one series.
        """
        if self._error_series is not None:
            self._error_series.inc()
            return
        self.error_counter.labels(**{ERROR_LABEL: message}, **self.options.extra_labels).inc()


def render_metrics(registry: CollectorRegistry) -> str:
    """Renders every metric of `registry` in the Prometheus text exposition format."""
    return generate_latest(registry).decode("utf-8")
