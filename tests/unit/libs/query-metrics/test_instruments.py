# tests/unit/libs/query-metrics/test_instruments.py
import re
import textwrap

import pytest
from prometheus_client import Counter
from pydantic import ValidationError

from query_metrics.exceptions import MetricRegistrationError
from query_metrics.instruments import InstrumentOptions, MetricInstrumentSet, render_metrics


def test_default_options():
    options = InstrumentOptions()

    assert options.prefix == "sqlalchemy_"
    assert options.duration_name == "sqlalchemy_query_duration_seconds"
    assert options.error_name == "sqlalchemy_query_errors_total"
    assert options.buckets == (0.003, 0.03, 0.1, 0.3, 1.5, 10)
    assert options.error_label is True
    assert options.extra_labels == {}


@pytest.mark.parametrize(
    "buckets",
    [(), (0.3, 0.1), (0.1, 0.1), (-1.0, 1.0), (0.0, 1.0), (0.1, float("inf"))],
)
def test_invalid_buckets_are_rejected(buckets):
    with pytest.raises(ValidationError):
        InstrumentOptions(buckets=buckets)


def test_invalid_metric_name_is_rejected():
    with pytest.raises(ValidationError):
        InstrumentOptions(prefix="9-bad-")


@pytest.mark.parametrize("label", ["le", "__internal", "not-valid", "1st"])
def test_invalid_extra_label_names_are_rejected(label):
    with pytest.raises(ValidationError):
        InstrumentOptions(extra_labels={label: "x"})


def test_error_extra_label_only_clashes_when_error_label_enabled():
    with pytest.raises(ValidationError):
        InstrumentOptions(extra_labels={"error": "x"})

    options = InstrumentOptions(extra_labels={"error": "x"}, error_label=False)
    assert options.extra_labels == {"error": "x"}


def test_observe_fills_cumulative_buckets(registry):
    """
    GIVEN buckets [0.1, 0.3, 1.5, 10]
    WHEN a 0.25s and a 2s query are observed
    THEN each bucket counts the observations at or below its bound.
    """
    # ARRANGE
    instruments = MetricInstrumentSet(InstrumentOptions(prefix="", buckets=(0.1, 0.3, 1.5, 10)))
    instruments.register(registry)

    # ACT
    instruments.observe_duration(0.25)
    instruments.observe_duration(2.0)

    # ASSERT
    def bucket(le):
        return registry.get_sample_value("query_duration_seconds_bucket", {"le": le})

    assert bucket("0.1") == 0
    assert bucket("0.3") == 1
    assert bucket("1.5") == 1
    assert bucket("10.0") == 2
    assert bucket("+Inf") == 2
    assert registry.get_sample_value("query_duration_seconds_count") == 2
    assert registry.get_sample_value("query_duration_seconds_sum") == 2.25


def test_error_label_creates_one_series_per_message(registry):
    instruments = MetricInstrumentSet(InstrumentOptions(prefix=""))
    instruments.register(registry)

    instruments.increment_errors("boom")
    instruments.increment_errors("boom")
    instruments.increment_errors("bang")

    assert registry.get_sample_value("query_errors_total", {"error": "boom"}) == 2
    assert registry.get_sample_value("query_errors_total", {"error": "bang"}) == 1
    # Label-ed counters have no base series until incremented.
    assert registry.get_sample_value("query_errors_total") is None


def test_without_error_label_all_errors_share_one_series(registry):
    instruments = MetricInstrumentSet(InstrumentOptions(prefix="", error_label=False))
    instruments.register(registry)
    assert registry.get_sample_value("query_errors_total") == 0

    instruments.increment_errors("boom")
    instruments.increment_errors("bang")

    assert registry.get_sample_value("query_errors_total") == 2
    assert "error=" not in render_metrics(registry)


def test_extra_labels_are_applied_to_every_series(registry):
    instruments = MetricInstrumentSet(
        InstrumentOptions(prefix="", buckets=(0.1,), extra_labels={"foo": "bar", "db": "main"})
    )
    instruments.register(registry)

    instruments.observe_duration(0.05)
    instruments.increment_errors("boom")

    labels = {"db": "main", "foo": "bar"}
    assert registry.get_sample_value("query_duration_seconds_count", labels) == 1
    assert registry.get_sample_value("query_duration_seconds_bucket", {**labels, "le": "0.1"}) == 1
    assert registry.get_sample_value("query_errors_total", {**labels, "error": "boom"}) == 1

    output = render_metrics(registry)
    assert 'query_duration_seconds_bucket{db="main",foo="bar",le="0.1"} 1.0' in output
    assert 'query_errors_total{db="main",error="boom",foo="bar"} 1.0' in output


def test_rendered_exposition_before_any_query(registry):
    """
    GIVEN freshly registered instruments
    WHEN the registry is rendered
    THEN the output is exactly the zeroed histogram and the counter header.
    """
    instruments = MetricInstrumentSet(InstrumentOptions(prefix="app_"))
    instruments.register(registry)

    output = render_metrics(registry)

    assert output == textwrap.dedent(
        """\
        # HELP app_query_duration_seconds histogram of query responses
        # TYPE app_query_duration_seconds histogram
        app_query_duration_seconds_bucket{le="0.003"} 0.0
        app_query_duration_seconds_bucket{le="0.03"} 0.0
        app_query_duration_seconds_bucket{le="0.1"} 0.0
        app_query_duration_seconds_bucket{le="0.3"} 0.0
        app_query_duration_seconds_bucket{le="1.5"} 0.0
        app_query_duration_seconds_bucket{le="10.0"} 0.0
        app_query_duration_seconds_bucket{le="+Inf"} 0.0
        app_query_duration_seconds_count 0.0
        app_query_duration_seconds_sum 0.0
        # HELP app_query_errors_total counter of query errors with labels: error
        # TYPE app_query_errors_total counter
        """
    )


def test_created_timestamps_are_not_exposed(registry):
    instruments = MetricInstrumentSet(
        InstrumentOptions(prefix="app_", error_label=False, extra_labels={"db": "main"})
    )
    instruments.register(registry)
    instruments.observe_duration(0.5)
    instruments.increment_errors("boom")

    output = render_metrics(registry)

    assert "_created" not in output
    assert re.findall(r"^# TYPE (\S+)", output, re.MULTILINE) == [
        "app_query_duration_seconds",
        "app_query_errors_total",
    ]
    assert registry.get_sample_value("app_query_duration_seconds_created", {"db": "main"}) is None
    assert registry.get_sample_value("app_query_errors_created", {"db": "main"}) is None
    assert registry.get_sample_value("app_query_errors_total", {"db": "main"}) == 1


def test_non_string_extra_label_values_are_stringified(registry):
    options = InstrumentOptions(prefix="", extra_labels={"port": 5432, "replica": True})
    assert options.extra_labels == {"port": "5432", "replica": "True"}

    instruments = MetricInstrumentSet(options)
    instruments.register(registry)
    instruments.observe_duration(0.05)

    assert registry.get_sample_value("query_duration_seconds_count", {"port": "5432", "replica": "True"}) == 1


def test_counter_name_must_survive_total_suffix_removal():
    with pytest.raises(ValidationError):
        InstrumentOptions(prefix="", error_metric_name="_total")

    assert InstrumentOptions(prefix="", error_metric_name="errors_total").error_name == "errors_total"


def test_histogram_buckets_render_in_ascending_order(registry):
    instruments = MetricInstrumentSet(InstrumentOptions(prefix=""))
    instruments.register(registry)

    lines = [line for line in render_metrics(registry).splitlines() if line.startswith("query_duration_seconds_bucket")]

    assert [line.split('"')[1] for line in lines] == ["0.003", "0.03", "0.1", "0.3", "1.5", "10.0", "+Inf"]


def test_duplicate_registration_fails_loudly(registry):
    first = MetricInstrumentSet(InstrumentOptions(prefix="db_"))
    first.register(registry)
    first.observe_duration(0.5)

    second = MetricInstrumentSet(InstrumentOptions(prefix="db_"))
    with pytest.raises(MetricRegistrationError):
        second.register(registry)

    assert second.registry is None
    assert registry.get_sample_value("db_query_duration_seconds_count") == 1


def test_failed_counter_registration_rolls_back_histogram(registry):
    """Both instruments are registered, or neither."""
    Counter("db_query_errors_total", "someone else's counter", registry=registry)

    instruments = MetricInstrumentSet(InstrumentOptions(prefix="db_"))
    with pytest.raises(MetricRegistrationError) as exc_info:
        instruments.register(registry)

    assert isinstance(exc_info.value.__cause__, ValueError)
    assert registry.get_sample_value("db_query_duration_seconds_count") is None
    # The histogram name is free again.
    MetricInstrumentSet(InstrumentOptions(prefix="db_", error_metric_name="other_errors_total")).register(registry)


def test_register_twice_is_rejected(registry):
    instruments = MetricInstrumentSet(InstrumentOptions(prefix="db_"))
    instruments.register(registry)

    with pytest.raises(MetricRegistrationError):
        instruments.register(registry)


def test_unregister_frees_names_and_is_idempotent(registry):
    instruments = MetricInstrumentSet(InstrumentOptions(prefix="db_"))
    instruments.register(registry)

    instruments.unregister()
    instruments.unregister()

    assert registry.get_sample_value("db_query_duration_seconds_count") is None
    MetricInstrumentSet(InstrumentOptions(prefix="db_")).register(registry)
