# src/libs/query-metrics/query_metrics/exceptions.py

class ExporterConfigurationError(Exception):
    """
    Raised when an exporter cannot be set up from the options it was given
    (missing event source, invalid metric names or buckets, clashing labels).

    Nothing is left registered in the target registry when this is raised.
    """
    pass


class MetricRegistrationError(ExporterConfigurationError):
    """
    Raised when one of the exporter's instruments clashes with a metric that is
    already registered under the same name. Usually means two instrumented
    clients share one registry without distinct prefixes.
    """
    pass
