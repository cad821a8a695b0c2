# src/libs/query-metrics/query_metrics/config.py
import logging
import math
import os
from typing import Optional, Tuple

from dotenv import load_dotenv

# Load environment variables from a .env file for local development.
load_dotenv()

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool(raw: Optional[str], default: bool) -> bool:
    """Parses a boolean flag from an environment value, falling back to the default."""
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    logger.warning(f"Unrecognised boolean value '{raw}'. Using default '{default}'.")
    return default


def parse_buckets(raw: Optional[str], default: Tuple[float, ...]) -> Tuple[float, ...]:
    """
    Parses a comma separated list of histogram bucket boundaries in seconds.

    Args:
        raw: The raw environment value, e.g. "0.01,0.1,1".
        default: Boundaries to use when the value is missing or malformed.

    Returns:
        A tuple of floats. Ordering is validated later by InstrumentOptions.
    """
    if raw is None or not raw.strip():
        return default
    try:
        return tuple(float(part) for part in raw.split(",") if part.strip())
    except ValueError:
        logger.warning(f"Malformed bucket list '{raw}'. Using default buckets {default}.")
        return default


def parse_optional_seconds(raw: Optional[str]) -> Optional[float]:
    """Parses an optional positive duration in seconds. Blank means 'not set'."""
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Malformed duration '{raw}'. Ignoring it.")
        return None
    if value <= 0 or not math.isfinite(value):
        logger.warning(f"Duration must be a positive number of seconds, got '{raw}'. Ignoring it.")
        return None
    return value


# Exporter defaults
DEFAULT_PREFIX = "sqlalchemy_"
DEFAULT_DURATION_METRIC_NAME = "query_duration_seconds"
DEFAULT_ERROR_METRIC_NAME = "query_errors_total"
DEFAULT_BUCKETS: Tuple[float, ...] = (0.003, 0.03, 0.1, 0.3, 1.5, 10)

QUERY_METRICS_PREFIX = os.getenv("QUERY_METRICS_PREFIX", DEFAULT_PREFIX)
QUERY_METRICS_DURATION_NAME = os.getenv("QUERY_METRICS_DURATION_NAME", DEFAULT_DURATION_METRIC_NAME)
QUERY_METRICS_DURATION_BUCKETS = parse_buckets(os.getenv("QUERY_METRICS_DURATION_BUCKETS"), DEFAULT_BUCKETS)
QUERY_METRICS_ERROR_NAME = os.getenv("QUERY_METRICS_ERROR_NAME", DEFAULT_ERROR_METRIC_NAME)
QUERY_METRICS_ERROR_LABEL = parse_bool(os.getenv("QUERY_METRICS_ERROR_LABEL"), True)
QUERY_METRICS_MAX_PENDING_AGE = parse_optional_seconds(os.getenv("QUERY_METRICS_MAX_PENDING_AGE"))
