# src/libs/query-metrics/query_metrics/logging_utils.py
import logging
import os
import sys

from pythonjsonlogger import jsonlogger


class ServiceContextFilter(logging.Filter):
    """
    A logging filter that tags every record with the service and environment
    the instrumented application runs in.
    """
    def filter(self, record):
        record.service = os.getenv("SERVICE_NAME", "query-metrics")
        record.environment = os.getenv("ENVIRONMENT", "local")
        return True


def setup_logging(level: int = logging.INFO):
    """
    Configures the root logger for structured JSON logging on stdout, so the
    exporter's attach/detach/registration records line up with the host
    application's logs. Optional for applications that configure logging themselves.
    """
    root_logger = logging.getLogger()

    # Clear any existing handlers to prevent duplicate logs
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    root_logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s %(service)s %(environment)s",
        rename_fields={
            "asctime": "timestamp",
            "levelname": "level",
            "name": "logger"
        }
    )
    handler.setFormatter(formatter)
    handler.addFilter(ServiceContextFilter())

    root_logger.addHandler(handler)
