"""
Python logging integration for logtap.

Usage:
    import logging
    from logtap import ClientConfig, LogtapClient, setup_logging

    client = LogtapClient(ClientConfig.from_env())
    setup_logging(client)

    logger = logging.getLogger(__name__)
    logger.info("Payment processed", extra={"user_id": "u123", "amount": 99.99})
"""

import json
import logging
import traceback

from .client import LogtapClient
from .models import Level

# Attributes every logging.LogRecord carries; everything else came from extra=
_STANDARD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
        "asctime",
    )
)

_SDK_LOGGER_PREFIX = "logtap"


def level_for(levelno: int) -> Level:
    if levelno >= logging.CRITICAL:
        return Level.FATAL
    if levelno >= logging.ERROR:
        return Level.ERROR
    if levelno >= logging.WARNING:
        return Level.WARN
    if levelno >= logging.INFO:
        return Level.INFO
    return Level.DEBUG


class LogtapHandler(logging.Handler):
    """
    Logging handler that ships records through a LogtapClient.

    Integrates with standard Python logging so existing code works without
    modification. Records from the SDK's own loggers are skipped.
    """

    def __init__(self, client: LogtapClient, min_level: int = logging.INFO):
        super().__init__(level=min_level)
        self.client = client

    def emit(self, record: logging.LogRecord):
        if record.name == _SDK_LOGGER_PREFIX or record.name.startswith(_SDK_LOGGER_PREFIX + "."):
            return

        try:
            fields = {}
            for key, value in record.__dict__.items():
                if key in _STANDARD_ATTRS or key.startswith("_"):
                    continue
                # Only include serializable values
                if isinstance(value, str | int | float | bool | type(None)):
                    fields[key] = value
                elif isinstance(value, list | dict):
                    try:
                        json.dumps(value)
                        fields[key] = value
                    except (TypeError, ValueError):
                        pass

            trace_id = fields.pop("trace_id", None)
            span_id = fields.pop("span_id", None)

            fields["logger"] = record.name
            if record.exc_info and record.exc_info[1] is not None:
                fields["exception"] = record.exc_info[0].__name__
                fields["stack"] = "".join(traceback.format_exception(*record.exc_info))

            self.client.log(
                level_for(record.levelno),
                record.getMessage() if self.formatter is None else self.format(record),
                fields,
                trace_id=trace_id if isinstance(trace_id, str) else None,
                span_id=span_id if isinstance(span_id, str) else None,
            )

        except Exception:
            self.handleError(record)


def setup_logging(
    client: LogtapClient,
    min_level: int = logging.INFO,
    also_console: bool = True,
) -> LogtapHandler:
    """
    Route standard logging to logtap by attaching a handler to the root logger.

    Args:
        client: LogtapClient that will ship the records
        min_level: Minimum log level to ship
        also_console: Also log to console (default: True)

    Returns:
        The installed LogtapHandler (remove it from the root logger to detach)
    """
    handler = LogtapHandler(client, min_level=min_level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    if also_console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        root_logger.addHandler(console_handler)

    # Set level if not already set
    if root_logger.level == logging.NOTSET or root_logger.level > min_level:
        root_logger.setLevel(min_level)

    return handler
