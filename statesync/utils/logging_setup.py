"""
Logging Setup

Console and structured JSON logging for reconciliation runs. JSON lines are
enabled with JSON_LOGGING=true; every record carries the correlation id of the
run that emitted it.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from statesync.utils.correlation import get_correlation_id

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s - %(message)s'
CONSOLE_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Extra attributes copied into JSON lines when present on a record
EXTRA_FIELDS = ('kind', 'operation', 'outcome', 'state', 'duration_seconds', 'plan')


class CorrelationIdFilter(logging.Filter):
    """Stamp the current correlation id on every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "N/A"
        return True


class StructuredJSONFormatter(logging.Formatter):
    """JSON formatter with correlation ID support."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'correlation_id': getattr(record, 'correlation_id', None) or get_correlation_id(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        for name in EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_logging: Optional[bool] = None) -> logging.Logger:
    """
    Configure the statesync logger.

    Args:
        level: Log level name
        json_logging: Emit JSON lines instead of console lines; defaults to
            the JSON_LOGGING environment variable

    Returns:
        The configured "statesync" logger
    """
    if json_logging is None:
        json_logging = os.getenv('JSON_LOGGING', 'false').lower() == 'true'

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())

    if json_logging:
        handler.setFormatter(StructuredJSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATE_FORMAT))

    logger = logging.getLogger("statesync")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.propagate = False

    return logger
