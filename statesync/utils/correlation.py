"""
Run Correlation IDs

Every reconciliation run executes inside a CorrelationContext whose id is the
run id, so that log lines, journal files and metrics of one run can be joined.
"""

import contextvars
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

_correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id',
    default=None
)


def generate_run_id() -> str:
    """
    Generate a sortable run id: UTC timestamp plus a short random suffix.

    Returns:
        Run id such as "20261018T091500-3f2a9c1d"
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{timestamp}-{uuid.uuid4().hex[:8]}"


def get_correlation_id() -> Optional[str]:
    """Return the current correlation id, or None outside a run."""
    return _correlation_id.get()


class CorrelationContext:
    """
    Context manager scoping a correlation id.

    The previous id (if any) is restored on exit, so nested runs keep their
    caller's id afterwards.
    """

    def __init__(self, correlation_id: Optional[str] = None):
        """
        Args:
            correlation_id: Id to use; a new run id is generated if omitted
        """
        self.correlation_id = correlation_id
        self._token = None

    def __enter__(self) -> str:
        if not self.correlation_id:
            self.correlation_id = generate_run_id()

        self._token = _correlation_id.set(self.correlation_id)
        logger.debug(f"Entered correlation context: {self.correlation_id}")
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _correlation_id.reset(self._token)
        logger.debug(f"Left correlation context: {self.correlation_id}")
