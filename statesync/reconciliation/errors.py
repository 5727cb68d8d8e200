"""
Reconciliation Errors

Exception hierarchy raised by state sources, sinks and the reconciliation engine.
"""

from typing import Any, List, Optional


class ReconciliationError(Exception):
    """Base class for all reconciliation errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        # Set by the Reconciler when the error escapes a run
        self.report = None


class FetchFailure(ReconciliationError):
    """Raised when a source is unreachable or returns a malformed snapshot."""

    def __init__(self, message: str, origin: Optional[str] = None, kind: Optional[str] = None):
        super().__init__(message)
        self.origin = origin
        self.kind = kind


class AmbiguousSource(ReconciliationError):
    """Raised when a snapshot contains the same identity more than once."""

    def __init__(self, kind: str, origin: str, duplicates: List[Any]):
        super().__init__(
            f"Snapshot of '{kind}' from '{origin}' has duplicate identities: {duplicates}"
        )
        self.kind = kind
        self.origin = origin
        self.duplicates = duplicates


class UnconfirmedDestructivePlan(ReconciliationError):
    """Raised when a destructive plan is neither confirmed nor aborted in time."""

    def __init__(self, fingerprint: str, reason: str = "unconfirmed destructive plan"):
        super().__init__(reason)
        self.fingerprint = fingerprint


class ApplyFailure(ReconciliationError):
    """Base class for failures raised by a StateSink apply call."""

    transient = False


class TransientApplyFailure(ApplyFailure):
    """
    Failure that may succeed on retry (network, timeout, rate limit).

    Attributes:
        retry_after: Seconds the remote side asked us to wait, if known
    """

    transient = True

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PermanentApplyFailure(ApplyFailure):
    """Failure that will not succeed on retry (schema or constraint violation)."""


class RunCancelled(ReconciliationError):
    """Raised internally when the cancellation token is set between operations."""

    def __init__(self):
        super().__init__("cancelled")
