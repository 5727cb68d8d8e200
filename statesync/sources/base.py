"""
State Source and Sink Contracts

The only boundary the reconciliation core depends on. One source/sink pair is
supplied per backing system (relational store, scheduling provider catalog,
fixture files).
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from statesync.reconciliation.models import Filter, Origin, Snapshot

logger = logging.getLogger(__name__)


class StateSource(ABC):
    """
    Read-only accessor returning snapshots of entity collections.

    Sources borrow their connection or session from the caller: ``acquire``
    and ``release`` scope one run and must never close what the caller owns.
    """

    def __init__(self, name: str, timeout_seconds: Optional[float] = None):
        """
        Args:
            name: Configured origin name, used in snapshots and logs
            timeout_seconds: Per-call timeout
        """
        self.name = name
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    def fetch(self, kind: str, filter: Optional[Filter] = None, origin: Origin = Origin.ACTUAL) -> Snapshot:
        """
        Capture a snapshot of one entity kind.

        Args:
            kind: Entity kind
            filter: Optional predicate restricting the records
            origin: Side of the comparison the snapshot is captured for

        Returns:
            Snapshot of the matching records

        Raises:
            FetchFailure: If the source is unreachable or returns malformed data
        """

    def acquire(self) -> None:
        """Prepare the borrowed resource for a run."""
        logger.debug(f"Acquired source {self.name}")

    def release(self) -> None:
        """Return the borrowed resource after a run. Must not raise."""
        logger.debug(f"Released source {self.name}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class StateSink(StateSource):
    """
    Writable counterpart of a state source.

    Apply methods raise ``TransientApplyFailure`` for failures that may
    succeed on retry and ``PermanentApplyFailure`` otherwise.
    """

    #: Whether creates on distinct identities may run concurrently
    supports_parallel_creates = False

    @abstractmethod
    def apply_create(self, kind: str, record: Dict[str, Any]) -> None:
        """Create a record."""

    @abstractmethod
    def apply_update(self, kind: str, identity: Any, changed_fields: Dict[str, Any]) -> None:
        """Update only the given fields of the record with this identity."""

    @abstractmethod
    def apply_delete(self, kind: str, identity: Any, record: Optional[Dict[str, Any]] = None) -> None:
        """Delete the record with this identity."""
