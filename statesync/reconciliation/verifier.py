"""
Verification Probe

Re-reads the actual side after apply and checks that every applied operation
took effect: created and updated records match their desired fields, deleted
records are gone. Mismatches are recorded in the report, never raised.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from statesync.reconciliation.comparer import RecordComparer
from statesync.reconciliation.errors import ReconciliationError
from statesync.reconciliation.models import EntityKind, Filter, Operation, OperationType, Origin
from statesync.reconciliation.report import Outcome, ReconciliationReport

logger = logging.getLogger(__name__)


class VerificationProbe:
    """Post-apply re-fetch and equivalence check."""

    def __init__(self, comparer: Optional[RecordComparer] = None, batch_size: int = 100):
        """
        Initialize the probe.

        Args:
            comparer: Record comparer (default RecordComparer())
            batch_size: Maximum identities re-fetched per call
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        self.comparer = comparer or RecordComparer()
        self.batch_size = batch_size

    def verify(
        self,
        operations: List[Operation],
        source,
        entities: Dict[str, EntityKind],
        report: ReconciliationReport,
        base_filter: Optional[Filter] = None
    ) -> int:
        """
        Verify applied operations against a fresh read of the actual side.

        Args:
            operations: Successfully applied operations
            source: Source of the actual side
            entities: Kind -> entity definition
            report: Report receiving one verified/mismatch entry per operation
            base_filter: Run filter, combined with the identity filter

        Returns:
            Number of verification mismatches
        """
        by_kind: Dict[str, List[Operation]] = OrderedDict()
        for operation in operations:
            if operation.op_type is OperationType.NOOP:
                continue
            by_kind.setdefault(operation.kind, []).append(operation)

        mismatches = 0

        for kind, kind_operations in by_kind.items():
            entity = entities[kind]
            for start in range(0, len(kind_operations), self.batch_size):
                batch = kind_operations[start:start + self.batch_size]
                mismatches += self._verify_batch(batch, source, entity, report, base_filter)

        logger.info(f"Verified {sum(len(ops) for ops in by_kind.values())} operations, {mismatches} mismatches")
        return mismatches

    def _verify_batch(
        self,
        batch: List[Operation],
        source,
        entity: EntityKind,
        report: ReconciliationReport,
        base_filter: Optional[Filter]
    ) -> int:
        identity_filter = Filter(contains={entity.identity_field: [op.identity for op in batch]})
        if base_filter is not None:
            identity_filter = base_filter.merged(identity_filter)

        try:
            snapshot = source.fetch(entity.kind, identity_filter, Origin.ACTUAL)
        except ReconciliationError as e:
            logger.error(f"Verification re-fetch of {entity.kind} failed: {e}")
            for operation in batch:
                report.record(operation, Outcome.VERIFICATION_MISMATCH, reason=f"re-fetch failed: {e}")
            return len(batch)

        current = {
            str(record.get(entity.identity_field)): record
            for record in snapshot.records
        }

        mismatches = 0
        for operation in batch:
            reason = self.check(operation, current.get(str(operation.identity)), entity)
            if reason is None:
                report.record(operation, Outcome.VERIFIED)
            else:
                logger.warning(f"Verification mismatch for {operation.describe()}: {reason}")
                report.record(operation, Outcome.VERIFICATION_MISMATCH, reason=reason)
                mismatches += 1

        return mismatches

    def check(self, operation: Operation, actual: Optional[Dict[str, Any]], entity: EntityKind) -> Optional[str]:
        """
        Check one operation against the re-fetched record.

        Args:
            operation: Applied operation
            actual: Current record with the operation's identity, or None
            entity: Entity definition

        Returns:
            None if the operation took effect, else the mismatch reason
        """
        if operation.op_type is OperationType.DELETE:
            return "record still present" if actual is not None else None

        if actual is None:
            return "record not found"

        expected = operation.record if operation.op_type is OperationType.CREATE else operation.changed_fields
        differences = self.comparer.compare_records_detailed(expected or {}, actual, entity)

        if differences:
            fields = ", ".join(sorted(differences))
            return f"fields differ: {fields}"

        return None
