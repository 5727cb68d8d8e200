"""
Diff Engine for State Reconciliation

Compares a desired snapshot against an actual snapshot and produces the
dependency-ordered list of operations (create / update / delete / no-op)
that brings the actual side in line with the desired side.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from statesync.reconciliation.comparer import RecordComparer
from statesync.reconciliation.errors import AmbiguousSource, FetchFailure
from statesync.reconciliation.models import EntityKind, Operation, OperationType, Snapshot

logger = logging.getLogger(__name__)


@dataclass
class KindDiff:
    """Diff result for a single entity kind."""

    kind: str
    upserts: List[Operation] = field(default_factory=list)
    deletes: List[Operation] = field(default_factory=list)
    orphans: List[Dict[str, Any]] = field(default_factory=list)
    actual_count: int = 0


@dataclass(frozen=True)
class Plan:
    """
    Complete, ordered set of operations for one reconciliation run.

    Attributes:
        operations: Operations in apply order
        orphans: Actual-only records left alone by a non-destructive run
        actual_counts: Number of actual records per kind
        destructive: Whether deletes were planned for actual-only records
    """

    operations: Tuple[Operation, ...]
    orphans: Tuple[Dict[str, Any], ...] = ()
    actual_counts: Dict[str, int] = field(default_factory=dict)
    destructive: bool = False

    def _of_type(self, op_type: OperationType) -> List[Operation]:
        return [op for op in self.operations if op.op_type is op_type]

    @property
    def creates(self) -> List[Operation]:
        return self._of_type(OperationType.CREATE)

    @property
    def updates(self) -> List[Operation]:
        return self._of_type(OperationType.UPDATE)

    @property
    def deletes(self) -> List[Operation]:
        return self._of_type(OperationType.DELETE)

    @property
    def noops(self) -> List[Operation]:
        return self._of_type(OperationType.NOOP)

    @property
    def mutations(self) -> List[Operation]:
        return [op for op in self.operations if op.is_mutation]

    @property
    def blast_radius(self) -> float:
        """
        Fraction of actual records this plan modifies or deletes.

        Creates do not touch existing records. With no actual records the
        radius is 0.0.
        """
        total_actual = sum(self.actual_counts.values())
        if total_actual == 0:
            return 0.0
        touched = len(self.updates) + len(self.deletes)
        return touched / total_actual

    @property
    def fingerprint(self) -> str:
        """
        Short stable digest of the planned operations.

        Used as the confirmation token for destructive plans: a token issued
        for one plan does not confirm a different plan.
        """
        canonical = json.dumps(
            [op.to_dict() for op in self.operations],
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode()).hexdigest()[:12]

    def summary(self) -> Dict[str, Any]:
        return {
            "create_count": len(self.creates),
            "update_count": len(self.updates),
            "delete_count": len(self.deletes),
            "noop_count": len(self.noops),
            "orphan_count": len(self.orphans),
            "blast_radius": round(self.blast_radius, 4),
            "fingerprint": self.fingerprint,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "operations": [op.to_dict() for op in self.operations],
            "orphans": list(self.orphans),
        }


class DiffEngine:
    """
    Computes reconciliation plans from desired and actual snapshots.

    Within one kind, creates, updates and no-ops follow desired-snapshot order
    and deletes follow reverse actual-snapshot order. Across kinds, the caller
    supplies a topological order: creates/updates run parent kinds first,
    deletes run child kinds first and only after every create/update.
    """

    def __init__(self, comparer: Optional[RecordComparer] = None):
        """
        Initialize the diff engine.

        Args:
            comparer: Record comparer (default RecordComparer())
        """
        self.comparer = comparer or RecordComparer()
        logger.debug("Initialized DiffEngine")

    def diff(
        self,
        desired: Snapshot,
        actual: Snapshot,
        entity: EntityKind,
        destructive: bool = False
    ) -> KindDiff:
        """
        Diff one entity kind.

        Args:
            desired: Desired snapshot
            actual: Actual snapshot
            entity: Entity kind of both snapshots
            destructive: Plan deletes for actual-only records instead of
                recording them as orphans

        Returns:
            KindDiff for the kind

        Raises:
            AmbiguousSource: If either snapshot has duplicate identities
            FetchFailure: If a snapshot has the wrong kind or a record lacks its identity
        """
        for snapshot in (desired, actual):
            if snapshot.kind != entity.kind:
                raise FetchFailure(
                    f"Snapshot from '{snapshot.origin_name}' has kind '{snapshot.kind}', "
                    f"expected '{entity.kind}'",
                    origin=snapshot.origin_name,
                    kind=entity.kind,
                )

        desired_index = self.build_key_index(desired, entity.identity_field)
        actual_index = self.build_key_index(actual, entity.identity_field)

        result = KindDiff(kind=entity.kind, actual_count=len(actual))

        for key, desired_record in desired_index.items():
            actual_record = actual_index.get(key)

            if actual_record is None:
                identity = desired_record[entity.identity_field]
                result.upserts.append(Operation.create(entity.kind, identity, desired_record))
                continue

            identity = actual_record[entity.identity_field]
            differences = self.comparer.compare_records_detailed(desired_record, actual_record, entity)

            if not differences:
                result.upserts.append(Operation.noop(entity.kind, identity))
            else:
                result.upserts.append(Operation.update(
                    entity.kind,
                    identity,
                    changed_fields={name: diff["desired"] for name, diff in differences.items()},
                    previous={name: diff["actual"] for name, diff in differences.items()},
                ))

        actual_only = [key for key in actual_index if key not in desired_index]

        if destructive:
            for key in reversed(actual_only):
                actual_record = actual_index[key]
                identity = actual_record[entity.identity_field]
                result.deletes.append(Operation.delete(entity.kind, identity, actual_record))
        else:
            result.orphans = [
                {"kind": entity.kind, "identity": actual_index[key][entity.identity_field]}
                for key in actual_only
            ]

        logger.info(
            f"Diffed {entity.kind}: {len(desired)} desired, {len(actual)} actual, "
            f"{len(result.upserts)} create/update/noop, {len(result.deletes)} delete, "
            f"{len(result.orphans)} orphan"
        )
        return result

    def plan(
        self,
        snapshots: Dict[str, Tuple[Snapshot, Snapshot]],
        entities: Dict[str, EntityKind],
        kind_order: Sequence[str],
        destructive: bool = False
    ) -> Plan:
        """
        Build the complete plan for one or more kinds.

        Every kind is diffed before the plan is returned, so a plan is never
        partially built.

        Args:
            snapshots: Kind -> (desired snapshot, actual snapshot)
            entities: Kind -> entity definition
            kind_order: Kinds in topological order (parents first)
            destructive: Plan deletes for actual-only records

        Returns:
            Ordered Plan

        Raises:
            ValueError: If kind_order does not cover the snapshots or violates depends_on
        """
        self.validate_kind_order(kind_order, entities)

        missing = set(snapshots) - set(kind_order)
        if missing:
            raise ValueError(f"Kinds missing from kind_order: {sorted(missing)}")

        diffs = []
        for kind in kind_order:
            if kind not in snapshots:
                continue
            desired, actual = snapshots[kind]
            diffs.append(self.diff(desired, actual, entities[kind], destructive=destructive))

        operations: List[Operation] = []
        for kind_diff in diffs:
            operations.extend(kind_diff.upserts)
        for kind_diff in reversed(diffs):
            operations.extend(kind_diff.deletes)

        orphans = [orphan for kind_diff in diffs for orphan in kind_diff.orphans]

        plan = Plan(
            operations=tuple(operations),
            orphans=tuple(orphans),
            actual_counts={kind_diff.kind: kind_diff.actual_count for kind_diff in diffs},
            destructive=destructive,
        )

        logger.info(f"Plan summary: {plan.summary()}")
        return plan

    def validate_kind_order(
        self,
        kind_order: Sequence[str],
        entities: Dict[str, EntityKind]
    ) -> None:
        """
        Check that every kind appears after the kinds it depends on.

        Args:
            kind_order: Kinds in the caller-supplied order
            entities: Kind -> entity definition

        Raises:
            ValueError: If a kind is unknown, repeated, or precedes a dependency
        """
        position = {}
        for i, kind in enumerate(kind_order):
            if kind not in entities:
                raise ValueError(f"Unknown entity kind: {kind}")
            if kind in position:
                raise ValueError(f"Entity kind listed twice: {kind}")
            position[kind] = i

        for kind in kind_order:
            for parent in entities[kind].depends_on:
                if parent in position and position[parent] > position[kind]:
                    raise ValueError(
                        f"Entity kind '{kind}' depends on '{parent}' but is ordered before it"
                    )

    def build_key_index(self, snapshot: Snapshot, identity_field: str) -> Dict[str, Dict[str, Any]]:
        """
        Build an identity -> record index, preserving snapshot order.

        Args:
            snapshot: Snapshot to index
            identity_field: Identity field name

        Returns:
            Dictionary mapping identity key to record

        Raises:
            FetchFailure: If a record lacks its identity
            AmbiguousSource: If an identity appears more than once
        """
        index: Dict[str, Dict[str, Any]] = {}
        duplicates = []

        for i, record in enumerate(snapshot.records):
            try:
                key = self._extract_key(record, identity_field)
            except (KeyError, ValueError) as e:
                logger.error(f"Failed to extract identity from {snapshot.kind} record {i}: {e}")
                raise FetchFailure(
                    f"Invalid {snapshot.kind} record at index {i} from "
                    f"'{snapshot.origin_name}': {e}",
                    origin=snapshot.origin_name,
                    kind=snapshot.kind,
                ) from e

            if key in index:
                duplicates.append(record[identity_field])
                continue
            index[key] = record

        if duplicates:
            raise AmbiguousSource(snapshot.kind, snapshot.origin_name, duplicates)

        return index

    def _extract_key(self, record: Dict[str, Any], identity_field: str) -> str:
        """
        Extract the identity key of a record.

        Keys are compared as strings so that an integer id from the store
        matches the same id read from a YAML fixture or an HTTP payload.

        Raises:
            KeyError: If the identity field is missing
            ValueError: If the identity field is NULL
        """
        if identity_field not in record:
            raise KeyError(
                f"Identity field '{identity_field}' not found in record. "
                f"Available fields: {list(record.keys())}"
            )

        value = record[identity_field]
        if value is None:
            raise ValueError(f"Identity field '{identity_field}' has NULL value")

        return str(value)
