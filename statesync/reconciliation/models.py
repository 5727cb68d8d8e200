"""
Reconciliation Data Model

Entity kinds, snapshots, filters and operations exchanged between state
sources, the diff engine and the apply executor.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple


class Origin(Enum):
    """Which side of a comparison a snapshot was captured for."""
    DESIRED = "desired"
    ACTUAL = "actual"


class OperationType(Enum):
    """Corrective action kinds."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


@dataclass(frozen=True)
class FieldSpec:
    """
    Schema entry for one record field.

    Attributes:
        type: One of string, integer, decimal, float, boolean, datetime, json, any
        required: Whether every record must carry a non-null value
        tolerance: Absolute tolerance used when comparing numeric values
    """

    type: str = "any"
    required: bool = False
    tolerance: Optional[float] = None


@dataclass(frozen=True)
class EntityKind:
    """
    A named kind of record with its identity field and schema.

    Attributes:
        kind: Kind tag (e.g. "session_type", "webhook_subscription")
        identity_field: Field whose value is unique within a snapshot
        fields: Field schema, keyed by field name
        ignore_fields: Fields never compared nor written (server-generated values)
        depends_on: Kinds whose records must exist before records of this kind
    """

    kind: str
    identity_field: str
    fields: Dict[str, FieldSpec] = field(default_factory=dict)
    ignore_fields: Tuple[str, ...] = ()
    depends_on: Tuple[str, ...] = ()

    def tolerance_for(self, field_name: str) -> Optional[float]:
        spec = self.fields.get(field_name)
        return spec.tolerance if spec else None


def filter_value(value: Any) -> Optional[str]:
    """
    Text form of a value as compared by filters.

    Booleans use PostgreSQL's text form ("true"/"false"); None stays None.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class Filter:
    """
    Simple predicate over record fields.

    Only equality (``equals``) and containment (``contains``: field value must be
    one of the listed values) are supported, so that the same filter can be
    expressed as a SQL WHERE clause or as HTTP query parameters.

    Values are compared by their text form (see filter_value), so ``id=1``
    selects the same records from a YAML fixture, a JSON payload and a
    database column cast to text.
    """

    equals: Dict[str, Any] = field(default_factory=dict)
    contains: Dict[str, List[Any]] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.equals and not self.contains

    def matches(self, record: Dict[str, Any]) -> bool:
        """
        Check whether a record satisfies the filter.

        Args:
            record: Record to test

        Returns:
            True if every equality and containment condition holds
        """
        for name, value in self.equals.items():
            if filter_value(record.get(name)) != filter_value(value):
                return False

        for name, values in self.contains.items():
            actual = filter_value(record.get(name))
            # NULL is never a member, as with SQL IN
            if actual is None or actual not in {filter_value(v) for v in values}:
                return False

        return True

    def merged(self, other: Optional["Filter"]) -> "Filter":
        """Return a filter with the conditions of both filters."""
        if other is None:
            return self
        return Filter(
            equals={**self.equals, **other.equals},
            contains={**self.contains, **other.contains},
        )


@dataclass(frozen=True)
class Snapshot:
    """
    Immutable capture of all records of one kind from one origin.

    Attributes:
        kind: Entity kind of every record in the snapshot
        origin: Desired or actual side
        origin_name: Configured name of the source (e.g. "prod-db", "calendly")
        records: Records in source order, as read-only mappings (nested
            values are not frozen)
        captured_at: Capture timestamp (UTC)
    """

    kind: str
    origin: Origin
    origin_name: str
    records: Tuple[Mapping[str, Any], ...]
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def capture(
        cls,
        kind: str,
        origin: Origin,
        origin_name: str,
        records: List[Dict[str, Any]]
    ) -> "Snapshot":
        """Build a snapshot from a list of records, copying each record into a read-only mapping."""
        return cls(
            kind=kind,
            origin=origin,
            origin_name=origin_name,
            records=tuple(MappingProxyType(dict(record)) for record in records),
        )

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class Operation:
    """
    One corrective action.

    CREATE carries the full desired record, UPDATE only the changed fields (and
    their previous values, for the audit log), DELETE carries the actual record
    so sinks that address resources by URI can apply it without re-reading.
    """

    op_type: OperationType
    kind: str
    identity: Any
    record: Optional[Dict[str, Any]] = None
    changed_fields: Dict[str, Any] = field(default_factory=dict)
    previous: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, kind: str, identity: Any, record: Dict[str, Any]) -> "Operation":
        return cls(OperationType.CREATE, kind, identity, record=dict(record))

    @classmethod
    def update(
        cls,
        kind: str,
        identity: Any,
        changed_fields: Dict[str, Any],
        previous: Optional[Dict[str, Any]] = None
    ) -> "Operation":
        return cls(
            OperationType.UPDATE,
            kind,
            identity,
            changed_fields=dict(changed_fields),
            previous=dict(previous or {}),
        )

    @classmethod
    def delete(cls, kind: str, identity: Any, record: Optional[Dict[str, Any]] = None) -> "Operation":
        return cls(OperationType.DELETE, kind, identity, record=dict(record or {}))

    @classmethod
    def noop(cls, kind: str, identity: Any) -> "Operation":
        return cls(OperationType.NOOP, kind, identity)

    @property
    def is_mutation(self) -> bool:
        return self.op_type is not OperationType.NOOP

    def to_dict(self) -> Dict[str, Any]:
        """Serializable view used by reports and plan output."""
        data: Dict[str, Any] = {
            "op": self.op_type.value,
            "kind": self.kind,
            "identity": self.identity,
        }
        # DELETE keeps the removed record so the journal can restore it
        if self.op_type in (OperationType.CREATE, OperationType.DELETE):
            data["record"] = self.record
        elif self.op_type is OperationType.UPDATE:
            data["changed_fields"] = self.changed_fields
            data["previous"] = self.previous
        return data

    def describe(self) -> str:
        """One-line human readable description."""
        if self.op_type is OperationType.UPDATE:
            fields = ", ".join(sorted(self.changed_fields))
            return f"UPDATE {self.kind}[{self.identity}] ({fields})"
        return f"{self.op_type.name} {self.kind}[{self.identity}]"
