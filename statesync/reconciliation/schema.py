"""
Record Schema Validator for State Reconciliation

Validates records of a snapshot against the field schema declared for their
entity kind, so malformed source data is rejected before any diffing happens.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List

from statesync.reconciliation.errors import FetchFailure
from statesync.reconciliation.models import EntityKind, FieldSpec, Snapshot

logger = logging.getLogger(__name__)


class SchemaValidationError(Exception):
    """Raised when a record does not match its entity schema."""
    pass


_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "decimal": lambda v: isinstance(v, (int, float, Decimal, str)) and not isinstance(v, bool),
    "float": lambda v: isinstance(v, (int, float, Decimal)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "datetime": lambda v: isinstance(v, (datetime, str)),
    "json": lambda v: isinstance(v, (dict, list)),
    "any": lambda v: True,
}

VALID_TYPES = sorted(_TYPE_CHECKS)


class RecordValidator:
    """
    Validator for snapshot records.

    Checks that the identity field is present and non-null, that required
    fields are set, and that declared field types match.
    """

    def validate_field_spec(self, name: str, spec: FieldSpec) -> None:
        """
        Validate a field declaration.

        Args:
            name: Field name
            spec: Field specification

        Raises:
            SchemaValidationError: If the declared type is unknown
        """
        if spec.type not in _TYPE_CHECKS:
            raise SchemaValidationError(
                f"Field '{name}' has unknown type '{spec.type}'. Must be one of {VALID_TYPES}"
            )
        if spec.tolerance is not None and spec.type not in ("decimal", "float", "integer"):
            raise SchemaValidationError(f"Field '{name}' declares a tolerance but is not numeric")

    def validate_record(self, record: Dict[str, Any], entity: EntityKind) -> List[str]:
        """
        Validate one record.

        Args:
            record: Record to validate
            entity: Entity kind it belongs to

        Returns:
            List of error messages (empty if the record is valid)
        """
        errors = []

        if record.get(entity.identity_field) is None:
            errors.append(f"identity field '{entity.identity_field}' is missing or NULL")

        for name, spec in entity.fields.items():
            value = record.get(name)

            if value is None:
                if spec.required:
                    errors.append(f"required field '{name}' is missing or NULL")
                continue

            check = _TYPE_CHECKS.get(spec.type, _TYPE_CHECKS["any"])
            if not check(value):
                errors.append(
                    f"field '{name}' expected {spec.type}, got {type(value).__name__}"
                )

        return errors

    def validate_snapshot(self, snapshot: Snapshot, entity: EntityKind) -> None:
        """
        Validate every record of a snapshot.

        Args:
            snapshot: Snapshot to validate
            entity: Entity kind of the snapshot

        Raises:
            FetchFailure: If the snapshot kind does not match or any record is invalid
        """
        if snapshot.kind != entity.kind:
            raise FetchFailure(
                f"Snapshot kind '{snapshot.kind}' does not match entity '{entity.kind}'",
                origin=snapshot.origin_name,
                kind=entity.kind,
            )

        problems = []
        for i, record in enumerate(snapshot.records):
            for error in self.validate_record(record, entity):
                problems.append(f"record {i}: {error}")

        if problems:
            logger.error(
                f"Malformed snapshot of {entity.kind} from {snapshot.origin_name}: "
                f"{len(problems)} problem(s)"
            )
            preview = "; ".join(problems[:5])
            raise FetchFailure(
                f"Malformed snapshot of '{entity.kind}' from '{snapshot.origin_name}': {preview}",
                origin=snapshot.origin_name,
                kind=entity.kind,
            )

        logger.debug(f"Validated {len(snapshot)} {entity.kind} records from {snapshot.origin_name}")
