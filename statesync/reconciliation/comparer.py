"""
Record Comparer for State Reconciliation

Provides field-level comparison between a desired record and an actual record.
Handles type normalization (UUIDs, decimals, timestamps), NULL values, and
numeric tolerance for monetary fields.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from uuid import UUID

from statesync.reconciliation.models import EntityKind

logger = logging.getLogger(__name__)


class RecordComparer:
    """
    Compares desired and actual records field by field.

    Only fields present in the desired record are compared: fields that exist
    only on the actual side (server-generated ids, timestamps) are never part
    of a delta.
    """

    def __init__(self, float_tolerance: float = 0.0001):
        """
        Initialize the record comparer.

        Args:
            float_tolerance: Tolerance for float/float comparison on fields
                without an explicit tolerance
        """
        self.float_tolerance = float_tolerance
        logger.debug("Initialized RecordComparer")

    def field_delta(
        self,
        desired: Dict[str, Any],
        actual: Dict[str, Any],
        entity: EntityKind
    ) -> Dict[str, Any]:
        """
        Compute the desired values of every field that differs.

        Args:
            desired: Desired record
            actual: Actual record with the same identity
            entity: Entity kind (identity field, ignored fields, tolerances)

        Returns:
            Mapping of field name to desired value; empty when equivalent.
            Never contains the identity field.
        """
        differences = self.compare_records_detailed(desired, actual, entity)
        return {name: desired[name] for name in differences}

    def compare_records(
        self,
        desired: Dict[str, Any],
        actual: Dict[str, Any],
        entity: EntityKind
    ) -> bool:
        """
        Check whether two records are equivalent.

        Args:
            desired: Desired record
            actual: Actual record
            entity: Entity kind

        Returns:
            True if every compared field is equal
        """
        return not self.compare_records_detailed(desired, actual, entity)

    def compare_records_detailed(
        self,
        desired: Dict[str, Any],
        actual: Dict[str, Any],
        entity: EntityKind
    ) -> Dict[str, Dict[str, Any]]:
        """
        Compare records and return the differing fields.

        Args:
            desired: Desired record
            actual: Actual record
            entity: Entity kind

        Returns:
            Dictionary mapping field name to {"desired": value, "actual": value}
            (the actual value is None when the field is absent)
        """
        skipped = set(entity.ignore_fields)
        skipped.add(entity.identity_field)

        differences = {}

        for name, desired_value in desired.items():
            if name in skipped:
                continue

            if name not in actual:
                differences[name] = {"desired": desired_value, "actual": None}
                continue

            desired_norm = self._normalize_value(desired_value)
            actual_norm = self._normalize_value(actual[name])

            if not self._values_equal(desired_norm, actual_norm, entity.tolerance_for(name)):
                logger.debug(
                    f"Field {entity.kind}.{name} mismatch: "
                    f"desired={desired_value!r}, actual={actual[name]!r}"
                )
                differences[name] = {"desired": desired_value, "actual": actual[name]}

        return differences

    def _normalize_value(self, value: Any) -> Any:
        if value is None:
            return None

        if isinstance(value, UUID):
            return str(value)

        if isinstance(value, Decimal):
            return value.normalize()

        if isinstance(value, datetime):
            if value.tzinfo is None:
                # Naive timestamps are stored as UTC
                return value.replace(tzinfo=timezone.utc)
            return value

        if isinstance(value, (list, tuple)):
            return [self._normalize_value(item) for item in value]

        if isinstance(value, dict):
            return {k: self._normalize_value(v) for k, v in value.items()}

        return value

    def _values_equal(self, value1: Any, value2: Any, tolerance: Optional[float] = None) -> bool:
        if value1 is None and value2 is None:
            return True
        if value1 is None or value2 is None:
            return False

        if isinstance(value1, bool) or isinstance(value2, bool):
            return type(value1) is type(value2) and value1 == value2

        if self._is_number(value1) and self._is_number(value2):
            return self._numbers_equal(value1, value2, tolerance)

        if tolerance is not None and (self._is_number(value1) or self._is_number(value2)):
            # Monetary values may arrive as strings from HTTP providers
            left, right = self._to_decimal(value1), self._to_decimal(value2)
            if left is not None and right is not None:
                return abs(left - right) <= Decimal(str(tolerance))

        if isinstance(value1, datetime) or isinstance(value2, datetime):
            left, right = self._to_datetime(value1), self._to_datetime(value2)
            if left is None or right is None:
                return False
            return left == right

        if isinstance(value1, list) and isinstance(value2, list):
            if len(value1) != len(value2):
                return False
            return all(self._values_equal(v1, v2) for v1, v2 in zip(value1, value2))

        if isinstance(value1, dict) and isinstance(value2, dict):
            if set(value1.keys()) != set(value2.keys()):
                return False
            return all(self._values_equal(value1[k], value2[k]) for k in value1)

        return value1 == value2

    def _numbers_equal(self, value1: Any, value2: Any, tolerance: Optional[float]) -> bool:
        if tolerance is not None:
            return abs(self._to_decimal(value1) - self._to_decimal(value2)) <= Decimal(str(tolerance))

        if isinstance(value1, float) and isinstance(value2, float):
            return abs(value1 - value2) < self.float_tolerance

        return self._to_decimal(value1) == self._to_decimal(value2)

    @staticmethod
    def _is_number(value: Any) -> bool:
        return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)

    @staticmethod
    def _to_decimal(value: Any) -> Optional[Decimal]:
        if isinstance(value, bool):
            return None
        try:
            return Decimal(str(value))
        except (InvalidOperation, ValueError):
            return None

    @staticmethod
    def _to_datetime(value: Any) -> Optional[datetime]:
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return None
        if not isinstance(value, datetime):
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value
