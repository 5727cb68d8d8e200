"""
Pytest configuration and shared fixtures.

Provides an in-memory StateSink with failure injection and a small entity
schema shared by the reconciliation unit tests.
"""

from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest

from statesync.reconciliation.models import EntityKind, FieldSpec, Filter, Origin, Snapshot
from statesync.sources.base import StateSink


class InMemorySink(StateSink):
    """
    Sink keeping records in lists, one list per kind.

    Failures are injected per (operation, identity): each call pops the next
    exception from the queue; an empty queue means success.
    """

    def __init__(
        self,
        name: str,
        records: Dict[str, List[Dict[str, Any]]],
        identity_fields: Dict[str, str],
        parallel: bool = False
    ):
        super().__init__(name)
        self.records = {kind: [dict(r) for r in rows] for kind, rows in records.items()}
        self.identity_fields = identity_fields
        self.supports_parallel_creates = parallel
        self.failures: Dict[tuple, List[Exception]] = defaultdict(list)
        self.calls: List[tuple] = []
        self.fetch_count = 0
        self.acquired = 0
        self.released = 0
        self.fetch_error: Optional[Exception] = None

    def fail(self, op: str, identity: Any, *errors: Exception) -> None:
        self.failures[(op, str(identity))].extend(errors)

    def acquire(self) -> None:
        self.acquired += 1

    def release(self) -> None:
        self.released += 1

    def fetch(self, kind: str, filter: Optional[Filter] = None, origin: Origin = Origin.ACTUAL) -> Snapshot:
        self.fetch_count += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        rows = self.records.get(kind, [])
        if filter is not None:
            rows = [row for row in rows if filter.matches(row)]
        return Snapshot.capture(kind, origin, self.name, rows)

    def apply_create(self, kind: str, record: Dict[str, Any]) -> None:
        self._call("create", kind, record[self.identity_fields[kind]])
        self.records.setdefault(kind, []).append(dict(record))

    def apply_update(self, kind: str, identity: Any, changed_fields: Dict[str, Any]) -> None:
        self._call("update", kind, identity)
        for row in self.records.get(kind, []):
            if str(row[self.identity_fields[kind]]) == str(identity):
                row.update(changed_fields)

    def apply_delete(self, kind: str, identity: Any, record: Optional[Dict[str, Any]] = None) -> None:
        self._call("delete", kind, identity)
        field = self.identity_fields[kind]
        self.records[kind] = [row for row in self.records.get(kind, []) if str(row[field]) != str(identity)]

    def _call(self, op: str, kind: str, identity: Any) -> None:
        self.calls.append((op, kind, identity))
        queue = self.failures.get((op, str(identity)))
        if queue:
            raise queue.pop(0)


@pytest.fixture
def session_type():
    """Session type entity keyed by slug, with a monetary price."""
    return EntityKind(
        kind="session_type",
        identity_field="slug",
        fields={
            "title": FieldSpec(type="string", required=True),
            "price": FieldSpec(type="decimal", tolerance=0.005),
            "durationMinutes": FieldSpec(type="integer"),
        },
        ignore_fields=("updatedAt",),
    )


@pytest.fixture
def item_kind():
    """Minimal entity keyed by integer id."""
    return EntityKind(kind="item", identity_field="id", fields={"name": FieldSpec(type="string")})


@pytest.fixture
def make_sink():
    """Factory for in-memory sinks."""
    def _make(name="actual", records=None, identity_fields=None, parallel=False):
        return InMemorySink(
            name,
            records or {},
            identity_fields or {"item": "id", "session_type": "slug"},
            parallel=parallel,
        )
    return _make
