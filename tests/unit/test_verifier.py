"""
Unit tests for post-apply verification.
"""

import pytest

from statesync.reconciliation.errors import FetchFailure
from statesync.reconciliation.models import Operation
from statesync.reconciliation.report import Outcome, ReconciliationReport


@pytest.fixture
def report():
    return ReconciliationReport("run-1", ["item"], "desired", "actual")


@pytest.fixture
def verifier():
    from statesync.reconciliation.verifier import VerificationProbe
    return VerificationProbe(batch_size=2)


class TestVerificationProbe:
    """Test post-apply verification."""

    def test_verified_create_update_delete(self, verifier, report, make_sink, item_kind):
        sink = make_sink(records={"item": [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}]})
        operations = [
            Operation.create("item", 1, {"id": 1, "name": "a"}),
            Operation.update("item", 2, {"name": "b"}),
            Operation.delete("item", 3),
        ]

        mismatches = verifier.verify(operations, sink, {"item": item_kind}, report)

        assert mismatches == 0
        assert [entry.outcome for entry in report.entries] == [Outcome.VERIFIED] * 3

    def test_mismatches_are_recorded_not_raised(self, verifier, report, make_sink, item_kind):
        sink = make_sink(records={"item": [{"id": 2, "name": "stale"}, {"id": 3, "name": "c"}]})
        operations = [
            Operation.create("item", 1, {"id": 1, "name": "a"}),
            Operation.update("item", 2, {"name": "b"}),
            Operation.delete("item", 3),
        ]

        mismatches = verifier.verify(operations, sink, {"item": item_kind}, report)

        assert mismatches == 3
        reasons = [entry.reason for entry in report.entries]
        assert reasons == ["record not found", "fields differ: name", "record still present"]

    def test_batches_by_identity(self, verifier, report, make_sink, item_kind):
        sink = make_sink(records={"item": [{"id": i, "name": "x"} for i in range(5)]})
        operations = [Operation.create("item", i, {"id": i, "name": "x"}) for i in range(5)]

        verifier.verify(operations, sink, {"item": item_kind}, report)

        assert sink.fetch_count == 3

    def test_noops_never_verified(self, verifier, report, make_sink, item_kind):
        sink = make_sink(records={"item": [{"id": 1}]})

        verifier.verify([Operation.noop("item", 1)], sink, {"item": item_kind}, report)

        assert sink.fetch_count == 0
        assert report.entries == []

    def test_refetch_failure_records_mismatch(self, verifier, report, make_sink, item_kind):
        sink = make_sink(records={"item": []})
        sink.fetch_error = FetchFailure("connection lost", origin="actual", kind="item")

        mismatches = verifier.verify([Operation.create("item", 1, {"id": 1})], sink, {"item": item_kind}, report)

        assert mismatches == 1
        assert report.entries[0].outcome is Outcome.VERIFICATION_MISMATCH
        assert "re-fetch failed: connection lost" in report.entries[0].reason

    def test_invalid_batch_size(self):
        from statesync.reconciliation.verifier import VerificationProbe

        with pytest.raises(ValueError):
            VerificationProbe(batch_size=0)
