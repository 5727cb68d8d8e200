"""
Unit tests for the reconciliation report and its journal.
"""

import json

import pytest

from statesync.reconciliation.models import Operation
from statesync.reconciliation.report import Outcome, ReconciliationReport, ReportJournal


class TestReconciliationReport:
    """Test report accumulation and serialization."""

    @pytest.fixture
    def report(self):
        return ReconciliationReport("run-1", ["item"], "fixtures", "prod-db", destructive=True)

    def test_to_lines_structure(self, report):
        report.record(Operation.create("item", 1, {"id": 1}), Outcome.APPLIED, attempts=1)
        report.record(Operation.noop("item", 2), Outcome.SKIPPED_NOOP)
        report.finish("done")

        lines = [json.loads(line) for line in report.to_lines()]

        assert [line["type"] for line in lines] == ["header", "entry", "entry", "summary"]
        assert lines[0]["destructive"] is True
        assert lines[1]["operation"] == {"op": "create", "kind": "item", "identity": 1, "record": {"id": 1}}
        assert lines[-1]["state"] == "done"
        assert lines[-1]["counts"]["applied"] == 1

    def test_changes_applied(self, report):
        report.record(Operation.update("item", 1, {"name": "x"}), Outcome.FAILED, reason="boom")

        assert not report.changes_applied
        assert len(report.failures) == 1

        report.record(Operation.create("item", 2, {"id": 2}), Outcome.APPLIED)

        assert report.changes_applied
        assert [op.identity for op in report.applied_operations()] == [2]

    def test_final_outcomes_keep_latest(self, report):
        op = Operation.create("item", 1, {"id": 1})
        report.record(op, Outcome.APPLIED)
        report.record(op, Outcome.VERIFICATION_MISMATCH, reason="record not found")

        assert report.final_outcomes() == {("item", "1"): Outcome.VERIFICATION_MISMATCH}
        assert len(report.mismatches) == 1

    def test_finish_sets_failure_reason(self, report):
        report.finish("failed", "cancelled")

        summary = report.summary()
        assert summary["state"] == "failed"
        assert summary["failure_reason"] == "cancelled"
        assert summary["finished_at"] is not None


class TestReportJournal:
    """Test journal persistence."""

    def test_lines_written_as_recorded(self, tmp_path):
        journal = ReportJournal(str(tmp_path / "journal"))
        report = ReconciliationReport("run-7", ["item"], "a", "b", journal=journal)

        report.record(Operation.create("item", 1, {"id": 1}), Outcome.APPLIED)

        lines = journal.load("run-7")
        assert [line["type"] for line in lines] == ["header", "entry"]

    def test_deleted_record_is_journaled(self, tmp_path):
        journal = ReportJournal(str(tmp_path))
        report = ReconciliationReport("run-9", ["session_type"], "a", "b", destructive=True, journal=journal)
        deleted = {"slug": "legacy", "title": "Legacy", "price": "40.00"}

        report.record(Operation.delete("session_type", "legacy", deleted), Outcome.APPLIED, attempts=1)

        entry = journal.load("run-9")[-1]
        assert entry["operation"] == {"op": "delete", "kind": "session_type", "identity": "legacy", "record": deleted}

    def test_list_reports(self, tmp_path):
        journal = ReportJournal(str(tmp_path))
        finished = ReconciliationReport("run-a", ["item"], "a", "b", journal=journal)
        finished.record(Operation.create("item", 1, {"id": 1}), Outcome.APPLIED)
        finished.finish("done")
        ReconciliationReport("run-b", ["item"], "a", "b", journal=journal)

        reports = {r["run_id"]: r for r in journal.list_reports()}

        assert reports["run-a"]["state"] == "done"
        assert reports["run-a"]["changes_applied"] is True
        assert reports["run-a"]["entries"] == 1
        assert reports["run-b"]["state"] == "incomplete"

    def test_load_missing_run(self, tmp_path):
        assert ReportJournal(str(tmp_path)).load("nope") == []
