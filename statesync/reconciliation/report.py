"""
Reconciliation Report

Accumulates the outcome of every operation of a reconciliation run and
serializes it as JSON lines for audit logs. A ReportJournal persists each line
as soon as it is recorded, so a crash mid-run leaves an accurate record of
everything that was actually applied.
"""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from statesync.reconciliation.models import Operation

logger = logging.getLogger(__name__)


class Outcome(Enum):
    """Outcome of one operation."""
    APPLIED = "applied"
    SKIPPED_NOOP = "skipped-noop"
    FAILED = "failed"
    VERIFIED = "verified"
    VERIFICATION_MISMATCH = "verification-mismatch"


@dataclass(frozen=True)
class ReportEntry:
    """One (operation, outcome) pair."""

    operation: Operation
    outcome: Outcome
    reason: Optional[str] = None
    attempts: int = 0
    recorded_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": "entry",
            "outcome": self.outcome.value,
            "operation": self.operation.to_dict(),
            "recorded_at": self.recorded_at,
        }
        if self.reason:
            data["reason"] = self.reason
        if self.attempts:
            data["attempts"] = self.attempts
        return data


class ReportJournal:
    """Writes reports as JSON lines files under a journal directory."""

    def __init__(self, journal_dir: str = ".reconciliation"):
        """
        Initialize the journal.

        Args:
            journal_dir: Directory to store report files
        """
        self.journal_dir = Path(journal_dir)
        self.journal_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.debug(f"Journal directory: {self.journal_dir}")

    def path_for(self, run_id: str) -> Path:
        return self.journal_dir / f"{run_id}.jsonl"

    def write(self, run_id: str, line: Dict[str, Any]) -> None:
        """
        Append one line to a run's journal file.

        Args:
            run_id: Run identifier
            line: JSON-serializable dictionary
        """
        text = json.dumps(line, default=str, sort_keys=True)
        with self._lock, self.path_for(run_id).open("a", encoding="utf-8") as f:
            f.write(text + "\n")
            f.flush()

    def load(self, run_id: str) -> List[Dict[str, Any]]:
        """
        Load all lines of a run's journal.

        Args:
            run_id: Run identifier

        Returns:
            Parsed lines, empty if the run has no journal
        """
        path = self.path_for(run_id)
        if not path.exists():
            logger.debug(f"No journal found for run {run_id}")
            return []

        with path.open("r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    def list_reports(self) -> List[Dict[str, Any]]:
        """
        List all journaled runs.

        Returns:
            One dictionary per run with run_id, kinds, start time and, for
            finished runs, the final state
        """
        reports = []

        for path in sorted(self.journal_dir.glob("*.jsonl")):
            lines = self.load(path.stem)
            header = next((line for line in lines if line.get("type") == "header"), {})
            summary = next((line for line in lines if line.get("type") == "summary"), None)
            reports.append({
                "run_id": path.stem,
                "entity_kinds": header.get("entity_kinds"),
                "started_at": header.get("started_at"),
                "state": summary.get("state") if summary else "incomplete",
                "changes_applied": summary.get("changes_applied") if summary else None,
                "entries": sum(1 for line in lines if line.get("type") == "entry"),
            })

        return reports


class ReconciliationReport:
    """
    Ordered outcome record of one reconciliation run.

    Entries are appended in the order operations are attempted; verification
    adds a second entry (verified / verification-mismatch) for every operation
    it re-checks.
    """

    def __init__(
        self,
        run_id: str,
        entity_kinds: List[str],
        desired_origin: str,
        actual_origin: str,
        destructive: bool = False,
        journal: Optional[ReportJournal] = None
    ):
        self.run_id = run_id
        self.entity_kinds = list(entity_kinds)
        self.desired_origin = desired_origin
        self.actual_origin = actual_origin
        self.destructive = destructive
        self.journal = journal

        self.entries: List[ReportEntry] = []
        self.orphans: List[Dict[str, Any]] = []
        self.plan_summary: Dict[str, Any] = {}
        self.state: Optional[str] = None
        self.failure_reason: Optional[str] = None

        self.started_at = datetime.now(timezone.utc)
        self.finished_at: Optional[datetime] = None
        self._started_monotonic = time.monotonic()
        self._elapsed: Optional[float] = None
        self._lock = threading.Lock()

        self._write(self._header())

    def record(
        self,
        operation: Operation,
        outcome: Outcome,
        reason: Optional[str] = None,
        attempts: int = 0
    ) -> ReportEntry:
        """
        Append an outcome and journal it immediately.

        Args:
            operation: Operation the outcome belongs to
            outcome: Outcome
            reason: Failure or mismatch reason
            attempts: Number of apply attempts made

        Returns:
            The recorded entry
        """
        entry = ReportEntry(operation=operation, outcome=outcome, reason=reason, attempts=attempts)
        with self._lock:
            self.entries.append(entry)
            self._write(entry.to_dict())
        return entry

    def set_plan(self, plan_summary: Dict[str, Any], orphans: List[Dict[str, Any]]) -> None:
        self.plan_summary = dict(plan_summary)
        self.orphans = list(orphans)
        self._write({"type": "plan", "summary": self.plan_summary, "orphans": self.orphans})

    def finish(self, state: str, reason: Optional[str] = None) -> None:
        """
        Mark the report final and journal the summary line.

        Args:
            state: Terminal state name ("done" or "failed")
            reason: Failure reason, if any
        """
        self.state = state
        self.failure_reason = reason
        self.finished_at = datetime.now(timezone.utc)
        self._elapsed = time.monotonic() - self._started_monotonic
        self._write(self.summary())

    @property
    def elapsed_seconds(self) -> float:
        if self._elapsed is not None:
            return self._elapsed
        return time.monotonic() - self._started_monotonic

    @property
    def changes_applied(self) -> bool:
        """True if at least one operation mutated the actual side."""
        return any(entry.outcome is Outcome.APPLIED for entry in self.entries)

    @property
    def failures(self) -> List[ReportEntry]:
        return [entry for entry in self.entries if entry.outcome is Outcome.FAILED]

    @property
    def mismatches(self) -> List[ReportEntry]:
        return [entry for entry in self.entries if entry.outcome is Outcome.VERIFICATION_MISMATCH]

    def applied_operations(self) -> List[Operation]:
        return [entry.operation for entry in self.entries if entry.outcome is Outcome.APPLIED]

    def counts(self) -> Dict[str, int]:
        """Number of entries per outcome."""
        counts = {outcome.value: 0 for outcome in Outcome}
        for entry in self.entries:
            counts[entry.outcome.value] += 1
        return counts

    def final_outcomes(self) -> Dict[tuple, Outcome]:
        """Latest outcome per (kind, identity)."""
        latest = {}
        for entry in self.entries:
            latest[(entry.operation.kind, str(entry.operation.identity))] = entry.outcome
        return latest

    def summary(self) -> Dict[str, Any]:
        return {
            "type": "summary",
            "run_id": self.run_id,
            "state": self.state,
            "failure_reason": self.failure_reason,
            "changes_applied": self.changes_applied,
            "counts": self.counts(),
            "orphan_count": len(self.orphans),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    def to_lines(self) -> List[str]:
        """
        Serialize the report as JSON lines: header, plan, one line per entry, summary.

        Returns:
            List of JSON strings
        """
        lines = [self._header()]
        if self.plan_summary:
            lines.append({"type": "plan", "summary": self.plan_summary, "orphans": self.orphans})
        lines.extend(entry.to_dict() for entry in self.entries)
        lines.append(self.summary())
        return [json.dumps(line, default=str, sort_keys=True) for line in lines]

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self._header(),
            "plan": self.plan_summary,
            "orphans": self.orphans,
            "entries": [entry.to_dict() for entry in self.entries],
            "summary": self.summary(),
        }

    def _header(self) -> Dict[str, Any]:
        return {
            "type": "header",
            "run_id": self.run_id,
            "entity_kinds": self.entity_kinds,
            "desired_origin": self.desired_origin,
            "actual_origin": self.actual_origin,
            "destructive": self.destructive,
            "started_at": self.started_at.isoformat(),
        }

    def _write(self, line: Dict[str, Any]) -> None:
        if self.journal is None:
            return
        try:
            self.journal.write(self.run_id, line)
        except OSError as e:
            # Journal is an audit copy; the in-memory report stays authoritative
            logger.error(f"Failed to write journal line for run {self.run_id}: {e}")
