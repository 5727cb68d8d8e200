"""
Reconciliation Module

Compares a desired state against an actual persisted state, computes the
corrective operations, applies them idempotently, verifies the result and
reports.

Main components:
- comparer: Field-level record comparison with numeric tolerances
- differ: Plan computation (create / update / delete / no-op)
- executor: Operation apply with retries
- verifier: Post-apply verification
- reconciler: Run state machine tying everything together

Usage:
    from statesync.reconciliation import Reconciler, RunRequest

    reconciler = Reconciler(
        sources={"fixtures": file_source, "prod-db": store_sink},
        entities={"session_type": session_type},
    )
    report = reconciler.run(RunRequest(
        entity_kinds=["session_type"],
        desired_origin="fixtures",
        actual_origin="prod-db",
    ))
    for line in report.to_lines():
        print(line)
"""

from statesync.reconciliation.comparer import RecordComparer
from statesync.reconciliation.differ import DiffEngine, Plan
from statesync.reconciliation.errors import (
    AmbiguousSource,
    ApplyFailure,
    FetchFailure,
    PermanentApplyFailure,
    ReconciliationError,
    TransientApplyFailure,
    UnconfirmedDestructivePlan,
)
from statesync.reconciliation.executor import ApplyExecutor, CancellationToken, RetryPolicy
from statesync.reconciliation.models import (
    EntityKind,
    FieldSpec,
    Filter,
    Operation,
    OperationType,
    Origin,
    Snapshot,
)
from statesync.reconciliation.reconciler import Reconciler, RunRequest, RunState
from statesync.reconciliation.report import Outcome, ReconciliationReport, ReportJournal
from statesync.reconciliation.verifier import VerificationProbe

__all__ = [
    "AmbiguousSource",
    "ApplyExecutor",
    "ApplyFailure",
    "CancellationToken",
    "DiffEngine",
    "EntityKind",
    "FetchFailure",
    "FieldSpec",
    "Filter",
    "Operation",
    "OperationType",
    "Origin",
    "Outcome",
    "PermanentApplyFailure",
    "Plan",
    "ReconciliationError",
    "ReconciliationReport",
    "Reconciler",
    "RecordComparer",
    "ReportJournal",
    "RetryPolicy",
    "RunRequest",
    "RunState",
    "Snapshot",
    "TransientApplyFailure",
    "UnconfirmedDestructivePlan",
    "VerificationProbe",
]
