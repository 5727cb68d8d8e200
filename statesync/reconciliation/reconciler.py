"""
Reconciler

Drives one reconciliation run through its states:

    IDLE -> FETCHING -> DIFFING -> [AWAITING_CONFIRMATION] -> APPLYING -> VERIFYING -> DONE

FAILED is reachable from every non-terminal state. A Reconciler instance runs
exactly once; create a new instance per run.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from statesync.reconciliation.differ import DiffEngine, Plan
from statesync.reconciliation.errors import (
    AmbiguousSource,
    FetchFailure,
    RunCancelled,
    UnconfirmedDestructivePlan,
)
from statesync.reconciliation.executor import ApplyExecutor, CancellationToken
from statesync.reconciliation.models import EntityKind, Filter, Origin, Snapshot
from statesync.reconciliation.report import ReconciliationReport, ReportJournal
from statesync.reconciliation.schema import RecordValidator
from statesync.reconciliation.verifier import VerificationProbe
from statesync.utils.correlation import CorrelationContext, generate_run_id

logger = logging.getLogger(__name__)


class RunState(Enum):
    """States of a reconciliation run."""
    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    APPLYING = "applying"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = (RunState.DONE, RunState.FAILED)

_TRANSITIONS = {
    RunState.IDLE: (RunState.FETCHING,),
    RunState.FETCHING: (RunState.DIFFING,),
    RunState.DIFFING: (RunState.AWAITING_CONFIRMATION, RunState.APPLYING),
    RunState.AWAITING_CONFIRMATION: (RunState.APPLYING,),
    RunState.APPLYING: (RunState.VERIFYING,),
    RunState.VERIFYING: (RunState.DONE,),
}


@dataclass
class RunRequest:
    """
    Parameters of one reconciliation run.

    Attributes:
        entity_kinds: Kinds to reconcile
        desired_origin: Name of the source holding the desired state
        actual_origin: Name of the sink holding the actual state
        destructive: Delete actual-only records instead of reporting orphans
        blast_radius_threshold: Plans touching a larger fraction of actual
            records need confirmation (0-1)
        continue_on_error: Keep applying after a failure that would halt the run
        confirmation_token: Plan fingerprint confirming a destructive plan
        filter: Restricts both snapshots and the verification re-fetch
        parallel_creates: Workers for independent creates (1 = sequential)
    """

    entity_kinds: List[str]
    desired_origin: str
    actual_origin: str
    destructive: bool = False
    blast_radius_threshold: float = 1.0
    continue_on_error: bool = False
    confirmation_token: Optional[str] = None
    filter: Optional[Filter] = None
    parallel_creates: int = 1

    def __post_init__(self):
        if not self.entity_kinds:
            raise ValueError("At least one entity kind is required")
        if not 0.0 <= self.blast_radius_threshold <= 1.0:
            raise ValueError("blast_radius_threshold must be between 0 and 1")
        if self.parallel_creates < 1:
            raise ValueError("parallel_creates must be at least 1")


class Reconciler:
    """
    Reconciles a desired state source against an actual state sink.

    Sources are borrowed for the duration of the run and released once the run
    reaches DONE or FAILED, whatever the outcome.
    """

    def __init__(
        self,
        sources: Dict[str, Any],
        entities: Dict[str, EntityKind],
        kind_order: Optional[Sequence[str]] = None,
        differ: Optional[DiffEngine] = None,
        executor: Optional[ApplyExecutor] = None,
        verifier: Optional[VerificationProbe] = None,
        validator: Optional[RecordValidator] = None,
        metrics=None,
        journal: Optional[ReportJournal] = None,
        confirmer: Optional[Callable[[Plan], bool]] = None,
        confirmation_timeout_seconds: float = 300.0,
        cancellation_token: Optional[CancellationToken] = None
    ):
        """
        Initialize the reconciler.

        Args:
            sources: Origin name -> source or sink
            entities: Kind -> entity definition
            kind_order: Topological order of kinds (default: entities order)
            differ: Diff engine
            executor: Apply executor
            verifier: Verification probe
            validator: Schema validator for desired snapshots
            metrics: Optional ReconciliationMetrics
            journal: Optional journal persisting the report as it grows
            confirmer: Callback asked to confirm a destructive plan
            confirmation_timeout_seconds: Time the confirmer has to answer
            cancellation_token: Cooperative cancellation signal
        """
        self.sources = dict(sources)
        self.entities = dict(entities)
        self.kind_order = list(kind_order) if kind_order else list(self.entities)
        self.differ = differ or DiffEngine()
        self.executor = executor or ApplyExecutor()
        self.verifier = verifier or VerificationProbe()
        self.validator = validator or RecordValidator()
        self.metrics = metrics
        self.journal = journal
        self.confirmer = confirmer
        self.confirmation_timeout_seconds = confirmation_timeout_seconds
        self.cancellation_token = cancellation_token or CancellationToken()

        self.differ.validate_kind_order(self.kind_order, self.entities)

        self._state = RunState.IDLE
        self.plan: Optional[Plan] = None
        self.report: Optional[ReconciliationReport] = None

    @property
    def state(self) -> RunState:
        return self._state

    def cancel(self) -> None:
        """Request cancellation; honoured before the next operation."""
        self.cancellation_token.cancel()

    def run(self, request: RunRequest) -> ReconciliationReport:
        """
        Execute one reconciliation run.

        Args:
            request: Run parameters

        Returns:
            Final ReconciliationReport (state "done" or "failed")

        Raises:
            RuntimeError: If this instance already ran
            ValueError: If the request names unknown kinds or origins
            FetchFailure: If a source cannot be read (report attached as .report)
            AmbiguousSource: If a snapshot has duplicate identities (report attached)
        """
        if self._state is not RunState.IDLE:
            raise RuntimeError(f"Reconciler already used (state {self._state.value}); create a new instance")

        desired_source, actual_sink = self._resolve_origins(request)
        kinds = self._ordered_kinds(request.entity_kinds)

        with CorrelationContext(generate_run_id()) as run_id:
            report = ReconciliationReport(
                run_id=run_id,
                entity_kinds=kinds,
                desired_origin=request.desired_origin,
                actual_origin=request.actual_origin,
                destructive=request.destructive,
                journal=self.journal,
            )
            self.report = report
            logger.info(
                f"Starting run {run_id}: {kinds} from {request.desired_origin} "
                f"to {request.actual_origin} (destructive={request.destructive})"
            )

            acquired = []
            try:
                for source in self._distinct(desired_source, actual_sink):
                    source.acquire()
                    acquired.append(source)

                self._execute(request, kinds, desired_source, actual_sink, report)

            except RunCancelled as e:
                self._fail(report, e.message)

            except (FetchFailure, AmbiguousSource) as e:
                self._fail(report, e.message)
                e.report = report
                raise

            except Exception as e:
                logger.exception(f"Run {run_id} aborted by unexpected error")
                self._fail(report, f"{type(e).__name__}: {e}")

            finally:
                for source in reversed(acquired):
                    self._release(source)
                if self.metrics is not None and report.state is not None:
                    self.metrics.record_run(report)

        return report

    def preview(self, request: RunRequest) -> Plan:
        """
        Fetch and diff without applying anything.

        Args:
            request: Run parameters

        Returns:
            The plan a run with this request would apply
        """
        desired_source, actual_sink = self._resolve_origins(request)
        kinds = self._ordered_kinds(request.entity_kinds)

        acquired = []
        try:
            for source in self._distinct(desired_source, actual_sink):
                source.acquire()
                acquired.append(source)
            snapshots = self._fetch(kinds, desired_source, actual_sink, request.filter)
        finally:
            for source in reversed(acquired):
                self._release(source)

        return self.differ.plan(snapshots, self.entities, kinds, destructive=request.destructive)

    def _execute(
        self,
        request: RunRequest,
        kinds: List[str],
        desired_source,
        actual_sink,
        report: ReconciliationReport
    ) -> None:
        self._transition(RunState.FETCHING)
        snapshots = self._fetch(kinds, desired_source, actual_sink, request.filter)

        self._transition(RunState.DIFFING)
        plan = self.differ.plan(snapshots, self.entities, kinds, destructive=request.destructive)
        self.plan = plan
        report.set_plan(plan.summary(), list(plan.orphans))

        if self.metrics is not None:
            orphan_counts = {kind: 0 for kind in kinds}
            for orphan in plan.orphans:
                orphan_counts[orphan["kind"]] += 1
            self.metrics.record_plan(",".join(kinds), plan.blast_radius, orphan_counts)

        if self.needs_confirmation(plan, request):
            self._transition(RunState.AWAITING_CONFIRMATION)
            if not self._confirm(plan, request):
                error = UnconfirmedDestructivePlan(plan.fingerprint)
                self._fail(report, error.message)
                return

        self._transition(RunState.APPLYING)
        result = self.executor.execute(
            plan.operations,
            actual_sink,
            report,
            continue_on_error=request.continue_on_error,
            parallel_creates=request.parallel_creates,
            cancellation_token=self.cancellation_token,
        )

        if result.halted:
            self._fail(report, result.halt_reason)
            return

        self._transition(RunState.VERIFYING)
        self.verifier.verify(
            report.applied_operations(),
            actual_sink,
            self.entities,
            report,
            base_filter=request.filter,
        )

        self._transition(RunState.DONE)
        report.finish(RunState.DONE.value)
        logger.info(f"Run {report.run_id} done: {report.counts()}")

    def needs_confirmation(self, plan: Plan, request: RunRequest) -> bool:
        """A plan needs confirmation if it deletes anything or exceeds the blast radius threshold."""
        return bool(plan.deletes) or plan.blast_radius > request.blast_radius_threshold

    def _confirm(self, plan: Plan, request: RunRequest) -> bool:
        logger.warning(
            f"Plan needs confirmation: {len(plan.deletes)} deletes, "
            f"blast radius {plan.blast_radius:.2%}, fingerprint {plan.fingerprint}"
        )

        if request.confirmation_token is not None:
            if request.confirmation_token == plan.fingerprint:
                logger.info("Plan confirmed by token")
                return True
            logger.warning(f"Confirmation token {request.confirmation_token} does not match plan {plan.fingerprint}")

        if self.confirmer is None:
            return False

        answers: List[bool] = []

        def ask() -> None:
            try:
                answers.append(bool(self.confirmer(plan)))
            except Exception as e:
                logger.error(f"Confirmer raised {type(e).__name__}: {e}")
                answers.append(False)

        # Daemon, so a confirmer that never answers cannot keep the process alive
        worker = threading.Thread(target=ask, name="statesync-confirmer", daemon=True)
        worker.start()
        worker.join(self.confirmation_timeout_seconds)

        if worker.is_alive():
            logger.warning(f"No confirmation within {self.confirmation_timeout_seconds}s")
            return False

        confirmed = bool(answers and answers[0])
        logger.info(f"Confirmer answered: {'confirmed' if confirmed else 'declined'}")
        return confirmed

    def _fetch(
        self,
        kinds: List[str],
        desired_source,
        actual_source,
        base_filter: Optional[Filter]
    ) -> Dict[str, Tuple[Snapshot, Snapshot]]:
        desired = {}
        for kind in kinds:
            snapshot = desired_source.fetch(kind, base_filter, Origin.DESIRED)
            self.validator.validate_snapshot(snapshot, self.entities[kind])
            desired[kind] = snapshot

        return {
            kind: (desired[kind], actual_source.fetch(kind, base_filter, Origin.ACTUAL))
            for kind in kinds
        }

    def _resolve_origins(self, request: RunRequest) -> Tuple[Any, Any]:
        for origin in (request.desired_origin, request.actual_origin):
            if origin not in self.sources:
                raise ValueError(f"Unknown origin: {origin}")

        actual_sink = self.sources[request.actual_origin]
        if not callable(getattr(actual_sink, "apply_create", None)):
            raise ValueError(f"Origin '{request.actual_origin}' is read-only and cannot be reconciled")

        return self.sources[request.desired_origin], actual_sink

    def _ordered_kinds(self, entity_kinds: Sequence[str]) -> List[str]:
        unknown = [kind for kind in entity_kinds if kind not in self.entities]
        if unknown:
            raise ValueError(f"Unknown entity kinds: {unknown}")
        return [kind for kind in self.kind_order if kind in entity_kinds]

    def _transition(self, new_state: RunState) -> None:
        if new_state not in _TRANSITIONS.get(self._state, ()):
            raise RuntimeError(f"Invalid transition {self._state.value} -> {new_state.value}")
        logger.debug(f"Run state {self._state.value} -> {new_state.value}")
        self._state = new_state

    def _fail(self, report: ReconciliationReport, reason: str) -> None:
        if self._state in TERMINAL_STATES:
            logger.error(f"Run {report.run_id} already {self._state.value}; ignoring failure: {reason}")
            return
        logger.error(f"Run {report.run_id} failed in state {self._state.value}: {reason}")
        self._state = RunState.FAILED
        report.finish(RunState.FAILED.value, reason)

    @staticmethod
    def _distinct(*sources) -> List[Any]:
        distinct: List[Any] = []
        for source in sources:
            if not any(source is seen for seen in distinct):
                distinct.append(source)
        return distinct

    @staticmethod
    def _release(source) -> None:
        try:
            source.release()
        except Exception as e:
            logger.error(f"Failed to release source {source.name}: {e}")
