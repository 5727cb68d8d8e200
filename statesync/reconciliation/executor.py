"""
Apply Executor

Applies plan operations one at a time against a StateSink, retrying transient
failures with exponential backoff and recording every outcome in the
ReconciliationReport before moving on to the next operation.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from statesync.reconciliation.errors import ApplyFailure, RunCancelled
from statesync.reconciliation.models import Operation, OperationType
from statesync.reconciliation.report import Outcome, ReconciliationReport

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation signal, checked between operations."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy for CREATE and UPDATE operations.

    Attributes:
        max_attempts: Total attempts, including the first one
        initial_backoff_seconds: Wait before the second attempt
        backoff_multiplier: Growth factor of the wait between attempts
    """

    max_attempts: int = 3
    initial_backoff_seconds: float = 0.5
    backoff_multiplier: float = 2.0

    def backoff_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Seconds to wait after a failed attempt.

        Args:
            attempt: Number of the attempt that just failed (1-based)
            retry_after: Wait requested by the remote side, if any

        Returns:
            Exponential backoff, never shorter than retry_after
        """
        backoff = self.initial_backoff_seconds * (self.backoff_multiplier ** (attempt - 1))
        if retry_after is not None:
            backoff = max(backoff, retry_after)
        return backoff


@dataclass(frozen=True)
class ApplyOutcome:
    """Result of applying one operation."""

    operation: Operation
    outcome: Outcome
    reason: Optional[str] = None
    attempts: int = 0
    transient: bool = False


@dataclass
class ExecutionResult:
    """
    Result of executing a sequence of operations.

    Attributes:
        attempted: Number of operations attempted (no-ops included)
        failed: Number of failed operations
        halted: Whether execution stopped before the end of the sequence
        halt_reason: Why execution stopped
    """

    attempted: int = 0
    failed: int = 0
    halted: bool = False
    halt_reason: Optional[str] = None


class ApplyExecutor:
    """
    Applies operations against a StateSink.

    CREATE and UPDATE are retried on transient failures; DELETE is never
    retried. Any failed operation stops execution unless continue_on_error
    is set.
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        sleeper: Callable[[float], None] = time.sleep
    ):
        """
        Initialize the executor.

        Args:
            retry_policy: Retry policy (default RetryPolicy())
            sleeper: Sleep function (overridable in tests)
        """
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleeper

    def execute(
        self,
        operations: Sequence[Operation],
        sink,
        report: ReconciliationReport,
        continue_on_error: bool = False,
        parallel_creates: int = 1,
        cancellation_token: Optional[CancellationToken] = None
    ) -> ExecutionResult:
        """
        Apply operations in order, recording each outcome.

        Args:
            operations: Operations in plan order
            sink: StateSink to apply against
            report: Report receiving one entry per operation
            continue_on_error: Keep going after failures that would halt
            parallel_creates: Worker count for runs of consecutive CREATEs
                of one kind; only used when the sink supports it
            cancellation_token: Checked before each operation

        Returns:
            ExecutionResult

        Raises:
            RunCancelled: If the token is set between operations
        """
        result = ExecutionResult()
        use_pool = parallel_creates > 1 and getattr(sink, "supports_parallel_creates", False)
        index = 0

        while index < len(operations):
            if cancellation_token is not None and cancellation_token.is_cancelled():
                logger.warning(f"Run cancelled after {result.attempted} of {len(operations)} operations")
                raise RunCancelled()

            if use_pool and operations[index].op_type is OperationType.CREATE:
                batch = self._create_batch(operations, index)
                outcomes = self._apply_parallel(batch, sink, parallel_creates)
            else:
                batch = [operations[index]]
                outcomes = [self.apply(operations[index], sink)]

            index += len(batch)

            halt_reason = None
            for applied in outcomes:
                report.record(applied.operation, applied.outcome, applied.reason, applied.attempts)
                result.attempted += 1

                if applied.outcome is Outcome.FAILED:
                    result.failed += 1
                    if halt_reason is None:
                        halt_reason = f"{applied.operation.describe()} failed: {applied.reason}"

            if halt_reason and not continue_on_error:
                logger.error(f"Halting apply: {halt_reason}")
                result.halted = True
                result.halt_reason = halt_reason
                break

        logger.info(
            f"Applied {result.attempted}/{len(operations)} operations "
            f"({result.failed} failed, halted={result.halted})"
        )
        return result

    def apply(self, operation: Operation, sink) -> ApplyOutcome:
        """
        Apply a single operation with the retry policy.

        Args:
            operation: Operation to apply
            sink: StateSink to apply against

        Returns:
            ApplyOutcome; never raises for apply failures
        """
        if operation.op_type is OperationType.NOOP:
            return ApplyOutcome(operation, Outcome.SKIPPED_NOOP)

        max_attempts = 1 if operation.op_type is OperationType.DELETE else self.retry_policy.max_attempts
        attempt = 0

        while True:
            attempt += 1
            try:
                self._dispatch(operation, sink)
                if attempt > 1:
                    logger.info(f"{operation.describe()} succeeded on attempt {attempt}")
                return ApplyOutcome(operation, Outcome.APPLIED, attempts=attempt)

            except ApplyFailure as e:
                if not e.transient or attempt >= max_attempts:
                    logger.error(f"{operation.describe()} failed after {attempt} attempt(s): {e}")
                    return ApplyOutcome(
                        operation,
                        Outcome.FAILED,
                        reason=str(e),
                        attempts=attempt,
                        transient=e.transient,
                    )

                backoff = self.retry_policy.backoff_for(attempt, getattr(e, "retry_after", None))
                logger.warning(
                    f"{operation.describe()} attempt {attempt} failed ({e}); retrying in {backoff:.2f}s"
                )
                self._sleep(backoff)

            except Exception as e:
                # A sink bug is a permanent failure of this operation only
                logger.error(f"{operation.describe()} raised unexpectedly: {e}", exc_info=True)
                return ApplyOutcome(
                    operation,
                    Outcome.FAILED,
                    reason=f"{type(e).__name__}: {e}",
                    attempts=attempt,
                )

    def _dispatch(self, operation: Operation, sink) -> None:
        if operation.op_type is OperationType.CREATE:
            sink.apply_create(operation.kind, operation.record)
        elif operation.op_type is OperationType.UPDATE:
            sink.apply_update(operation.kind, operation.identity, operation.changed_fields)
        elif operation.op_type is OperationType.DELETE:
            sink.apply_delete(operation.kind, operation.identity, operation.record)
        else:
            raise ValueError(f"Cannot apply operation type {operation.op_type}")

    def _create_batch(self, operations: Sequence[Operation], start: int) -> List[Operation]:
        """Consecutive CREATEs of the same kind starting at index start."""
        kind = operations[start].kind
        batch = []
        for operation in operations[start:]:
            if operation.op_type is not OperationType.CREATE or operation.kind != kind:
                break
            batch.append(operation)
        return batch

    def _apply_parallel(
        self,
        batch: List[Operation],
        sink,
        max_workers: int
    ) -> List[ApplyOutcome]:
        if len(batch) == 1:
            return [self.apply(batch[0], sink)]

        logger.info(f"Applying {len(batch)} {batch[0].kind} creates with {max_workers} workers")

        with ThreadPoolExecutor(max_workers=min(max_workers, len(batch))) as pool:
            futures = [pool.submit(self.apply, operation, sink) for operation in batch]

        # Outcomes are recorded in plan order, one per submitted operation
        outcomes = []
        for operation, future in zip(batch, futures):
            try:
                outcomes.append(future.result())
            except Exception as e:
                logger.error(f"{operation.describe()} worker failed: {e}", exc_info=True)
                outcomes.append(ApplyOutcome(operation, Outcome.FAILED, reason=f"{type(e).__name__}: {e}", attempts=1))
        return outcomes
