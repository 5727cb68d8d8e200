"""
Prometheus Metrics for State Reconciliation

Counters, histograms and gauges describing reconciliation runs. Metrics live on
a caller-supplied CollectorRegistry so that tests and one-shot CLI runs do not
collide with the process-wide default registry; one-shot runs push them to a
Pushgateway.
"""

import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, push_to_gateway

logger = logging.getLogger(__name__)


class ReconciliationMetrics:
    """Prometheus metrics for reconciliation runs."""

    def __init__(self, registry: Optional[CollectorRegistry] = None, namespace: str = "statesync"):
        """
        Initialize reconciliation metrics.

        Args:
            registry: Registry to register metrics in (a new one if None)
            namespace: Metric name prefix
        """
        self.registry = registry or CollectorRegistry()
        self.namespace = namespace

        self.runs_total = Counter(
            f'{namespace}_reconciliation_runs_total',
            'Total number of reconciliation runs by final state',
            ['entity_kinds', 'state'],
            registry=self.registry
        )

        self.operations_total = Counter(
            f'{namespace}_operations_total',
            'Operations recorded in reports, by type and outcome',
            ['kind', 'operation', 'outcome'],
            registry=self.registry
        )

        self.run_duration_seconds = Histogram(
            f'{namespace}_reconciliation_duration_seconds',
            'Duration of reconciliation runs in seconds',
            ['entity_kinds'],
            buckets=[0.5, 1, 5, 10, 30, 60, 120, 300, 600],
            registry=self.registry
        )

        self.orphans = Gauge(
            f'{namespace}_orphan_records',
            'Actual-only records left in place by the last non-destructive run',
            ['kind'],
            registry=self.registry
        )

        self.blast_radius = Gauge(
            f'{namespace}_plan_blast_radius',
            'Blast radius of the last computed plan (0-1)',
            ['entity_kinds'],
            registry=self.registry
        )

        logger.debug("ReconciliationMetrics initialized")

    def record_plan(self, entity_kinds: str, blast_radius: float, orphan_counts: Dict[str, int]) -> None:
        """
        Record the shape of a computed plan.

        Args:
            entity_kinds: Comma-joined kinds of the run
            blast_radius: Plan blast radius
            orphan_counts: Kind -> number of orphans
        """
        self.blast_radius.labels(entity_kinds=entity_kinds).set(blast_radius)
        for kind, count in orphan_counts.items():
            self.orphans.labels(kind=kind).set(count)

    def record_run(self, report) -> None:
        """
        Record a finished run from its report.

        Args:
            report: Finished ReconciliationReport
        """
        entity_kinds = ",".join(report.entity_kinds)

        self.runs_total.labels(entity_kinds=entity_kinds, state=report.state or "unknown").inc()
        self.run_duration_seconds.labels(entity_kinds=entity_kinds).observe(report.elapsed_seconds)

        for entry in report.entries:
            self.operations_total.labels(
                kind=entry.operation.kind,
                operation=entry.operation.op_type.value,
                outcome=entry.outcome.value
            ).inc()

        logger.debug(f"Recorded metrics for run {report.run_id}")

    def push(self, gateway: str, job: str = "statesync_reconcile") -> None:
        """
        Push all metrics to a Prometheus Pushgateway.

        Args:
            gateway: Pushgateway address (host:port)
            job: Job name
        """
        try:
            push_to_gateway(gateway, job=job, registry=self.registry)
            logger.info(f"Pushed metrics to gateway {gateway}")
        except OSError as e:
            logger.error(f"Failed to push metrics to gateway {gateway}: {e}")
            raise
