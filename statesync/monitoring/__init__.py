"""
Monitoring Module for State Reconciliation

Prometheus metrics for reconciliation runs.

Usage:
    from prometheus_client import CollectorRegistry
    from statesync.monitoring import ReconciliationMetrics

    metrics = ReconciliationMetrics(registry=CollectorRegistry())
    reconciler = Reconciler(sources, entities, metrics=metrics)
    reconciler.run(request)

    metrics.push("pushgateway:9091")
"""

from statesync.monitoring.metrics import ReconciliationMetrics

__all__ = [
    "ReconciliationMetrics",
]
