from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class OperatorMetrics:
    """Prometheus metrics exported by the operator on ``/metrics``.

    Per-ClusterManager series carry a ``cluster_manager`` label; there is
    normally only one, so cardinality stays small.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "clustermanager_reconcile_total",
            "Total reconciliation passes by result",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "clustermanager_reconcile_duration_seconds",
            "Seconds spent in one reconciliation pass",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
        )
    )
    apply_operations_total: Counter = field(
        default_factory=lambda: Counter(
            "clustermanager_apply_operations_total",
            "Total create/update/delete operations on managed objects",
            ["kind", "action"],
        )
    )
    related_resources: Gauge = field(
        default_factory=lambda: Gauge(
            "clustermanager_related_resources",
            "Number of objects currently managed for a ClusterManager",
            ["cluster_manager"],
        )
    )
    cert_rotations_total: Counter = field(
        default_factory=lambda: Counter(
            "clustermanager_cert_rotations_total",
            "Total certificates issued by the rotation loop",
            ["kind"],
        )
    )
    cert_rotation_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "clustermanager_cert_rotation_errors_total",
            "Total failed certificate rotation ticks",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "clustermanager_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "clustermanager_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "clustermanager_queue_depth",
            "ClusterManagers waiting to be reconciled",
        )
    )
    retry_total: Counter = field(
        default_factory=lambda: Counter(
            "clustermanager_retry_total",
            "Total reconciliation retries scheduled after failed passes",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "clustermanager_operator",
            "Build information for the operator",
        )
    )


METRICS = OperatorMetrics()
