from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the exposer on ``/metrics``.

    Object counters carry a ``kind`` label (``service`` or ``ingress``) and the
    queue collectors a ``queue`` label, so several named queues can share one
    registry.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "exposer_reconcile_total",
            "Total reconciliation attempts by result",
            ["result"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "exposer_reconcile_duration_seconds",
            "Seconds spent in a single reconciliation attempt",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, float("inf")),
        )
    )
    objects_created_total: Counter = field(
        default_factory=lambda: Counter(
            "exposer_objects_created_total",
            "Total derived objects created",
            ["kind"],
        )
    )
    objects_deleted_total: Counter = field(
        default_factory=lambda: Counter(
            "exposer_objects_deleted_total",
            "Total derived objects deleted",
            ["kind"],
        )
    )
    conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "exposer_create_conflicts_total",
            "Total create calls rejected because the object already exists",
            ["kind"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "exposer_workqueue_depth",
            "Current number of keys ready to be processed",
            ["queue"],
        )
    )
    queue_adds_total: Counter = field(
        default_factory=lambda: Counter(
            "exposer_workqueue_adds_total",
            "Total keys added to the work queue",
            ["queue"],
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "exposer_workqueue_retries_total",
            "Total rate-limited re-adds after failed reconciliations",
            ["queue"],
        )
    )
    dropped_keys_total: Counter = field(
        default_factory=lambda: Counter(
            "exposer_dropped_keys_total",
            "Total keys dropped without successful reconciliation",
            ["reason"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "exposer_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "exposer_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "exposer",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
