from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ReconcilerMetrics:
    """Prometheus metrics exported by the reconciler on ``/metrics``.

    Event counters mirror :class:`~reconciler.src.status.SyncStats` so that
    dashboards see the same numbers the pass logs report.  Per-sync gauges
    carry a ``manager`` label because several syncs may share one process.
    """

    apply_events_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_apply_events_total",
            "Total apply events received from the apply engine",
            ["status"],
        )
    )
    prune_events_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_prune_events_total",
            "Total prune events received from the apply engine",
            ["status"],
        )
    )
    wait_events_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_wait_events_total",
            "Total wait (reconcile) events received from the apply engine",
            ["status"],
        )
    )
    pass_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_pass_errors_total",
            "Total errors reported by apply and destroy passes",
            ["kind"],
        )
    )
    pass_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "converge_pass_duration_seconds",
            "Seconds spent in one apply or destroy pass",
            ["operation"],
            buckets=(0.5, 1, 5, 15, 30, 60, 120, 300, 600, float("inf")),
        )
    )
    management_conflicts: Gauge = field(
        default_factory=lambda: Gauge(
            "converge_management_conflicts",
            "Current number of objects with a detected management conflict",
            ["manager"],
        )
    )
    remediator_queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "converge_remediator_queue_depth",
            "Current number of objects waiting in the remediator queue",
        )
    )
    remediations_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_remediations_total",
            "Total drift corrections attempted by the remediator",
            ["operation", "result"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "converge_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    active_watches: Gauge = field(
        default_factory=lambda: Gauge(
            "converge_active_watches",
            "Current number of resource watches held by the remediator",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "converge_reconciler",
            "Build information for the reconciler",
        )
    )


METRICS = ReconcilerMetrics()
