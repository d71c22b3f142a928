from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile outcomes are labelled by ``result`` and failures by ``kind`` so
    operators can tell user mistakes (validation) from cluster trouble
    (apply, store) when alerting.
    """

    reconciles_total: Counter = field(
        default_factory=lambda: Counter(
            "fnctl_reconciles_total",
            "Total Function changes handled by the reconcile loop",
            ["result"],
        )
    )
    ignored_changes_total: Counter = field(
        default_factory=lambda: Counter(
            "fnctl_ignored_changes_total",
            "Total watch deliveries dropped as echoes of the controller's own writes",
        )
    )
    errors_total: Counter = field(
        default_factory=lambda: Counter(
            "fnctl_errors_total",
            "Total reconcile failures",
            ["kind"],
        )
    )
    snapshots_total: Counter = field(
        default_factory=lambda: Counter(
            "fnctl_snapshots_total",
            "Total published Function versions created",
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "fnctl_reconcile_duration_seconds",
            "Seconds spent reconciling a single Function",
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "fnctl_watch_errors_total",
            "Total Kubernetes watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "fnctl_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "fnctl_change_queue_depth",
            "Current number of Function changes waiting to be reconciled",
        )
    )
    ignorer_entries: Gauge = field(
        default_factory=lambda: Gauge(
            "fnctl_ignorer_entries",
            "Current number of expected self-write echoes",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "fnctl",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
