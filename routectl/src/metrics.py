from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the route controller on ``/metrics``.

    Reconcile counters carry ``operation`` (``get``, ``create``, ``update``)
    and ``outcome`` (``ok`` or an error kind) so operators can alert on
    upstream failures separately from client mistakes.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "routectl_reconcile_total",
            "Total reconcile operations by operation and outcome",
            ["operation", "outcome"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "routectl_reconcile_duration_seconds",
            "Seconds spent in one reconcile operation",
            ["operation"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, float("inf")),
        )
    )
    lock_conflicts_total: Counter = field(
        default_factory=lambda: Counter(
            "routectl_lock_conflicts_total",
            "Total reconciliations rejected because the service was already locked",
        )
    )
    pod_label_fixes_total: Counter = field(
        default_factory=lambda: Counter(
            "routectl_pod_label_fixes_total",
            "Total pod convention label repairs by result",
            ["result"],
        )
    )
    skipped_entries_total: Counter = field(
        default_factory=lambda: Counter(
            "routectl_skipped_entries_total",
            "Total malformed subsets, routes, destinations and matches skipped on read",
            ["entry"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "routectl",
            "Build information for the route controller",
        )
    )


METRICS = ControllerMetrics()
