from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile outcomes and retries are labelled so operators can separate
    permanent annotation mistakes from API trouble.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "logctl_reconcile_total",
            "Total reconciliations by outcome",
            ["outcome"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "logctl_reconcile_duration_seconds",
            "Seconds spent processing a single queue key",
        )
    )
    retries_total: Counter = field(
        default_factory=lambda: Counter(
            "logctl_retries_total",
            "Total rate-limited requeues by failure class",
            ["failure"],
        )
    )
    forgotten_total: Counter = field(
        default_factory=lambda: Counter(
            "logctl_forgotten_total",
            "Total keys dropped after exhausting their retry budget or failing permanently",
            ["reason"],
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "logctl_queue_depth",
            "Current number of keys waiting in the work queue",
        )
    )
    events_total: Counter = field(
        default_factory=lambda: Counter(
            "logctl_events_total",
            "Total change notifications delivered by the informer",
            ["type"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "logctl_watch_errors_total",
            "Total Kubernetes list/watch errors",
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "logctl_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
        )
    )
    crashes_total: Counter = field(
        default_factory=lambda: Counter(
            "logctl_crashes_total",
            "Total unexpected errors caught by the crash handler",
            ["component"],
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "logctl",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
