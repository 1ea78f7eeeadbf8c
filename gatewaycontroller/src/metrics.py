from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``.

    Reconcile-level series carry a ``controller`` label (``wrappedgateway`` or
    ``route``) so both reconcilers can be alerted on independently.
    """

    reconcile_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_controller_reconcile_total",
            "Total reconcile invocations by outcome",
            ["controller", "result"],
        )
    )
    reconcile_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_controller_reconcile_failures_total",
            "Total failed WrappedGateway reconciles by Ready condition reason",
            ["reason"],
        )
    )
    reconcile_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "gateway_controller_reconcile_duration_seconds",
            "Seconds spent in a single reconcile invocation",
            ["controller"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, float("inf")),
        )
    )
    workqueue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "gateway_controller_workqueue_depth",
            "Keys currently waiting in a work queue",
            ["controller"],
        )
    )
    workqueue_retries_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_controller_workqueue_retries_total",
            "Total rate-limited requeues after failed reconciles",
            ["controller"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_controller_watch_errors_total",
            "Total Kubernetes watch errors",
            ["kind"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_controller_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["kind"],
        )
    )
    gateway_notifications_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_controller_gateway_notifications_total",
            "Total WrappedGateways touched because a route's parent references changed",
        )
    )
    gateway_listeners: Gauge = field(
        default_factory=lambda: Gauge(
            "gateway_controller_gateway_listeners",
            "Listeners synthesized on the last successful sync of a Gateway",
            ["namespace", "name"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "gateway_controller_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "gateway_controller_leader_state",
            "Whether this controller replica is currently leader (1=yes, 0=no)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "gateway_controller",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()
