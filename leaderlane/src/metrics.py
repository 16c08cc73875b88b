from __future__ import annotations

from dataclasses import dataclass, field

from prometheus_client import Counter, Gauge, Histogram, Info

_SERVICE_LABELS = ["namespace", "service"]


@dataclass(frozen=True)
class DirectorMetrics:
    """Prometheus metrics exported by the director on ``/metrics``.

    Per-Service series are labeled by ``namespace`` and ``service``.  Leader
    pod identity is not a label; it is published in the leader Service
    annotations and on ``/statusz``.
    """

    leader_duration_seconds: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_leader_duration_seconds",
            "Seconds the current leader pod has held leadership",
            _SERVICE_LABELS,
        )
    )
    leader_pod_age_seconds: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_leader_pod_age_seconds",
            "Age in seconds of the current leader pod",
            _SERVICE_LABELS,
        )
    )
    failovers_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_failovers_total",
            "Total leader changes, by reason the previous leader was dropped",
            [*_SERVICE_LABELS, "reason"],
        )
    )
    reconciliation_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "leaderlane_reconciliation_duration_seconds",
            "Duration of Service reconciliations",
            [*_SERVICE_LABELS, "result"],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, float("inf")),
        )
    )
    reconciliations_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_reconciliations_total",
            "Total Service reconciliations",
            [*_SERVICE_LABELS, "result"],
        )
    )
    reconciliation_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_reconciliation_errors_total",
            "Total Service reconciliation errors",
            [*_SERVICE_LABELS, "error_type"],
        )
    )
    pods_available: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_pods_available",
            "Ready pods available for leader selection",
            _SERVICE_LABELS,
        )
    )
    port_resolution_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_port_resolution_failures_total",
            "Total failures resolving a Service target port on the leader pod",
            [*_SERVICE_LABELS, "port_name"],
        )
    )
    sticky_leader_hits_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_sticky_leader_hits_total",
            "Total reconciles that kept the previous leader",
            _SERVICE_LABELS,
        )
    )
    sticky_leader_misses_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_sticky_leader_misses_total",
            "Total reconciles where the previous leader was no longer eligible",
            _SERVICE_LABELS,
        )
    )
    leader_selection_attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_leader_selection_attempts_total",
            "Total leader resolutions",
            _SERVICE_LABELS,
        )
    )
    leader_stable: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_leader_stable",
            "Whether the Service is routed to a leader (1=Stable, 0=Electing)",
            _SERVICE_LABELS,
        )
    )
    leader_service_without_endpoints: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_leader_service_without_endpoints",
            "Whether the leader Service currently has no endpoints (1=yes)",
            _SERVICE_LABELS,
        )
    )
    endpoint_write_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_endpoint_write_errors_total",
            "Total EndpointSlice writes abandoned after exhausting retries",
            _SERVICE_LABELS,
        )
    )
    retry_attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_retry_attempts_total",
            "Total API operation attempts made under the retry policy",
            [*_SERVICE_LABELS, "operation", "attempt"],
        )
    )
    retry_success_after_retry_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_retry_success_after_retry_total",
            "Total API operations that succeeded only after retrying",
            [*_SERVICE_LABELS, "operation"],
        )
    )
    cache_hits_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_decision_cache_hits_total",
            "Total reconciles whose decision matched the cached one (write skipped)",
            ["namespace"],
        )
    )
    cache_misses_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_decision_cache_misses_total",
            "Total reconciles whose decision differed from the cached one",
            ["namespace"],
        )
    )
    cache_size: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_decision_cache_size",
            "Decision cache entries per namespace",
            ["namespace"],
        )
    )
    timeouts_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_timeouts_total",
            "Total operations abandoned at their deadline",
            ["namespace", "operation"],
        )
    )
    leader_services_total: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_leader_services",
            "Leader Services currently managed per namespace",
            ["namespace"],
        )
    )
    endpoint_slices_total: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_endpointslices",
            "EndpointSlices currently managed per namespace",
            ["namespace"],
        )
    )
    reconciles_in_flight: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_reconciles_in_flight",
            "Reconcile tasks currently running",
        )
    )
    queue_depth: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_queue_depth",
            "Services waiting to be reconciled",
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    controller_leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "leaderlane_controller_leader_transitions_total",
            "Total leadership transitions of this controller replica",
            ["transition"],
        )
    )
    controller_leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "leaderlane_controller_leader_state",
            "Whether this controller replica is currently active (1=yes, 0=no)",
        )
    )
    controller_leader_acquire_latency_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "leaderlane_controller_leader_acquire_latency_seconds",
            "Seconds spent waiting to become the active controller replica",
            buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "leaderlane",
            "Build information for the director",
        )
    )


METRICS = DirectorMetrics()


class MetricsRecorder:
    """Named record operations over :class:`DirectorMetrics`.

    Reconcile code only talks to this interface, so tests can substitute a
    recorder that keeps calls in memory.
    """

    def __init__(self, metrics: DirectorMetrics = METRICS) -> None:
        self.metrics = metrics

    def record_retry_attempt(
        self, namespace: str, service: str, operation: str, attempt: str
    ) -> None:
        self.metrics.retry_attempts_total.labels(
            namespace=namespace, service=service, operation=operation, attempt=attempt
        ).inc()

    def record_retry_success_after_retry(self, namespace: str, service: str, operation: str) -> None:
        self.metrics.retry_success_after_retry_total.labels(
            namespace=namespace, service=service, operation=operation
        ).inc()

    def record_cache_hit(self, namespace: str) -> None:
        self.metrics.cache_hits_total.labels(namespace=namespace).inc()

    def record_cache_miss(self, namespace: str) -> None:
        self.metrics.cache_misses_total.labels(namespace=namespace).inc()

    def record_cache_size(self, namespace: str, size: int) -> None:
        self.metrics.cache_size.labels(namespace=namespace).set(size)

    def record_failover(self, namespace: str, service: str, reason: str) -> None:
        self.metrics.failovers_total.labels(
            namespace=namespace, service=service, reason=reason
        ).inc()

    def record_port_resolution_failure(self, namespace: str, service: str, port_name: str) -> None:
        self.metrics.port_resolution_failures_total.labels(
            namespace=namespace, service=service, port_name=port_name
        ).inc()

    def record_endpoint_write_error(self, namespace: str, service: str) -> None:
        self.metrics.endpoint_write_errors_total.labels(namespace=namespace, service=service).inc()

    def record_leader_duration(self, namespace: str, service: str, seconds: float) -> None:
        self.metrics.leader_duration_seconds.labels(namespace=namespace, service=service).set(seconds)

    def reset_leader_duration(self, namespace: str, service: str) -> None:
        self.metrics.leader_duration_seconds.labels(namespace=namespace, service=service).set(0)

    def record_leader_pod_age(self, namespace: str, service: str, seconds: float) -> None:
        self.metrics.leader_pod_age_seconds.labels(namespace=namespace, service=service).set(seconds)

    def record_leader_stable(self, namespace: str, service: str, stable: bool) -> None:
        self.metrics.leader_stable.labels(namespace=namespace, service=service).set(int(stable))

    def record_without_endpoints(self, namespace: str, service: str, without: bool) -> None:
        self.metrics.leader_service_without_endpoints.labels(
            namespace=namespace, service=service
        ).set(int(without))

    def record_reconciliation(self, namespace: str, service: str, result: str) -> None:
        self.metrics.reconciliations_total.labels(
            namespace=namespace, service=service, result=result
        ).inc()

    def record_reconciliation_duration(
        self, namespace: str, service: str, result: str, seconds: float
    ) -> None:
        self.metrics.reconciliation_duration_seconds.labels(
            namespace=namespace, service=service, result=result
        ).observe(seconds)

    def record_reconciliation_error(self, namespace: str, service: str, error_type: str) -> None:
        self.metrics.reconciliation_errors_total.labels(
            namespace=namespace, service=service, error_type=error_type
        ).inc()

    def record_pods_available(self, namespace: str, service: str, count: int) -> None:
        self.metrics.pods_available.labels(namespace=namespace, service=service).set(count)

    def record_sticky_hit(self, namespace: str, service: str) -> None:
        self.metrics.sticky_leader_hits_total.labels(namespace=namespace, service=service).inc()

    def record_sticky_miss(self, namespace: str, service: str) -> None:
        self.metrics.sticky_leader_misses_total.labels(namespace=namespace, service=service).inc()

    def record_leader_selection_attempt(self, namespace: str, service: str) -> None:
        self.metrics.leader_selection_attempts_total.labels(
            namespace=namespace, service=service
        ).inc()

    def record_timeout(self, namespace: str, operation: str) -> None:
        self.metrics.timeouts_total.labels(namespace=namespace, operation=operation).inc()

    def record_resource_totals(
        self, namespace: str, leader_services: int | None, endpoint_slices: int | None
    ) -> None:
        if leader_services is not None:
            self.metrics.leader_services_total.labels(namespace=namespace).set(leader_services)
        if endpoint_slices is not None:
            self.metrics.endpoint_slices_total.labels(namespace=namespace).set(endpoint_slices)

    def record_in_flight(self, count: int) -> None:
        self.metrics.reconciles_in_flight.set(count)

    def record_queue_depth(self, depth: int) -> None:
        self.metrics.queue_depth.set(depth)

    def record_watch_error(self, resource: str) -> None:
        self.metrics.watch_errors_total.labels(resource=resource).inc()

    def record_watch_reconnect(self, resource: str) -> None:
        self.metrics.watch_reconnects_total.labels(resource=resource).inc()

    def forget_service(self, namespace: str, service: str) -> None:
        """Drop per-Service gauges once a Service is no longer directed."""
        for gauge in (
            self.metrics.leader_duration_seconds,
            self.metrics.leader_pod_age_seconds,
            self.metrics.leader_stable,
            self.metrics.leader_service_without_endpoints,
            self.metrics.pods_available,
        ):
            try:
                gauge.remove(namespace, service)
            except KeyError:
                pass


RECORDER = MetricsRecorder(METRICS)
