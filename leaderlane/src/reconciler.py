from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from kubernetes.client import CoreV1Api, DiscoveryV1Api

from leaderlane.src.cache import DecisionCache
from leaderlane.src.endpoints import EndpointSliceWriter
from leaderlane.src.errors import (
    EndpointWriteError,
    LeadershipError,
    PortResolutionError,
    ReconcileTimeoutError,
    is_not_found,
)
from leaderlane.src.events import (
    REASON_INVALID_SERVICE,
    REASON_LEADER_CHANGED,
    REASON_LEADER_ROUTING_AVAILABLE,
    REASON_LEADER_SERVICE_CREATED,
    REASON_NAMED_PORT_RESOLUTION_FAILED,
    REASON_NO_PODS_FOUND,
    REASON_NO_READY_PODS,
    REASON_PORT_RESOLUTION_FAILED,
    EventRecorder,
)
from leaderlane.src.leadership import STICKY_HIT, STICKY_MISS, LeadershipResolver, LeadershipSource
from leaderlane.src.metadata import LABEL_MANAGED_BY, LABEL_SOURCE_SERVICE, MANAGED_BY_VALUE
from leaderlane.src.metrics import RECORDER, MetricsRecorder
from leaderlane.src.models import (
    Candidate,
    DirectedService,
    LeaderRecord,
    Phase,
    RoutingDecision,
    ServiceStatus,
    utc_now,
)
from leaderlane.src.ports import resolve_service_ports
from leaderlane.src.retry import Deadline, Retrier, RetryPolicy

LOGGER = logging.getLogger(__name__)

RESULT_SUCCESS = "success"
RESULT_ERROR = "error"
RESULT_CLEANED_UP = "cleaned_up"
RESULT_SKIPPED = "skipped"

CACHE_UPDATE_OPERATION = "cache_update"
METRICS_COLLECTION_OPERATION = "metrics_collection"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconcile, consumed by the scheduler to decide on requeue."""

    namespace: str
    name: str
    result: str
    decision: RoutingDecision | None = None
    wrote: bool = False
    requeue: bool = False
    error: str | None = None


def _selector_string(selector: dict[str, str]) -> str:
    return ",".join(f"{k}={v}" for k, v in sorted(selector.items()))


def is_generated_service(obj: Any) -> bool:
    """Return True for leader Services this controller created."""
    labels = getattr(getattr(obj, "metadata", None), "labels", None) or {}
    return labels.get(LABEL_MANAGED_BY) == MANAGED_BY_VALUE and LABEL_SOURCE_SERVICE in labels


class ServiceDirector:
    """Reconcile one DirectedService at a time into its leader-only routing.

    A reconcile reads the Service and its pods, resolves the leader, resolves
    target ports against the leader pod, and publishes the resulting
    :class:`RoutingDecision` unless its fingerprint matches the cached one.
    The whole reconcile runs under the cache-update deadline: API calls get
    the remaining time as their request timeout, and a deadline that expires
    before the cache is updated leaves the previous entry in place.

    Per-Service errors are caught here and returned as a
    :class:`ReconcileResult` with ``requeue=True``; nothing escapes to the
    worker thread.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        discovery_api: DiscoveryV1Api,
        source: LeadershipSource,
        cache: DecisionCache,
        metrics: MetricsRecorder = RECORDER,
        retry_policy: RetryPolicy | None = None,
        cache_update_timeout_seconds: float = 10.0,
        metrics_collection_timeout_seconds: float = 5.0,
        resource_totals_interval_seconds: float = 30.0,
        writer: EndpointSliceWriter | None = None,
        events: EventRecorder | None = None,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = utc_now,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.core_api = core_api
        self.discovery_api = discovery_api
        self.cache = cache
        self.metrics = metrics
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache_update_timeout_seconds = cache_update_timeout_seconds
        self.metrics_collection_timeout_seconds = metrics_collection_timeout_seconds
        self.resource_totals_interval_seconds = resource_totals_interval_seconds
        self.logger = logger or LOGGER
        self.now_fn = now_fn
        self.clock = clock
        self.sleep = sleep
        self.resolver = LeadershipResolver(source, now_fn=now_fn)
        self.writer = writer or EndpointSliceWriter(
            core_api, discovery_api, logger=self.logger, now_fn=now_fn
        )
        self.events = events or EventRecorder(core_api, logger=self.logger, now_fn=now_fn)

        self._statuses: dict[tuple[str, str], ServiceStatus] = {}
        self._status_lock = threading.Lock()
        self._totals_collected_at: dict[str, float] = {}
        self._totals_lock = threading.Lock()

    # -- status ---------------------------------------------------------

    def status(self, namespace: str, name: str) -> ServiceStatus | None:
        with self._status_lock:
            current = self._statuses.get((namespace, name))
            return replace(current) if current is not None else None

    def statuses(self) -> list[dict[str, Any]]:
        with self._status_lock:
            items = sorted(self._statuses.items())
        return [status.as_dict() for _, status in items]

    def _update_status(
        self,
        service: DirectedService,
        candidates: list[Candidate],
        leader: LeaderRecord | None,
        error: str | None,
    ) -> ServiceStatus:
        phase = Phase.STABLE if leader is not None else Phase.ELECTING
        with self._status_lock:
            status = self._statuses.get(service.key)
            if status is None:
                status = ServiceStatus(namespace=service.namespace, name=service.name)
                self._statuses[service.key] = status
                status.last_transition_time = self.now_fn()
            elif status.phase != phase:
                status.last_transition_time = self.now_fn()
                self.logger.info(
                    "Service %s/%s phase %s -> %s", service.namespace, service.name, status.phase, phase
                )
            status.phase = phase
            status.holder = leader.name if leader else None
            status.holder_uid = leader.uid if leader else None
            status.candidate_count = len(candidates)
            status.ready_count = sum(1 for c in candidates if c.eligible)
            status.last_error = error
            status.consecutive_errors = status.consecutive_errors + 1 if error else 0
            return replace(status)

    def _record_failure(self, namespace: str, name: str, error: str) -> None:
        with self._status_lock:
            status = self._statuses.get((namespace, name))
            if status is None:
                return
            status.last_error = error
            status.consecutive_errors += 1

    # -- reconcile ------------------------------------------------------

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        started = self.clock()
        deadline = Deadline(self.cache_update_timeout_seconds, CACHE_UPDATE_OPERATION, clock=self.clock)
        retrier = Retrier(self.retry_policy, self.metrics, namespace, name, deadline=deadline, sleep=self.sleep)

        try:
            result = self._reconcile(namespace, name, retrier, deadline)
        except ReconcileTimeoutError as exc:
            self.logger.warning("Reconcile of %s/%s timed out: %s", namespace, name, exc)
            self.metrics.record_timeout(namespace, exc.operation)
            self.metrics.record_reconciliation_error(namespace, name, "timeout")
            self._record_failure(namespace, name, str(exc))
            result = ReconcileResult(namespace, name, RESULT_ERROR, requeue=True, error=str(exc))
        except EndpointWriteError as exc:
            self.logger.error("Failed to publish routing for %s/%s: %s", namespace, name, exc)
            self.metrics.record_endpoint_write_error(namespace, name)
            self.metrics.record_reconciliation_error(namespace, name, "endpoint_write")
            self._record_failure(namespace, name, str(exc))
            result = ReconcileResult(namespace, name, RESULT_ERROR, requeue=True, error=str(exc))
        except Exception as exc:
            self.logger.exception("Reconcile of %s/%s failed", namespace, name)
            self.metrics.record_reconciliation_error(namespace, name, type(exc).__name__)
            self._record_failure(namespace, name, str(exc))
            result = ReconcileResult(namespace, name, RESULT_ERROR, requeue=True, error=str(exc))

        self.metrics.record_reconciliation(namespace, name, result.result)
        self.metrics.record_reconciliation_duration(
            namespace, name, result.result, self.clock() - started
        )
        if result.result != RESULT_SKIPPED:
            self.collect_resource_totals(namespace)
        return result

    def _reconcile(
        self, namespace: str, name: str, retrier: Retrier, deadline: Deadline
    ) -> ReconcileResult:
        try:
            obj = retrier.call(
                "get_service",
                lambda attempt: self.core_api.read_namespaced_service(
                    name=name, namespace=namespace, _request_timeout=attempt.timeout_seconds
                ),
            )
        except Exception as exc:
            if not is_not_found(exc):
                raise
            self._forget(namespace, name, retrier)
            return ReconcileResult(namespace, name, RESULT_CLEANED_UP)

        if is_generated_service(obj):
            return ReconcileResult(namespace, name, RESULT_SKIPPED)

        service = DirectedService.from_service(obj)
        if not service.enabled:
            self._forget(namespace, name, retrier)
            return ReconcileResult(namespace, name, RESULT_CLEANED_UP)

        candidates = self._candidates(service, retrier)
        entry, found = self.cache.get(namespace, name)
        previous = entry.leader if found and entry is not None else None
        if not found:
            previous = self.writer.read_current_leader(service, retrier)
            if previous is not None:
                self.logger.info(
                    "Recovered leader %s for %s/%s from existing endpoint slice",
                    previous.name,
                    namespace,
                    name,
                )

        leader, error, notice = self._resolve(service, candidates, previous, retrier)
        decision = RoutingDecision(
            service=service, leader=leader, service_ports=service.ports, reason=error
        )
        fingerprint = decision.fingerprint()

        wrote = False
        if found and entry is not None and entry.fingerprint == fingerprint:
            self.metrics.record_cache_hit(namespace)
        else:
            self.metrics.record_cache_miss(namespace)
            created = self.writer.apply(decision, retrier)
            wrote = True
            self._emit_events(decision, candidates, previous, created, notice)
            deadline.check()
            if not self.cache.put(namespace, name, self.cache.new_entry(leader, fingerprint)):
                self.logger.debug("Decision for %s/%s not cached", namespace, name)
            self.metrics.record_cache_size(namespace, self.cache.size(namespace))

        self._update_status(service, candidates, leader, error)
        self._record_leader_gauges(service, candidates, leader)
        return ReconcileResult(
            namespace,
            name,
            RESULT_ERROR if error else RESULT_SUCCESS,
            decision=decision,
            wrote=wrote,
            requeue=error is not None,
            error=error,
        )

    def _candidates(self, service: DirectedService, retrier: Retrier) -> list[Candidate]:
        if not service.selector:
            # An empty selector would match every pod in the namespace.
            self.logger.warning(
                "Service %s/%s has no pod selector; routing no endpoints",
                service.namespace,
                service.name,
            )
            return []
        pods = retrier.call(
            "list_pods",
            lambda attempt: self.core_api.list_namespaced_pod(
                namespace=service.namespace,
                label_selector=_selector_string(service.selector),
                _request_timeout=attempt.timeout_seconds,
            ),
        )
        return [Candidate.from_pod(pod) for pod in getattr(pods, "items", None) or []]

    def _resolve(
        self,
        service: DirectedService,
        candidates: list[Candidate],
        previous: LeaderRecord | None,
        retrier: Retrier,
    ) -> tuple[LeaderRecord | None, str | None, tuple[str, str] | None]:
        """Resolve leader and ports; logical failures become ``(None, reason, notice)``.

        *notice* is a ``(reason, message)`` pair for a warning Event, or None.
        """
        namespace, name = service.key
        self.metrics.record_leader_selection_attempt(namespace, name)
        try:
            resolution = self.resolver.resolve(service, candidates, previous, fetch=retrier.call)
        except LeadershipError as exc:
            self.logger.warning("Cannot resolve leader for %s/%s: %s", namespace, name, exc)
            self.metrics.record_pods_available(namespace, name, sum(1 for c in candidates if c.eligible))
            self.metrics.record_reconciliation_error(namespace, name, "leadership")
            return None, str(exc), None

        self.metrics.record_pods_available(namespace, name, resolution.eligible)
        if resolution.sticky == STICKY_HIT:
            self.metrics.record_sticky_hit(namespace, name)
        elif resolution.sticky == STICKY_MISS:
            self.metrics.record_sticky_miss(namespace, name)
        if resolution.failover_reason is not None and previous is not None:
            self.metrics.record_failover(namespace, name, resolution.failover_reason)
            self.logger.info(
                "Leader %s of %s/%s dropped (%s); new leader %s",
                previous.name,
                namespace,
                name,
                resolution.failover_reason,
                resolution.leader.name if resolution.leader else "none",
            )

        leader = resolution.leader
        if leader is None:
            return None, None, None

        pod = next(c for c in candidates if c.uid == leader.uid)
        try:
            ports = resolve_service_ports(service.ports, pod)
        except PortResolutionError as exc:
            self.logger.warning(
                "Cannot resolve ports for %s/%s on pod %s: %s", namespace, name, pod.name, exc
            )
            self.metrics.record_port_resolution_failure(namespace, name, exc.port)
            named = bool(exc.port) and not exc.port.isdigit()
            reason = REASON_NAMED_PORT_RESOLUTION_FAILED if named else REASON_PORT_RESOLUTION_FAILED
            return None, str(exc), (reason, f"Cannot route to leader pod {pod.name}: {exc}")
        return replace(leader, ports=ports), None, None

    def _emit_events(
        self,
        decision: RoutingDecision,
        candidates: list[Candidate],
        previous: LeaderRecord | None,
        created: bool,
        notice: tuple[str, str] | None,
    ) -> None:
        service = decision.service
        leader = decision.leader
        target = f"{service.namespace}/{service.leader_service_name}"
        if created:
            self.events.normal(service, REASON_LEADER_SERVICE_CREATED, f"Created leader service {target}")
            holder = f"leader {leader.name}" if leader is not None else "no current leader"
            self.events.normal(
                service, REASON_LEADER_ROUTING_AVAILABLE, f"Routing available at {target} with {holder}"
            )

        if notice is not None:
            self.events.warning(service, *notice)
        elif leader is None and decision.reason is None:
            if not service.selector:
                self.events.warning(service, REASON_INVALID_SERVICE, "Service has no pod selector")
            elif not candidates:
                self.events.warning(
                    service,
                    REASON_NO_PODS_FOUND,
                    f"No pods match selector {_selector_string(service.selector)}",
                )
            elif not any(c.eligible for c in candidates):
                self.events.warning(
                    service,
                    REASON_NO_READY_PODS,
                    f"None of {len(candidates)} matching pod(s) are ready; routing no endpoints",
                )
        elif leader is not None and previous is not None and previous.uid != leader.uid:
            self.events.normal(
                service,
                REASON_LEADER_CHANGED,
                f"Leader changed from {previous.name} to {leader.name}. Routing available at {target}",
            )

    def _record_leader_gauges(
        self, service: DirectedService, candidates: list[Candidate], leader: LeaderRecord | None
    ) -> None:
        namespace, name = service.key
        self.metrics.record_leader_stable(namespace, name, leader is not None)
        self.metrics.record_without_endpoints(namespace, name, leader is None)
        if leader is None:
            self.metrics.reset_leader_duration(namespace, name)
            return
        now = self.now_fn()
        self.metrics.record_leader_duration(
            namespace, name, max(0.0, (now - leader.started_at).total_seconds())
        )
        pod = next((c for c in candidates if c.uid == leader.uid), None)
        if pod is not None and pod.created_at is not None:
            self.metrics.record_leader_pod_age(
                namespace, name, max(0.0, (now - pod.created_at).total_seconds())
            )

    def _forget(self, namespace: str, name: str, retrier: Retrier) -> None:
        """Remove generated objects and all state for a Service that is no longer directed."""
        self.writer.delete_managed(namespace, name, retrier)
        self.cache.evict(namespace, name)
        self.metrics.record_cache_size(namespace, self.cache.size(namespace))
        self.metrics.forget_service(namespace, name)
        with self._status_lock:
            self._statuses.pop((namespace, name), None)

    # -- drift and housekeeping -----------------------------------------

    def invalidate(self, namespace: str, name: str) -> None:
        """Drop the cached decision so the next reconcile rewrites routing."""
        self.cache.evict(namespace, name)

    def observed_slice_drifted(self, namespace: str, name: str, endpoint_slice: Any) -> bool:
        """Return True (and invalidate the cache) when *endpoint_slice* disagrees with the cache.

        Endpoints and ports are compared with the cached decision, so our own
        writes are not reported.  Without a cached decision there is nothing
        to compare against and any change is treated as drift.
        """
        entry, found = self.cache.get(namespace, name)
        if not found or entry is None:
            self.logger.info(
                "Endpoint slice for %s/%s changed with no cached decision; reconciling",
                namespace,
                name,
            )
            return True
        observed_endpoints = {
            (getattr(ep.target_ref, "uid", None), tuple(ep.addresses or []))
            for ep in getattr(endpoint_slice, "endpoints", None) or []
            if getattr(ep, "target_ref", None) is not None
        }
        observed_ports = {
            (getattr(p, "name", None), getattr(p, "port", None), getattr(p, "protocol", None))
            for p in getattr(endpoint_slice, "ports", None) or []
        }
        leader = entry.leader
        if leader is None:
            expected_endpoints: set[tuple[Any, ...]] = set()
            expected_ports: set[tuple[Any, ...]] = set()
        else:
            expected_endpoints = {(leader.uid, (leader.pod_ip,))}
            expected_ports = {(p.name, p.target_port, p.protocol) for p in leader.ports}
        if observed_endpoints == expected_endpoints and observed_ports == expected_ports:
            return False
        self.logger.info("Endpoint slice for %s/%s drifted; rewriting", namespace, name)
        self.invalidate(namespace, name)
        return True

    def collect_resource_totals(self, namespace: str, force: bool = False) -> None:
        """Refresh the managed-object gauges for *namespace* under the metrics deadline.

        Collection runs at most once per ``resource_totals_interval_seconds``
        per namespace.  A timeout or API failure is counted and logged; it
        never fails the reconcile that triggered it.
        """
        now = self.clock()
        with self._totals_lock:
            last = self._totals_collected_at.get(namespace)
            if not force and last is not None and now - last < self.resource_totals_interval_seconds:
                return
            self._totals_collected_at[namespace] = now

        deadline = Deadline(
            self.metrics_collection_timeout_seconds, METRICS_COLLECTION_OPERATION, clock=self.clock
        )
        retrier = Retrier(
            self.retry_policy, self.metrics, namespace, "", deadline=deadline, sleep=self.sleep
        )
        try:
            services, slices = self.writer.count_managed(namespace, retrier)
        except ReconcileTimeoutError as exc:
            self.logger.warning("Metrics collection for namespace %s timed out: %s", namespace, exc)
            self.metrics.record_timeout(namespace, METRICS_COLLECTION_OPERATION)
            return
        except Exception:
            self.logger.warning(
                "Metrics collection for namespace %s failed", namespace, exc_info=True
            )
            return
        self.metrics.record_resource_totals(namespace, services, slices)
