from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from kubernetes.client import (
    CoreV1Api,
    DiscoveryV1Api,
    DiscoveryV1EndpointPort,
    V1Endpoint,
    V1EndpointConditions,
    V1EndpointSlice,
    V1ObjectMeta,
    V1ObjectReference,
    V1OwnerReference,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)

from leaderlane.src.errors import EndpointWriteError, ReconcileTimeoutError, is_not_found
from leaderlane.src.metadata import (
    ANNOTATION_LAST_SWITCH_TIME,
    ANNOTATION_LEADER_POD_NAME,
    ANNOTATION_LEADER_POD_UID,
    ANNOTATION_LEADER_SINCE,
    ANNOTATION_PHASE,
    LABEL_ENDPOINTSLICE_MANAGED_BY,
    LABEL_MANAGED_BY,
    LABEL_SERVICE_NAME,
    LABEL_SOURCE_SERVICE,
    MANAGED_BY_VALUE,
    filter_gitops_annotations,
    managed_labels,
)
from leaderlane.src.models import DirectedService, LeaderRecord, RoutingDecision, utc_now
from leaderlane.src.retry import RetryAttempt, Retrier

LOGGER = logging.getLogger(__name__)

_LEADER_ANNOTATIONS = (ANNOTATION_LEADER_POD_NAME, ANNOTATION_LEADER_POD_UID, ANNOTATION_LEADER_SINCE)


def rfc3339(value: datetime) -> str:
    """Format *value* as a compact UTC RFC 3339 string (``2024-01-15T08:30:00Z``)."""
    aware = value if value.tzinfo else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_rfc3339(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _owner_reference(service: DirectedService) -> V1OwnerReference:
    return V1OwnerReference(
        api_version="v1",
        kind="Service",
        name=service.name,
        uid=service.uid,
        controller=True,
        block_owner_deletion=True,
    )


def _managed_selector(source_service: str) -> str:
    return f"{LABEL_MANAGED_BY}={MANAGED_BY_VALUE},{LABEL_SOURCE_SERVICE}={source_service}"


class EndpointSliceWriter:
    """Publish a :class:`RoutingDecision` to the cluster.

    Each DirectedService gets two generated objects, both owned by the
    source Service so deleting it garbage-collects them:

    * a selector-less leader Service (``<name>-leader``) mirroring the
      source ports, so Kubernetes never adds endpoints of its own;
    * an EndpointSlice of the same name listing zero or one endpoint.

    Writes are read-modify-replace with the object's ``resourceVersion``.  A
    concurrent writer causes a ``409 Conflict``, which the retrier treats as
    transient: the next attempt re-reads and reapplies.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        discovery_api: DiscoveryV1Api,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.core_api = core_api
        self.discovery_api = discovery_api
        self.logger = logger or LOGGER
        self.now_fn = now_fn

    def apply(self, decision: RoutingDecision, retrier: Retrier) -> bool:
        """Create or update the leader Service and EndpointSlice for *decision*.

        Returns True when the leader Service did not exist and was created.

        Raises :class:`EndpointWriteError` when a write fails permanently or
        exhausts its attempts, and :class:`ReconcileTimeoutError` when the
        retrier's deadline expires first.
        """
        created = self._write(
            retrier,
            "apply_leader_service",
            lambda attempt: self._apply_leader_service(decision, attempt),
        )
        self._write(
            retrier,
            "apply_endpointslice",
            lambda attempt: self._apply_endpoint_slice(decision, attempt),
        )
        return bool(created)

    @staticmethod
    def _write(retrier: Retrier, operation: str, fn: Callable[[RetryAttempt], Any]) -> Any:
        outcome = retrier.run(operation, fn)
        if outcome.error is None:
            return outcome.value
        if isinstance(outcome.error, ReconcileTimeoutError):
            raise outcome.error
        raise EndpointWriteError(operation, outcome.attempts, outcome.error) from outcome.error

    # -- leader Service -------------------------------------------------

    def _leader_service_ports(
        self, decision: RoutingDecision, existing: list[Any] | None
    ) -> list[V1ServicePort]:
        node_ports = {
            (getattr(p, "name", None), getattr(p, "port", None)): getattr(p, "node_port", None)
            for p in existing or []
        }
        resolved = {
            (p.name, p.port): p.target_port for p in (decision.leader.ports if decision.leader else ())
        }
        ports = []
        for port in decision.service_ports:
            target = resolved.get((port.name, port.port), port.target_port)
            ports.append(
                V1ServicePort(
                    name=port.name,
                    port=port.port,
                    target_port=target if target is not None else port.port,
                    protocol=port.protocol,
                    node_port=node_ports.get((port.name, port.port)),
                )
            )
        return ports

    def _leader_annotations(
        self, decision: RoutingDecision, current: dict[str, str] | None
    ) -> dict[str, str]:
        annotations = dict(current or {})
        annotations[ANNOTATION_PHASE] = str(decision.phase)
        leader = decision.leader
        if leader is None:
            for key in _LEADER_ANNOTATIONS:
                annotations.pop(key, None)
            return annotations

        if annotations.get(ANNOTATION_LEADER_POD_UID) != leader.uid:
            annotations[ANNOTATION_LAST_SWITCH_TIME] = rfc3339(self.now_fn())
        annotations[ANNOTATION_LEADER_POD_NAME] = leader.name
        annotations[ANNOTATION_LEADER_POD_UID] = leader.uid
        annotations[ANNOTATION_LEADER_SINCE] = rfc3339(leader.started_at)
        return annotations

    @staticmethod
    def _service_type(service: DirectedService) -> str:
        if service.cluster_ip == "None" or not service.service_type:
            return "ClusterIP"
        if service.service_type == "ExternalName":
            return "ClusterIP"
        return service.service_type

    def _apply_leader_service(self, decision: RoutingDecision, attempt: RetryAttempt) -> bool:
        service = decision.service
        name = service.leader_service_name
        try:
            existing = self.core_api.read_namespaced_service(
                name=name,
                namespace=service.namespace,
                _request_timeout=attempt.timeout_seconds,
            )
        except Exception as exc:
            if not is_not_found(exc):
                raise
            existing = None

        if existing is None:
            body = V1Service(
                api_version="v1",
                kind="Service",
                metadata=V1ObjectMeta(
                    name=name,
                    namespace=service.namespace,
                    labels=managed_labels(service.name, service.labels),
                    annotations=self._leader_annotations(
                        decision, filter_gitops_annotations(service.annotations)
                    ),
                    owner_references=[_owner_reference(service)],
                ),
                spec=V1ServiceSpec(
                    selector=None,
                    type=self._service_type(service),
                    ports=self._leader_service_ports(decision, None),
                ),
            )
            self.core_api.create_namespaced_service(
                namespace=service.namespace,
                body=body,
                _request_timeout=attempt.timeout_seconds,
            )
            self.logger.info("Created leader service %s/%s", service.namespace, name)
            return True

        metadata = existing.metadata
        metadata.labels = {**(metadata.labels or {}), **managed_labels(service.name)}
        metadata.annotations = self._leader_annotations(decision, metadata.annotations)
        spec = existing.spec
        spec.selector = None
        spec.type = self._service_type(service)
        spec.ports = self._leader_service_ports(decision, spec.ports)
        self.core_api.replace_namespaced_service(
            name=name,
            namespace=service.namespace,
            body=existing,
            _request_timeout=attempt.timeout_seconds,
        )
        return False

    # -- EndpointSlice --------------------------------------------------

    @staticmethod
    def _endpoints(decision: RoutingDecision) -> list[V1Endpoint]:
        leader = decision.leader
        if leader is None or not leader.pod_ip:
            return []
        return [
            V1Endpoint(
                addresses=[leader.pod_ip],
                conditions=V1EndpointConditions(ready=True, serving=True, terminating=False),
                node_name=leader.node_name,
                target_ref=V1ObjectReference(
                    kind="Pod",
                    namespace=leader.namespace,
                    name=leader.name,
                    uid=leader.uid,
                ),
            )
        ]

    @staticmethod
    def _endpoint_ports(decision: RoutingDecision) -> list[DiscoveryV1EndpointPort]:
        if decision.leader is None:
            return []
        return [
            DiscoveryV1EndpointPort(name=p.name, port=p.target_port, protocol=p.protocol)
            for p in decision.leader.ports
        ]

    def _slice_annotations(self, decision: RoutingDecision, current: dict[str, str] | None) -> dict[str, str]:
        annotations = dict(current or {})
        if decision.leader is None:
            annotations.pop(ANNOTATION_LEADER_SINCE, None)
        else:
            annotations[ANNOTATION_LEADER_SINCE] = rfc3339(decision.leader.started_at)
        return annotations

    def _slice_labels(self, service: DirectedService) -> dict[str, str]:
        labels = managed_labels(service.name, service.labels)
        labels[LABEL_SERVICE_NAME] = service.leader_service_name
        labels[LABEL_ENDPOINTSLICE_MANAGED_BY] = MANAGED_BY_VALUE
        return labels

    def _create_slice(self, decision: RoutingDecision, attempt: RetryAttempt) -> None:
        service = decision.service
        body = V1EndpointSlice(
            api_version="discovery.k8s.io/v1",
            kind="EndpointSlice",
            metadata=V1ObjectMeta(
                name=decision.slice_name,
                namespace=service.namespace,
                labels=self._slice_labels(service),
                annotations=self._slice_annotations(decision, None),
                owner_references=[_owner_reference(service)],
            ),
            address_type=decision.address_type,
            endpoints=self._endpoints(decision),
            ports=self._endpoint_ports(decision),
        )
        self.discovery_api.create_namespaced_endpoint_slice(
            namespace=service.namespace,
            body=body,
            _request_timeout=attempt.timeout_seconds,
        )
        self.logger.info(
            "Created endpoint slice %s/%s for leader %s",
            service.namespace,
            decision.slice_name,
            decision.leader.name if decision.leader else "none",
        )

    def _apply_endpoint_slice(self, decision: RoutingDecision, attempt: RetryAttempt) -> None:
        service = decision.service
        try:
            existing = self.discovery_api.read_namespaced_endpoint_slice(
                name=decision.slice_name,
                namespace=service.namespace,
                _request_timeout=attempt.timeout_seconds,
            )
        except Exception as exc:
            if not is_not_found(exc):
                raise
            self._create_slice(decision, attempt)
            return

        if existing.address_type != decision.address_type:
            # addressType is immutable; switching IP family needs a new object.
            self.discovery_api.delete_namespaced_endpoint_slice(
                name=decision.slice_name,
                namespace=service.namespace,
                _request_timeout=attempt.timeout_seconds,
            )
            self._create_slice(decision, attempt)
            return

        metadata = existing.metadata
        metadata.labels = {**(metadata.labels or {}), **self._slice_labels(service)}
        metadata.annotations = self._slice_annotations(decision, metadata.annotations)
        if not metadata.owner_references:
            metadata.owner_references = [_owner_reference(service)]
        existing.endpoints = self._endpoints(decision)
        existing.ports = self._endpoint_ports(decision)
        self.discovery_api.replace_namespaced_endpoint_slice(
            name=decision.slice_name,
            namespace=service.namespace,
            body=existing,
            _request_timeout=attempt.timeout_seconds,
        )
        self.logger.debug(
            "Updated endpoint slice %s/%s for leader %s",
            service.namespace,
            decision.slice_name,
            decision.leader.name if decision.leader else "none",
        )

    # -- reads and cleanup ----------------------------------------------

    def read_current_leader(self, service: DirectedService, retrier: Retrier) -> LeaderRecord | None:
        """Recover the routed leader from the existing EndpointSlice.

        Used when the decision cache has no entry (e.g. after a controller
        restart) so a healthy leader is kept rather than re-elected.
        """
        try:
            current = retrier.call(
                "get_endpointslice",
                lambda attempt: self.discovery_api.read_namespaced_endpoint_slice(
                    name=service.endpoint_slice_name,
                    namespace=service.namespace,
                    _request_timeout=attempt.timeout_seconds,
                ),
            )
        except Exception as exc:
            if is_not_found(exc):
                return None
            raise

        annotations = getattr(getattr(current, "metadata", None), "annotations", None) or {}
        for endpoint in getattr(current, "endpoints", None) or []:
            ref = getattr(endpoint, "target_ref", None)
            if ref is None or getattr(ref, "kind", None) != "Pod" or not getattr(ref, "uid", None):
                continue
            addresses = getattr(endpoint, "addresses", None) or []
            return LeaderRecord(
                name=ref.name,
                uid=ref.uid,
                namespace=getattr(ref, "namespace", None) or service.namespace,
                started_at=parse_rfc3339(annotations.get(ANNOTATION_LEADER_SINCE)) or self.now_fn(),
                pod_ip=addresses[0] if addresses else None,
                node_name=getattr(endpoint, "node_name", None),
            )
        return None

    def delete_managed(self, namespace: str, source_service: str, retrier: Retrier) -> int:
        """Delete every leader Service and EndpointSlice generated for *source_service*.

        Objects are found by label so cleanup works even after the source
        Service (and its leader-service-name annotation) is gone.
        """
        selector = _managed_selector(source_service)
        deleted = 0

        services = retrier.call(
            "list_leader_services_cleanup",
            lambda attempt: self.core_api.list_namespaced_service(
                namespace=namespace,
                label_selector=selector,
                _request_timeout=attempt.timeout_seconds,
            ),
        )
        for item in getattr(services, "items", None) or []:
            deleted += self._delete(
                retrier,
                "delete_leader_service",
                lambda attempt, name=item.metadata.name: self.core_api.delete_namespaced_service(
                    name=name, namespace=namespace, _request_timeout=attempt.timeout_seconds
                ),
            )

        slices = retrier.call(
            "list_endpointslices_cleanup",
            lambda attempt: self.discovery_api.list_namespaced_endpoint_slice(
                namespace=namespace,
                label_selector=selector,
                _request_timeout=attempt.timeout_seconds,
            ),
        )
        for item in getattr(slices, "items", None) or []:
            deleted += self._delete(
                retrier,
                "delete_endpointslice",
                lambda attempt, name=item.metadata.name: (
                    self.discovery_api.delete_namespaced_endpoint_slice(
                        name=name, namespace=namespace, _request_timeout=attempt.timeout_seconds
                    )
                ),
            )

        if deleted:
            self.logger.info(
                "Deleted %d generated object(s) for %s/%s", deleted, namespace, source_service
            )
        return deleted

    @staticmethod
    def _delete(retrier: Retrier, operation: str, fn: Callable[[RetryAttempt], Any]) -> int:
        try:
            retrier.call(operation, fn)
        except Exception as exc:
            if is_not_found(exc):
                return 0
            raise
        return 1

    def count_managed(self, namespace: str, retrier: Retrier) -> tuple[int, int]:
        """Return the number of leader Services and EndpointSlices managed in *namespace*."""
        services = retrier.call(
            "list_leader_services_metrics",
            lambda attempt: self.core_api.list_namespaced_service(
                namespace=namespace,
                label_selector=f"{LABEL_MANAGED_BY}={MANAGED_BY_VALUE}",
                _request_timeout=attempt.timeout_seconds,
            ),
        )
        slices = retrier.call(
            "list_endpointslices_metrics",
            lambda attempt: self.discovery_api.list_namespaced_endpoint_slice(
                namespace=namespace,
                label_selector=f"{LABEL_ENDPOINTSLICE_MANAGED_BY}={MANAGED_BY_VALUE}",
                _request_timeout=attempt.timeout_seconds,
            ),
        )
        return len(getattr(services, "items", None) or []), len(getattr(slices, "items", None) or [])
