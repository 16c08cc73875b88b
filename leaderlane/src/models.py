from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from hashlib import sha256
from typing import Any

from leaderlane.src.metadata import (
    ANNOTATION_ENABLED,
    ANNOTATION_LEADER_SERVICE_NAME,
    ANNOTATION_LEASE_NAME,
    ANNOTATION_MIN_READY_DURATION,
    ANNOTATION_STICKY,
    LEADER_SERVICE_SUFFIX,
)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")


class Phase(StrEnum):
    ELECTING = "Electing"
    STABLE = "Stable"


def parse_duration(raw: str | None) -> timedelta:
    """Parse a Go-style duration (``30s``, ``1m30s``, ``500ms``) or bare seconds.

    Invalid values yield a zero duration so a typo in an annotation disables
    the option rather than breaking reconciliation.
    """
    if raw is None:
        return timedelta(0)
    value = raw.strip()
    if not value:
        return timedelta(0)
    if value.isdigit():
        return timedelta(seconds=int(value))

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != position:
            return timedelta(0)
        amount, unit = float(match.group(1)), match.group(2)
        total += amount * {"ms": 0.001, "s": 1, "m": 60, "h": 3600}[unit]
        position = match.end()
    if position != len(value):
        return timedelta(0)
    return timedelta(seconds=total)


def utc_now() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@dataclass(frozen=True)
class ServicePortSpec:
    name: str | None
    port: int
    target_port: int | str | None
    protocol: str = "TCP"


@dataclass(frozen=True)
class DirectedService:
    """A Service as seen by the director, reduced to the fields routing depends on."""

    namespace: str
    name: str
    uid: str
    selector: dict[str, str]
    ports: tuple[ServicePortSpec, ...]
    enabled: bool
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    service_type: str | None = None
    cluster_ip: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    @property
    def leader_service_name(self) -> str:
        custom = self.annotations.get(ANNOTATION_LEADER_SERVICE_NAME, "").strip()
        return custom or f"{self.name}{LEADER_SERVICE_SUFFIX}"

    @property
    def endpoint_slice_name(self) -> str:
        return self.leader_service_name

    @property
    def sticky(self) -> bool:
        return self.annotations.get(ANNOTATION_STICKY, "true").strip().lower() != "false"

    @property
    def min_ready_duration(self) -> timedelta:
        return parse_duration(self.annotations.get(ANNOTATION_MIN_READY_DURATION))

    @property
    def lease_name(self) -> str:
        return self.annotations.get(ANNOTATION_LEASE_NAME, "").strip() or self.name

    @classmethod
    def from_service(cls, service: Any) -> DirectedService:
        metadata = getattr(service, "metadata", None)
        spec = getattr(service, "spec", None)
        annotations = dict(getattr(metadata, "annotations", None) or {})
        ports = tuple(
            ServicePortSpec(
                name=getattr(port, "name", None) or None,
                port=int(getattr(port, "port", 0) or 0),
                target_port=_normalize_target_port(getattr(port, "target_port", None)),
                protocol=getattr(port, "protocol", None) or "TCP",
            )
            for port in (getattr(spec, "ports", None) or [])
        )
        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
            uid=getattr(metadata, "uid", None) or "",
            selector=dict(getattr(spec, "selector", None) or {}),
            ports=ports,
            enabled=annotations.get(ANNOTATION_ENABLED, "").strip().lower() == "true",
            labels=dict(getattr(metadata, "labels", None) or {}),
            annotations=annotations,
            service_type=getattr(spec, "type", None),
            cluster_ip=getattr(spec, "cluster_ip", None),
        )


def _normalize_target_port(raw: Any) -> int | str | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if text.isdigit():
        return int(text)
    return text


@dataclass(frozen=True)
class ContainerPort:
    name: str | None
    port: int
    protocol: str = "TCP"


@dataclass(frozen=True)
class Candidate:
    """A pod that matches a DirectedService's selector."""

    namespace: str
    name: str
    uid: str
    pod_ip: str | None
    node_name: str | None
    phase: str | None
    ready: bool
    ready_since: datetime | None
    created_at: datetime | None
    deleting: bool
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    container_ports: tuple[ContainerPort, ...] = ()

    @property
    def eligible(self) -> bool:
        """Ready, running, addressable and not terminating."""
        return self.ready and not self.deleting and bool(self.pod_ip)

    @classmethod
    def from_pod(cls, pod: Any) -> Candidate:
        metadata = getattr(pod, "metadata", None)
        status = getattr(pod, "status", None)
        spec = getattr(pod, "spec", None)
        phase = getattr(status, "phase", None)

        ready = False
        ready_since = None
        for condition in getattr(status, "conditions", None) or []:
            if getattr(condition, "type", None) == "Ready":
                ready = getattr(condition, "status", None) == "True"
                if ready:
                    ready_since = _aware(getattr(condition, "last_transition_time", None))
                break

        container_ports = tuple(
            ContainerPort(
                name=getattr(port, "name", None) or None,
                port=int(getattr(port, "container_port", 0) or 0),
                protocol=getattr(port, "protocol", None) or "TCP",
            )
            for container in (getattr(spec, "containers", None) or [])
            for port in (getattr(container, "ports", None) or [])
        )

        return cls(
            namespace=getattr(metadata, "namespace", None) or "",
            name=getattr(metadata, "name", None) or "",
            uid=getattr(metadata, "uid", None) or "",
            pod_ip=getattr(status, "pod_ip", None) or None,
            node_name=getattr(spec, "node_name", None) or None,
            phase=phase,
            ready=ready and phase == "Running",
            ready_since=ready_since,
            created_at=_aware(getattr(metadata, "creation_timestamp", None)),
            deleting=getattr(metadata, "deletion_timestamp", None) is not None,
            labels=dict(getattr(metadata, "labels", None) or {}),
            annotations=dict(getattr(metadata, "annotations", None) or {}),
            container_ports=container_ports,
        )


@dataclass(frozen=True)
class ResolvedPort:
    """A Service port whose target has been resolved against the leader pod."""

    name: str | None
    port: int
    target_port: int
    protocol: str = "TCP"


@dataclass(frozen=True)
class LeaderRecord:
    """Resolved leadership for one DirectedService during one reconcile cycle."""

    name: str
    uid: str
    namespace: str
    started_at: datetime
    pod_ip: str | None = None
    node_name: str | None = None
    ports: tuple[ResolvedPort, ...] = ()

    def same_holder(self, other: LeaderRecord | None) -> bool:
        return other is not None and other.uid == self.uid


@dataclass(frozen=True)
class RoutingDecision:
    """What the EndpointSlice writer publishes for one DirectedService.

    ``leader`` is ``None`` when no leader is routable; such a decision is
    still written as an EndpointSlice without endpoints.  ``service_ports``
    are mirrored onto the selector-less leader Service; ``leader.ports``
    carry the numeric ports published on the endpoint.
    """

    service: DirectedService
    leader: LeaderRecord | None
    service_ports: tuple[ServicePortSpec, ...] = ()
    reason: str | None = None

    @property
    def namespace(self) -> str:
        return self.service.namespace

    @property
    def slice_name(self) -> str:
        return self.service.endpoint_slice_name

    @property
    def phase(self) -> Phase:
        return Phase.STABLE if self.leader is not None else Phase.ELECTING

    @property
    def address_type(self) -> str:
        if self.leader is not None and self.leader.pod_ip and ":" in self.leader.pod_ip:
            return "IPv6"
        return "IPv4"

    def fingerprint(self) -> str:
        """Return a SHA-256 digest of everything that ends up in the cluster.

        Leadership start times are excluded so a sticky leader keeps the same
        fingerprint across cycles.
        """
        leader = self.leader
        payload = {
            "owner": self.service.uid,
            "slice": self.slice_name,
            "addressType": self.address_type,
            "servicePorts": [
                [p.name, p.port, p.target_port, p.protocol] for p in self.service_ports
            ],
            "endpoint": None
            if leader is None
            else {
                "ip": leader.pod_ip,
                "name": leader.name,
                "uid": leader.uid,
                "node": leader.node_name,
                "ports": [[p.name, p.target_port, p.protocol] for p in leader.ports],
            },
        }
        stable_payload = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return sha256(stable_payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class DecisionCacheEntry:
    leader: LeaderRecord | None
    fingerprint: str
    updated_at: float


@dataclass
class ServiceStatus:
    """Operator-facing status of one DirectedService."""

    namespace: str
    name: str
    phase: Phase = Phase.ELECTING
    holder: str | None = None
    holder_uid: str | None = None
    candidate_count: int = 0
    ready_count: int = 0
    last_transition_time: datetime | None = None
    last_error: str | None = None
    consecutive_errors: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "phase": str(self.phase),
            "holder": self.holder,
            "holderUID": self.holder_uid,
            "candidates": self.candidate_count,
            "readyCandidates": self.ready_count,
            "lastTransitionTime": (
                self.last_transition_time.isoformat().replace("+00:00", "Z")
                if self.last_transition_time
                else None
            ),
            "lastError": self.last_error,
            "consecutiveErrors": self.consecutive_errors,
        }
