from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol, TypeVar

from kubernetes.client import CoordinationV1Api

from leaderlane.src.errors import (
    LeadershipAmbiguousError,
    MalformedLeaderIdentityError,
    is_not_found,
)
from leaderlane.src.metadata import LEADER_ROLE_KEY, LEADER_ROLE_VALUE
from leaderlane.src.models import Candidate, DirectedService, LeaderRecord, utc_now
from leaderlane.src.retry import RetryAttempt

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# Runs an API read under the caller's retry policy.
Fetch = Callable[[str, Callable[[RetryAttempt], T]], T]

# Pod name, optionally suffixed with ``-<uid>`` as written by workload electors.
_IDENTITY_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
_MAX_IDENTITY_LENGTH = 253 + 1 + 36

STICKY_HIT = "hit"
STICKY_MISS = "miss"


@dataclass(frozen=True)
class Claim:
    """A candidate that the leadership source says holds leadership."""

    candidate: Candidate
    since: datetime | None = None


class LeadershipSource(Protocol):
    """Where leadership is recorded for a DirectedService.

    ``claimants`` receives only eligible (Ready, addressable, not
    terminating) candidates and returns those that claim leadership.  A
    ``ranked`` source orders claimants by preference and may return many; an
    unranked source is expected to name at most one.
    """

    name: str
    ranked: bool

    def claimants(
        self, service: DirectedService, candidates: list[Candidate], fetch: Fetch[Any]
    ) -> list[Claim]: ...


class OldestReadySource:
    """Controller-driven selection: every eligible pod claims, oldest first."""

    name = "oldest"
    ranked = True

    def claimants(
        self, service: DirectedService, candidates: list[Candidate], fetch: Fetch[Any]
    ) -> list[Claim]:
        far_future = datetime.max.replace(tzinfo=UTC)
        ordered = sorted(candidates, key=lambda c: (c.created_at or far_future, c.name))
        return [Claim(candidate=c) for c in ordered]


class LabelSource:
    """Leadership advertised by the workload itself on a pod label or annotation.

    The workload's own elector sets ``leaderlane.io/role=leader`` on the pod
    that holds leadership.  Two pods carrying the marker at once is expected
    briefly during a handoff; stickiness resolves it when the previous leader
    is one of them, otherwise it is ambiguous.
    """

    ranked = False

    def __init__(self, key: str = LEADER_ROLE_KEY, value: str = LEADER_ROLE_VALUE) -> None:
        self.key = key
        self.value = value
        self.name = "label"

    def claimants(
        self, service: DirectedService, candidates: list[Candidate], fetch: Fetch[Any]
    ) -> list[Claim]:
        return [
            Claim(candidate=c)
            for c in candidates
            if c.labels.get(self.key) == self.value or c.annotations.get(self.key) == self.value
        ]


class LeaseSource:
    """Leadership recorded in a ``coordination.k8s.io/v1`` Lease.

    The Lease is named by the ``leaderlane.io/lease-name`` annotation
    (default: the Service name) in the Service's namespace.  Its
    ``holderIdentity`` names the leader pod either as ``<pod-name>`` or
    ``<pod-name>-<pod-uid>``.  A missing Lease, an empty holder, or a Lease
    that has not been renewed within its duration means no leader.
    """

    name = "lease"
    ranked = False

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.coordination_api = coordination_api
        self.now_fn = now_fn

    def _read_lease(self, service: DirectedService, fetch: Fetch[Any]) -> Any | None:
        try:
            return fetch(
                "get_lease",
                lambda attempt: self.coordination_api.read_namespaced_lease(
                    name=service.lease_name,
                    namespace=service.namespace,
                    _request_timeout=attempt.timeout_seconds,
                ),
            )
        except Exception as exc:
            if is_not_found(exc):
                LOGGER.debug(
                    "Lease %s/%s not found; no leader", service.namespace, service.lease_name
                )
                return None
            raise

    def _expired(self, spec: Any) -> bool:
        renew_time = getattr(spec, "renew_time", None) or getattr(spec, "acquire_time", None)
        duration = getattr(spec, "lease_duration_seconds", None)
        if renew_time is None or not duration:
            return False
        renewed = renew_time if renew_time.tzinfo else renew_time.replace(tzinfo=UTC)
        return self.now_fn() - renewed > timedelta(seconds=duration)

    def claimants(
        self, service: DirectedService, candidates: list[Candidate], fetch: Fetch[Any]
    ) -> list[Claim]:
        lease = self._read_lease(service, fetch)
        spec = getattr(lease, "spec", None)
        holder = (getattr(spec, "holder_identity", None) or "").strip()
        if not holder:
            return []
        if len(holder) > _MAX_IDENTITY_LENGTH or not _IDENTITY_PATTERN.match(holder):
            raise MalformedLeaderIdentityError(
                f"lease {service.namespace}/{service.lease_name} holder {holder!r} "
                "is not a pod identity"
            )
        if self._expired(spec):
            LOGGER.info(
                "Lease %s/%s held by %s has expired; treating as no leader",
                service.namespace,
                service.lease_name,
                holder,
            )
            return []

        acquired = getattr(spec, "acquire_time", None)
        if acquired is not None and acquired.tzinfo is None:
            acquired = acquired.replace(tzinfo=UTC)
        return [
            Claim(candidate=c, since=acquired)
            for c in candidates
            if holder in (c.name, f"{c.name}-{c.uid}")
        ]


def build_leadership_source(
    kind: str, coordination_api: CoordinationV1Api | None = None
) -> LeadershipSource:
    if kind == "oldest":
        return OldestReadySource()
    if kind == "label":
        return LabelSource()
    if kind == "lease":
        if coordination_api is None:
            raise ValueError("lease leadership source requires a CoordinationV1Api client")
        return LeaseSource(coordination_api)
    raise ValueError(f"unknown leadership source {kind!r}")


@dataclass(frozen=True)
class Resolution:
    """Outcome of one leader resolution.

    ``sticky`` is ``"hit"`` when the previous leader was kept, ``"miss"``
    when a previous leader existed but was replaced or dropped, and ``None``
    when there was no previous leader or stickiness is disabled.
    ``failover_reason`` explains why a previous leader stopped being routed.
    """

    leader: LeaderRecord | None
    eligible: int
    sticky: str | None = None
    failover_reason: str | None = None


def _departure_reason(previous: LeaderRecord, candidates: list[Candidate]) -> str:
    current = next((c for c in candidates if c.uid == previous.uid), None)
    if current is None:
        return "deleted"
    if current.deleting:
        return "terminating"
    if not current.ready:
        return "notReady"
    if not current.pod_ip:
        return "noIP"
    return "notClaiming"


class LeadershipResolver:
    """Decide which candidate pod receives traffic for a DirectedService.

    1. Only eligible candidates (Ready, addressable, not terminating) are
       passed to the leadership source.
    2. If stickiness is enabled and the previous leader still claims
       leadership it is kept, even when other pods claim too.
    3. Otherwise the source's first claimant wins, after flap damping
       (``leaderlane.io/min-ready-duration``) removes pods that have not been
       Ready long enough.  Several claimants from an unranked source are
       ambiguous and raise :class:`LeadershipAmbiguousError`.
    4. No claimant means no leader (Electing).
    """

    def __init__(
        self,
        source: LeadershipSource,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.source = source
        self.now_fn = now_fn

    def _damped(self, service: DirectedService, claims: list[Claim]) -> list[Claim]:
        min_ready = service.min_ready_duration
        if min_ready <= timedelta(0):
            return claims
        now = self.now_fn()
        kept = []
        for claim in claims:
            ready_since = claim.candidate.ready_since
            if ready_since is None or now - ready_since < min_ready:
                LOGGER.debug(
                    "Pod %s/%s not Ready for %s yet; skipping as leader",
                    claim.candidate.namespace,
                    claim.candidate.name,
                    min_ready,
                )
                continue
            kept.append(claim)
        return kept

    def resolve(
        self,
        service: DirectedService,
        candidates: list[Candidate],
        previous: LeaderRecord | None,
        fetch: Fetch[Any],
    ) -> Resolution:
        eligible = [c for c in candidates if c.eligible]
        claims = self.source.claimants(service, eligible, fetch) if eligible else []
        track_sticky = previous is not None and service.sticky

        if previous is not None and service.sticky:
            kept = next((cl for cl in claims if cl.candidate.uid == previous.uid), None)
            if kept is not None:
                return Resolution(
                    leader=self._record(kept, started_at=previous.started_at),
                    eligible=len(eligible),
                    sticky=STICKY_HIT,
                )

        selectable = self._damped(service, claims)
        if not selectable:
            return Resolution(
                leader=None,
                eligible=len(eligible),
                sticky=STICKY_MISS if track_sticky else None,
                failover_reason=(
                    _departure_reason(previous, candidates) if previous is not None else None
                ),
            )

        if len(selectable) > 1 and not self.source.ranked:
            raise LeadershipAmbiguousError([cl.candidate.name for cl in selectable])

        chosen = selectable[0]
        if previous is not None and chosen.candidate.uid == previous.uid:
            return Resolution(
                leader=self._record(chosen, started_at=previous.started_at),
                eligible=len(eligible),
            )

        reason = None
        if previous is not None:
            reason = _departure_reason(previous, candidates)
            if reason == "notClaiming" and any(
                cl.candidate.uid == previous.uid for cl in claims
            ):
                reason = "preempted"
        return Resolution(
            leader=self._record(chosen, started_at=chosen.since or self.now_fn()),
            eligible=len(eligible),
            sticky=STICKY_MISS if track_sticky else None,
            failover_reason=reason,
        )

    @staticmethod
    def _record(claim: Claim, started_at: datetime) -> LeaderRecord:
        candidate = claim.candidate
        return LeaderRecord(
            name=candidate.name,
            uid=candidate.uid,
            namespace=candidate.namespace,
            started_at=started_at,
            pod_ip=candidate.pod_ip,
            node_name=candidate.node_name,
        )
