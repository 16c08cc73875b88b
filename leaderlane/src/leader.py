from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from leaderlane.src.config import ConfigError, LeaderElectionConfig
from leaderlane.src.metrics import METRICS, DirectorMetrics
from leaderlane.src.models import utc_now

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Elect the single active director replica through a ``coordination.k8s.io/v1`` Lease.

    Only the holder of the Lease runs watches and writes EndpointSlices;
    other replicas stay on standby.  Each cycle (every
    ``retry_period_seconds``):

    1. Read the Lease; create it and become active when it does not exist.
    2. Renew it when this replica is the holder.
    3. Take it over once the holder has not renewed for
       ``leaseDurationSeconds``.
    4. Treat ``409 Conflict`` as losing the race for this cycle.

    An active replica that cannot renew for ``renew_deadline_seconds`` steps
    down and ``on_stopped_leading`` is invoked so the controller stops before
    another replica can take over.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        metrics: DirectorMetrics = METRICS,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        if lease_duration_seconds < 1:
            raise ValueError("lease_duration_seconds must be >= 1")
        if renew_deadline_seconds < 1:
            raise ValueError("renew_deadline_seconds must be >= 1")
        if retry_period_seconds < 0:
            raise ValueError("retry_period_seconds must be >= 0")
        if renew_deadline_seconds >= lease_duration_seconds:
            raise ValueError("renew_deadline_seconds must be smaller than lease_duration_seconds")
        if retry_period_seconds >= renew_deadline_seconds:
            raise ValueError("retry_period_seconds must be smaller than renew_deadline_seconds")

        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.metrics = metrics
        self.now_fn = now_fn
        self._is_leader = False

    @classmethod
    def from_config(
        cls, coordination_api: CoordinationV1Api, config: LeaderElectionConfig, identity: str
    ) -> LeaseLeaderElector:
        return cls(
            coordination_api=coordination_api,
            namespace=config.namespace,
            lease_name=config.lease_name,
            identity=identity,
            lease_duration_seconds=config.lease_duration_seconds,
            renew_deadline_seconds=config.renew_deadline_seconds,
            retry_period_seconds=config.retry_period_seconds,
        )

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _try_acquire_or_renew(self) -> bool:
        """Attempt a single acquire-or-renew cycle.  Returns True on success."""
        now = self.now_fn()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create_lease(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec
        if spec is None or not spec.holder_identity or spec.holder_identity == self.identity:
            return self._update_lease(lease, now)

        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        if spec.renew_time is not None:
            renewed = spec.renew_time if spec.renew_time.tzinfo else spec.renew_time.replace(tzinfo=UTC)
            if (now - renewed).total_seconds() < duration:
                return False

        LOGGER.info(
            "Lease %s held by %s expired; taking over", self.lease_name, spec.holder_identity
        )
        return self._update_lease(lease, now)

    def _create_lease(self, now: datetime) -> bool:
        """Create the Lease with this replica as holder; False when another replica won."""
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
                lease_transitions=0,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s already exists, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        LOGGER.info("Acquired controller lease %s", self.lease_name)
        return True

    def _update_lease(self, lease: V1Lease, now: datetime) -> bool:
        """Renew the Lease, or take it over and bump ``leaseTransitions``."""
        if lease.spec is None:
            lease.spec = V1LeaseSpec()
        spec = lease.spec
        taking_over = spec.holder_identity != self.identity
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        if taking_over or spec.acquire_time is None:
            spec.acquire_time = now
        if taking_over:
            spec.lease_transitions = (spec.lease_transitions or 0) + 1
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name,
                namespace=self.namespace,
                body=lease,
            )
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s update conflict, will retry", self.lease_name)
            else:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def _release_lease(self) -> None:
        """Clear holderIdentity so a standby replica can take over immediately."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released controller lease %s", self.lease_name)
        except Exception:
            LOGGER.warning("Failed to release controller lease %s", self.lease_name, exc_info=True)

    def _step_down(self, transition: str, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        self.metrics.controller_leader_state.set(0)
        self.metrics.controller_leader_transitions_total.labels(transition=transition).inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Block until *stop_event*, invoking the callbacks as leadership changes."""
        LOGGER.info(
            "Starting controller election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        acquire_wait_started = time.monotonic()
        last_renew_success = acquire_wait_started
        self.metrics.controller_leader_state.set(0)

        while not stop_event.is_set():
            try:
                acquired = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in controller election cycle")
                acquired = False

            if acquired and not self._is_leader:
                self._is_leader = True
                LOGGER.info("Became active controller (identity=%s)", self.identity)
                acquired_at = time.monotonic()
                last_renew_success = acquired_at
                self.metrics.controller_leader_state.set(1)
                self.metrics.controller_leader_transitions_total.labels(transition="acquired").inc()
                self.metrics.controller_leader_acquire_latency_seconds.observe(
                    acquired_at - acquire_wait_started
                )
                on_started_leading()
            elif acquired:
                last_renew_success = time.monotonic()
            elif self._is_leader:
                elapsed = time.monotonic() - last_renew_success
                if elapsed < self.renew_deadline_seconds:
                    LOGGER.warning(
                        "Lease renewal failed; staying active for up to %ss (elapsed %.2fs)",
                        self.renew_deadline_seconds,
                        elapsed,
                    )
                else:
                    LOGGER.warning("Lost controller lease after %.2fs without renewal", elapsed)
                    acquire_wait_started = time.monotonic()
                    self._step_down("lost", on_stopped_leading)
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._step_down("released", on_stopped_leading)


def default_identity(env: Mapping[str, str] | None = None) -> str:
    """Return this replica's election identity: ``<pod-name>`` or ``<pod-name>-<pod-uid>``.

    The pod name comes from ``POD_NAME`` (downward API) or ``HOSTNAME``.
    Raises :class:`ConfigError` when neither is set, since replicas without
    distinct identities could both believe they are active.
    """
    values = env if env is not None else os.environ
    name = (values.get("POD_NAME") or values.get("HOSTNAME") or "").strip()
    if not name:
        raise ConfigError(
            "Cannot determine controller identity; set POD_NAME, HOSTNAME "
            "or LEADER_ELECTION_IDENTITY"
        )
    uid = (values.get("POD_UID") or "").strip()
    return f"{name}-{uid}" if uid else name
