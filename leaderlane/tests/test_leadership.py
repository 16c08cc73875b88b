from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest
from kubernetes.client.exceptions import ApiException

from leaderlane.src.errors import LeadershipAmbiguousError, MalformedLeaderIdentityError
from leaderlane.src.leadership import (
    STICKY_HIT,
    STICKY_MISS,
    LabelSource,
    LeadershipResolver,
    LeaseSource,
    OldestReadySource,
    build_leadership_source,
)
from leaderlane.src.metadata import ANNOTATION_MIN_READY_DURATION, ANNOTATION_STICKY
from leaderlane.src.models import Candidate, DirectedService, LeaderRecord
from leaderlane.src.retry import Retrier, RetryPolicy
from leaderlane.tests.fakes import (
    NOW,
    FakeCoordinationApi,
    RecordingMetrics,
    fixed_now,
    make_pod,
    make_service,
)


def _service(annotations: dict[str, str] | None = None) -> DirectedService:
    return DirectedService.from_service(make_service(annotations=annotations))


def _candidates(*pods: Any) -> list[Candidate]:
    return [Candidate.from_pod(pod) for pod in pods]


def _fetch(metrics: RecordingMetrics | None = None) -> Any:
    retrier = Retrier(
        RetryPolicy(max_attempts=3), metrics or RecordingMetrics(), "ns", "s1", sleep=lambda _: None
    )
    return retrier.call


def _previous(name: str, started_minutes_ago: int = 10) -> LeaderRecord:
    return LeaderRecord(
        name=name,
        uid=f"{name}-uid",
        namespace="ns",
        started_at=NOW - timedelta(minutes=started_minutes_ago),
    )


def _label_resolver() -> LeadershipResolver:
    return LeadershipResolver(LabelSource(), now_fn=fixed_now)


class TestLabelSource:
    def test_no_ready_candidates_resolves_to_none(self) -> None:
        candidates = _candidates(make_pod("pod-a", leader=True, ready=False))

        resolution = _label_resolver().resolve(_service(), candidates, None, _fetch())

        assert resolution.leader is None
        assert resolution.eligible == 0

    def test_single_claimant_is_leader(self) -> None:
        candidates = _candidates(
            make_pod("pod-a", leader=True, ip="10.0.0.1"), make_pod("pod-b", ip="10.0.0.2")
        )

        resolution = _label_resolver().resolve(_service(), candidates, None, _fetch())

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-a"
        assert resolution.leader.pod_ip == "10.0.0.1"
        assert resolution.leader.started_at == NOW
        assert resolution.failover_reason is None
        assert resolution.sticky is None

    def test_annotation_claim_counts(self) -> None:
        pod = make_pod("pod-a")
        pod.metadata.annotations = {"leaderlane.io/role": "leader"}

        resolution = _label_resolver().resolve(_service(), _candidates(pod), None, _fetch())

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-a"

    def test_unready_claimant_is_not_eligible(self) -> None:
        candidates = _candidates(make_pod("pod-a", leader=True, ready=False), make_pod("pod-b"))

        resolution = _label_resolver().resolve(_service(), candidates, None, _fetch())

        assert resolution.leader is None
        assert resolution.eligible == 1

    def test_terminating_or_unaddressed_pods_are_not_eligible(self) -> None:
        candidates = _candidates(
            make_pod("pod-a", leader=True, deleting=True), make_pod("pod-b", leader=True, ip=None)
        )

        resolution = _label_resolver().resolve(_service(), candidates, None, _fetch())

        assert resolution.leader is None

    def test_two_claimants_without_previous_leader_is_ambiguous(self) -> None:
        candidates = _candidates(make_pod("pod-a", leader=True), make_pod("pod-b", leader=True))

        with pytest.raises(LeadershipAmbiguousError) as excinfo:
            _label_resolver().resolve(_service(), candidates, None, _fetch())

        assert sorted(excinfo.value.claimants) == ["pod-a", "pod-b"]


class TestStickyLeader:
    def test_previous_leader_kept_while_another_pod_also_claims(self) -> None:
        candidates = _candidates(make_pod("pod-a", leader=True), make_pod("pod-b", leader=True))
        previous = _previous("pod-a")

        resolution = _label_resolver().resolve(_service(), candidates, previous, _fetch())

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-a"
        assert resolution.leader.started_at == previous.started_at
        assert resolution.sticky == STICKY_HIT
        assert resolution.failover_reason is None

    def test_deleted_leader_fails_over(self) -> None:
        candidates = _candidates(make_pod("pod-b", leader=True))

        resolution = _label_resolver().resolve(
            _service(), candidates, _previous("pod-a"), _fetch()
        )

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-b"
        assert resolution.sticky == STICKY_MISS
        assert resolution.failover_reason == "deleted"

    def test_leader_that_stops_claiming_fails_over(self) -> None:
        candidates = _candidates(make_pod("pod-a"), make_pod("pod-b", leader=True))

        resolution = _label_resolver().resolve(
            _service(), candidates, _previous("pod-a"), _fetch()
        )

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-b"
        assert resolution.failover_reason == "notClaiming"

    @pytest.mark.parametrize(
        ("pod_kwargs", "reason"),
        [
            ({"ready": False}, "notReady"),
            ({"deleting": True}, "terminating"),
            ({"ip": None}, "noIP"),
        ],
    )
    def test_departure_reasons(self, pod_kwargs: dict[str, Any], reason: str) -> None:
        candidates = _candidates(
            make_pod("pod-a", leader=True, **pod_kwargs), make_pod("pod-b", leader=True)
        )

        resolution = _label_resolver().resolve(
            _service(), candidates, _previous("pod-a"), _fetch()
        )

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-b"
        assert resolution.failover_reason == reason

    def test_leader_lost_with_no_claimant_reports_reason(self) -> None:
        candidates = _candidates(make_pod("pod-a", ready=False), make_pod("pod-b"))

        resolution = _label_resolver().resolve(
            _service(), candidates, _previous("pod-a"), _fetch()
        )

        assert resolution.leader is None
        assert resolution.sticky == STICKY_MISS
        assert resolution.failover_reason == "notReady"

    def test_sticky_disabled_prefers_source_order(self) -> None:
        service = _service({ANNOTATION_STICKY: "false"})
        candidates = _candidates(
            make_pod("pod-a", created=NOW - timedelta(hours=1)),
            make_pod("pod-b", created=NOW - timedelta(hours=2)),
        )
        resolver = LeadershipResolver(OldestReadySource(), now_fn=fixed_now)

        resolution = resolver.resolve(service, candidates, _previous("pod-a"), _fetch())

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-b"
        assert resolution.sticky is None
        assert resolution.failover_reason == "preempted"


class TestOldestReadySource:
    def test_oldest_ready_pod_wins(self) -> None:
        candidates = _candidates(
            make_pod("pod-young", created=NOW - timedelta(minutes=5)),
            make_pod("pod-old", created=NOW - timedelta(hours=5)),
            make_pod("pod-oldest-unready", created=NOW - timedelta(days=1), ready=False),
        )
        resolver = LeadershipResolver(OldestReadySource(), now_fn=fixed_now)

        resolution = resolver.resolve(_service(), candidates, None, _fetch())

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-old"

    def test_sticky_keeps_younger_previous_leader(self) -> None:
        candidates = _candidates(
            make_pod("pod-young", created=NOW - timedelta(minutes=5)),
            make_pod("pod-old", created=NOW - timedelta(hours=5)),
        )
        resolver = LeadershipResolver(OldestReadySource(), now_fn=fixed_now)

        resolution = resolver.resolve(_service(), candidates, _previous("pod-young"), _fetch())

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-young"
        assert resolution.sticky == STICKY_HIT


class TestFlapDamping:
    def test_recently_ready_pod_is_skipped(self) -> None:
        service = _service({ANNOTATION_MIN_READY_DURATION: "1m"})
        candidates = _candidates(
            make_pod("pod-a", created=NOW - timedelta(hours=2), ready_since=NOW - timedelta(seconds=10)),
            make_pod("pod-b", created=NOW - timedelta(hours=1), ready_since=NOW - timedelta(minutes=5)),
        )
        resolver = LeadershipResolver(OldestReadySource(), now_fn=fixed_now)

        resolution = resolver.resolve(service, candidates, None, _fetch())

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-b"

    def test_damping_does_not_drop_a_sticky_leader(self) -> None:
        service = _service({ANNOTATION_MIN_READY_DURATION: "10m"})
        candidates = _candidates(make_pod("pod-a", ready_since=NOW - timedelta(seconds=5)))
        resolver = LeadershipResolver(OldestReadySource(), now_fn=fixed_now)

        resolution = resolver.resolve(service, candidates, _previous("pod-a"), _fetch())

        assert resolution.leader is not None
        assert resolution.sticky == STICKY_HIT


class TestLeaseSource:
    def _resolver(self, api: FakeCoordinationApi) -> LeadershipResolver:
        return LeadershipResolver(LeaseSource(api, now_fn=fixed_now), now_fn=fixed_now)

    def test_holder_by_pod_name(self) -> None:
        api = FakeCoordinationApi()
        api.set_holder("ns", "s1", "pod-b")
        candidates = _candidates(make_pod("pod-a"), make_pod("pod-b", ip="10.0.0.2"))

        resolution = self._resolver(api).resolve(_service(), candidates, None, _fetch())

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-b"
        assert resolution.leader.started_at == NOW - timedelta(minutes=5)

    def test_holder_by_name_and_uid(self) -> None:
        api = FakeCoordinationApi()
        api.set_holder("ns", "s1", "pod-a-pod-a-uid")
        candidates = _candidates(make_pod("pod-a"), make_pod("pod-b"))

        resolution = self._resolver(api).resolve(_service(), candidates, None, _fetch())

        assert resolution.leader is not None
        assert resolution.leader.name == "pod-a"

    def test_lease_name_annotation(self) -> None:
        api = FakeCoordinationApi()
        api.set_holder("ns", "db-election", "pod-a")

        resolution = self._resolver(api).resolve(
            _service({"leaderlane.io/lease-name": "db-election"}),
            _candidates(make_pod("pod-a")),
            None,
            _fetch(),
        )

        assert resolution.leader is not None

    def test_missing_lease_means_no_leader(self) -> None:
        resolution = self._resolver(FakeCoordinationApi()).resolve(
            _service(), _candidates(make_pod("pod-a")), None, _fetch()
        )

        assert resolution.leader is None

    def test_expired_lease_means_no_leader(self) -> None:
        api = FakeCoordinationApi()
        api.set_holder("ns", "s1", "pod-a", renewed=NOW - timedelta(minutes=1), duration=15)

        resolution = self._resolver(api).resolve(
            _service(), _candidates(make_pod("pod-a")), None, _fetch()
        )

        assert resolution.leader is None

    def test_malformed_holder_is_an_error(self) -> None:
        api = FakeCoordinationApi()
        api.set_holder("ns", "s1", "Not A Pod!")

        with pytest.raises(MalformedLeaderIdentityError):
            self._resolver(api).resolve(_service(), _candidates(make_pod("pod-a")), None, _fetch())

    def test_transient_lease_read_errors_are_retried(self) -> None:
        api = FakeCoordinationApi()
        api.set_holder("ns", "s1", "pod-a")
        api.fail_next("read_namespaced_lease", ApiException(status=503, reason="unavailable"))
        metrics = RecordingMetrics()

        resolution = self._resolver(api).resolve(
            _service(), _candidates(make_pod("pod-a")), None, _fetch(metrics)
        )

        assert resolution.leader is not None
        assert api.reads == 2
        assert metrics.named("record_retry_success_after_retry") == [("ns", "s1", "get_lease")]

    def test_lease_not_read_without_eligible_candidates(self) -> None:
        api = FakeCoordinationApi()

        self._resolver(api).resolve(
            _service(), _candidates(make_pod("pod-a", ready=False)), None, _fetch()
        )

        assert api.reads == 0


def test_build_leadership_source() -> None:
    assert isinstance(build_leadership_source("oldest"), OldestReadySource)
    assert isinstance(build_leadership_source("label"), LabelSource)
    assert isinstance(build_leadership_source("lease", FakeCoordinationApi()), LeaseSource)  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        build_leadership_source("lease")
    with pytest.raises(ValueError):
        build_leadership_source("mesh")
