from __future__ import annotations

from datetime import timedelta

import pytest
from kubernetes.client.exceptions import ApiException

from leaderlane.src.endpoints import EndpointSliceWriter, parse_rfc3339, rfc3339
from leaderlane.src.errors import EndpointWriteError
from leaderlane.src.metadata import (
    ANNOTATION_ENABLED,
    ANNOTATION_LAST_SWITCH_TIME,
    ANNOTATION_LEADER_POD_NAME,
    ANNOTATION_LEADER_POD_UID,
    ANNOTATION_LEADER_SINCE,
    ANNOTATION_PHASE,
    LABEL_ENDPOINTSLICE_MANAGED_BY,
    LABEL_MANAGED_BY,
    LABEL_SERVICE_NAME,
    LABEL_SOURCE_SERVICE,
)
from leaderlane.src.models import DirectedService, LeaderRecord, ResolvedPort, RoutingDecision
from leaderlane.src.retry import Retrier, RetryPolicy
from leaderlane.tests.fakes import (
    NOW,
    FakeCoreApi,
    FakeDiscoveryApi,
    RecordingMetrics,
    fixed_now,
    make_service,
)


def _service(name: str = "s1") -> DirectedService:
    return DirectedService.from_service(make_service(name=name))


def _leader(name: str = "pod-a", ip: str = "10.0.0.1") -> LeaderRecord:
    return LeaderRecord(
        name=name,
        uid=f"{name}-uid",
        namespace="ns",
        started_at=NOW - timedelta(minutes=10),
        pod_ip=ip,
        node_name="node-1",
        ports=(ResolvedPort(name="http", port=80, target_port=8080, protocol="TCP"),),
    )


def _decision(leader: LeaderRecord | None, service: DirectedService | None = None) -> RoutingDecision:
    service = service or _service()
    return RoutingDecision(service=service, leader=leader, service_ports=service.ports)


@pytest.fixture
def core() -> FakeCoreApi:
    return FakeCoreApi()


@pytest.fixture
def discovery() -> FakeDiscoveryApi:
    return FakeDiscoveryApi()


@pytest.fixture
def writer(core: FakeCoreApi, discovery: FakeDiscoveryApi) -> EndpointSliceWriter:
    return EndpointSliceWriter(core, discovery, now_fn=fixed_now)  # type: ignore[arg-type]


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def retrier(metrics: RecordingMetrics) -> Retrier:
    return Retrier(RetryPolicy(max_attempts=3), metrics, "ns", "s1", sleep=lambda _: None)


def test_rfc3339_round_trip_drops_microseconds() -> None:
    value = NOW.replace(microsecond=123456)

    assert rfc3339(value) == "2026-01-01T12:00:00Z"
    assert parse_rfc3339("2026-01-01T12:00:00Z") == NOW
    assert parse_rfc3339("yesterday") is None
    assert parse_rfc3339(None) is None


class TestApply:
    def test_creates_leader_service_and_slice(
        self, writer: EndpointSliceWriter, core: FakeCoreApi, discovery: FakeDiscoveryApi, retrier: Retrier
    ) -> None:
        assert writer.apply(_decision(_leader()), retrier) is True

        leader_service = core.services.objects[("ns", "s1-leader")]
        assert leader_service.spec.selector is None
        assert leader_service.spec.type == "ClusterIP"
        assert [(p.name, p.port, p.target_port) for p in leader_service.spec.ports] == [("http", 80, 8080)]
        assert leader_service.metadata.labels[LABEL_MANAGED_BY] == "leaderlane"
        assert leader_service.metadata.labels[LABEL_SOURCE_SERVICE] == "s1"
        assert leader_service.metadata.owner_references[0].uid == "s1-uid"
        annotations = leader_service.metadata.annotations
        assert ANNOTATION_ENABLED not in annotations
        assert annotations[ANNOTATION_PHASE] == "Stable"
        assert annotations[ANNOTATION_LEADER_POD_NAME] == "pod-a"
        assert annotations[ANNOTATION_LEADER_POD_UID] == "pod-a-uid"
        assert annotations[ANNOTATION_LEADER_SINCE] == "2026-01-01T11:50:00Z"
        assert annotations[ANNOTATION_LAST_SWITCH_TIME] == "2026-01-01T12:00:00Z"

        endpoint_slice = discovery.get("ns", "s1-leader")
        assert endpoint_slice.address_type == "IPv4"
        assert endpoint_slice.metadata.labels[LABEL_SERVICE_NAME] == "s1-leader"
        assert endpoint_slice.metadata.labels[LABEL_ENDPOINTSLICE_MANAGED_BY] == "leaderlane"
        assert endpoint_slice.metadata.owner_references[0].controller is True
        assert len(endpoint_slice.endpoints) == 1
        endpoint = endpoint_slice.endpoints[0]
        assert endpoint.addresses == ["10.0.0.1"]
        assert endpoint.conditions.ready is True
        assert endpoint.target_ref.name == "pod-a"
        assert endpoint.target_ref.uid == "pod-a-uid"
        assert [(p.name, p.port, p.protocol) for p in endpoint_slice.ports] == [("http", 8080, "TCP")]

        assert core.writes == [("create", "service", "s1-leader")]
        assert discovery.writes == [("create", "endpointslice", "s1-leader")]

    def test_existing_objects_are_replaced(
        self, writer: EndpointSliceWriter, core: FakeCoreApi, discovery: FakeDiscoveryApi, retrier: Retrier
    ) -> None:
        writer.apply(_decision(_leader("pod-a")), retrier)
        writer.now_fn = lambda: NOW + timedelta(minutes=1)

        assert writer.apply(_decision(_leader("pod-b", ip="10.0.0.2")), retrier) is False

        assert core.writes[-1] == ("replace", "service", "s1-leader")
        assert discovery.writes[-1] == ("replace", "endpointslice", "s1-leader")
        assert discovery.get("ns", "s1-leader").endpoints[0].addresses == ["10.0.0.2"]
        annotations = core.services.objects[("ns", "s1-leader")].metadata.annotations
        assert annotations[ANNOTATION_LEADER_POD_NAME] == "pod-b"
        assert annotations[ANNOTATION_LAST_SWITCH_TIME] == "2026-01-01T12:01:00Z"

    def test_last_switch_time_only_moves_when_leader_changes(
        self, writer: EndpointSliceWriter, core: FakeCoreApi, retrier: Retrier
    ) -> None:
        writer.apply(_decision(_leader("pod-a")), retrier)
        writer.now_fn = lambda: NOW + timedelta(minutes=5)

        writer.apply(_decision(_leader("pod-a")), retrier)

        annotations = core.services.objects[("ns", "s1-leader")].metadata.annotations
        assert annotations[ANNOTATION_LAST_SWITCH_TIME] == "2026-01-01T12:00:00Z"

    def test_no_leader_writes_empty_slice(
        self, writer: EndpointSliceWriter, core: FakeCoreApi, discovery: FakeDiscoveryApi, retrier: Retrier
    ) -> None:
        writer.apply(_decision(_leader()), retrier)

        writer.apply(_decision(None), retrier)

        endpoint_slice = discovery.get("ns", "s1-leader")
        assert endpoint_slice.endpoints == []
        assert endpoint_slice.ports == []
        assert ANNOTATION_LEADER_SINCE not in endpoint_slice.metadata.annotations
        annotations = core.services.objects[("ns", "s1-leader")].metadata.annotations
        assert annotations[ANNOTATION_PHASE] == "Electing"
        assert ANNOTATION_LEADER_POD_NAME not in annotations
        assert ANNOTATION_LEADER_POD_UID not in annotations

    def test_headless_source_gets_cluster_ip_leader_service(
        self, writer: EndpointSliceWriter, core: FakeCoreApi, retrier: Retrier
    ) -> None:
        source = make_service()
        source.spec.cluster_ip = "None"
        service = DirectedService.from_service(source)

        writer.apply(_decision(_leader(), service), retrier)

        assert core.services.objects[("ns", "s1-leader")].spec.type == "ClusterIP"

    def test_conflict_is_retried_with_a_fresh_read(
        self,
        writer: EndpointSliceWriter,
        discovery: FakeDiscoveryApi,
        retrier: Retrier,
        metrics: RecordingMetrics,
    ) -> None:
        writer.apply(_decision(_leader("pod-a")), retrier)
        discovery.fail_next(
            "replace_namespaced_endpoint_slice", ApiException(status=409, reason="Conflict")
        )
        metrics.calls.clear()

        writer.apply(_decision(_leader("pod-b", ip="10.0.0.2")), retrier)

        assert discovery.get("ns", "s1-leader").endpoints[0].target_ref.name == "pod-b"
        assert ("ns", "s1", "apply_endpointslice", "2") in metrics.named("record_retry_attempt")
        assert metrics.named("record_retry_success_after_retry") == [
            ("ns", "s1", "apply_endpointslice")
        ]

    def test_permanent_failure_raises_endpoint_write_error(
        self, writer: EndpointSliceWriter, discovery: FakeDiscoveryApi, retrier: Retrier
    ) -> None:
        discovery.fail_next(
            "create_namespaced_endpoint_slice", ApiException(status=422, reason="Invalid")
        )

        with pytest.raises(EndpointWriteError) as excinfo:
            writer.apply(_decision(_leader()), retrier)

        assert excinfo.value.operation == "apply_endpointslice"
        assert excinfo.value.attempts == 1
        assert discovery.writes == []

    def test_exhausted_retries_raise_endpoint_write_error(
        self,
        writer: EndpointSliceWriter,
        core: FakeCoreApi,
        discovery: FakeDiscoveryApi,
        retrier: Retrier,
        metrics: RecordingMetrics,
    ) -> None:
        unavailable = ApiException(status=503, reason="Service Unavailable")
        core.fail_next("read_namespaced_service", unavailable, unavailable, unavailable)

        with pytest.raises(EndpointWriteError) as excinfo:
            writer.apply(_decision(_leader()), retrier)

        assert excinfo.value.operation == "apply_leader_service"
        assert excinfo.value.attempts == 3
        assert [call[3] for call in metrics.named("record_retry_attempt")] == ["1", "2", "max"]
        assert discovery.writes == []

    def test_address_family_change_recreates_slice(
        self, writer: EndpointSliceWriter, discovery: FakeDiscoveryApi, retrier: Retrier
    ) -> None:
        writer.apply(_decision(_leader(ip="10.0.0.1")), retrier)

        writer.apply(_decision(_leader(ip="fd00::1")), retrier)

        assert discovery.writes == [
            ("create", "endpointslice", "s1-leader"),
            ("delete", "endpointslice", "s1-leader"),
            ("create", "endpointslice", "s1-leader"),
        ]
        assert discovery.get("ns", "s1-leader").address_type == "IPv6"


class TestReadCurrentLeader:
    def test_recovers_leader_from_slice(self, writer: EndpointSliceWriter, retrier: Retrier) -> None:
        writer.apply(_decision(_leader()), retrier)

        leader = writer.read_current_leader(_service(), retrier)

        assert leader is not None
        assert leader.name == "pod-a"
        assert leader.uid == "pod-a-uid"
        assert leader.pod_ip == "10.0.0.1"
        assert leader.started_at == NOW - timedelta(minutes=10)

    def test_missing_slice_means_no_leader(self, writer: EndpointSliceWriter, retrier: Retrier) -> None:
        assert writer.read_current_leader(_service(), retrier) is None

    def test_empty_slice_means_no_leader(self, writer: EndpointSliceWriter, retrier: Retrier) -> None:
        writer.apply(_decision(None), retrier)

        assert writer.read_current_leader(_service(), retrier) is None


class TestManagedObjects:
    def test_delete_managed_removes_only_the_source_objects(
        self, writer: EndpointSliceWriter, core: FakeCoreApi, discovery: FakeDiscoveryApi, retrier: Retrier
    ) -> None:
        writer.apply(_decision(_leader()), retrier)
        writer.apply(_decision(_leader(), _service("s2")), retrier)

        deleted = writer.delete_managed("ns", "s1", retrier)

        assert deleted == 2
        assert set(core.services.objects) == {("ns", "s2-leader")}
        assert set(discovery.slices.objects) == {("ns", "s2-leader")}

    def test_delete_managed_ignores_objects_already_gone(
        self, writer: EndpointSliceWriter, discovery: FakeDiscoveryApi, retrier: Retrier
    ) -> None:
        writer.apply(_decision(_leader()), retrier)
        discovery.fail_next(
            "delete_namespaced_endpoint_slice", ApiException(status=404, reason="Not Found")
        )

        assert writer.delete_managed("ns", "s1", retrier) == 1

    def test_delete_managed_with_nothing_to_do(self, writer: EndpointSliceWriter, retrier: Retrier) -> None:
        assert writer.delete_managed("ns", "s1", retrier) == 0

    def test_count_managed(self, writer: EndpointSliceWriter, retrier: Retrier) -> None:
        writer.apply(_decision(_leader()), retrier)
        writer.apply(_decision(None, _service("s2")), retrier)

        assert writer.count_managed("ns", retrier) == (2, 2)
        assert writer.count_managed("other", retrier) == (0, 0)
