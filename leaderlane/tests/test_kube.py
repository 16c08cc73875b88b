from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from leaderlane.src.kube import (
    RateLimitedApi,
    TokenBucket,
    build_clients,
    load_kube_configuration,
)


def test_load_kube_configuration_in_cluster() -> None:
    with (
        patch("leaderlane.src.kube.config.load_incluster_config") as mock_incluster,
        patch("leaderlane.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_incluster.assert_called_once()
    mock_kubeconfig.assert_not_called()


def test_load_kube_configuration_local_fallback() -> None:
    from kubernetes.config.config_exception import ConfigException

    with (
        patch(
            "leaderlane.src.kube.config.load_incluster_config",
            side_effect=ConfigException("not in cluster"),
        ),
        patch("leaderlane.src.kube.config.load_kube_config") as mock_kubeconfig,
    ):
        load_kube_configuration()

    mock_kubeconfig.assert_called_once()


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_token_bucket_allows_burst_then_throttles() -> None:
    clock = _Clock()
    bucket = TokenBucket(qps=1, burst=2, clock=clock, sleep=clock.sleep)

    bucket.acquire()
    bucket.acquire()
    assert clock.sleeps == []

    bucket.acquire()
    bucket.acquire()
    assert clock.sleeps == [pytest.approx(1.0), pytest.approx(1.0)]


def test_token_bucket_refills_over_time() -> None:
    clock = _Clock()
    bucket = TokenBucket(qps=10, burst=1, clock=clock, sleep=clock.sleep)

    bucket.acquire()
    clock.now += 0.1
    bucket.acquire()

    assert clock.sleeps == []


def test_token_bucket_disabled_with_zero_qps() -> None:
    clock = _Clock()
    bucket = TokenBucket(qps=0, burst=1, clock=clock, sleep=clock.sleep)

    for _ in range(5):
        bucket.acquire()

    assert clock.sleeps == []


def test_token_bucket_rejects_empty_burst() -> None:
    with pytest.raises(ValueError):
        TokenBucket(qps=1, burst=0)


def test_rate_limited_api_takes_a_token_per_call() -> None:
    limiter = MagicMock()

    def list_namespaced_pod(namespace: str, **kwargs: Any) -> str:
        """List pods."""
        return f"pods in {namespace}"

    api = RateLimitedApi(
        SimpleNamespace(list_namespaced_pod=list_namespaced_pod, api_client="client"), limiter
    )

    assert api.list_namespaced_pod(namespace="ns") == "pods in ns"
    assert api.list_namespaced_pod.__doc__ == "List pods."
    assert api.api_client == "client"
    limiter.acquire.assert_called_once()


def test_build_clients_wraps_every_api() -> None:
    with patch("leaderlane.src.kube.client") as mock_client:
        mock_client.CoreV1Api.return_value = SimpleNamespace(name="core")
        mock_client.DiscoveryV1Api.return_value = SimpleNamespace(name="discovery")
        mock_client.CoordinationV1Api.return_value = SimpleNamespace(name="coordination")
        clients = build_clients(qps=5, burst=10)

    assert clients.core.name == "core"
    assert clients.discovery.name == "discovery"
    assert clients.coordination.name == "coordination"
    assert isinstance(clients.core, RateLimitedApi)
