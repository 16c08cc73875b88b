from __future__ import annotations

import functools
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoordinationV1Api, CoreV1Api, DiscoveryV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


class TokenBucket:
    """Client-side QPS/burst limiter shared by every API call of the process.

    Holds up to ``burst`` tokens, refilled at ``qps`` tokens per second.
    ``acquire`` blocks until a token is available.  ``qps <= 0`` disables
    limiting.
    """

    def __init__(
        self,
        qps: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self.clock = clock
        self.sleep = sleep
        self._tokens = float(burst)
        self._updated_at = clock()
        self._lock = threading.Lock()

    def _reserve(self) -> float:
        """Take a token, returning how long the caller must wait before using it."""
        with self._lock:
            now = self.clock()
            self._tokens = min(self.burst, self._tokens + (now - self._updated_at) * self.qps)
            self._updated_at = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def acquire(self) -> None:
        if self.qps <= 0:
            return
        wait = self._reserve()
        if wait > 0:
            self.sleep(wait)


class RateLimitedApi:
    """Proxy an API client so every method call first takes a token from *limiter*."""

    def __init__(self, api: Any, limiter: TokenBucket) -> None:
        self._api = api
        self._limiter = limiter

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._api, name)
        if name.startswith("_") or not callable(attr):
            return attr

        @functools.wraps(attr)
        def limited(*args: Any, **kwargs: Any) -> Any:
            self._limiter.acquire()
            return attr(*args, **kwargs)

        return limited


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    discovery: DiscoveryV1Api
    coordination: CoordinationV1Api


def build_clients(qps: float = 50.0, burst: int = 100) -> KubeClients:
    """Return API clients for the active kube configuration behind one shared rate limiter.

    Watch streams call the same wrapped list functions, so a long-lived
    watch spends one token per (re)connect rather than one per event.
    """
    limiter = TokenBucket(qps=qps, burst=burst)
    LOGGER.info("API client rate limit qps=%s burst=%d", qps, burst)
    return KubeClients(
        core=RateLimitedApi(client.CoreV1Api(), limiter),  # type: ignore[arg-type]
        discovery=RateLimitedApi(client.DiscoveryV1Api(), limiter),  # type: ignore[arg-type]
        coordination=RateLimitedApi(client.CoordinationV1Api(), limiter),  # type: ignore[arg-type]
    )
