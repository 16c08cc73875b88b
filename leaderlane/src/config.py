from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

LEADERSHIP_SOURCES = ("oldest", "label", "lease")
SERVICE_ACCOUNT_NAMESPACE_FILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")


class ConfigError(RuntimeError):
    """Raised when the director configuration is invalid."""


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    env: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    env: Mapping[str, str],
    name: str,
    default: float,
    *,
    minimum: float | None = None,
) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number, got: {raw!r}") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum:g}, got: {value:g}")
    return value


@dataclass(frozen=True)
class LeaderElectionConfig:
    """Settings for electing the single active controller replica."""

    enabled: bool
    namespace: str
    lease_name: str
    identity: str | None
    lease_duration_seconds: int
    renew_deadline_seconds: int
    retry_period_seconds: int
    controller_stop_timeout_seconds: int


@dataclass(frozen=True)
class DirectorConfig:
    """Immutable director configuration loaded at startup.

    ``watch_namespace == ""`` watches every namespace.
    ``max_cache_entries_per_namespace == 0`` leaves the decision cache unbounded.
    """

    watch_namespace: str
    leadership_source: str
    max_cache_entries_per_namespace: int
    max_concurrent_reconciles: int
    cache_update_timeout_seconds: float
    metrics_collection_timeout_seconds: float
    api_qps: float
    api_burst: int
    retry_max_attempts: int
    retry_initial_backoff_seconds: float
    retry_max_backoff_seconds: float
    resync_period_seconds: float
    health_port: int
    leader_election: LeaderElectionConfig


def detect_namespace(
    env: Mapping[str, str], namespace_file: Path = SERVICE_ACCOUNT_NAMESPACE_FILE
) -> str | None:
    """Return the namespace this process runs in, or None when it cannot be determined."""
    for name in ("POD_NAMESPACE", "WATCH_NAMESPACE"):
        value = (env.get(name) or "").strip()
        if value:
            return value
    try:
        value = namespace_file.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    return value or None


def _load_leader_election(env: Mapping[str, str], namespace_file: Path) -> LeaderElectionConfig:
    enabled = parse_bool(env.get("LEADER_ELECTION_ENABLED"), default=True)
    lease_duration_seconds = env_int(env, "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1)
    renew_deadline_seconds = env_int(env, "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1)
    retry_period_seconds = env_int(env, "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1)
    # Must exceed the watch timeout so a handoff does not overlap watch loops.
    controller_stop_timeout_seconds = env_int(
        env, "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1
    )

    if renew_deadline_seconds >= lease_duration_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
            "LEADER_ELECTION_LEASE_DURATION_SECONDS"
        )
    if retry_period_seconds >= renew_deadline_seconds:
        raise ConfigError(
            "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
            "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
        )

    namespace = (env.get("LEADER_ELECTION_NAMESPACE") or "").strip()
    if enabled and not namespace:
        namespace = detect_namespace(env, namespace_file) or ""
        if not namespace:
            raise ConfigError(
                "Cannot determine the controller namespace for leader election; "
                "set POD_NAMESPACE or LEADER_ELECTION_NAMESPACE"
            )

    return LeaderElectionConfig(
        enabled=enabled,
        namespace=namespace,
        lease_name=(env.get("LEADER_ELECTION_LEASE_NAME") or "leaderlane-controller").strip(),
        identity=(env.get("LEADER_ELECTION_IDENTITY") or "").strip() or None,
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
        controller_stop_timeout_seconds=controller_stop_timeout_seconds,
    )


def load_config(
    env: Mapping[str, str] | None = None,
    namespace_file: Path = SERVICE_ACCOUNT_NAMESPACE_FILE,
) -> DirectorConfig:
    """Load director config from the environment.

    Raises :class:`ConfigError` for any invalid value so startup fails
    loudly instead of running with a half-applied configuration.
    """
    values = env if env is not None else os.environ

    leadership_source = (values.get("LEADERSHIP_SOURCE") or "oldest").strip().lower()
    if leadership_source not in LEADERSHIP_SOURCES:
        raise ConfigError(
            f"LEADERSHIP_SOURCE must be one of {', '.join(LEADERSHIP_SOURCES)}, "
            f"got: {leadership_source!r}"
        )

    retry_initial_backoff_seconds = env_float(
        values, "RETRY_INITIAL_BACKOFF_SECONDS", 0.1, minimum=0
    )
    retry_max_backoff_seconds = env_float(values, "RETRY_MAX_BACKOFF_SECONDS", 5.0, minimum=0)
    if retry_max_backoff_seconds < retry_initial_backoff_seconds:
        raise ConfigError(
            "RETRY_MAX_BACKOFF_SECONDS must be >= RETRY_INITIAL_BACKOFF_SECONDS"
        )

    return DirectorConfig(
        watch_namespace=(values.get("WATCH_NAMESPACE") or "").strip(),
        leadership_source=leadership_source,
        max_cache_entries_per_namespace=env_int(
            values, "MAX_CACHE_ENTRIES_PER_NAMESPACE", 1000, minimum=0
        ),
        max_concurrent_reconciles=env_int(values, "MAX_CONCURRENT_RECONCILES", 10, minimum=1),
        cache_update_timeout_seconds=env_float(
            values, "CACHE_UPDATE_TIMEOUT_SECONDS", 10.0, minimum=0
        ),
        metrics_collection_timeout_seconds=env_float(
            values, "METRICS_COLLECTION_TIMEOUT_SECONDS", 5.0, minimum=0
        ),
        api_qps=env_float(values, "API_QPS", 50.0, minimum=0),
        api_burst=env_int(values, "API_BURST", 100, minimum=1),
        retry_max_attempts=env_int(values, "RETRY_MAX_ATTEMPTS", 5, minimum=1),
        retry_initial_backoff_seconds=retry_initial_backoff_seconds,
        retry_max_backoff_seconds=retry_max_backoff_seconds,
        resync_period_seconds=env_float(values, "RESYNC_PERIOD_SECONDS", 300.0, minimum=0),
        health_port=env_int(values, "HEALTH_PORT", 8081, minimum=1, maximum=65535),
        leader_election=_load_leader_election(values, namespace_file),
    )
