from __future__ import annotations

from leaderlane.src.errors import PortResolutionError
from leaderlane.src.models import Candidate, ResolvedPort, ServicePortSpec

MIN_PORT = 1
MAX_PORT = 65535


def resolve_target_port(target_port: int | str, pod: Candidate) -> int:
    """Map a Service target port to the numeric port the leader pod listens on.

    Numbers pass through after range validation.  Names are looked up in the
    ports declared by the pod's containers; the first container declaring
    the name wins, matching how kube-proxy resolves named ports.
    """
    if isinstance(target_port, int):
        if not MIN_PORT <= target_port <= MAX_PORT:
            raise PortResolutionError(
                str(target_port),
                f"target port {target_port} is outside {MIN_PORT}-{MAX_PORT}",
            )
        return target_port

    if not pod.container_ports:
        raise PortResolutionError(
            target_port,
            f"named port {target_port!r} not found in pod {pod.name}: pod declares no container ports",
        )
    for container_port in pod.container_ports:
        if container_port.name != target_port:
            continue
        if not MIN_PORT <= container_port.port <= MAX_PORT:
            raise PortResolutionError(
                target_port,
                f"named port {target_port!r} in pod {pod.name} has invalid "
                f"port number {container_port.port}",
            )
        return container_port.port
    raise PortResolutionError(target_port, f"named port {target_port!r} not found in pod {pod.name}")


def resolve_service_ports(
    ports: tuple[ServicePortSpec, ...], pod: Candidate
) -> tuple[ResolvedPort, ...]:
    """Resolve every Service port against *pod*, failing closed on the first miss.

    A missing target port defaults to the Service port, as it does for
    Services with selectors.
    """
    if not ports:
        raise PortResolutionError("", "service declares no ports")
    resolved = []
    for port in ports:
        target = port.target_port if port.target_port is not None else port.port
        resolved.append(
            ResolvedPort(
                name=port.name,
                port=port.port,
                target_port=resolve_target_port(target, pod),
                protocol=port.protocol,
            )
        )
    return tuple(resolved)
