from __future__ import annotations

from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

# Transient API server conditions: optimistic-concurrency conflicts,
# throttling and server-side errors.
RETRYABLE_STATUSES = frozenset({409, 429, 500, 502, 503, 504})


class DirectorError(RuntimeError):
    """Base class for errors raised while directing traffic to a leader pod."""


class PortResolutionError(DirectorError):
    """No container on the leader pod exposes the Service's target port."""

    def __init__(self, port: str, message: str) -> None:
        super().__init__(message)
        self.port = port


class LeadershipError(DirectorError):
    """The leadership source is in a state that cannot be routed."""


class LeadershipAmbiguousError(LeadershipError):
    """More than one eligible pod claims leadership and none is sticky."""

    def __init__(self, claimants: list[str]) -> None:
        super().__init__(f"multiple pods claim leadership: {', '.join(sorted(claimants))}")
        self.claimants = claimants


class MalformedLeaderIdentityError(LeadershipError):
    """The leadership source names a holder that is not a valid pod identity."""


class EndpointWriteError(DirectorError):
    """Writing the managed EndpointSlice failed after exhausting retries."""

    def __init__(self, operation: str, attempts: int, cause: BaseException | None) -> None:
        super().__init__(f"{operation} failed after {attempts} attempt(s): {cause}")
        self.operation = operation
        self.attempts = attempts
        self.cause = cause


class ReconcileTimeoutError(DirectorError):
    """A reconcile step ran past its deadline."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(f"{operation} exceeded its {timeout_seconds:g}s deadline")
        self.operation = operation
        self.timeout_seconds = timeout_seconds


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_retryable(exc: BaseException) -> bool:
    """Return True when *exc* is a transient API or network failure."""
    if isinstance(exc, ApiException):
        return exc.status in RETRYABLE_STATUSES
    return isinstance(exc, (Urllib3HTTPError, ConnectionError, TimeoutError))
