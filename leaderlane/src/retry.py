from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, Protocol, TypeVar

from leaderlane.src.errors import ReconcileTimeoutError, is_retryable

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPT_LABEL = "max"


class RetryMetrics(Protocol):
    def record_retry_attempt(
        self, namespace: str, service: str, operation: str, attempt: str
    ) -> None: ...

    def record_retry_success_after_retry(
        self, namespace: str, service: str, operation: str
    ) -> None: ...


class Deadline:
    """A point in monotonic time after which an operation must give up.

    ``timeout_seconds <= 0`` means no deadline.
    """

    def __init__(
        self,
        timeout_seconds: float,
        operation: str = "reconcile",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.operation = operation
        self.clock = clock
        self.started_at = clock()

    def remaining(self) -> float | None:
        if self.timeout_seconds <= 0:
            return None
        return max(0.0, self.started_at + self.timeout_seconds - self.clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self) -> None:
        if self.expired:
            raise ReconcileTimeoutError(self.operation, self.timeout_seconds)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient Kubernetes API failures."""

    max_attempts: int = 5
    initial_backoff_seconds: float = 0.1
    max_backoff_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("backoff seconds must be >= 0")

    def backoff_seconds(self, attempt: int, random_fn: Callable[[], float] = random.random) -> float:
        """Return the jittered pause after failed *attempt* (1-based)."""
        base = min(self.max_backoff_seconds, self.initial_backoff_seconds * (2 ** (attempt - 1)))
        return base * (0.5 + random_fn())  # noqa: S311


def attempt_label(attempt: int, max_attempts: int) -> str:
    return MAX_ATTEMPT_LABEL if attempt >= max_attempts else str(attempt)


@dataclass(frozen=True)
class RetryAttempt:
    """Context handed to each try of a retried operation."""

    operation: str
    number: int
    max_attempts: int
    timeout_seconds: float | None = None

    @property
    def label(self) -> str:
        return attempt_label(self.number, self.max_attempts)


@dataclass
class RetryOutcome(Generic[T]):
    """Attempt bookkeeping for one retried operation, returned with its result."""

    operation: str
    max_attempts: int
    attempt_labels: list[str] = field(default_factory=list)
    value: T | None = None
    error: BaseException | None = None

    @property
    def attempts(self) -> int:
        return len(self.attempt_labels)

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.attempts > 0

    @property
    def succeeded_after_retry(self) -> bool:
        return self.succeeded and self.attempts > 1

    @property
    def exhausted(self) -> bool:
        return (
            self.error is not None
            and self.attempts >= self.max_attempts
            and is_retryable(self.error)
        )


def call_with_retry(
    operation: str,
    fn: Callable[[RetryAttempt], T],
    policy: RetryPolicy,
    *,
    deadline: Deadline | None = None,
    sleep: Callable[[float], None] = time.sleep,
    random_fn: Callable[[], float] = random.random,
) -> RetryOutcome[T]:
    """Run *fn* until it succeeds, fails permanently, or attempts run out.

    Never raises for failures of *fn*: the last error is stored on the
    returned :class:`RetryOutcome`.  Non-retryable errors stop immediately.
    An expired *deadline* stops the loop with :class:`ReconcileTimeoutError`.
    """
    outcome: RetryOutcome[T] = RetryOutcome(operation=operation, max_attempts=policy.max_attempts)

    for number in range(1, policy.max_attempts + 1):
        if deadline is not None and deadline.expired:
            outcome.error = ReconcileTimeoutError(deadline.operation, deadline.timeout_seconds)
            return outcome

        attempt = RetryAttempt(
            operation=operation,
            number=number,
            max_attempts=policy.max_attempts,
            timeout_seconds=deadline.remaining() if deadline is not None else None,
        )
        outcome.attempt_labels.append(attempt.label)
        try:
            outcome.value = fn(attempt)
            outcome.error = None
            return outcome
        except Exception as exc:
            outcome.error = exc
            if not is_retryable(exc) or number >= policy.max_attempts:
                return outcome

        pause = policy.backoff_seconds(number, random_fn)
        if deadline is not None:
            remaining = deadline.remaining()
            if remaining is not None:
                pause = min(pause, remaining)
        LOGGER.debug(
            "Retrying %s after attempt %d failed: %s (sleeping %.2fs)",
            operation,
            number,
            outcome.error,
            pause,
        )
        sleep(pause)

    return outcome


class Retrier:
    """Runs API operations for one Service under a shared policy and deadline.

    Every attempt is reported as ``record_retry_attempt`` with labels
    ``1, 2, ...`` and ``max`` for the last permitted attempt; an operation
    that succeeds after failing is reported once via
    ``record_retry_success_after_retry``.  Failures re-raise the last error
    after the outcome has been recorded.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        metrics: RetryMetrics,
        namespace: str,
        service: str,
        deadline: Deadline | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.policy = policy
        self.metrics = metrics
        self.namespace = namespace
        self.service = service
        self.deadline = deadline
        self.sleep = sleep

    def run(self, operation: str, fn: Callable[[RetryAttempt], T]) -> RetryOutcome[T]:
        outcome = call_with_retry(
            operation, fn, self.policy, deadline=self.deadline, sleep=self.sleep
        )
        for label in outcome.attempt_labels:
            self.metrics.record_retry_attempt(self.namespace, self.service, operation, label)
        if outcome.succeeded_after_retry:
            self.metrics.record_retry_success_after_retry(self.namespace, self.service, operation)
        return outcome

    def call(self, operation: str, fn: Callable[[RetryAttempt], T]) -> T:
        outcome = self.run(operation, fn)
        if outcome.error is not None:
            raise outcome.error
        return outcome.value  # type: ignore[return-value]
