from __future__ import annotations

import pytest
from kubernetes.client.exceptions import ApiException

from leaderlane.src.errors import ReconcileTimeoutError
from leaderlane.src.retry import (
    Deadline,
    Retrier,
    RetryAttempt,
    RetryPolicy,
    attempt_label,
    call_with_retry,
)
from leaderlane.tests.fakes import RecordingMetrics

POLICY = RetryPolicy(max_attempts=4, initial_backoff_seconds=0.1, max_backoff_seconds=1.0)


class Flaky:
    def __init__(self, failures: int, status: int = 409) -> None:
        self.failures = failures
        self.status = status
        self.attempts: list[RetryAttempt] = []

    def __call__(self, attempt: RetryAttempt) -> str:
        self.attempts.append(attempt)
        if len(self.attempts) <= self.failures:
            raise ApiException(status=self.status, reason="transient")
        return "ok"


def _retrier(metrics: RecordingMetrics, deadline: Deadline | None = None) -> Retrier:
    return Retrier(POLICY, metrics, "ns", "s1", deadline=deadline, sleep=lambda _: None)


def test_attempt_label_caps_at_max() -> None:
    assert [attempt_label(n, 3) for n in (1, 2, 3)] == ["1", "2", "max"]


def test_first_try_success_records_one_attempt_and_no_success_after_retry() -> None:
    metrics = RecordingMetrics()

    assert _retrier(metrics).call("apply", Flaky(0)) == "ok"

    assert metrics.named("record_retry_attempt") == [("ns", "s1", "apply", "1")]
    assert metrics.count("record_retry_success_after_retry") == 0


@pytest.mark.parametrize("failures", [1, 2, 3])
def test_k_failures_then_success_records_k_plus_one_attempts(failures: int) -> None:
    metrics = RecordingMetrics()

    assert _retrier(metrics).call("apply", Flaky(failures)) == "ok"

    assert metrics.count("record_retry_attempt") == failures + 1
    assert metrics.named("record_retry_success_after_retry") == [("ns", "s1", "apply")]


def test_exhausted_policy_labels_final_attempt_max() -> None:
    metrics = RecordingMetrics()
    fn = Flaky(10, status=503)

    outcome = _retrier(metrics).run("apply", fn)

    assert outcome.exhausted
    assert outcome.attempt_labels == ["1", "2", "3", "max"]
    assert [call[3] for call in metrics.named("record_retry_attempt")] == ["1", "2", "3", "max"]
    assert metrics.count("record_retry_success_after_retry") == 0


def test_call_raises_last_error_after_exhaustion() -> None:
    with pytest.raises(ApiException) as excinfo:
        _retrier(RecordingMetrics()).call("apply", Flaky(10, status=429))

    assert excinfo.value.status == 429


def test_validation_error_is_not_retried() -> None:
    fn = Flaky(10, status=422)

    outcome = call_with_retry("apply", fn, POLICY, sleep=lambda _: None)

    assert outcome.attempts == 1
    assert not outcome.exhausted
    assert isinstance(outcome.error, ApiException)


def test_network_errors_are_retried() -> None:
    calls = []

    def fn(attempt: RetryAttempt) -> int:
        calls.append(attempt.number)
        if len(calls) < 2:
            raise ConnectionError("reset")
        return 7

    outcome = call_with_retry("apply", fn, POLICY, sleep=lambda _: None)

    assert outcome.value == 7
    assert outcome.succeeded_after_retry


def test_backoff_grows_and_is_capped() -> None:
    sleeps: list[float] = []

    call_with_retry(
        "apply", Flaky(10), POLICY, sleep=sleeps.append, random_fn=lambda: 0.5
    )

    assert sleeps == [0.1, 0.2, 0.4]
    assert POLICY.backoff_seconds(10, random_fn=lambda: 0.5) == 1.0


def test_expired_deadline_stops_with_timeout() -> None:
    now = [0.0]
    deadline = Deadline(1.0, "cache_update", clock=lambda: now[0])

    def fn(attempt: RetryAttempt) -> str:
        now[0] += 2.0
        raise ApiException(status=500, reason="slow")

    outcome = call_with_retry("apply", fn, POLICY, deadline=deadline, sleep=lambda _: None)

    assert outcome.attempts == 1
    assert isinstance(outcome.error, ReconcileTimeoutError)
    assert outcome.error.operation == "cache_update"


def test_attempts_receive_remaining_time_as_request_timeout() -> None:
    now = [0.0]
    deadline = Deadline(10.0, clock=lambda: now[0])
    seen: list[float | None] = []

    def fn(attempt: RetryAttempt) -> None:
        seen.append(attempt.timeout_seconds)
        now[0] += 3.0
        if len(seen) < 2:
            raise ApiException(status=500, reason="boom")

    call_with_retry("apply", fn, POLICY, deadline=deadline, sleep=lambda _: None)

    assert seen == [10.0, 7.0]


def test_deadline_disabled_when_timeout_not_positive() -> None:
    deadline = Deadline(0)

    assert deadline.remaining() is None
    assert not deadline.expired
    deadline.check()


def test_policy_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
