# tests/unit/test_retry.py

import pytest

from booking_lifecycle.application.retry import RetryExhausted, RetryPolicy, retry_with_backoff


POLICY = RetryPolicy(max_attempts=3, base_delay=1.0, multiplier=2.0)


class Flaky:
    def __init__(self, failures, error=ConnectionError):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return "ok"


def _retry_connection_errors(exc):
    return isinstance(exc, ConnectionError)


def test_delay_doubles_per_attempt():
    assert POLICY.delay_for(1) == 1.0
    assert POLICY.delay_for(2) == 2.0
    assert POLICY.delay_for(3) == 4.0


def test_success_first_time_never_sleeps():
    sleeps = []
    operation = Flaky(failures=0)

    assert retry_with_backoff(operation, POLICY, _retry_connection_errors, sleep=sleeps.append) == "ok"
    assert operation.calls == 1
    assert sleeps == []


def test_recovers_after_transient_failures():
    sleeps = []
    operation = Flaky(failures=2)

    assert retry_with_backoff(operation, POLICY, _retry_connection_errors, sleep=sleeps.append) == "ok"
    assert operation.calls == 3
    assert sleeps == [1.0, 2.0]


def test_gives_up_after_max_attempts():
    sleeps = []
    operation = Flaky(failures=10)

    with pytest.raises(RetryExhausted) as exc_info:
        retry_with_backoff(operation, POLICY, _retry_connection_errors, sleep=sleeps.append)

    assert operation.calls == 3
    assert exc_info.value.attempts == 3
    assert isinstance(exc_info.value.last_error, ConnectionError)
    # No wait after the final attempt.
    assert sleeps == [1.0, 2.0]


def test_non_retryable_error_propagates_immediately():
    sleeps = []
    operation = Flaky(failures=1, error=ValueError)

    with pytest.raises(ValueError):
        retry_with_backoff(operation, POLICY, _retry_connection_errors, sleep=sleeps.append)

    assert operation.calls == 1
    assert sleeps == []


def test_zero_attempts_is_rejected():
    with pytest.raises(ValueError):
        retry_with_backoff(Flaky(failures=0), RetryPolicy(max_attempts=0), _retry_connection_errors)
