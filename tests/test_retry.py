"""Tests for orchestrator.retry."""

import random
import threading

import pytest

from orchestrator.retry import BackoffSpec, ExhaustedError, RetryPolicy
from tools.base import CommandFailed, NetworkError, TimedOut


class Flaky:
    """Operation failing with the given errors before succeeding."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def policy(sleeps):
    return RetryPolicy(
        max_attempts=3,
        backoff=BackoffSpec(base=1.0, cap=30.0, multiplier=2.0, jitter=0.0),
        sleep=sleeps.append,
    )


class TestBackoffSpec:
    def test_exponential_without_jitter(self):
        spec = BackoffSpec(base=1.0, cap=30.0, multiplier=2.0, jitter=0.0)
        assert [spec.delay(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        spec = BackoffSpec(base=1.0, cap=5.0, multiplier=3.0, jitter=0.0)
        assert spec.delay(10) == 5.0

    def test_jitter_stays_in_range(self):
        spec = BackoffSpec(base=4.0, cap=30.0, multiplier=2.0, jitter=0.5)
        rng = random.Random(7)
        for _ in range(50):
            assert 2.0 <= spec.delay(1, rng) <= 4.0

    @pytest.mark.parametrize(
        "kwargs",
        [{"base": -1.0}, {"multiplier": 0.5}, {"jitter": 1.5}],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            BackoffSpec(**kwargs)


class TestRetryPolicy:
    def test_first_attempt_success(self, policy, sleeps):
        op = Flaky()
        assert policy.run(op) == "ok"
        assert op.calls == 1
        assert sleeps == []

    def test_transient_then_success(self, policy, sleeps):
        op = Flaky(NetworkError("reset"), TimedOut("slow"))
        assert policy.run(op) == "ok"
        assert op.calls == 3
        assert sleeps == [1.0, 2.0]

    def test_always_transient_exhausts_max_attempts(self, policy):
        op = Flaky(*[NetworkError(f"reset {i}") for i in range(5)])
        with pytest.raises(ExhaustedError) as exc_info:
            policy.run(op)
        assert exc_info.value.attempts == 3
        assert op.calls == 3
        assert str(exc_info.value.last_error) == "reset 2"
        assert not exc_info.value.cancelled

    def test_non_transient_single_attempt(self, policy, sleeps):
        op = Flaky(CommandFailed("bad Dockerfile"))
        with pytest.raises(ExhaustedError) as exc_info:
            policy.run(op)
        assert exc_info.value.attempts == 1
        assert op.calls == 1
        assert sleeps == []

    def test_permanent_network_error_single_attempt(self, policy):
        op = Flaky(NetworkError("unauthorized", transient=False))
        with pytest.raises(ExhaustedError) as exc_info:
            policy.run(op)
        assert exc_info.value.attempts == 1

    def test_on_attempt_called_per_attempt(self, policy):
        seen = []
        op = Flaky(NetworkError("reset"), NetworkError("reset"))
        policy.run(op, on_attempt=lambda n, err, retry: seen.append((n, err is None, retry)))
        assert seen == [(1, False, True), (2, False, True), (3, True, False)]

    def test_last_failure_reports_no_retry(self, policy):
        seen = []
        op = Flaky(*[TimedOut("slow")] * 3)
        with pytest.raises(ExhaustedError):
            policy.run(op, on_attempt=lambda n, err, retry: seen.append(retry))
        assert seen == [True, True, False]

    def test_other_exceptions_propagate(self, policy):
        op = Flaky(KeyError("bug"))
        with pytest.raises(KeyError):
            policy.run(op)
        assert op.calls == 1

    def test_cancel_during_backoff(self):
        cancel = threading.Event()
        policy = RetryPolicy(
            max_attempts=5,
            backoff=BackoffSpec(base=1.0, jitter=0.0),
            sleep=lambda delay: cancel.set(),
        )
        op = Flaky(*[NetworkError("reset")] * 5)
        with pytest.raises(ExhaustedError) as exc_info:
            policy.run(op, cancel_event=cancel)
        assert exc_info.value.cancelled
        assert exc_info.value.attempts == 1
        assert op.calls == 1

    def test_cancelled_backoff_reports_attempt_once(self):
        cancel = threading.Event()
        seen = []
        policy = RetryPolicy(
            max_attempts=5,
            backoff=BackoffSpec(base=1.0, jitter=0.0),
            sleep=lambda delay: cancel.set(),
        )
        with pytest.raises(ExhaustedError):
            policy.run(
                Flaky(*[NetworkError("reset")] * 5),
                on_attempt=lambda n, err, retry: seen.append((n, retry)),
                cancel_event=cancel,
            )
        assert seen == [(1, False)]

    def test_cancel_event_interrupts_real_wait(self):
        cancel = threading.Event()
        cancel.set()
        policy = RetryPolicy(max_attempts=3, backoff=BackoffSpec(base=60.0, jitter=0.0))
        with pytest.raises(ExhaustedError) as exc_info:
            policy.run(Flaky(*[TimedOut("slow")] * 3), cancel_event=cancel)
        assert exc_info.value.cancelled

    def test_max_attempts_at_least_one(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
