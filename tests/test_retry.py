import pytest

from vacancywatch.models import ExtractionError
from vacancywatch.retry import RetryPolicy


def flaky(failures, value="ok"):
    calls = {"count": 0}

    def func():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise ExtractionError(f"failure {calls['count']}")
        return value

    return func, calls


def test_retry_succeeds_after_transient_failures():
    delays = []
    policy = RetryPolicy(attempts=3, backoff=1.5, sleep=delays.append)
    func, calls = flaky(2)

    assert policy.call(func) == "ok"
    assert calls["count"] == 3
    assert delays == [1.5, 3.0]


def test_retry_reraises_after_budget_is_spent():
    delays = []
    policy = RetryPolicy(attempts=2, backoff=1.0, mode="exponential", sleep=delays.append)
    func, calls = flaky(5)

    with pytest.raises(ExtractionError, match="failure 2"):
        policy.call(func)
    assert calls["count"] == 2
    assert delays == [1.0]


def test_exponential_delays():
    policy = RetryPolicy(backoff=0.6, mode="exponential")
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.6, 1.2, 2.4]


def test_other_errors_propagate_immediately():
    policy = RetryPolicy(attempts=3, sleep=lambda seconds: pytest.fail("should not sleep"))

    def func():
        raise KeyError("units")

    with pytest.raises(KeyError):
        policy.call(func)


def test_invalid_policies_are_rejected():
    with pytest.raises(ValueError):
        RetryPolicy(attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(mode="fibonacci")


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def test_retry_stops_when_deadline_leaves_no_room_for_backoff():
    clock = FakeClock()
    calls = []

    def slow_failure():
        calls.append(clock.now)
        clock.now += 5
        raise ExtractionError("navigation timeout")

    policy = RetryPolicy(attempts=5, backoff=1.0, sleep=clock.sleep, clock=clock)

    with pytest.raises(ExtractionError, match="navigation timeout"):
        policy.call(slow_failure, deadline=5.5)
    assert calls == [0.0]


def test_retry_does_not_start_attempt_after_deadline():
    clock = FakeClock()
    clock.now = 10.0
    policy = RetryPolicy(sleep=clock.sleep, clock=clock)
    func, calls = flaky(0)

    with pytest.raises(ExtractionError, match="deadline reached"):
        policy.call(func, deadline=9.0)
    assert calls["count"] == 0


def test_attempt_timeout_is_capped_by_deadline():
    clock = FakeClock()
    policy = RetryPolicy(timeout=90.0, clock=clock)

    assert policy.attempt_timeout() == 90.0
    assert policy.attempt_timeout(deadline=12.0) == 12.0
    clock.now = 20.0
    assert 0 < policy.attempt_timeout(deadline=12.0) < 1
