import threading
import time
from collections import Counter

import pytest

from streamgrab.limiter import ConcurrencyLimiter


def test_limiter_never_exceeds_limit_and_runs_each_task_once():
    limiter = ConcurrencyLimiter(3)
    lock = threading.Lock()
    active = 0
    peak = 0
    runs: Counter = Counter()

    def task(index: int) -> int:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
            assert active <= 3
        time.sleep(0.05)
        with lock:
            active -= 1
            runs[index] += 1
        return index * 2

    try:
        outcomes = limiter.settle(task, range(10))
    finally:
        limiter.shutdown()

    assert peak <= 3
    assert peak > 1
    assert [outcome.value for outcome in outcomes] == [index * 2 for index in range(10)]
    assert all(outcome.ok for outcome in outcomes)
    assert runs == Counter({index: 1 for index in range(10)})


def test_settle_isolates_failures_and_keeps_order():
    limiter = ConcurrencyLimiter(2)

    def task(value: str) -> str:
        if value == "bad":
            raise ValueError("boom")
        return value.upper()

    try:
        outcomes = limiter.settle(task, ["a", "bad", "c"])
    finally:
        limiter.shutdown()

    assert [outcome.item for outcome in outcomes] == ["a", "bad", "c"]
    assert outcomes[0].value == "A"
    assert not outcomes[1].ok
    assert isinstance(outcomes[1].error, ValueError)
    assert outcomes[2].value == "C"


def test_run_returns_task_value():
    limiter = ConcurrencyLimiter(1)
    try:
        assert limiter.run(lambda: 42) == 42
    finally:
        limiter.shutdown()


def test_limit_must_be_positive():
    with pytest.raises(ValueError):
        ConcurrencyLimiter(0)
