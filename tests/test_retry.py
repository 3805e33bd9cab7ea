import asyncio

import pytest

from mandapam.core.errors import NetworkError, ServerRejection, ValidationError
from mandapam.core.retry import Retrier, backoff_delay, is_transient, poll_until


# Purpose: Verify which failures are considered transient.
def test_is_transient() -> None:
    assert is_transient(NetworkError("down"))
    assert is_transient(ServerRejection(503, "unavailable"))
    assert is_transient(ServerRejection(429, "slow down"))
    assert not is_transient(ServerRejection(500, "boom"))
    assert not is_transient(ServerRejection(400, "Invalid payment signature"))
    assert not is_transient(ValidationError({"phone": "bad"}))


# Purpose: Verify backoff doubles per attempt with at most 20% jitter.
def test_backoff_delay_bounds() -> None:
    for _ in range(20):
        assert 0.5 <= backoff_delay(0, 500) <= 0.6
        assert 2.0 <= backoff_delay(2, 500) <= 2.4


# Purpose: Verify transient failures are retried until success.
def test_retrier_retries_transient_errors(sleeper) -> None:
    outcomes = [NetworkError("down"), ServerRejection(502, "bad gateway"), "ok"]

    async def operation():
        item = outcomes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    retrier = Retrier(max_retries=2, base_delay_ms=500, sleep=sleeper)
    assert asyncio.run(retrier.run(operation)) == "ok"
    assert retrier.attempts == 3
    assert len(sleeper.calls) == 2


# Purpose: Verify a rejection is raised at once, without retries.
def test_retrier_does_not_retry_rejections(sleeper) -> None:
    async def operation():
        raise ServerRejection(400, "Invalid payment signature")

    retrier = Retrier(max_retries=2, base_delay_ms=500, sleep=sleeper)
    with pytest.raises(ServerRejection):
        asyncio.run(retrier.run(operation))
    assert retrier.attempts == 1
    assert sleeper.calls == []


# Purpose: Verify the last error surfaces once retries are exhausted.
def test_retrier_exhausts(sleeper) -> None:
    async def operation():
        raise NetworkError("down")

    retrier = Retrier(max_retries=1, base_delay_ms=100, sleep=sleeper)
    with pytest.raises(NetworkError):
        asyncio.run(retrier.run(operation))
    assert retrier.attempts == 2


# Purpose: Verify polling waits before every probe and stops on a match.
def test_poll_until_sleeps_before_each_probe(sleeper) -> None:
    answers = iter([1, 2, 3, 4])

    async def probe():
        return next(answers)

    result = asyncio.run(poll_until(probe, lambda v: v >= 3, max_attempts=6, interval_s=2.0, sleep=sleeper))
    assert result.found
    assert result.value == 3
    assert result.attempts == 3
    assert sleeper.calls == [2.0, 2.0, 2.0]


# Purpose: Verify probe errors count as attempts and never stop the loop early.
def test_poll_until_counts_errors(sleeper) -> None:
    async def probe():
        raise NetworkError("still down")

    result = asyncio.run(poll_until(probe, lambda v: True, max_attempts=4, interval_s=1.0, sleep=sleeper))
    assert not result.found
    assert result.attempts == 4
    assert sleeper.calls == [1.0] * 4


# Purpose: Verify a cancelled poll makes no further calls.
def test_poll_until_cancelled(sleeper) -> None:
    calls = []

    async def probe():
        calls.append(1)
        return 1

    async def scenario():
        cancel = asyncio.Event()
        cancel.set()
        return await poll_until(probe, lambda v: True, max_attempts=3, interval_s=1.0, sleep=sleeper, cancel=cancel)

    result = asyncio.run(scenario())
    assert result.cancelled
    assert result.attempts == 0
    assert calls == []
