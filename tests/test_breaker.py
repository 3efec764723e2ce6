"""
Tests for the fast store breaker.
"""

import asyncio

import pytest

from admission_core.breaker import BreakerState, StoreBreaker
from admission_core.errors import FastStoreUnavailable, StoreSkipped, StoreUnavailable


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


async def ok():
    return "ok"


async def fail():
    raise FastStoreUnavailable("connection refused")


async def trip(breaker, times=1):
    for _ in range(times):
        with pytest.raises(FastStoreUnavailable):
            await breaker.call(fail)


class TestStoreBreaker:
    """Tests for breaker state transitions."""

    @pytest.mark.asyncio
    async def test_opens_after_threshold(self):
        """Consecutive failures should open the circuit and skip calls."""
        breaker = StoreBreaker("redis", fail_threshold=3)

        await trip(breaker, 3)

        assert breaker.state == BreakerState.OPEN
        with pytest.raises(StoreSkipped) as exc:
            await breaker.call(ok)
        assert exc.value.store == "redis"
        assert exc.value.last_error == "fast_store: connection refused"
        assert isinstance(exc.value, StoreUnavailable)

    @pytest.mark.asyncio
    async def test_success_resets_streak(self):
        """A success while closed should restart the failure count."""
        breaker = StoreBreaker("redis", fail_threshold=2)

        await trip(breaker)
        assert await breaker.call(ok) == "ok"
        await trip(breaker)

        assert breaker.state == BreakerState.CLOSED
        assert breaker.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_trial_call_closes(self):
        """After the cooldown one successful trial should close the circuit."""
        clock = FakeMonotonic()
        breaker = StoreBreaker("redis", fail_threshold=1, cooldown=30, clock=clock)
        await trip(breaker)

        clock.value += 29
        with pytest.raises(StoreSkipped):
            await breaker.call(ok)

        clock.value += 1
        assert await breaker.call(ok) == "ok"
        assert breaker.state == BreakerState.CLOSED
        assert breaker.last_error is None

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self):
        """A failed trial should reopen for a fresh cooldown."""
        clock = FakeMonotonic()
        breaker = StoreBreaker("redis", fail_threshold=1, cooldown=30, clock=clock)
        await trip(breaker)

        clock.value += 31
        await trip(breaker)

        assert breaker.state == BreakerState.OPEN
        assert breaker.retry_after() == 30

    @pytest.mark.asyncio
    async def test_one_trial_at_a_time(self):
        """While a trial runs, other calls should be skipped."""
        clock = FakeMonotonic()
        breaker = StoreBreaker("redis", fail_threshold=1, cooldown=30, clock=clock)
        await trip(breaker)
        clock.value += 31
        release = asyncio.Event()

        async def slow():
            await release.wait()
            return "ok"

        trial = asyncio.create_task(breaker.call(slow))
        await asyncio.sleep(0)
        assert breaker.state == BreakerState.HALF_OPEN
        with pytest.raises(StoreSkipped):
            await breaker.call(ok)

        release.set()
        assert await trial == "ok"
        assert breaker.state == BreakerState.CLOSED

    @pytest.mark.asyncio
    async def test_cancellation_not_counted(self):
        """Cancelled calls should not count as store failures."""
        breaker = StoreBreaker("redis", fail_threshold=1)

        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await breaker.call(cancelled)

        assert breaker.state == BreakerState.CLOSED
        assert breaker.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_coroutine_not_created_when_open(self):
        """Skipped calls should never start the store coroutine."""
        breaker = StoreBreaker("redis", fail_threshold=1)
        started = []

        async def tracked():
            started.append(True)

        await trip(breaker)
        with pytest.raises(StoreSkipped):
            await breaker.call(tracked)

        assert started == []

    @pytest.mark.asyncio
    async def test_metrics_and_reset(self):
        """Metrics should describe the outage; reset closes the circuit."""
        clock = FakeMonotonic()
        breaker = StoreBreaker("redis", fail_threshold=1, cooldown=30, clock=clock)
        await trip(breaker)
        with pytest.raises(StoreSkipped):
            await breaker.call(ok)
        clock.value += 10

        assert breaker.metrics == {
            "store": "redis",
            "state": "open",
            "consecutive_failures": 1,
            "skipped_calls": 1,
            "last_error": "fast_store: connection refused",
            "retry_after_seconds": 20.0,
        }

        breaker.reset()
        assert breaker.state == BreakerState.CLOSED
        assert await breaker.call(ok) == "ok"
