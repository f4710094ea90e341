"""Unit tests for the shared token-bucket rate limiters."""
# pylint: disable=too-few-public-methods

from __future__ import annotations

import asyncio

import pytest

from collector.ratelimiter import QuotaLimiters, RateLimiter, rate_limited
from contracts.context import Context
from contracts.errors import ContextCancelledError
from contracts.model import ResourceKind
from infra.config import RateLimitConfig


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class _FakeSleep:
    """Records delays; optionally cancels the context instead of sleeping."""

    def __init__(self, clock: _FakeClock, *, cancel: bool = False) -> None:
        self._clock = clock
        self._cancel = cancel
        self.delays: list[float] = []

    async def __call__(self, ctx: Context, seconds: float) -> None:
        self.delays.append(seconds)
        if self._cancel:
            ctx.cancel()
            ctx.raise_if_done()
        self._clock.now += seconds


def test_burst_is_admitted_without_waiting() -> None:
    clock = _FakeClock()
    sleep = _FakeSleep(clock)
    limiter = RateLimiter(rate=1.0, burst=3, clock=clock, sleep=sleep)

    async def _go() -> None:
        ctx = Context()
        for _ in range(3):
            await limiter.wait(ctx)

    asyncio.run(_go())
    assert sleep.delays == []
    assert limiter.tokens() == pytest.approx(0.0)


def test_waiters_beyond_burst_are_spaced_by_rate() -> None:
    """Reservations queue up: the n-th extra caller waits n / rate seconds."""
    clock = _FakeClock()
    sleep = _FakeSleep(clock)
    limiter = RateLimiter(rate=2.0, burst=1, clock=clock, sleep=sleep)
    ctx = Context()

    assert limiter._reserve() == 0.0  # pylint: disable=protected-access
    assert limiter._reserve() == pytest.approx(0.5)  # pylint: disable=protected-access
    assert limiter._reserve() == pytest.approx(1.0)  # pylint: disable=protected-access

    clock.now += 1.0
    asyncio.run(limiter.wait(ctx))
    assert sleep.delays == [pytest.approx(0.5)]


def test_tokens_refill_up_to_burst() -> None:
    clock = _FakeClock()
    limiter = RateLimiter(rate=1.0, burst=2, clock=clock)
    limiter._reserve()  # pylint: disable=protected-access
    limiter._reserve()  # pylint: disable=protected-access

    clock.now += 1.0
    assert limiter.tokens() == pytest.approx(1.0)
    clock.now += 60.0
    assert limiter.tokens() == pytest.approx(2.0)


def test_cancelled_wait_returns_its_token() -> None:
    clock = _FakeClock()
    sleep = _FakeSleep(clock, cancel=True)
    limiter = RateLimiter(rate=1.0, burst=1, clock=clock, sleep=sleep)
    ctx = Context()

    asyncio.run(limiter.wait(ctx))
    assert limiter.tokens() == pytest.approx(0.0)

    with pytest.raises(ContextCancelledError):
        asyncio.run(limiter.wait(ctx))
    # never goes negative for a wait that did not happen
    assert limiter.tokens() == pytest.approx(0.0)


def test_wait_on_cancelled_context_fails_fast() -> None:
    limiter = RateLimiter(rate=1.0, burst=1)
    ctx = Context()
    ctx.cancel()

    with pytest.raises(ContextCancelledError):
        asyncio.run(limiter.wait(ctx))
    assert limiter.tokens() == pytest.approx(1.0, abs=0.01)


def test_invalid_limits_are_rejected() -> None:
    with pytest.raises(ValueError):
        RateLimiter(rate=0.0, burst=1)
    with pytest.raises(ValueError):
        RateLimiter(rate=1.0, burst=0)


def test_quota_limiters_from_config() -> None:
    limiters = QuotaLimiters.from_config(RateLimitConfig())

    assert limiters.resource_search.rate == pytest.approx(350.0 / 60.0)
    assert limiters.resource_search.burst == 1
    assert limiters.findings.rate == pytest.approx(1000.0 / 60.0)
    assert limiters.subnets.burst == 5000
    assert limiters.for_kind(ResourceKind.NETWORK) is limiters.subnets
    assert limiters.for_kind(ResourceKind.BUCKET) is limiters.resource_search


def test_rate_limited_gates_each_call() -> None:
    clock = _FakeClock()
    sleep = _FakeSleep(clock)
    limiter = RateLimiter(rate=1.0, burst=1, clock=clock, sleep=sleep)
    seen: list[str] = []

    async def list_buckets(ctx: Context, rg_name: str) -> list[str]:
        seen.append(rg_name)
        return [f"{rg_name}/bucket"]

    wrapped = rate_limited(limiter, list_buckets)

    async def _go() -> list[list[str]]:
        ctx = Context()
        return [await wrapped(ctx, "projects/a"), await wrapped(ctx, "projects/b")]

    out = asyncio.run(_go())

    assert out == [["projects/a/bucket"], ["projects/b/bucket"]]
    assert seen == ["projects/a", "projects/b"]
    assert wrapped.__name__ == "list_buckets"
    assert sleep.delays == [pytest.approx(1.0)]
