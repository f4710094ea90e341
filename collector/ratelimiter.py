"""Token-bucket admission control for provider API calls.

One limiter per quota class is shared by every collection task. Waiting
reserves a token up front (the bucket may go negative), then sleeps for the
reserved delay; a cancelled wait hands its token back. Limiters never retry,
retries are the backoff layer's job.
"""

from __future__ import annotations

import asyncio
import functools
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from contracts.context import Context
from contracts.errors import ContextCancelledError
from contracts.model import ResourceKind
from infra.config import RateLimitConfig

T = TypeVar("T")


class RateLimiter:
    """Token bucket refilled at `rate` tokens per second, holding at most `burst`."""

    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[Context, float], Awaitable[None]] | None = None,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self._rate = float(rate)
        self._burst = int(burst)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = clock()

    @classmethod
    def per_minute(cls, count: float, burst: int, **kwargs: Any) -> RateLimiter:
        return cls(float(count) / 60.0, burst, **kwargs)

    @property
    def rate(self) -> float:
        return self._rate

    @property
    def burst(self) -> int:
        return self._burst

    def tokens(self) -> float:
        with self._lock:
            self._advance()
            return self._tokens

    def _advance(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last)
        self._last = now
        self._tokens = min(float(self._burst), self._tokens + elapsed * self._rate)

    def _reserve(self) -> float:
        with self._lock:
            self._advance()
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self._rate

    def _release(self) -> None:
        with self._lock:
            self._advance()
            self._tokens = min(float(self._burst), self._tokens + 1.0)

    async def wait(self, ctx: Context) -> None:
        """Block until one token is available.

        Raises ContextCancelledError if the context is cancelled first; the
        reserved token is returned to the bucket in that case.
        """
        ctx.raise_if_done()
        delay = self._reserve()
        if delay <= 0:
            return
        try:
            if self._sleep is not None:
                await self._sleep(ctx, delay)
            else:
                await ctx.sleep(delay)
        except (ContextCancelledError, asyncio.CancelledError):
            self._release()
            raise


@dataclass(frozen=True)
class QuotaLimiters:
    """Shared limiters, one per provider quota class."""

    resource_search: RateLimiter
    iam_search: RateLimiter
    findings: RateLimiter
    subnets: RateLimiter

    @classmethod
    def from_config(cls, config: RateLimitConfig) -> QuotaLimiters:
        return cls(
            resource_search=RateLimiter.per_minute(
                config.resource_search_per_minute, config.resource_search_burst
            ),
            iam_search=RateLimiter.per_minute(config.iam_search_per_minute, config.iam_search_burst),
            findings=RateLimiter.per_minute(config.findings_per_minute, config.findings_burst),
            subnets=RateLimiter.per_minute(config.subnets_per_minute, config.subnets_burst),
        )

    def for_kind(self, kind: ResourceKind) -> RateLimiter:
        """Limiter gating the typed collector of `kind`; networks list subnets."""
        if kind is ResourceKind.NETWORK:
            return self.subnets
        return self.resource_search


def rate_limited(limiter: RateLimiter, call: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Gate `call(ctx, ...)` behind `limiter.wait(ctx)`."""

    @functools.wraps(call)
    async def _wrapped(ctx: Context, *args: Any) -> T:
        await limiter.wait(ctx)
        return await call(ctx, *args)

    return _wrapped
