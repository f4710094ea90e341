"""
backoff.py

Exponential backoff around remote provider calls.

Every failure is classified by the status code it carries:
- retryable (408, 429, 5xx by default): wait `min(2**attempt + jitter, max_wait)` and try again
- skippable (403, 404 by default): return the call's zero value, no error
- anything else: fatal, raised as NotRetryableError

Retrying stops once the cumulative elapsed time exceeds the budget
(BackoffTooLongError) or the attempt counter reaches the cap
(BackoffMaxAttemptError); both carry the last underlying error.

The wrapper is generic over the call shape, so it serves both the typed
collectors `(ctx, rg_name) -> list[T]` and the resource-group fetcher
`(ctx, collect_id, rg_name) -> T`.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from botocore.exceptions import ClientError

from contracts.context import Context
from contracts.errors import (
    BackoffMaxAttemptError,
    BackoffTooLongError,
    ContextCancelledError,
    NotRetryableError,
)
from infra.config import CollectorConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})
DEFAULT_SKIPPABLE_CODES: frozenset[int] = frozenset({403, 404})


# -----------------------------
# Error classification
# -----------------------------


def get_error_code(exc: BaseException) -> int:
    """Return the provider status code carried by `exc`, or 0 when absent."""
    if isinstance(exc, ClientError):
        try:
            meta = exc.response.get("ResponseMetadata", {}) or {}
            return int(meta.get("HTTPStatusCode", 0) or 0)
        except (TypeError, ValueError, AttributeError):
            return 0
    code = getattr(exc, "code", None)
    if isinstance(code, bool):
        return 0
    if isinstance(code, int):
        return code
    return 0


@dataclass(frozen=True)
class BackoffPolicy:
    """Limits and classification used by `run_with_backoff`."""

    max_attempts: int = 100
    max_wait_seconds: float = 30.0
    max_elapsed_seconds: float = 3600.0
    retryable_codes: frozenset[int] = field(default=DEFAULT_RETRYABLE_CODES)
    skippable_codes: frozenset[int] = field(default=DEFAULT_SKIPPABLE_CODES)

    @classmethod
    def from_config(cls, config: CollectorConfig) -> BackoffPolicy:
        return cls(
            max_attempts=config.backoff_max_attempts,
            max_wait_seconds=config.backoff_max_wait_seconds,
            max_elapsed_seconds=config.backoff_max_elapsed_seconds,
            retryable_codes=frozenset(config.retryable_codes),
            skippable_codes=frozenset(config.skippable_codes),
        )

    def is_retryable(self, exc: BaseException) -> bool:
        return get_error_code(exc) in self.retryable_codes

    def is_skippable(self, exc: BaseException) -> bool:
        return get_error_code(exc) in self.skippable_codes

    def wait_seconds(self, attempt: int, jitter: float) -> float:
        # 2.0 ** 1024 overflows
        exp = 2.0 ** min(attempt, 64)
        return min(exp + jitter, self.max_wait_seconds)


DEFAULT_POLICY = BackoffPolicy()


# -----------------------------
# Runner
# -----------------------------


async def run_with_backoff(
    ctx: Context,
    call: Callable[..., Awaitable[T]],
    *args: Any,
    policy: BackoffPolicy = DEFAULT_POLICY,
    zero_value: Callable[[], T],
    name: str = "",
    sleep: Callable[[Context, float], Awaitable[None]] | None = None,
    clock: Callable[[], float] = time.monotonic,
    rand: Callable[[], float] = random.random,
) -> T:
    """Call `call(ctx, *args)` until it succeeds or a stop condition is hit.

    `sleep(ctx, seconds)` defaults to the context's cancellable sleep, so a
    cancelled context interrupts a pending wait with ContextCancelledError.
    """
    do_sleep = sleep or _ctx_sleep
    label = name or getattr(call, "__name__", "call")
    started = clock()
    attempt = 1
    while True:
        try:
            return await call(ctx, *args)
        except ContextCancelledError:
            raise
        except Exception as exc:
            if policy.is_skippable(exc):
                logger.debug("%s: skipping after code %d: %s", label, get_error_code(exc), exc)
                return zero_value()
            if not policy.is_retryable(exc):
                raise NotRetryableError(f"ExponentialBackoffRun.notRetryableCode: {exc}", last_error=exc) from exc
            elapsed = clock() - started
            if elapsed > policy.max_elapsed_seconds:
                raise BackoffTooLongError(elapsed=elapsed, last_error=exc) from exc
            if attempt >= policy.max_attempts:
                raise BackoffMaxAttemptError(attempts=attempt, last_error=exc) from exc
            wait = policy.wait_seconds(attempt, rand())
            logger.debug(
                "%s: attempt %d failed with code %d, retrying in %.2fs",
                label,
                attempt,
                get_error_code(exc),
                wait,
            )
            await do_sleep(ctx, wait)
            attempt += 1


async def _ctx_sleep(ctx: Context, seconds: float) -> None:
    await ctx.sleep(seconds)


def with_backoff(
    call: Callable[..., Awaitable[T]],
    *,
    policy: BackoffPolicy = DEFAULT_POLICY,
    zero_value: Callable[[], T],
    **runner_kwargs: Any,
) -> Callable[..., Awaitable[T]]:
    """Wrap `call` so every invocation goes through `run_with_backoff`.

    Usage:
        list_buckets = with_backoff(api.list_buckets, zero_value=list)
        fetch_rg = with_backoff(api.get_resource_group, zero_value=lambda: None)
    """

    @functools.wraps(call)
    async def _wrapped(ctx: Context, *args: Any) -> T:
        return await run_with_backoff(
            ctx,
            call,
            *args,
            policy=policy,
            zero_value=zero_value,
            name=getattr(call, "__name__", ""),
            **runner_kwargs,
        )

    return _wrapped
