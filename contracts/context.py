"""Cancellation context threaded through every collection and scan call.

The context is shared by asyncio tasks and by worker threads (rule checks run in
`asyncio.to_thread`), so its state is guarded by a lock and waiters are woken
with `call_soon_threadsafe`.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from typing import TypeVar

from contracts.errors import ContextCancelledError

T = TypeVar("T")

DEFAULT_CANCEL_REASON = "context canceled"


class Context:
    """Cancellable run context.

    Usage:
        ctx = Context()
        ctx.cancel_after(600)          # optional deadline
        await collector.collect_and_store_all(ctx, ...)
        ctx.cancel()                   # from any thread
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._reason = ""
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]] = []
        self._timer: threading.Timer | None = None

    def done(self) -> bool:
        return self._done.is_set()

    def err(self) -> ContextCancelledError | None:
        """Return the cancellation error, or None while the context is live."""
        if not self._done.is_set():
            return None
        return ContextCancelledError(self._reason)

    def raise_if_done(self) -> None:
        err = self.err()
        if err is not None:
            raise err

    def cancel(self, reason: str = DEFAULT_CANCEL_REASON) -> None:
        """Cancel the context. Idempotent; the first reason wins."""
        with self._lock:
            if self._done.is_set():
                return
            self._reason = reason
            self._done.set()
            waiters = list(self._waiters)
            self._waiters.clear()
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        for loop, fut in waiters:
            try:
                loop.call_soon_threadsafe(_resolve, fut)
            except RuntimeError:
                # loop already closed
                continue

    def cancel_after(self, seconds: float) -> None:
        """Cancel the context once `seconds` have elapsed."""
        timer = threading.Timer(float(seconds), self.cancel, kwargs={"reason": "context deadline exceeded"})
        timer.daemon = True
        with self._lock:
            if self._done.is_set():
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = timer
        timer.start()

    async def wait(self) -> None:
        """Block the calling task until the context is cancelled."""
        if self._done.is_set():
            return
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[None] = loop.create_future()
        entry = (loop, fut)
        with self._lock:
            if self._done.is_set():
                return
            self._waiters.append(entry)
        try:
            await fut
        finally:
            with self._lock:
                if entry in self._waiters:
                    self._waiters.remove(entry)

    async def sleep(self, seconds: float) -> None:
        """Sleep for `seconds`, raising ContextCancelledError if cancelled first."""
        self.raise_if_done()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self.wait(), timeout=seconds)
        except TimeoutError:
            return
        self.raise_if_done()

    async def run(self, aw: Awaitable[T], *, on_discard: Callable[[T], None] | None = None) -> T:
        """Await `aw` unless the context is cancelled first.

        A context that is already cancelled wins over a ready result. A result
        that completed but lost to cancellation is handed to `on_discard`, so
        callers can release what it acquired.
        """
        if self._done.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise ContextCancelledError(self._reason)
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done and not self._done.is_set():
            waiter.cancel()
            return task.result()
        if task.done() and not task.cancelled():
            if task.exception() is None and on_discard is not None:
                on_discard(task.result())
        task.cancel()
        waiter.cancel()
        raise ContextCancelledError(self._reason)


def _resolve(fut: asyncio.Future[None]) -> None:
    if not fut.done():
        fut.set_result(None)
