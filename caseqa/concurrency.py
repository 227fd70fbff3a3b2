"""Async primitives for bounded-parallel analysis calls."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Iterable

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation token backed by ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise asyncio.CancelledError("analysis cancelled")


class BoundedSemaphore:
    """``asyncio.Semaphore`` that also tracks how many permits are held."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0
        self._peak = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def peak(self) -> int:
        return self._peak

    async def acquire(self) -> None:
        # Cancellation while waiting here does not acquire a permit.
        await self._semaphore.acquire()
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release called more times than acquire")
        self._in_use -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()


async def gather_cancellable(
    coroutines: Iterable[Awaitable[T]],
    cancel_token: CancellationToken | None = None,
) -> list[T]:
    """
    Run every coroutine as a task and return results in submission order.

    If ``cancel_token`` fires first, all unfinished tasks are cancelled and
    ``asyncio.CancelledError`` is raised; no partial results are returned.
    """
    tasks = [asyncio.ensure_future(coroutine) for coroutine in coroutines]
    if not tasks:
        return []
    gathered = asyncio.gather(*tasks)
    waiters: set[asyncio.Future] = {gathered}
    cancel_wait: asyncio.Task | None = None
    if cancel_token is not None:
        cancel_wait = asyncio.create_task(cancel_token.wait())
        waiters.add(cancel_wait)

    try:
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        if gathered in done:
            return gathered.result()
        raise asyncio.CancelledError("analysis cancelled")
    except BaseException:
        await _cancel_all(tasks, gathered)
        raise
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()
            with suppress(asyncio.CancelledError):
                await cancel_wait


async def _cancel_all(tasks: list[asyncio.Future], gathered: asyncio.Future) -> None:
    for task in tasks:
        task.cancel()
    gathered.cancel()
    with suppress(asyncio.CancelledError, Exception):
        await gathered
