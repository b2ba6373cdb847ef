"""Bounded worker pools with first-error cancellation."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_bounded(
    items: Iterable[T],
    limit: int,
    fn: Callable[[T], Awaitable[R]],
) -> list[R]:
    """
    Run fn over items with at most `limit` in flight.

    Results keep input order. The first failure cancels the remaining tasks and
    is re-raised once they have settled.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _one(item: T) -> R:
        async with semaphore:
            return await fn(item)

    tasks = [asyncio.ensure_future(_one(item)) for item in items]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def with_timeout(coro: Awaitable[R], seconds: float) -> R:
    return await asyncio.wait_for(coro, timeout=seconds)
