"""Bounded asyncio worker pool.

A semaphore caps how many workers run at once; a finished worker frees its
slot immediately, so one slow item never holds back the rest. When a worker
raises, the remaining workers are cancelled and the error propagates.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_or_cancel(aws: Iterable[Awaitable[R]]) -> List[R]:
    """Await all awaitables; on the first failure cancel the others and re-raise."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
) -> List[R]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Args:
        items: Inputs, one worker call each.
        worker: Coroutine function applied to every item.
        limit: Maximum number of concurrently running workers.

    Returns:
        list: Worker results in input order.
    """
    if limit < 1:
        raise ValueError(f"limit must be positive (got {limit})")
    semaphore = asyncio.Semaphore(limit)

    async def _guarded(item: T) -> R:
        async with semaphore:
            return await worker(item)

    return await gather_or_cancel(_guarded(item) for item in items)
