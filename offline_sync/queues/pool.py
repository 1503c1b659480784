"""Bounded worker pool over a ready set.

Workers share a cursor into the item list; each one repeatedly claims the
next unclaimed index and processes it until the list is drained. At most
``concurrency`` items are ever in flight at once.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def run_pool(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    concurrency: int = 1,
) -> list[R]:
    """Process items with at most ``concurrency`` in flight.

    Results are returned in item order. ``worker`` must not raise; queue
    processors record failures on the item instead.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")

    results: list[R | None] = [None] * len(items)
    next_index = 0

    async def run_worker() -> None:
        nonlocal next_index
        while True:
            # Claiming the index happens without an await, so no two workers share one
            index = next_index
            if index >= len(items):
                return
            next_index += 1
            results[index] = await worker(items[index])

    workers = min(concurrency, len(items))
    if workers == 1:
        await run_worker()
    elif workers > 1:
        await asyncio.gather(*(run_worker() for _ in range(workers)))

    return results  # type: ignore[return-value]
