"""
Bounded fan-out and cancellation helpers used by the pipeline, outlets and manipulators.
"""

import asyncio
from typing import Awaitable, Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")

# Variant pipelines in flight per image
VARIANT_CONCURRENCY = 3

# Images in flight per batch
IMAGE_CONCURRENCY = 2


async def bounded_gather(
    items: Iterable[T], worker: Callable[[T], Awaitable[R]], limit: int
) -> List[R]:
    """
    Run ``worker`` over ``items`` with at most ``limit`` calls in flight.

    Results are returned in the order of ``items``, regardless of completion
    order. The first exception cancels every other pending or running call
    and is re-raised once they have all finished unwinding.

    Args:
        items: Inputs to process
        worker: Coroutine function applied to each input
        limit: Maximum number of concurrent worker calls

    Returns:
        List[R]: One result per input, in input order

    Raises:
        ValueError: If limit is smaller than one
    """
    if limit < 1:
        raise ValueError("Concurrency limit must be at least 1")

    semaphore = asyncio.Semaphore(limit)

    async def _run(item: T) -> R:
        async with semaphore:
            return await worker(item)

    tasks = [asyncio.ensure_future(_run(item)) for item in items]
    if not tasks:
        return []

    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def settle(awaitable: Awaitable[R]) -> R:
    """
    Await ``awaitable`` and keep it running to completion if the caller is cancelled.

    Work handed to a worker thread keeps running after the awaiting task is
    cancelled. Callers that clean up after such work (remove a file, close an
    image) use this so their cleanup only starts once the work is finished.
    The cancellation is re-raised afterwards.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        if not task.cancelled():
            task.exception()
        raise
