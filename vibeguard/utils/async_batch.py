"""Async batch utilities for parallel feed lookups."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar


T = TypeVar('T')
R = TypeVar('R')

log = logging.getLogger("vibeguard.async_batch")


async def batch_gather(
    items: Sequence[T],
    async_fn: Callable[[T], Awaitable[R]],
    max_concurrent: int = 5,
    continue_on_error: bool = True,
) -> list[R | None]:
    """Execute async function on items with concurrency limit.

    Args:
        items: Items to process
        async_fn: Async function to call on each item
        max_concurrent: Max concurrent operations
        continue_on_error: If True, errors return None; if False, propagate

    Returns:
        List of results in input order (None for failed items if continue_on_error=True)
    """
    semaphore = asyncio.Semaphore(max_concurrent)

    async def bounded_call(item: T) -> R | None:
        async with semaphore:
            try:
                return await async_fn(item)
            except Exception as e:
                if not continue_on_error:
                    raise
                log.warning("Batch item %r failed: %s", item, e)
                return None

    return await asyncio.gather(*[bounded_call(item) for item in items])


def pair_results(items: Sequence[T], results: Sequence[Any]) -> dict[T, Any]:
    """Zip batch_gather output back to its keys, dropping failures."""
    return {item: result for item, result in zip(items, results) if result is not None}
