from __future__ import annotations

import asyncio
import random


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def wait_or_cancelled(delay: float, cancellation: asyncio.Event | None) -> bool:
    """Sleep for ``delay`` seconds. Returns ``True`` if cancelled meanwhile."""
    if cancellation is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(cancellation.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True
