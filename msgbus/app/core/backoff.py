"""Backoff utilities.

Provides an async generator for incremental backoff strategies.
`incremental_backoff` yields the current delay for the caller to attempt an operation,
then sleeps for that delay before the next attempt. The delay grows by a fixed
increment up to a ceiling; iteration stops after `max_attempts` or once the next
sleep would cross `deadline` (event-loop time).
"""
import asyncio
from typing import AsyncIterator


async def incremental_backoff(
    initial_delay: float,
    max_delay: float,
    increment: float,
    max_attempts: int,
    *,
    deadline: float | None = None,
) -> AsyncIterator[float]:
    loop = asyncio.get_running_loop()
    delay = min(initial_delay, max_delay)
    for attempt in range(1, max_attempts + 1):
        yield delay
        if attempt >= max_attempts:
            return
        if deadline is not None and loop.time() + delay > deadline:
            return
        await asyncio.sleep(delay)
        delay = min(delay + increment, max_delay)
