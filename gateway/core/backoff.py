"""Shared exponential backoff with full jitter.

Every retry loop in the gateway waits through this module so the delay
policy lives in one place.
"""

from __future__ import annotations

import asyncio
import random


def full_jitter_delay(
    attempt: int,
    base_delay: float = 0.5,
    min_delay: float = 0.1,
    max_delay: float = 10.0,
) -> float:
    """Return the delay before retry number ``attempt`` (1-indexed).

    Delay formula: ``uniform(min_delay, min(max_delay, base_delay * 2^(attempt-1)))``
    """
    ceiling = min(max_delay, max(0.0, base_delay * (2 ** max(0, attempt - 1))))
    floor = min(min_delay, ceiling)
    return random.uniform(floor, ceiling)


async def sleep_backoff(
    attempt: int,
    base_delay: float = 0.5,
    min_delay: float = 0.1,
    max_delay: float = 10.0,
) -> float:
    """Sleep for a full-jitter backoff delay and return the delay used."""
    delay = full_jitter_delay(attempt, base_delay, min_delay, max_delay)
    await asyncio.sleep(delay)
    return delay
