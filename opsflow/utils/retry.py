from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..config import RetryConfig


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    multiplier: float = 2.0,
    max_delay: Optional[float] = None,
) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` is the number of the attempt that just failed, starting at 1.
    """
    delay = base * multiplier ** max(attempt - 1, 0)
    if max_delay is not None:
        delay = min(delay, max_delay)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def backoff_for(attempt: int, policy: "RetryConfig") -> float:
    return compute_backoff(
        attempt,
        base=policy.base_delay,
        jitter=policy.jitter,
        multiplier=policy.multiplier,
        max_delay=policy.max_delay,
    )


async def schedule_retry(attempt: int, policy: "RetryConfig") -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = backoff_for(attempt, policy)
    if delay > 0:
        await asyncio.sleep(delay)
