from __future__ import annotations

import random
from datetime import datetime, timedelta


def compute_backoff(
    attempt: int,
    unit: float = 60.0,
    strategy: str = "linear",
    jitter: float = 0.0,
) -> float:
    """Compute the retry delay in seconds for the given attempt number.

    ``linear`` yields ``attempt * unit`` (1, 2, 3 units), ``exponential``
    yields ``unit * 2 ** (attempt - 1)`` (1, 2, 4 units).
    """
    attempt = max(1, attempt)
    if strategy == "exponential":
        delay = unit * 2 ** (attempt - 1)
    elif strategy == "linear":
        delay = unit * attempt
    else:
        raise ValueError(f"Unknown backoff strategy: {strategy}")
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def next_attempt_at(
    now: datetime,
    attempt: int,
    unit: float = 60.0,
    strategy: str = "linear",
    jitter: float = 0.0,
) -> datetime:
    """Return when the next attempt becomes due."""
    return now + timedelta(seconds=compute_backoff(attempt, unit, strategy, jitter))
