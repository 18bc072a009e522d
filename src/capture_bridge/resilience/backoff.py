"""Exponential backoff with jitter."""

import random
from typing import Optional, Protocol

from ..models.resilience import RetryPolicy


class UniformSource(Protocol):
    def uniform(self, a: float, b: float) -> float: ...


def base_delay_for(policy: RetryPolicy, attempt: int) -> float:
    """Un-jittered delay in seconds before retry number `attempt` (0 = first retry)."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    try:
        raw = policy.base_delay * (policy.multiplier**attempt)
    except OverflowError:
        return policy.max_delay
    return min(raw, policy.max_delay)


def compute_delay(policy: RetryPolicy, attempt: int, rng: Optional[UniformSource] = None) -> float:
    """Jittered delay in seconds, never negative and never above max_delay."""
    rng = rng or random.Random()
    base = base_delay_for(policy, attempt)
    j = policy.jitter_fraction
    jittered = base * (1.0 + rng.uniform(-j, j))
    return max(0.0, min(jittered, policy.max_delay))
