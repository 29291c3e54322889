"""Factory for creating rate limiter instances by strategy name."""

from __future__ import annotations

import time
from typing import Callable

from keygate.adapters.rate_limit.base import AbstractRateLimiter, RateLimitRule
from keygate.adapters.rate_limit.in_memory import (
    InMemoryFixedWindowRateLimiter,
    InMemorySlidingLogRateLimiter,
)
from keygate.core.errors import ValidationAppError

_STRATEGIES: dict[str, Callable[..., AbstractRateLimiter]] = {
    "fixed_window": InMemoryFixedWindowRateLimiter,
    "sliding_log": InMemorySlidingLogRateLimiter,
}


def create_rate_limiter(
    strategy: str,
    *,
    default_rule: RateLimitRule,
    rules: dict[str, RateLimitRule] | None = None,
    clock: Callable[[], float] = time.time,
) -> AbstractRateLimiter:
    """Factory function to instantiate a rate limiter for the named strategy.

    Args:
        strategy: "fixed_window" or "sliding_log" (case-insensitive).
        default_rule: Budget for action kinds without a dedicated rule.
        rules: Per-action-kind budgets.
        clock: Time source returning UNIX seconds.

    Returns:
        AbstractRateLimiter: Configured limiter instance.

    Raises:
        ValidationAppError: If the strategy is unknown.
    """
    name = strategy.strip().lower()
    limiter_cls = _STRATEGIES.get(name)
    if limiter_cls is None:
        raise ValidationAppError(
            code="rate_limit_unknown_strategy",
            message=(
                f"Unknown rate limit strategy: '{name}'. "
                f"Supported strategies: {', '.join(sorted(_STRATEGIES))}"
            ),
        )
    return limiter_cls(default_rule=default_rule, rules=rules, clock=clock)
