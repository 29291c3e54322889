"""Unit tests for in-memory rate limiter adapters."""

from unittest.mock import Mock

import pytest

from keygate.adapters.rate_limit.base import RateLimitRule
from keygate.adapters.rate_limit.factory import create_rate_limiter
from keygate.adapters.rate_limit.in_memory import (
    InMemoryFixedWindowRateLimiter,
    InMemorySlidingLogRateLimiter,
)
from keygate.core.errors import ValidationAppError


def _fixed(limit: int, window_seconds: int, clock: Mock, **rules) -> InMemoryFixedWindowRateLimiter:
    return InMemoryFixedWindowRateLimiter(
        default_rule=RateLimitRule(limit=limit, window_seconds=window_seconds),
        rules=rules or None,
        clock=clock,
    )


def test_allows_up_to_limit_in_same_window() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _fixed(3, 60, clock)

    assert limiter.check("owner", "issue").allowed is True
    assert limiter.check("owner", "issue").allowed is True
    result = limiter.check("owner", "issue")
    assert result.allowed is True
    assert result.remaining == 0


def test_blocks_when_over_limit() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _fixed(2, 60, clock)

    assert limiter.check("owner", "issue").allowed is True
    assert limiter.check("owner", "issue").allowed is True

    blocked = limiter.check("owner", "issue")
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.retry_after_seconds == 60
    assert blocked.reset_at == 1060


def test_window_resets_only_after_it_elapsed() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _fixed(1, 10, clock)

    assert limiter.check("owner", "issue").allowed is True
    assert limiter.check("owner", "issue").allowed is False

    clock.return_value = 1010.0
    assert limiter.check("owner", "issue").allowed is False

    clock.return_value = 1010.5
    assert limiter.check("owner", "issue").allowed is True


def test_blocked_calls_are_counted() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _fixed(2, 60, clock)

    results = [limiter.check("owner", "issue") for _ in range(5)]

    assert [r.allowed for r in results] == [True, True, False, False, False]


def test_boundary_burst_admits_twice_the_limit() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _fixed(3, 60, clock)
    limiter.check("owner", "issue")

    clock.return_value = 1059.0
    late = [limiter.check("owner", "issue").allowed for _ in range(2)]
    clock.return_value = 1061.0
    early = [limiter.check("owner", "issue").allowed for _ in range(4)]

    assert late == [True, True]
    assert early == [True, True, True, False]


def test_isolated_by_identity_and_action() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _fixed(1, 60, clock)

    assert limiter.check("u1", "issue").allowed is True
    assert limiter.check("u1", "issue").allowed is False

    assert limiter.check("u2", "issue").allowed is True
    assert limiter.check("u1", "rebind").allowed is True


def test_per_action_rule_overrides_default() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _fixed(10, 60, clock, issue=RateLimitRule(limit=1, window_seconds=3600))

    assert limiter.check("owner", "issue").allowed is True
    blocked = limiter.check("owner", "issue")
    assert blocked.allowed is False
    assert blocked.retry_after_seconds == 3600
    assert limiter.check("owner", "verify").allowed is True


@pytest.mark.parametrize(
    "kwargs",
    [
        {"limit": 0, "window_seconds": 60},
        {"limit": 1, "window_seconds": 0},
    ],
)
def test_invalid_rule_args(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        RateLimitRule(**kwargs)


def test_invalid_check_args() -> None:
    limiter = _fixed(1, 60, Mock(return_value=0.0))

    with pytest.raises(ValueError):
        limiter.check("", "issue")

    with pytest.raises(ValueError):
        limiter.check("owner", "")

    with pytest.raises(ValueError):
        limiter.check("owner", "issue", cost=0)


def test_sliding_log_never_exceeds_limit_in_any_window() -> None:
    clock = Mock(return_value=1000.0)
    limiter = InMemorySlidingLogRateLimiter(
        default_rule=RateLimitRule(limit=3, window_seconds=60),
        clock=clock,
    )
    limiter.check("owner", "issue")

    clock.return_value = 1059.0
    assert [limiter.check("owner", "issue").allowed for _ in range(2)] == [True, True]

    clock.return_value = 1061.0
    assert limiter.check("owner", "issue").allowed is True
    result = limiter.check("owner", "issue")
    assert result.allowed is False
    assert result.retry_after_seconds == 58


def test_factory_selects_strategy() -> None:
    rule = RateLimitRule(limit=1, window_seconds=60)

    assert isinstance(
        create_rate_limiter("fixed_window", default_rule=rule), InMemoryFixedWindowRateLimiter
    )
    assert isinstance(
        create_rate_limiter("Sliding_Log", default_rule=rule), InMemorySlidingLogRateLimiter
    )


def test_factory_rejects_unknown_strategy() -> None:
    with pytest.raises(ValidationAppError) as exc_info:
        create_rate_limiter("token_bucket", default_rule=RateLimitRule(limit=1, window_seconds=60))

    assert exc_info.value.code == "rate_limit_unknown_strategy"
