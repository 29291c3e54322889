"""Rate limiting glue between the HTTP adapter and the limiter adapters.

Routes call ``enforce_rate_limit(identity, action_kind)`` explicitly rather
than through a blanket dependency: every evaluated call is counted, so the
issue/rebind routes validate the HWID first and only well-formed attempts
consume budget.

Rate limiting strategy:
- Per (owner id, action kind) budgets: "issue" has its own, stricter rule;
  every other action uses the default rule.
- Counting strategy selected by ``APP_RATE_LIMIT_STRATEGY`` (fixed_window by
  default, sliding_log for strict limits).
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from keygate.adapters.rate_limit.base import AbstractRateLimiter, RateLimitRule
from keygate.adapters.rate_limit.factory import create_rate_limiter
from keygate.core.config import settings
from keygate.core.logging import hash_for_log

logger = logging.getLogger(__name__)

ISSUE_ACTION = "issue"
REBIND_ACTION = "rebind"
VERIFY_ACTION = "verify"


_limiter: AbstractRateLimiter | None = None
_limiter_config: tuple | None = None


def get_rate_limiter() -> AbstractRateLimiter:
    """Return the shared limiter, rebuilding it when the rate limit settings change.

    Counters live in the instance, so a rebuild starts every budget afresh.
    """

    global _limiter, _limiter_config

    cfg = settings.app
    config = (
        cfg.rate_limit_strategy,
        cfg.rate_limit_requests,
        cfg.rate_limit_window_seconds,
        cfg.rate_limit_issue_requests,
        cfg.rate_limit_issue_window_seconds,
    )

    if _limiter is None or _limiter_config != config:
        _limiter = create_rate_limiter(
            cfg.rate_limit_strategy,
            default_rule=RateLimitRule(
                limit=cfg.rate_limit_requests,
                window_seconds=cfg.rate_limit_window_seconds,
            ),
            rules={
                ISSUE_ACTION: RateLimitRule(
                    limit=cfg.rate_limit_issue_requests,
                    window_seconds=cfg.rate_limit_issue_window_seconds,
                ),
            },
        )
        _limiter_config = config

    return _limiter


def reset_rate_limiter() -> None:
    """Drop the cached limiter and all counters."""

    global _limiter, _limiter_config
    _limiter = None
    _limiter_config = None


def enforce_rate_limit(identity: str, action_kind: str) -> None:
    """Count one action for ``identity`` and reject it when over budget.

    Args:
        identity: Identity being limited (the owner id for key actions).
        action_kind: Action being limited.

    Raises:
        HTTPException: 429 Too Many Requests when the budget is exhausted.
    """

    if not settings.app.rate_limit_enabled:
        return

    result = get_rate_limiter().check(identity, action_kind)
    identity_hash = hash_for_log(identity)
    if result.allowed:
        logger.debug(
            "rate_limit.allowed",
            extra={
                "action": action_kind,
                "identity_hash": identity_hash,
                "limit": result.limit,
                "remaining": result.remaining,
            },
        )
        return

    retry_after = result.retry_after_seconds or 0
    logger.warning(
        "rate_limit.exceeded",
        extra={
            "action": action_kind,
            "identity_hash": identity_hash,
            "limit": result.limit,
            "remaining": result.remaining,
            "retry_after_s": retry_after,
        },
    )

    headers: dict[str, str] = {}
    if settings.app.rate_limit_include_headers:
        headers["Retry-After"] = str(retry_after)
        headers["X-RateLimit-Limit"] = str(result.limit)
        headers["X-RateLimit-Remaining"] = str(result.remaining)
        headers["X-RateLimit-Reset"] = str(result.reset_at)

    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail="Rate limit exceeded. Try again later.",
        headers=headers or None,
    )
