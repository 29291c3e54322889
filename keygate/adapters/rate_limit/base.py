"""Rate limiter interfaces.

Callers should depend on this abstraction (not the concrete implementation)
so the counting strategy or storage backend can be swapped with minimal
changes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitRule:
    """Budget applied to one action kind.

    Attributes:
        limit: Max actions per window.
        window_seconds: Window size in seconds.
    """

    limit: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("limit must be >= 1")
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a rate limit check.

    Attributes:
        allowed: Whether the action is allowed to proceed.
        limit: Max actions per window.
        remaining: Remaining actions in the current window (0 when blocked).
        reset_at: UNIX epoch seconds when the current window resets.
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None


class AbstractRateLimiter(ABC):
    """Interface for rate limiters keyed by (identity, action kind)."""

    def __init__(
        self,
        *,
        default_rule: RateLimitRule,
        rules: dict[str, RateLimitRule] | None = None,
    ) -> None:
        self._default_rule = default_rule
        self._rules = dict(rules or {})

    def rule_for(self, action_kind: str) -> RateLimitRule:
        """Return the rule configured for ``action_kind`` (or the default)."""
        return self._rules.get(action_kind, self._default_rule)

    @abstractmethod
    def check(self, identity: str, action_kind: str, *, cost: int = 1) -> RateLimitResult:
        """Count an action for ``identity`` and decide whether it may proceed.

        Every evaluated call is counted, so callers that want to limit
        well-formed attempts only must validate input before calling.

        Args:
            identity: Unique caller identifier (e.g., owner id, API key hash).
            action_kind: Action being limited (e.g., "issue", "rebind").
            cost: Units to consume (default 1).

        Returns:
            RateLimitResult describing whether it was allowed.
        """
        raise NotImplementedError
