"""In-memory rate limiters.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: uses a lock around shared state.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from keygate.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult, RateLimitRule


@dataclass
class _WindowState:
    window_start: float
    count: int


def _validate_args(identity: str, action_kind: str, cost: int) -> None:
    if cost < 1:
        raise ValueError("cost must be >= 1")
    if not identity:
        raise ValueError("identity must be a non-empty string")
    if not action_kind:
        raise ValueError("action_kind must be a non-empty string")


def _build_result(*, now: float, limit: int, used: int, reset_at: float) -> RateLimitResult:
    allowed = used <= limit
    return RateLimitResult(
        allowed=allowed,
        limit=limit,
        remaining=max(0, limit - used),
        reset_at=int(math.ceil(reset_at)),
        retry_after_seconds=None if allowed else max(0, int(math.ceil(reset_at - now))),
    )


class InMemoryFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter using a fixed window per (identity, action kind).

    The window starts at the first counted action and is reset wholesale once
    more than ``window_seconds`` have elapsed since it started. Because the
    counter resets at once, a burst straddling a window boundary can admit up
    to ``2 * limit`` actions in a short span. ``InMemorySlidingLogRateLimiter``
    is the strict alternative.
    """

    def __init__(
        self,
        *,
        default_rule: RateLimitRule,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(default_rule=default_rule, rules=rules)
        self._clock = clock
        self._lock = threading.RLock()
        self._state_by_key: dict[tuple[str, str], _WindowState] = {}

    def _get_or_reset_state(
        self, key: tuple[str, str], now: float, window_seconds: int
    ) -> _WindowState:
        """Get the current state for key or start a new window once it lapsed."""
        state = self._state_by_key.get(key)
        if state is None or now - state.window_start > window_seconds:
            state = _WindowState(window_start=now, count=0)
            self._state_by_key[key] = state
        return state

    def check(self, identity: str, action_kind: str, *, cost: int = 1) -> RateLimitResult:
        """Count an action and decide whether it may proceed.

        Raises:
            ValueError: If identity/action_kind is empty or cost is invalid.
        """
        _validate_args(identity, action_kind, cost)
        rule = self.rule_for(action_kind)
        now = self._clock()

        with self._lock:
            state = self._get_or_reset_state((identity, action_kind), now, rule.window_seconds)
            state.count += cost
            return _build_result(
                now=now,
                limit=rule.limit,
                used=state.count,
                reset_at=state.window_start + rule.window_seconds,
            )


class InMemorySlidingLogRateLimiter(AbstractRateLimiter):
    """Rate limiter keeping a timestamp log per (identity, action kind).

    Admits at most ``limit`` actions within any trailing window, at the cost of
    storing one timestamp per counted action.
    """

    def __init__(
        self,
        *,
        default_rule: RateLimitRule,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(default_rule=default_rule, rules=rules)
        self._clock = clock
        self._lock = threading.RLock()
        self._log_by_key: dict[tuple[str, str], deque[float]] = {}

    def check(self, identity: str, action_kind: str, *, cost: int = 1) -> RateLimitResult:
        _validate_args(identity, action_kind, cost)
        rule = self.rule_for(action_kind)
        now = self._clock()
        cutoff = now - rule.window_seconds

        with self._lock:
            log = self._log_by_key.setdefault((identity, action_kind), deque())
            while log and log[0] <= cutoff:
                log.popleft()
            log.extend([now] * cost)
            return _build_result(
                now=now,
                limit=rule.limit,
                used=len(log),
                reset_at=log[0] + rule.window_seconds,
            )
