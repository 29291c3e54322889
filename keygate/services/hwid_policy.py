"""HWID shape validation and rotation (rebind) rate policy.

The HWID shape is a deployment parameter: either one of the named presets in
``HWID_PATTERN_PRESETS`` or a raw regular expression. Rotation history is
kept per owner in memory and pruned lazily whenever it is consulted.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

HWID_PATTERN_PRESETS: dict[str, str] = {
    # Opaque printable token without whitespace or quotes
    "token": r"[A-Za-z0-9][A-Za-z0-9._:{}\-]*",
    "uuid4": r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-4[0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}",
    # Fixed-arity dash separated alphanumeric groups, e.g. ABCD-1234-EF56-7890
    "segmented": r"[A-Za-z0-9]{4,8}(?:-[A-Za-z0-9]{4,8}){3}",
}


def resolve_hwid_pattern(pattern: str) -> re.Pattern[str]:
    """Compile a preset name or raw regex into a pattern.

    Raises:
        ValueError: If the raw expression is not a valid regex.
    """

    raw = HWID_PATTERN_PRESETS.get(pattern.strip().lower(), pattern)
    try:
        return re.compile(raw)
    except re.error as exc:
        raise ValueError(f"Invalid HWID pattern: {pattern!r}") from exc


@dataclass(frozen=True)
class RotationDecision:
    """Outcome of a rotation check.

    Attributes:
        allowed: Whether another rebind is allowed now.
        retry_after_ms: Earliest instant (ms since epoch) a rebind is allowed.
        used: Rebinds counted inside the trailing window.
        limit: Maximum rebinds per window.
    """

    allowed: bool
    retry_after_ms: int
    used: int
    limit: int


class HwidPolicy:
    """Validates HWIDs and enforces a bounded rebind rate per owner.

    Checking and recording are separate steps: the caller checks, performs the
    rebind, and records it only once the rebind has been committed. The caller
    is expected to hold its mutation lock across all three.
    """

    def __init__(
        self,
        pattern: str,
        *,
        max_length: int,
        max_rotations: int,
        rotation_window_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_length < 1:
            raise ValueError("max_length must be >= 1")
        if max_rotations < 1:
            raise ValueError("max_rotations must be >= 1")
        if rotation_window_seconds <= 0:
            raise ValueError("rotation_window_seconds must be > 0")

        self._pattern = resolve_hwid_pattern(pattern)
        self._max_length = max_length
        self._max_rotations = max_rotations
        self._window_ms = int(rotation_window_seconds * 1000)
        self._clock = clock
        self._lock = threading.RLock()
        self._rotations: dict[str, deque[int]] = {}

    @property
    def max_length(self) -> int:
        return self._max_length

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def validate(self, hwid: str) -> bool:
        """Return True if ``hwid`` has an acceptable shape."""

        if not isinstance(hwid, str) or not hwid:
            return False
        if len(hwid) > self._max_length or '"' in hwid:
            return False
        return self._pattern.fullmatch(hwid) is not None

    def _prune_locked(self, owner_id: str, now_ms: int) -> deque[int]:
        history = self._rotations.get(owner_id)
        if history is None:
            return deque()
        cutoff = now_ms - self._window_ms
        while history and history[0] <= cutoff:
            history.popleft()
        if not history:
            del self._rotations[owner_id]
        return history

    def check_rotation_allowed(self, owner_id: str, now_ms: int | None = None) -> RotationDecision:
        """Check whether ``owner_id`` may rebind its HWID now.

        Args:
            owner_id: Owner requesting the rebind.
            now_ms: Current instant in ms; defaults to the policy clock.

        Returns:
            RotationDecision; when denied, ``retry_after_ms`` is when the
            oldest counted rebind leaves the window.
        """

        now = self._now_ms() if now_ms is None else now_ms
        with self._lock:
            history = self._prune_locked(owner_id, now)
            used = len(history)
            if used < self._max_rotations:
                return RotationDecision(
                    allowed=True, retry_after_ms=now, used=used, limit=self._max_rotations
                )
            # Oldest rebind that must expire before the count drops below the limit
            oldest = history[used - self._max_rotations]
            return RotationDecision(
                allowed=False,
                retry_after_ms=oldest + self._window_ms,
                used=used,
                limit=self._max_rotations,
            )

    def record_rotation(self, owner_id: str, now_ms: int | None = None) -> None:
        now = self._now_ms() if now_ms is None else now_ms
        with self._lock:
            history = self._rotations.setdefault(owner_id, deque())
            history.append(now)
            count = len(history)
        logger.debug("hwid.rotation_recorded", extra={"rotation_count": count})

    def forget(self, owner_id: str) -> None:
        """Drop the rotation history of an owner whose key is gone."""

        with self._lock:
            self._rotations.pop(owner_id, None)
