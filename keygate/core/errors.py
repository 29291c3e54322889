"""Application-level exception types.

This module defines the error kinds raised by the key lifecycle services and
storage adapters. Each kind carries a stable ``code`` so adapters (HTTP, chat
bots) can map it to user-facing text without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Known keys of ``AppError.details``; every key is optional."""

    code: str
    message: str
    hint: str
    owner_id: str
    max_length: int
    actual_length: int
    retry_after: float
    retry_after_ms: int
    rotations_used: int
    rotations_limit: int
    attempts: int
    path: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error of the key service.

    Attributes:
        code: Stable identifier adapters switch on (e.g. ``hwid_in_use``).
        message: Text safe to show to the caller.
        details: Extra context such as ``retry_after_ms`` for rate-limited actions.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails (e.g. invalid_hwid)."""


class ConflictAppError(AppError):
    """Raised when a binding invariant would be violated (already_bound, hwid_in_use)."""


class NotFoundAppError(AppError):
    """Raised when the owner has no live key (not_bound)."""


class RateLimitAppError(AppError):
    """Raised when a bounded-rate policy denies an action (rotation_limit_exceeded)."""


class FormatError(AppError):
    """Raised when a persisted key table cannot be decoded."""


class PersistenceAppError(AppError):
    """Raised when the key table cannot be written to disk."""


class AuthenticationAppError(AppError):
    """Raised when an API key is missing, unknown or lacks the admin tier."""


# Stable error codes shared by services and adapters.
INVALID_HWID = "invalid_hwid"
INVALID_OWNER = "invalid_owner"
ALREADY_BOUND = "already_bound"
HWID_IN_USE = "hwid_in_use"
NOT_BOUND = "not_bound"
ROTATION_LIMIT_EXCEEDED = "rotation_limit_exceeded"
FORMAT_ERROR = "format_error"
PERSISTENCE_FAILURE = "persistence_failure"
