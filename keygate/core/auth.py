"""API key authentication and authorization for the HTTP adapter.

Two tiers of callers are recognised:
- callers (``APP_API_KEYS``): front-ends that issue, look up and rebind keys
  on behalf of end users;
- admins (``APP_ADMIN_API_KEYS``): operators allowed to revoke, list,
  import, sweep and download the key table.

Admin keys are implicitly valid caller keys. The key lifecycle service itself
performs no authorization; deciding who may call what is this module's job.
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import Header, HTTPException, status

from keygate.core.config import settings
from keygate.core.errors import AuthenticationAppError
from keygate.core.logging import hash_for_log

logger = logging.getLogger(__name__)


def parse_api_keys(keys_string: str | None) -> set[str]:
    """Split a comma-separated key list, dropping blanks and surrounding spaces.

    Examples:
        >>> parse_api_keys("key1, key2 , key3 ") == {"key1", "key2", "key3"}
        True
        >>> parse_api_keys(None)
        set()
    """
    if not keys_string:
        return set()

    return {key.strip() for key in keys_string.split(",") if key.strip()}


def validate_api_key(provided_key: str, *, admin: bool = False) -> None:
    """Validate that the provided API key grants the requested tier.

    Args:
        provided_key: API key to validate.
        admin: Require an admin key instead of a caller key.

    Raises:
        AuthenticationAppError: If the key is invalid or no keys are configured.
    """
    admin_keys = parse_api_keys(settings.app.admin_api_keys)
    valid_keys = admin_keys if admin else parse_api_keys(settings.app.api_keys) | admin_keys

    if not valid_keys:
        logger.error(
            "api_key_validation_failed",
            extra={"reason": "api_keys_not_configured", "admin": admin},
        )
        raise AuthenticationAppError(
            code="api_keys_not_configured",
            message="API key authentication is enabled but no valid keys are configured",
            details={
                "hint": "Set APP_API_KEYS / APP_ADMIN_API_KEYS or disable auth with APP_API_KEY_REQUIRED=false"
            },
        )

    if provided_key not in valid_keys:
        logger.warning(
            "api_key_validation_failed",
            extra={
                "reason": "not_admin" if admin else "invalid_api_key",
                "api_key_hash": hash_for_log(provided_key),
            },
        )
        raise AuthenticationAppError(
            code="admin_required" if admin else "invalid_api_key",
            message="Admin API key required" if admin else "Invalid or missing API key",
        )


def _verify(x_api_key: str | None, *, admin: bool) -> str:
    if not settings.app.api_key_required:
        logger.debug("auth.skipped", extra={"reason": "auth_required_false"})
        return "anonymous"

    if not x_api_key:
        logger.warning("auth.missing_key", extra={"api_key_present": False, "admin": admin})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing API key. Provide X-API-Key header.",
        )

    try:
        validate_api_key(x_api_key, admin=admin)
    except AuthenticationAppError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=exc.message,
        ) from exc

    caller = hash_for_log(x_api_key)
    logger.debug("auth.success", extra={"api_key_hash": caller, "admin": admin})
    return caller


async def verify_api_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> str:
    """FastAPI dependency authenticating a caller.

    Returns:
        Stable hash of the caller's API key ("anonymous" when auth is off).

    Raises:
        HTTPException: 403 Forbidden if authentication fails.
    """
    return _verify(x_api_key, admin=False)


async def verify_admin_key(
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> str:
    """FastAPI dependency restricting a route to admin callers."""
    return _verify(x_api_key, admin=True)
