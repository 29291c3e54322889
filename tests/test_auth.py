"""Unit tests for API key authentication module."""

from unittest.mock import patch

import pytest
from fastapi import HTTPException

from keygate.core.auth import parse_api_keys, validate_api_key, verify_admin_key, verify_api_key
from keygate.core.errors import AuthenticationAppError
from keygate.core.logging import hash_for_log


def _configure(mock_settings, *, required=True, api_keys=None, admin_keys=None) -> None:
    mock_settings.app.api_key_required = required
    mock_settings.app.api_keys = api_keys
    mock_settings.app.admin_api_keys = admin_keys


class TestParseAPIKeys:
    """Test API key parsing utility function."""

    def test_parse_single_key(self) -> None:
        """Test parsing a single API key."""
        result = parse_api_keys("my-secret-key")
        assert result == {"my-secret-key"}

    def test_parse_multiple_keys(self) -> None:
        result = parse_api_keys("key1,key2,key3")
        assert result == {"key1", "key2", "key3"}

    def test_parse_keys_with_whitespace(self) -> None:
        """Test that whitespace is trimmed from keys."""
        result = parse_api_keys("key1 , key2  ,  key3")
        assert result == {"key1", "key2", "key3"}

    @pytest.mark.parametrize("raw", [None, "", "   ,  ,  "])
    def test_parse_empty_inputs_return_empty_set(self, raw) -> None:
        assert parse_api_keys(raw) == set()

    def test_parse_removes_duplicate_keys(self) -> None:
        result = parse_api_keys("key1,key2,key1,key3,key2")
        assert result == {"key1", "key2", "key3"}


class TestValidateAPIKey:
    """Test core API key validation logic."""

    @patch("keygate.core.auth.settings")
    def test_validate_raises_when_no_keys_configured(self, mock_settings) -> None:
        """Test error when authentication is required but no keys are configured."""
        _configure(mock_settings, api_keys=None, admin_keys="")

        with pytest.raises(AuthenticationAppError) as exc_info:
            validate_api_key("some-key")

        assert exc_info.value.code == "api_keys_not_configured"
        assert "no valid keys are configured" in exc_info.value.message

    @patch("keygate.core.auth.settings")
    def test_validate_accepts_caller_key(self, mock_settings) -> None:
        _configure(mock_settings, api_keys="valid-key-1,valid-key-2")

        validate_api_key("valid-key-1")
        validate_api_key("valid-key-2")

    @patch("keygate.core.auth.settings")
    def test_validate_rejects_invalid_key(self, mock_settings) -> None:
        _configure(mock_settings, api_keys="valid-key-1,valid-key-2")

        with pytest.raises(AuthenticationAppError) as exc_info:
            validate_api_key("invalid-key")

        assert exc_info.value.code == "invalid_api_key"
        assert "Invalid or missing API key" in exc_info.value.message

    @patch("keygate.core.auth.settings")
    def test_validate_handles_whitespace_in_configured_keys(self, mock_settings) -> None:
        """Configured keys are trimmed; presented keys are not."""
        _configure(mock_settings, api_keys=" key1 , key2 , key3 ")

        validate_api_key("key1")
        validate_api_key("key2")

        with pytest.raises(AuthenticationAppError):
            validate_api_key(" key1 ")

    @patch("keygate.core.auth.settings")
    def test_admin_key_is_also_a_caller_key(self, mock_settings) -> None:
        _configure(mock_settings, api_keys="caller", admin_keys="admin")

        validate_api_key("admin")
        validate_api_key("admin", admin=True)

    @patch("keygate.core.auth.settings")
    def test_caller_key_is_not_an_admin_key(self, mock_settings) -> None:
        _configure(mock_settings, api_keys="caller", admin_keys="admin")

        with pytest.raises(AuthenticationAppError) as exc_info:
            validate_api_key("caller", admin=True)

        assert exc_info.value.code == "admin_required"

    @patch("keygate.core.auth.settings")
    def test_admin_tier_requires_admin_keys(self, mock_settings) -> None:
        _configure(mock_settings, api_keys="caller", admin_keys=None)

        with pytest.raises(AuthenticationAppError) as exc_info:
            validate_api_key("caller", admin=True)

        assert exc_info.value.code == "api_keys_not_configured"


class TestVerifyAPIKeyDependency:
    """Test FastAPI dependencies for API key verification."""

    @pytest.mark.asyncio
    @patch("keygate.core.auth.settings")
    async def test_verify_bypassed_when_auth_disabled(self, mock_settings) -> None:
        """Test that dependencies allow requests when auth is disabled."""
        _configure(mock_settings, required=False)

        assert await verify_api_key(x_api_key=None) == "anonymous"
        assert await verify_admin_key(x_api_key=None) == "anonymous"

    @pytest.mark.asyncio
    @patch("keygate.core.auth.settings")
    async def test_verify_raises_403_when_header_missing(self, mock_settings) -> None:
        _configure(mock_settings, api_keys="valid-key")

        with pytest.raises(HTTPException) as exc_info:
            await verify_api_key(x_api_key=None)

        assert exc_info.value.status_code == 403
        assert "Missing API key" in exc_info.value.detail

    @pytest.mark.asyncio
    @patch("keygate.core.auth.settings")
    async def test_verify_raises_403_when_key_invalid(self, mock_settings) -> None:
        _configure(mock_settings, api_keys="valid-key")

        with pytest.raises(HTTPException) as exc_info:
            await verify_api_key(x_api_key="wrong-key")

        assert exc_info.value.status_code == 403
        assert "Invalid or missing API key" in exc_info.value.detail

    @pytest.mark.asyncio
    @patch("keygate.core.auth.settings")
    async def test_verify_returns_key_hash(self, mock_settings) -> None:
        """The caller identity is a digest, never the raw key."""
        _configure(mock_settings, api_keys="my-valid-key,another-key")

        assert await verify_api_key(x_api_key="my-valid-key") == hash_for_log("my-valid-key")

    @pytest.mark.asyncio
    @patch("keygate.core.auth.settings")
    async def test_verify_admin_rejects_caller_key(self, mock_settings) -> None:
        _configure(mock_settings, api_keys="caller", admin_keys="admin")

        with pytest.raises(HTTPException) as exc_info:
            await verify_admin_key(x_api_key="caller")

        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == "Admin API key required"

    @pytest.mark.asyncio
    @patch("keygate.core.auth.settings")
    async def test_verify_raises_403_when_keys_not_configured(self, mock_settings) -> None:
        _configure(mock_settings, api_keys=None)

        with pytest.raises(HTTPException) as exc_info:
            await verify_api_key(x_api_key="some-key")

        assert exc_info.value.status_code == 403
        assert "no valid keys are configured" in exc_info.value.detail
