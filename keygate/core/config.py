"""Settings for the key service, read from the environment.

Three groups, each with its own prefix:
- ``KEYS_``: key table files, key format, expiry, HWID and rotation policy;
- ``APP_``: API keys and per-action rate limits of the HTTP adapter;
- ``LOG_``: log level, format and destination.

``APP_ENV`` (development, testing, staging, production) selects an optional
``.env.<APP_ENV>`` file at the project root that is loaded before the
groups are built.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_ENV = os.getenv("APP_ENV", "development")

PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    env: f".env.{env}" for env in ("development", "testing", "staging", "production")
}

_env_path = PROJECT_ROOT / ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_file = str(_env_path) if _env_path.is_file() else None

# Nested BaseSettings ignore env_file, so the file goes into os.environ first
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_key_settings() -> "KeySettings":
    # BaseSettings fills fields from the environment; checkers see required args
    return KeySettings()  # type: ignore[call-arg]


def _build_app_settings() -> "AppSettings":
    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class KeySettings(BaseSettings):
    """Credential lifecycle configuration.

    Durations are expressed in the units operators think in (hours/minutes);
    the services convert them to milliseconds internally.
    """

    data_file: Path = Field(
        Path("keys.lua"),
        description="Primary key table file",
    )
    backup_file: Path = Field(
        Path("keys.lua.bak"),
        description="Backup copy of the key table, used only as a load fallback",
    )
    key_prefix: str = Field(
        "Photon",
        description="Prefix prepended to generated keys",
        min_length=1,
        max_length=24,
    )
    max_key_length: int = Field(
        64,
        description="Maximum accepted key length (longer keys are rejected on load/import)",
        ge=32,
    )
    expiration_hours: float = Field(
        24.0,
        description="Lifetime of an issued key in hours",
        gt=0,
    )
    hwid_pattern: str = Field(
        "token",
        description="HWID shape: a preset name (token, uuid4, segmented) or a raw regex",
    )
    max_hwid_length: int = Field(
        128,
        description="Maximum accepted HWID length",
        ge=1,
    )
    max_rotations: int = Field(
        3,
        description="Maximum HWID rebinds per owner within the rotation window",
        ge=1,
    )
    rotation_window_hours: float = Field(
        24.0,
        description="Rolling window used to count HWID rebinds",
        gt=0,
    )
    sweep_interval_minutes: float = Field(
        60.0,
        description="Interval between expired-key sweeps",
        gt=0,
    )
    persist_attempts: int = Field(
        3,
        description="Attempts made to persist the key table before a mutation is rolled back",
        ge=1,
    )
    persist_retry_delay_seconds: float = Field(
        0.05,
        description="Delay between persistence attempts",
        ge=0,
    )
    max_import_size_kb: int = Field(
        512,
        description="Maximum size of an uploaded key table for import",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="KEYS_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated list of valid API keys for authentication",
    )
    admin_api_keys: str | None = Field(
        None,
        description="Comma-separated list of API keys allowed to call privileged endpoints",
    )

    rate_limit_enabled: bool = Field(
        True,
        description="Enable rate limiting per caller identity and action",
    )
    rate_limit_strategy: str = Field(
        "fixed_window",
        description="Rate limiting strategy: fixed_window or sliding_log",
    )
    rate_limit_requests: int = Field(
        30,
        description="Default maximum number of actions allowed per window",
        ge=1,
    )
    rate_limit_window_seconds: int = Field(
        60,
        description="Default rate limit window size in seconds",
        ge=1,
    )
    rate_limit_issue_requests: int = Field(
        3,
        description="Maximum key issue attempts per window",
        ge=1,
    )
    rate_limit_issue_window_seconds: int = Field(
        3600,
        description="Window for key issue attempts in seconds",
        ge=1,
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log destination: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int | None = Field(
        10 * 1024 * 1024,
        description="Rotate the log file at this size (None disables rotation)",
    )
    backup_count: int = Field(5, description="Number of rotated log files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """All settings groups; invalid values fail at import time."""

    app_env: str = APP_ENV
    keys: KeySettings = Field(default_factory=_build_key_settings)
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


settings = Settings()
