"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
Environment defaults are set before any keygate import so the global
settings object is built with test values.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "test-api-key-123")
os.environ.setdefault("APP_ADMIN_API_KEYS", "test-admin-key-456")
os.environ.setdefault("LOG_FORMAT", "plain")

import pytest

from keygate.adapters.storage.file_store import FileKeyStore
from keygate.core.rate_limit import reset_rate_limiter
from keygate.services.hwid_policy import HwidPolicy
from keygate.services.key_service import KeyLifecycleService

DAY_SECONDS = 24 * 3600
DAY_MS = DAY_SECONDS * 1000


class FakeClock:
    """Deterministic UNIX-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    @property
    def now_ms(self) -> int:
        return int(self.current * 1000)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> FileKeyStore:
    return FileKeyStore(
        tmp_path / "keys.lua",
        tmp_path / "keys.lua.bak",
        max_key_length=64,
    )


@pytest.fixture
def policy(clock: FakeClock) -> HwidPolicy:
    return HwidPolicy(
        "token",
        max_length=64,
        max_rotations=3,
        rotation_window_seconds=DAY_SECONDS,
        clock=clock,
    )


@pytest.fixture
def service(store: FileKeyStore, policy: HwidPolicy, clock: FakeClock) -> KeyLifecycleService:
    store.load()
    return KeyLifecycleService(
        store,
        policy,
        expiration_seconds=DAY_SECONDS,
        persist_retry_delay_seconds=0,
        clock=clock,
    )


@pytest.fixture(autouse=True)
def _fresh_rate_limiter():
    reset_rate_limiter()
    yield
    reset_rate_limiter()
