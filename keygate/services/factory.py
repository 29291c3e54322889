"""Factory wiring the key lifecycle service from configuration."""

from __future__ import annotations

import time
from typing import Callable

from keygate.adapters.storage.file_store import FileKeyStore
from keygate.core.config import KeySettings, settings
from keygate.services.hwid_policy import HwidPolicy
from keygate.services.key_service import KeyLifecycleService


def create_key_service(
    key_settings: KeySettings | None = None,
    *,
    clock: Callable[[], float] = time.time,
) -> KeyLifecycleService:
    """Build the store, HWID policy and lifecycle service.

    The store is not loaded here; the application lifespan calls
    ``load()`` at start-up.

    Args:
        key_settings: Settings to use; defaults to the global settings.
        clock: Time source shared by the policy and the service.

    Returns:
        KeyLifecycleService: Service ready for ``store.load()``.
    """
    cfg = key_settings or settings.keys

    store = FileKeyStore(
        cfg.data_file,
        cfg.backup_file,
        max_key_length=cfg.max_key_length,
    )
    policy = HwidPolicy(
        cfg.hwid_pattern,
        max_length=cfg.max_hwid_length,
        max_rotations=cfg.max_rotations,
        rotation_window_seconds=cfg.rotation_window_hours * 3600,
        clock=clock,
    )
    return KeyLifecycleService(
        store,
        policy,
        expiration_seconds=cfg.expiration_hours * 3600,
        key_prefix=cfg.key_prefix,
        max_key_length=cfg.max_key_length,
        persist_attempts=cfg.persist_attempts,
        persist_retry_delay_seconds=cfg.persist_retry_delay_seconds,
        clock=clock,
    )
