"""Key lifecycle service: issuance, rebinding, revocation, import and expiry.

This service is the only component adapters (HTTP routes, chat bots) call to
change the key table. It enforces the binding invariants:
- at most one live key per owner,
- at most one live key per HWID,
- a key's expiry is fixed at issuance and never extended by a rebind.

Every mutating operation runs inside a single ``asyncio.Lock`` and persists
the table before releasing it, so a check ("is this owner already bound?")
and the insert that depends on it can never be interleaved with another
mutation. If persistence keeps failing after the configured attempts, the
in-memory table is rolled back to the last persisted state and
``PersistenceAppError`` is raised.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, replace
from typing import Callable

from keygate.adapters.storage import codec
from keygate.adapters.storage.base import AbstractKeyStore, KeyBinding, LoadReport
from keygate.core.errors import (
    ALREADY_BOUND,
    HWID_IN_USE,
    INVALID_HWID,
    INVALID_OWNER,
    NOT_BOUND,
    PERSISTENCE_FAILURE,
    ROTATION_LIMIT_EXCEEDED,
    ConflictAppError,
    NotFoundAppError,
    PersistenceAppError,
    RateLimitAppError,
    ValidationAppError,
)
from keygate.core.logging import hash_for_log
from keygate.services.hwid_policy import HwidPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    """Read-only view of a key handed to adapters.

    All instants are milliseconds since the epoch. ``issued_at`` is derived
    from ``expires_at`` because the key file only records expiry.
    """

    key: str
    owner_id: str
    hwid: str
    issued_at: int
    expires_at: int

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at


@dataclass(frozen=True)
class ImportReport:
    """Outcome of merging an uploaded key table.

    Attributes:
        added: Keys inserted into the table.
        skipped: Decoded keys not inserted (already present, expired, or
            colliding with a live binding).
        defects: Records the codec could not parse.
    """

    added: int
    skipped: int
    defects: int


class KeyLifecycleService:
    """Orchestrates the key table on top of the store and HWID policy."""

    def __init__(
        self,
        store: AbstractKeyStore,
        hwid_policy: HwidPolicy,
        *,
        expiration_seconds: float,
        key_prefix: str = "Photon",
        max_key_length: int = 64,
        persist_attempts: int = 3,
        persist_retry_delay_seconds: float = 0.05,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the service.

        Args:
            store: Loaded key store.
            hwid_policy: HWID validation and rotation policy.
            expiration_seconds: Lifetime of issued keys.
            key_prefix: Prefix of generated keys.
            max_key_length: Longest key the store accepts.
            persist_attempts: Save attempts before a mutation is rolled back.
            persist_retry_delay_seconds: Delay between save attempts.
            clock: Time source returning UNIX seconds.

        Raises:
            ValueError: If the configuration cannot produce valid keys.
        """
        if expiration_seconds <= 0:
            raise ValueError("expiration_seconds must be > 0")
        if persist_attempts < 1:
            raise ValueError("persist_attempts must be >= 1")
        if not key_prefix or not codec.is_encodable(key_prefix):
            raise ValueError("key_prefix must be a non-empty string without quotes")
        # prefix + "-" + 16 hex + "-" + 12 hex
        if len(key_prefix) + 30 > max_key_length:
            raise ValueError("key_prefix is too long for max_key_length")

        self._store = store
        self._policy = hwid_policy
        self._expiration_ms = int(expiration_seconds * 1000)
        self._key_prefix = key_prefix
        self._max_key_length = max_key_length
        self._persist_attempts = persist_attempts
        self._persist_retry_delay = persist_retry_delay_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def hwid_policy(self) -> HwidPolicy:
        return self._policy

    @property
    def store(self) -> AbstractKeyStore:
        return self._store

    def load(self) -> LoadReport:
        """Load the table at process start. Never raises."""
        return self._store.load()

    def export_table(self) -> bytes:
        """Return the persisted key file for transfer to clients."""
        return self._store.snapshot_bytes()

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _to_credential(self, key: str, binding: KeyBinding) -> Credential:
        return Credential(
            key=key,
            owner_id=binding.owner_id,
            hwid=binding.hwid,
            issued_at=binding.expires_at - self._expiration_ms,
            expires_at=binding.expires_at,
        )

    def _generate_key(self, table: dict[str, KeyBinding]) -> str:
        while True:
            key = f"{self._key_prefix}-{secrets.token_hex(8)}-{secrets.token_hex(6)}"
            if key not in table:
                return key

    @staticmethod
    def _find_live(
        table: dict[str, KeyBinding],
        now_ms: int,
        *,
        owner_id: str | None = None,
        hwid: str | None = None,
    ) -> tuple[str, KeyBinding] | None:
        for key, binding in table.items():
            if binding.expires_at <= now_ms:
                continue
            if owner_id is not None and binding.owner_id == owner_id:
                return key, binding
            if hwid is not None and binding.hwid == hwid:
                return key, binding
        return None

    def _validate_owner(self, owner_id: str) -> None:
        if not isinstance(owner_id, str) or not owner_id.strip() or not codec.is_encodable(owner_id):
            raise ValidationAppError(
                code=INVALID_OWNER,
                message="Owner id must be a non-empty string without quotes",
            )

    def _validate_hwid(self, hwid: str) -> None:
        if not self._policy.validate(hwid):
            raise ValidationAppError(
                code=INVALID_HWID,
                message="HWID is malformed",
                details={
                    "max_length": self._policy.max_length,
                    "actual_length": len(hwid) if isinstance(hwid, str) else 0,
                },
            )

    async def _commit(self, previous: dict[str, KeyBinding], operation: str) -> None:
        """Persist the table, rolling back to ``previous`` if every attempt fails.

        Cancellation while persisting also rolls back before it propagates.
        Must be called with the mutation lock held.
        """

        last_error: PersistenceAppError | None = None
        try:
            for attempt in range(1, self._persist_attempts + 1):
                try:
                    await asyncio.to_thread(self._store.save)
                    return
                except PersistenceAppError as exc:
                    last_error = exc
                    logger.warning(
                        "key.persist_retry",
                        extra={
                            "operation": operation,
                            "attempt": attempt,
                            "max_attempts": self._persist_attempts,
                        },
                    )
                    if attempt < self._persist_attempts and self._persist_retry_delay:
                        await asyncio.sleep(self._persist_retry_delay)
        except asyncio.CancelledError:
            self._store.restore(previous)
            logger.warning("key.persist_cancelled", extra={"operation": operation})
            raise

        self._store.restore(previous)
        logger.error(
            "key.persist_failed",
            extra={"operation": operation, "attempts": self._persist_attempts},
        )
        raise PersistenceAppError(
            code=PERSISTENCE_FAILURE,
            message="The key table could not be saved; the change was not applied",
            details={"attempts": self._persist_attempts},
        ) from last_error

    async def issue(self, owner_id: str, hwid: str) -> Credential:
        """Issue a new key bound to ``owner_id`` and ``hwid``.

        Raises:
            ValidationAppError: invalid_owner / invalid_hwid.
            ConflictAppError: already_bound if the owner has a live key,
                hwid_in_use if another live key holds the HWID.
            PersistenceAppError: If the table could not be saved.
        """
        self._validate_owner(owner_id)
        self._validate_hwid(hwid)

        async with self._lock:
            now = self.now_ms()
            table = self._store.all()

            if self._find_live(table, now, owner_id=owner_id):
                raise ConflictAppError(
                    code=ALREADY_BOUND,
                    message="Owner already has a live key",
                )
            if self._find_live(table, now, hwid=hwid):
                raise ConflictAppError(
                    code=HWID_IN_USE,
                    message="HWID is already bound to another key",
                )

            # Expired leftovers for this owner or HWID are terminal; drop them now
            for key, binding in table.items():
                if binding.owner_id == owner_id or binding.hwid == hwid:
                    self._store.delete(key)

            key = self._generate_key(table)
            binding = KeyBinding(owner_id=owner_id, hwid=hwid, expires_at=now + self._expiration_ms)
            self._store.put(key, binding)
            await self._commit(table, "issue")

        logger.info(
            "key.issued",
            extra={"owner_hash": hash_for_log(owner_id), "expires_at": binding.expires_at},
        )
        return self._to_credential(key, binding)

    async def revoke(self, owner_id: str) -> bool:
        """Remove the owner's key regardless of expiry.

        Returns:
            False if the owner had no key.
        """
        async with self._lock:
            table = self._store.all()
            keys = [key for key, binding in table.items() if binding.owner_id == owner_id]
            if not keys:
                return False
            for key in keys:
                self._store.delete(key)
            await self._commit(table, "revoke")
            self._policy.forget(owner_id)

        logger.info("key.revoked", extra={"owner_hash": hash_for_log(owner_id)})
        return True

    async def rebind_hwid(self, owner_id: str, new_hwid: str) -> Credential:
        """Move the owner's live key to ``new_hwid`` without changing its expiry.

        Rebinding to the HWID already bound is a no-op and does not count as
        a rotation.

        Raises:
            ValidationAppError: invalid_hwid.
            NotFoundAppError: not_bound if the owner has no live key.
            ConflictAppError: hwid_in_use.
            RateLimitAppError: rotation_limit_exceeded, with retry_after_ms.
            PersistenceAppError: If the table could not be saved.
        """
        self._validate_hwid(new_hwid)

        async with self._lock:
            now = self.now_ms()
            table = self._store.all()

            found = self._find_live(table, now, owner_id=owner_id)
            if found is None:
                raise NotFoundAppError(
                    code=NOT_BOUND,
                    message="Owner has no live key",
                )
            key, binding = found
            if binding.hwid == new_hwid:
                return self._to_credential(key, binding)

            if self._find_live(table, now, hwid=new_hwid):
                raise ConflictAppError(
                    code=HWID_IN_USE,
                    message="HWID is already bound to another key",
                )

            decision = self._policy.check_rotation_allowed(owner_id, now)
            if not decision.allowed:
                raise RateLimitAppError(
                    code=ROTATION_LIMIT_EXCEEDED,
                    message="HWID rotation limit reached",
                    details={
                        "retry_after_ms": decision.retry_after_ms,
                        "retry_after": max(0.0, (decision.retry_after_ms - now) / 1000),
                        "rotations_used": decision.used,
                        "rotations_limit": decision.limit,
                    },
                )

            for stale_key, stale in table.items():
                if stale_key != key and stale.hwid == new_hwid:
                    self._store.delete(stale_key)

            rebound = replace(binding, hwid=new_hwid)
            self._store.put(key, rebound)
            await self._commit(table, "rebind")
            self._policy.record_rotation(owner_id, now)

        logger.info(
            "key.rebound",
            extra={"owner_hash": hash_for_log(owner_id), "rotations_used": decision.used + 1},
        )
        return self._to_credential(key, rebound)

    def lookup(self, owner_id: str) -> Credential | None:
        """Return the owner's live key, if any."""
        found = self._find_live(self._store.all(), self.now_ms(), owner_id=owner_id)
        return self._to_credential(*found) if found else None

    def lookup_key(self, key: str) -> Credential | None:
        """Return the live credential for a presented key, if any."""
        binding = self._store.get(key)
        if binding is None or binding.expires_at <= self.now_ms():
            return None
        return self._to_credential(key, binding)

    def list_all(self) -> list[Credential]:
        """Return every stored key ordered by expiry (ties keep insertion order).

        Expired keys awaiting the next sweep are included.
        """
        entries = sorted(self._store.all().items(), key=lambda item: item[1].expires_at)
        return [self._to_credential(key, binding) for key, binding in entries]

    async def import_merge(self, data: bytes | str) -> ImportReport:
        """Merge keys from an uploaded key table.

        Existing keys are never overwritten. A live key whose owner or HWID
        already holds a live key is skipped. Expired keys are imported as-is
        and left for the next sweep; they claim neither owner nor HWID.

        Raises:
            FormatError: If the upload is not a key table.
            PersistenceAppError: If the table could not be saved.
        """
        decoded = codec.decode(data, max_key_length=self._max_key_length)

        async with self._lock:
            now = self.now_ms()
            table = self._store.all()
            live = [binding for binding in table.values() if binding.expires_at > now]
            owners = {binding.owner_id for binding in live}
            hwids = {binding.hwid for binding in live}

            added = 0
            skipped = 0
            for key, binding in decoded.entries.items():
                expired = binding.expires_at <= now
                if key in table or (
                    not expired and (binding.owner_id in owners or binding.hwid in hwids)
                ):
                    skipped += 1
                    continue
                self._store.put(key, binding)
                if not expired:
                    owners.add(binding.owner_id)
                    hwids.add(binding.hwid)
                added += 1

            if added:
                await self._commit(table, "import")

        logger.info(
            "key.imported",
            extra={"added": added, "skipped": skipped, "defects": len(decoded.defects)},
        )
        return ImportReport(added=added, skipped=skipped, defects=len(decoded.defects))

    async def sweep(self, now_ms: int | None = None) -> int:
        """Remove every key with ``expires_at <= now``.

        Persists only when something was removed.

        Returns:
            Number of keys removed.
        """
        async with self._lock:
            now = self.now_ms() if now_ms is None else now_ms
            table = self._store.all()
            expired = [key for key, binding in table.items() if binding.expires_at <= now]
            if not expired:
                return 0
            for key in expired:
                self._store.delete(key)
            await self._commit(table, "sweep")

            remaining_owners = {binding.owner_id for binding in self._store.all().values()}
            for key in expired:
                owner_id = table[key].owner_id
                if owner_id not in remaining_owners:
                    self._policy.forget(owner_id)

        logger.info("key.swept", extra={"removed": len(expired)})
        return len(expired)
