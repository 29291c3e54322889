"""Key store interfaces.

Services should depend on this abstraction (not the concrete implementation)
so the storage backend can be swapped with minimal changes.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class KeyBinding:
    """Persisted binding of a key to its owner and hardware fingerprint.

    Attributes:
        owner_id: Identity of the requester that owns the key.
        hwid: Hardware fingerprint the key is bound to.
        expires_at: Expiry instant in milliseconds since the epoch.
    """

    owner_id: str
    hwid: str
    expires_at: int


@dataclass(frozen=True)
class LoadReport:
    """Outcome of a store load.

    Attributes:
        source: Where the table came from: "primary", "backup" or "empty".
        entries: Number of bindings loaded.
        defects: Number of records skipped while decoding.
    """

    source: str
    entries: int
    defects: int


class AbstractKeyStore(ABC):
    """Interface for the authoritative key table."""

    @abstractmethod
    def load(self) -> LoadReport:
        """Populate the in-memory table from durable storage.

        Implementations must not raise: unreadable storage degrades to an
        empty table.
        """
        raise NotImplementedError

    @abstractmethod
    def save(self) -> None:
        """Persist the in-memory table.

        Raises:
            PersistenceAppError: If the table could not be written.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, key: str) -> KeyBinding | None:
        raise NotImplementedError

    @abstractmethod
    def put(self, key: str, binding: KeyBinding) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> KeyBinding | None:
        raise NotImplementedError

    @abstractmethod
    def all(self) -> dict[str, KeyBinding]:
        """Return a copy of the table in insertion order."""
        raise NotImplementedError

    @abstractmethod
    def snapshot_bytes(self) -> bytes:
        """Return the encoded table as last persisted."""
        raise NotImplementedError

    @abstractmethod
    def restore(self, table: dict[str, KeyBinding]) -> None:
        """Replace the in-memory table wholesale (used to roll back a mutation)."""
        raise NotImplementedError
