"""File-backed key store with backup fallback.

Notes:
- Single writer: one process owns the files. Sharing them between processes
  is unsupported.
- Thread-safe: the table is guarded by a lock, and saves are serialized so
  concurrent callers never interleave writes.
- Crash-safe: every write goes to a temporary file in the target directory
  and is moved into place with ``os.replace``.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path

from keygate.adapters.storage import codec
from keygate.adapters.storage.base import AbstractKeyStore, KeyBinding, LoadReport
from keygate.core.errors import PERSISTENCE_FAILURE, FormatError, PersistenceAppError

logger = logging.getLogger(__name__)


def _write_atomic(path: Path, payload: bytes) -> None:
    """Write ``payload`` to ``path`` via a temp file and atomic rename.

    Raises:
        OSError: If any file operation fails. The temp file is removed.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(
        suffix=".tmp",
        prefix=f".{path.name}.",
        dir=path.parent,
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class FileKeyStore(AbstractKeyStore):
    """Key table kept in memory and persisted to a primary and a backup file."""

    def __init__(
        self,
        primary_path: str | Path,
        backup_path: str | Path,
        *,
        max_key_length: int,
    ) -> None:
        """Initialize the store. Call ``load()`` before use.

        Args:
            primary_path: Authoritative key file.
            backup_path: Copy written after every save, read only on fallback.
            max_key_length: Longest key accepted when decoding.
        """
        self._primary = Path(primary_path)
        self._backup = Path(backup_path)
        self._max_key_length = max_key_length
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._table: dict[str, KeyBinding] = {}

    @property
    def primary_path(self) -> Path:
        return self._primary

    @property
    def backup_path(self) -> Path:
        return self._backup

    def _read(self, path: Path, source: str) -> codec.DecodedTable | None:
        """Read and decode one file, returning None if it is unusable."""

        try:
            data = path.read_bytes()
        except FileNotFoundError:
            logger.info("store.load.missing", extra={"source": source, "path": str(path)})
            return None
        except OSError as exc:
            logger.error(
                "store.load.io_error",
                extra={"source": source, "path": str(path), "error_msg": str(exc)},
            )
            return None

        try:
            return codec.decode(data, max_key_length=self._max_key_length)
        except FormatError as exc:
            logger.warning(
                "store.load.format_error",
                extra={"source": source, "path": str(path), "error_msg": exc.message},
            )
            return None

    def load(self) -> LoadReport:
        """Load the primary file, falling back to the backup, then to empty.

        Never raises. When neither file is usable the empty table is
        persisted immediately so the next start finds a valid file.

        Returns:
            LoadReport describing where the table came from.
        """

        for source, path in (("primary", self._primary), ("backup", self._backup)):
            decoded = self._read(path, source)
            if decoded is None:
                continue

            for defect in decoded.defects:
                logger.warning(
                    "store.load.defect",
                    extra={
                        "source": source,
                        "offset": defect.offset,
                        "reason": defect.reason,
                    },
                )

            with self._lock:
                self._table = dict(decoded.entries)

            if source == "backup":
                logger.warning("store.load.fallback", extra={"path": str(path)})

            logger.info(
                "store.loaded",
                extra={
                    "source": source,
                    "entries": len(decoded.entries),
                    "defects": len(decoded.defects),
                },
            )
            return LoadReport(
                source=source,
                entries=len(decoded.entries),
                defects=len(decoded.defects),
            )

        with self._lock:
            self._table = {}
        try:
            self.save()
        except PersistenceAppError as exc:
            logger.error("store.load.init_failed", extra={"error_msg": exc.message})
        else:
            logger.info("store.load.initialized", extra={"path": str(self._primary)})
        return LoadReport(source="empty", entries=0, defects=0)

    def save(self) -> None:
        """Write the table to the primary file, then to the backup file.

        The primary file is authoritative: once it has been replaced the save
        counts as done, and a failed backup write is only logged.

        Raises:
            PersistenceAppError: If the primary write fails.
        """

        with self._lock:
            payload = codec.encode(self._table)

        with self._write_lock:
            try:
                _write_atomic(self._primary, payload)
            except OSError as exc:
                logger.error(
                    "store.save.failed",
                    extra={"path": str(self._primary), "error_msg": str(exc)},
                )
                raise PersistenceAppError(
                    code=PERSISTENCE_FAILURE,
                    message="Failed to persist key table",
                    details={"path": str(self._primary)},
                ) from exc

            try:
                _write_atomic(self._backup, payload)
            except OSError as exc:
                logger.warning(
                    "store.save.backup_failed",
                    extra={"path": str(self._backup), "error_msg": str(exc)},
                )

        logger.debug("store.saved", extra={"entries": len(self._table), "size": len(payload)})

    def get(self, key: str) -> KeyBinding | None:
        with self._lock:
            return self._table.get(key)

    def put(self, key: str, binding: KeyBinding) -> None:
        with self._lock:
            self._table[key] = binding

    def delete(self, key: str) -> KeyBinding | None:
        with self._lock:
            return self._table.pop(key, None)

    def all(self) -> dict[str, KeyBinding]:
        with self._lock:
            return dict(self._table)

    def snapshot_bytes(self) -> bytes:
        """Return the primary file's bytes, or an encoding of memory if absent."""

        with self._write_lock:
            try:
                return self._primary.read_bytes()
            except FileNotFoundError:
                pass
        with self._lock:
            return codec.encode(self._table)

    def restore(self, table: dict[str, KeyBinding]) -> None:
        with self._lock:
            self._table = dict(table)
