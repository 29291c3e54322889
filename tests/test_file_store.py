"""Tests for the file-backed key store (load fallback and atomic saves)."""

import logging

import pytest

from keygate.adapters.storage import codec
from keygate.adapters.storage.base import KeyBinding
from keygate.adapters.storage.file_store import FileKeyStore
from keygate.core.errors import PersistenceAppError


def _binding(owner: str = "u1", hwid: str = "hw1", expires_at: int = 10) -> KeyBinding:
    return KeyBinding(owner_id=owner, hwid=hwid, expires_at=expires_at)


class TestLoad:
    """Tests for startup loading and fallback order."""

    def test_missing_files_initialize_empty_table(self, store: FileKeyStore) -> None:
        report = store.load()

        assert report.source == "empty"
        assert store.all() == {}
        assert store.primary_path.read_bytes() == b"return {\n}\n"
        assert store.backup_path.read_bytes() == b"return {\n}\n"

    def test_loads_primary(self, store: FileKeyStore) -> None:
        store.primary_path.write_bytes(codec.encode({"k1": _binding()}))
        store.backup_path.write_bytes(codec.encode({"k2": _binding(owner="u2")}))

        report = store.load()

        assert report.source == "primary"
        assert report.entries == 1
        assert set(store.all()) == {"k1"}

    def test_falls_back_to_backup_on_corrupt_primary(self, store: FileKeyStore, caplog) -> None:
        store.primary_path.write_bytes(b"garbage that is not a table")
        store.backup_path.write_bytes(codec.encode({"k2": _binding(owner="u2")}))

        with caplog.at_level(logging.WARNING):
            report = store.load()

        assert report.source == "backup"
        assert set(store.all()) == {"k2"}
        assert any(r.getMessage() == "store.load.fallback" for r in caplog.records)

    def test_falls_back_to_backup_on_truncated_primary(self, store: FileKeyStore) -> None:
        full = codec.encode({"k1": _binding()})
        store.primary_path.write_bytes(full[: len(full) // 2])
        store.backup_path.write_bytes(full)

        report = store.load()

        assert report.source == "backup"
        assert store.get("k1") == _binding()

    def test_unreadable_primary_and_missing_backup_yield_empty(self, store: FileKeyStore) -> None:
        store.primary_path.mkdir()

        report = store.load()

        assert report.source == "empty"
        assert store.all() == {}

    def test_defective_records_are_skipped_and_counted(self, store: FileKeyStore) -> None:
        store.primary_path.write_text(
            "return {\n"
            '    ["k1"] = { userId = "u1", hwid = "h1", expiresAt = 1 },\n'
            '    ["k2"] = { userId = "u2" },\n'
            "}\n"
        )

        report = store.load()

        assert report.source == "primary"
        assert report.entries == 1
        assert report.defects == 1


class TestSave:
    """Tests for persistence."""

    def test_save_writes_primary_and_backup(self, store: FileKeyStore) -> None:
        store.load()
        store.put("k1", _binding())

        store.save()

        expected = codec.encode({"k1": _binding()})
        assert store.primary_path.read_bytes() == expected
        assert store.backup_path.read_bytes() == expected

    def test_save_leaves_no_temp_files(self, store: FileKeyStore, tmp_path) -> None:
        store.load()
        store.put("k1", _binding())
        store.save()

        assert sorted(p.name for p in tmp_path.iterdir()) == ["keys.lua", "keys.lua.bak"]

    def test_save_failure_raises_persistence_error(self, tmp_path) -> None:
        blocked = tmp_path / "blocked"
        blocked.mkdir()
        store = FileKeyStore(blocked, tmp_path / "keys.lua.bak", max_key_length=64)
        store.put("k1", _binding())

        with pytest.raises(PersistenceAppError) as exc_info:
            store.save()

        assert exc_info.value.code == "persistence_failure"
        assert exc_info.value.details == {"path": str(blocked)}
        assert [p.name for p in blocked.iterdir()] == []

    def test_backup_failure_keeps_primary_write(self, tmp_path, caplog) -> None:
        blocked = tmp_path / "blocked.bak"
        blocked.mkdir()
        store = FileKeyStore(tmp_path / "keys.lua", blocked, max_key_length=64)
        store.put("k1", _binding())

        with caplog.at_level(logging.WARNING):
            store.save()

        assert store.primary_path.read_bytes() == codec.encode({"k1": _binding()})
        assert "store.save.backup_failed" in [r.getMessage() for r in caplog.records]

    def test_reload_after_save_restores_table(self, store: FileKeyStore, tmp_path) -> None:
        store.load()
        store.put("k1", _binding())
        store.put("k2", _binding(owner="u2", hwid="hw2", expires_at=20))
        store.save()

        reopened = FileKeyStore(store.primary_path, store.backup_path, max_key_length=64)
        reopened.load()

        assert reopened.all() == store.all()


class TestTableAccess:
    """Tests for in-memory access helpers."""

    def test_delete_returns_removed_binding(self, store: FileKeyStore) -> None:
        store.put("k1", _binding())

        assert store.delete("k1") == _binding()
        assert store.delete("k1") is None

    def test_all_returns_a_copy(self, store: FileKeyStore) -> None:
        store.put("k1", _binding())

        snapshot = store.all()
        snapshot.clear()

        assert store.get("k1") == _binding()

    def test_restore_replaces_table(self, store: FileKeyStore) -> None:
        store.put("k1", _binding())

        store.restore({"k2": _binding(owner="u2")})

        assert set(store.all()) == {"k2"}

    def test_snapshot_bytes_prefers_persisted_file(self, store: FileKeyStore) -> None:
        store.load()
        store.put("k1", _binding())

        assert store.snapshot_bytes() == b"return {\n}\n"
        store.save()
        assert store.snapshot_bytes() == codec.encode({"k1": _binding()})
