import sqlite3
import threading
from pathlib import Path

import pytest

from store_backup.checksum import ChecksumEngine
from store_backup.errors import BackupCancelled, BackupError, ChecksumComputeError, EmptyBackupError
from store_backup.onedrive import OneDriveTransport

from conftest import build_system, make_store_db, product_names


class EmptyCopySource:
    """Data source whose copy step produces a 0-byte file."""

    def __init__(self, path):
        self.path = Path(path)

    def snapshot_to(self, target):
        Path(target).write_bytes(b"")
        return Path(target)


class BrokenHashEngine(ChecksumEngine):
    def compute(self, path):
        raise PermissionError(13, "Permission denied", str(path))


class OfflineTransport:
    def upload(self, local_path):
        raise OSError("OneDrive folder not reachable")


def _leftovers(backup_dir):
    return [p.name for p in Path(backup_dir).iterdir() if p.name != "manifest.json"] if Path(backup_dir).exists() else []


def test_create_backup_records_verified_sqlite_copy(sqlite_system):
    record = sqlite_system.service.create_backup("manual")
    assert record.status == "complete"
    assert record.trigger == "manual"
    assert record.size_bytes > 0
    assert Path(record.local_path).exists()
    assert ChecksumEngine().verify(record.local_path, record.checksum)
    assert product_names(record.local_path) == ["nails", "rebar"]
    assert [r.id for r in sqlite_system.store.list()] == [record.id]
    assert not list(sqlite_system.store.backup_dir.glob(".*.partial"))


def test_backup_is_consistent_while_db_open(sqlite_system):
    conn = sqlite_system.data_source.open()
    conn.execute("INSERT INTO products (name, stock) VALUES ('wire', 5)")
    conn.commit()
    record = sqlite_system.service.create_backup("manual")
    assert product_names(record.local_path) == ["nails", "rebar", "wire"]
    sqlite_system.data_source.close()


def test_two_calls_give_two_records(sqlite_system):
    first = sqlite_system.service.create_backup("manual")
    second = sqlite_system.service.create_backup("scheduled")
    assert first.id != second.id
    assert first.local_path != second.local_path
    assert [r.id for r in sqlite_system.store.list()] == [second.id, first.id]


def test_zero_byte_copy_is_a_failure_and_not_listed(tmp_path, clock):
    system = build_system(tmp_path, clock=clock)
    system.service.data_source = EmptyCopySource(system.live_path)
    with pytest.raises(EmptyBackupError):
        system.service.create_backup("manual")
    assert system.store.list() == []
    assert _leftovers(system.store.backup_dir) == []
    health = system.store.health()
    assert "EmptyBackupError" in health.last_error


def test_checksum_failure_discards_copy(tmp_path, clock):
    system = build_system(tmp_path, clock=clock)
    make_store_db(system.live_path)
    system.service.checksum = BrokenHashEngine()
    with pytest.raises(ChecksumComputeError):
        system.service.create_backup("manual")
    assert system.store.list() == []
    assert _leftovers(system.store.backup_dir) == []


def test_corrupt_sqlite_copy_rejected(tmp_path, clock):
    system = build_system(tmp_path, clock=clock)
    system.live_path.write_bytes(b"this is not a database" * 100)
    with pytest.raises(BackupError):
        system.service.create_backup("manual")
    assert system.store.list() == []


def test_missing_database_fails_with_oserror(tmp_path, clock):
    system = build_system(tmp_path, clock=clock)
    with pytest.raises(FileNotFoundError):
        system.service.create_backup("manual")
    assert system.store.health().consecutive_failures == 1


def test_cancelled_backup_is_discarded(sqlite_system):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(BackupCancelled):
        sqlite_system.service.create_backup("manual", cancel=cancel)
    assert sqlite_system.store.list() == []
    assert _leftovers(sqlite_system.store.backup_dir) == []


def test_unknown_trigger_rejected(sqlite_system):
    with pytest.raises(ValueError):
        sqlite_system.service.create_backup("hourly")


def test_upload_failure_keeps_local_backup_and_retries_later(tmp_path, clock):
    system = build_system(tmp_path, clock=clock, transport=OfflineTransport())
    make_store_db(system.live_path)
    record = system.service.create_backup("manual")
    assert record.remote_ref is None
    assert system.store.pending_uploads() == [record.id]
    assert system.store.health().last_error.startswith("OSError")

    system.service.transport = OneDriveTransport(tmp_path / "OneDrive")
    assert system.service.retry_pending_uploads() == [record.id]
    assert system.store.pending_uploads() == []
    remote_ref = system.store.get(record.id).remote_ref
    assert remote_ref == f"onedrive:{Path(record.local_path).name}"
    assert (tmp_path / "OneDrive" / "backups" / Path(record.local_path).name).exists()


def test_onedrive_round_trip(tmp_path):
    transport = OneDriveTransport(tmp_path / "OneDrive")
    src = tmp_path / "store_1.db"
    src.write_bytes(b"backup-bytes")
    ref = transport.upload(src)
    assert transport.upload(src) == ref  # unchanged file is not copied again
    out = transport.download(ref, tmp_path / "back.db")
    assert out.read_bytes() == b"backup-bytes"
    assert transport.get_status()["files_uploaded"] == 1
    with pytest.raises(FileNotFoundError):
        transport.download("onedrive:missing.db", tmp_path / "x.db")


def test_sqlite_source_lists_tables(sqlite_system):
    info = sqlite_system.data_source.list_tables(counts=True)
    assert "products" in info["tables"]
    assert info["row_counts"]["products"] == 2
    assert isinstance(sqlite_system.data_source.open(), sqlite3.Connection)
    sqlite_system.data_source.close()


class FailingRemote:
    """Remote client that fails with something other than an IO error."""

    def __init__(self):
        self.calls = 0

    def upload(self, local_path):
        self.calls += 1
        raise RuntimeError("remote service 503")


def test_unexpected_upload_error_keeps_local_backup(tmp_path, clock):
    remote = FailingRemote()
    system = build_system(tmp_path, clock=clock, transport=remote)
    make_store_db(system.live_path)
    record = system.service.create_backup("manual")
    assert [r.id for r in system.store.list()] == [record.id]
    assert _leftovers(system.store.backup_dir) == [Path(record.local_path).name]
    assert system.store.pending_uploads() == [record.id]
    assert system.store.health().last_error == "RuntimeError: remote service 503"

    assert system.service.retry_pending_uploads() == []
    assert remote.calls == 2
    assert system.store.pending_uploads() == [record.id]
    assert system.store.attempts("upload")[-1]["error"] == "RuntimeError: remote service 503"
