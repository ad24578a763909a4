import json
from pathlib import Path

import pytest

from store_backup.checksum import ChecksumEngine
from store_backup.errors import ChecksumMismatch, NotFound, RestoreAlreadyPending
from store_backup.onedrive import OneDriveTransport
from store_backup.restore import RestoreCoordinator
from store_backup.store import BackupStore

from conftest import build_system, make_store_db


def test_stage_writes_descriptor_and_verified_copy(file_system):
    live_before = file_system.live_path.read_bytes()
    record = file_system.service.create_backup("manual")
    intent = file_system.coordinator.stage_restore(record.id)

    data = json.loads(file_system.intent_file.path.read_text())
    assert data["targetBackupId"] == record.id
    assert data["status"] == "pending"
    assert data["stagedChecksum"] == record.checksum
    assert data["requestedAt"] == intent.requested_at.isoformat()
    assert data["attempts"] == 0
    staged = Path(data["stagedFilePath"])
    assert staged.parent == file_system.coordinator.staging_dir.resolve()
    assert ChecksumEngine().verify(staged, data["stagedChecksum"])
    assert not file_system.intent_file.tmp_path.exists()
    # staging never touches the live file
    assert file_system.live_path.read_bytes() == live_before


def test_stage_unknown_backup(file_system):
    with pytest.raises(NotFound):
        file_system.coordinator.stage_restore("19700101_000000_000000")
    assert not file_system.intent_file.exists()


def test_stage_refuses_corrupt_backup(file_system):
    record = file_system.service.create_backup("manual")
    raw = bytearray(Path(record.local_path).read_bytes())
    raw[100] ^= 0xFF
    Path(record.local_path).write_bytes(bytes(raw))
    with pytest.raises(ChecksumMismatch):
        file_system.coordinator.stage_restore(record.id)
    assert not file_system.intent_file.exists()
    assert list(file_system.coordinator.staging_dir.iterdir()) == []


def test_second_stage_rejected_while_pending(file_system):
    record = file_system.service.create_backup("manual")
    file_system.coordinator.stage_restore(record.id)
    with pytest.raises(RestoreAlreadyPending) as exc:
        file_system.coordinator.stage_restore(record.id)
    assert exc.value.target_backup_id == record.id


def test_unreadable_descriptor_blocks_staging(file_system):
    record = file_system.service.create_backup("manual")
    file_system.intent_file.path.write_text("{ half written")
    with pytest.raises(RestoreAlreadyPending):
        file_system.coordinator.stage_restore(record.id)


def test_stage_leaves_single_staged_file(file_system):
    staging = file_system.coordinator.staging_dir
    staging.mkdir(parents=True)
    (staging / "staged-restore-old.db").write_bytes(b"orphan")
    record = file_system.service.create_backup("manual")
    file_system.coordinator.stage_restore(record.id)
    assert [p.name for p in staging.iterdir()] == [f"staged-restore-{record.id}.db"]


def test_missing_local_file_falls_back_to_remote(tmp_path, clock):
    transport = OneDriveTransport(tmp_path / "OneDrive")
    system = build_system(tmp_path, clock=clock, transport=transport)
    make_store_db(system.live_path)
    record = system.service.create_backup("manual")
    assert record.remote_ref
    Path(record.local_path).unlink()
    intent = system.coordinator.stage_restore(record.id)
    assert ChecksumEngine().verify(intent.staged_file_path, record.checksum)


def test_missing_local_file_without_remote(file_system):
    record = file_system.service.create_backup("manual")
    Path(record.local_path).unlink()
    with pytest.raises(FileNotFoundError):
        file_system.coordinator.stage_restore(record.id)
    assert not file_system.intent_file.exists()


def test_staging_dir_must_be_isolated(tmp_path):
    store = BackupStore(tmp_path / "backups")
    with pytest.raises(ValueError):
        RestoreCoordinator(store, None, tmp_path / "backups")
    with pytest.raises(ValueError):
        RestoreCoordinator(store, None, tmp_path / "data", live_path=tmp_path / "data" / "store.db")


def test_expiry_recorded_on_intent(file_system, clock):
    record = file_system.service.create_backup("manual")
    intent = file_system.coordinator.stage_restore(record.id)
    assert (intent.expires_at - intent.requested_at).total_seconds() == 86400
    assert not intent.is_expired(clock())


class LockedFileEngine(ChecksumEngine):
    """Cannot read one particular file, like a backup held open by another process."""

    def __init__(self, locked):
        super().__init__()
        self.locked = Path(locked)

    def compute(self, path):
        if Path(path) == self.locked:
            raise PermissionError(13, "Permission denied", str(path))
        return super().compute(path)


def test_unreadable_local_file_falls_back_to_remote(tmp_path, clock):
    system = build_system(tmp_path, clock=clock, transport=OneDriveTransport(tmp_path / "OneDrive"))
    make_store_db(system.live_path)
    record = system.service.create_backup("manual")
    system.coordinator.checksum = LockedFileEngine(record.local_path)
    intent = system.coordinator.stage_restore(record.id)
    assert ChecksumEngine().verify(intent.staged_file_path, record.checksum)


def test_unreadable_local_file_without_remote(file_system):
    record = file_system.service.create_backup("manual")
    file_system.coordinator.checksum = LockedFileEngine(record.local_path)
    with pytest.raises(PermissionError):
        file_system.coordinator.stage_restore(record.id)
    assert not file_system.intent_file.exists()
