import errno
from pathlib import Path

import pytest

from store_backup.checksum import ChecksumEngine
from store_backup.startup_restore import RestoreState, safety_copy_path, swap_temp_path

from conftest import product_names

MODIFIED = b"MODIFIED-AFTER-BACKUP" * 50


class SimulatedCrash(BaseException):
    """Stands in for the process dying mid-restore."""


class UnreadableEngine(ChecksumEngine):
    def verify(self, path, expected):
        raise PermissionError(13, "Permission denied", str(path))


def _stage_then_modify(system):
    original = system.live_path.read_bytes()
    record = system.service.create_backup("manual")
    system.coordinator.stage_restore(record.id)
    system.live_path.write_bytes(MODIFIED)
    return original, record


def test_no_pending_restore(file_system):
    assert file_system.startup.process_pending_restore() is False
    assert file_system.startup.state == RestoreState.NO_INTENT


def test_file_restore_round_trip(file_system):
    original, record = _stage_then_modify(file_system)
    staged = file_system.coordinator.staged_path_for(record.id)

    assert file_system.startup.process_pending_restore() is True
    assert file_system.live_path.read_bytes() == original
    assert safety_copy_path(file_system.live_path).read_bytes() == MODIFIED
    assert not file_system.intent_file.exists()
    assert not staged.exists()
    assert not swap_temp_path(file_system.live_path).exists()
    # restarting again is a no-op
    assert file_system.startup.process_pending_restore() is False


def test_sqlite_restore_brings_back_rows(sqlite_system):
    record = sqlite_system.service.create_backup("manual")
    conn = sqlite_system.data_source.open()
    conn.execute("INSERT INTO products (name, stock) VALUES ('wire', 5)")
    conn.commit()
    sqlite_system.data_source.close()
    sqlite_system.coordinator.stage_restore(record.id)

    outcome = sqlite_system.startup.run()
    assert outcome.state == RestoreState.APPLIED
    assert product_names(sqlite_system.live_path) == ["nails", "rebar"]


def test_tampered_staged_file_aborts(file_system):
    _, record = _stage_then_modify(file_system)
    staged = file_system.coordinator.staged_path_for(record.id)
    raw = bytearray(staged.read_bytes())
    raw[10] ^= 0x01
    staged.write_bytes(bytes(raw))

    outcome = file_system.startup.run()
    assert outcome.state == RestoreState.ABORTED
    assert "checksum mismatch" in outcome.message
    assert "intact" in outcome.message
    assert file_system.live_path.read_bytes() == MODIFIED
    assert not file_system.intent_file.exists()
    assert not staged.exists()


def test_missing_staged_file_aborts(file_system):
    _, record = _stage_then_modify(file_system)
    file_system.coordinator.staged_path_for(record.id).unlink()
    assert file_system.startup.run().state == RestoreState.ABORTED
    assert file_system.live_path.read_bytes() == MODIFIED
    assert not file_system.intent_file.exists()


def test_corrupt_descriptor_is_discarded(file_system):
    file_system.intent_file.path.write_text('{"targetBackupId": "b1", "stagedFile')
    outcome = file_system.startup.run()
    assert outcome.state == RestoreState.ABORTED
    assert "unreadable" in outcome.message
    assert not file_system.intent_file.exists()


def test_non_pending_descriptor_is_discarded(file_system):
    _stage_then_modify(file_system)
    intent = file_system.intent_file.read()
    intent.status = "applied"
    file_system.intent_file.write(intent)
    assert file_system.startup.run().state == RestoreState.ABORTED
    assert file_system.live_path.read_bytes() == MODIFIED


def test_crash_before_rename_keeps_original_and_retries(file_system, monkeypatch):
    original, _ = _stage_then_modify(file_system)

    def fail_replace(src, dst, attempts=None):
        raise OSError(errno.EIO, "I/O error", str(dst))

    monkeypatch.setattr("store_backup.startup_restore.atomic_replace", fail_replace)
    outcome = file_system.startup.run()
    assert outcome.state == RestoreState.DEFERRED
    assert "will retry on next start" in outcome.message
    assert file_system.live_path.read_bytes() == MODIFIED
    assert not swap_temp_path(file_system.live_path).exists()
    pending = file_system.intent_file.read()
    assert pending.status == "pending"
    assert pending.attempts == 1

    monkeypatch.undo()
    assert file_system.startup.process_pending_restore() is True
    assert file_system.live_path.read_bytes() == original


def test_crash_after_rename_is_recognised_as_applied(file_system, monkeypatch):
    original, _ = _stage_then_modify(file_system)

    def crash(intent):
        raise SimulatedCrash()

    monkeypatch.setattr(file_system.startup, "_cleanup", crash)
    with pytest.raises(SimulatedCrash):
        file_system.startup.run()
    assert file_system.live_path.read_bytes() == original
    assert file_system.intent_file.exists()

    monkeypatch.undo()
    outcome = file_system.startup.run()
    assert outcome.state == RestoreState.APPLIED
    assert "already live" in outcome.message
    assert file_system.live_path.read_bytes() == original
    assert not file_system.intent_file.exists()


def test_expired_request_is_not_applied(file_system, clock):
    _stage_then_modify(file_system)
    clock.advance(86400 + 1)
    outcome = file_system.startup.run()
    assert outcome.state == RestoreState.ABORTED
    assert "expired" in outcome.message
    assert file_system.live_path.read_bytes() == MODIFIED


def test_gives_up_after_max_attempts(file_system):
    _stage_then_modify(file_system)
    intent = file_system.intent_file.read()
    intent.attempts = 3
    file_system.intent_file.write(intent)
    outcome = file_system.startup.run()
    assert outcome.state == RestoreState.ABORTED
    assert "3 failed attempts" in outcome.message
    assert not file_system.intent_file.exists()


def test_unreadable_staged_file_defers(file_system):
    _stage_then_modify(file_system)
    file_system.startup.checksum = UnreadableEngine()
    outcome = file_system.startup.run()
    assert outcome.state == RestoreState.DEFERRED
    assert file_system.intent_file.exists()
    assert file_system.live_path.read_bytes() == MODIFIED


def test_stale_sidecars_and_swap_temp_removed(sqlite_system):
    record = sqlite_system.service.create_backup("manual")
    sqlite_system.coordinator.stage_restore(record.id)
    conn = sqlite_system.data_source.open()
    conn.execute("INSERT INTO products (name, stock) VALUES ('wire', 5)")
    conn.commit()
    sqlite_system.data_source.close()
    shm = Path(str(sqlite_system.live_path) + "-shm")
    shm.write_bytes(b"\0" * 32)
    swap = swap_temp_path(sqlite_system.live_path)
    swap.write_bytes(b"half copied")

    outcome = sqlite_system.startup.run()
    assert outcome.state == RestoreState.APPLIED
    assert not shm.exists()
    assert not swap.exists()
    assert product_names(sqlite_system.live_path) == ["nails", "rebar"]


def test_damaged_live_database_with_wal_is_still_replaced(sqlite_system):
    record = sqlite_system.service.create_backup("manual")
    sqlite_system.coordinator.stage_restore(record.id)
    live = sqlite_system.live_path
    raw = bytearray(live.read_bytes())
    raw[16:18] = b"\x00\x03"  # invalid page size, header magic intact
    live.write_bytes(bytes(raw))
    wal = Path(str(live) + "-wal")
    wal.write_bytes(b"\x37\x7f\x06\x82" + b"\0" * 60)

    outcome = sqlite_system.startup.run()
    assert outcome.state == RestoreState.APPLIED
    assert product_names(live) == ["nails", "rebar"]
    assert not wal.exists()
    assert safety_copy_path(live).exists()
