"""Staging of a restore for the next application start.

Staging never touches the live database. It re-verifies the chosen backup,
copies it into the staging directory, hashes the staged copy and finally
writes the restore descriptor atomically. The descriptor is the commit point:
until it exists nothing will be applied, and once it exists it refers to a
complete, verified staged file.
"""
from __future__ import annotations
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from .backup_service import OperationGate
from .checksum import ChecksumEngine
from .errors import ChecksumMismatch, IntentUnreadable, RestoreAlreadyPending
from .events import emit
from .fsutil import DEFAULT_IO_ATTEMPTS, atomic_replace, clear_directory, copy_file, remove_if_exists, temp_path_for
from .intent import IntentFile
from .models import INTENT_PENDING, BackupRecord, RestoreIntent, utcnow
from .store import BackupStore

STAGED_PREFIX = "staged-restore"


class RestoreCoordinator:
    def __init__(self, store: BackupStore, intent_file: IntentFile, staging_dir,
                 checksum: Optional[ChecksumEngine] = None, transport=None,
                 gate: Optional[OperationGate] = None, live_path=None,
                 max_age_seconds: int = 86400, io_attempts: int = DEFAULT_IO_ATTEMPTS,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.intent_file = intent_file
        self.staging_dir = Path(staging_dir)
        self.checksum = checksum or ChecksumEngine()
        self.transport = transport
        self.gate = gate or OperationGate()
        self.live_path = Path(live_path) if live_path else None
        self.max_age_seconds = max_age_seconds
        self.io_attempts = io_attempts
        self.clock = clock
        staging = self.staging_dir.resolve()
        if staging == store.backup_dir.resolve():
            raise ValueError("staging directory must differ from the backup directory")
        if self.live_path is not None and staging in (self.live_path.resolve(), self.live_path.resolve().parent):
            raise ValueError("staging directory must differ from the live database location")

    def staged_path_for(self, backup_id: str) -> Path:
        return self.staging_dir / f"{STAGED_PREFIX}-{backup_id}.db"

    def pending_intent(self) -> Optional[RestoreIntent]:
        """The pending restore, if any. Raises ``IntentUnreadable`` for a corrupt descriptor."""
        intent = self.intent_file.read_optional()
        if intent is not None and intent.status == INTENT_PENDING:
            return intent
        return None

    def stage_restore(self, backup_id: str, blocking: bool = False) -> RestoreIntent:
        """Verify backup ``backup_id`` and stage it for the next startup.

        Raises ``OperationInProgress``, ``RestoreAlreadyPending``, ``NotFound``,
        ``ChecksumMismatch`` (the backup is corrupt, nothing is staged) or ``OSError``.
        """
        with self.gate.hold("restore staging", blocking=blocking):
            try:
                current = self.pending_intent()
            except IntentUnreadable:
                raise RestoreAlreadyPending(None)
            if current is not None:
                raise RestoreAlreadyPending(current.target_backup_id)

            record = self.store.get(backup_id)
            try:
                intent = self._stage(record)
            except ChecksumMismatch as e:
                emit("restore.aborted", f"refusing to stage corrupt backup {backup_id}: {e}", level="error",
                     backup_id=backup_id)
                raise
        emit("restore.staged", f"backup {backup_id} staged; it will be applied on next start",
             backup_id=backup_id, staged_file=intent.staged_file_path)
        return intent

    def _stage(self, record: BackupRecord) -> RestoreIntent:
        # at most one staged file: anything left here belongs to no pending intent
        clear_directory(self.staging_dir)
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        staged = self.staged_path_for(record.id)
        tmp = temp_path_for(staged, ".partial")
        try:
            self._fetch_verified(record, tmp)
            staged_checksum = self.checksum.compute(tmp)
            if staged_checksum != record.checksum:
                raise ChecksumMismatch(tmp, record.checksum, staged_checksum)
            atomic_replace(tmp, staged, attempts=self.io_attempts)
            requested_at = self.clock()
            intent = RestoreIntent(
                target_backup_id=record.id,
                staged_file_path=str(staged.resolve()),
                staged_checksum=staged_checksum,
                requested_at=requested_at,
                expires_at=requested_at + timedelta(seconds=self.max_age_seconds) if self.max_age_seconds > 0 else None,
            )
            self.intent_file.write(intent)
        except BaseException:
            remove_if_exists(tmp)
            remove_if_exists(staged)
            raise
        return intent

    def _fetch_verified(self, record: BackupRecord, dest: Path):
        """Copy the backup to ``dest`` from a source whose checksum still matches."""
        local = Path(record.local_path)
        local_error = None
        if local.exists():
            try:
                actual = self.checksum.compute(local)
            except OSError as e:
                local_error = e
            else:
                if actual == record.checksum.lower():
                    copy_file(local, dest, attempts=self.io_attempts)
                    return
                local_error = ChecksumMismatch(local, record.checksum, actual)
        if record.remote_ref and self.transport is not None:
            problem = "missing" if local_error is None else (
                "corrupt" if isinstance(local_error, ChecksumMismatch) else "unreadable")
            emit("restore.fetch", f"local copy of {record.id} {problem}, downloading {record.remote_ref}",
                 level="warn", backup_id=record.id)
            self.transport.download(record.remote_ref, dest)
            return  # the staged checksum comparison verifies the download
        if local_error is not None:
            raise local_error
        raise FileNotFoundError(f"backup file missing for {record.id}: {local}")
