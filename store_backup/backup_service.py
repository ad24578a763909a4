"""Creation of single, consistent backups.

A backup is copied to ``.<name>.partial`` inside the backup directory, checked
(non-empty, valid for its data source, hashable) and only then renamed to its
final name and recorded. Anything that fails before the record is written
leaves no artifact and no record behind; the failure lands in the store's
attempt log, which feeds ``BackupStore.health``.
"""
from __future__ import annotations
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional
import threading

from .checksum import ChecksumEngine
from .errors import (
    BackupCancelled, BackupError, ChecksumComputeError, EmptyBackupError, NotFound, OperationInProgress,
)
from .events import emit
from .fsutil import DEFAULT_IO_ATTEMPTS, atomic_replace, remove_if_exists, temp_path_for
from .models import TRIGGER_MANUAL, TRIGGERS, BackupRecord, utcnow
from .store import KIND_BACKUP, KIND_UPLOAD, BackupStore

ID_FORMAT = '%Y%m%d_%H%M%S_%f'


class OperationGate:
    """Process-local lock: one backup or restore staging in flight at a time."""

    def __init__(self):
        self._lock = threading.Lock()
        self.current: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self, operation: str, blocking: bool = False, timeout: float = -1):
        acquired = self._lock.acquire(True, timeout) if blocking else self._lock.acquire(False)
        if not acquired:
            raise OperationInProgress(self.current or operation)
        self.current = operation
        try:
            yield
        finally:
            self.current = None
            self._lock.release()


class BackupService:
    def __init__(self, data_source, store: BackupStore, checksum: Optional[ChecksumEngine] = None,
                 transport=None, gate: Optional[OperationGate] = None, filename_prefix: str = "store",
                 io_attempts: int = DEFAULT_IO_ATTEMPTS, clock: Callable[[], datetime] = utcnow):
        self.data_source = data_source
        self.store = store
        self.checksum = checksum or ChecksumEngine()
        self.transport = transport
        self.gate = gate or OperationGate()
        self.filename_prefix = filename_prefix
        self.io_attempts = io_attempts
        self.clock = clock
        self._last_id: Optional[str] = None

    @property
    def backup_dir(self) -> Path:
        return self.store.backup_dir

    def new_backup_id(self, now: Optional[datetime] = None) -> str:
        """Timestamp id (``YYYYMMDD_HHMMSS_ffffff``), bumped until unused."""
        now = now or self.clock()
        if self._last_id is not None:
            last = datetime.strptime(self._last_id, ID_FORMAT).replace(tzinfo=now.tzinfo)
            if now <= last:
                now = last + timedelta(microseconds=1)
        candidate = now.strftime(ID_FORMAT)
        while self.store.exists(candidate):
            now = now + timedelta(microseconds=1)
            candidate = now.strftime(ID_FORMAT)
        self._last_id = candidate
        return candidate

    def create_backup(self, trigger: str = TRIGGER_MANUAL, cancel: Optional[threading.Event] = None,
                      blocking: bool = False) -> BackupRecord:
        """Take one snapshot of the data source and record it.

        Raises ``OperationInProgress`` if a backup or restore staging is already
        running (unless ``blocking``), ``EmptyBackupError`` for a zero-byte copy,
        ``ChecksumComputeError`` when the copy cannot be hashed, ``BackupCancelled``
        when ``cancel`` was set during the copy, and ``OSError`` for IO failures.
        """
        if trigger not in TRIGGERS:
            raise ValueError(f"unknown trigger {trigger!r}; expected one of {TRIGGERS}")
        with self.gate.hold("backup", blocking=blocking):
            try:
                return self._create(trigger, cancel)
            except (BackupError, OSError) as e:
                error = f"{type(e).__name__}: {e}"
                emit("backup.failed", f"{trigger} backup failed: {error}", level="error", trigger=trigger, error=error)
                try:
                    self.store.record_attempt(KIND_BACKUP, False, trigger=trigger, error=error)
                except (BackupError, OSError) as log_err:
                    emit("backup.failed", f"could not record failed attempt: {log_err}", level="warn")
                raise

    def _create(self, trigger: str, cancel: Optional[threading.Event]) -> BackupRecord:
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        backup_id = self.new_backup_id()
        final = self.backup_dir / f"{self.filename_prefix}_{backup_id}.db"
        partial = temp_path_for(final, ".partial")
        emit("backup.started", f"{trigger} backup {backup_id} -> {final}", backup_id=backup_id, trigger=trigger)
        try:
            self.data_source.snapshot_to(partial)
            if cancel is not None and cancel.is_set():
                raise BackupCancelled(f"backup {backup_id} cancelled; partial copy discarded")
            size = partial.stat().st_size if partial.exists() else 0
            if size <= 0:
                raise EmptyBackupError(f"copy of {self.data_source.path} is empty; not recording backup {backup_id}")
            validate = getattr(self.data_source, "validate_copy", None)
            if validate is not None:
                validate(partial)
            try:
                digest = self.checksum.compute(partial)
            except OSError as e:
                raise ChecksumComputeError(f"cannot hash {partial}: {e}") from e
            atomic_replace(partial, final, attempts=self.io_attempts)
        except BaseException:
            remove_if_exists(partial)
            raise

        remote_ref, upload_error = None, None
        if self.transport is not None:
            try:
                remote_ref = self.transport.upload(final)
            except Exception as e:  # noqa: BLE001
                upload_error = f"{type(e).__name__}: {e}"

        record = BackupRecord(
            id=backup_id,
            created_at=self.clock(),
            size_bytes=size,
            checksum=digest,
            local_path=str(final),
            trigger=trigger,
            remote_ref=remote_ref,
        )
        try:
            self.store.record_created(record)
        except BaseException:
            remove_if_exists(final)
            raise
        self.store.record_attempt(KIND_BACKUP, True, trigger=trigger, backup_id=backup_id)
        emit("backup.created", f"created {backup_id} ({size} bytes)", backup_id=backup_id,
             size_bytes=size, checksum=digest, trigger=trigger)
        if upload_error:
            self.store.mark_upload_pending(backup_id)
            self.store.record_attempt(KIND_UPLOAD, False, trigger=trigger, error=upload_error, backup_id=backup_id)
            emit("backup.upload_failed", f"upload of {backup_id} failed, will retry: {upload_error}",
                 level="warn", backup_id=backup_id, error=upload_error)
        elif remote_ref:
            emit("backup.uploaded", f"uploaded {backup_id} -> {remote_ref}", backup_id=backup_id, remote_ref=remote_ref)
        return record

    def retry_pending_uploads(self) -> List[str]:
        """Retry remote uploads that failed earlier. Returns the ids now uploaded."""
        if self.transport is None:
            return []
        uploaded = []
        for backup_id in self.store.pending_uploads():
            try:
                record = self.store.get(backup_id)
            except NotFound:
                continue
            try:
                remote_ref = self.transport.upload(record.local_path)
            except Exception as e:  # noqa: BLE001
                error = f"{type(e).__name__}: {e}"
                self.store.record_attempt(KIND_UPLOAD, False, error=error, backup_id=backup_id)
                emit("backup.upload_failed", f"retry upload of {backup_id} failed: {error}", level="warn",
                     backup_id=backup_id, error=error)
                continue
            self.store.set_remote_ref(backup_id, remote_ref)
            self.store.record_attempt(KIND_UPLOAD, True, backup_id=backup_id)
            emit("backup.uploaded", f"uploaded {backup_id} -> {remote_ref}", backup_id=backup_id, remote_ref=remote_ref)
            uploaded.append(backup_id)
        return uploaded
