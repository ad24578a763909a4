"""Error taxonomy for backup and restore operations.

Plain ``OSError`` (Python's ``IOError``) is not wrapped: disk-full and
permission problems propagate as raised by the filesystem.
"""
from __future__ import annotations


class BackupError(Exception):
    """Base class for every backup/restore failure raised by this package."""


class ChecksumComputeError(BackupError):
    pass


class ChecksumMismatch(BackupError):
    def __init__(self, path, expected: str, actual: str | None = None):
        self.path = str(path)
        self.expected = expected
        self.actual = actual
        super().__init__(f"checksum mismatch for {self.path}: expected {expected[:16]}..., got {(actual or 'n/a')[:16]}...")


class EmptyBackupError(BackupError):
    pass


class BackupCancelled(BackupError):
    pass


class OperationInProgress(BackupError):
    def __init__(self, operation: str = "backup/restore"):
        self.operation = operation
        super().__init__(f"another {operation} operation is already running; retry later")


class RestoreAlreadyPending(BackupError):
    def __init__(self, target_backup_id: str | None = None):
        self.target_backup_id = target_backup_id
        target = target_backup_id or "unknown (descriptor unreadable)"
        super().__init__(f"a restore is already pending for backup {target}; clear it or restart to apply it")


class NotFound(BackupError):
    def __init__(self, backup_id: str):
        self.backup_id = backup_id
        super().__init__(f"backup not found: {backup_id}")


class IntentUnreadable(BackupError):
    """The restore descriptor exists but cannot be parsed."""


class DuplicateBackupId(BackupError):
    def __init__(self, backup_id: str):
        self.backup_id = backup_id
        super().__init__(f"backup id already recorded: {backup_id}")


class ManifestCorrupt(BackupError):
    pass
