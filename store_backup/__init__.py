"""Backup and restore pipeline for the store management database."""

__version__ = "0.3.0"

from .errors import (  # noqa: F401
    BackupError, BackupCancelled, ChecksumComputeError, ChecksumMismatch, DuplicateBackupId,
    EmptyBackupError, IntentUnreadable, ManifestCorrupt, NotFound, OperationInProgress,
    RestoreAlreadyPending,
)
from .models import BackupHealth, BackupRecord, RestoreIntent, ScheduleConfig  # noqa: F401
from .system import BackupSystem  # noqa: F401
