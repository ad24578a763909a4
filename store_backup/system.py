"""Wires every backup/restore component around one live database."""
from __future__ import annotations
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from . import events
from .backup_service import BackupService, OperationGate
from .checksum import ChecksumEngine
from .cleanup import EmergencyCleanup
from .database import SQLiteDataSource
from .diagnostics import DiagnosticsReporter
from .intent import IntentFile
from .models import ScheduleConfig, utcnow
from .onedrive import OneDriveTransport
from .restore import RestoreCoordinator
from .scheduler import ScheduleManager
from .startup_restore import StartupRestoreProcessor
from .store import BackupStore


class BackupSystem:
    def __init__(self, live_path, backup_dir, staging_dir, intent_path,
                 schedule: Optional[ScheduleConfig] = None, data_source=None, transport=None,
                 failure_threshold: int = 3, io_attempts: int = 3,
                 restore_max_age_seconds: int = 86400, restore_max_attempts: int = 3,
                 clock: Callable[[], datetime] = utcnow):
        self.live_path = Path(live_path)
        self.schedule = schedule or ScheduleConfig()
        self.checksum = ChecksumEngine()
        self.gate = OperationGate()
        self.data_source = data_source or SQLiteDataSource(self.live_path)
        self.transport = transport
        self.intent_file = IntentFile(intent_path, io_attempts=io_attempts)
        self.store = BackupStore(backup_dir, intent_file=self.intent_file,
                                 interval_seconds=self.schedule.interval_seconds,
                                 failure_threshold=failure_threshold, io_attempts=io_attempts, clock=clock)
        self.service = BackupService(self.data_source, self.store, checksum=self.checksum, transport=transport,
                                     gate=self.gate, io_attempts=io_attempts, clock=clock)
        self.scheduler = ScheduleManager(self.service, self.store, self.schedule, clock=clock)
        self.coordinator = RestoreCoordinator(self.store, self.intent_file, staging_dir, checksum=self.checksum,
                                              transport=transport, gate=self.gate, live_path=self.live_path,
                                              max_age_seconds=restore_max_age_seconds,
                                              io_attempts=io_attempts, clock=clock)
        self.startup = StartupRestoreProcessor(self.live_path, self.intent_file, staging_dir,
                                               checksum=self.checksum, max_attempts=restore_max_attempts,
                                               gate=self.gate, io_attempts=io_attempts, clock=clock)
        self.diagnostics = DiagnosticsReporter(self.intent_file, staging_dir, self.live_path,
                                               store=self.store, checksum=self.checksum, clock=clock)
        self.cleanup = EmergencyCleanup(self.intent_file, staging_dir, self.live_path)

    @classmethod
    def from_config(cls, cfg=None) -> "BackupSystem":
        if cfg is None:
            import config as cfg
        events.configure(cfg.LOG_FILE)
        interval = cfg.AUTO_BACKUP_INTERVAL_SEC
        schedule = ScheduleConfig(enabled=interval > 0, interval_seconds=interval,
                                  retention_count=cfg.BACKUP_RETENTION)
        transport = None
        if cfg.ONEDRIVE_SYNC_DIR:
            transport = OneDriveTransport(cfg.ONEDRIVE_SYNC_DIR, io_attempts=cfg.IO_RETRY_ATTEMPTS)
        return cls(
            live_path=cfg.DATABASE_PATH,
            backup_dir=cfg.BACKUP_DIR,
            staging_dir=cfg.STAGING_DIR,
            intent_path=cfg.RESTORE_COMMAND_PATH,
            schedule=schedule,
            transport=transport,
            failure_threshold=cfg.HEALTH_FAILURE_THRESHOLD,
            io_attempts=cfg.IO_RETRY_ATTEMPTS,
            restore_max_age_seconds=cfg.RESTORE_MAX_AGE_SEC,
            restore_max_attempts=cfg.RESTORE_MAX_ATTEMPTS,
        )
