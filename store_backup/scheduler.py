"""Interval-based automatic backups plus the manual "run now" trigger.

The timer itself is external: something calls ``on_tick`` periodically.
``start`` runs it on a daemon thread polling at a fixed period; the status
server starts that thread beside Flask.
"""
from __future__ import annotations
from datetime import datetime
from typing import Callable, Optional
import threading

from .backup_service import BackupService
from .errors import BackupError, OperationInProgress
from .events import emit
from .models import TRIGGER_MANUAL, TRIGGER_SCHEDULED, BackupRecord, ScheduleConfig, utcnow
from .store import BackupStore, KIND_PRUNE


class ScheduleManager:
    def __init__(self, service: BackupService, store: BackupStore, config: ScheduleConfig,
                 clock: Callable[[], datetime] = utcnow):
        self.service = service
        self.store = store
        self.config = config
        self.clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def seconds_since_last_backup(self) -> Optional[float]:
        latest = self.store.list(limit=1)
        if not latest:
            return None
        return (self.clock() - latest[0].created_at).total_seconds()

    def is_due(self) -> bool:
        if not self.config.enabled or self.config.interval_seconds <= 0:
            return False
        elapsed = self.seconds_since_last_backup()
        return elapsed is None or elapsed >= self.config.interval_seconds

    def on_tick(self) -> Optional[BackupRecord]:
        """Run a scheduled backup when due. Never raises for backup failures."""
        try:
            self.service.retry_pending_uploads()
            if not self.is_due():
                return None
            record = self.service.create_backup(TRIGGER_SCHEDULED)
        except OperationInProgress as e:
            emit("schedule.skipped", f"tick skipped: {e}", level="warn")
            return None
        except (BackupError, OSError) as e:
            emit("schedule.skipped", f"scheduled backup not taken: {e}", level="warn")
            return None
        self._prune()
        return record

    def run_now(self, cancel: Optional[threading.Event] = None) -> BackupRecord:
        """Manual backup, bypassing the interval. Raises like ``create_backup``."""
        record = self.service.create_backup(TRIGGER_MANUAL, cancel=cancel)
        self._prune()
        return record

    def run_async(self, on_done: Optional[Callable] = None) -> threading.Thread:
        """``run_now`` on a worker thread; ``on_done(record, error)`` gets the outcome."""
        def _worker():
            record, error = None, None
            try:
                record = self.run_now()
            except (BackupError, OSError) as e:
                error = e
            if on_done is not None:
                on_done(record, error)
        t = threading.Thread(target=_worker, name="store-backup-manual", daemon=True)
        t.start()
        return t

    def _prune(self):
        if self.config.retention_count <= 0:
            return
        try:
            self.store.prune(self.config.retention_count)
        except (BackupError, OSError) as e:
            emit("prune.failed", f"{e}", level="warn")
            try:
                self.store.record_attempt(KIND_PRUNE, False, error=f"{type(e).__name__}: {e}")
            except (BackupError, OSError) as log_err:
                emit("prune.failed", f"could not record failed prune: {log_err}", level="warn")

    # -------------------- background loop --------------------
    def start(self, poll_seconds: float = 30.0) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()

        def _loop():
            while not self._stop.is_set():
                try:
                    self.on_tick()
                except Exception as e:  # noqa: BLE001
                    emit("schedule.skipped", f"tick failed: {type(e).__name__}: {e}", level="error")
                self._stop.wait(poll_seconds)

        self._thread = threading.Thread(target=_loop, name="store-backup-scheduler", daemon=True)
        self._thread.start()
        emit("schedule.started", f"auto backup every {self.config.interval_seconds}s -> {self.store.backup_dir}")
        return self._thread

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
