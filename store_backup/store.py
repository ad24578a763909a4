"""On-disk catalog of backup artifacts.

The catalog lives in ``<backup_dir>/manifest.json`` next to the artifacts
(never inside the database being backed up, so a restore cannot roll it
back). It holds the complete records, a bounded log of recent attempts
(backup / upload / prune) and the ids whose remote upload still has to be
retried. Health is derived from those, never stored.
"""
from __future__ import annotations
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, List, Optional
import json
import threading

from .errors import DuplicateBackupId, IntentUnreadable, ManifestCorrupt, NotFound
from .events import emit
from .fsutil import DEFAULT_IO_ATTEMPTS, atomic_write_text, remove_if_exists
from .intent import IntentFile
from .models import (
    DEGRADED, FAILING, HEALTHY, INTENT_PENDING, STATUS_COMPLETE,
    BackupHealth, BackupRecord, to_iso, utcnow,
)

MANIFEST_NAME = "manifest.json"
MAX_ATTEMPT_LOG = 50

KIND_BACKUP = "backup"
KIND_UPLOAD = "upload"
KIND_PRUNE = "prune"


class BackupStore:
    def __init__(self, backup_dir, intent_file: Optional[IntentFile] = None,
                 interval_seconds: int = 0, failure_threshold: int = 3,
                 io_attempts: int = DEFAULT_IO_ATTEMPTS, clock: Callable[[], datetime] = utcnow):
        self.backup_dir = Path(backup_dir)
        self.intent_file = intent_file
        self.interval_seconds = interval_seconds
        self.failure_threshold = max(1, failure_threshold)
        self.io_attempts = io_attempts
        self.clock = clock
        self._lock = threading.RLock()

    @property
    def manifest_path(self) -> Path:
        return self.backup_dir / MANIFEST_NAME

    # ----------------------- manifest io -----------------------
    def _load(self) -> dict:
        if not self.manifest_path.exists():
            return {"version": 1, "records": [], "attempts": [], "pendingUploads": []}
        try:
            data = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise ManifestCorrupt(f"backup manifest {self.manifest_path} is corrupt: {e}") from e
        if not isinstance(data, dict):
            raise ManifestCorrupt(f"backup manifest {self.manifest_path} is not a JSON object")
        data.setdefault("records", [])
        data.setdefault("attempts", [])
        data.setdefault("pendingUploads", [])
        return data

    def _save(self, data: dict):
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_text(self.manifest_path, json.dumps(data, indent=2), attempts=self.io_attempts)

    # ----------------------- records -----------------------
    def record_created(self, record: BackupRecord):
        with self._lock:
            data = self._load()
            if any(r["id"] == record.id for r in data["records"]):
                raise DuplicateBackupId(record.id)
            data["records"].append(record.to_dict())
            self._save(data)

    def list(self, limit: Optional[int] = None) -> List[BackupRecord]:
        """Complete records, most recent first."""
        with self._lock:
            data = self._load()
        records = [BackupRecord.from_dict(r) for r in data["records"]]
        records = [r for r in records if r.status == STATUS_COMPLETE]
        records.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return records[:limit] if limit is not None else records

    def get(self, backup_id: str) -> BackupRecord:
        with self._lock:
            data = self._load()
        for r in data["records"]:
            if r["id"] == backup_id:
                return BackupRecord.from_dict(r)
        raise NotFound(backup_id)

    def exists(self, backup_id: str) -> bool:
        with self._lock:
            return any(r["id"] == backup_id for r in self._load()["records"])

    def set_remote_ref(self, backup_id: str, remote_ref: str):
        with self._lock:
            data = self._load()
            for r in data["records"]:
                if r["id"] == backup_id:
                    r["remoteRef"] = remote_ref
                    break
            else:
                raise NotFound(backup_id)
            data["pendingUploads"] = [i for i in data["pendingUploads"] if i != backup_id]
            self._save(data)

    # ----------------------- attempts / uploads -----------------------
    def record_attempt(self, kind: str, ok: bool, trigger: Optional[str] = None,
                       error: Optional[str] = None, backup_id: Optional[str] = None):
        with self._lock:
            data = self._load()
            data["attempts"].append({
                "at": to_iso(self.clock()), "kind": kind, "trigger": trigger,
                "ok": bool(ok), "error": error, "backupId": backup_id,
            })
            data["attempts"] = data["attempts"][-MAX_ATTEMPT_LOG:]
            self._save(data)

    def attempts(self, kind: Optional[str] = None) -> List[dict]:
        with self._lock:
            items = self._load()["attempts"]
        return [a for a in items if kind is None or a.get("kind") == kind]

    def mark_upload_pending(self, backup_id: str):
        with self._lock:
            data = self._load()
            if backup_id not in data["pendingUploads"]:
                data["pendingUploads"].append(backup_id)
                self._save(data)

    def pending_uploads(self) -> List[str]:
        with self._lock:
            return list(self._load()["pendingUploads"])

    # ----------------------- retention -----------------------
    def _protected_id(self) -> Optional[str]:
        if self.intent_file is None:
            return None
        intent = self.intent_file.read_optional()
        if intent is not None and intent.status == INTENT_PENDING:
            return intent.target_backup_id
        return None

    def prune(self, retention_count: int) -> List[str]:
        """Delete records (and files) older than the newest ``retention_count``.

        A record targeted by a pending restore is never deleted. If the restore
        descriptor cannot be read, nothing is pruned.
        """
        retention_count = max(0, int(retention_count))
        with self._lock:
            try:
                protected = self._protected_id()
            except IntentUnreadable as e:
                emit("prune.failed", f"skipping prune, restore descriptor unreadable: {e}", level="warn")
                self.record_attempt(KIND_PRUNE, False, error=str(e))
                return []
            records = self.list()
            doomed = [r for r in records[retention_count:] if r.id != protected]
            if not doomed:
                return []
            removed, errors = [], []
            for record in doomed:
                try:
                    remove_if_exists(record.local_path)
                    removed.append(record.id)
                except OSError as e:
                    errors.append(f"{record.id}: {e}")
            data = self._load()
            data["records"] = [r for r in data["records"] if r["id"] not in removed]
            data["pendingUploads"] = [i for i in data["pendingUploads"] if i not in removed]
            self._save(data)
        for backup_id in removed:
            emit("prune.removed", f"removed old backup {backup_id}", backup_id=backup_id)
        if errors:
            msg = "; ".join(errors)
            emit("prune.failed", f"could not remove: {msg}", level="warn")
            self.record_attempt(KIND_PRUNE, False, error=msg)
        return removed

    # ----------------------- health -----------------------
    def health(self, interval_seconds: Optional[int] = None) -> BackupHealth:
        interval = self.interval_seconds if interval_seconds is None else interval_seconds
        records = self.list()
        attempts = self.attempts()
        pending = self.pending_uploads()
        now = self.clock()

        backup_attempts = [a for a in attempts if a.get("kind") == KIND_BACKUP]
        consecutive = 0
        for a in reversed(backup_attempts):
            if a.get("ok"):
                break
            consecutive += 1

        # newest failure that happened after the last successful backup
        last_error = None
        for a in reversed(attempts):
            if a.get("kind") == KIND_BACKUP and a.get("ok"):
                break
            if not a.get("ok") and a.get("error"):
                last_error = a["error"]
                break

        last_backup_at = records[0].created_at if records else None
        issues = []
        if consecutive >= self.failure_threshold:
            status = FAILING
            issues.append(f"Last {consecutive} backup attempts failed")
        elif last_backup_at is None:
            status = DEGRADED
            issues.append("No backups found")
        elif interval and interval > 0 and now - last_backup_at > timedelta(seconds=2 * interval):
            status = DEGRADED
            hours = (now - last_backup_at).total_seconds() / 3600
            issues.append(f"Backup overdue (last one {hours:.1f}h ago)")
        else:
            status = HEALTHY
        if 0 < consecutive < self.failure_threshold:
            issues.append("Last backup attempt failed")
        if pending:
            issues.append(f"Upload pending for {len(pending)} backup(s)")

        return BackupHealth(
            status=status,
            last_backup_at=last_backup_at,
            last_error=last_error,
            total_backups=len(records),
            total_size_bytes=sum(r.size_bytes for r in records),
            consecutive_failures=consecutive,
            issues=issues,
        )
