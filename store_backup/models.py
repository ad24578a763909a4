"""Record types for backups, pending restores, schedule and health.

Persisted forms use the camelCase keys of the on-disk formats
(backup manifest, ``restore-command.json``).
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import List, Optional

TRIGGER_MANUAL = "manual"
TRIGGER_SCHEDULED = "scheduled"
TRIGGERS = (TRIGGER_MANUAL, TRIGGER_SCHEDULED)

STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"

INTENT_PENDING = "pending"

HEALTHY = "healthy"
DEGRADED = "degraded"
FAILING = "failing"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class BackupRecord:
    id: str
    created_at: datetime
    size_bytes: int
    checksum: str
    local_path: str
    trigger: str = TRIGGER_MANUAL
    status: str = STATUS_COMPLETE
    remote_ref: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "createdAt": to_iso(self.created_at),
            "sizeBytes": self.size_bytes,
            "checksum": self.checksum,
            "localPath": self.local_path,
            "remoteRef": self.remote_ref,
            "trigger": self.trigger,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BackupRecord":
        return cls(
            id=str(data["id"]),
            created_at=from_iso(data["createdAt"]),
            size_bytes=int(data["sizeBytes"]),
            checksum=str(data["checksum"]),
            local_path=str(data["localPath"]),
            trigger=data.get("trigger", TRIGGER_MANUAL),
            status=data.get("status", STATUS_COMPLETE),
            remote_ref=data.get("remoteRef"),
        )


@dataclass
class RestoreIntent:
    """A staged restore waiting for the next startup (the "restore command")."""

    target_backup_id: str
    staged_file_path: str
    staged_checksum: str
    requested_at: datetime
    status: str = INTENT_PENDING
    expires_at: Optional[datetime] = None
    attempts: int = 0

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utcnow()) > self.expires_at

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.requested_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "targetBackupId": self.target_backup_id,
            "stagedFilePath": self.staged_file_path,
            "stagedChecksum": self.staged_checksum,
            "requestedAt": to_iso(self.requested_at),
            "status": self.status,
            "expiresAt": to_iso(self.expires_at),
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RestoreIntent":
        requested_at = from_iso(data["requestedAt"])
        if requested_at is None:
            raise ValueError("requestedAt is empty")
        return cls(
            target_backup_id=str(data["targetBackupId"]),
            staged_file_path=str(data["stagedFilePath"]),
            staged_checksum=str(data["stagedChecksum"]),
            requested_at=requested_at,
            status=str(data.get("status", INTENT_PENDING)),
            expires_at=from_iso(data.get("expiresAt")),
            attempts=int(data.get("attempts", 0)),
        )


@dataclass
class ScheduleConfig:
    enabled: bool = False
    interval_seconds: int = 0
    retention_count: int = 10


@dataclass
class BackupHealth:
    status: str
    last_backup_at: Optional[datetime] = None
    last_error: Optional[str] = None
    total_backups: int = 0
    total_size_bytes: int = 0
    consecutive_failures: int = 0
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_backup_at"] = to_iso(self.last_backup_at)
        return data
