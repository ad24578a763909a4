"""Read-only report of backup / restore state, for operators.

Answers "why is my restore stuck?": is there a descriptor, can it be parsed,
how old is it, is its staged file there and intact, what is left over in the
staging area, and how healthy are backups overall. Nothing is modified.
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from .checksum import ChecksumEngine
from .errors import BackupError, IntentUnreadable
from .intent import IntentFile
from .models import to_iso, utcnow
from .startup_restore import safety_copy_path, swap_temp_path
from .store import BackupStore

CLEAR_HINT = "Run `store-backup restore emergency-clear` to discard the pending restore."


@dataclass
class DiagnosticReport:
    generated_at: str
    live_path: str
    live_exists: bool
    intent_path: str
    intent_present: bool
    intent_readable: Optional[bool] = None
    intent_error: Optional[str] = None
    intent: Optional[dict] = None
    intent_age_seconds: Optional[float] = None
    intent_expired: Optional[bool] = None
    staged_file_exists: Optional[bool] = None
    staged_file_size: Optional[int] = None
    staged_checksum_matches: Optional[bool] = None
    staged_error: Optional[str] = None
    staging_files: List[str] = field(default_factory=list)
    swap_temp_present: bool = False
    safety_copy: Optional[str] = None
    partial_backups: List[str] = field(default_factory=list)
    health: Optional[dict] = None
    health_error: Optional[str] = None
    recommendations: List[str] = field(default_factory=list)

    @property
    def stuck(self) -> bool:
        return self.intent_present and not (self.intent_readable and self.staged_checksum_matches)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["stuck"] = self.stuck
        return data

    def render_text(self) -> str:
        lines = ['Store Backup / Restore Diagnostic Report', '----------------------------------------']
        lines.append(f"Generated      : {self.generated_at}")
        lines.append(f"Live database  : {self.live_path} ({'present' if self.live_exists else 'MISSING'})")
        if not self.intent_present:
            lines.append("Pending restore: none")
        else:
            lines.append(f"Pending restore: {self.intent_path}")
            if not self.intent_readable:
                lines.append(f"  descriptor   : UNREADABLE - {self.intent_error}")
            else:
                intent = self.intent or {}
                lines.append(f"  backup       : {intent.get('targetBackupId')}")
                lines.append(f"  requested    : {intent.get('requestedAt')} ({(self.intent_age_seconds or 0) / 3600:.1f}h ago)"
                             + (" EXPIRED" if self.intent_expired else ""))
                lines.append(f"  attempts     : {intent.get('attempts', 0)}")
                lines.append(f"  staged file  : {intent.get('stagedFilePath')} "
                             f"({'present' if self.staged_file_exists else 'MISSING'})")
                if self.staged_error:
                    lines.append(f"  checksum     : UNREADABLE - {self.staged_error}")
                elif self.staged_checksum_matches is not None:
                    lines.append(f"  checksum     : {'ok' if self.staged_checksum_matches else 'MISMATCH'}")
        lines.append(f"Staging files  : {', '.join(self.staging_files) or '(none)'}")
        if self.swap_temp_present:
            lines.append("Swap temp file : present (interrupted restore)")
        if self.safety_copy:
            lines.append(f"Safety copy    : {self.safety_copy}")
        if self.partial_backups:
            lines.append(f"Partial backups: {', '.join(self.partial_backups)}")
        if self.health_error:
            lines.append(f"Backup health  : error - {self.health_error}")
        elif self.health:
            h = self.health
            lines.append(f"Backup health  : {h['status']} ({h['total_backups']} backups, last {h['last_backup_at'] or 'never'})")
            if h.get('last_error'):
                lines.append(f"  last error   : {h['last_error']}")
            for issue in h.get('issues', []):
                lines.append(f"  - {issue}")
        if self.recommendations:
            lines.append('')
            lines.append('Recommendations:')
            for r in self.recommendations:
                lines.append(f" - {r}")
        return "\n".join(lines)


class DiagnosticsReporter:
    def __init__(self, intent_file: IntentFile, staging_dir, live_path, store: Optional[BackupStore] = None,
                 checksum: Optional[ChecksumEngine] = None, clock: Callable[[], datetime] = utcnow):
        self.intent_file = intent_file
        self.staging_dir = Path(staging_dir)
        self.live_path = Path(live_path)
        self.store = store
        self.checksum = checksum or ChecksumEngine()
        self.clock = clock

    def report(self) -> DiagnosticReport:
        now = self.clock()
        rep = DiagnosticReport(
            generated_at=to_iso(now),
            live_path=str(self.live_path),
            live_exists=self.live_path.exists(),
            intent_path=str(self.intent_file.path),
            intent_present=self.intent_file.exists(),
        )
        if rep.intent_present:
            self._inspect_intent(rep, now)
        if self.staging_dir.exists():
            rep.staging_files = sorted(p.name for p in self.staging_dir.iterdir())
        rep.swap_temp_present = swap_temp_path(self.live_path).exists()
        safety = safety_copy_path(self.live_path)
        rep.safety_copy = str(safety) if safety.exists() else None
        if self.store is not None:
            if self.store.backup_dir.exists():
                rep.partial_backups = sorted(p.name for p in self.store.backup_dir.glob(".*.partial"))
            try:
                rep.health = self.store.health().to_dict()
            except (BackupError, OSError) as e:
                rep.health_error = f"{type(e).__name__}: {e}"
        rep.recommendations = self._recommend(rep)
        return rep

    def _inspect_intent(self, rep: DiagnosticReport, now: datetime):
        try:
            intent = self.intent_file.read()
        except FileNotFoundError:
            rep.intent_present = False
            return
        except IntentUnreadable as e:
            rep.intent_readable = False
            rep.intent_error = str(e)
            return
        rep.intent_readable = True
        rep.intent = intent.to_dict()
        rep.intent_age_seconds = intent.age_seconds(now)
        rep.intent_expired = intent.is_expired(now)
        staged = Path(intent.staged_file_path)
        rep.staged_file_exists = staged.exists()
        if rep.staged_file_exists:
            try:
                rep.staged_file_size = staged.stat().st_size
                rep.staged_checksum_matches = self.checksum.verify(staged, intent.staged_checksum)
            except OSError as e:
                rep.staged_error = str(e)

    def _recommend(self, rep: DiagnosticReport) -> List[str]:
        recs = []
        if rep.intent_present:
            if not rep.intent_readable:
                recs.append("Restore descriptor is corrupt; startup will discard it. " + CLEAR_HINT)
            elif rep.staged_error:
                recs.append("Staged file cannot be read (permissions or lock); startup keeps retrying until its "
                            "attempt limit. Fix access, or " + CLEAR_HINT)
            elif not rep.staged_file_exists:
                recs.append("Staged file is gone; startup will abort this restore. " + CLEAR_HINT)
            elif rep.staged_checksum_matches is False:
                recs.append("Staged file is corrupt; startup will abort this restore and keep the current data.")
            elif rep.intent_expired:
                recs.append("Restore request expired; startup will discard it. Stage it again if still wanted.")
            else:
                recs.append("Restore is ready; restart the application to apply it.")
        elif rep.staging_files:
            recs.append("Staging directory holds files with no pending restore. " + CLEAR_HINT)
        if rep.swap_temp_present:
            recs.append("A previous restore was interrupted mid-copy; the next start removes the temp file.")
        if rep.partial_backups:
            recs.append("Partial backup files are left from interrupted backups; they are never listed and can be deleted.")
        if rep.health and rep.health.get("status") != "healthy":
            recs.append("Backups are not healthy; run `store-backup backup create --manual` and check the last error.")
        return recs
