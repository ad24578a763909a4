"""Apply a staged restore at process start, before the database is opened.

State machine::

    NO_INTENT -> VERIFYING -> APPLYING -> APPLIED
                     |            |
                     v            v
                  ABORTED      DEFERRED (intent kept, retried next start)

The live file only changes through one ``os.replace`` of a verified copy
that sits in the live file's own directory, so the live path always holds
either the complete old database or the complete restored one.

* Crash before that rename: original data untouched, descriptor still
  pending, next start retries (bounded by ``max_attempts``).
* Crash after the rename, before cleanup: the restored data is live and the
  leftover descriptor is recognised as already applied and cleaned up.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional
import sqlite3

from .backup_service import OperationGate
from .checksum import ChecksumEngine
from .database import checkpoint_wal, is_sqlite_file, remove_sidecars
from .errors import BackupError, ChecksumMismatch, IntentUnreadable
from .events import emit
from .fsutil import DEFAULT_IO_ATTEMPTS, atomic_replace, clear_directory, copy_file, remove_if_exists, temp_path_for
from .intent import IntentFile
from .models import INTENT_PENDING, RestoreIntent, utcnow

SAFETY_SUFFIX = ".pre-restore"
SWAP_SUFFIX = ".restore.tmp"
INTACT = "The original data is intact and unchanged."


class RestoreState(str, Enum):
    NO_INTENT = "no_intent"
    VERIFYING = "verifying"
    APPLYING = "applying"
    APPLIED = "applied"
    ABORTED = "aborted"
    DEFERRED = "deferred"


@dataclass
class RestoreOutcome:
    state: RestoreState
    message: str
    intent: Optional[RestoreIntent] = None
    safety_copy: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.state == RestoreState.APPLIED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "applied": self.applied,
            "message": self.message,
            "intent": self.intent.to_dict() if self.intent else None,
            "safety_copy": self.safety_copy,
        }


def swap_temp_path(live_path: Path | str) -> Path:
    return temp_path_for(live_path, SWAP_SUFFIX)


def safety_copy_path(live_path: Path | str) -> Path:
    live_path = Path(live_path)
    return live_path.with_name(live_path.name + SAFETY_SUFFIX)


class StartupRestoreProcessor:
    def __init__(self, live_path, intent_file: IntentFile, staging_dir,
                 checksum: Optional[ChecksumEngine] = None, max_attempts: int = 3,
                 keep_safety_copy: bool = True, gate: Optional[OperationGate] = None,
                 io_attempts: int = DEFAULT_IO_ATTEMPTS, clock: Callable[[], datetime] = utcnow):
        self.live_path = Path(live_path)
        self.intent_file = intent_file
        self.staging_dir = Path(staging_dir)
        self.checksum = checksum or ChecksumEngine()
        self.max_attempts = max(1, max_attempts)
        self.keep_safety_copy = keep_safety_copy
        self.gate = gate
        self.io_attempts = io_attempts
        self.clock = clock
        self.state = RestoreState.NO_INTENT
        self.last_outcome: Optional[RestoreOutcome] = None

    def process_pending_restore(self) -> bool:
        """Apply a pending restore if there is one. True only when new data went live."""
        return self.run().applied

    def run(self) -> RestoreOutcome:
        if self.gate is None:
            return self._run()
        with self.gate.hold("startup restore"):
            return self._run()

    # ----------------------- transitions -----------------------
    def _finish(self, state: RestoreState, message: str, intent: Optional[RestoreIntent] = None,
                safety_copy: Optional[str] = None) -> RestoreOutcome:
        self.state = state
        outcome = RestoreOutcome(state, message, intent, safety_copy)
        self.last_outcome = outcome
        if state == RestoreState.APPLIED:
            emit("restore.applied", message, backup_id=intent.target_backup_id if intent else None)
        elif state == RestoreState.ABORTED:
            emit("restore.aborted", message, level="error", backup_id=intent.target_backup_id if intent else None)
        elif state == RestoreState.DEFERRED:
            emit("restore.deferred", message, level="warn", backup_id=intent.target_backup_id if intent else None)
        return outcome

    def _abort(self, reason: str, intent: Optional[RestoreIntent] = None) -> RestoreOutcome:
        self._discard(intent)
        return self._finish(RestoreState.ABORTED, f"Restore aborted: {reason}. {INTACT}", intent)

    def _defer(self, reason: str, intent: RestoreIntent) -> RestoreOutcome:
        return self._finish(
            RestoreState.DEFERRED,
            f"Restore not applied: {reason} (attempt {intent.attempts}/{self.max_attempts}; "
            f"will retry on next start). {INTACT}",
            intent,
        )

    def _run(self) -> RestoreOutcome:
        self.state = RestoreState.NO_INTENT
        remove_if_exists(swap_temp_path(self.live_path))
        try:
            intent = self.intent_file.read()
        except FileNotFoundError:
            return self._finish(RestoreState.NO_INTENT, "No pending restore.")
        except IntentUnreadable as e:
            return self._abort(f"restore descriptor unreadable ({e})")

        if intent.status != INTENT_PENDING:
            return self._abort(f"descriptor status is {intent.status!r}, not pending", intent)
        if intent.is_expired(self.clock()):
            return self._abort(f"restore request from {intent.requested_at.isoformat()} has expired", intent)
        if intent.attempts >= self.max_attempts:
            return self._abort(f"gave up after {intent.attempts} failed attempts", intent)

        intent.attempts += 1
        try:
            self.intent_file.write(intent)
        except OSError as e:
            return self._defer(f"cannot update restore descriptor ({e})", intent)

        self.state = RestoreState.VERIFYING
        staged = Path(intent.staged_file_path)
        if not staged.exists():
            return self._abort(f"staged file {staged} is missing", intent)
        try:
            staged_ok = self.checksum.verify(staged, intent.staged_checksum)
        except OSError as e:
            return self._defer(f"staged file unreadable ({e})", intent)
        if not staged_ok:
            return self._abort("staged file checksum mismatch (corrupted after staging)", intent)

        if self._live_matches(intent):
            self._cleanup(intent)
            return self._finish(RestoreState.APPLIED,
                                f"Restore of backup {intent.target_backup_id} was already live; cleaned up.", intent)

        self.state = RestoreState.APPLYING
        try:
            safety = self._swap(staged, intent)
        except (OSError, BackupError, sqlite3.Error) as e:
            remove_if_exists(swap_temp_path(self.live_path))
            return self._defer(f"could not swap in restored data ({type(e).__name__}: {e})", intent)

        self._cleanup(intent)
        return self._finish(RestoreState.APPLIED,
                            f"Backup {intent.target_backup_id} restored into {self.live_path}.",
                            intent, str(safety) if safety else None)

    # ----------------------- steps -----------------------
    def _live_matches(self, intent: RestoreIntent) -> bool:
        if not self.live_path.exists():
            return False
        try:
            return self.checksum.verify(self.live_path, intent.staged_checksum)
        except OSError:
            return False

    def _swap(self, staged: Path, intent: RestoreIntent) -> Optional[Path]:
        self.live_path.parent.mkdir(parents=True, exist_ok=True)
        tmp = swap_temp_path(self.live_path)
        copy_file(staged, tmp, attempts=self.io_attempts)
        if not self.checksum.verify(tmp, intent.staged_checksum):
            raise ChecksumMismatch(tmp, intent.staged_checksum)

        safety = None
        if self.live_path.exists():
            if is_sqlite_file(self.live_path):
                try:
                    checkpoint_wal(self.live_path)
                except sqlite3.Error as e:
                    # the old file is replaced next and its sidecars dropped
                    emit("restore.checkpoint", f"WAL checkpoint of current database failed, swapping anyway: {e}",
                         level="warn")
            if self.keep_safety_copy:
                safety = copy_file(self.live_path, safety_copy_path(self.live_path), attempts=self.io_attempts)

        atomic_replace(tmp, self.live_path, attempts=self.io_attempts)
        remove_sidecars(self.live_path)
        return safety

    def _cleanup(self, intent: RestoreIntent):
        # descriptor first: a crash in between leaves only an orphan staged file
        try:
            self.intent_file.delete()
            self._remove_staged(intent)
        except OSError as e:
            emit("restore.cleanup", f"cleanup after restore incomplete: {e}", level="warn")

    def _discard(self, intent: Optional[RestoreIntent]):
        try:
            self.intent_file.delete()
            if intent is None:
                clear_directory(self.staging_dir)
            else:
                self._remove_staged(intent)
        except OSError as e:
            emit("restore.cleanup", f"could not discard restore state: {e}", level="warn")

    def _remove_staged(self, intent: RestoreIntent):
        staged = Path(intent.staged_file_path)
        # only ever delete inside the staging directory, whatever the descriptor says
        try:
            inside = staged.resolve().parent == self.staging_dir.resolve()
        except OSError:
            inside = False
        if inside and staged.resolve() != self.live_path.resolve():
            remove_if_exists(staged)
