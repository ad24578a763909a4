"""Data-engine seam for the backup pipeline.

The backup code only needs three things from the database: where the live
file is, a byte-for-byte consistent copy of it, and a way to close the app's
own connection. ``SQLiteDataSource`` provides them for the store database
using SQLite's online backup API, so a copy can be taken while the app keeps
running. ``FileDataSource`` is the plain-copy variant for other data files.
"""
from __future__ import annotations
from pathlib import Path
from typing import Dict, Optional
import os
import sqlite3
import threading

from .errors import BackupError
from .fsutil import DEFAULT_IO_ATTEMPTS, copy_file, remove_if_exists

SQLITE_HEADER = b"SQLite format 3\x00"
SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")


def sidecar_paths(db_path: Path | str):
    db_path = Path(db_path)
    return [db_path.with_name(db_path.name + s) for s in SIDECAR_SUFFIXES]


def is_sqlite_file(path: Path | str) -> bool:
    try:
        with open(path, "rb") as f:
            return f.read(len(SQLITE_HEADER)) == SQLITE_HEADER
    except OSError:
        return False


def checkpoint_wal(db_path: Path | str) -> bool:
    """Fold a leftover ``-wal`` file back into the main database file.

    Only meaningful while nothing else has the database open (startup).
    Returns True when a WAL file was present and has been checkpointed away.
    """
    db_path = Path(db_path)
    wal = db_path.with_name(db_path.name + "-wal")
    if not wal.exists() or not db_path.exists():
        return False
    conn = sqlite3.connect(str(db_path))
    try:
        conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
    finally:
        conn.close()
    return True


def remove_sidecars(db_path: Path | str) -> list:
    return [str(p) for p in sidecar_paths(db_path) if remove_if_exists(p)]


class SQLiteDataSource:
    def __init__(self, db_path="store.db", busy_timeout: float = 10.0, backup_pages: int = 256):
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self.backup_pages = backup_pages
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return Path(self.db_path)

    def open(self) -> sqlite3.Connection:
        """Open (or return) the app's connection to the live database."""
        with self._lock:
            if self._conn is None:
                self._conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout, check_same_thread=False)
                self._conn.execute("PRAGMA foreign_keys = ON")
            return self._conn

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def snapshot_to(self, target: Path | str) -> Path:
        """Write a point-in-time copy of the live database to ``target``."""
        target = Path(target)
        if not self.path.exists():
            raise FileNotFoundError(f"database not found: {self.db_path}")
        remove_if_exists(target)
        src = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        try:
            try:
                src.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except sqlite3.DatabaseError as e:
                print(f"[backup][warn] WAL checkpoint failed, continuing with backup API: {e}")
            dest = sqlite3.connect(str(target))
            try:
                src.backup(dest, pages=self.backup_pages)
            finally:
                dest.close()
        except sqlite3.Error as e:
            raise BackupError(f"SQLite backup of {self.db_path} failed: {e}") from e
        finally:
            src.close()
        if target.exists():
            with open(target, "rb+") as f:
                os.fsync(f.fileno())
        return target

    def validate_copy(self, path: Path | str):
        """Reject copies that are not an intact SQLite database."""
        path = Path(path)
        if not is_sqlite_file(path):
            raise BackupError(f"{path.name} is not a SQLite database (bad header)")
        uri = path.resolve().as_uri() + "?mode=ro"
        try:
            conn = sqlite3.connect(uri, uri=True)
            try:
                row = conn.execute("PRAGMA quick_check").fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise BackupError(f"integrity check of {path.name} failed: {e}") from e
        if not row or row[0] != "ok":
            raise BackupError(f"integrity check of {path.name} failed: {row[0] if row else 'no result'}")

    def list_tables(self, counts: bool = False) -> Dict:
        if not self.path.exists():
            return {'error': 'missing', 'tables': []}
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        try:
            cur = conn.cursor()
            cur.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
            tables = [r[0] for r in cur.fetchall()]
            result = {'tables': tables}
            if counts:
                result['row_counts'] = {t: cur.execute(f'SELECT COUNT(*) FROM "{t}"').fetchone()[0] for t in tables}
            return result
        except sqlite3.Error as e:
            return {'error': f'query_error:{e.__class__.__name__}', 'tables': []}
        finally:
            conn.close()


class FileDataSource:
    """Any single data file, copied as-is. The caller keeps it quiet during the copy."""

    def __init__(self, path, io_attempts: int = DEFAULT_IO_ATTEMPTS):
        self.db_path = str(path)
        self.io_attempts = io_attempts

    @property
    def path(self) -> Path:
        return Path(self.db_path)

    def open(self):
        return None

    def close(self):
        pass

    def snapshot_to(self, target: Path | str) -> Path:
        return copy_file(self.db_path, target, attempts=self.io_attempts)

    def validate_copy(self, path: Path | str):
        expected = self.path.stat().st_size
        actual = Path(path).stat().st_size
        if actual != expected:
            raise BackupError(f"truncated copy of {self.path.name}: {actual} of {expected} bytes")
