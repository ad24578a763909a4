import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure project root is on sys.path so 'store_backup' and 'config' resolve without installing.
project_root = Path(__file__).resolve().parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from store_backup.database import FileDataSource  # noqa: E402
from store_backup.models import ScheduleConfig  # noqa: E402
from store_backup.system import BackupSystem  # noqa: E402


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


def make_store_db(path, items=(("nails", 100), ("rebar", 12))):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE IF NOT EXISTS products (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT, stock INTEGER)")
    conn.executemany("INSERT INTO products (name, stock) VALUES (?, ?)", list(items))
    conn.commit()
    conn.close()
    return path


def product_names(path):
    conn = sqlite3.connect(path)
    try:
        return [r[0] for r in conn.execute("SELECT name FROM products ORDER BY id")]
    finally:
        conn.close()


def build_system(tmp_path, clock=None, data_source=None, transport=None, schedule=None, **kw):
    live = tmp_path / "data" / "store.db"
    live.parent.mkdir(parents=True, exist_ok=True)
    return BackupSystem(
        live_path=live,
        backup_dir=tmp_path / "backups",
        staging_dir=tmp_path / "restore-staging",
        intent_path=tmp_path / "restore-command.json",
        schedule=schedule or ScheduleConfig(enabled=True, interval_seconds=3600, retention_count=5),
        data_source=data_source,
        transport=transport,
        clock=clock or FakeClock(),
        **kw,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sqlite_system(tmp_path, clock):
    """System around a live SQLite store database."""
    system = build_system(tmp_path, clock=clock)
    make_store_db(system.live_path)
    return system


@pytest.fixture
def file_system(tmp_path, clock):
    """System around a plain data file copied byte for byte."""
    live = tmp_path / "data" / "store.db"
    live.parent.mkdir(parents=True, exist_ok=True)
    live.write_bytes(b"ORIGINAL-DATA-" + bytes(range(256)) * 64)
    return build_system(tmp_path, clock=clock, data_source=FileDataSource(live))
