"""Central configuration for the Store backup / restore tooling.

Environment variables override defaults so operators can relocate data or
tune the schedule without editing code.
"""
from __future__ import annotations
import os
from pathlib import Path

# Base directory (repository root unless relocated)
BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("STORE_APP_DATA_DIR", str(BASE_DIR)))

# Live database (opened by the app only after the startup restore step)
DB_FILENAME = os.getenv("STORE_APP_DB_FILENAME", "store.db")
DATABASE_PATH = str(DATA_DIR / DB_FILENAME)

# Network host/port for the status server
APP_HOST = os.getenv("STORE_APP_HOST", "0.0.0.0")
APP_PORT = int(os.getenv("STORE_APP_PORT", "8050"))
APP_DEBUG = os.getenv("STORE_APP_DEBUG", "0").lower() in {"1", "true", "yes"}

# Backup archive + schedule (interval 0 disables automatic backups)
BACKUP_DIR = Path(os.getenv("STORE_APP_BACKUP_DIR", str(DATA_DIR / "backups")))
AUTO_BACKUP_INTERVAL_SEC = int(os.getenv("STORE_APP_AUTO_BACKUP_SEC", "0"))
BACKUP_RETENTION = int(os.getenv("STORE_APP_BACKUP_RETENTION", "10"))
HEALTH_FAILURE_THRESHOLD = int(os.getenv("STORE_APP_HEALTH_FAILURES", "3"))
IO_RETRY_ATTEMPTS = int(os.getenv("STORE_APP_IO_RETRIES", "3"))

# Pending restore state
STAGING_DIR = Path(os.getenv("STORE_APP_STAGING_DIR", str(DATA_DIR / "restore-staging")))
RESTORE_COMMAND_PATH = Path(os.getenv("STORE_APP_RESTORE_COMMAND", str(DATA_DIR / "restore-command.json")))
RESTORE_MAX_AGE_SEC = int(os.getenv("STORE_APP_RESTORE_MAX_AGE_SEC", "86400"))
RESTORE_MAX_ATTEMPTS = int(os.getenv("STORE_APP_RESTORE_MAX_ATTEMPTS", "3"))

# Optional OneDrive synced folder used as the remote copy target
_onedrive = os.getenv("STORE_APP_ONEDRIVE_DIR", "").strip()
ONEDRIVE_SYNC_DIR = Path(_onedrive) if _onedrive else None

# Optional append-only log file (console output is always on)
_log_file = os.getenv("STORE_APP_LOG_FILE", "").strip()
LOG_FILE = Path(_log_file) if _log_file else None


def ensure_backup_dir():
    BACKUP_DIR.mkdir(parents=True, exist_ok=True)
