"""Manual / scheduled backup and restore helper.

Usage (Windows PowerShell):
  python scripts/backup_db.py backup create --manual
  python scripts/backup_db.py restore diagnose
"""
from __future__ import annotations
from pathlib import Path
import sys

BASE = Path(__file__).resolve().parent.parent
if str(BASE) not in sys.path:
    sys.path.insert(0, str(BASE))

from store_backup.cli import main  # noqa: E402

if __name__ == '__main__':
    raise SystemExit(main())
