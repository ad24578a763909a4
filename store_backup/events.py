"""Discrete backup/restore events with the app's tagged console logging.

Every event prints one line such as ``[backup] created ...`` or
``[restore][warn] ...``. When a log file is configured the same line is
appended with a UTC timestamp. Listeners registered with ``subscribe`` get
``(event, fields)`` for each emission.
"""
from __future__ import annotations
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional
import sys
import threading

Listener = Callable[[str, Dict], None]

_listeners: List[Listener] = []
_lock = threading.Lock()
_log_file: Optional[Path] = None


def configure(log_file: Optional[Path | str] = None):
    global _log_file
    _log_file = Path(log_file) if log_file else None


def subscribe(listener: Listener):
    with _lock:
        if listener not in _listeners:
            _listeners.append(listener)


def unsubscribe(listener: Listener):
    with _lock:
        if listener in _listeners:
            _listeners.remove(listener)


def format_line(event: str, message: str, level: str = "info") -> str:
    area = event.split(".", 1)[0]
    suffix = "" if level == "info" else f"[{level}]"
    return f"[{area}]{suffix} {message}"


def emit(event: str, message: str, level: str = "info", **fields):
    line = format_line(event, message, level)
    print(line)
    if _log_file is not None:
        try:
            _log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(_log_file, "a", encoding="utf-8") as f:
                f.write(f"[{datetime.now(timezone.utc).isoformat()}] {line}\n")
        except OSError as e:
            print(f"[events][warn] failed writing log file {_log_file}: {e}", file=sys.stderr)
    with _lock:
        listeners = list(_listeners)
    payload = dict(fields, message=message, level=level)
    for listener in listeners:
        try:
            listener(event, payload)
        except Exception as e:  # noqa: BLE001
            print(f"[events][warn] listener {listener!r} failed on {event}: {e}", file=sys.stderr)
