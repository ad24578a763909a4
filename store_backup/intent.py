"""The durable restore descriptor (``restore-command.json``).

Exactly one canonical path holds the pending restore. It is only ever written
through ``fsutil.atomic_write_text`` so a reader sees either no descriptor or
a complete one.
"""
from __future__ import annotations
from pathlib import Path
from typing import Optional
import json

from .errors import IntentUnreadable
from .fsutil import DEFAULT_IO_ATTEMPTS, atomic_write_text, remove_if_exists, temp_path_for
from .models import RestoreIntent


class IntentFile:
    def __init__(self, path: Path | str, io_attempts: int = DEFAULT_IO_ATTEMPTS):
        self.path = Path(path)
        self.io_attempts = io_attempts

    @property
    def tmp_path(self) -> Path:
        return temp_path_for(self.path)

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> RestoreIntent:
        """Parse the descriptor. Raises ``FileNotFoundError`` or ``IntentUnreadable``."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except (OSError, UnicodeDecodeError) as e:
            raise IntentUnreadable(f"cannot read {self.path}: {e}") from e
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("descriptor is not a JSON object")
            return RestoreIntent.from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            raise IntentUnreadable(f"corrupt restore descriptor {self.path}: {e}") from e

    def read_optional(self) -> Optional[RestoreIntent]:
        """Like ``read`` but returns None when no descriptor exists."""
        try:
            return self.read()
        except FileNotFoundError:
            return None

    def write(self, intent: RestoreIntent) -> Path:
        text = json.dumps(intent.to_dict(), indent=2)
        return atomic_write_text(self.path, text, attempts=self.io_attempts)

    def delete(self) -> bool:
        removed_tmp = remove_if_exists(self.tmp_path)
        return remove_if_exists(self.path) or removed_tmp
