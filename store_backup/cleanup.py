"""Operator escape hatch for a restore that cannot resolve itself.

``force_clear`` removes the restore descriptor (and its temp file), every
entry of the staging directory and a leftover swap temp file next to the
live database. It never touches the live database itself and is safe to run
any number of times.
"""
from __future__ import annotations
from pathlib import Path
from typing import List

from .events import emit
from .fsutil import clear_directory, remove_if_exists
from .intent import IntentFile
from .startup_restore import swap_temp_path


class EmergencyCleanup:
    def __init__(self, intent_file: IntentFile, staging_dir, live_path):
        self.intent_file = intent_file
        self.staging_dir = Path(staging_dir)
        self.live_path = Path(live_path)
        if self.staging_dir.resolve() == self.live_path.resolve().parent:
            raise ValueError("staging directory must not be the live database directory")

    def force_clear(self) -> List[str]:
        """Remove all pending-restore state. Returns the paths that were deleted."""
        removed: List[str] = []
        for path in (self.intent_file.tmp_path, self.intent_file.path, swap_temp_path(self.live_path)):
            if remove_if_exists(path):
                removed.append(str(path))
        removed.extend(clear_directory(self.staging_dir))
        if removed:
            emit("restore.cleared", f"emergency clear removed {len(removed)} item(s)", removed=removed)
        else:
            emit("restore.cleared", "emergency clear: nothing to remove", removed=removed)
        return removed
