"""
OneDrive transport for backup artifacts.

Backups are pushed into a OneDrive-synced folder (the OneDrive client does
the actual upload) and pulled back from it when a local artifact is gone.
The rest of the pipeline only sees ``upload(path) -> remote_ref`` and
``download(remote_ref, dest) -> path``.
"""

from __future__ import annotations
import json
import os
from pathlib import Path
from datetime import datetime, timezone

from .checksum import file_sha256
from .fsutil import DEFAULT_IO_ATTEMPTS, atomic_replace, atomic_write_text, copy_file, remove_if_exists, temp_path_for

REMOTE_PREFIX = "onedrive:"


class OneDriveTransport:
    def __init__(self, onedrive_path=None, subfolder: str = "backups", io_attempts: int = DEFAULT_IO_ATTEMPTS):
        self.onedrive_path = Path(onedrive_path) if onedrive_path else None
        self.subfolder = subfolder
        self.io_attempts = io_attempts
        # Auto-detect OneDrive path if not provided
        if self.onedrive_path is None:
            self.onedrive_path = self._autodetect_onedrive_root()

    @property
    def configured(self) -> bool:
        return self.onedrive_path is not None

    @property
    def target_dir(self) -> Path:
        if not self.onedrive_path:
            raise OSError("OneDrive path not configured")
        return self.onedrive_path / self.subfolder

    # -------------------- Platform helpers --------------------
    @staticmethod
    def _autodetect_onedrive_root():
        """Attempt to detect a user's OneDrive root (Windows env var, macOS CloudStorage, ~/OneDrive).

        Returns Path or None.
        """
        env_root = os.environ.get("OneDriveCommercial") or os.environ.get("OneDrive")
        if env_root and Path(env_root).exists():
            return Path(env_root)
        home = Path.home()
        roots = []
        cloud = home / 'Library' / 'CloudStorage'
        if cloud.exists():
            roots.extend(sorted(c for c in cloud.iterdir() if c.is_dir() and c.name.startswith('OneDrive')))
        if (home / 'OneDrive').exists():
            roots.append(home / 'OneDrive')
        # Heuristic: pick first with a 'Documents' or 'Shared' directory
        for r in roots:
            if (r / 'Documents').exists() or (r / 'Shared').exists():
                return r
        return roots[0] if roots else None

    def _manifest_path(self) -> Path:
        return self.target_dir / "file_hashes.json"

    def _load_manifest(self) -> dict:
        path = self._manifest_path()
        if path.exists():
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                return data if isinstance(data, dict) else {}
            except (OSError, ValueError):
                return {}
        return {}

    def _save_manifest(self, manifest: dict):
        atomic_write_text(self._manifest_path(), json.dumps(manifest, indent=2), attempts=self.io_attempts)

    def _resolve(self, remote_ref: str) -> Path:
        name = remote_ref[len(REMOTE_PREFIX):] if remote_ref.startswith(REMOTE_PREFIX) else remote_ref
        name = Path(name).name  # refs never escape the backups folder
        return self.target_dir / name

    # -------------------- Transport API --------------------
    def upload(self, local_path) -> str:
        """Copy an artifact into the synced folder. Returns its remote ref."""
        local_path = Path(local_path)
        self.target_dir.mkdir(parents=True, exist_ok=True)
        dest = self.target_dir / local_path.name
        digest = file_sha256(local_path)
        manifest = self._load_manifest()
        if dest.exists() and manifest.get(dest.name, {}).get('sha256') == digest:
            return REMOTE_PREFIX + dest.name
        tmp = temp_path_for(dest, ".uploading")
        try:
            copy_file(local_path, tmp, attempts=self.io_attempts)
            if tmp.stat().st_size != local_path.stat().st_size:
                raise OSError(f"short copy while uploading {local_path.name}")
            atomic_replace(tmp, dest, attempts=self.io_attempts)
        finally:
            remove_if_exists(tmp)
        manifest[dest.name] = {
            'sha256': digest,
            'size': dest.stat().st_size,
            'uploaded_at': datetime.now(timezone.utc).isoformat(),
        }
        self._save_manifest(manifest)
        return REMOTE_PREFIX + dest.name

    def download(self, remote_ref: str, dest) -> Path:
        """Copy a remote artifact to ``dest``. Raises FileNotFoundError if gone."""
        src = self._resolve(remote_ref)
        if not src.exists():
            raise FileNotFoundError(f"remote backup not found: {remote_ref}")
        return copy_file(src, dest, attempts=self.io_attempts)

    def get_status(self) -> dict:
        """Get current OneDrive target status."""
        if not self.onedrive_path:
            return {"status": "not_configured"}
        if not self.onedrive_path.exists():
            return {"status": "path_not_found", "path": str(self.onedrive_path)}
        manifest = self._load_manifest() if self.target_dir.exists() else {}
        return {
            "status": "configured",
            "path": str(self.target_dir),
            "files_uploaded": len(manifest),
        }
