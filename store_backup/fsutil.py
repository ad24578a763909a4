"""Filesystem primitives shared by backup and restore.

Crash-relevant state (the restore descriptor, the live database file) only
changes through ``atomic_write_text`` / ``atomic_replace``: the new content is
written to a temporary file in the destination directory, fsynced, then
renamed over the target with ``os.replace``.
"""
from __future__ import annotations
from pathlib import Path
import errno
import os
import shutil

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

# errno values worth another try (EACCES covers Windows sharing violations)
TRANSIENT_ERRNOS = {errno.EAGAIN, errno.EBUSY, errno.EINTR, errno.ETXTBSY, errno.EACCES}

DEFAULT_IO_ATTEMPTS = 3


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and exc.errno in TRANSIENT_ERRNOS


def io_retrying(attempts: int = DEFAULT_IO_ATTEMPTS) -> Retrying:
    """Bounded retry policy for transient ``OSError``s; the last error is re-raised."""
    return Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        retry=retry_if_exception(is_transient),
        reraise=True,
    )


def fsync_dir(path: Path | str):
    if os.name == "nt":  # directories cannot be opened for fsync on Windows
        return
    fd = os.open(str(path), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _copy_once(src: Path, dst: Path):
    with open(src, "rb") as fin, open(dst, "wb") as fout:
        shutil.copyfileobj(fin, fout, 1024 * 1024)
        fout.flush()
        os.fsync(fout.fileno())


def copy_file(src: Path | str, dst: Path | str, attempts: int = DEFAULT_IO_ATTEMPTS) -> Path:
    """Copy ``src`` to ``dst`` and fsync the result, retrying transient errors."""
    src, dst = Path(src), Path(dst)
    dst.parent.mkdir(parents=True, exist_ok=True)
    for attempt in io_retrying(attempts):
        with attempt:
            _copy_once(src, dst)
    return dst


def temp_path_for(target: Path | str, suffix: str = ".tmp") -> Path:
    target = Path(target)
    return target.with_name(f".{target.name}{suffix}")


def atomic_write_text(target: Path | str, text: str, attempts: int = DEFAULT_IO_ATTEMPTS) -> Path:
    target = Path(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = temp_path_for(target)
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        atomic_replace(tmp, target, attempts=attempts)
    finally:
        remove_if_exists(tmp)
    return target


def atomic_replace(src: Path | str, target: Path | str, attempts: int = DEFAULT_IO_ATTEMPTS):
    """Rename ``src`` over ``target``; both must live on the same filesystem."""
    src, target = Path(src), Path(target)
    for attempt in io_retrying(attempts):
        with attempt:
            os.replace(src, target)
    fsync_dir(target.parent)


def remove_if_exists(path: Path | str) -> bool:
    """Delete a file if present. Returns True when something was removed."""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False


def clear_directory(path: Path | str) -> list:
    """Delete every entry under ``path`` (the directory itself stays)."""
    path = Path(path)
    removed = []
    if not path.exists():
        return removed
    for child in sorted(path.iterdir()):
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            remove_if_exists(child)
        removed.append(str(child))
    return removed
