"""Content hashing for backup artifacts and staged restore files."""
from __future__ import annotations
from pathlib import Path
import hashlib
import hmac

CHUNK_SIZE = 65536


class ChecksumEngine:
    """Full-content SHA-256 (hex) of a file.

    ``compute`` raises ``OSError`` when the file cannot be read. ``verify``
    returns False on a mismatch but still raises ``OSError`` for an unreadable
    file, so callers can tell corruption apart from access problems.
    """

    def __init__(self, algorithm: str = "sha256"):
        hashlib.new(algorithm)  # fail fast on an unknown algorithm
        self.algorithm = algorithm

    def compute(self, path: Path | str) -> str:
        h = hashlib.new(self.algorithm)
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
                h.update(chunk)
        return h.hexdigest()

    def verify(self, path: Path | str, expected: str) -> bool:
        if not expected:
            return False
        actual = self.compute(path)
        return hmac.compare_digest(actual, expected.lower())


_default = ChecksumEngine()


def file_sha256(path: Path | str) -> str:
    return _default.compute(path)
