"""MD5 checksums of migration files."""

from __future__ import annotations

import hashlib
import os

_CHUNK = 64 * 1024


def checksum(data: bytes) -> str:
    """Return the hex MD5 digest of ``data``."""
    return hashlib.md5(data).hexdigest()


def file_checksum(path: str | os.PathLike[str]) -> str:
    """Return the hex MD5 digest of the file at ``path``.

    A file that cannot be opened yields an empty string; read errors raise.
    """
    try:
        handle = open(path, "rb")
    except OSError:
        return ""
    digest = hashlib.md5()
    with handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()