"""Content fingerprints used as deduplication keys.

An image's identity for deduplication is the SHA-256 digest of its raw
bytes, rendered as 64 lowercase hex characters.
"""

from __future__ import annotations

import hashlib
import os
from typing import Union

CHUNK_SIZE = 64 * 1024
DIGEST_LENGTH = 64


def fingerprint_bytes(data: Union[bytes, bytearray, memoryview]) -> str:
    """Return the SHA-256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def fingerprint_file(path: Union[str, os.PathLike]) -> str:
    """Return the SHA-256 hex digest of the file at ``path``.

    The file is read in 64 KiB chunks, so staged uploads are never loaded
    into memory whole. ``OSError`` from opening or reading the file is
    propagated to the caller.
    """
    sha256 = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def is_valid_digest(value: str) -> bool:
    if not isinstance(value, str) or len(value) != DIGEST_LENGTH:
        return False
    try:
        int(value, 16)
    except ValueError:
        return False
    return value == value.lower()
