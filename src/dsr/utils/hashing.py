"""
dsr — hashing utilities

File: src/dsr/utils/hashing.py

Purpose
- SHA-256 helpers for artifacts and manifest companions.
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

PathLike = str | os.PathLike[str]

_FILE_READ_CHUNK_BYTES = 1024 * 1024

__all__ = [
    "FileDigest",
    "digest_file",
    "sha256_bytes",
    "sha256_file",
    "sha256_text",
]


@dataclass(frozen=True, slots=True)
class FileDigest:
    sha256: str
    size_bytes: int


def sha256_bytes(data: bytes) -> str:
    """Return SHA-256 hex digest for raw bytes."""

    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str, *, encoding: str = "utf-8") -> str:
    return sha256_bytes(text.encode(encoding))


def sha256_file(path: PathLike, *, chunk_size: int = _FILE_READ_CHUNK_BYTES) -> str:
    """Return SHA-256 hex digest for a file read in chunks."""

    return digest_file(path, chunk_size=chunk_size).sha256


def digest_file(path: PathLike, *, chunk_size: int = _FILE_READ_CHUNK_BYTES) -> FileDigest:
    """Hash ``path`` in chunks and return the digest with the number of bytes read."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    digest = hashlib.sha256()
    size = 0
    with Path(path).open("rb") as file_handle:
        while True:
            chunk = file_handle.read(chunk_size)
            if not chunk:
                break
            size += len(chunk)
            digest.update(chunk)
    return FileDigest(sha256=digest.hexdigest(), size_bytes=size)
