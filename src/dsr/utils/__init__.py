"""Utility exports for filesystem, hashing, and concurrency helpers."""

from dsr.utils.concurrency import CancellationToken, KeyedMutex
from dsr.utils.fs import atomic_write, is_within, iter_files, safe_delete
from dsr.utils.hashing import digest_file, sha256_bytes, sha256_file, sha256_text

__all__ = [
    "CancellationToken",
    "KeyedMutex",
    "atomic_write",
    "digest_file",
    "is_within",
    "iter_files",
    "safe_delete",
    "sha256_bytes",
    "sha256_file",
    "sha256_text",
]
