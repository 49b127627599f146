"""
dsr — filesystem utilities

File: src/dsr/utils/fs.py

Purpose
- Atomic writes for manifests and guarded deletion for retention sweeps.

Functional requirements
- Atomic writes use temp files in the destination directory and replace in a single step.
- Exclusive writes refuse to replace an existing file.
- Deletion refuses paths outside the configured root.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "is_within",
    "iter_files",
    "safe_delete",
]


def atomic_write(
    path: PathLike,
    data: bytes | str,
    *,
    encoding: str = "utf-8",
    exclusive: bool = False,
) -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. move into place with ``os.replace`` or, when ``exclusive``, ``os.link``
       so an existing target raises ``FileExistsError`` instead of being replaced.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data.encode(encoding) if isinstance(data, str) else data
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        if exclusive:
            os.link(temp_path, target)
            temp_path.unlink()
        else:
            os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False

    try:
        resolved_child = Path(child).resolve(strict=True)
    except FileNotFoundError:
        return False

    return _is_relative_to(resolved_child, resolved_parent)


def safe_delete(path: PathLike, root: PathLike) -> None:
    """
    Delete ``path`` only if it is contained within ``root``.

    Symlinks are unlinked without traversing into their targets.
    """

    workspace = Path(root).resolve(strict=True)
    if not workspace.is_dir():
        raise NotADirectoryError(f"{workspace!s} is not a directory")

    target = Path(path)
    parent_resolved = target.parent.resolve(strict=True)
    candidate = parent_resolved / target.name
    if not _is_relative_to(candidate, workspace) or candidate == workspace:
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return

    if target.is_dir():
        shutil.rmtree(target)
        return

    target.unlink()


def iter_files(directory: PathLike) -> list[Path]:
    """Return regular files below ``directory`` in deterministic POSIX order."""

    root = Path(directory)
    if not root.is_dir():
        return []
    found = [item for item in root.rglob("*") if item.is_file() and not item.is_symlink()]
    return sorted(found, key=lambda item: item.relative_to(root).as_posix())


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def _fsync_directory(path: Path) -> None:
    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
