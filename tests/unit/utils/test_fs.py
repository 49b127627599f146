from __future__ import annotations

import os
from pathlib import Path

import pytest

from dsr.utils.fs import atomic_write, is_within, iter_files, safe_delete


def test_atomic_write_replaces_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "manifest.json"

    atomic_write(target, "{}")
    atomic_write(target, b'{"v": 2}')

    assert target.read_bytes() == b'{"v": 2}'
    assert sorted(p.name for p in tmp_path.iterdir()) == ["manifest.json"]


def test_exclusive_write_refuses_existing_target(tmp_path: Path) -> None:
    target = tmp_path / "manifest.json"
    atomic_write(target, "first", exclusive=True)

    with pytest.raises(FileExistsError):
        atomic_write(target, "second", exclusive=True)

    assert target.read_text(encoding="utf-8") == "first"
    assert sorted(p.name for p in tmp_path.iterdir()) == ["manifest.json"]


def test_atomic_write_requires_existing_parent(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        atomic_write(tmp_path / "missing" / "file.txt", "x")


def test_safe_delete_stays_inside_root(tmp_path: Path) -> None:
    root = tmp_path / "artifacts"
    run_dir = root / "ntm" / "v1.0.0"
    run_dir.mkdir(parents=True)
    (run_dir / "ntm-linux-amd64").write_text("bin", encoding="utf-8")
    outside = tmp_path / "keep.txt"
    outside.write_text("keep", encoding="utf-8")

    with pytest.raises(ValueError, match="outside root"):
        safe_delete(outside, root)
    with pytest.raises(ValueError, match="outside root"):
        safe_delete(root, root)
    with pytest.raises(ValueError, match="outside root"):
        safe_delete(root / ".." / "keep.txt", root)

    safe_delete(root / "ntm", root)

    assert not (root / "ntm").exists()
    assert outside.exists()


def test_safe_delete_unlinks_symlinks_without_following(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    precious = tmp_path / "precious"
    precious.mkdir()
    (precious / "data").write_text("keep", encoding="utf-8")
    link = root / "link"
    link.symlink_to(precious, target_is_directory=True)

    safe_delete(link, root)

    assert not os.path.lexists(link)
    assert (precious / "data").read_text(encoding="utf-8") == "keep"


def test_is_within(tmp_path: Path) -> None:
    (tmp_path / "a" / "b").mkdir(parents=True)

    assert is_within(tmp_path / "a" / "b", tmp_path / "a")
    assert not is_within(tmp_path, tmp_path / "a")
    assert not is_within(tmp_path / "a" / "ghost", tmp_path / "a")


def test_iter_files_is_sorted_by_relative_posix_path(tmp_path: Path) -> None:
    for rel in ("zeta", "docs/README.md", "alpha", "docs/a/deep.txt"):
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(rel, encoding="utf-8")
    (tmp_path / "link").symlink_to(tmp_path / "alpha")

    names = [p.relative_to(tmp_path).as_posix() for p in iter_files(tmp_path)]

    assert names == ["alpha", "docs/README.md", "docs/a/deep.txt", "zeta"]
    assert iter_files(tmp_path / "missing") == []
