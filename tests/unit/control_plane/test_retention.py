from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from dsr.control_plane.retention import RetentionSweeper

NOW = time.time()
DAY = 86_400


def _touch(path: Path, *, age_days: float, content: str = "x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if not path.exists():
        path.write_text(content, encoding="utf-8")
    stamp = NOW - age_days * DAY
    os.utime(path, (stamp, stamp))
    return path


def _age_dir(path: Path, *, age_days: float) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    stamp = NOW - age_days * DAY
    os.utime(path, (stamp, stamp))
    return path


def test_sweep_removes_only_stale_outputs(tmp_path: Path) -> None:
    artifacts = tmp_path / "artifacts"
    logs = tmp_path / "logs"
    _touch(artifacts / "old-run" / "linux-amd64" / "out" / "ntm", age_days=30)
    _age_dir(artifacts / "old-run", age_days=30)
    _touch(artifacts / "new-run" / "linux-amd64" / "out" / "ntm", age_days=1)
    _age_dir(artifacts / "new-run", age_days=1)
    _touch(logs / "2026-01-01" / "builds" / "old-run-linux-amd64.log", age_days=30)
    _touch(logs / "2026-02-01" / "builds" / "new-run-linux-amd64.log", age_days=1)

    report = RetentionSweeper(artifacts, logs, 7, clock=lambda: NOW).sweep()

    assert report.cutoff_epoch == NOW - 7 * DAY
    assert sorted(Path(item).name for item in report.removed_paths) == [
        "old-run",
        "old-run-linux-amd64.log",
    ]
    assert report.failed_paths == ()
    assert not (artifacts / "old-run").exists()
    assert (artifacts / "new-run").exists()
    assert (logs / "2026-02-01" / "builds" / "new-run-linux-amd64.log").exists()


def test_current_run_is_never_swept(tmp_path: Path) -> None:
    artifacts = tmp_path / "artifacts"
    logs = tmp_path / "logs"
    _touch(artifacts / "current" / "darwin-arm64" / "out" / "ntm", age_days=30)
    _age_dir(artifacts / "current", age_days=30)
    _touch(logs / "2026-01-01" / "builds" / "current-darwin-arm64.log", age_days=30)
    _touch(logs / "current" / "dsr.jsonl", age_days=30)

    report = RetentionSweeper(artifacts, logs, 0, clock=lambda: NOW).sweep(
        exclude_run_id="current"
    )

    assert report.removed_paths == ()
    assert (artifacts / "current").exists()
    assert (logs / "current" / "dsr.jsonl").exists()


def test_empty_stale_directories_are_pruned(tmp_path: Path) -> None:
    logs = tmp_path / "logs"
    _age_dir(logs / "2025-12-01", age_days=40)
    _touch(logs / "2026-01-01" / "builds" / "kept.log", age_days=1)

    RetentionSweeper(tmp_path / "artifacts", logs, 7, clock=lambda: NOW).sweep()

    assert not (logs / "2025-12-01").exists()
    assert (logs / "2026-01-01" / "builds" / "kept.log").exists()


def test_missing_roots_are_fine(tmp_path: Path) -> None:
    report = RetentionSweeper(tmp_path / "a", tmp_path / "l", 7, clock=lambda: NOW).sweep()

    assert report.to_dict() == {"cutoff_epoch": NOW - 7 * DAY, "removed": [], "failed": []}


def test_negative_retention_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="days must be >= 0"):
        RetentionSweeper(tmp_path, tmp_path, -1)


def test_stale_worktrees_are_removed_and_pruned(
    tmp_path: Path,
    make_repo: Callable[..., Path],
    git: Callable[..., subprocess.CompletedProcess[str]],
) -> None:
    repo = make_repo()
    worktrees = tmp_path / "state" / "worktrees"
    crashed = worktrees / "crashed-linux-amd64"
    current = worktrees / "current-linux-amd64"
    for path in (crashed, current):
        git(repo, "worktree", "add", "--detach", str(path), "v1.0.0")
        _age_dir(path, age_days=30)

    report = RetentionSweeper(
        tmp_path / "artifacts", tmp_path / "logs", 7, worktrees_dir=worktrees, clock=lambda: NOW
    ).sweep(exclude_run_id="current")

    assert report.removed_paths == (crashed.as_posix(),)
    assert not crashed.exists()
    assert current.exists()
    listed = git(repo, "worktree", "list", "--porcelain").stdout
    assert f"worktree {crashed.resolve()}" not in listed
    assert f"worktree {current.resolve()}" in listed
