"""Age-based cleanup of per-run artifact directories, build logs, and build worktrees."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from dsr.integration_plane.git_engine import GitEngine
from dsr.utils.fs import safe_delete

_SECONDS_PER_DAY = 86_400


@dataclass(frozen=True, slots=True)
class RetentionReport:
    cutoff_epoch: float
    removed_paths: tuple[str, ...]
    failed_paths: tuple[str, ...] = ()

    @property
    def removed_count(self) -> int:
        return len(self.removed_paths)

    def to_dict(self) -> dict[str, object]:
        return {
            "cutoff_epoch": self.cutoff_epoch,
            "removed": list(self.removed_paths),
            "failed": list(self.failed_paths),
        }


class RetentionSweeper:
    """Remove run outputs older than ``days`` by modification time.

    Artifact directories are swept per run id; log files are swept individually and
    emptied date directories are pruned. Build worktrees left behind by a crashed
    run are deleted and their registrations pruned from the owning repository.
    Anything belonging to ``exclude_run_id`` is never touched, whatever its age.
    """

    def __init__(
        self,
        artifacts_dir: Path,
        logs_dir: Path,
        days: int,
        *,
        worktrees_dir: Path | None = None,
        clock: Callable[[], float] = time.time,
        logger: Any | None = None,
    ) -> None:
        if days < 0:
            raise ValueError("days must be >= 0")
        self.artifacts_dir = Path(artifacts_dir)
        self.logs_dir = Path(logs_dir)
        self.days = days
        self.worktrees_dir = None if worktrees_dir is None else Path(worktrees_dir)
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def sweep(self, *, exclude_run_id: str | None = None) -> RetentionReport:
        cutoff = self._clock() - self.days * _SECONDS_PER_DAY
        removed: list[str] = []
        failed: list[str] = []

        if self.artifacts_dir.is_dir():
            for run_dir in sorted(self.artifacts_dir.iterdir()):
                if exclude_run_id and run_dir.name == exclude_run_id:
                    continue
                self._remove_if_stale(run_dir, self.artifacts_dir, cutoff, removed, failed)

        if self.logs_dir.is_dir():
            for log_file in sorted(self.logs_dir.rglob("*")):
                if not log_file.is_file() or log_file.is_symlink():
                    continue
                if exclude_run_id and exclude_run_id in log_file.relative_to(self.logs_dir).parts:
                    continue
                if exclude_run_id and log_file.name.startswith(f"{exclude_run_id}-"):
                    continue
                self._remove_if_stale(log_file, self.logs_dir, cutoff, removed, failed)
            self._prune_empty_dirs(self.logs_dir, cutoff)

        if self.worktrees_dir is not None and self.worktrees_dir.is_dir():
            owners: set[Path] = set()
            for worktree in sorted(self.worktrees_dir.iterdir()):
                if exclude_run_id and worktree.name.startswith(f"{exclude_run_id}-"):
                    continue
                owner = _worktree_owner(worktree)
                if (
                    self._remove_if_stale(worktree, self.worktrees_dir, cutoff, removed, failed)
                    and owner is not None
                ):
                    owners.add(owner)
            for git_dir in sorted(owners):
                if not GitEngine(git_dir).prune_worktrees():
                    self._logger.warning("retention_worktree_prune_failed", git_dir=str(git_dir))

        report = RetentionReport(
            cutoff_epoch=cutoff, removed_paths=tuple(removed), failed_paths=tuple(failed)
        )
        self._logger.info(
            "retention_sweep_finished",
            days=self.days,
            removed=report.removed_count,
            failed=len(failed),
        )
        return report

    def _remove_if_stale(
        self,
        path: Path,
        root: Path,
        cutoff: float,
        removed: list[str],
        failed: list[str],
    ) -> bool:
        try:
            if path.lstat().st_mtime >= cutoff:
                return False
            safe_delete(path, root)
        except (OSError, ValueError) as exc:
            failed.append(path.as_posix())
            self._logger.warning("retention_remove_failed", path=str(path), error=str(exc))
            return False
        removed.append(path.as_posix())
        return True

    def _prune_empty_dirs(self, root: Path, cutoff: float) -> None:
        directories = sorted(
            (item for item in root.rglob("*") if item.is_dir() and not item.is_symlink()),
            key=lambda item: len(item.parts),
            reverse=True,
        )
        for directory in directories:
            try:
                if directory.stat().st_mtime >= cutoff:
                    continue
                directory.rmdir()
            except OSError:
                continue


def _worktree_owner(worktree: Path) -> Path | None:
    """Return the common git dir a linked worktree is registered in, if readable."""

    try:
        text = (worktree / ".git").read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if not text.startswith("gitdir:"):
        return None
    # gitdir: <common>/worktrees/<name>
    admin = Path(text.split(":", 1)[1].strip())
    return admin.parent.parent if admin.parent.name == "worktrees" else None


__all__ = ["RetentionReport", "RetentionSweeper"]
