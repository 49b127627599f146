"""Read-only git plumbing wrapper used to validate and pin build sources."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class GitEngine:
    """Plumbing-only queries against one repository.

    Nothing here parses ``git status`` porcelain or touches the working tree. The
    only writes are ``worktree add``/``worktree remove``, which create and delete
    separate checkouts and never alter the primary one.
    """

    def __init__(
        self,
        repo_path: Path | str,
        *,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).expanduser().resolve()
        self._env_overrides = dict(env_overrides or {})

    def is_repository(self) -> bool:
        if not self.repo_path.is_dir():
            return False
        return self._run_git(["rev-parse", "--git-dir"], check=False).ok

    def rev_parse_commit(self, ref: str) -> str | None:
        """Resolve ``ref`` to a full commit SHA, or ``None`` when it names no commit."""

        result = self._run_git(
            ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False
        )
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def tag_exists(self, tag: str) -> bool:
        result = self._run_git(
            ["show-ref", "--tags", "--verify", "--quiet", f"refs/tags/{tag}"], check=False
        )
        return result.ok

    def branch_exists(self, branch: str) -> bool:
        result = self._run_git(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return result.ok

    def list_tags(self, pattern: str | None = None) -> tuple[str, ...]:
        args = ["tag", "-l"]
        if pattern:
            args.append(pattern)
        output = self._run_git(args).stdout
        return tuple(line.strip() for line in output.splitlines() if line.strip())

    def has_tracked_changes(self) -> bool:
        # diff-index exits 1 when the index or tree differs from HEAD.
        result = self._run_git(["diff-index", "--quiet", "HEAD", "--"], check=False)
        if result.returncode not in {0, 1}:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result.returncode == 1

    def untracked_files(self) -> tuple[str, ...]:
        output = self._run_git(["ls-files", "--others", "--exclude-standard"]).stdout
        return tuple(line for line in output.splitlines() if line.strip())

    def head_sha(self) -> str:
        return self._run_git(["rev-parse", "HEAD"]).stdout.strip()

    def current_branch(self) -> str:
        result = self._run_git(["symbolic-ref", "--short", "--quiet", "HEAD"], check=False)
        branch = result.stdout.strip()
        return branch if result.ok and branch else "HEAD"

    def add_detached_worktree(self, path: Path | str, commit: str) -> Path:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        self._run_git(["worktree", "add", "--detach", str(target), commit])
        return target

    def remove_worktree(self, path: Path | str) -> None:
        self._run_git(["worktree", "remove", "--force", str(path)])
        self.prune_worktrees()

    def prune_worktrees(self) -> bool:
        """Drop registrations of worktrees whose directories no longer exist."""

        return self._run_git(["worktree", "prune"], check=False).ok

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        try:
            completed = subprocess.run(
                command,
                cwd=run_cwd,
                env=env,
                text=True,
                capture_output=True,
                check=False,
            )
        except OSError as exc:
            raise GitEngineError(f"cannot run git in {run_cwd}: {exc}") from exc

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


__all__ = ["CommandResult", "GitCommandError", "GitEngine", "GitEngineError"]
