"""
dsr — containerized backend.

File: src/dsr/backends/containerized.py

Purpose
- Run a GitHub Actions job locally through ``act`` for Linux targets.

Functional requirements
- The job runs in a detached worktree pinned to the validated SHA, never in the
  operator's checkout. The worktree is removed on every exit path.
- Artifacts land in a directory owned by this run and target alone.
- Flattening the act artifact tree never overwrites silently: identical files
  sharing a basename are de-duplicated, differing ones fail the target.
"""

from __future__ import annotations

import shutil
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dsr.backends.base import Backend, BuildRequest, TargetPaths, append_log, classify_transient
from dsr.domain.errors import (
    ArtifactCollisionError,
    DependencyError,
    ValidationError,
)
from dsr.domain.models import BuildMethod, BuildResult
from dsr.integration_plane.git_engine import GitEngineError
from dsr.integration_plane.repo_validator import RepoValidator
from dsr.utils.fs import iter_files
from dsr.utils.hashing import sha256_file

if TYPE_CHECKING:
    from collections.abc import Callable

    from dsr.config.repo_config import RepoConfig
    from dsr.config.schema import EngineConfig
    from dsr.domain.models import BuildStrategy
    from dsr.sandbox.process_runner import ProcessRunner


def collect_artifacts(raw_dir: Path, out_dir: Path) -> int:
    """Flatten every file under ``raw_dir`` into ``out_dir`` by basename.

    Returns the number of files in ``out_dir`` afterwards.
    """

    out_dir.mkdir(parents=True, exist_ok=True)
    origins: dict[str, Path] = {}
    for source in iter_files(raw_dir):
        destination = out_dir / source.name
        if destination.exists():
            if sha256_file(destination) == sha256_file(source):
                continue
            first = origins.get(source.name)
            earlier = first.relative_to(raw_dir).as_posix() if first else destination.name
            raise ArtifactCollisionError(
                f"artifact name collision for {source.name!r}: {earlier} and "
                f"{source.relative_to(raw_dir).as_posix()} have different content"
            )
        shutil.copy2(source, destination)
        origins[source.name] = source
    return len(iter_files(out_dir))


class ContainerizedBackend(Backend):
    method = BuildMethod.ACT

    def __init__(
        self,
        config: EngineConfig,
        *,
        validator: RepoValidator | None = None,
        runner: ProcessRunner | None = None,
        which: Callable[[str], str | None] = shutil.which,
        logger: Any | None = None,
    ) -> None:
        super().__init__(config, runner=runner, logger=logger)
        self._validator = validator if validator is not None else RepoValidator()
        self._which = which

    def check(self, strategy: BuildStrategy, repo_config: RepoConfig | None = None) -> None:
        if self._which(self._config.act_binary) is None:
            raise DependencyError(
                f"{self._config.act_binary} not found on PATH "
                "(install: https://github.com/nektos/act)",
                target=str(strategy.target),
                host=strategy.host,
            )
        if self._which(self._config.docker_binary) is None:
            raise DependencyError(
                f"{self._config.docker_binary} not found on PATH",
                target=str(strategy.target),
                host=strategy.host,
            )
        probe = self._runner.capture(
            (self._config.docker_binary, "info"),
            timeout_seconds=self._config.act_check_timeout_seconds,
            grace_seconds=float(self._config.kill_grace_seconds),
        )
        if not probe.ok:
            detail = "timed out" if probe.timed_out else probe.output.strip()
            raise DependencyError(
                f"docker daemon not reachable: {detail or 'docker info failed'}",
                transient=True,
                target=str(strategy.target),
                host=strategy.host,
            )

    def act_command(
        self,
        request: BuildRequest,
        *,
        worktree: Path,
        raw_dir: Path,
    ) -> tuple[str, ...]:
        strategy = request.strategy
        return (
            self._config.act_binary,
            "-W",
            str(worktree / request.repo_config.workflow),
            "--artifact-server-path",
            str(raw_dir),
            "-j",
            strategy.job,
            self._config.act_event,
            *strategy.options.act_flags,
            "--directory",
            str(worktree),
        )

    def run(self, request: BuildRequest) -> BuildResult:
        started = time.monotonic()
        strategy = request.strategy
        paths = self.prepare_target_dirs(request.run_id, strategy.target)
        log_file = self.log_path(request.run_id, strategy.target)
        worktree = self._config.worktrees_dir / f"{request.run_id}-{strategy.target.slug}"
        repo_path = request.repo_config.local_path

        if worktree.exists():
            self._validator.remove_build_worktree(repo_path, worktree)
        try:
            self._validator.create_build_worktree(repo_path, request.repo_state.git_sha, worktree)
        except (GitEngineError, ValidationError) as exc:
            append_log(log_file, f"dsr: cannot create worktree: {exc}")
            return self.failed_result(
                request, f"cannot create worktree: {exc}", started=started, log_file=log_file
            )

        try:
            return self._run_in_worktree(request, worktree, paths, log_file, started)
        finally:
            self._validator.remove_build_worktree(repo_path, worktree)

    def _run_in_worktree(
        self,
        request: BuildRequest,
        worktree: Path,
        paths: TargetPaths,
        log_file: Path,
        started: float,
    ) -> BuildResult:
        strategy = request.strategy
        command = self.act_command(request, worktree=worktree, raw_dir=paths.raw)
        self._logger.info(
            "act_build_started",
            target=str(strategy.target),
            job=strategy.job,
            log_file=str(log_file),
        )
        outcome = self._runner.run(
            command,
            cwd=worktree,
            log_file=log_file,
            timeout_seconds=request.timeout_seconds,
            grace_seconds=request.grace_seconds,
            label=str(strategy.target),
        )
        if outcome.succeeded:
            try:
                count = collect_artifacts(paths.raw, paths.out)
            except ArtifactCollisionError as exc:
                append_log(log_file, f"dsr: {exc}")
                return self.failed_result(
                    request,
                    str(exc),
                    started=started,
                    log_file=log_file,
                    exit_code=outcome.returncode,
                )
            self._logger.info(
                "act_build_succeeded",
                target=str(strategy.target),
                artifact_count=count,
                duration_seconds=round(outcome.duration_seconds, 3),
            )
        elif classify_transient(outcome.tail):
            self._logger.warning("act_build_transient_failure", target=str(strategy.target))
        return self.result_from_outcome(
            request, outcome, paths=paths, log_file=log_file, started=started
        )


__all__ = ["ContainerizedBackend", "collect_artifacts"]
