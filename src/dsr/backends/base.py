"""Shared backend contract, request shape, and result mapping."""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Final

import structlog

from dsr.constants import BUILD_LOGS_SUBDIR
from dsr.domain.models import BuildMethod, BuildResult, BuildStatus
from dsr.sandbox.process_runner import ProcessRunner
from dsr.utils.fs import iter_files, safe_delete

if TYPE_CHECKING:
    from dsr.config.repo_config import RepoConfig
    from dsr.config.schema import EngineConfig
    from dsr.domain.models import BuildStrategy, RepoState, Target
    from dsr.sandbox.process_runner import ProcessOutcome

_TRANSIENT_PATTERNS: Final[tuple[re.Pattern[str], ...]] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"connection reset",
        r"broken pipe",
        r"ssh: connect to host",
        r"connection refused",
        r"connection timed out",
        r"operation timed out",
        r"cannot connect to the docker daemon",
        r"is the docker daemon running",
        r"error during connect",
    )
)


def classify_transient(text: str) -> bool:
    """Return ``True`` when ``text`` looks like a momentary infrastructure failure."""

    return any(pattern.search(text) for pattern in _TRANSIENT_PATTERNS)


@dataclass(frozen=True, slots=True)
class BuildRequest:
    run_id: str
    strategy: BuildStrategy
    repo_state: RepoState
    repo_config: RepoConfig
    version: str
    timeout_seconds: float
    grace_seconds: float


@dataclass(frozen=True, slots=True)
class TargetPaths:
    """Per-run, per-target output directories; never shared between targets."""

    root: Path
    raw: Path
    out: Path


class Backend(ABC):
    """One way of turning a build strategy into a terminal ``BuildResult``."""

    method: ClassVar[BuildMethod]

    def __init__(
        self,
        config: EngineConfig,
        *,
        runner: ProcessRunner | None = None,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._runner = runner if runner is not None else ProcessRunner()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @abstractmethod
    def check(self, strategy: BuildStrategy, repo_config: RepoConfig | None = None) -> None:
        """Raise ``DependencyError`` when the backend cannot build ``strategy`` now."""

    @abstractmethod
    def run(self, request: BuildRequest) -> BuildResult:
        """Build one target; failures are reported in the result, not raised."""

    def prepare_target_dirs(self, run_id: str, target: Target) -> TargetPaths:
        """Create empty ``raw/`` and ``out/`` directories for one target attempt."""

        artifacts_root = self._config.artifacts_dir
        artifacts_root.mkdir(parents=True, exist_ok=True)
        root = artifacts_root / run_id / target.slug
        if root.exists():
            safe_delete(root, artifacts_root)
        paths = TargetPaths(root=root, raw=root / "raw", out=root / "out")
        paths.raw.mkdir(parents=True)
        paths.out.mkdir()
        return paths

    def log_path(self, run_id: str, target: Target, *, now: datetime | None = None) -> Path:
        moment = now if now is not None else datetime.now(tz=UTC)
        day = moment.strftime("%Y-%m-%d")
        return (
            self._config.logs_dir / day / BUILD_LOGS_SUBDIR / f"{run_id}-{target.slug}.log"
        )

    def result_from_outcome(
        self,
        request: BuildRequest,
        outcome: ProcessOutcome,
        *,
        paths: TargetPaths,
        log_file: Path,
        started: float,
    ) -> BuildResult:
        """Map a process outcome onto the shared status vocabulary."""

        strategy = request.strategy
        common: dict[str, Any] = {
            "run_id": request.run_id,
            "target": strategy.target,
            "host": strategy.host,
            "method": strategy.method,
            "job": strategy.job,
            "duration_seconds": time.monotonic() - started,
            "exit_code": outcome.returncode,
            "artifact_dir": paths.out.as_posix(),
            "log_file": log_file.as_posix(),
        }
        if outcome.interrupted:
            return BuildResult(
                status=BuildStatus.SKIPPED, exit_class=5, reason="interrupted", **common
            )
        if outcome.timed_out:
            return BuildResult(
                status=BuildStatus.TIMEOUT,
                exit_class=5,
                reason=f"exceeded deadline of {request.timeout_seconds:g}s",
                **common,
            )
        if outcome.returncode == 0:
            return BuildResult(
                status=BuildStatus.SUCCESS,
                exit_class=0,
                artifact_count=len(iter_files(paths.out)),
                **common,
            )
        return BuildResult(
            status=BuildStatus.FAILED,
            exit_class=6,
            reason=f"build command exited with {outcome.returncode}",
            transient=classify_transient(outcome.tail),
            **common,
        )

    def failed_result(
        self,
        request: BuildRequest,
        reason: str,
        *,
        started: float,
        log_file: Path | None = None,
        transient: bool = False,
        exit_code: int | None = None,
    ) -> BuildResult:
        strategy = request.strategy
        self._logger.error(
            "backend_target_failed",
            target=str(strategy.target),
            host=strategy.host,
            reason=reason,
            transient=transient,
        )
        return BuildResult(
            run_id=request.run_id,
            target=strategy.target,
            host=strategy.host,
            method=strategy.method,
            job=strategy.job,
            status=BuildStatus.FAILED,
            exit_class=6,
            exit_code=exit_code,
            duration_seconds=time.monotonic() - started,
            log_file=None if log_file is None else log_file.as_posix(),
            reason=reason,
            transient=transient,
        )


def append_log(log_file: Path, text: str) -> None:
    """Append diagnostic text the backend produced itself to a target log."""

    log_file.parent.mkdir(parents=True, exist_ok=True)
    with log_file.open("a", encoding="utf-8") as handle:
        handle.write(text if text.endswith("\n") else f"{text}\n")


__all__ = [
    "Backend",
    "BuildRequest",
    "TargetPaths",
    "append_log",
    "classify_transient",
]
