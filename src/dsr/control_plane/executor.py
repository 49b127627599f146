"""
dsr — build executor.

File: src/dsr/control_plane/executor.py

Purpose
- Drive one release build: plan the target matrix, gate on repository state, fan
  out to backends, and aggregate per-target results into one run outcome.

Functional requirements
- Planning and validation errors abort before any backend is invoked.
- At most one build is in flight per logical host; independent hosts run
  concurrently on a thread pool.
- Every planned target ends with exactly one terminal result, including targets
  that were skipped because a dependency was missing or the run was interrupted.
- A backend exception fails its own target and never cancels siblings.
- Results are sorted by target regardless of completion order.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

import structlog

from dsr.backends.base import Backend, BuildRequest
from dsr.constants import KNOWN_HOSTS
from dsr.control_plane.retention import RetentionReport, RetentionSweeper
from dsr.control_plane.retry import RetryPolicy
from dsr.domain.errors import DependencyError, InternalError
from dsr.domain.ids import generate_run_id
from dsr.domain.models import (
    BuildMethod,
    BuildResult,
    BuildStatus,
    BuildStrategy,
    RepoState,
    RunOutcome,
    Target,
    utc_now_iso,
)
from dsr.integration_plane.repo_validator import RepoValidator, version_to_tag
from dsr.observability.logging import correlation_scope
from dsr.planning.platform_router import PlatformRouter
from dsr.planning.workflow_analyzer import WorkflowAnalyzer
from dsr.sandbox.process_runner import ProcessRegistry
from dsr.utils.concurrency import CancellationToken, KeyedMutex

if TYPE_CHECKING:
    from pathlib import Path

    from dsr.config.repo_config import RepoConfig
    from dsr.config.schema import EngineConfig
    from dsr.manifest.assembler import ManifestAssembler


@dataclass(frozen=True, slots=True)
class BuildRun:
    """Everything one ``BuildExecutor.run`` call produced."""

    run_id: str
    tool: str
    version: str
    repo_state: RepoState
    strategies: tuple[BuildStrategy, ...]
    results: tuple[BuildResult, ...]
    outcome: RunOutcome
    started_at: str
    duration_ms: int
    retention: RetentionReport | None = None

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    @property
    def succeeded_count(self) -> int:
        return sum(1 for item in self.results if item.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.results) - self.succeeded_count


def aggregate_outcome(results: Iterable[BuildResult], *, interrupted: bool = False) -> RunOutcome:
    if interrupted:
        return RunOutcome.INTERRUPTED
    ordered = list(results)
    successes = sum(1 for item in ordered if item.succeeded)
    if ordered and successes == len(ordered):
        return RunOutcome.SUCCESS
    if successes:
        return RunOutcome.PARTIAL_FAILURE
    if ordered and all(item.status is BuildStatus.TIMEOUT for item in ordered):
        return RunOutcome.TIMEOUT
    return RunOutcome.BUILD_FAILED


class BuildExecutor:
    def __init__(
        self,
        config: EngineConfig,
        backends: Mapping[BuildMethod, Backend],
        *,
        validator: RepoValidator | None = None,
        router: PlatformRouter | None = None,
        analyzer: WorkflowAnalyzer | None = None,
        assembler: ManifestAssembler | None = None,
        registry: ProcessRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] | None = None,
        run_id_factory: Callable[[], str] = generate_run_id,
        logger: Any | None = None,
    ) -> None:
        self._config = config
        self._backends = dict(backends)
        self._validator = validator if validator is not None else RepoValidator()
        self._router = router if router is not None else PlatformRouter()
        self._analyzer = analyzer if analyzer is not None else WorkflowAnalyzer()
        self._assembler = assembler
        self._registry = registry if registry is not None else ProcessRegistry()
        self._retry = retry_policy if retry_policy is not None else RetryPolicy.from_config(config)
        self._cancel = CancellationToken()
        self._sleep = sleep if sleep is not None else self._cancellable_sleep
        self._run_id_factory = run_id_factory
        self._host_locks = KeyedMutex()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def interrupted(self) -> bool:
        return self._cancel.is_cancelled

    def interrupt(self) -> None:
        """Stop the run: pending targets are skipped and live process groups killed."""

        self._cancel.cancel()
        signalled = self._registry.terminate_all()
        self._logger.warning("build_run_interrupted", signalled_process_groups=signalled)

    def plan(
        self,
        repo_config: RepoConfig,
        *,
        targets: Iterable[Target | str] | None = None,
        allow_unknown_runners: bool = False,
    ) -> tuple[BuildStrategy, ...]:
        strategies = self._router.build_matrix(repo_config, targets)
        if any(item.method is BuildMethod.ACT for item in strategies):
            self._analyzer.check_job_map(repo_config, allow_unknown=allow_unknown_runners)
        return strategies

    def run(
        self,
        repo_config: RepoConfig,
        version: str,
        *,
        allow_dirty: bool = False,
        targets: Iterable[Target | str] | None = None,
        allow_unknown_runners: bool = False,
        timeout_seconds: float | None = None,
    ) -> BuildRun:
        run_id = self._run_id_factory()
        started_at = utc_now_iso()
        started = time.monotonic()
        strategies = self.plan(
            repo_config, targets=targets, allow_unknown_runners=allow_unknown_runners
        )

        report = self._validator.validate_for_build(
            repo_config.local_path, version, allow_dirty=allow_dirty
        )
        report.raise_for_problems()
        # The report above is the gate; untracked files pass it with a warning.
        repo_state = self._validator.build_info(
            repo_config.local_path, version_to_tag(version), allow_dirty=True
        )
        self._logger.info(
            "build_run_started",
            run_id=run_id,
            tool=repo_config.tool_name,
            version=version,
            git_sha=repo_state.git_sha,
            targets=[str(item.target) for item in strategies],
        )

        retention_box: list[RetentionReport] = []
        sweeper_thread = threading.Thread(
            target=self._sweep_retention,
            args=(run_id, retention_box),
            name="dsr-retention",
            daemon=True,
        )
        sweeper_thread.start()

        deadline = float(timeout_seconds or self._config.timeout_seconds)
        results: list[BuildResult] = []
        try:
            with ThreadPoolExecutor(
                max_workers=max(1, min(len(strategies), len(KNOWN_HOSTS))),
                thread_name_prefix="dsr-build",
            ) as pool:
                futures = {
                    pool.submit(
                        self._run_target,
                        BuildRequest(
                            run_id=run_id,
                            strategy=strategy,
                            repo_state=repo_state,
                            repo_config=repo_config,
                            version=version,
                            timeout_seconds=deadline,
                            grace_seconds=float(self._config.kill_grace_seconds),
                        ),
                    ): strategy
                    for strategy in strategies
                }
                for future in as_completed(futures):
                    results.append(future.result())
        finally:
            sweeper_thread.join()

        ordered = tuple(sorted(results, key=lambda item: item.target))
        if len(ordered) != len(strategies):
            raise InternalError(
                f"expected {len(strategies)} results for run {run_id}, got {len(ordered)}"
            )
        outcome = aggregate_outcome(ordered, interrupted=self.interrupted)
        build_run = BuildRun(
            run_id=run_id,
            tool=repo_config.tool_name,
            version=version,
            repo_state=repo_state,
            strategies=strategies,
            results=ordered,
            outcome=outcome,
            started_at=started_at,
            duration_ms=int((time.monotonic() - started) * 1000),
            retention=retention_box[0] if retention_box else None,
        )
        self._logger.info(
            "build_run_finished",
            run_id=run_id,
            outcome=outcome.value,
            succeeded=build_run.succeeded_count,
            failed=build_run.failed_count,
            duration_ms=build_run.duration_ms,
        )
        return build_run

    def publish(self, build_run: BuildRun) -> Path:
        """Assemble and persist the manifest for a finished run."""

        if self._assembler is None:
            raise InternalError("no manifest assembler configured")
        manifest = self._assembler.assemble(build_run)
        return self._assembler.write(manifest, self._config.manifests_dir)

    def _run_target(self, request: BuildRequest) -> BuildResult:
        strategy = request.strategy
        with correlation_scope(target=str(strategy.target), host=strategy.host):
            try:
                return self._run_target_locked(request)
            except Exception as exc:  # noqa: BLE001 - one target must not cancel siblings
                self._logger.exception(
                    "build_target_crashed", target=str(strategy.target), host=strategy.host
                )
                return _terminal_result(
                    request,
                    BuildStatus.FAILED,
                    exit_class=6,
                    reason=f"{type(exc).__name__}: {exc}",
                )

    def _run_target_locked(self, request: BuildRequest) -> BuildResult:
        strategy = request.strategy
        backend = self._backends.get(strategy.method)
        if backend is None:
            return _terminal_result(
                request,
                BuildStatus.SKIPPED,
                exit_class=3,
                reason=f"no backend registered for method {strategy.method.value}",
            )

        with self._host_locks.hold(strategy.host):
            attempt = 0
            while True:
                attempt += 1
                if self._cancel.is_cancelled:
                    return _terminal_result(
                        request,
                        BuildStatus.SKIPPED,
                        exit_class=5,
                        reason="interrupted",
                        attempts=attempt,
                    )

                try:
                    backend.check(strategy, request.repo_config)
                except DependencyError as exc:
                    if self._cancel.is_cancelled:
                        return _terminal_result(
                            request,
                            BuildStatus.SKIPPED,
                            exit_class=5,
                            reason="interrupted",
                            attempts=attempt,
                        )
                    decision = self._retry.decide(
                        attempt=attempt, transient=exc.transient, target=str(strategy.target)
                    )
                    if decision.should_retry:
                        self._sleep(decision.delay_seconds)
                        continue
                    self._logger.warning(
                        "build_target_skipped",
                        target=str(strategy.target),
                        host=strategy.host,
                        reason=exc.message,
                    )
                    return _terminal_result(
                        request,
                        BuildStatus.SKIPPED,
                        exit_class=exc.exit_code,
                        reason=exc.message,
                        attempts=attempt,
                    )

                result = backend.run(request)
                if result.status is BuildStatus.FAILED and not self._cancel.is_cancelled:
                    decision = self._retry.decide(
                        attempt=attempt, transient=result.transient, target=str(strategy.target)
                    )
                    if decision.should_retry:
                        self._sleep(decision.delay_seconds)
                        continue
                return replace(result, attempts=attempt)

    def _sweep_retention(self, run_id: str, sink: list[RetentionReport]) -> None:
        sweeper = RetentionSweeper(
            self._config.artifacts_dir,
            self._config.logs_dir,
            self._config.retention_days,
            worktrees_dir=self._config.worktrees_dir,
        )
        try:
            sink.append(sweeper.sweep(exclude_run_id=run_id))
        except OSError as exc:
            self._logger.warning("retention_sweep_failed", error=str(exc))

    def _cancellable_sleep(self, seconds: float) -> None:
        self._cancel.wait(seconds)


def _terminal_result(
    request: BuildRequest,
    status: BuildStatus,
    *,
    exit_class: int,
    reason: str,
    attempts: int = 1,
) -> BuildResult:
    strategy = request.strategy
    return BuildResult(
        run_id=request.run_id,
        target=strategy.target,
        host=strategy.host,
        method=strategy.method,
        job=strategy.job,
        status=status,
        exit_class=exit_class,
        duration_seconds=0.0,
        reason=reason,
        attempts=attempts,
    )


__all__ = ["BuildExecutor", "BuildRun", "aggregate_outcome"]
