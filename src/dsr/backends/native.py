"""
dsr — remote native backend.

File: src/dsr/backends/native.py

Purpose
- Build macOS and Windows targets (and Linux targets without an act job) on the
  host that owns them, over the system ``ssh`` client.

Functional requirements
- The remote checkout must already sit at the validated SHA; a mismatch fails the
  target before anything is built.
- A host without an ``ssh_target`` is the local machine. It builds in a detached
  worktree pinned to the validated SHA, never in the operator's checkout.
- Build commands are jinja2 templates rendered with ``StrictUndefined`` so a typo
  in a template fails loudly instead of producing an empty string.
- ``{{ artifact_path }}`` renders to a directory owned by this run and target
  alone. It is emptied before the build, and only it is copied back into the
  per-target ``out/`` directory.
- Probes, the build, and the copy-back share one deadline of ``timeout_seconds``.
"""

from __future__ import annotations

import shlex
import shutil
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any

import jinja2

from dsr.backends.base import Backend, BuildRequest, TargetPaths, append_log, classify_transient
from dsr.backends.toolchain import probe_command, require_minimum
from dsr.domain.errors import DependencyError, ValidationError
from dsr.domain.models import BuildMethod, BuildResult, OperatingSystem
from dsr.integration_plane.git_engine import GitEngineError
from dsr.integration_plane.repo_validator import RepoValidator
from dsr.sandbox.process_runner import ProcessOutcome

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from dsr.config.repo_config import RepoConfig
    from dsr.config.schema import EngineConfig, HostConfig
    from dsr.domain.models import BuildStrategy
    from dsr.sandbox.process_runner import CapturedCommand, ProcessRunner

_TEMPLATE_ENV = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    autoescape=False,
    keep_trailing_newline=False,
)


def render_build_command(template: str, context: Mapping[str, str]) -> str:
    """Render a build command template; unknown variables raise ``jinja2.UndefinedError``."""

    return _TEMPLATE_ENV.from_string(template).render(**context).strip()


def shell_path(path: str) -> str:
    """Quote ``path`` for a POSIX shell while keeping a leading ``~/`` expandable."""

    if path == "~":
        return path
    if path.startswith("~/"):
        return f"~/{shlex.quote(path[2:])}"
    return shlex.quote(path)


def target_output_path(request: BuildRequest) -> str:
    """Checkout-relative output directory for one run and target."""

    base = request.repo_config.artifact_path.strip("/")
    return f"{base}/{request.run_id}/{request.strategy.target.slug}"


class NativeBackend(Backend):
    method = BuildMethod.NATIVE

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

    def remote_path(self, host: HostConfig, repo_config: RepoConfig) -> str:
        """Return the checkout path on a remote ``host``.

        Explicit ``remote_paths`` entries win; otherwise ``<remote_root>/<tool>``,
        or ``<tool>`` relative to the login directory when no root is configured.
        """

        explicit = repo_config.remote_paths.get(host.name)
        if explicit:
            return explicit
        if host.remote_root:
            return f"{host.remote_root.rstrip('/')}/{repo_config.tool_name}"
        return repo_config.tool_name

    def shell_command(self, host: HostConfig, command: str) -> tuple[str, ...]:
        if host.is_local:
            return ("sh", "-c", command)
        return (
            self._config.ssh_binary,
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self._config.ssh_connect_timeout_seconds}",
            host.ssh_target,
            "--",
            command,
        )

    def check(self, strategy: BuildStrategy, repo_config: RepoConfig | None = None) -> None:
        host = self._config.host(strategy.host)
        context = {"target": str(strategy.target), "host": strategy.host}
        timeout = float(self._config.ssh_check_timeout_seconds)
        if not host.is_local:
            if self._which(self._config.ssh_binary) is None:
                raise DependencyError(f"{self._config.ssh_binary} not found on PATH", **context)
            probe = self._capture(host, "true", timeout_seconds=timeout)
            if not probe.ok:
                detail = _probe_detail(probe)
                raise DependencyError(
                    f"host {host.name} ({host.ssh_target}) unreachable: {detail}",
                    transient=probe.timed_out or classify_transient(probe.output),
                    **context,
                )
        if repo_config is None:
            return

        language = repo_config.language
        probe = self._capture(host, probe_command(language), timeout_seconds=timeout)
        if not probe.ok:
            raise DependencyError(
                f"{language} toolchain not available on {host.name}: "
                f"{_probe_detail(probe) or 'probe failed'}",
                transient=probe.timed_out or classify_transient(probe.output),
                **context,
            )
        found = require_minimum(
            language, probe.stdout or probe.stderr, self._config.toolchain_minimums, host=host.name
        )
        self._logger.debug(
            "native_toolchain_ok",
            host=host.name,
            language=language,
            version=".".join(str(part) for part in found),
        )

    def run(self, request: BuildRequest) -> BuildResult:
        started = time.monotonic()
        strategy = request.strategy
        host = self._config.host(strategy.host)
        paths = self.prepare_target_dirs(request.run_id, strategy.target)
        log_file = self.log_path(request.run_id, strategy.target)

        if not host.is_local:
            checkout = self.remote_path(host, request.repo_config)
            return self._run_in_checkout(request, host, checkout, paths, log_file, started)

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
            return self._run_in_checkout(
                request, host, worktree.as_posix(), paths, log_file, started
            )
        finally:
            self._validator.remove_build_worktree(repo_path, worktree)

    def template_context(self, request: BuildRequest) -> dict[str, str]:
        target = request.strategy.target
        return {
            "tool": request.repo_config.tool_name,
            "version": request.version,
            "tag": request.repo_state.resolved_ref,
            "git_sha": request.repo_state.git_sha,
            "run_id": request.run_id,
            "os": target.os.value,
            "arch": target.arch.value,
            "target": str(target),
            "artifact_path": target_output_path(request),
            "exe": ".exe" if target.os is OperatingSystem.WINDOWS else "",
        }

    def _run_in_checkout(
        self,
        request: BuildRequest,
        host: HostConfig,
        checkout: str,
        paths: TargetPaths,
        log_file: Path,
        started: float,
    ) -> BuildResult:
        strategy = request.strategy
        deadline = started + request.timeout_seconds
        expected_sha = request.repo_state.git_sha

        if not host.is_local:
            head = self._capture(
                host,
                f"git -C {shell_path(checkout)} rev-parse HEAD",
                timeout_seconds=min(
                    float(self._config.ssh_check_timeout_seconds), deadline - time.monotonic()
                ),
            )
            append_log(log_file, f"$ git -C {checkout} rev-parse HEAD\n{head.output}")
            if head.interrupted or time.monotonic() >= deadline:
                return self._stopped_result(request, head, paths, log_file, started)
            if not head.ok:
                return self.failed_result(
                    request,
                    f"cannot read HEAD of {checkout} on {host.name}: "
                    f"{_probe_detail(head) or 'probe failed'}",
                    started=started,
                    log_file=log_file,
                    transient=head.timed_out or classify_transient(head.output),
                )
            remote_sha = head.stdout.strip()
            if remote_sha != expected_sha:
                return self.failed_result(
                    request,
                    f"remote HEAD {remote_sha or '<empty>'} on {host.name} does not match "
                    f"expected {expected_sha}",
                    started=started,
                    log_file=log_file,
                )

        template = request.repo_config.build_command_template()
        if template is None:
            return self.failed_result(
                request,
                f"no build command for language {request.repo_config.language!r}",
                started=started,
                log_file=log_file,
            )
        try:
            build_command = render_build_command(template, self.template_context(request))
        except jinja2.TemplateError as exc:
            return self.failed_result(
                request, f"cannot render build command: {exc}", started=started, log_file=log_file
            )

        output = shell_path(target_output_path(request))
        self._logger.info(
            "native_build_started",
            target=str(strategy.target),
            host=host.name,
            checkout=checkout,
            log_file=str(log_file),
        )
        outcome = self._run_step(
            self.shell_command(
                host,
                f"cd {shell_path(checkout)} && rm -rf {output} && mkdir -p {output} "
                f"&& {build_command}",
            ),
            request,
            log_file,
            deadline,
        )
        if outcome.succeeded:
            outcome = self._copy_back(request, host, checkout, paths.out, log_file, deadline)
            if not (outcome.succeeded or outcome.timed_out or outcome.interrupted):
                return self.failed_result(
                    request,
                    f"copying artifacts from {host.name}:{checkout} failed "
                    f"with exit code {outcome.returncode}",
                    started=started,
                    log_file=log_file,
                    transient=classify_transient(outcome.tail),
                    exit_code=outcome.returncode,
                )
        return self.result_from_outcome(
            request, outcome, paths=paths, log_file=log_file, started=started
        )

    def _copy_back(
        self,
        request: BuildRequest,
        host: HostConfig,
        checkout: str,
        out_dir: Path,
        log_file: Path,
        deadline: float,
    ) -> ProcessOutcome:
        source = f"{checkout.rstrip('/')}/{target_output_path(request)}"
        if host.is_local:
            local_source = Path(source).expanduser()
            if not local_source.is_dir():
                append_log(log_file, f"dsr: artifact directory {local_source} does not exist")
                return ProcessOutcome(("copytree", source), 1, False, False, 0.0, "")
            shutil.copytree(local_source, out_dir, dirs_exist_ok=True)
            return ProcessOutcome(("copytree", source), 0, False, False, 0.0, "")
        return self._run_step(
            (
                self._config.scp_binary,
                "-r",
                "-o",
                "BatchMode=yes",
                "-o",
                f"ConnectTimeout={self._config.ssh_connect_timeout_seconds}",
                f"{host.ssh_target}:{source}/.",
                str(out_dir),
            ),
            request,
            log_file,
            deadline,
        )

    def _run_step(
        self,
        command: tuple[str, ...],
        request: BuildRequest,
        log_file: Path,
        deadline: float,
    ) -> ProcessOutcome:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            append_log(log_file, f"dsr: deadline of {request.timeout_seconds:g}s exceeded")
            return ProcessOutcome(command, None, True, False, 0.0, "")
        return self._runner.run(
            command,
            log_file=log_file,
            timeout_seconds=remaining,
            grace_seconds=request.grace_seconds,
            label=str(request.strategy.target),
        )

    def _stopped_result(
        self,
        request: BuildRequest,
        probe: CapturedCommand,
        paths: TargetPaths,
        log_file: Path,
        started: float,
    ) -> BuildResult:
        stopped = ProcessOutcome(
            probe.command, probe.returncode, not probe.interrupted, probe.interrupted, 0.0, ""
        )
        return self.result_from_outcome(
            request, stopped, paths=paths, log_file=log_file, started=started
        )

    def _capture(
        self, host: HostConfig, command: str, *, timeout_seconds: float
    ) -> CapturedCommand:
        return self._runner.capture(
            self.shell_command(host, command),
            timeout_seconds=timeout_seconds,
            grace_seconds=float(self._config.kill_grace_seconds),
        )


def _probe_detail(probe: CapturedCommand) -> str:
    if probe.timed_out:
        return "timed out"
    if probe.interrupted:
        return "interrupted"
    return probe.output.strip()


__all__ = ["NativeBackend", "render_build_command", "shell_path", "target_output_path"]
