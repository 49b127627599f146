"""Command-line interface router for dsr."""

from __future__ import annotations

import argparse
import signal
import sys
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, cast

import structlog
from rich.console import Console
from rich.table import Table

from dsr.backends import ContainerizedBackend, NativeBackend
from dsr.config import load_engine_config, load_repo_config
from dsr.control_plane import BuildExecutor, RetentionSweeper
from dsr.domain.ids import generate_run_id
from dsr.domain.models import BuildMethod, BuildStatus, canonical_json
from dsr.integration_plane.repo_validator import RepoValidator
from dsr.manifest import ManifestAssembler
from dsr.observability.logging import setup_logging, shutdown_logging
from dsr.planning import PlatformRouter, WorkflowAnalyzer
from dsr.sandbox import ProcessRegistry, ProcessRunner
from dsr.security.redaction import redact_text

if TYPE_CHECKING:
    from types import FrameType

    from dsr.config import EngineConfig
    from dsr.control_plane import BuildRun
    from dsr.domain.models import JSONValue

logger = structlog.get_logger(__name__)

_STATUS_STYLES = {
    BuildStatus.SUCCESS: "green",
    BuildStatus.FAILED: "red",
    BuildStatus.TIMEOUT: "yellow",
    BuildStatus.SKIPPED: "dim",
}


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="dsr",
        description=(
            "dsr: release build orchestration across act containers and native hosts.\n\n"
            "Common workflows:\n"
            "  dsr matrix ntm              Show how each target would be built\n"
            "  dsr validate ntm 1.2.3      Check the repository is ready for a release\n"
            "  dsr build ntm 1.2.3         Build every target and write a manifest\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to dsr TOML config (default: $DSR_CONFIG or ~/.config/dsr/dsr.toml).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Debug logging and live build output on stderr.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # build ---------------------------------------------------------------
    build_parser_ = subparsers.add_parser(
        "build",
        parents=[common],
        help="Build release artifacts for a tool version",
        description=(
            "Build every configured target, print one JSON result per target on stdout,\n"
            "and write a content-addressed manifest.\n\n"
            "Examples:\n"
            "  dsr build ntm 1.2.3\n"
            "  dsr build ntm v1.2.3 --targets linux/amd64,darwin/arm64\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    build_parser_.add_argument("tool", help="Tool name (a file in repos.d).")
    build_parser_.add_argument("version", help="Release version, with or without a leading v.")
    _add_targets_argument(build_parser_)
    build_parser_.add_argument(
        "--allow-dirty",
        action="store_true",
        default=False,
        help="Build even when the working tree has uncommitted changes.",
    )
    build_parser_.add_argument(
        "--allow-unknown-runners",
        action="store_true",
        default=False,
        help="Treat unrecognized runs-on values as container-compatible.",
    )
    build_parser_.add_argument(
        "--timeout",
        type=_positive_int,
        default=None,
        help="Per-target deadline in seconds (overrides build.timeout_seconds).",
    )
    build_parser_.set_defaults(handler=_cmd_build)

    # matrix --------------------------------------------------------------
    matrix_parser = subparsers.add_parser(
        "matrix",
        parents=[common],
        help="Print the build strategy for each target",
    )
    matrix_parser.add_argument("tool")
    _add_targets_argument(matrix_parser)
    matrix_parser.set_defaults(handler=_cmd_matrix)

    # analyze -------------------------------------------------------------
    analyze_parser = subparsers.add_parser(
        "analyze",
        parents=[common],
        help="Classify the release workflow's jobs by runner",
    )
    analyze_parser.add_argument("tool")
    analyze_parser.set_defaults(handler=_cmd_analyze)

    # validate ------------------------------------------------------------
    validate_parser = subparsers.add_parser(
        "validate",
        parents=[common],
        help="Check that a version tag exists and the tree is clean",
    )
    validate_parser.add_argument("tool")
    validate_parser.add_argument("version")
    validate_parser.add_argument("--allow-dirty", action="store_true", default=False)
    validate_parser.set_defaults(handler=_cmd_validate)

    # cleanup -------------------------------------------------------------
    cleanup_parser = subparsers.add_parser(
        "cleanup",
        parents=[common],
        help="Remove artifacts and build logs older than the retention window",
    )
    cleanup_parser.add_argument(
        "--days",
        type=_non_negative_int,
        default=None,
        help="Retention window in days (default: build.retention_days).",
    )
    cleanup_parser.set_defaults(handler=_cmd_cleanup)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 4

    overrides: dict[str, object] = {}
    if getattr(namespace, "timeout", None) is not None:
        overrides["build.timeout_seconds"] = namespace.timeout
    config = load_engine_config(namespace.config_path, cli_overrides=overrides)

    # Every command logs through the configured sinks; stdout stays JSON-only.
    run_id = generate_run_id()
    handle = setup_logging(config, run_id=run_id, verbose=namespace.verbose)
    try:
        return int(handler(namespace, config, run_id))
    finally:
        shutdown_logging(handle)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_build(args: argparse.Namespace, config: EngineConfig, run_id: str) -> int:
    repo_config = load_repo_config(args.tool, config.repos_dir)
    executor = _build_executor(config, run_id=run_id, verbose=args.verbose)
    previous = _install_interrupt_handler(executor)
    try:
        build_run = executor.run(
            repo_config,
            args.version,
            allow_dirty=args.allow_dirty,
            targets=args.targets,
            allow_unknown_runners=args.allow_unknown_runners,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    for result in build_run.results:
        print(result.to_json())
    manifest_path = executor.publish(build_run)
    _render_summary(build_run, manifest_path=str(manifest_path))
    return build_run.exit_code


def _cmd_matrix(args: argparse.Namespace, config: EngineConfig, run_id: str) -> int:
    repo_config = load_repo_config(args.tool, config.repos_dir)
    strategies = PlatformRouter().build_matrix(repo_config, args.targets)
    _emit_json(
        {
            "tool": repo_config.tool_name,
            "strategies": [item.to_dict() for item in strategies],
        }
    )
    return 0


def _cmd_analyze(args: argparse.Namespace, config: EngineConfig, run_id: str) -> int:
    repo_config = load_repo_config(args.tool, config.repos_dir)
    analysis = WorkflowAnalyzer().analyze(repo_config.workflow_path)
    _emit_json({"tool": repo_config.tool_name, **analysis.to_dict()})
    return 0


def _cmd_validate(args: argparse.Namespace, config: EngineConfig, run_id: str) -> int:
    repo_config = load_repo_config(args.tool, config.repos_dir)
    report = RepoValidator().validate_for_build(
        repo_config.local_path, args.version, allow_dirty=args.allow_dirty
    )
    _emit_json(
        {
            "tool": repo_config.tool_name,
            "version": args.version,
            "ok": report.ok,
            "problems": list(report.problems),
        }
    )
    if report.ok:
        return 0
    console = Console(stderr=True)
    for problem in report.problems:
        console.print(f"[red]✗[/red] {problem}", highlight=False)
    return 4


def _cmd_cleanup(args: argparse.Namespace, config: EngineConfig, run_id: str) -> int:
    days = config.retention_days if args.days is None else args.days
    sweeper = RetentionSweeper(
        config.artifacts_dir, config.logs_dir, days, worktrees_dir=config.worktrees_dir
    )
    report = sweeper.sweep(exclude_run_id=run_id)
    _emit_json({"days": days, **report.to_dict()})
    return 0 if not report.failed_paths else 6


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_executor(config: EngineConfig, *, run_id: str, verbose: bool) -> BuildExecutor:
    registry = ProcessRegistry()
    runner = ProcessRunner(
        registry=registry,
        live_sink=sys.stderr if verbose else None,
        redactor=redact_text if config.redact_secrets else None,
    )
    validator = RepoValidator()
    backends = {
        BuildMethod.ACT: ContainerizedBackend(config, validator=validator, runner=runner),
        BuildMethod.NATIVE: NativeBackend(config, validator=validator, runner=runner),
    }
    return BuildExecutor(
        config,
        backends,
        validator=validator,
        assembler=ManifestAssembler(),
        registry=registry,
        run_id_factory=lambda: run_id,
    )


def _install_interrupt_handler(executor: BuildExecutor) -> Any:
    def _handle(signum: int, frame: FrameType | None) -> None:
        if executor.interrupted:
            # Second Ctrl-C: stop waiting on the graceful shutdown.
            raise KeyboardInterrupt
        logger.warning("interrupt_received", signal=signum)
        executor.interrupt()

    return signal.signal(signal.SIGINT, _handle)


def _render_summary(build_run: BuildRun, *, manifest_path: str) -> None:
    console = Console(stderr=True)
    table = Table(title=f"{build_run.tool} {build_run.version} ({build_run.run_id})")
    table.add_column("target")
    table.add_column("host")
    table.add_column("method")
    table.add_column("status")
    table.add_column("artifacts", justify="right")
    table.add_column("seconds", justify="right")
    table.add_column("reason")
    for result in build_run.results:
        style = _STATUS_STYLES.get(result.status, "")
        table.add_row(
            str(result.target),
            result.host,
            result.method.value,
            f"[{style}]{result.status.value}[/{style}]" if style else result.status.value,
            str(result.artifact_count),
            f"{result.duration_seconds:.1f}",
            result.reason or "",
        )
    console.print(table)
    console.print(
        f"outcome: {build_run.outcome.value} "
        f"({build_run.succeeded_count} succeeded, {build_run.failed_count} not)",
        highlight=False,
    )
    console.print(f"manifest: {manifest_path}", highlight=False)


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(canonical_json(cast("JSONValue", dict(payload))))
    sys.stdout.flush()


def _add_targets_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--targets",
        type=_target_list,
        default=None,
        help="Comma-separated subset of configured targets, e.g. linux/amd64,darwin/arm64.",
    )


def _target_list(value: str) -> list[str]:
    items = [item.strip() for item in value.split(",") if item.strip()]
    if not items:
        raise argparse.ArgumentTypeError("expected at least one target")
    return items


def _positive_int(value: str) -> int:
    parsed = _non_negative_int(value)
    if parsed == 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return parsed


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return parsed


__all__ = ["build_parser", "run_cli"]
