"""
dsr — per-tool repository configuration.

File: src/dsr/config/repo_config.py

Purpose
- Parse ``<repos_dir>/<tool>.yaml`` once per run into a typed ``RepoConfig``.

Functional requirements
- Every problem in a file is reported together, with its field path.
- ``act_job_map`` values may be ``null``; a null or absent entry means the target
  builds natively on its owning host.
- Files whose name starts with ``_`` are templates and never listed as tools.
- Keys this engine does not interpret are ignored: the same files are read by
  other release stages.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog
import yaml

from dsr.config.schema import ConfigValidationIssue
from dsr.constants import (
    DEFAULT_ARTIFACT_PATH,
    DEFAULT_BUILD_COMMANDS,
    DEFAULT_WORKFLOW,
    KNOWN_HOSTS,
    MIN_TOOLCHAIN_VERSIONS,
)
from dsr.domain.errors import ConfigError, InvalidArgumentsError
from dsr.domain.models import Target

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = structlog.get_logger(__name__)

_AddIssue = Callable[[str, str], None]

REPO_CONFIG_SUFFIX: Final[str] = ".yaml"
_TOOL_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_INTERPRETED_KEYS: Final[frozenset[str]] = frozenset(
    {
        "tool_name",
        "name",
        "repo",
        "local_path",
        "language",
        "workflow",
        "targets",
        "act_job_map",
        "act_overrides",
        "build_cmd",
        "artifact_path",
        "remote_paths",
    }
)
_OVERRIDE_KEYS: Final[frozenset[str]] = frozenset(
    {"platform_image", "secrets_file", "env_file", "linux_arm64_flags"}
)


class RepoConfigError(ConfigError):
    """Raised when a repo config file is malformed or inconsistent."""

    def __init__(self, source: Path | str, issues: Sequence[ConfigValidationIssue]) -> None:
        self.source = str(source)
        self.issues = tuple(issues)
        rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid repo config {self.source}:\n{rendered}")


@dataclass(frozen=True, slots=True)
class ActOverrides:
    platform_image: str | None = None
    secrets_file: str | None = None
    env_file: str | None = None
    linux_arm64_flags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RepoConfig:
    """Typed view of one tool's repo configuration."""

    tool_name: str
    repo: str
    local_path: Path
    language: str
    workflow: str
    targets: tuple[Target, ...]
    act_job_map: Mapping[Target, str | None] = field(default_factory=dict)
    act_overrides: ActOverrides = field(default_factory=ActOverrides)
    build_cmd: str | None = None
    artifact_path: str = DEFAULT_ARTIFACT_PATH
    remote_paths: Mapping[str, str] = field(default_factory=dict)
    source: Path | None = None

    @property
    def workflow_path(self) -> Path:
        return self.local_path / self.workflow

    def job_for(self, target: Target) -> str | None:
        return self.act_job_map.get(target)

    @property
    def native_targets(self) -> tuple[Target, ...]:
        return tuple(item for item in self.targets if not self.job_for(item))

    def build_command_template(self) -> str | None:
        if self.build_cmd:
            return self.build_cmd
        return DEFAULT_BUILD_COMMANDS.get(self.language)


def repo_config_path(tool: str, repos_dir: Path | str) -> Path:
    return Path(repos_dir) / f"{tool}{REPO_CONFIG_SUFFIX}"


def list_tools(repos_dir: Path | str) -> tuple[str, ...]:
    """Return configured tool names in sorted order, skipping ``_``-prefixed files."""

    root = Path(repos_dir)
    if not root.is_dir():
        logger.warning("repos_dir_missing", repos_dir=str(root))
        return ()
    names = [
        item.name[: -len(REPO_CONFIG_SUFFIX)]
        for item in root.iterdir()
        if item.is_file()
        and item.name.endswith(REPO_CONFIG_SUFFIX)
        and not item.name.startswith("_")
    ]
    return tuple(sorted(names))


def load_repo_config(tool: str, repos_dir: Path | str) -> RepoConfig:
    """Load and validate the repo config for ``tool``."""

    if not isinstance(tool, str) or not _TOOL_NAME_RE.fullmatch(tool):
        raise InvalidArgumentsError(f"invalid tool name {tool!r}")
    path = repo_config_path(tool, repos_dir)
    if not path.is_file():
        raise InvalidArgumentsError(f"repo config not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        issue = ConfigValidationIssue("<root>", f"invalid YAML: {exc}")
        raise RepoConfigError(path, (issue,)) from exc
    except OSError as exc:
        raise InvalidArgumentsError(f"unable to read repo config {path}: {exc}") from exc

    return parse_repo_config(raw, default_tool=tool, source=path)


def parse_repo_config(
    raw: object,
    *,
    default_tool: str,
    source: Path | None = None,
) -> RepoConfig:
    """Validate a decoded YAML payload; ``source`` anchors relative ``local_path`` values."""

    issues: list[ConfigValidationIssue] = []
    origin = source if source is not None else Path(f"<{default_tool}>")

    def add(path: str, message: str) -> None:
        issues.append(ConfigValidationIssue(path=path, message=message))

    if not isinstance(raw, Mapping):
        raise RepoConfigError(origin, (ConfigValidationIssue("<root>", "expected a mapping"),))

    ignored = sorted(str(key) for key in raw if key not in _INTERPRETED_KEYS)
    if ignored:
        logger.debug("repo_config_keys_ignored", source=str(origin), keys=ignored)

    tool_name = (
        _optional_str(raw, "tool_name", add) or _optional_str(raw, "name", add) or default_tool
    )
    repo = _optional_str(raw, "repo", add) or ""
    language = (_optional_str(raw, "language", add) or "").lower()
    workflow = _optional_str(raw, "workflow", add) or DEFAULT_WORKFLOW
    if Path(workflow).is_absolute() or ".." in Path(workflow).parts:
        add("workflow", "must be a path relative to the repository root")

    local_path_raw = _optional_str(raw, "local_path", add)
    local_path = Path()
    if local_path_raw is None:
        add("local_path", "missing required field")
    else:
        local_path = Path(local_path_raw).expanduser()
        if not local_path.is_absolute() and source is not None:
            local_path = source.parent / local_path

    targets = _parse_targets(raw.get("targets"), add)
    job_map = _parse_job_map(raw.get("act_job_map"), targets, add)
    overrides = _parse_overrides(raw.get("act_overrides"), add)
    build_cmd = _optional_str(raw, "build_cmd", add)
    artifact_path = _optional_str(raw, "artifact_path", add) or DEFAULT_ARTIFACT_PATH
    remote_paths = _parse_remote_paths(raw.get("remote_paths"), add)

    native = [item for item in targets if not job_map.get(item)]
    if native:
        if language not in MIN_TOOLCHAIN_VERSIONS:
            known = ", ".join(sorted(MIN_TOOLCHAIN_VERSIONS))
            add("language", f"native targets require a known language ({known})")
        elif build_cmd is None and language not in DEFAULT_BUILD_COMMANDS:
            add("build_cmd", f"language {language!r} has no default native build command")

    if issues:
        raise RepoConfigError(origin, issues)

    return RepoConfig(
        tool_name=tool_name,
        repo=repo,
        local_path=local_path,
        language=language,
        workflow=workflow,
        targets=tuple(targets),
        act_job_map=job_map,
        act_overrides=overrides,
        build_cmd=build_cmd,
        artifact_path=artifact_path,
        remote_paths=remote_paths,
        source=source,
    )


def _optional_str(payload: Mapping[object, object], key: str, add: _AddIssue) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        add(key, f"expected string, got {type(value).__name__}")
        return None
    stripped = value.strip()
    return stripped or None


def _parse_targets(raw: object, add: _AddIssue) -> list[Target]:
    if raw is None:
        add("targets", "missing required field")
        return []
    if not isinstance(raw, list) or not raw:
        add("targets", "expected a non-empty list of os/arch strings")
        return []
    targets: list[Target] = []
    for index, item in enumerate(raw):
        path = f"targets[{index}]"
        try:
            target = Target.parse(item)
        except ConfigError as exc:
            add(path, str(exc))
            continue
        if target in targets:
            add(path, f"duplicate target {target}")
            continue
        targets.append(target)
    return targets


def _parse_job_map(
    raw: object, targets: Sequence[Target], add: _AddIssue
) -> dict[Target, str | None]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        add("act_job_map", "expected a mapping of os/arch to job id or null")
        return {}
    out: dict[Target, str | None] = {}
    for key in sorted(raw, key=str):
        path = f"act_job_map.{key}"
        try:
            target = Target.parse(str(key))
        except ConfigError as exc:
            add(path, str(exc))
            continue
        if target not in targets:
            add(path, "target is not listed in targets")
            continue
        value = raw[key]
        if value is None:
            out[target] = None
            continue
        if not isinstance(value, str) or not value.strip():
            add(path, "expected a job id or null")
            continue
        out[target] = value.strip()
    return out


def _parse_overrides(raw: object, add: _AddIssue) -> ActOverrides:
    if raw is None:
        return ActOverrides()
    if not isinstance(raw, Mapping):
        add("act_overrides", "expected a mapping")
        return ActOverrides()
    for key in sorted(str(item) for item in raw if item not in _OVERRIDE_KEYS):
        add(f"act_overrides.{key}", "unknown field")

    def text(key: str) -> str | None:
        value = raw.get(key)
        if value is None:
            return None
        if not isinstance(value, str):
            add(f"act_overrides.{key}", f"expected string, got {type(value).__name__}")
            return None
        return value.strip() or None

    flags_raw = raw.get("linux_arm64_flags")
    flags: list[str] = []
    if flags_raw is not None:
        if not isinstance(flags_raw, list) or not all(isinstance(item, str) for item in flags_raw):
            add("act_overrides.linux_arm64_flags", "expected a list of strings")
        else:
            flags = [item for item in flags_raw if item.strip()]

    return ActOverrides(
        platform_image=text("platform_image"),
        secrets_file=text("secrets_file"),
        env_file=text("env_file"),
        linux_arm64_flags=tuple(flags),
    )


def _parse_remote_paths(raw: object, add: _AddIssue) -> dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        add("remote_paths", "expected a mapping of host to path")
        return {}
    out: dict[str, str] = {}
    for key in sorted(raw, key=str):
        path = f"remote_paths.{key}"
        if key not in KNOWN_HOSTS:
            add(path, f"unknown host; expected one of: {', '.join(KNOWN_HOSTS)}")
            continue
        value = raw[key]
        if not isinstance(value, str) or not value.strip():
            add(path, "expected a non-empty path")
            continue
        out[str(key)] = value.strip()
    return out


__all__ = [
    "ActOverrides",
    "RepoConfig",
    "RepoConfigError",
    "list_tools",
    "load_repo_config",
    "parse_repo_config",
    "repo_config_path",
]
