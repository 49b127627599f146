"""
dsr — configuration schema and validation.

File: src/dsr/config/schema.py

Purpose
- Define authoritative engine configuration defaults and strict validation rules.
- Materialize a validated payload into the typed ``EngineConfig`` every component
  receives at construction time.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject unknown keys and embedded secret values.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, TypedDict

from dsr.constants import (
    ARTIFACTS_DIR,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_ACT_EVENT,
    DEFAULT_BUILD_TIMEOUT_SECONDS,
    DEFAULT_KILL_GRACE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETENTION_DAYS,
    HOST_LINUX,
    HOST_MACOS,
    HOST_WINDOWS,
    KNOWN_HOSTS,
    LOGS_DIR,
    MANIFESTS_DIR,
    MIN_TOOLCHAIN_VERSIONS,
    WORKTREES_DIR,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
LOG_LEVELS: Final[tuple[str, ...]] = ("CRITICAL", "DEBUG", "ERROR", "INFO", "WARNING")

_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "passwd",
        "apikey",
        "private",
        "credential",
        "credentials",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "private_key",
    "password",
    "secret",
)

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "state_dir"),
    ("paths", "repos_dir"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class PathsConfig(TypedDict):
    state_dir: str
    repos_dir: str


class BuildConfig(TypedDict):
    timeout_seconds: int
    kill_grace_seconds: int
    retention_days: int
    max_attempts: int
    retry_backoff_seconds: float
    retry_backoff_max_seconds: float


class ActConfig(TypedDict):
    binary: str
    docker_binary: str
    event: str
    check_timeout_seconds: int


class SshConfig(TypedDict):
    binary: str
    scp_binary: str
    connect_timeout_seconds: int
    check_timeout_seconds: int


class HostSettings(TypedDict):
    ssh_target: str
    remote_root: str


class ObservabilityConfig(TypedDict):
    log_level: str
    log_dir: str
    redact_secrets: bool


class DsrConfig(TypedDict):
    meta: MetaConfig
    paths: PathsConfig
    build: BuildConfig
    act: ActConfig
    ssh: SshConfig
    hosts: dict[str, HostSettings]
    toolchains: dict[str, str]
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[DsrConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "paths": {
        "state_dir": "~/.local/state/dsr",
        "repos_dir": "~/.config/dsr/repos.d",
    },
    "build": {
        "timeout_seconds": DEFAULT_BUILD_TIMEOUT_SECONDS,
        "kill_grace_seconds": DEFAULT_KILL_GRACE_SECONDS,
        "retention_days": DEFAULT_RETENTION_DAYS,
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
        "retry_backoff_seconds": 5.0,
        "retry_backoff_max_seconds": 60.0,
    },
    "act": {
        "binary": "act",
        "docker_binary": "docker",
        "event": DEFAULT_ACT_EVENT,
        "check_timeout_seconds": 30,
    },
    "ssh": {
        "binary": "ssh",
        "scp_binary": "scp",
        "connect_timeout_seconds": 10,
        "check_timeout_seconds": 60,
    },
    "hosts": {
        HOST_LINUX: {"ssh_target": "", "remote_root": ""},
        HOST_MACOS: {"ssh_target": HOST_MACOS, "remote_root": "~/projects"},
        HOST_WINDOWS: {"ssh_target": HOST_WINDOWS, "remote_root": "~/projects"},
    },
    "toolchains": dict(MIN_TOOLCHAIN_VERSIONS),
    "observability": {
        "log_level": "INFO",
        "log_dir": "",
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


@dataclass(frozen=True, slots=True)
class HostConfig:
    name: str
    ssh_target: str
    remote_root: str

    @property
    def is_local(self) -> bool:
        return not self.ssh_target


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Typed, immutable engine configuration built once per process."""

    state_dir: Path
    repos_dir: Path
    timeout_seconds: int
    kill_grace_seconds: int
    retention_days: int
    max_attempts: int
    retry_backoff_seconds: float
    retry_backoff_max_seconds: float
    act_binary: str
    docker_binary: str
    act_event: str
    act_check_timeout_seconds: int
    ssh_binary: str
    scp_binary: str
    ssh_connect_timeout_seconds: int
    ssh_check_timeout_seconds: int
    hosts: Mapping[str, HostConfig]
    toolchain_minimums: Mapping[str, str]
    log_level: str = "INFO"
    log_dir: Path | None = None
    redact_secrets: bool = True

    @property
    def artifacts_dir(self) -> Path:
        return self.state_dir / ARTIFACTS_DIR

    @property
    def logs_dir(self) -> Path:
        return self.log_dir if self.log_dir is not None else self.state_dir / LOGS_DIR

    @property
    def manifests_dir(self) -> Path:
        return self.state_dir / MANIFESTS_DIR

    @property
    def worktrees_dir(self) -> Path:
        return self.state_dir / WORKTREES_DIR

    def host(self, name: str) -> HostConfig:
        try:
            return self.hosts[name]
        except KeyError as exc:
            raise KeyError(f"no host configuration for {name!r}") from exc

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> EngineConfig:
        """Build from a payload that already passed ``assert_valid_config``."""

        paths = config["paths"]
        build = config["build"]
        act = config["act"]
        ssh = config["ssh"]
        observability = config["observability"]
        hosts = {
            name: HostConfig(
                name=name,
                ssh_target=settings["ssh_target"],
                remote_root=settings["remote_root"],
            )
            for name, settings in sorted(config["hosts"].items())
        }
        log_dir_raw = observability["log_dir"]
        return cls(
            state_dir=Path(paths["state_dir"]),
            repos_dir=Path(paths["repos_dir"]),
            timeout_seconds=build["timeout_seconds"],
            kill_grace_seconds=build["kill_grace_seconds"],
            retention_days=build["retention_days"],
            max_attempts=build["max_attempts"],
            retry_backoff_seconds=build["retry_backoff_seconds"],
            retry_backoff_max_seconds=build["retry_backoff_max_seconds"],
            act_binary=act["binary"],
            docker_binary=act["docker_binary"],
            act_event=act["event"],
            act_check_timeout_seconds=act["check_timeout_seconds"],
            ssh_binary=ssh["binary"],
            scp_binary=ssh["scp_binary"],
            ssh_connect_timeout_seconds=ssh["connect_timeout_seconds"],
            ssh_check_timeout_seconds=ssh["check_timeout_seconds"],
            hosts=hosts,
            toolchain_minimums=dict(config["toolchains"]),
            log_level=observability["log_level"],
            log_dir=Path(log_dir_raw) if log_dir_raw else None,
            redact_secrets=observability["redact_secrets"],
        )


def default_config() -> DsrConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade dsr.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade dsr"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(
    config: Mapping[str, object] | object,
) -> tuple[dict[str, Any] | None, tuple[ConfigValidationIssue, ...]]:
    """Validate config and return the normalized payload plus structured issues."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return None, issues.items()

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return None, issues.items()
    return normalized, ()


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    normalized, issues = validate_config(config)
    if normalized is None:
        raise ConfigValidationError(issues)
    return normalized


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    allowed = {
        "meta",
        "paths",
        "build",
        "act",
        "ssh",
        "hosts",
        "toolchains",
        "observability",
    }
    _reject_unknown_keys(payload, allowed, "", issues)
    _require_keys(payload, allowed, "", issues)

    out: dict[str, Any] = {}
    _section(payload, key="meta", issues=issues, validator=_validate_meta, out=out)
    _section(payload, key="paths", issues=issues, validator=_validate_paths, out=out)
    _section(payload, key="build", issues=issues, validator=_validate_build, out=out)
    _section(payload, key="act", issues=issues, validator=_validate_act, out=out)
    _section(payload, key="ssh", issues=issues, validator=_validate_ssh, out=out)
    _section(payload, key="hosts", issues=issues, validator=_validate_hosts, out=out)
    _section(payload, key="toolchains", issues=issues, validator=_validate_toolchains, out=out)
    _section(
        payload, key="observability", issues=issues, validator=_validate_observability, out=out
    )
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]],
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_obj = _as_object(raw, key, issues)
    if section_obj is None:
        return
    out[key] = validator(section_obj, key, issues)


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"state_dir", "repos_dir"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(allowed & set(payload)):
        parsed = _as_path_text(payload[key], _join(path, key), issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_build(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    int_fields = {
        "timeout_seconds": 1,
        "kill_grace_seconds": 0,
        "retention_days": 0,
        "max_attempts": 1,
    }
    float_fields = {"retry_backoff_seconds", "retry_backoff_max_seconds"}
    allowed = set(int_fields) | float_fields
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key, minimum in sorted(int_fields.items()):
        if key in payload:
            parsed = _as_int(payload[key], _join(path, key), issues, minimum=minimum)
            if parsed is not None:
                out[key] = parsed
    for key in sorted(float_fields):
        if key in payload:
            parsed_float = _as_float(payload[key], _join(path, key), issues, minimum=0.0)
            if parsed_float is not None:
                out[key] = parsed_float

    base = out.get("retry_backoff_seconds")
    ceiling = out.get("retry_backoff_max_seconds")
    if base is not None and ceiling is not None and ceiling < base:
        issues.add(
            _join(path, "retry_backoff_max_seconds"),
            "must be >= retry_backoff_seconds",
        )
    return out


def _validate_act(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"binary", "docker_binary", "event", "check_timeout_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in ("binary", "docker_binary", "event"):
        if key in payload:
            parsed = _as_str(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    if "check_timeout_seconds" in payload:
        parsed_int = _as_int(
            payload["check_timeout_seconds"],
            _join(path, "check_timeout_seconds"),
            issues,
            minimum=1,
        )
        if parsed_int is not None:
            out["check_timeout_seconds"] = parsed_int
    return out


def _validate_ssh(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"binary", "scp_binary", "connect_timeout_seconds", "check_timeout_seconds"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in ("binary", "scp_binary"):
        if key in payload:
            parsed = _as_str(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    for key in ("connect_timeout_seconds", "check_timeout_seconds"):
        if key in payload:
            parsed_int = _as_int(payload[key], _join(path, key), issues, minimum=1)
            if parsed_int is not None:
                out[key] = parsed_int
    return out


def _validate_hosts(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(KNOWN_HOSTS), path, issues)
    _require_keys(payload, set(KNOWN_HOSTS), path, issues)
    out: dict[str, Any] = {}
    for host in KNOWN_HOSTS:
        raw = payload.get(host)
        if raw is None:
            continue
        host_path = _join(path, host)
        settings = _as_object(raw, host_path, issues)
        if settings is None:
            continue
        allowed = {"ssh_target", "remote_root"}
        _reject_unknown_keys(settings, allowed, host_path, issues)
        _require_keys(settings, allowed, host_path, issues)
        host_out: dict[str, str] = {}
        for key in sorted(allowed & set(settings)):
            value = settings[key]
            # Empty strings are meaningful: the local host has no ssh target.
            if not isinstance(value, str):
                issues.add(_join(host_path, key), f"expected string, got {type(value).__name__}")
                continue
            host_out[key] = value.strip()
        if host != HOST_LINUX and "ssh_target" in host_out and not host_out["ssh_target"]:
            issues.add(_join(host_path, "ssh_target"), "remote hosts require an ssh target")
        out[host] = host_out
    return out


def _validate_toolchains(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(MIN_TOOLCHAIN_VERSIONS), path, issues)
    out: dict[str, Any] = {}
    for key in sorted(payload):
        if key not in MIN_TOOLCHAIN_VERSIONS:
            continue
        parsed = _as_str(payload[key], _join(path, key), issues)
        if parsed is None:
            continue
        if not _VERSION_RE.fullmatch(parsed):
            issues.add(_join(path, key), "must be a MAJOR.MINOR.PATCH version")
            continue
        out[key] = parsed
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        level = payload["log_level"]
        normalized_level = level.strip().upper() if isinstance(level, str) else level
        parsed = _as_enum(
            normalized_level, _join(path, "log_level"), issues, allowed_values=LOG_LEVELS
        )
        if parsed is not None:
            out["log_level"] = parsed
    if "log_dir" in payload:
        value = payload["log_dir"]
        if not isinstance(value, str):
            issues.add(_join(path, "log_dir"), f"expected string, got {type(value).__name__}")
        else:
            out["log_dir"] = value.strip()
    if "redact_secrets" in payload:
        parsed_bool = _as_bool(payload["redact_secrets"], _join(path, "redact_secrets"), issues)
        if parsed_bool is not None:
            out["redact_secrets"] = parsed_bool
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; reference a secrets file instead",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_file"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG",
    "DsrConfig",
    "EngineConfig",
    "HostConfig",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "validate_config",
]
