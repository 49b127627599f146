"""Dataclass domain models with strict validation and canonical serialization."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum, StrEnum
from pathlib import Path
from typing import Final

from dsr.constants import HOST_LINUX, HOST_MACOS, HOST_WINDOWS
from dsr.domain.errors import ConfigError, UnsupportedPlatformError

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_SHA256_RE: Final[re.Pattern[str]] = re.compile(r"^[0-9a-f]{64}$")


class OperatingSystem(StrEnum):
    LINUX = "linux"
    DARWIN = "darwin"
    WINDOWS = "windows"


class Architecture(StrEnum):
    AMD64 = "amd64"
    ARM64 = "arm64"
    ARMV7 = "armv7"
    I386 = "386"


class BuildMethod(StrEnum):
    ACT = "act"
    NATIVE = "native"


class RunnerClass(StrEnum):
    COMPATIBLE = "compatible"
    NATIVE_REQUIRED = "native_required"


class RefType(StrEnum):
    TAG = "tag"
    BRANCH = "branch"
    COMMIT = "commit"
    REF = "ref"


class DirtyStatus(StrEnum):
    CLEAN = "clean"
    MODIFIED = "modified"
    UNTRACKED = "untracked"
    MODIFIED_UNTRACKED = "modified+untracked"

    @classmethod
    def from_flags(cls, *, modified: bool, untracked: bool) -> DirtyStatus:
        if modified and untracked:
            return cls.MODIFIED_UNTRACKED
        if modified:
            return cls.MODIFIED
        if untracked:
            return cls.UNTRACKED
        return cls.CLEAN

    @property
    def has_modifications(self) -> bool:
        return self in {DirtyStatus.MODIFIED, DirtyStatus.MODIFIED_UNTRACKED}

    @property
    def has_untracked(self) -> bool:
        return self in {DirtyStatus.UNTRACKED, DirtyStatus.MODIFIED_UNTRACKED}


class BuildStatus(StrEnum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class RunOutcome(StrEnum):
    """Aggregate outcome of one build run."""

    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    BUILD_FAILED = "build_failed"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"

    @property
    def exit_code(self) -> int:
        return _OUTCOME_EXIT_CODES[self]


_OUTCOME_EXIT_CODES: Final[dict[RunOutcome, int]] = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.PARTIAL_FAILURE: 1,
    RunOutcome.BUILD_FAILED: 6,
    RunOutcome.TIMEOUT: 5,
    RunOutcome.INTERRUPTED: 5,
}


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            item.name: _serialize_value(getattr(self, item.name))
            for item in fields(self)  # type: ignore[arg-type]
        }

    def to_json(self) -> str:
        return canonical_json(self.to_dict())


@dataclass(frozen=True, slots=True, order=True)
class Target:
    """One ``os/arch`` pair."""

    os: OperatingSystem
    arch: Architecture

    @classmethod
    def parse(cls, raw: str) -> Target:
        if not isinstance(raw, str):
            raise ConfigError(f"target must be a string, got {type(raw).__name__}")
        parts = raw.strip().split("/")
        if len(parts) != 2 or not all(parts):
            raise ConfigError(f"target {raw!r} must be in os/arch form (example: linux/amd64)")
        os_name, arch_name = parts
        try:
            os_value = OperatingSystem(os_name)
        except ValueError as exc:
            raise UnsupportedPlatformError(f"unsupported operating system {os_name!r}") from exc
        try:
            arch_value = Architecture(arch_name)
        except ValueError as exc:
            raise UnsupportedPlatformError(f"unsupported architecture {arch_name!r}") from exc
        return cls(os=os_value, arch=arch_value)

    @property
    def slug(self) -> str:
        return f"{self.os.value}-{self.arch.value}"

    def __str__(self) -> str:
        return f"{self.os.value}/{self.arch.value}"


def owner_of(target: Target) -> str:
    """Return the logical host that owns ``target``.

    The table is fixed: every Linux target builds on ``trj``, every macOS target on
    ``mmini``, and only ``windows/amd64`` on ``wlap``.
    """

    match target.os:
        case OperatingSystem.LINUX:
            return HOST_LINUX
        case OperatingSystem.DARWIN:
            return HOST_MACOS
        case OperatingSystem.WINDOWS:
            if target.arch is Architecture.AMD64:
                return HOST_WINDOWS
            raise UnsupportedPlatformError(f"no build host owns target {target}")


@dataclass(frozen=True, slots=True)
class BuildOptions(CanonicalModel):
    """Merged per-target overrides, resolved once by the router."""

    act_flags: tuple[str, ...] = ()
    platform_image: str | None = None
    secrets_file: str | None = None
    env_file: str | None = None


@dataclass(frozen=True, slots=True)
class BuildStrategy(CanonicalModel):
    tool: str
    target: Target
    method: BuildMethod
    host: str
    job: str = ""
    options: BuildOptions = field(default_factory=BuildOptions)

    def __post_init__(self) -> None:
        if self.method is BuildMethod.ACT:
            if self.host != HOST_LINUX:
                raise ConfigError(f"act strategy for {self.target} must run on {HOST_LINUX}")
            if not self.job:
                raise ConfigError(f"act strategy for {self.target} requires a job id")
        else:
            if self.job:
                raise ConfigError(f"native strategy for {self.target} must not name a job")
            expected = owner_of(self.target)
            if self.host != expected:
                raise ConfigError(
                    f"native strategy for {self.target} must run on {expected}, not {self.host}"
                )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "tool": self.tool,
            "target": str(self.target),
            "method": self.method.value,
            "host": self.host,
            "job": self.job,
            "options": self.options.to_dict(),
        }


@dataclass(frozen=True, slots=True)
class RepoState(CanonicalModel):
    """Snapshot of the repository, computed once per run."""

    repo_path: str
    requested_ref: str
    resolved_ref: str
    ref_type: RefType
    git_sha: str
    head_sha: str
    current_branch: str
    dirty_status: DirtyStatus
    at_head: bool
    timestamp: str


@dataclass(frozen=True, slots=True)
class BuildResult(CanonicalModel):
    """Terminal outcome of one target.

    ``exit_code`` is the raw exit code of the build process (``None`` when no process
    ran). ``exit_class`` is the process-contract code for this target alone.
    ``transient`` is read by the executor's retry policy and never serialized.
    """

    run_id: str
    target: Target
    host: str
    method: BuildMethod
    status: BuildStatus
    exit_class: int
    duration_seconds: float
    exit_code: int | None = None
    artifact_dir: str | None = None
    artifact_count: int = 0
    log_file: str | None = None
    job: str = ""
    reason: str | None = None
    attempts: int = 1
    transient: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is BuildStatus.SUCCESS

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "run_id": self.run_id,
            "target": str(self.target),
            "host": self.host,
            "method": self.method.value,
            "job": self.job,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "exit_class": self.exit_class,
            "duration_seconds": round(self.duration_seconds, 3),
            "artifact_dir": self.artifact_dir,
            "artifact_count": self.artifact_count,
            "log_file": self.log_file,
            "attempts": self.attempts,
        }
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload


@dataclass(frozen=True, slots=True)
class ArtifactEntry(CanonicalModel):
    name: str
    target: str
    sha256: str
    size_bytes: int
    path: str
    signed: bool = False

    def __post_init__(self) -> None:
        if not _SHA256_RE.fullmatch(self.sha256):
            raise ValueError(f"artifact {self.name}: sha256 must be 64 lowercase hex characters")
        if self.size_bytes < 0:
            raise ValueError(f"artifact {self.name}: size_bytes must be >= 0")


@dataclass(frozen=True, slots=True)
class HostSummary(CanonicalModel):
    target: str
    host: str
    method: str
    status: str
    exit_class: int
    duration_seconds: float
    job: str = ""
    log_file: str | None = None
    reason: str | None = None

    @classmethod
    def from_result(cls, result: BuildResult) -> HostSummary:
        return cls(
            target=str(result.target),
            host=result.host,
            method=result.method.value,
            status=result.status.value,
            exit_class=result.exit_class,
            duration_seconds=round(result.duration_seconds, 3),
            job=result.job,
            log_file=result.log_file,
            reason=result.reason,
        )


@dataclass(frozen=True, slots=True)
class BuildManifest(CanonicalModel):
    schema_version: str
    tool: str
    version: str
    git_sha: str
    git_ref: str
    built_at: str
    duration_ms: int
    run_id: str
    artifacts: tuple[ArtifactEntry, ...]
    hosts: tuple[HostSummary, ...]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "schema_version": self.schema_version,
            "tool": self.tool,
            "version": self.version,
            "git_sha": self.git_sha,
            "git_ref": self.git_ref,
            "built_at": self.built_at,
            "duration_ms": self.duration_ms,
            "run_id": self.run_id,
            "artifacts": [item.to_dict() for item in self.artifacts],
            "hosts": [item.to_dict() for item in self.hosts],
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> BuildManifest:
        try:
            artifacts_raw = data["artifacts"]
            hosts_raw = data["hosts"]
            if not isinstance(artifacts_raw, list) or not isinstance(hosts_raw, list):
                raise ValueError("artifacts and hosts must be lists")
            return cls(
                schema_version=str(data["schema_version"]),
                tool=str(data["tool"]),
                version=str(data["version"]),
                git_sha=str(data["git_sha"]),
                git_ref=str(data["git_ref"]),
                built_at=str(data["built_at"]),
                duration_ms=int(data["duration_ms"]),  # type: ignore[call-overload]
                run_id=str(data["run_id"]),
                artifacts=tuple(ArtifactEntry(**item) for item in artifacts_raw),
                hosts=tuple(HostSummary(**item) for item in hosts_raw),
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"BuildManifest: malformed payload: {exc}") from exc


def utc_now_iso() -> str:
    """Return current UTC time as ISO-8601 with a ``Z`` suffix."""

    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _serialize_value(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return _serialize_value(value.value)
    if isinstance(value, Target):
        return str(value)
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, CanonicalModel):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_serialize_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _serialize_value(item) for key, item in value.items()}
    raise TypeError(f"cannot serialize {type(value).__name__}")


__all__ = [
    "Architecture",
    "ArtifactEntry",
    "BuildManifest",
    "BuildMethod",
    "BuildOptions",
    "BuildResult",
    "BuildStatus",
    "BuildStrategy",
    "CanonicalModel",
    "DirtyStatus",
    "HostSummary",
    "JSONValue",
    "OperatingSystem",
    "RefType",
    "RepoState",
    "RunOutcome",
    "RunnerClass",
    "Target",
    "canonical_json",
    "owner_of",
    "utc_now_iso",
]
