"""Stable constants shared across dsr components."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
MANIFEST_SCHEMA_VERSION: Final[str] = "1.0.0"

# Logical build hosts.
HOST_LINUX: Final[str] = "trj"
HOST_MACOS: Final[str] = "mmini"
HOST_WINDOWS: Final[str] = "wlap"
KNOWN_HOSTS: Final[tuple[str, ...]] = (HOST_LINUX, HOST_MACOS, HOST_WINDOWS)

# Repository and workflow defaults.
DEFAULT_WORKFLOW: Final[str] = ".github/workflows/release.yml"
DEFAULT_ARTIFACT_PATH: Final[str] = "dist"
DEFAULT_ACT_EVENT: Final[str] = "push"
DEFAULT_ACT_PLATFORM_LABEL: Final[str] = "ubuntu-latest"

# Default runtime locations, relative to the user's home directory.
DEFAULT_STATE_DIR: Final[PurePosixPath] = PurePosixPath(".local/state/dsr")
DEFAULT_CONFIG_DIR: Final[PurePosixPath] = PurePosixPath(".config/dsr")
REPOS_DIR_NAME: Final[str] = "repos.d"

# Layout under the state directory.
ARTIFACTS_DIR: Final[str] = "artifacts"
LOGS_DIR: Final[str] = "logs"
MANIFESTS_DIR: Final[str] = "manifests"
WORKTREES_DIR: Final[str] = "worktrees"
BUILD_LOGS_SUBDIR: Final[str] = "builds"

# Build timing defaults.
DEFAULT_BUILD_TIMEOUT_SECONDS: Final[int] = 3600
DEFAULT_KILL_GRACE_SECONDS: Final[int] = 30
DEFAULT_RETENTION_DAYS: Final[int] = 7
DEFAULT_MAX_ATTEMPTS: Final[int] = 3

# Minimum toolchain versions required on native build hosts.
MIN_TOOLCHAIN_VERSIONS: Final[dict[str, str]] = {
    "rust": "1.70.0",
    "go": "1.21.0",
    "bun": "1.0.0",
    "node": "18.0.0",
}

# Default native build commands per language, rendered with jinja2 per target.
DEFAULT_BUILD_COMMANDS: Final[dict[str, str]] = {
    "go": (
        "mkdir -p {{ artifact_path }} && "
        "GOOS={{ os }} GOARCH={{ arch }} CGO_ENABLED=0 "
        "go build -trimpath -ldflags '-s -w -X main.version={{ version }}' "
        "-o {{ artifact_path }}/{{ tool }}-{{ os }}-{{ arch }}{{ exe }} ."
    ),
    "rust": (
        "cargo build --release --locked && mkdir -p {{ artifact_path }} && "
        "cp target/release/{{ tool }}{{ exe }} "
        "{{ artifact_path }}/{{ tool }}-{{ os }}-{{ arch }}{{ exe }}"
    ),
}

__all__ = [
    "DEFAULT_BUILD_COMMANDS",
    "ARTIFACTS_DIR",
    "BUILD_LOGS_SUBDIR",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_ACT_EVENT",
    "DEFAULT_ACT_PLATFORM_LABEL",
    "DEFAULT_ARTIFACT_PATH",
    "DEFAULT_BUILD_TIMEOUT_SECONDS",
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_KILL_GRACE_SECONDS",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_RETENTION_DAYS",
    "DEFAULT_STATE_DIR",
    "DEFAULT_WORKFLOW",
    "HOST_LINUX",
    "HOST_MACOS",
    "HOST_WINDOWS",
    "KNOWN_HOSTS",
    "LOGS_DIR",
    "MANIFESTS_DIR",
    "MANIFEST_SCHEMA_VERSION",
    "MIN_TOOLCHAIN_VERSIONS",
    "REPOS_DIR_NAME",
    "WORKTREES_DIR",
]
