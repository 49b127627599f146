"""Configuration loading: engine TOML settings and per-tool repo YAML."""

from dsr.config.loader import ConfigLoadError, load_config, load_engine_config
from dsr.config.repo_config import (
    ActOverrides,
    RepoConfig,
    RepoConfigError,
    list_tools,
    load_repo_config,
)
from dsr.config.schema import (
    ConfigValidationError,
    ConfigValidationIssue,
    EngineConfig,
    HostConfig,
)

__all__ = [
    "ActOverrides",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "EngineConfig",
    "HostConfig",
    "RepoConfig",
    "RepoConfigError",
    "list_tools",
    "load_config",
    "load_engine_config",
    "load_repo_config",
]
