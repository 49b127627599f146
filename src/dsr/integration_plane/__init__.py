"""Source control integration: git plumbing and build-source validation."""

from dsr.integration_plane.git_engine import GitCommandError, GitEngine, GitEngineError
from dsr.integration_plane.repo_validator import (
    RepoValidator,
    ValidationReport,
    tag_to_version,
    version_to_tag,
)

__all__ = [
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "RepoValidator",
    "ValidationReport",
    "tag_to_version",
    "version_to_tag",
]
