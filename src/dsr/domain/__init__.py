"""Domain models, identifiers, and the error taxonomy."""

from dsr.domain.errors import (
    ConfigError,
    DependencyError,
    DsrError,
    InternalError,
    InvalidArgumentsError,
    ValidationError,
)
from dsr.domain.ids import generate_run_id
from dsr.domain.models import (
    BuildManifest,
    BuildMethod,
    BuildResult,
    BuildStatus,
    BuildStrategy,
    DirtyStatus,
    RepoState,
    RunOutcome,
    Target,
)

__all__ = [
    "BuildManifest",
    "BuildMethod",
    "BuildResult",
    "BuildStatus",
    "BuildStrategy",
    "ConfigError",
    "DependencyError",
    "DirtyStatus",
    "DsrError",
    "InternalError",
    "InvalidArgumentsError",
    "RepoState",
    "RunOutcome",
    "Target",
    "ValidationError",
    "generate_run_id",
]
