"""
dsr — error taxonomy.

File: src/dsr/domain/errors.py

Purpose
- One exception hierarchy shared by every component, each class carrying the
  process exit code it maps to at the CLI boundary.

Functional requirements
- Errors carry optional target/host/log_file context so that operators can find the
  failing build without re-running it.
- ``ValidationError`` carries every problem found, never only the first.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path


class DsrError(RuntimeError):
    """Base error for the build orchestration engine."""

    exit_code: ClassVar[int] = 6

    def __init__(
        self,
        message: str,
        *,
        target: str | None = None,
        host: str | None = None,
        log_file: Path | str | None = None,
    ) -> None:
        self.message = message
        self.target = target
        self.host = host
        self.log_file = None if log_file is None else str(log_file)
        super().__init__(message)

    def context(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.target is not None:
            out["target"] = self.target
        if self.host is not None:
            out["host"] = self.host
        if self.log_file is not None:
            out["log_file"] = self.log_file
        return out

    def describe(self) -> str:
        """Render the message followed by any bound context."""

        context = self.context()
        if not context:
            return self.message
        rendered = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return f"{self.message} ({rendered})"


class DependencyError(DsrError):
    """Required tool, daemon, or host is missing or unreachable."""

    exit_code = 3

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        target: str | None = None,
        host: str | None = None,
    ) -> None:
        super().__init__(message, target=target, host=host)
        self.transient = transient


class ConfigError(DsrError):
    """Malformed or inconsistent configuration."""

    exit_code = 4


class InvalidArgumentsError(ConfigError):
    """Caller supplied an unknown tool, target, or path."""


class UnsupportedPlatformError(ConfigError):
    """Target has no owning host."""


class UnknownRunnerError(ConfigError):
    """A ``runs-on`` value matches no known runner family."""


class ValidationError(DsrError):
    """Repository is not in a reproducible state for the requested version."""

    exit_code = 4

    def __init__(self, problems: Iterable[str]) -> None:
        self.problems = tuple(problems)
        if not self.problems:
            rendered = "repository validation failed"
        else:
            rendered = "repository validation failed:\n" + "\n".join(
                f"- {item}" for item in self.problems
            )
        super().__init__(rendered)


class DirtyTreeError(ValidationError):
    """Working tree has uncommitted changes and dirt was not explicitly allowed."""

    def __init__(self, dirty_status: str, *, hint: str) -> None:
        self.dirty_status = dirty_status
        self.hint = hint
        super().__init__((f"working tree is dirty ({dirty_status}); {hint}",))


class ExecutionError(DsrError):
    """Build process failed for reasons other than a timeout."""

    exit_code = 6


class ArtifactCollisionError(ExecutionError):
    """Two different artifacts would land on the same output name."""


class BuildTimeoutError(DsrError):
    """Build exceeded its hard deadline."""

    exit_code = 5


class PartialFailure(DsrError):
    """At least one target succeeded and at least one did not."""

    exit_code = 1


class InternalError(DsrError):
    """Invariant violation inside the engine, for example a manifest that cannot be trusted."""

    exit_code = 6


__all__ = [
    "ArtifactCollisionError",
    "BuildTimeoutError",
    "ConfigError",
    "DependencyError",
    "DirtyTreeError",
    "DsrError",
    "ExecutionError",
    "InternalError",
    "InvalidArgumentsError",
    "PartialFailure",
    "UnknownRunnerError",
    "UnsupportedPlatformError",
    "ValidationError",
]
