"""
dsr — repository validator.

File: src/dsr/integration_plane/repo_validator.py

Purpose
- Gate every build on a reproducible source state and pin it to one commit.

Functional requirements
- ``validate_for_build`` reports every problem in one pass: missing repository,
  missing release tag, and uncommitted tracked changes. Untracked files only
  produce a warning.
- ``build_info`` records the resolved ref, its type, and the dirt status in a
  ``RepoState`` computed once per run.
- Builds run from detached worktrees pinned to the resolved SHA; the primary
  working tree is never modified.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

from dsr.domain.errors import DirtyTreeError, ValidationError
from dsr.domain.models import DirtyStatus, RefType, RepoState, utc_now_iso
from dsr.integration_plane.git_engine import GitEngine, GitEngineError

_SHA_LIKE_RE: Final[re.Pattern[str]] = re.compile(r"^[0-9a-f]{7,40}$")
_DIRTY_HINT: Final[str] = "commit or stash changes, or pass --allow-dirty"

EngineFactory = Callable[[Path], GitEngine]


def version_to_tag(version: str) -> str:
    """Map a release version to its tag name, adding a ``v`` prefix when missing."""

    cleaned = version.strip()
    if not cleaned:
        raise ValidationError(("version must not be empty",))
    return cleaned if cleaned.startswith("v") else f"v{cleaned}"


def tag_to_version(tag: str) -> str:
    return tag[1:] if tag.startswith("v") else tag


@dataclass(frozen=True, slots=True)
class ValidationReport:
    repo_path: str
    version: str
    tag: str
    problems: tuple[str, ...]
    warnings: tuple[str, ...]
    dirty_status: DirtyStatus | None = None

    @property
    def ok(self) -> bool:
        return not self.problems

    def raise_for_problems(self) -> None:
        if self.problems:
            raise ValidationError(self.problems)


class RepoValidator:
    """Read-only validation and ref resolution over local repositories."""

    def __init__(
        self,
        *,
        engine_factory: EngineFactory | None = None,
        clock: Callable[[], str] = utc_now_iso,
        logger: Any | None = None,
    ) -> None:
        self._engine_factory = engine_factory or GitEngine
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def resolve_ref(self, repo_path: Path | str, ref: str) -> str:
        """Resolve a tag, branch, or SHA to the full commit SHA it names."""

        engine = self._open(repo_path)
        sha = engine.rev_parse_commit(ref) or engine.rev_parse_commit(f"refs/tags/{ref}")
        if sha is None:
            raise ValidationError((f"cannot resolve ref {ref!r} in {engine.repo_path}",))
        return sha

    def tag_exists(self, repo_path: Path | str, tag: str) -> bool:
        return self._open(repo_path).tag_exists(tag)

    def tag_sha(self, repo_path: Path | str, tag: str) -> str:
        engine = self._open(repo_path)
        if not engine.tag_exists(tag):
            raise ValidationError((f"tag does not exist: {tag}",))
        sha = engine.rev_parse_commit(f"refs/tags/{tag}")
        if sha is None:
            raise ValidationError((f"tag {tag} does not point at a commit",))
        return sha

    def list_tags(self, repo_path: Path | str, pattern: str | None = None) -> tuple[str, ...]:
        return self._open(repo_path).list_tags(pattern)

    def dirty_status(self, repo_path: Path | str) -> DirtyStatus:
        engine = self._open(repo_path)
        return DirtyStatus.from_flags(
            modified=engine.has_tracked_changes(),
            untracked=bool(engine.untracked_files()),
        )

    def validate_for_build(
        self,
        repo_path: Path | str,
        version: str,
        *,
        allow_dirty: bool = False,
    ) -> ValidationReport:
        """Collect every reason the repository cannot be built at ``version``."""

        tag = version_to_tag(version)
        path = Path(repo_path).expanduser()
        problems: list[str] = []
        warnings: list[str] = []
        engine = self._engine_factory(path)

        if not engine.is_repository():
            problems.append(f"not a git repository: {path}")
            return self._report(path, version, tag, problems, warnings, None)
        if engine.rev_parse_commit("HEAD") is None:
            problems.append(f"repository has no commits: {path}")
            return self._report(path, version, tag, problems, warnings, None)

        if not engine.tag_exists(tag):
            problems.append(f"tag does not exist: {tag} (hint: git tag -a {tag})")

        status = DirtyStatus.from_flags(
            modified=engine.has_tracked_changes(),
            untracked=bool(engine.untracked_files()),
        )
        if status.has_modifications and not allow_dirty:
            problems.append(f"working tree has uncommitted changes; {_DIRTY_HINT}")
        if status.has_untracked:
            warnings.append("working tree has untracked files (build will proceed)")

        return self._report(path, version, tag, problems, warnings, status)

    def build_info(
        self,
        repo_path: Path | str,
        ref: str,
        *,
        allow_dirty: bool = False,
    ) -> RepoState:
        """Snapshot the repository for a build of ``ref``.

        Ref type priority is tag, then local branch, then anything shaped like a
        SHA, then any other ref ``rev-parse`` accepts. Any status other than
        ``clean``, untracked files included, is refused unless ``allow_dirty``.
        """

        engine = self._open(repo_path)
        status = self.dirty_status(engine.repo_path)
        if status is not DirtyStatus.CLEAN and not allow_dirty:
            self._logger.error(
                "repo_dirty_tree_refused",
                repo_path=str(engine.repo_path),
                dirty_status=status.value,
            )
            raise DirtyTreeError(status.value, hint=_DIRTY_HINT)

        if engine.tag_exists(ref):
            ref_type = RefType.TAG
            resolved_ref = ref
            sha = self.tag_sha(engine.repo_path, ref)
        elif engine.branch_exists(ref):
            ref_type = RefType.BRANCH
            resolved_ref = ref
            sha = self.resolve_ref(engine.repo_path, f"refs/heads/{ref}")
        elif _SHA_LIKE_RE.fullmatch(ref):
            ref_type = RefType.COMMIT
            sha = self.resolve_ref(engine.repo_path, ref)
            resolved_ref = sha
        else:
            ref_type = RefType.REF
            resolved_ref = ref
            sha = self.resolve_ref(engine.repo_path, ref)

        head = engine.head_sha()
        return RepoState(
            repo_path=engine.repo_path.as_posix(),
            requested_ref=ref,
            resolved_ref=resolved_ref,
            ref_type=ref_type,
            git_sha=sha,
            head_sha=head,
            current_branch=engine.current_branch(),
            dirty_status=status,
            at_head=sha == head,
            timestamp=self._clock(),
        )

    def create_build_worktree(
        self,
        repo_path: Path | str,
        ref: str,
        target_dir: Path | str,
    ) -> Path:
        """Check out ``ref`` detached at ``target_dir``."""

        engine = self._open(repo_path)
        sha = self.resolve_ref(engine.repo_path, ref)
        path = engine.add_detached_worktree(target_dir, sha)
        self._logger.info(
            "repo_build_worktree_created",
            repo_path=str(engine.repo_path),
            worktree=str(path),
            ref=ref,
            sha=sha[:12],
        )
        return path

    def remove_build_worktree(self, repo_path: Path | str, target_dir: Path | str) -> None:
        """Remove a build worktree; failures are logged and never raised."""

        try:
            self._engine_factory(Path(repo_path).expanduser()).remove_worktree(target_dir)
        except GitEngineError as exc:
            self._logger.warning(
                "repo_build_worktree_remove_failed", worktree=str(target_dir), error=str(exc)
            )

    def _open(self, repo_path: Path | str) -> GitEngine:
        engine = self._engine_factory(Path(repo_path).expanduser())
        if not engine.is_repository():
            raise ValidationError((f"not a git repository: {engine.repo_path}",))
        return engine

    def _report(
        self,
        path: Path,
        version: str,
        tag: str,
        problems: list[str],
        warnings: list[str],
        status: DirtyStatus | None,
    ) -> ValidationReport:
        for item in warnings:
            self._logger.warning("repo_validation_warning", repo_path=str(path), detail=item)
        for item in problems:
            self._logger.error("repo_validation_problem", repo_path=str(path), detail=item)
        return ValidationReport(
            repo_path=path.as_posix(),
            version=version,
            tag=tag,
            problems=tuple(problems),
            warnings=tuple(warnings),
            dirty_status=status,
        )


__all__ = [
    "RepoValidator",
    "ValidationReport",
    "tag_to_version",
    "version_to_tag",
]
