"""
dsr — workflow analyzer.

File: src/dsr/planning/workflow_analyzer.py

Purpose
- Read a GitHub Actions workflow and decide which jobs a Linux container can run.

Functional requirements
- Only ``jobs.<id>.runs-on`` is interpreted; everything else in the file is ignored.
- Classification is total over known runner families. Unknown labels are an error
  unless the operator explicitly allows them, in which case they are treated as
  container-compatible and a warning is logged.
- ``analyze`` is informational and never rejects unknown labels; they land in
  ``other_jobs``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from dsr.domain.errors import ConfigError, InvalidArgumentsError, UnknownRunnerError
from dsr.domain.models import JSONValue, RunnerClass

if TYPE_CHECKING:
    from dsr.config.repo_config import RepoConfig


@dataclass(frozen=True, slots=True)
class WorkflowAnalysis:
    workflow: str
    linux_jobs: tuple[str, ...]
    macos_jobs: tuple[str, ...]
    windows_jobs: tuple[str, ...]
    other_jobs: tuple[str, ...]

    @property
    def act_compatible_count(self) -> int:
        return len(self.linux_jobs)

    @property
    def native_required_count(self) -> int:
        return len(self.macos_jobs) + len(self.windows_jobs)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "workflow": self.workflow,
            "linux_jobs": list(self.linux_jobs),
            "macos_jobs": list(self.macos_jobs),
            "windows_jobs": list(self.windows_jobs),
            "other_jobs": list(self.other_jobs),
            "act_compatible": self.act_compatible_count,
            "native_required": self.native_required_count,
        }


class WorkflowAnalyzer:
    """Parses workflow files; each file is read once per analyzer instance."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._cache: dict[Path, dict[str, str]] = {}

    def list_jobs(self, workflow_path: Path | str) -> tuple[str, ...]:
        """Return job ids in file order."""

        return tuple(self._runners(Path(workflow_path)))

    def get_runner(self, workflow_path: Path | str, job_id: str) -> str:
        runners = self._runners(Path(workflow_path))
        try:
            return runners[job_id]
        except KeyError as exc:
            raise ConfigError(f"job {job_id!r} not found in workflow {workflow_path}") from exc

    def classify(self, runs_on: str, *, allow_unknown: bool = False) -> RunnerClass:
        """Classify a ``runs-on`` label as container-compatible or native-required."""

        label = runs_on.strip()
        lowered = label.lower()
        if lowered.startswith("ubuntu-"):
            return RunnerClass.COMPATIBLE
        if lowered.startswith(("macos-", "windows-")):
            return RunnerClass.NATIVE_REQUIRED
        if lowered.startswith("self-hosted"):
            if "linux" in lowered:
                return RunnerClass.COMPATIBLE
            return RunnerClass.NATIVE_REQUIRED
        if not allow_unknown:
            raise UnknownRunnerError(
                f"unknown runner {label!r}; pass --allow-unknown-runners to treat it as Linux"
            )
        self._logger.warning("workflow_unknown_runner_assumed_linux", runs_on=label)
        return RunnerClass.COMPATIBLE

    def analyze(self, workflow_path: Path | str) -> WorkflowAnalysis:
        path = Path(workflow_path)
        linux: list[str] = []
        macos: list[str] = []
        windows: list[str] = []
        other: list[str] = []
        for job_id, runs_on in self._runners(path).items():
            lowered = runs_on.lower()
            if lowered.startswith("ubuntu-") or "linux" in lowered:
                linux.append(job_id)
            elif lowered.startswith("macos-"):
                macos.append(job_id)
            elif lowered.startswith("windows-"):
                windows.append(job_id)
            else:
                other.append(job_id)
        return WorkflowAnalysis(
            workflow=str(path),
            linux_jobs=tuple(linux),
            macos_jobs=tuple(macos),
            windows_jobs=tuple(windows),
            other_jobs=tuple(other),
        )

    def check_job_map(self, repo_config: RepoConfig, *, allow_unknown: bool = False) -> None:
        """Fail unless every mapped job exists and can run in a Linux container."""

        problems: list[str] = []
        workflow = repo_config.workflow_path
        runners = self._runners(workflow)
        for target in repo_config.targets:
            job = repo_config.job_for(target)
            if not job:
                continue
            runs_on = runners.get(job)
            if runs_on is None:
                problems.append(f"{target}: job {job!r} not found in {workflow}")
                continue
            try:
                runner_class = self.classify(runs_on, allow_unknown=allow_unknown)
            except UnknownRunnerError as exc:
                problems.append(f"{target}: {exc}")
                continue
            if runner_class is RunnerClass.NATIVE_REQUIRED:
                problems.append(
                    f"{target}: job {job!r} runs on {runs_on!r}, which act cannot emulate"
                )
        if problems:
            rendered = "\n".join(f"- {item}" for item in problems)
            raise ConfigError(f"act_job_map is inconsistent with the workflow:\n{rendered}")

    def _runners(self, path: Path) -> dict[str, str]:
        key = path.resolve() if path.exists() else path
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        parsed = _parse_workflow(path)
        self._cache[key] = parsed
        return parsed


def _parse_workflow(path: Path) -> dict[str, str]:
    if not path.is_file():
        raise InvalidArgumentsError(f"workflow file not found: {path}")
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid workflow YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise InvalidArgumentsError(f"unable to read workflow {path}: {exc}") from exc

    if not isinstance(document, Mapping):
        raise ConfigError(f"workflow {path} must be a mapping")
    jobs = document.get("jobs")
    if not isinstance(jobs, Mapping) or not jobs:
        raise ConfigError(f"workflow {path} has no jobs mapping")

    runners: dict[str, str] = {}
    for job_id, job in jobs.items():
        if not isinstance(job, Mapping):
            raise ConfigError(f"workflow {path}: job {job_id!r} must be a mapping")
        runners[str(job_id)] = _runs_on_text(job.get("runs-on"), path, str(job_id))
    return runners


def _runs_on_text(value: object, path: Path, job_id: str) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, list) and value and all(isinstance(item, str) for item in value):
        return ",".join(item.strip() for item in value)
    if isinstance(value, Mapping):
        # ``runs-on: {group: ..., labels: [...]}``
        labels = value.get("labels")
        if isinstance(labels, str):
            return labels.strip()
        if isinstance(labels, list) and all(isinstance(item, str) for item in labels):
            return ",".join(item.strip() for item in labels)
    if value is None:
        raise ConfigError(f"workflow {path}: job {job_id!r} has no runs-on")
    raise ConfigError(f"workflow {path}: job {job_id!r} has unsupported runs-on {value!r}")


__all__ = ["WorkflowAnalysis", "WorkflowAnalyzer"]
