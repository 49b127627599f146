"""
dsr — test suite for the workflow analyzer.

File: tests/unit/planning/test_workflow_analyzer.py
"""

from __future__ import annotations

from pathlib import Path

import pytest

from dsr.config.repo_config import parse_repo_config
from dsr.domain.errors import ConfigError, InvalidArgumentsError, UnknownRunnerError
from dsr.domain.models import RunnerClass
from dsr.planning.workflow_analyzer import WorkflowAnalyzer

WORKFLOW = """\
name: release
on: push
jobs:
  build-linux:
    runs-on: ubuntu-22.04
  build-macos:
    runs-on: macos-14
  build-windows:
    runs-on: windows-latest
  build-arm:
    runs-on: [self-hosted, linux, arm64]
  build-custom:
    runs-on: big-runner
"""


def write_workflow(root: Path, text: str = WORKFLOW) -> Path:
    path = root / ".github" / "workflows" / "release.yml"
    path.parent.mkdir(parents=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.parametrize(
    ("runs_on", "expected"),
    [
        ("ubuntu-latest", RunnerClass.COMPATIBLE),
        ("ubuntu-22.04", RunnerClass.COMPATIBLE),
        ("macos-14", RunnerClass.NATIVE_REQUIRED),
        ("windows-2022", RunnerClass.NATIVE_REQUIRED),
        ("self-hosted,linux,arm64", RunnerClass.COMPATIBLE),
        ("self-hosted,macOS", RunnerClass.NATIVE_REQUIRED),
    ],
)
def test_classify_known_runner_families(runs_on: str, expected: RunnerClass) -> None:
    assert WorkflowAnalyzer().classify(runs_on) is expected


def test_unknown_runner_is_an_error_unless_allowed() -> None:
    analyzer = WorkflowAnalyzer()

    with pytest.raises(UnknownRunnerError, match="--allow-unknown-runners"):
        analyzer.classify("big-runner")
    assert analyzer.classify("big-runner", allow_unknown=True) is RunnerClass.COMPATIBLE


def test_analyze_buckets_jobs_by_runner(tmp_path: Path) -> None:
    analysis = WorkflowAnalyzer().analyze(write_workflow(tmp_path))

    assert analysis.linux_jobs == ("build-linux", "build-arm")
    assert analysis.macos_jobs == ("build-macos",)
    assert analysis.windows_jobs == ("build-windows",)
    assert analysis.other_jobs == ("build-custom",)
    assert analysis.to_dict()["act_compatible"] == 2
    assert analysis.to_dict()["native_required"] == 2


def test_list_jobs_and_get_runner(tmp_path: Path) -> None:
    analyzer = WorkflowAnalyzer()
    path = write_workflow(tmp_path)

    assert analyzer.list_jobs(path)[0] == "build-linux"
    assert analyzer.get_runner(path, "build-arm") == "self-hosted,linux,arm64"
    with pytest.raises(ConfigError, match="not found"):
        analyzer.get_runner(path, "missing")


def test_check_job_map_reports_every_problem(tmp_path: Path) -> None:
    write_workflow(tmp_path)
    config = parse_repo_config(
        {
            "local_path": str(tmp_path),
            "targets": ["linux/amd64", "linux/arm64", "linux/386"],
            "act_job_map": {
                "linux/amd64": "build-macos",
                "linux/arm64": "nope",
                "linux/386": "build-custom",
            },
        },
        default_tool="tool",
    )

    with pytest.raises(ConfigError) as excinfo:
        WorkflowAnalyzer().check_job_map(config)

    message = str(excinfo.value)
    assert "act cannot emulate" in message
    assert "job 'nope' not found" in message
    assert "unknown runner 'big-runner'" in message


def test_check_job_map_accepts_unknown_when_allowed(tmp_path: Path) -> None:
    write_workflow(tmp_path)
    config = parse_repo_config(
        {
            "local_path": str(tmp_path),
            "targets": ["linux/amd64"],
            "act_job_map": {"linux/amd64": "build-custom"},
        },
        default_tool="tool",
    )

    WorkflowAnalyzer().check_job_map(config, allow_unknown=True)


def test_missing_workflow_is_an_argument_error(tmp_path: Path) -> None:
    with pytest.raises(InvalidArgumentsError, match="workflow file not found"):
        WorkflowAnalyzer().analyze(tmp_path / "absent.yml")


def test_workflow_without_jobs_is_rejected(tmp_path: Path) -> None:
    path = write_workflow(tmp_path, "name: empty\non: push\n")

    with pytest.raises(ConfigError, match="no jobs"):
        WorkflowAnalyzer().analyze(path)
