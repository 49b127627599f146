"""
dsr — end-to-end CLI tests

File: tests/integration/test_build_pipeline.py

Purpose
- Drive ``dsr`` through ``cli_entrypoint`` against a real tagged git repository,
  with fake ``act``/``docker`` for the container path and fake ``ssh``/``scp``
  that execute "remote" builds in local clones.

Functional requirements
- stdout carries only JSON lines; the manifest hashes what is on disk.
- Exit codes follow the documented contract for success, validation failure,
  timeout, and argument errors.
"""

from __future__ import annotations

import json
import os
import subprocess
import time
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from dsr.main import cli_entrypoint
from dsr.manifest.assembler import load_manifest
from dsr.utils.hashing import sha256_file

pytestmark = pytest.mark.integration

RunGit = Callable[..., subprocess.CompletedProcess[str]]

FAKE_ACT = """\
raw=""
job=""
while [ $# -gt 0 ]; do
  case "$1" in
    --artifact-server-path) raw="$2"; shift 2 ;;
    -j) job="$2"; shift 2 ;;
    *) shift ;;
  esac
done
mkdir -p "$raw/1/$job"
printf 'binary for %s\\n' "$job" > "$raw/1/$job/ntm-$job"
"""

FAKE_SSH = """\
while [ $# -gt 0 ] && [ "$1" != "--" ]; do shift; done
shift
exec sh -c "$1"
"""

FAKE_SCP = """\
for arg in "$@"; do
  source="$destination"
  destination="$arg"
done
cp -R "${source#*:}" "$destination"
"""

BUILD_CMD = (
    "mkdir -p {{ artifact_path }} && "
    "printf '%s %s\\n' {{ version }} {{ git_sha }} "
    "> {{ artifact_path }}/{{ tool }}-{{ os }}-{{ arch }}{{ exe }}"
)

CONFIG_TOML = """\
[paths]
state_dir = "state"
repos_dir = "repos.d"

[build]
timeout_seconds = 60
kill_grace_seconds = 1
retry_backoff_seconds = 0.0
retry_backoff_max_seconds = 0.0
"""


@pytest.fixture
def release_env(
    tmp_path: Path,
    make_repo: Callable[..., Path],
    git: RunGit,
    fake_bin: Path,
    script: Callable[[Path, str], Path],
) -> dict[str, Path]:
    """A tagged ``ntm`` repository, per-host clones, fake tools, and a config file."""

    repo = make_repo("ntm")
    clones = {}
    for host in ("mmini", "wlap"):
        clones[host] = tmp_path / f"ntm-{host}"
        git(tmp_path, "clone", "--quiet", str(repo), str(clones[host]))

    script(fake_bin / "act", FAKE_ACT)
    script(fake_bin / "docker", "exit 0\n")
    script(fake_bin / "ssh", FAKE_SSH)
    script(fake_bin / "scp", FAKE_SCP)
    script(fake_bin / "go", "echo 'go version go1.22.3 linux/amd64'\n")

    repos_dir = tmp_path / "repos.d"
    repos_dir.mkdir()
    repo_config = {
        "tool_name": "ntm",
        "local_path": str(repo),
        "language": "go",
        "build_cmd": BUILD_CMD,
        "targets": ["linux/amd64", "darwin/arm64", "windows/amd64"],
        "act_job_map": {"linux/amd64": "build-linux"},
        "remote_paths": {host: str(path) for host, path in clones.items()},
    }
    (repos_dir / "ntm.yaml").write_text(yaml.safe_dump(repo_config), encoding="utf-8")

    config_path = tmp_path / "dsr.toml"
    config_path.write_text(CONFIG_TOML, encoding="utf-8")
    return {"repo": repo, "config": config_path, "state": tmp_path / "state"}


def _dsr(env: dict[str, Path], *args: str) -> int:
    return cli_entrypoint([*args, "--config", str(env["config"])])


def _json_lines(text: str) -> list[dict[str, object]]:
    return [json.loads(line) for line in text.splitlines()]


def test_full_release_build_writes_verified_manifest(
    release_env: dict[str, Path],
    git: RunGit,
    capsys: pytest.CaptureFixture[str],
) -> None:
    code = _dsr(release_env, "build", "ntm", "1.0.0")
    captured = capsys.readouterr()

    assert code == 0, captured.err
    results = _json_lines(captured.out)
    assert [(r["target"], r["host"], r["method"], r["status"]) for r in results] == [
        ("darwin/arm64", "mmini", "native", "success"),
        ("linux/amd64", "trj", "act", "success"),
        ("windows/amd64", "wlap", "native", "success"),
    ]
    run_id = str(results[0]["run_id"])
    assert {r["run_id"] for r in results} == {run_id}

    manifests = sorted((release_env["state"] / "manifests").glob("*.json"))
    assert [path.name for path in manifests] == [f"ntm-1.0.0-{run_id}.json"]
    manifest = load_manifest(manifests[0])
    expected_sha = git(release_env["repo"], "rev-parse", "v1.0.0^{commit}").stdout.strip()
    assert manifest.git_sha == expected_sha
    assert manifest.git_ref == "v1.0.0"
    assert sorted(item.name for item in manifest.artifacts) == [
        "ntm-build-linux",
        "ntm-darwin-arm64",
        "ntm-windows-amd64.exe",
    ]
    for entry in manifest.artifacts:
        assert sha256_file(entry.path) == entry.sha256
    darwin = next(item for item in manifest.artifacts if item.name == "ntm-darwin-arm64")
    assert Path(darwin.path).read_text(encoding="utf-8") == f"1.0.0 {expected_sha}\n"

    run_log = release_env["state"] / "logs" / run_id / "dsr.jsonl"
    messages = [line["message"] for line in _json_lines(run_log.read_text(encoding="utf-8"))]
    assert "build_run_started" in messages
    assert "build_run_finished" in messages
    assert "manifest:" in captured.err


def test_dirty_tree_is_refused_before_any_build(
    release_env: dict[str, Path],
    capsys: pytest.CaptureFixture[str],
) -> None:
    (release_env["repo"] / "main.go").write_text("package main // edited\n", encoding="utf-8")

    code = _dsr(release_env, "build", "ntm", "v1.0.0")
    captured = capsys.readouterr()

    assert code == 4
    assert captured.out == ""
    assert "error[4]" in captured.err
    assert not (release_env["state"] / "manifests").exists()


def test_deadline_marks_target_timed_out(
    release_env: dict[str, Path],
    fake_bin: Path,
    script: Callable[[Path, str], Path],
    capsys: pytest.CaptureFixture[str],
) -> None:
    script(fake_bin / "act", "sleep 30\n")

    started = time.monotonic()
    code = _dsr(
        release_env, "build", "ntm", "1.0.0", "--targets", "linux/amd64", "--timeout", "1"
    )
    elapsed = time.monotonic() - started
    captured = capsys.readouterr()

    assert code == 5, captured.err
    (result,) = _json_lines(captured.out)
    assert result["status"] == "timeout"
    assert result["exit_class"] == 5
    assert elapsed < 20


def test_validate_reports_readiness(
    release_env: dict[str, Path],
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert _dsr(release_env, "validate", "ntm", "1.0.0") == 0
    (ready,) = _json_lines(capsys.readouterr().out)
    assert ready["ok"] is True
    assert ready["problems"] == []

    assert _dsr(release_env, "validate", "ntm", "2.0.0") == 4
    (missing,) = _json_lines(capsys.readouterr().out)
    assert missing["ok"] is False
    assert "tag does not exist: v2.0.0" in str(missing["problems"])


def test_matrix_and_analyze_describe_the_plan(
    release_env: dict[str, Path],
    capsys: pytest.CaptureFixture[str],
) -> None:
    assert _dsr(release_env, "matrix", "ntm") == 0
    (matrix,) = _json_lines(capsys.readouterr().out)
    strategies = matrix["strategies"]
    assert isinstance(strategies, list)
    assert [(s["target"], s["method"], s["host"], s["job"]) for s in strategies] == [
        ("linux/amd64", "act", "trj", "build-linux"),
        ("darwin/arm64", "native", "mmini", ""),
        ("windows/amd64", "native", "wlap", ""),
    ]

    assert _dsr(release_env, "analyze", "ntm") == 0
    (analysis,) = _json_lines(capsys.readouterr().out)
    assert analysis["linux_jobs"] == ["build-linux"]
    assert analysis["macos_jobs"] == ["build-macos"]
    assert analysis["windows_jobs"] == ["build-windows"]
    assert analysis["act_compatible"] == 1
    assert analysis["native_required"] == 2


def test_cleanup_removes_only_stale_outputs(
    release_env: dict[str, Path],
    capsys: pytest.CaptureFixture[str],
) -> None:
    state = release_env["state"]
    stale_run = state / "artifacts" / "20200101-000000-1-abcd"
    (stale_run / "linux-amd64" / "out").mkdir(parents=True)
    fresh_run = state / "artifacts" / "fresh-run"
    fresh_run.mkdir()
    stale_log = state / "logs" / "2020-01-01" / "builds" / "20200101-000000-1-abcd-linux.log"
    stale_log.parent.mkdir(parents=True)
    stale_log.write_text("old\n", encoding="utf-8")
    old = time.time() - 10 * 86400
    os.utime(stale_run, (old, old))
    os.utime(stale_log, (old, old))

    assert _dsr(release_env, "cleanup", "--days", "3") == 0
    (report,) = _json_lines(capsys.readouterr().out)

    assert report["days"] == 3
    assert sorted(report["removed"]) == sorted(  # type: ignore[type-var]
        [stale_run.as_posix(), stale_log.as_posix()]
    )
    assert not stale_run.exists()
    assert not stale_log.exists()
    assert fresh_run.exists()


@pytest.mark.parametrize(
    "argv",
    [
        ["build"],
        ["build", "ntm", "1.0.0", "--timeout", "0"],
        ["build", "ghost", "1.0.0"],
        ["matrix", "ntm", "--targets", "plan9/amd64"],
    ],
)
def test_argument_errors_exit_with_4(release_env: dict[str, Path], argv: list[str]) -> None:
    assert _dsr(release_env, *argv) == 4
