"""
dsr — test suite for the native backend.

File: tests/unit/backends/test_native.py

Purpose
- Cover template rendering, remote path resolution, and full local and
  ssh-shaped builds. A fake ``ssh`` runs the remote command in a local shell and
  a fake ``scp`` copies from the local filesystem.
"""

from __future__ import annotations

import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import jinja2
import pytest

from dsr.backends.base import BuildRequest
from dsr.backends.native import (
    NativeBackend,
    render_build_command,
    shell_path,
    target_output_path,
)
from dsr.config.repo_config import RepoConfig, parse_repo_config
from dsr.config.schema import EngineConfig
from dsr.domain.errors import DependencyError
from dsr.domain.ids import generate_run_id
from dsr.domain.models import BuildStatus, Target
from dsr.integration_plane.repo_validator import RepoValidator
from dsr.planning.platform_router import PlatformRouter
from dsr.sandbox.process_runner import ProcessRunner

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


def _repo_config(repo: Path, targets: list[str], **extra: object) -> RepoConfig:
    raw: dict[str, object] = {
        "local_path": str(repo),
        "language": "go",
        "build_cmd": BUILD_CMD,
        "targets": targets,
    }
    raw.update(extra)
    return parse_repo_config(raw, default_tool="ntm")


def _request(
    repo_config: RepoConfig, target: str, *, ref: str = "v1.0.0", run_id: str | None = None
) -> BuildRequest:
    return BuildRequest(
        run_id=run_id or generate_run_id(),
        strategy=PlatformRouter().strategy(repo_config, Target.parse(target)),
        repo_state=RepoValidator().build_info(repo_config.local_path, ref),
        repo_config=repo_config,
        version="1.0.0",
        timeout_seconds=30,
        grace_seconds=0.5,
    )


def test_render_build_command_is_strict() -> None:
    assert render_build_command("echo {{ tool }}{{ exe }}", {"tool": "ntm", "exe": ".exe"}) == (
        "echo ntm.exe"
    )
    with pytest.raises(jinja2.UndefinedError):
        render_build_command("echo {{ tool }} {{ toool }}", {"tool": "ntm"})


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("~/projects/ntm", "~/projects/ntm"),
        ("~/my projects/ntm", "~/'my projects/ntm'"),
        ("/srv/build dir", "'/srv/build dir'"),
        ("~", "~"),
    ],
)
def test_shell_path(path: str, expected: str) -> None:
    assert shell_path(path) == expected


def test_remote_path_resolution(make_config: Callable[..., EngineConfig]) -> None:
    config = make_config()
    backend = NativeBackend(config)
    plain = _repo_config(Path("/src/ntm"), ["darwin/arm64"])
    pinned = _repo_config(
        Path("/src/ntm"), ["darwin/arm64"], remote_paths={"mmini": "/Users/ops/ntm"}
    )

    assert backend.remote_path(config.host("mmini"), plain) == "~/projects/ntm"
    assert backend.remote_path(config.host("mmini"), pinned) == "/Users/ops/ntm"
    rootless = make_config({"hosts": {"wlap": {"remote_root": ""}}})
    assert NativeBackend(rootless).remote_path(rootless.host("wlap"), plain) == "ntm"


def test_shell_command_uses_batch_mode_ssh(make_config: Callable[..., EngineConfig]) -> None:
    config = make_config()
    backend = NativeBackend(config)

    assert backend.shell_command(config.host("trj"), "true") == ("sh", "-c", "true")
    assert backend.shell_command(config.host("wlap"), "true") == (
        "ssh",
        "-o",
        "BatchMode=yes",
        "-o",
        "ConnectTimeout=10",
        "wlap",
        "--",
        "true",
    )


def test_local_build_on_trj_uses_a_pinned_worktree(
    make_config: Callable[..., EngineConfig],
    make_repo: Callable[..., Path],
    git: Callable[..., subprocess.CompletedProcess[str]],
) -> None:
    repo = make_repo()
    config = make_config()
    request = _request(_repo_config(repo, ["linux/amd64"]), "linux/amd64")

    result = NativeBackend(config).run(request)

    assert result.status is BuildStatus.SUCCESS, result.reason
    assert result.host == "trj"
    assert result.artifact_count == 1
    artifact = Path(str(result.artifact_dir)) / "ntm-linux-amd64"
    assert artifact.read_text(encoding="utf-8") == f"1.0.0 {request.repo_state.git_sha}\n"
    assert not (repo / "dist").exists()
    assert git(repo, "status", "--porcelain").stdout == ""
    assert list(config.worktrees_dir.iterdir()) == []
    assert len(git(repo, "worktree", "list").stdout.splitlines()) == 1


def test_remote_build_over_ssh_copies_artifacts_back(
    make_config: Callable[..., EngineConfig],
    make_repo: Callable[..., Path],
    fake_bin: Path,
    script: Callable[[Path, str], Path],
) -> None:
    script(fake_bin / "ssh", FAKE_SSH)
    script(fake_bin / "scp", FAKE_SCP)
    script(fake_bin / "go", "echo 'go version go1.22.3 windows/amd64'\n")
    repo = make_repo()
    repo_config = _repo_config(repo, ["windows/amd64"], remote_paths={"wlap": str(repo)})
    request = _request(repo_config, "windows/amd64")
    backend = NativeBackend(make_config())

    backend.check(request.strategy, repo_config)
    result = backend.run(request)

    assert result.status is BuildStatus.SUCCESS, result.reason
    assert result.host == "wlap"
    assert sorted(item.name for item in Path(str(result.artifact_dir)).iterdir()) == [
        "ntm-windows-amd64.exe"
    ]
    assert (repo / target_output_path(request) / "ntm-windows-amd64.exe").is_file()


@pytest.mark.parametrize(
    ("host", "targets"),
    [("trj", ["linux/amd64", "linux/arm64"]), ("mmini", ["darwin/amd64", "darwin/arm64"])],
)
def test_targets_sharing_a_host_collect_only_their_own_artifacts(
    make_config: Callable[..., EngineConfig],
    make_repo: Callable[..., Path],
    fake_bin: Path,
    script: Callable[[Path, str], Path],
    host: str,
    targets: list[str],
) -> None:
    script(fake_bin / "ssh", FAKE_SSH)
    script(fake_bin / "scp", FAKE_SCP)
    repo = make_repo()
    repo_config = _repo_config(repo, targets, remote_paths={"mmini": str(repo)})
    run_id = generate_run_id()
    requests = [_request(repo_config, target, run_id=run_id) for target in targets]
    (repo / "dist").mkdir()
    (repo / "dist" / "ntm-0.9.0-leftover").write_text("old\n", encoding="utf-8")
    backend = NativeBackend(make_config())

    results = [backend.run(request) for request in requests]

    for target, result in zip(targets, results, strict=True):
        assert result.status is BuildStatus.SUCCESS, result.reason
        assert result.host == host
        expected = f"ntm-{target.replace('/', '-')}"
        assert [p.name for p in Path(str(result.artifact_dir)).iterdir()] == [expected]


def test_remote_head_mismatch_fails_before_building(
    make_config: Callable[..., EngineConfig],
    make_repo: Callable[..., Path],
    commit: Callable[[Path, str, str, str], str],
    fake_bin: Path,
    script: Callable[[Path, str], Path],
) -> None:
    script(fake_bin / "ssh", FAKE_SSH)
    repo = make_repo()
    repo_config = _repo_config(repo, ["windows/amd64"], remote_paths={"wlap": str(repo)})
    request = _request(repo_config, "windows/amd64")
    commit(repo, "CHANGELOG.md", "next\n", "post-release commit")

    result = NativeBackend(make_config()).run(request)

    assert result.status is BuildStatus.FAILED
    assert result.exit_class == 6
    assert "does not match expected" in str(result.reason)
    assert not (repo / "dist").exists()


def test_copy_back_shares_the_build_deadline(
    make_config: Callable[..., EngineConfig],
    make_repo: Callable[..., Path],
    fake_bin: Path,
    script: Callable[[Path, str], Path],
) -> None:
    script(fake_bin / "ssh", FAKE_SSH)
    script(fake_bin / "scp", "sleep 30\n")
    repo = make_repo()
    repo_config = _repo_config(repo, ["windows/amd64"], remote_paths={"wlap": str(repo)})
    request = replace(_request(repo_config, "windows/amd64"), timeout_seconds=1.5)

    started = time.monotonic()
    result = NativeBackend(make_config()).run(request)

    assert result.status is BuildStatus.TIMEOUT
    assert result.exit_class == 5
    assert time.monotonic() - started < 10


def test_interrupt_reaches_an_in_flight_copy_back(
    make_config: Callable[..., EngineConfig],
    make_repo: Callable[..., Path],
    fake_bin: Path,
    script: Callable[[Path, str], Path],
) -> None:
    script(fake_bin / "ssh", FAKE_SSH)
    script(fake_bin / "scp", "sleep 30\n")
    repo = make_repo()
    repo_config = _repo_config(repo, ["windows/amd64"], remote_paths={"wlap": str(repo)})
    request = _request(repo_config, "windows/amd64")
    runner = ProcessRunner()
    timer = threading.Timer(1.0, runner.registry.terminate_all)

    timer.start()
    try:
        started = time.monotonic()
        result = NativeBackend(make_config(), runner=runner).run(request)
    finally:
        timer.cancel()

    assert result.status is BuildStatus.SKIPPED
    assert result.reason == "interrupted"
    assert time.monotonic() - started < 10


def test_failing_build_command(
    make_config: Callable[..., EngineConfig],
    make_repo: Callable[..., Path],
) -> None:
    repo = make_repo()
    repo_config = _repo_config(repo, ["linux/amd64"], build_cmd="echo compile error >&2; exit 2")
    request = _request(repo_config, "linux/amd64")

    result = NativeBackend(make_config()).run(request)

    assert result.status is BuildStatus.FAILED
    assert result.exit_code == 2
    assert "compile error" in Path(str(result.log_file)).read_text(encoding="utf-8")


def test_bad_template_fails_the_target(
    make_config: Callable[..., EngineConfig],
    make_repo: Callable[..., Path],
) -> None:
    repo = make_repo()
    repo_config = _repo_config(repo, ["linux/amd64"], build_cmd="make {{ verison }}")

    result = NativeBackend(make_config()).run(_request(repo_config, "linux/amd64"))

    assert result.status is BuildStatus.FAILED
    assert str(result.reason).startswith("cannot render build command")


def test_check_rejects_old_toolchain_and_missing_ssh(
    make_config: Callable[..., EngineConfig],
    fake_bin: Path,
    script: Callable[[Path, str], Path],
) -> None:
    script(fake_bin / "go", "echo 'go version go1.19.0 linux/amd64'\n")
    config = make_config()
    repo_config = _repo_config(Path("/src/ntm"), ["linux/amd64", "darwin/arm64"])
    router = PlatformRouter()

    with pytest.raises(DependencyError, match="older than required"):
        NativeBackend(config).check(
            router.strategy(repo_config, Target.parse("linux/amd64")), repo_config
        )

    with pytest.raises(DependencyError, match="ssh not found on PATH"):
        NativeBackend(config, which=lambda name: None).check(
            router.strategy(repo_config, Target.parse("darwin/arm64")), repo_config
        )


def test_check_unreachable_host(
    make_config: Callable[..., EngineConfig],
    fake_bin: Path,
    script: Callable[[Path, str], Path],
) -> None:
    refused = "ssh: connect to host mmini port 22: Connection refused"
    script(fake_bin / "ssh", f"echo '{refused}' >&2\nexit 255\n")
    config = make_config()
    repo_config = _repo_config(Path("/src/ntm"), ["darwin/arm64"])
    strategy = PlatformRouter().strategy(repo_config, Target.parse("darwin/arm64"))

    with pytest.raises(DependencyError, match="host mmini \\(mmini\\) unreachable") as excinfo:
        NativeBackend(config).check(strategy, repo_config)

    assert excinfo.value.transient
