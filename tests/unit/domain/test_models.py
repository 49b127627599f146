"""
dsr — test suite for domain models.

File: tests/unit/domain/test_models.py

Purpose
- Pin target parsing, host ownership, strategy invariants, and the exit-code
  mapping of run outcomes.
"""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from dsr.constants import HOST_LINUX, HOST_MACOS, HOST_WINDOWS
from dsr.domain.errors import ConfigError, UnsupportedPlatformError
from dsr.domain.ids import generate_run_id, is_valid_run_id, validate_run_id
from dsr.domain.models import (
    Architecture,
    ArtifactEntry,
    BuildManifest,
    BuildMethod,
    BuildStrategy,
    DirtyStatus,
    HostSummary,
    OperatingSystem,
    RunOutcome,
    Target,
    canonical_json,
    owner_of,
)


def test_target_parse_round_trips_through_str() -> None:
    target = Target.parse("darwin/arm64")

    assert target.os is OperatingSystem.DARWIN
    assert target.arch is Architecture.ARM64
    assert str(target) == "darwin/arm64"
    assert target.slug == "darwin-arm64"


@pytest.mark.parametrize("raw", ["linux", "linux/", "/amd64", "linux/amd64/extra", ""])
def test_target_parse_rejects_malformed_input(raw: str) -> None:
    with pytest.raises(ConfigError):
        Target.parse(raw)


def test_target_parse_rejects_unknown_platforms() -> None:
    with pytest.raises(UnsupportedPlatformError, match="operating system"):
        Target.parse("plan9/amd64")
    with pytest.raises(UnsupportedPlatformError, match="architecture"):
        Target.parse("linux/sparc")


@given(
    os_name=st.sampled_from(list(OperatingSystem)),
    arch=st.sampled_from(list(Architecture)),
)
def test_owner_of_is_total_or_unsupported(os_name: OperatingSystem, arch: Architecture) -> None:
    target = Target(os=os_name, arch=arch)
    if os_name is OperatingSystem.WINDOWS and arch is not Architecture.AMD64:
        with pytest.raises(UnsupportedPlatformError):
            owner_of(target)
        return
    expected = {
        OperatingSystem.LINUX: HOST_LINUX,
        OperatingSystem.DARWIN: HOST_MACOS,
        OperatingSystem.WINDOWS: HOST_WINDOWS,
    }[os_name]
    assert owner_of(target) == expected


@pytest.mark.parametrize(
    ("modified", "untracked", "expected"),
    [
        (False, False, DirtyStatus.CLEAN),
        (True, False, DirtyStatus.MODIFIED),
        (False, True, DirtyStatus.UNTRACKED),
        (True, True, DirtyStatus.MODIFIED_UNTRACKED),
    ],
)
def test_dirty_status_flags_round_trip(
    modified: bool, untracked: bool, expected: DirtyStatus
) -> None:
    status = DirtyStatus.from_flags(modified=modified, untracked=untracked)

    assert status is expected
    assert status.has_modifications is modified
    assert status.has_untracked is untracked
    assert DirtyStatus(status.value) is status


def test_act_strategy_requires_linux_host_and_job() -> None:
    target = Target.parse("linux/amd64")
    with pytest.raises(ConfigError, match="requires a job"):
        BuildStrategy(tool="ntm", target=target, method=BuildMethod.ACT, host=HOST_LINUX)
    with pytest.raises(ConfigError, match="must run on"):
        BuildStrategy(
            tool="ntm", target=target, method=BuildMethod.ACT, host=HOST_MACOS, job="build"
        )


def test_native_strategy_must_run_on_owner_without_job() -> None:
    target = Target.parse("darwin/arm64")
    with pytest.raises(ConfigError, match="must not name a job"):
        BuildStrategy(
            tool="ntm", target=target, method=BuildMethod.NATIVE, host=HOST_MACOS, job="x"
        )
    with pytest.raises(ConfigError, match="must run on mmini"):
        BuildStrategy(tool="ntm", target=target, method=BuildMethod.NATIVE, host=HOST_WINDOWS)


@pytest.mark.parametrize(
    ("outcome", "code"),
    [
        (RunOutcome.SUCCESS, 0),
        (RunOutcome.PARTIAL_FAILURE, 1),
        (RunOutcome.TIMEOUT, 5),
        (RunOutcome.INTERRUPTED, 5),
        (RunOutcome.BUILD_FAILED, 6),
    ],
)
def test_run_outcome_exit_codes(outcome: RunOutcome, code: int) -> None:
    assert outcome.exit_code == code


def test_artifact_entry_validates_digest() -> None:
    with pytest.raises(ValueError, match="sha256"):
        ArtifactEntry(name="a", target="linux/amd64", sha256="abc", size_bytes=1, path="/a")
    with pytest.raises(ValueError, match="size_bytes"):
        ArtifactEntry(name="a", target="linux/amd64", sha256="0" * 64, size_bytes=-1, path="/a")


def test_manifest_from_dict_reverses_to_dict() -> None:
    manifest = BuildManifest(
        schema_version="1.0.0",
        tool="ntm",
        version="1.0.0",
        git_sha="a" * 40,
        git_ref="v1.0.0",
        built_at="2026-01-01T00:00:00Z",
        duration_ms=1200,
        run_id="20260101-000000-1-abcd",
        artifacts=(
            ArtifactEntry(
                name="ntm-linux-amd64",
                target="linux/amd64",
                sha256="b" * 64,
                size_bytes=10,
                path="/state/artifacts/x/ntm",
            ),
        ),
        hosts=(
            HostSummary(
                target="linux/amd64",
                host="trj",
                method="act",
                status="success",
                exit_class=0,
                duration_seconds=1.2,
                job="build-linux",
            ),
        ),
    )

    assert BuildManifest.from_dict(manifest.to_dict()) == manifest
    assert manifest.to_json() == canonical_json(manifest.to_dict())
    assert manifest.to_json().startswith('{"artifacts":[{"name":"ntm-linux-amd64"')


def test_manifest_from_dict_reports_missing_fields() -> None:
    with pytest.raises(ValueError, match="malformed"):
        BuildManifest.from_dict({"artifacts": [], "hosts": []})


def test_run_ids_are_sortable_and_validated() -> None:
    run_id = generate_run_id(pid=4242)

    assert is_valid_run_id(run_id)
    assert run_id.split("-")[2] == "4242"
    assert validate_run_id(run_id) == run_id
    with pytest.raises(ValueError, match="invalid run id"):
        validate_run_id("not-a-run-id")
