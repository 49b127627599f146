"""
dsr — build manifest assembly.

File: src/dsr/manifest/assembler.py

Purpose
- Turn a finished build run into the canonical, content-addressed record that
  later release stages (signing, SBOM, upload) consume.

Functional requirements
- Assembly is all-or-nothing: any inconsistency raises ``InternalError`` and no
  manifest is produced.
- Every artifact hash is re-checked against the bytes on disk immediately before
  the manifest is written.
- Manifests are write-once. Later stages attach companion reference files next to
  the manifest instead of modifying it.

Non-functional requirements
- Output ordering is deterministic (by target, then artifact name).
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from dsr.constants import MANIFEST_SCHEMA_VERSION
from dsr.domain.errors import InternalError
from dsr.domain.models import ArtifactEntry, BuildManifest, HostSummary
from dsr.utils.fs import atomic_write, iter_files
from dsr.utils.hashing import digest_file, sha256_file

if TYPE_CHECKING:
    from dsr.control_plane.executor import BuildRun


class ManifestAssembler:
    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def assemble(
        self,
        build_run: BuildRun,
        *,
        tool: str | None = None,
        version: str | None = None,
    ) -> BuildManifest:
        planned = [item.target for item in build_run.strategies]
        finished = [item.target for item in build_run.results]
        if sorted(planned) != sorted(finished) or len(set(finished)) != len(finished):
            raise InternalError(
                f"run {build_run.run_id}: results do not match the planned targets "
                f"(planned {len(planned)}, finished {len(finished)})"
            )

        artifacts: list[ArtifactEntry] = []
        for result in build_run.results:
            if not result.succeeded or result.artifact_dir is None:
                continue
            artifacts.extend(_hash_directory(Path(result.artifact_dir), str(result.target)))

        artifacts.sort(key=lambda item: (item.target, item.name))
        hosts = sorted(
            (HostSummary.from_result(item) for item in build_run.results),
            key=lambda item: item.target,
        )
        return BuildManifest(
            schema_version=MANIFEST_SCHEMA_VERSION,
            tool=tool or build_run.tool,
            version=version or build_run.version,
            git_sha=build_run.repo_state.git_sha,
            git_ref=build_run.repo_state.resolved_ref,
            built_at=build_run.started_at,
            duration_ms=build_run.duration_ms,
            run_id=build_run.run_id,
            artifacts=tuple(artifacts),
            hosts=tuple(hosts),
        )

    def write(self, manifest: BuildManifest, manifests_dir: Path | str) -> Path:
        """Verify every artifact, then persist ``manifest`` exactly once."""

        problems = verify_artifacts(manifest)
        if problems:
            rendered = "\n".join(f"- {item}" for item in problems)
            raise InternalError(f"refusing to write manifest for {manifest.run_id}:\n{rendered}")

        directory = Path(manifests_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / manifest_filename(manifest)
        try:
            atomic_write(path, _pretty_json(manifest.to_dict()), exclusive=True)
        except FileExistsError as exc:
            raise InternalError(f"manifest already exists: {path}") from exc
        self._logger.info(
            "manifest_written",
            path=str(path),
            artifacts=len(manifest.artifacts),
            hosts=len(manifest.hosts),
        )
        return path

    def attach_companion(
        self,
        manifest_path: Path | str,
        kind: str,
        companion_path: Path | str,
    ) -> Path:
        """Record ``companion_path`` (a signature, SBOM, ...) next to the manifest."""

        manifest_file = Path(manifest_path)
        companion = Path(companion_path)
        normalized_kind = kind.strip().lower()
        if not normalized_kind or not normalized_kind.replace("-", "").isalnum():
            raise ValueError(f"invalid companion kind {kind!r}")
        if not manifest_file.is_file():
            raise InternalError(f"manifest not found: {manifest_file}")
        if not companion.is_file():
            raise InternalError(f"companion file not found: {companion}")

        reference = {
            "kind": normalized_kind,
            "manifest": manifest_file.as_posix(),
            "manifest_sha256": sha256_file(manifest_file),
            "companion": companion.as_posix(),
            "companion_sha256": sha256_file(companion),
        }
        ref_path = manifest_file.with_name(f"{manifest_file.stem}.{normalized_kind}.ref.json")
        try:
            atomic_write(ref_path, _pretty_json(reference), exclusive=True)
        except FileExistsError as exc:
            raise InternalError(f"companion reference already exists: {ref_path}") from exc
        return ref_path


def manifest_filename(manifest: BuildManifest) -> str:
    return f"{manifest.tool}-{manifest.version}-{manifest.run_id}.json"


def load_manifest(path: Path | str) -> BuildManifest:
    manifest_file = Path(path)
    try:
        payload = json.loads(manifest_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise InternalError(f"cannot read manifest {manifest_file}: {exc}") from exc
    if not isinstance(payload, dict):
        raise InternalError(f"manifest {manifest_file} is not a JSON object")
    try:
        return BuildManifest.from_dict(payload)
    except ValueError as exc:
        raise InternalError(f"manifest {manifest_file} is malformed: {exc}") from exc


def verify_artifacts(manifest: BuildManifest) -> tuple[str, ...]:
    """Return one message per artifact whose bytes on disk do not match the record."""

    problems: list[str] = []
    for entry in manifest.artifacts:
        artifact = Path(entry.path)
        if not artifact.is_file():
            problems.append(f"{entry.target} {entry.name}: missing at {artifact}")
            continue
        digest = digest_file(artifact)
        if digest.sha256 != entry.sha256:
            problems.append(f"{entry.target} {entry.name}: sha256 mismatch")
        elif digest.size_bytes != entry.size_bytes:
            problems.append(f"{entry.target} {entry.name}: size mismatch")
    return tuple(problems)


def verify_manifest_file(path: Path | str) -> tuple[str, ...]:
    return verify_artifacts(load_manifest(path))


def _hash_directory(directory: Path, target: str) -> list[ArtifactEntry]:
    entries: list[ArtifactEntry] = []
    for artifact in iter_files(directory):
        try:
            expected_size = artifact.stat().st_size
            digest = digest_file(artifact)
        except FileNotFoundError as exc:
            raise InternalError(f"{target}: artifact vanished while hashing: {artifact}") from exc
        if digest.size_bytes != expected_size:
            raise InternalError(f"{target}: artifact changed while hashing: {artifact}")
        entries.append(
            ArtifactEntry(
                name=artifact.relative_to(directory).as_posix(),
                target=target,
                sha256=digest.sha256,
                size_bytes=digest.size_bytes,
                path=artifact.resolve().as_posix(),
            )
        )
    return entries


def _pretty_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n"


__all__ = [
    "ManifestAssembler",
    "load_manifest",
    "manifest_filename",
    "verify_artifacts",
    "verify_manifest_file",
]
