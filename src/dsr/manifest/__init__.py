"""Build manifest assembly, persistence, and verification."""

from dsr.manifest.assembler import (
    ManifestAssembler,
    load_manifest,
    manifest_filename,
    verify_artifacts,
    verify_manifest_file,
)

__all__ = [
    "ManifestAssembler",
    "load_manifest",
    "manifest_filename",
    "verify_artifacts",
    "verify_manifest_file",
]
