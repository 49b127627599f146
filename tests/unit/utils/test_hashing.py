from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
from hypothesis import given
from hypothesis import strategies as st

from dsr.utils.hashing import digest_file, sha256_bytes, sha256_file, sha256_text

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_known_digests() -> None:
    assert sha256_bytes(b"") == EMPTY_SHA256
    assert sha256_text("") == EMPTY_SHA256
    assert sha256_text("abc") == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )


def test_digest_file_reports_size(tmp_path: Path) -> None:
    artifact = tmp_path / "ntm-linux-amd64"
    artifact.write_bytes(b"\x7fELF" + b"\x00" * 60)

    digest = digest_file(artifact)

    assert digest.size_bytes == 64
    assert digest.sha256 == sha256_bytes(artifact.read_bytes())


def test_chunk_size_must_be_positive(tmp_path: Path) -> None:
    artifact = tmp_path / "a"
    artifact.write_bytes(b"x")

    with pytest.raises(ValueError, match="chunk_size"):
        digest_file(artifact, chunk_size=0)


@given(data=st.binary(max_size=4096), chunk_size=st.integers(min_value=1, max_value=512))
def test_chunked_file_digest_matches_in_memory_digest(data: bytes, chunk_size: int) -> None:
    with tempfile.TemporaryDirectory() as scratch:
        path = Path(scratch) / "blob"
        path.write_bytes(data)
        assert sha256_file(path, chunk_size=chunk_size) == sha256_bytes(data)
