"""Toolchain probes and minimum-version checks for native build hosts."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Final

from dsr.domain.errors import DependencyError

if TYPE_CHECKING:
    from collections.abc import Mapping

PROBE_COMMANDS: Final[dict[str, str]] = {
    "go": "go version",
    "rust": "rustc --version",
    "bun": "bun --version",
    "node": "node --version",
}

_VERSION_RE: Final[re.Pattern[str]] = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")

Version = tuple[int, int, int]


def probe_command(language: str) -> str:
    try:
        return PROBE_COMMANDS[language]
    except KeyError as exc:
        known = ", ".join(sorted(PROBE_COMMANDS))
        raise DependencyError(f"no toolchain probe for language {language!r} ({known})") from exc


def parse_version(text: str) -> Version | None:
    """Extract the first ``major.minor[.patch]`` from probe output.

    >>> parse_version("go version go1.22.3 linux/amd64")
    (1, 22, 3)
    >>> parse_version("v18.19.0")
    (18, 19, 0)
    """

    match = _VERSION_RE.search(text)
    if match is None:
        return None
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch or 0)


def version_at_least(found: Version, minimum: Version) -> bool:
    return found >= minimum


def format_version(version: Version) -> str:
    return ".".join(str(part) for part in version)


def require_minimum(
    language: str,
    probe_output: str,
    minimums: Mapping[str, str],
    *,
    host: str | None = None,
) -> Version:
    """Return the parsed version or raise a permanent ``DependencyError``."""

    found = parse_version(probe_output)
    if found is None:
        raise DependencyError(
            f"cannot parse {language} version from {probe_output.strip()!r}", host=host
        )
    minimum_text = minimums.get(language)
    if minimum_text is None:
        return found
    minimum = parse_version(minimum_text)
    if minimum is None:
        raise DependencyError(f"invalid minimum version {minimum_text!r} for {language}")
    if not version_at_least(found, minimum):
        raise DependencyError(
            f"{language} {format_version(found)} is older than required {minimum_text}",
            host=host,
        )
    return found


__all__ = [
    "PROBE_COMMANDS",
    "Version",
    "format_version",
    "parse_version",
    "probe_command",
    "require_minimum",
    "version_at_least",
]
