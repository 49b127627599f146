"""
dsr — secret redaction

File: src/dsr/security/redaction.py

Purpose
- Keep credentials out of run logs, build logs shown on stderr, and error output.

Functional requirements
- Values under sensitive keys are replaced wholesale.
- Free text is scanned for token shapes that show up in release pipelines
  (GitHub and registry tokens, bearer headers, ``KEY=value`` assignments, PEM keys).
- ``mask_token`` shows only a short prefix so operators can tell tokens apart.

Non-functional requirements
- Deterministic and idempotent: redacting redacted output changes nothing.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

REDACTED_VALUE: Final[str] = "***REDACTED***"
MASK_PREFIX_CHARS: Final[int] = 8

SENSITIVE_KEY_DENYLIST: Final[frozenset[str]] = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth_token",
        "authorization",
        "client_secret",
        "credential",
        "credentials",
        "gh_token",
        "github_token",
        "password",
        "passwd",
        "private_key",
        "secret",
        "secrets",
        "token",
    }
)
_SENSITIVE_KEY_SUFFIXES: Final[tuple[str, ...]] = (
    "_api_key",
    "_password",
    "_passwd",
    "_private_key",
    "_secret",
    "_token",
)

_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True, slots=True)
class _TextRule:
    name: str
    pattern: re.Pattern[str]
    sensitive_group: int | None = None


_TEXT_RULES: Final[tuple[_TextRule, ...]] = (
    _TextRule(
        name="private_key_block",
        pattern=re.compile(
            r"-----BEGIN(?: [A-Z0-9]+)* PRIVATE KEY-----"
            r"[\s\S]+?"
            r"-----END(?: [A-Z0-9]+)* PRIVATE KEY-----"
        ),
    ),
    _TextRule(
        name="authorization_bearer",
        pattern=re.compile(r"(?i)(\bauthorization\s*:\s*bearer\s+)([A-Za-z0-9\-._~+/=]{8,})"),
        sensitive_group=2,
    ),
    _TextRule(
        name="secret_assignment",
        pattern=re.compile(
            r"(?i)(\b[A-Z0-9_]*(?:password|passwd|secret|api[_-]?key|token)\b\s*[:=]\s*[\"']?)"
            r"([A-Za-z0-9._~+/=-]{6,})"
        ),
        sensitive_group=2,
    ),
    _TextRule(name="github_token", pattern=re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,255}\b")),
    _TextRule(
        name="github_fine_grained_token",
        pattern=re.compile(r"\bgithub_pat_[A-Za-z0-9_]{22,255}\b"),
    ),
    _TextRule(name="aws_access_key", pattern=re.compile(r"\b(?:AKIA|ASIA)[A-Z0-9]{16}\b")),
    _TextRule(
        name="jwt",
        pattern=re.compile(r"\beyJ[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\b"),
    ),
)


def mask_token(token: str) -> str:
    """Show the first eight characters of ``token`` followed by ``***``."""

    if not token:
        return ""
    if len(token) <= MASK_PREFIX_CHARS:
        return "***"
    return f"{token[:MASK_PREFIX_CHARS]}***"


def is_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if not normalized:
        return False
    if normalized in SENSITIVE_KEY_DENYLIST:
        return True
    return any(normalized.endswith(suffix) for suffix in _SENSITIVE_KEY_SUFFIXES)


def redact_text(text: str) -> str:
    redacted = text
    for rule in _TEXT_RULES:
        redacted = rule.pattern.sub(lambda match, r=rule: _replace(match, r), redacted)
    return redacted


def redact_value(value: object) -> object:
    """Return a deep-redacted copy of ``value``; unknown leaf types pass through."""

    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, Mapping):
        out: dict[object, object] = {}
        for key, item in value.items():
            if isinstance(key, str) and is_sensitive_key(key):
                out[key] = REDACTED_VALUE
            else:
                out[key] = redact_value(item)
        return out
    if isinstance(value, list):
        return [redact_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_value(item) for item in value)
    return value


def _replace(match: re.Match[str], rule: _TextRule) -> str:
    if REDACTED_VALUE in match.group(0):
        return match.group(0)
    if rule.sensitive_group is None:
        return REDACTED_VALUE
    full = match.group(0)
    start, end = match.span(rule.sensitive_group)
    offset = match.start(0)
    return f"{full[: start - offset]}{REDACTED_VALUE}{full[end - offset :]}"


def _normalize_key(key: str) -> str:
    spaced = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", spaced.lower()).strip("_")


__all__ = [
    "REDACTED_VALUE",
    "SENSITIVE_KEY_DENYLIST",
    "is_sensitive_key",
    "mask_token",
    "redact_text",
    "redact_value",
]
