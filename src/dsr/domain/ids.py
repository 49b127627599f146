"""Run identifier generation and validation."""

from __future__ import annotations

import os
import re
import secrets
from datetime import UTC, datetime
from typing import Final

RUN_ID_PATTERN_DESCRIPTION: Final[str] = "20260101-120000-4242-a1b2"

_RUN_ID_RE: Final[re.Pattern[str]] = re.compile(r"^\d{8}-\d{6}-\d+-[0-9a-f]{4}$")


def generate_run_id(*, now: datetime | None = None, pid: int | None = None) -> str:
    """Return a sortable run id ``<YYYYmmdd-HHMMSS>-<pid>-<4 hex>``.

    The random suffix keeps ids unique when two runs start in the same second
    from the same process, as happens in tests.
    """

    moment = now if now is not None else datetime.now(tz=UTC)
    process_id = os.getpid() if pid is None else pid
    return f"{moment.strftime('%Y%m%d-%H%M%S')}-{process_id}-{secrets.token_hex(2)}"


def is_valid_run_id(value: str) -> bool:
    return isinstance(value, str) and _RUN_ID_RE.fullmatch(value) is not None


def validate_run_id(value: str) -> str:
    if not is_valid_run_id(value):
        raise ValueError(f"invalid run id {value!r}; expected form {RUN_ID_PATTERN_DESCRIPTION}")
    return value


__all__ = [
    "RUN_ID_PATTERN_DESCRIPTION",
    "generate_run_id",
    "is_valid_run_id",
    "validate_run_id",
]
