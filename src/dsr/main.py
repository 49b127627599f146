"""Executable CLI entrypoint for ``dsr``."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Deterministic process exit-code contract."""

    SUCCESS = 0
    PARTIAL_FAILURE = 1
    DEPENDENCY_ERROR = 3
    INVALID_INPUT = 4
    INTERRUPTED = 5
    BUILD_FAILED = 6


_KNOWN_CODES = frozenset(int(item) for item in ExitCode)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m dsr`` and the ``dsr`` console script."""

    try:
        from dsr.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except KeyboardInterrupt:
        _write_stderr("interrupted")
        return int(ExitCode.INTERRUPTED)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = _route_exception(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def _normalize_exit_code(raw_code: object) -> int:
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, int):
        # argparse reports usage errors as 2.
        return raw_code if raw_code in _KNOWN_CODES else int(ExitCode.INVALID_INPUT)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.BUILD_FAILED)


def _route_exception(exc: BaseException) -> ExitCode:
    from dsr.config.loader import ConfigLoadError
    from dsr.config.schema import ConfigValidationError
    from dsr.domain.errors import DsrError

    for item in _iter_exception_chain(exc):
        if isinstance(item, DsrError):
            return ExitCode(item.exit_code)
        if isinstance(item, (ConfigLoadError, ConfigValidationError)):
            return ExitCode.INVALID_INPUT
        if isinstance(item, (FileNotFoundError, NotADirectoryError, PermissionError)):
            return ExitCode.INVALID_INPUT
    return ExitCode.BUILD_FAILED


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    from dsr.domain.errors import DsrError, InternalError

    if isinstance(exc, InternalError) or not isinstance(exc, (DsrError, ValueError, OSError)):
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    message = exc.describe() if isinstance(exc, DsrError) else str(exc)
    _write_stderr(f"error[{int(exit_code)}]: {message.strip() or exc.__class__.__name__}")


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint"]
