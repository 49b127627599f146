"""
dsr — runtime config loader.

File: src/dsr/config/loader.py

Purpose
- Load effective engine config from defaults, TOML file, env vars, and CLI overrides.

What should be included in this file
- Precedence logic: CLI > env (DSR_) > file > defaults.
- TOML loading via ``tomllib``.
- Deterministic environment variable mapping and coercion.
- Path normalization relative to config file location.

Functional requirements
- Configuration is read once at startup; components receive the resulting
  ``EngineConfig`` and never consult the environment themselves.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

from dsr.config.schema import (
    PATH_FIELDS,
    EngineConfig,
    assert_valid_config,
    default_config,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "dsr.toml"
ENV_PREFIX: Final[str] = "DSR_"
CONFIG_PATH_ENV: Final[str] = "DSR_CONFIG"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


@dataclass(frozen=True, slots=True)
class _Binding:
    path: tuple[str, ...]
    value_type: Literal["str", "int", "float", "bool"]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with deterministic precedence: CLI > env > file > defaults."""

    env_map = dict(os.environ if environ is None else environ)
    explicit_path = config_path is not None or bool(env_map.get(CONFIG_PATH_ENV, "").strip())
    resolved_path = resolve_config_path(config_path, environ=env_map)
    cli_map = dict(cli_overrides or {})

    file_payload = _load_toml_file(resolved_path, required=explicit_path)

    merged = merge_config(_environment_defaults(env_map), file_payload)
    merged = assert_valid_config(merged)

    env_overrides = _collect_env_overrides(merged, env_map)
    cli_payload = _materialize_cli_overrides(cli_map)

    merged = merge_config(merged, env_overrides)
    merged = merge_config(merged, cli_payload)
    merged = assert_valid_config(merged)

    return normalize_paths(merged, base_dir=resolved_path.parent, environ=env_map)


def load_engine_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> EngineConfig:
    """Load, validate, and freeze config into the typed struct components receive."""

    payload = load_config(config_path, cli_overrides=cli_overrides, environ=environ)
    return EngineConfig.from_mapping(payload)


def resolve_config_path(
    config_path: str | Path | None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Path:
    env_map = os.environ if environ is None else environ
    if config_path is not None:
        return Path(config_path).expanduser().resolve()
    explicit = env_map.get(CONFIG_PATH_ENV, "").strip()
    if explicit:
        return Path(explicit).expanduser().resolve()
    return (_config_home(env_map) / "dsr" / DEFAULT_CONFIG_FILE).resolve()


def normalize_paths(
    config: Mapping[str, object],
    *,
    base_dir: Path,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Normalize configured path fields relative to ``base_dir``."""

    env_map = os.environ if environ is None else environ
    materialized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        value = _get_nested(materialized, field_path)
        if not isinstance(value, str) or not value:
            continue
        _set_nested(materialized, field_path, _normalize_one_path(value, base_dir, env_map))
    return materialized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Return deterministic JSON dump of effective config."""

    return json.dumps(config, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _environment_defaults(environ: Mapping[str, str]) -> dict[str, Any]:
    defaults: dict[str, Any] = merge_config({}, default_config())  # type: ignore[arg-type]
    state_home = environ.get("XDG_STATE_HOME", "").strip()
    if state_home:
        defaults["paths"]["state_dir"] = str(Path(state_home) / "dsr")
    config_home = environ.get("XDG_CONFIG_HOME", "").strip()
    if config_home:
        defaults["paths"]["repos_dir"] = str(Path(config_home) / "dsr" / "repos.d")
    return defaults


def _config_home(environ: Mapping[str, str]) -> Path:
    raw = environ.get("XDG_CONFIG_HOME", "").strip()
    if raw:
        return Path(raw).expanduser()
    home = environ.get("HOME", "").strip()
    return Path(home).expanduser() / ".config" if home else Path.home() / ".config"


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    return parsed


def _collect_env_overrides(
    config: Mapping[str, object], environ: Mapping[str, str]
) -> dict[str, Any]:
    bindings = _build_bindings(config)
    overrides: dict[str, Any] = {}
    for env_name in sorted(bindings):
        raw = environ.get(env_name)
        if raw is None:
            continue
        binding = bindings[env_name]
        value = _coerce_env(raw, binding.value_type, env_name, binding.path)
        _set_nested(overrides, binding.path, value)
    return overrides


def _build_bindings(config: Mapping[str, object]) -> dict[str, _Binding]:
    bindings: dict[str, _Binding] = {}
    for path, value in _iter_scalar_paths(config):
        kind = _kind_for_value(value)
        if kind is None:
            continue
        bindings[_env_name_for_path(path)] = _Binding(path=path, value_type=kind)
    return bindings


def _iter_scalar_paths(
    payload: Mapping[str, object],
    prefix: tuple[str, ...] = (),
) -> list[tuple[tuple[str, ...], object]]:
    pairs: list[tuple[tuple[str, ...], object]] = []
    for key in sorted(payload):
        value = payload[key]
        path = (*prefix, key)
        if isinstance(value, Mapping):
            pairs.extend(_iter_scalar_paths(value, path))
        else:
            pairs.append((path, value))
    return pairs


def _kind_for_value(value: object) -> Literal["str", "int", "float", "bool"] | None:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "str"
    return None


def _coerce_env(
    raw: str,
    value_type: Literal["str", "int", "float", "bool"],
    env_name: str,
    path: tuple[str, ...],
) -> object:
    value = raw.strip()
    if value_type == "str":
        return value
    if value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)} must be an integer") from exc
    if value_type == "float":
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)} must be a number") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(
        f"{env_name} -> {'.'.join(path)} must be a boolean (true/false/1/0/yes/no/on/off)"
    )


def _materialize_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        value = cli_overrides[key]
        if value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _set_nested(payload, path, value)
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        next_node = cursor.get(part)
        if not isinstance(next_node, dict):
            next_node = {}
            cursor[part] = next_node
        cursor = next_node
    cursor[path[-1]] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    cursor: object = payload
    for part in path:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _normalize_one_path(raw: str, base_dir: Path, environ: Mapping[str, str]) -> str:
    expanded = raw
    home = environ.get("HOME", "").strip()
    if home and (expanded == "~" or expanded.startswith("~/")):
        expanded = home + expanded[1:]
    candidate = Path(os.path.expandvars(expanded)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(str(candidate))).as_posix()


def _env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "CONFIG_PATH_ENV",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "load_config",
    "load_engine_config",
    "normalize_paths",
    "resolve_config_path",
]
