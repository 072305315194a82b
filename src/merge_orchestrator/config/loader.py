"""
merge-orchestrator — effective configuration assembly.

File: src/merge_orchestrator/config/loader.py

Purpose
- Build the effective orchestrator config from layered sources and hand back a
  validated plain mapping that ``OrchestratorSettings.from_config`` accepts.

Layering (lowest to highest)
1. Built-in defaults.
2. The TOML file (``merge-orchestrator.toml`` in the working directory, or an
   explicit path which must then exist).
3. The selected profile overlay.
4. ``MERGE_ORCH_*`` environment variables. Every scalar or string-list leaf
   of the config gets one variable, typed after the value it overrides.
5. CLI ``--set`` overrides keyed by dotted path.

The file layer is validated on its own before anything is stacked on it, so
an embedded secret or unknown key is reported against the file and not against
a later layer. Relative paths resolve against the directory of the config file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from merge_orchestrator.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from merge_orchestrator.constants import DEFAULT_CONFIG_FILENAME

DEFAULT_CONFIG_FILE: Final[str] = DEFAULT_CONFIG_FILENAME
ENV_PREFIX: Final[str] = "MERGE_ORCH_"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

# Sections that never bind to environment variables.
_UNBOUND_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

ConfigPath = tuple[str, ...]
_Coercer = Callable[[str], object]


class ConfigLoadError(ValueError):
    """Raised when a config source cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    ``profile`` wins over a ``profile`` key in ``cli_overrides``, which wins
    over ``MERGE_ORCH_PROFILE``. ``environ`` defaults to ``os.environ``.
    """

    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    source = _config_file(config_path)
    active_profile = _select_profile(profile, overrides, env)

    layered = assert_valid_config(
        merge_config(default_config(), _read_toml(source, required=config_path is not None))
    )
    if active_profile is not None:
        layered = apply_profile_overlay(layered, active_profile)
    layered = merge_config(layered, _environment_layer(layered, env))
    layered = merge_config(layered, _override_layer(overrides))
    layered = assert_valid_config(layered, active_profile=active_profile)

    return assert_valid_config(
        normalize_paths(layered, base_dir=source.parent), active_profile=active_profile
    )


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve every configured path field, including those inside profiles, against ``base_dir``."""

    resolved = merge_config({}, config)
    targets: list[ConfigPath] = list(PATH_FIELDS)
    profiles = resolved.get("profiles")
    if isinstance(profiles, Mapping):
        for name in sorted(profiles):
            overlay = profiles[name]
            if isinstance(overlay, Mapping):
                targets.extend(("profiles", name, *field) for field in PATH_FIELDS if field[0] in overlay)

    for target in targets:
        raw = _lookup(resolved, target)
        if isinstance(raw, str):
            _assign(resolved, target, _resolve_path(raw, base_dir))
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Render the redacted config as stable, sorted JSON."""

    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


def _config_file(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, overrides: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    if explicit is not None:
        chosen: object = explicit
    elif "profile" in overrides:
        chosen = overrides["profile"]
        if not isinstance(chosen, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    else:
        chosen = env.get(PROFILE_ENV_VAR)
    if not isinstance(chosen, str):
        return None
    return chosen.strip() or None


def _environment_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, current in _leaves(config):
        if path[0] in _UNBOUND_SECTIONS:
            continue
        coerce = _coercer_for(current)
        if coerce is None:
            continue
        name = env_var_name(path)
        raw = env.get(name)
        if raw is None:
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from exc
        _assign(layer, path, value)
    return layer


def _override_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(overrides):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, path, overrides[key])
    return layer


def env_var_name(path: ConfigPath) -> str:
    """``("merge", "max_attempts")`` -> ``MERGE_ORCH_MERGE_MAX_ATTEMPTS``."""

    return ENV_PREFIX + "_".join(part.upper() for part in path)


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------


def _as_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _as_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


def _as_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _as_str_list(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def _coercer_for(current: object) -> _Coercer | None:
    # bool before int: bool is an int subclass.
    if isinstance(current, bool):
        return _as_bool
    if isinstance(current, int):
        return _as_int
    if isinstance(current, float):
        return _as_float
    if isinstance(current, str):
        return str
    # Action tables are lists of mappings and stay file/CLI only.
    if isinstance(current, list) and all(isinstance(item, str) for item in current):
        return _as_str_list
    return None


# ---------------------------------------------------------------------------
# Nested mapping helpers
# ---------------------------------------------------------------------------


def _leaves(payload: Mapping[str, object], prefix: ConfigPath = ()) -> Iterator[tuple[ConfigPath, object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _lookup(payload: Mapping[str, object], path: ConfigPath) -> object | None:
    node: object = payload
    for part in path:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _assign(target: dict[str, Any], path: ConfigPath, value: object) -> None:
    *parents, leaf = path
    node = target
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[leaf] = value


def _resolve_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "dump_effective_config",
    "env_var_name",
    "load_config",
    "normalize_paths",
]
