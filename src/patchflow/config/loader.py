"""
patchflow — runtime config loader.

Purpose
- Load effective runtime config from defaults, a TOML or YAML file, env vars, and
  CLI overrides.

What should be included in this file
- Precedence logic: CLI > env (PATCHFLOW_) > file > defaults.
- TOML loading via ``tomllib``; ``.yaml``/``.yml`` files via PyYAML.
- Deterministic environment variable mapping and coercion.
- The commented template written by ``patchflow init``.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

import yaml

from patchflow.config.schema import (
    PatchflowSettings,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    settings_from_config,
)
from patchflow.constants import CONFIG_FILE_NAME, DEFAULT_HOME_DIR

ENV_PREFIX: Final[str] = "PATCHFLOW_"
HOME_ENV: Final[str] = f"{ENV_PREFIX}HOME_DIR"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})
# Sections keyed by user-chosen names cannot be bound to fixed env var names.
_UNBOUND_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "repos", "review_hosts"})

CONFIG_TEMPLATE: Final[str] = """\
# patchflow configuration

home_dir = "~/.patch"
log_level = "INFO"
# Remote deletion always refuses master, qa, staging, staging_iaas and these prefixes.
protected_branch_prefixes = ["QCE_"]

# Review host tokens are read from the named environment variable.
# [[review_hosts]]
# base_url = "https://gitlab.example.com"
# token_env = "PATCHFLOW_REVIEW_TOKEN"

# [repos.my-service]
# url = "https://gitlab.example.com/team/my-service"
# path = "/home/me/src/my-service"
# create_review = true
# auto_merge_branches = ["qa"]
# post_merge_hooks = { qa = ["make deploy-qa"] }

[patch]
target_branches = ["qa", "staging"]
planned_target_branches = ["qa", "staging", "master"]
ticket_desc = "x"
tracker_projects = []
staging_branch_template = "{ticketID}_{ticketDesc}_{targetBranch}"
run_post_merge_hooks = true

[patch.branch_alias]
# s = "staging"
"""


@dataclass(frozen=True, slots=True)
class _Binding:
    path: tuple[str, ...]
    value_type: Literal["str", "bool", "list"]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def default_config_path(environ: Mapping[str, str] | None = None) -> Path:
    env_map = os.environ if environ is None else environ
    home = env_map.get(HOME_ENV, "").strip() or str(DEFAULT_HOME_DIR)
    return Path(home).expanduser() / CONFIG_FILE_NAME


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with deterministic precedence: CLI > env > file > defaults."""

    env_map = dict(os.environ if environ is None else environ)
    explicit_path = config_path is not None
    resolved_path = (
        Path(config_path).expanduser().resolve()
        if config_path is not None
        else default_config_path(env_map)
    )

    file_payload = _load_config_file(resolved_path, required=explicit_path)
    merged = merge_config(default_config(), file_payload)
    merged = assert_valid_config(merged)

    env_overrides = _collect_env_overrides(merged, env_map)
    cli_payload = _materialize_cli_overrides(dict(cli_overrides or {}))

    merged = merge_config(merged, env_overrides)
    merged = merge_config(merged, cli_payload)
    return assert_valid_config(merged)


def load_settings(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> PatchflowSettings:
    env_map = dict(os.environ if environ is None else environ)
    config = load_config(config_path, cli_overrides=cli_overrides, environ=env_map)
    return settings_from_config(config, environ=env_map)


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Return deterministic JSON dump of redacted effective config."""

    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def write_config_template(path: Path) -> bool:
    """Write the commented template unless a config already exists; returns whether it wrote."""

    if path.exists():
        return False
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"unable to write config template {path}: {exc}") from exc
    return True


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    if path.suffix.lower() in _YAML_SUFFIXES:
        parsed = _load_yaml_file(path)
    else:
        try:
            with path.open("rb") as handle:
                parsed = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
        except OSError as exc:
            raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ConfigLoadError(f"config root must be an object: {path}")
    return parsed


def _load_yaml_file(path: Path) -> object:
    try:
        with path.open("r", encoding="utf-8") as handle:
            parsed = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigLoadError(f"invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc
    return {} if parsed is None else parsed


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
        if path[0] in _UNBOUND_SECTIONS:
            continue
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


def _kind_for_value(value: object) -> Literal["str", "bool", "list"] | None:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, str):
        return "str"
    if isinstance(value, list):
        return "list"
    return None


def _coerce_env(
    raw: str,
    value_type: Literal["str", "bool", "list"],
    env_name: str,
    path: tuple[str, ...],
) -> object:
    value = raw.strip()
    if value_type == "str":
        return value
    if value_type == "list":
        return [item.strip() for item in value.split(",") if item.strip()]

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
        _set_nested(payload, path, list(value) if isinstance(value, tuple) else value)
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


def _env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "CONFIG_TEMPLATE",
    "ConfigLoadError",
    "ENV_PREFIX",
    "HOME_ENV",
    "default_config_path",
    "dump_effective_config",
    "load_config",
    "load_settings",
    "write_config_template",
]
