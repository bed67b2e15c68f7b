"""
patchflow — configuration package

Purpose
- Config schema, validation, loading, and the frozen settings handed to every
  component constructor. Nothing here keeps process-wide mutable state.
"""

from __future__ import annotations

from patchflow.config.loader import (
    ConfigLoadError,
    default_config_path,
    dump_effective_config,
    load_config,
    load_settings,
    write_config_template,
)
from patchflow.config.schema import (
    ConfigValidationError,
    PatchflowSettings,
    PatchSettings,
    RepoSettings,
    ReviewHostSettings,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "PatchSettings",
    "PatchflowSettings",
    "RepoSettings",
    "ReviewHostSettings",
    "default_config_path",
    "dump_effective_config",
    "load_config",
    "load_settings",
    "write_config_template",
]
