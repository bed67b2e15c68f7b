"""
patchflow — package root

Purpose
- Synchronize ticket-scoped commits from a development branch onto release branches,
  automate the resulting merge requests, and garbage-collect staging branches once
  their merges land.

Import boundary rules
- Must not have side effects at import time (no config loading, no logging init).
- Heavy collaborators (requests, rich) are imported by the modules that need them.
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
