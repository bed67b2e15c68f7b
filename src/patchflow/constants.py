"""Stable constants shared across patchflow planes."""

from __future__ import annotations

from pathlib import Path
from typing import Final

# Git branch names.
PRIMARY_TRUNK_BRANCH: Final[str] = "master"
RELEASE_LINE_BRANCHES: Final[tuple[str, ...]] = ("qa", "staging", "staging_iaas")
PROTECTED_BRANCHES: Final[frozenset[str]] = frozenset(
    (PRIMARY_TRUNK_BRANCH, *RELEASE_LINE_BRANCHES)
)
DEFAULT_PROTECTED_BRANCH_PREFIXES: Final[tuple[str, ...]] = ("QCE_",)
DEFAULT_REMOTE_NAME: Final[str] = "origin"

# Staging branch naming.
DEFAULT_TICKET_DESC: Final[str] = "x"
DEFAULT_STAGING_BRANCH_TEMPLATE: Final[str] = "{ticketID}_{ticketDesc}_{targetBranch}"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
STATE_DB_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths.
DEFAULT_HOME_DIR: Final[Path] = Path("~/.patch")
CONFIG_FILE_NAME: Final[str] = "config.toml"
STATE_DB_FILE_NAME: Final[str] = "patchflow.sqlite3"
LEGACY_STATE_FILE_NAME: Final[str] = "jira.json"
REPO_REGISTRY_FILE_NAME: Final[str] = "repo.json"
LOG_FILE_NAME: Final[str] = "patchflow.jsonl"

# Review acceptance and merge-wait loops.
ACCEPT_RETRY_ATTEMPTS: Final[int] = 3
ACCEPT_RETRY_DELAY_SECONDS: Final[float] = 5.0
MERGE_POLL_MAX_ATTEMPTS: Final[int] = 120
MERGE_POLL_INTERVAL_SECONDS: Final[float] = 5.0

# Remote probing.
REMOTE_PROBE_TIMEOUT_SECONDS: Final[float] = 10.0

# Staging-branch retention before a sweep may delete it.
STAGING_RETENTION_DAYS: Final[int] = 7

__all__ = [
    "ACCEPT_RETRY_ATTEMPTS",
    "ACCEPT_RETRY_DELAY_SECONDS",
    "CONFIG_FILE_NAME",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_HOME_DIR",
    "DEFAULT_PROTECTED_BRANCH_PREFIXES",
    "DEFAULT_REMOTE_NAME",
    "DEFAULT_STAGING_BRANCH_TEMPLATE",
    "DEFAULT_TICKET_DESC",
    "LEGACY_STATE_FILE_NAME",
    "LOG_FILE_NAME",
    "MERGE_POLL_INTERVAL_SECONDS",
    "MERGE_POLL_MAX_ATTEMPTS",
    "PRIMARY_TRUNK_BRANCH",
    "PROTECTED_BRANCHES",
    "RELEASE_LINE_BRANCHES",
    "REMOTE_PROBE_TIMEOUT_SECONDS",
    "REPO_REGISTRY_FILE_NAME",
    "STAGING_RETENTION_DAYS",
    "STATE_DB_FILE_NAME",
    "STATE_DB_SCHEMA_VERSION",
]
