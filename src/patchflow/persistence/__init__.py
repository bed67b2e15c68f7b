"""
patchflow — persistence package

Purpose
- SQLite state DB with migrations, the ticket store that bulk-replaces the
  ticket collection, and the JSON registry of known working copies.

Non-functional requirements
- SQLite-first; no cross-process locking (one operator per state directory).
"""

from __future__ import annotations

from patchflow.persistence.repo_registry import RegisteredRepo, RepoRegistry, RepoRegistryError
from patchflow.persistence.state_db import StateDB, StateDBError
from patchflow.persistence.ticket_store import TicketStore, TicketStoreError

__all__ = [
    "RegisteredRepo",
    "RepoRegistry",
    "RepoRegistryError",
    "StateDB",
    "StateDBError",
    "TicketStore",
    "TicketStoreError",
]
