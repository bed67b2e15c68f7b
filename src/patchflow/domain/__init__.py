"""
patchflow — domain package

Purpose
- Ticket, TicketBranch, Commit, ReviewRef, and LinkedIssue aggregates.
- Pure helpers for ticket detection and staging-branch naming.

Functional requirements
- Must stay free of I/O; persistence and git access live in other planes.
"""

from __future__ import annotations

from patchflow.domain.models import (
    Commit,
    CommitType,
    LinkedIssue,
    MergeOutcome,
    ReviewRef,
    Ticket,
    TicketBranch,
    exclude_reverted,
    sort_commits,
)
from patchflow.domain.ticket_ids import (
    TicketIdentity,
    detect_ticket,
    resolve_ticket,
    staging_branch_name,
)

__all__ = [
    "Commit",
    "CommitType",
    "LinkedIssue",
    "MergeOutcome",
    "ReviewRef",
    "Ticket",
    "TicketBranch",
    "TicketIdentity",
    "detect_ticket",
    "exclude_reverted",
    "resolve_ticket",
    "sort_commits",
    "staging_branch_name",
]
