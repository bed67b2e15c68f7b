"""Ticket identification from commit messages and staging-branch naming."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from patchflow.constants import DEFAULT_STAGING_BRANCH_TEMPLATE, DEFAULT_TICKET_DESC
from patchflow.domain.models import CommitType

_GENERIC_TRACKER_RE = re.compile(r"\b[A-Z]+-\d+\b")
_COMMIT_ID_RE = re.compile(r"^[0-9a-f]{4,40}$")
_TEMPLATE_FIELDS = ("ticketID", "ticketDesc", "targetBranch")


@dataclass(frozen=True, slots=True)
class TicketIdentity:
    ticket_id: str
    commit_type: CommitType
    commit_message: str = ""


def detect_ticket(message: str, tracker_projects: Sequence[str] = ()) -> TicketIdentity | None:
    """
    Derive a ticket identity from a commit subject.

    Configured tracker prefixes win over the generic ``ABC-123`` pattern. When no
    tracker id is present the whole message becomes the marker and its MD5 digest
    stands in for the ticket id.
    """

    subject = message.strip()
    if not subject:
        return None

    for prefix in tracker_projects:
        match = re.search(rf"{re.escape(prefix)}-\w+", subject)
        if match is not None:
            return TicketIdentity(match.group(0), CommitType.TRACKER)

    match = _GENERIC_TRACKER_RE.search(subject)
    if match is not None:
        return TicketIdentity(match.group(0), CommitType.TRACKER)

    digest = hashlib.md5(subject.encode("utf-8"), usedforsecurity=False).hexdigest()
    return TicketIdentity(digest, CommitType.MESSAGE, subject)


def looks_like_commit_id(value: str) -> bool:
    return _COMMIT_ID_RE.fullmatch(value) is not None


def resolve_ticket(
    explicit_id: str | None,
    *,
    subject_of: Callable[[str | None], str],
    tracker_projects: Sequence[str] = (),
) -> TicketIdentity | None:
    """
    Resolve the ticket to synchronize.

    ``subject_of(None)`` returns the latest commit subject on the dev branch and
    ``subject_of(commit_id)`` the subject of a specific commit. An explicit id that
    looks like a commit id is resolved through that commit's message.
    """

    if not explicit_id:
        return detect_ticket(subject_of(None), tracker_projects)
    if looks_like_commit_id(explicit_id):
        return detect_ticket(subject_of(explicit_id), tracker_projects)
    return TicketIdentity(explicit_id, CommitType.TRACKER)


def staging_branch_name(
    ticket_id: str,
    target_branch: str,
    *,
    ticket_desc: str = DEFAULT_TICKET_DESC,
    template: str = DEFAULT_STAGING_BRANCH_TEMPLATE,
) -> str:
    """Render the deterministic staging-branch name for one (ticket, target) pair."""

    values = {
        "ticketID": ticket_id,
        "ticketDesc": ticket_desc or DEFAULT_TICKET_DESC,
        "targetBranch": target_branch,
    }
    rendered = template
    for name in _TEMPLATE_FIELDS:
        rendered = rendered.replace("{" + name + "}", values[name])
    return rendered


__all__ = [
    "TicketIdentity",
    "detect_ticket",
    "looks_like_commit_id",
    "resolve_ticket",
    "staging_branch_name",
]
