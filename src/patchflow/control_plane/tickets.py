"""Ticket bookkeeping commands and the status report."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from patchflow.domain.models import Ticket, TicketBranch

if TYPE_CHECKING:
    from patchflow.config.schema import PatchflowSettings
    from patchflow.control_plane.reconciler import MergeStatusReconciler
    from patchflow.persistence.ticket_store import TicketStore


class TicketCommandError(ValueError):
    """Raised when a ticket command is given unusable arguments."""


class BranchStatus(StrEnum):
    PENDING = "pending"
    AWAITING_MERGE = "awaiting merge"
    MERGED = "merged"


@dataclass(frozen=True, slots=True)
class StatusRow:
    project: str
    ticket_id: str
    label: str
    dev_branch: str
    target_branch: str
    staging_branch: str
    status: BranchStatus
    review_url: str = ""


def _branch_row(ticket: Ticket, branch: TicketBranch) -> StatusRow:
    review = branch.latest_review
    return StatusRow(
        project=ticket.project,
        ticket_id=ticket.ticket_id,
        label=ticket.label,
        dev_branch=branch.dev_branch,
        target_branch=branch.target_branch,
        staging_branch=branch.staging_branch,
        status=BranchStatus.MERGED if branch.merged else BranchStatus.AWAITING_MERGE,
        review_url=review.web_url if review is not None else "",
    )


def ticket_rows(ticket: Ticket) -> list[StatusRow]:
    """Rows for one ticket: dev branch descending, then target ascending; unpushed targets last."""

    rows = sorted(
        (_branch_row(ticket, branch) for branch in ticket.branches),
        key=lambda row: row.target_branch,
    )
    rows.sort(key=lambda row: row.dev_branch, reverse=True)
    for target in ticket.target_branches:
        if ticket.branch_for(target) is None:
            rows.append(
                StatusRow(
                    project=ticket.project,
                    ticket_id=ticket.ticket_id,
                    label=ticket.label,
                    dev_branch="",
                    target_branch=target,
                    staging_branch="",
                    status=BranchStatus.PENDING,
                )
            )
    return rows


def status_rows(
    tickets: Iterable[Ticket], *, project: str = "", ticket_id: str = ""
) -> list[StatusRow]:
    """
    Status of incomplete tickets matching the filters.

    A ticket requested by explicit id is reported even when complete.
    """

    rows: list[StatusRow] = []
    for ticket in tickets:
        if project and ticket.project != project:
            continue
        if ticket_id:
            if ticket.ticket_id != ticket_id:
                continue
        elif ticket.complete:
            continue
        rows.extend(ticket_rows(ticket))
    return rows


class TicketManager:
    """Add, delete, and detach planned target branches on stored tickets."""

    def __init__(
        self,
        settings: PatchflowSettings,
        store: TicketStore,
        *,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def add(self, project: str, ticket_id: str, targets: Sequence[str]) -> Ticket:
        if self._settings.repo(project) is None:
            raise TicketCommandError(f"project {project!r} is not configured")
        if not ticket_id.strip():
            raise TicketCommandError("a ticket id is required")
        translated = self._settings.translate_branches(targets)
        if not translated:
            raise TicketCommandError("at least one target branch is required")
        ticket = self._store.add(project, ticket_id.strip(), translated)
        self._logger.info(
            "ticket_targets_added", project=project, ticket_id=ticket.ticket_id, targets=translated
        )
        return ticket

    def delete(self, project: str, ticket_id: str) -> bool:
        removed = self._store.delete(project, ticket_id)
        if removed:
            self._logger.info("ticket_deleted", project=project, ticket_id=ticket_id)
        return removed

    def detach(self, project: str, ticket_id: str, target_branch: str) -> bool:
        real = self._settings.patch.branch_alias.get(target_branch) or target_branch
        detached = self._store.detach(project, ticket_id, real)
        if detached:
            self._logger.info(
                "ticket_target_detached", project=project, ticket_id=ticket_id, target=real
            )
        return detached

    def status(
        self,
        *,
        project: str = "",
        ticket_id: str = "",
        reconciler: MergeStatusReconciler | None = None,
    ) -> list[StatusRow]:
        if reconciler is not None:
            reconciler.reconcile(project=project, ticket_id=ticket_id)
        return status_rows(self._store.tickets, project=project, ticket_id=ticket_id)


__all__ = [
    "BranchStatus",
    "StatusRow",
    "TicketCommandError",
    "TicketManager",
    "status_rows",
    "ticket_rows",
]
