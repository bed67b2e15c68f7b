"""
patchflow — stale staging branch sweeper

Purpose
- Delete staging branches whose work is confirmed merged and that are older than the
  retention window, on the remote first and then locally.

Functional requirements
- Only branches with ``merged`` set and ``staging_deleted`` unset are candidates.
- A branch already absent on either side counts as deleted.
- ``staging_deleted`` is set once deletion was attempted, or when the creation time
  cannot be read, so the branch is not retried forever.
- State is saved once after the scan.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from patchflow.constants import STAGING_RETENTION_DAYS
from patchflow.control_plane.reconciler import MergeStatusReconciler, ScmFactory
from patchflow.domain.models import Ticket, TicketBranch, utc_now
from patchflow.integration_plane.git_engine import (
    GitEngineError,
    OpenReviewBlocksDeletionError,
    ProtectedBranchError,
    SourceControlAdapter,
)

if TYPE_CHECKING:
    from patchflow.config.schema import PatchflowSettings
    from patchflow.persistence.ticket_store import TicketStore

_ABSENT_BRANCH_MARKERS: Final[tuple[str, ...]] = (
    "remote ref does not exist",
    "error: Cannot delete",
    "not found",
)


class SweepAction(StrEnum):
    DELETED = "deleted"
    TOO_YOUNG = "too-young"
    NO_DEV_BRANCH = "no-dev-branch"
    NO_CREATION_TIME = "no-creation-time"
    REFUSED = "refused"
    NO_WORKING_COPY = "no-working-copy"


@dataclass(frozen=True, slots=True)
class SweepEntry:
    project: str
    ticket_id: str
    staging_branch: str
    action: SweepAction
    detail: str = ""


def is_absent_branch_error(exc: Exception) -> bool:
    text = str(exc)
    return any(marker in text for marker in _ABSENT_BRANCH_MARKERS)


class StaleBranchSweeper:
    def __init__(
        self,
        settings: PatchflowSettings,
        store: TicketStore,
        scm_factory: ScmFactory,
        *,
        reconciler: MergeStatusReconciler | None = None,
        retention: timedelta = timedelta(days=STAGING_RETENTION_DAYS),
        now: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._scm_factory = scm_factory
        self._reconciler = reconciler or MergeStatusReconciler(settings, store, scm_factory)
        self._retention = retention
        self._now = now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def sweep(
        self, *, project: str = "", ticket_id: str = "", check_merged: bool = True
    ) -> list[SweepEntry]:
        if check_merged:
            self._reconciler.reconcile(project=project, ticket_id=ticket_id)

        candidates: dict[str, list[tuple[Ticket, TicketBranch]]] = defaultdict(list)
        for ticket, branch in self._store.iter_branches(project=project, ticket_id=ticket_id):
            if branch.staging_branch and branch.merged and not branch.staging_deleted:
                candidates[ticket.project].append((ticket, branch))

        entries: list[SweepEntry] = []
        for name, pairs in candidates.items():
            repo = self._settings.repo(name)
            if repo is None or not repo.path:
                self._logger.warning("sweep_skipped_project", project=name, reason="no path")
                entries.extend(
                    _entry(ticket, branch, SweepAction.NO_WORKING_COPY) for ticket, branch in pairs
                )
                continue
            scm = self._scm_factory(repo)
            entries.extend(self._sweep_branch(scm, ticket, branch) for ticket, branch in pairs)

        if any(
            entry.action in (SweepAction.DELETED, SweepAction.NO_CREATION_TIME) for entry in entries
        ):
            self._store.save()
        return entries

    def _sweep_branch(
        self, scm: SourceControlAdapter, ticket: Ticket, branch: TicketBranch
    ) -> SweepEntry:
        staging = branch.staging_branch
        if not branch.dev_branch:
            return _entry(ticket, branch, SweepAction.NO_DEV_BRANCH)

        now = self._now()
        try:
            created = scm.branch_creation_time(staging)
        except GitEngineError as exc:
            self._logger.debug("sweep_creation_time_unknown", staging=staging, error=str(exc))
            branch.mark_staging_deleted(at=now)
            return _entry(ticket, branch, SweepAction.NO_CREATION_TIME, str(exc))

        if now - created <= self._retention:
            return _entry(ticket, branch, SweepAction.TOO_YOUNG)

        try:
            self._delete(scm.delete_remote_branch, staging, side="remote")
            self._delete(scm.delete_local_branch, staging, side="local")
        except (ProtectedBranchError, OpenReviewBlocksDeletionError) as exc:
            self._logger.warning("sweep_refused", staging=staging, error=str(exc))
            return _entry(ticket, branch, SweepAction.REFUSED, str(exc))

        branch.mark_staging_deleted(at=now)
        self._logger.info(
            "staging_branch_swept",
            project=ticket.project,
            ticket_id=ticket.ticket_id,
            staging=staging,
        )
        return _entry(ticket, branch, SweepAction.DELETED)

    def _delete(self, delete: Callable[[str], None], staging: str, *, side: str) -> None:
        try:
            delete(staging)
        except (ProtectedBranchError, OpenReviewBlocksDeletionError):
            raise
        except GitEngineError as exc:
            if is_absent_branch_error(exc):
                self._logger.debug("sweep_branch_already_absent", staging=staging, side=side)
                return
            self._logger.warning(
                "sweep_delete_failed", staging=staging, side=side, error=str(exc)
            )


def _entry(
    ticket: Ticket, branch: TicketBranch, action: SweepAction, detail: str = ""
) -> SweepEntry:
    return SweepEntry(
        project=ticket.project,
        ticket_id=ticket.ticket_id,
        staging_branch=branch.staging_branch,
        action=action,
        detail=detail,
    )


__all__ = [
    "StaleBranchSweeper",
    "SweepAction",
    "SweepEntry",
    "is_absent_branch_error",
]
