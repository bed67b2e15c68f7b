"""
patchflow — merge status reconciliation

Purpose
- Detect that a synchronized ticket has landed on its target branch by looking for
  a matching commit newer than the last one recorded for that branch.

Functional requirements
- ``merged`` only moves from false to true.
- The originally checked-out branch is restored per working copy, on every path.
- State is saved once per run, and only when a flag changed.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from patchflow.control_plane.sync_engine import converge_branch, preserve_checkout
from patchflow.domain.models import Ticket, TicketBranch, exclude_reverted, utc_now
from patchflow.integration_plane.git_engine import GitEngineError, SourceControlAdapter

if TYPE_CHECKING:
    from patchflow.config.schema import PatchflowSettings, RepoSettings
    from patchflow.persistence.ticket_store import TicketStore

ScmFactory = Callable[["RepoSettings"], SourceControlAdapter]


@dataclass(frozen=True, slots=True)
class MergeCheck:
    project: str
    ticket_id: str
    target_branch: str
    staging_branch: str
    merged: bool
    changed: bool = False
    error: str = ""


class MergeStatusReconciler:
    def __init__(
        self,
        settings: PatchflowSettings,
        store: TicketStore,
        scm_factory: ScmFactory,
        *,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._scm_factory = scm_factory
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def reconcile(self, *, project: str = "", ticket_id: str = "") -> list[MergeCheck]:
        """Examine every unmerged branch in the filter; returns one check per branch examined."""

        pending: dict[str, list[tuple[Ticket, TicketBranch]]] = defaultdict(list)
        for ticket, branch in self._store.iter_branches(project=project, ticket_id=ticket_id):
            if branch.staging_branch and not branch.merged:
                pending[ticket.project].append((ticket, branch))

        checks: list[MergeCheck] = []
        for name, entries in pending.items():
            checks.extend(self._reconcile_project(name, entries))

        if any(check.changed for check in checks):
            self._store.save()
        return checks

    def check(self, *, project: str = "", ticket_id: str = "") -> list[MergeCheck]:
        """Reconcile, then report the merged state of every branch in the filter."""

        examined = {
            (check.project, check.ticket_id, check.target_branch): check
            for check in self.reconcile(project=project, ticket_id=ticket_id)
        }
        report: list[MergeCheck] = []
        for ticket, branch in self._store.iter_branches(project=project, ticket_id=ticket_id):
            key = (ticket.project, ticket.ticket_id, branch.target_branch)
            report.append(
                examined.get(key)
                or MergeCheck(
                    project=ticket.project,
                    ticket_id=ticket.ticket_id,
                    target_branch=branch.target_branch,
                    staging_branch=branch.staging_branch,
                    merged=branch.merged,
                )
            )
        return report

    def _reconcile_project(
        self, project: str, entries: list[tuple[Ticket, TicketBranch]]
    ) -> list[MergeCheck]:
        repo = self._settings.repo(project)
        if repo is None or not repo.path:
            self._logger.warning("reconcile_skipped_project", project=project, reason="no path")
            return [
                _check(ticket, branch, error="no local working copy configured")
                for ticket, branch in entries
            ]

        scm = self._scm_factory(repo)
        checks: list[MergeCheck] = []
        with preserve_checkout(scm) as original:
            for ticket, branch in entries:
                try:
                    changed = self._reconcile_branch(scm, ticket, branch, fallback=original)
                except GitEngineError as exc:
                    self._logger.warning(
                        "reconcile_branch_failed",
                        project=project,
                        ticket_id=ticket.ticket_id,
                        target=branch.target_branch,
                        error=str(exc),
                    )
                    checks.append(_check(ticket, branch, error=str(exc)))
                    continue
                checks.append(_check(ticket, branch, changed=changed))
        return checks

    def _reconcile_branch(
        self,
        scm: SourceControlAdapter,
        ticket: Ticket,
        branch: TicketBranch,
        *,
        fallback: str,
    ) -> bool:
        last = branch.last_commit
        if last is None:
            return False
        converge_branch(scm, branch.target_branch, fallback=fallback)
        landed = exclude_reverted(scm.commit_log(ticket.match_criterion))
        if not any(commit.timestamp > last.timestamp for commit in landed):
            return False
        changed = branch.mark_merged(at=utc_now())
        if changed:
            self._logger.info(
                "branch_merged",
                project=ticket.project,
                ticket_id=ticket.ticket_id,
                target=branch.target_branch,
            )
        return changed


def _check(
    ticket: Ticket, branch: TicketBranch, *, changed: bool = False, error: str = ""
) -> MergeCheck:
    return MergeCheck(
        project=ticket.project,
        ticket_id=ticket.ticket_id,
        target_branch=branch.target_branch,
        staging_branch=branch.staging_branch,
        merged=branch.merged,
        changed=changed,
        error=error,
    )


__all__ = ["MergeCheck", "MergeStatusReconciler", "ScmFactory"]
