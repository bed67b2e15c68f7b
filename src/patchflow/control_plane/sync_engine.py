"""
patchflow — push synchronization engine

Purpose
- Replay one ticket's commits from its dev branch onto a staging branch per target
  branch, publish it, and optionally open and auto-accept a review.

Functional requirements
- Commits are replayed oldest first regardless of log order.
- Each (ticket, target) pair keeps one TicketBranch; re-syncs fold into it.
- A per-target failure is reported and the next target is processed; the ticket
  is persisted once, after every target, and never after a user abort.
- The branch checked out before the push is restored on every exit path.

Non-functional requirements
- Retry and poll loops are bounded and take an injectable sleep.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from patchflow.constants import DEFAULT_TICKET_DESC
from patchflow.control_plane.operator import ConflictResolution, Operator, UserAbort
from patchflow.control_plane.retry import PollPolicy, RetryPolicy
from patchflow.domain.models import (
    Commit,
    CommitType,
    MergeOutcome,
    ReviewRef,
    Ticket,
    TicketBranch,
    exclude_reverted,
    sort_commits,
    utc_now,
)
from patchflow.domain.ticket_ids import resolve_ticket, staging_branch_name
from patchflow.integration_plane.git_engine import (
    CherryPickConflictError,
    CherryPickOutcome,
    GitEngineError,
    SourceControlAdapter,
)
from patchflow.integration_plane.hooks import HookRunner, hooks_succeeded
from patchflow.integration_plane.remote_url import new_review_url
from patchflow.integration_plane.review_client import RemoteReviewAdapter, ReviewClientError

if TYPE_CHECKING:
    from patchflow.config.schema import PatchflowSettings, RepoSettings
    from patchflow.persistence.ticket_store import TicketStore

PUSH_METADATA_KEY = "src_branch"


class SyncError(RuntimeError):
    """Fatal condition for one ticket/target, carrying enough context to diagnose it."""

    def __init__(self, message: str, *, project: str, ticket_id: str, branch: str = "") -> None:
        self.project = project
        self.ticket_id = ticket_id
        self.branch = branch
        context = f"project={project} ticket={ticket_id}"
        if branch:
            context = f"{context} branch={branch}"
        super().__init__(f"{message} ({context})")


class NoCommitsError(SyncError):
    """No candidate commits were found; usually the wrong directory or dev branch."""


class RemoteUnreachableError(SyncError):
    """The remote did not answer a reachability probe."""


class TargetBranchError(SyncError):
    """The target branch could not be used or converged with the remote."""


class RepositoryConfigError(SyncError):
    """The project has no usable repository configuration."""


@dataclass(frozen=True, slots=True)
class PushRequest:
    project: str
    dev_branch: str
    ticket_id: str
    target_branches: tuple[str, ...]
    planned_target_branches: tuple[str, ...] = ()
    commit_type: CommitType = CommitType.TRACKER
    commit_message: str = ""
    ticket_desc: str = DEFAULT_TICKET_DESC
    ignore_local_history: bool = False


@dataclass(frozen=True, slots=True)
class PushResult:
    """Outcome of synchronizing one target branch."""

    project: str
    dev_branch: str
    target_branch: str
    staging_branch: str
    review_url: str
    outcome: MergeOutcome | None
    hook_status: str
    commits: tuple[Commit, ...]

    @property
    def new_commit_count(self) -> int:
        return sum(1 for commit in self.commits if not commit.already_present)


@dataclass(frozen=True, slots=True)
class TargetFailure:
    target_branch: str
    error: SyncError


@dataclass(slots=True)
class PushReport:
    results: list[PushResult] = field(default_factory=list)
    failures: list[TargetFailure] = field(default_factory=list)
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures


@contextmanager
def preserve_checkout(scm: SourceControlAdapter) -> Iterator[str]:
    """Restore the branch checked out on entry, forcing the switch if a plain one fails."""

    original = scm.current_branch()
    try:
        yield original
    finally:
        try:
            scm.switch_branch(original)
        except GitEngineError:
            scm.switch_branch(original, force=True)


def converge_branch(scm: SourceControlAdapter, branch: str, *, fallback: str) -> None:
    """
    Make the local ``branch`` match its remote counterpart and leave it checked out.

    A missing local branch is created from the remote. A failed pull means local and
    remote diverged: local changes are abandoned by force-switching to ``fallback``,
    the local branch is deleted and recreated from the remote, then pulled again.
    Raises ``GitEngineError`` when the branch cannot be converged.
    """

    try:
        scm.switch_branch(branch)
    except GitEngineError:
        scm.create_branch_from_remote(branch)
        return
    try:
        scm.pull()
    except GitEngineError:
        scm.switch_branch(fallback, force=True)
        scm.delete_local_branch(branch)
        scm.create_branch_from_remote(branch)
        scm.pull()


def review_title(ticket: Ticket, commits: Sequence[Commit]) -> str:
    if not commits:
        return ticket.label
    first = commits[0].description.splitlines()[0] if commits[0].description else ticket.label
    if len(commits) == 1:
        return first
    return f"{first} (+{len(commits) - 1} more)"


class SyncEngine:
    """Push algorithm for one repository handle."""

    def __init__(
        self,
        settings: PatchflowSettings,
        repo: RepoSettings,
        store: TicketStore,
        scm: SourceControlAdapter,
        operator: Operator,
        *,
        reviews: RemoteReviewAdapter | None = None,
        hooks: HookRunner | None = None,
        accept_retry: RetryPolicy | None = None,
        merge_poll: PollPolicy | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings
        self._repo = repo
        self._store = store
        self._scm = scm
        self._operator = operator
        self._reviews = reviews
        self._hooks = hooks if hooks is not None else HookRunner(cwd=repo.path or None)
        self._accept_retry = accept_retry or RetryPolicy()
        self._merge_poll = merge_poll or PollPolicy()
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def build_request(
        self,
        *,
        ticket_id: str | None = None,
        ignore_local_history: bool = False,
    ) -> PushRequest:
        """Resolve dev branch, ticket identity, and targets from settings and the working copy."""

        patch = self._settings.patch
        try:
            dev_branch = patch.dev_branch or self._scm.current_branch()
            identity = resolve_ticket(
                ticket_id or patch.ticket_id or None,
                subject_of=self._scm.commit_subject,
                tracker_projects=patch.tracker_projects,
            )
        except GitEngineError as exc:
            raise RepositoryConfigError(
                f"cannot read the working copy: {exc}",
                project=self._repo.name,
                ticket_id=ticket_id or patch.ticket_id,
                branch=patch.dev_branch,
            ) from exc
        if identity is None:
            raise NoCommitsError(
                "no commit message to derive a ticket from",
                project=self._repo.name,
                ticket_id=ticket_id or "",
                branch=dev_branch,
            )
        targets = self._settings.target_branches()
        if not targets:
            raise TargetBranchError(
                "no target branches configured",
                project=self._repo.name,
                ticket_id=identity.ticket_id,
            )
        return PushRequest(
            project=self._repo.name,
            dev_branch=dev_branch,
            ticket_id=identity.ticket_id,
            target_branches=targets,
            planned_target_branches=self._settings.planned_target_branches(),
            commit_type=identity.commit_type,
            commit_message=identity.commit_message,
            ticket_desc=patch.ticket_desc,
            ignore_local_history=ignore_local_history,
        )

    def push(self, request: PushRequest) -> PushReport:
        if not self._repo.url:
            raise RepositoryConfigError(
                "cannot determine remote address",
                project=request.project,
                ticket_id=request.ticket_id,
            )

        existing = self._store.get(request.project, request.ticket_id)
        ticket = (
            Ticket.from_dict(existing.to_dict())
            if existing is not None
            else Ticket(
                project=request.project,
                ticket_id=request.ticket_id,
                commit_type=request.commit_type,
                commit_message=request.commit_message,
            )
        )
        ticket.add_targets(request.planned_target_branches or request.target_branches)

        report = PushReport()
        log = self._logger.bind(project=request.project, ticket_id=request.ticket_id)
        entered = False
        restore_error: GitEngineError | None = None
        try:
            with preserve_checkout(self._scm):
                entered = True
                for target in request.target_branches:
                    try:
                        result = self._sync_target(ticket, request, target)
                    except SyncError as exc:
                        log.warning("sync_target_failed", target=target, error=str(exc))
                        report.failures.append(TargetFailure(target_branch=target, error=exc))
                        continue
                    if result is not None:
                        report.results.append(result)
                self._scm.switch_branch(request.dev_branch)
        except UserAbort:
            log.info("push_aborted")
            return PushReport(aborted=True)
        except GitEngineError as exc:
            if not entered:
                raise RepositoryConfigError(
                    f"cannot determine the checked-out branch: {exc}",
                    project=request.project,
                    ticket_id=request.ticket_id,
                ) from exc
            log.warning("checkout_restore_failed", error=str(exc))
            restore_error = exc

        if not ticket.branches:
            if restore_error is not None:
                raise self._restore_failure(request, restore_error) from restore_error
            if report.failures:
                raise report.failures[0].error
            raise NoCommitsError(
                "no commits extracted; is this the right directory and dev branch?",
                project=request.project,
                ticket_id=request.ticket_id,
                branch=request.dev_branch,
            )
        self._store.upsert(ticket)
        self._store.save()
        if restore_error is not None:
            raise self._restore_failure(request, restore_error) from restore_error
        log.info(
            "push_finished",
            synced=[result.target_branch for result in report.results],
            failed=[failure.target_branch for failure in report.failures],
        )
        return report

    @staticmethod
    def _restore_failure(request: PushRequest, exc: GitEngineError) -> TargetBranchError:
        return TargetBranchError(
            f"could not restore the checked-out branch: {exc}",
            project=request.project,
            ticket_id=request.ticket_id,
            branch=request.dev_branch,
        )

    # ----- One target -----

    def _sync_target(
        self, ticket: Ticket, request: PushRequest, target: str
    ) -> PushResult | None:
        def fail(kind: type[SyncError], message: str) -> SyncError:
            return kind(message, project=request.project, ticket_id=ticket.ticket_id, branch=target)

        if request.dev_branch == target:
            raise fail(TargetBranchError, "dev branch and target branch must differ")
        if not self._scm.is_remote_reachable():
            raise fail(RemoteUnreachableError, "remote is unreachable")

        staging = staging_branch_name(
            ticket.ticket_id,
            target,
            ticket_desc=request.ticket_desc,
            template=self._settings.patch.staging_branch_template,
        )

        try:
            converge_branch(self._scm, target, fallback=request.dev_branch)
        except GitEngineError as exc:
            raise fail(TargetBranchError, f"cannot converge target branch: {exc}") from exc

        try:
            reused = self._prepare_staging(staging, target, request.dev_branch)
            self._scm.switch_branch(request.dev_branch)
            candidates = self._candidates(ticket, target, request.ignore_local_history)
        except GitEngineError as exc:
            raise fail(TargetBranchError, f"cannot prepare staging branch: {exc}") from exc

        if not candidates:
            raise fail(
                NoCommitsError,
                f"no commits extracted from {request.dev_branch}; wrong directory or branch?",
            )

        header = f"{request.project} {ticket.label} {request.dev_branch} => {target} ({staging})"
        if not self._operator.confirm_commits(header, candidates):
            raise UserAbort(f"declined commits for {target}")

        try:
            self._scm.switch_branch(staging)
            applied = self._replay(candidates, target)
        except GitEngineError as exc:
            raise fail(TargetBranchError, f"cherry-pick failed: {exc}") from exc

        new_commits = [commit for commit in applied if not commit.already_present]
        if not new_commits:
            self._logger.info("sync_target_noop", target=target, staging=staging)
            return None

        try:
            self._scm.push(staging, {PUSH_METADATA_KEY: target})
        except GitEngineError as exc:
            raise fail(TargetBranchError, f"push of {staging} failed: {exc}") from exc

        now = self._clock()
        branch = TicketBranch(
            staging_branch=staging,
            dev_branch=request.dev_branch,
            target_branch=target,
            commits=sort_commits(applied),
            created_at=now,
            updated_at=now,
        )
        review_url, outcome, hook_status = self._automate_review(ticket, branch)
        ticket.attach(branch)
        self._logger.info(
            "sync_target_pushed",
            target=target,
            staging=staging,
            reused_staging=reused,
            commits=len(applied),
            outcome=outcome.value if outcome is not None else "",
        )
        return PushResult(
            project=request.project,
            dev_branch=request.dev_branch,
            target_branch=target,
            staging_branch=staging,
            review_url=review_url,
            outcome=outcome,
            hook_status=hook_status,
            commits=tuple(branch.commits),
        )

    def _prepare_staging(self, staging: str, target: str, dev_branch: str) -> bool:
        """Reuse the staging branch when it rebases cleanly onto ``target``; else recreate it."""

        reused = False
        if staging != dev_branch and staging in self._scm.list_local_branches():
            self._scm.switch_branch(staging)
            try:
                self._scm.rebase(target)
            except GitEngineError as exc:
                self._logger.info("staging_rebase_failed", staging=staging, error=str(exc))
                self._scm.abort_rebase()
                self._scm.switch_branch(target)
                self._scm.delete_local_branch(staging)
            else:
                reused = True
            self._scm.switch_branch(target)
        if not reused:
            self._scm.create_branch(staging)
        return reused

    def _candidates(self, ticket: Ticket, target: str, ignore_local_history: bool) -> list[Commit]:
        commits = exclude_reverted(self._scm.commit_log(ticket.match_criterion))
        recorded = ticket.branch_for(target)
        if recorded is not None and not ignore_local_history:
            applied_ids = recorded.applied_commit_ids
            commits = [commit for commit in commits if commit.commit_id not in applied_ids]
        return sort_commits(commits)

    def _replay(self, candidates: Sequence[Commit], target: str) -> list[Commit]:
        applied: list[Commit] = []
        for commit in candidates:
            try:
                outcome = self._scm.cherry_pick(commit.commit_id)
            except CherryPickConflictError as exc:
                resolution = self._operator.resolve_conflict(commit, exc.detail)
                if resolution is ConflictResolution.ABORT:
                    raise UserAbort(f"stopped at {commit.commit_id[:10]}") from exc
                if resolution is ConflictResolution.SKIP:
                    self._scm.cherry_pick_skip()
                applied.append(replace(commit, already_present=False))
                continue
            if outcome is CherryPickOutcome.ALREADY_PRESENT:
                self._logger.info(
                    "commit_already_on_target", target=target, commit=commit.commit_id[:10]
                )
            applied.append(
                replace(commit, already_present=outcome is CherryPickOutcome.ALREADY_PRESENT)
            )
        return applied

    # ----- Reviews -----

    def _automate_review(
        self, ticket: Ticket, branch: TicketBranch
    ) -> tuple[str, MergeOutcome | None, str]:
        review_url = new_review_url(self._repo.url, branch.staging_branch, branch.target_branch)
        if not self._repo.create_review:
            return review_url, None, ""
        if self._reviews is None:
            self._logger.warning(
                "review_host_unavailable",
                target=branch.target_branch,
                hint="configure a review host and token to open reviews automatically",
            )
            return review_url, None, ""

        title = review_title(ticket, branch.commits)
        try:
            review = self._reviews.find_open_review(branch.staging_branch, branch.target_branch)
            if review is None:
                review = self._reviews.create_review(
                    title,
                    branch.staging_branch,
                    branch.target_branch,
                    squash=True,
                    remove_source_branch=True,
                )
        except ReviewClientError as exc:
            self._logger.warning("review_open_failed", target=branch.target_branch, error=str(exc))
            return review_url, None, ""

        branch.reviews.append(
            ReviewRef(
                title=review.title or title,
                review_id=review.review_id,
                web_url=review.web_url,
            )
        )
        review_url = review.web_url or review_url
        if not self._repo.auto_merges(branch.target_branch):
            return review_url, None, ""

        outcome = self._accept(review.review_id)
        hook_status = ""
        commands = self._repo.hooks_for(branch.target_branch)
        run_hooks = bool(commands) and self._settings.patch.run_post_merge_hooks
        if outcome is not MergeOutcome.FAIL and run_hooks:
            if self._wait_merged(review.review_id):
                results = self._hooks.run(commands)
                hook_status = "ok" if hooks_succeeded(results) else "failed"
                outcome = MergeOutcome.OK
            else:
                hook_status = "not-merged"
        return review_url, outcome, hook_status

    def _accept(self, review_id: int) -> MergeOutcome:
        """Direct accept, then fixed-delay retries, then merge-when-pipeline-succeeds retries."""

        assert self._reviews is not None
        reviews = self._reviews

        def note(attempt: int, exc: Exception) -> None:
            self._logger.debug(
                "review_accept_retry", review_id=review_id, attempt=attempt, error=str(exc)
            )

        try:
            reviews.accept_review(review_id)
        except ReviewClientError as exc:
            self._logger.debug("review_accept_failed", review_id=review_id, error=str(exc))
        else:
            return MergeOutcome.OK

        if self._accept_retry.run(
            lambda: reviews.accept_review(review_id),
            retry_on=(ReviewClientError,),
            on_failure=note,
        ):
            return MergeOutcome.OK
        if self._accept_retry.run(
            lambda: reviews.accept_review(review_id, merge_when_pipeline_succeeds=True),
            retry_on=(ReviewClientError,),
            on_failure=note,
        ):
            return MergeOutcome.WAIT_PIPELINE
        self._logger.warning("review_accept_gave_up", review_id=review_id)
        return MergeOutcome.FAIL

    def _wait_merged(self, review_id: int) -> bool:
        assert self._reviews is not None
        reviews = self._reviews
        try:
            return self._merge_poll.wait_for(lambda: reviews.get_review(review_id).merged)
        except ReviewClientError as exc:
            self._logger.info("review_poll_failed", review_id=review_id, error=str(exc))
            return False


__all__ = [
    "NoCommitsError",
    "PushReport",
    "PushRequest",
    "PushResult",
    "RemoteUnreachableError",
    "RepositoryConfigError",
    "SyncEngine",
    "SyncError",
    "TargetBranchError",
    "TargetFailure",
    "converge_branch",
    "preserve_checkout",
    "review_title",
]
