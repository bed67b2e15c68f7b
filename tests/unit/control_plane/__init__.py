"""In-memory fakes and builders shared by the control plane tests."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

from patchflow.config.schema import PatchflowSettings, PatchSettings, RepoSettings
from patchflow.control_plane.operator import ConflictResolution, UserAbort
from patchflow.control_plane.retry import PollPolicy, RetryPolicy, no_sleep
from patchflow.control_plane.sync_engine import SyncEngine
from patchflow.domain.models import Commit, Ticket, TicketBranch
from patchflow.integration_plane.git_engine import (
    CherryPickOutcome,
    GitCommandError,
    GitEngineError,
    ProtectedBranchPolicy,
)
from patchflow.integration_plane.hooks import HookResult
from patchflow.integration_plane.review_client import Review, ReviewClientError
from patchflow.persistence.ticket_store import TicketStore

BASE_TIME = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)
REPO_URL = "https://gitlab.example.com/team/svc"


def make_commit(commit_id: str, description: str, minutes: int) -> Commit:
    return Commit(
        commit_id=commit_id,
        description=description,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
    )


def git_error(stderr: str, *command: str) -> GitCommandError:
    return GitCommandError(command=("git", *command), returncode=1, stdout="", stderr=stderr)


class FakeScm:
    """Branch-level model of a working copy; records every mutating call."""

    def __init__(
        self,
        *,
        current: str = "feature/x",
        local: Iterable[str] = ("master",),
        remote: Iterable[str] = ("master", "qa", "staging"),
        dev_commits: Sequence[Commit] = (),
    ) -> None:
        self.current = current
        self.local = [current, *(name for name in local if name != current)]
        self.remote = set(remote)
        self.logs: dict[str, list[Commit]] = {current: list(dev_commits)}
        self.remote_logs: dict[str, list[Commit]] = {}
        self.outcomes: dict[str, CherryPickOutcome | GitEngineError] = {}
        self.reachable = True
        self.pull_failures: dict[str, int] = {}
        self.rebase_fails = False
        self.push_error: GitEngineError | None = None
        self.creation_times: dict[str, datetime] = {}
        self.remote_delete_errors: dict[str, GitEngineError] = {}
        self.local_delete_errors: dict[str, GitEngineError] = {}
        self.policy = ProtectedBranchPolicy()
        self.calls: list[tuple[str, ...]] = []
        self.picked: list[tuple[str, str]] = []
        self.pushes: list[tuple[str, dict[str, str]]] = []
        self.skips = 0

    def list_local_branches(self) -> list[str]:
        return list(self.local)

    def list_remote_branches(self) -> list[str]:
        return sorted(self.remote)

    def current_branch(self) -> str:
        return self.current

    def switch_branch(self, name: str, *, force: bool = False) -> None:
        self.calls.append(("switch_branch", name, "force" if force else ""))
        if name not in self.local:
            raise git_error(f"error: pathspec '{name}' did not match", "checkout", name)
        self.current = name

    def create_branch(self, name: str) -> None:
        self.calls.append(("create_branch", name))
        if name in self.local:
            raise git_error(f"fatal: a branch named '{name}' already exists", "checkout", "-b")
        self.local.append(name)
        self.logs[name] = list(self.logs.get(self.current, []))
        self.current = name

    def create_branch_from_remote(self, name: str) -> None:
        self.calls.append(("create_branch_from_remote", name))
        if name not in self.remote:
            raise git_error(f"fatal: 'origin/{name}' is not a commit", "checkout", "-b", name)
        self.local.append(name)
        self.logs[name] = list(self.remote_logs.get(name, []))
        self.current = name

    def delete_local_branch(self, name: str) -> None:
        self.policy.check_local_delete(name)
        self.calls.append(("delete_local_branch", name))
        if name in self.local_delete_errors:
            raise self.local_delete_errors[name]
        if name not in self.local:
            raise git_error(f"error: branch '{name}' not found.", "branch", "-D", name)
        self.local.remove(name)
        self.logs.pop(name, None)

    def delete_remote_branch(self, name: str) -> None:
        self.policy.check_remote_delete(name)
        self.calls.append(("delete_remote_branch", name))
        if name in self.remote_delete_errors:
            raise self.remote_delete_errors[name]
        if name not in self.remote:
            raise git_error(
                f"error: unable to delete '{name}': remote ref does not exist", "push"
            )
        self.remote.remove(name)

    def rebase(self, onto_branch: str) -> None:
        self.calls.append(("rebase", onto_branch))
        if self.rebase_fails:
            raise git_error("CONFLICT (content): Merge conflict", "rebase", onto_branch)

    def abort_rebase(self) -> None:
        self.calls.append(("abort_rebase",))

    def pull(self) -> None:
        self.calls.append(("pull", self.current))
        remaining = self.pull_failures.get(self.current, 0)
        if remaining:
            self.pull_failures[self.current] = remaining - 1
            raise git_error("fatal: Not possible to fast-forward, aborting.", "pull")
        if self.current in self.remote_logs:
            self.logs[self.current] = list(self.remote_logs[self.current])

    def push(self, local_branch: str, metadata: Mapping[str, str]) -> None:
        if self.push_error is not None:
            raise self.push_error
        self.pushes.append((local_branch, dict(metadata)))
        self.remote.add(local_branch)

    def cherry_pick(self, commit_id: str) -> CherryPickOutcome:
        self.picked.append((self.current, commit_id))
        outcome = self.outcomes.get(commit_id, CherryPickOutcome.APPLIED)
        if isinstance(outcome, GitEngineError):
            raise outcome
        return outcome

    def cherry_pick_skip(self) -> None:
        self.skips += 1

    def commit_log(self, criterion: str) -> list[Commit]:
        return [c for c in self.logs.get(self.current, []) if criterion in c.description]

    def commit_subject(self, commit_id: str | None = None) -> str:
        if commit_id is None:
            commits = self.logs.get(self.current, [])
            return max(commits, key=lambda c: c.timestamp).description if commits else ""
        for commits in self.logs.values():
            for commit in commits:
                if commit.commit_id == commit_id:
                    return commit.description
        raise git_error(f"fatal: bad object {commit_id}", "log")

    def branch_creation_time(self, name: str) -> datetime:
        if name not in self.creation_times:
            raise git_error(f"fatal: ambiguous argument '{name}'", "log")
        return self.creation_times[name]

    def is_remote_reachable(self) -> bool:
        return self.reachable


class FakeReviews:
    """Review host double; accept failures are consumed in call order."""

    def __init__(
        self,
        *,
        accept_failures: int = 0,
        pipeline_failures: int = 0,
        merged_after: int | None = None,
    ) -> None:
        self.reviews: dict[int, Review] = {}
        self.created: list[dict[str, object]] = []
        self.accept_calls: list[tuple[int, bool]] = []
        self.accept_failures = accept_failures
        self.pipeline_failures = pipeline_failures
        self.merged_after = merged_after
        self.polls = 0
        self._next_id = 1

    def add_open(self, source: str, target: str, *, title: str = "existing") -> Review:
        review = Review(
            review_id=self._next_id,
            title=title,
            web_url=f"{REPO_URL}/-/merge_requests/{self._next_id}",
            state="opened",
            source_branch=source,
            target_branch=target,
        )
        self.reviews[review.review_id] = review
        self._next_id += 1
        return review

    def find_open_review(self, source_branch: str, target_branch: str) -> Review | None:
        for review in self.reviews.values():
            if (review.source_branch, review.target_branch) == (source_branch, target_branch):
                return review
        return None

    def list_open_reviews(self, source_branch: str) -> list[Review]:
        return [r for r in self.reviews.values() if r.source_branch == source_branch]

    def create_review(
        self,
        title: str,
        source_branch: str,
        target_branch: str,
        *,
        squash: bool = True,
        remove_source_branch: bool = True,
    ) -> Review:
        self.created.append(
            {
                "title": title,
                "source": source_branch,
                "target": target_branch,
                "squash": squash,
                "remove_source_branch": remove_source_branch,
            }
        )
        return self.add_open(source_branch, target_branch, title=title)

    def accept_review(self, review_id: int, *, merge_when_pipeline_succeeds: bool = False) -> None:
        self.accept_calls.append((review_id, merge_when_pipeline_succeeds))
        if merge_when_pipeline_succeeds:
            if self.pipeline_failures:
                self.pipeline_failures -= 1
                raise ReviewClientError("pipeline merge refused", status_code=405)
            return
        if self.accept_failures:
            self.accept_failures -= 1
            raise ReviewClientError("merge refused", status_code=405)

    def get_review(self, review_id: int) -> Review:
        self.polls += 1
        review = self.reviews[review_id]
        merged = self.merged_after is not None and self.polls >= self.merged_after
        return Review(
            review_id=review.review_id,
            title=review.title,
            web_url=review.web_url,
            state="merged" if merged else "opened",
            source_branch=review.source_branch,
            target_branch=review.target_branch,
        )


class ScriptedOperator:
    def __init__(
        self,
        *,
        accept_commits: bool = True,
        conflicts: Sequence[ConflictResolution] = (),
        answers: Sequence[bool] = (),
    ) -> None:
        self.accept_commits = accept_commits
        self.conflicts = list(conflicts)
        self.answers = list(answers)
        self.headers: list[str] = []
        self.shown: list[list[str]] = []
        self.conflicts_seen: list[str] = []

    def confirm_commits(self, header: str, commits: Sequence[Commit]) -> bool:
        self.headers.append(header)
        self.shown.append([commit.commit_id for commit in commits])
        return self.accept_commits

    def resolve_conflict(self, commit: Commit, detail: str) -> ConflictResolution:
        self.conflicts_seen.append(commit.commit_id)
        if not self.conflicts:
            raise UserAbort("no scripted conflict answer")
        return self.conflicts.pop(0)

    def confirm(self, question: str) -> bool:
        return self.answers.pop(0) if self.answers else False


class RecordingHooks:
    def __init__(self, *, returncode: int = 0) -> None:
        self.returncode = returncode
        self.runs: list[list[str]] = []

    def run(self, commands: Sequence[str]) -> list[HookResult]:
        self.runs.append(list(commands))
        return [HookResult(command=c, returncode=self.returncode, output="") for c in commands]


def make_branch(
    target: str,
    commits: Sequence[Commit] = (),
    *,
    ticket_id: str = "ABC-100",
    dev_branch: str = "feature/x",
    merged: bool = False,
    staging_deleted: bool = False,
) -> TicketBranch:
    return TicketBranch(
        staging_branch=f"{ticket_id}_x_{target}",
        dev_branch=dev_branch,
        target_branch=target,
        merged=merged,
        staging_deleted=staging_deleted,
        commits=list(commits),
        created_at=BASE_TIME,
        updated_at=BASE_TIME,
    )


def seed_ticket(
    store: TicketStore,
    *branches: TicketBranch,
    project: str = "svc",
    ticket_id: str = "ABC-100",
) -> Ticket:
    ticket = Ticket(
        project=project,
        ticket_id=ticket_id,
        target_branches=[branch.target_branch for branch in branches],
        branches=list(branches),
        created_at=BASE_TIME,
        updated_at=BASE_TIME,
    )
    store.upsert(ticket)
    store.save()
    return ticket


def make_repo(tmp_path: Path, **changes: object) -> RepoSettings:
    fields: dict[str, object] = {
        "name": "svc",
        "url": REPO_URL,
        "path": str(tmp_path / "svc"),
        "create_review": False,
    }
    fields.update(changes)
    return RepoSettings(**fields)  # type: ignore[arg-type]


def make_settings(
    tmp_path: Path,
    repo: RepoSettings | None = None,
    **patch: object,
) -> PatchflowSettings:
    patch_fields: dict[str, object] = {"target_branches": ("qa", "staging")}
    patch_fields.update(patch)
    repo = repo or make_repo(tmp_path)
    return PatchflowSettings(
        home_dir=tmp_path / "home",
        repos={repo.name: repo},
        patch=PatchSettings(**patch_fields),  # type: ignore[arg-type]
    )


def make_store(tmp_path: Path) -> TicketStore:
    return TicketStore.open(tmp_path / "home" / "patchflow.sqlite3")


def make_engine(
    settings: PatchflowSettings,
    store: TicketStore,
    scm: FakeScm,
    operator: ScriptedOperator,
    *,
    reviews: FakeReviews | None = None,
    hooks: RecordingHooks | None = None,
    poll_attempts: int = 5,
) -> SyncEngine:
    repo = next(iter(settings.repos.values()))
    return SyncEngine(
        settings,
        repo,
        store,
        scm,
        operator,
        reviews=reviews,
        hooks=hooks,  # type: ignore[arg-type]
        accept_retry=RetryPolicy(sleep=no_sleep),
        merge_poll=PollPolicy(max_attempts=poll_attempts, sleep=no_sleep),
    )


__all__ = [
    "BASE_TIME",
    "REPO_URL",
    "FakeReviews",
    "FakeScm",
    "RecordingHooks",
    "ScriptedOperator",
    "git_error",
    "make_branch",
    "make_commit",
    "make_engine",
    "make_repo",
    "make_settings",
    "make_store",
    "seed_ticket",
]
