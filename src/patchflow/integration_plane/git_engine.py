"""Git CLI adapter implementing the source-control capabilities the sync engine consumes."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

from patchflow.constants import (
    DEFAULT_PROTECTED_BRANCH_PREFIXES,
    DEFAULT_REMOTE_NAME,
    PRIMARY_TRUNK_BRANCH,
    PROTECTED_BRANCHES,
    REMOTE_PROBE_TIMEOUT_SECONDS,
)
from patchflow.domain.models import Commit, parse_iso8601
from patchflow.integration_plane.review_client import ReviewClientError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from patchflow.integration_plane.review_client import RemoteReviewAdapter

logger = logging.getLogger(__name__)

# Unit separator keeps subjects containing "|" intact.
_LOG_FIELD_SEPARATOR: Final[str] = "\x1f"
_LOG_FORMAT: Final[str] = f"--pretty=format:%H{_LOG_FIELD_SEPARATOR}%s{_LOG_FIELD_SEPARATOR}%cI"
_EMPTY_CHERRY_PICK_MARKER: Final[str] = "--allow-empty"


class GitEngineError(RuntimeError):
    """Base error for git engine failures."""


class ProtectedBranchError(GitEngineError):
    """Raised when a deletion targets a protected branch name."""


class OpenReviewBlocksDeletionError(GitEngineError):
    """Raised when open reviews still use the branch as their source."""

    def __init__(self, branch: str, review_urls: Sequence[str]) -> None:
        self.branch = branch
        self.review_urls = tuple(review_urls)
        super().__init__(
            f"branch {branch!r} is the source of {len(self.review_urls)} open review(s)"
        )


class GitCommandError(GitEngineError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class CherryPickConflictError(GitEngineError):
    """Raised when a cherry-pick stops on a conflict that needs the operator."""

    def __init__(self, commit_id: str, detail: str) -> None:
        self.commit_id = commit_id
        self.detail = detail
        super().__init__(f"cherry-pick of {commit_id[:10]} stopped: {detail.strip()}")


class CherryPickOutcome(StrEnum):
    APPLIED = "applied"
    ALREADY_PRESENT = "already-present"


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Normalized subprocess result for deterministic git wrapper behavior."""

    command: tuple[str, ...]
    cwd: str
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True, slots=True)
class ProtectedBranchPolicy:
    """Names that remote deletion must refuse before any git or review call."""

    names: frozenset[str] = PROTECTED_BRANCHES
    prefixes: tuple[str, ...] = DEFAULT_PROTECTED_BRANCH_PREFIXES

    def is_protected(self, branch: str) -> bool:
        if not branch.strip():
            return True
        if branch in self.names:
            return True
        return any(prefix and branch.startswith(prefix) for prefix in self.prefixes)

    def check_remote_delete(self, branch: str) -> None:
        if self.is_protected(branch):
            raise ProtectedBranchError(f"refusing to delete protected remote branch {branch!r}")

    @staticmethod
    def check_local_delete(branch: str) -> None:
        if not branch.strip() or branch == PRIMARY_TRUNK_BRANCH:
            raise ProtectedBranchError(f"refusing to delete local branch {branch!r}")


class SourceControlAdapter(Protocol):
    """Working-copy operations used by the sync engine, reconciler, and sweeper."""

    def list_local_branches(self) -> list[str]: ...

    def list_remote_branches(self) -> list[str]: ...

    def current_branch(self) -> str: ...

    def switch_branch(self, name: str, *, force: bool = False) -> None: ...

    def create_branch(self, name: str) -> None: ...

    def create_branch_from_remote(self, name: str) -> None: ...

    def delete_local_branch(self, name: str) -> None: ...

    def delete_remote_branch(self, name: str) -> None: ...

    def rebase(self, onto_branch: str) -> None: ...

    def abort_rebase(self) -> None: ...

    def pull(self) -> None: ...

    def push(self, local_branch: str, metadata: Mapping[str, str]) -> None: ...

    def cherry_pick(self, commit_id: str) -> CherryPickOutcome: ...

    def cherry_pick_skip(self) -> None: ...

    def commit_log(self, criterion: str) -> list[Commit]: ...

    def commit_subject(self, commit_id: str | None = None) -> str: ...

    def branch_creation_time(self, name: str) -> datetime: ...

    def is_remote_reachable(self) -> bool: ...


class GitEngine:
    """Subprocess wrapper around the git CLI for one working copy."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        remote_name: str = DEFAULT_REMOTE_NAME,
        policy: ProtectedBranchPolicy | None = None,
        review_adapter: RemoteReviewAdapter | None = None,
        env_overrides: Mapping[str, str] | None = None,
        probe_timeout: float = REMOTE_PROBE_TIMEOUT_SECONDS,
    ) -> None:
        self.repo_path = Path(repo_path).expanduser().resolve()
        self.remote_name = remote_name
        self.policy = policy or ProtectedBranchPolicy()
        self.review_adapter = review_adapter
        self.probe_timeout = probe_timeout
        self._env_overrides = dict(env_overrides or {})

    # ----- Branches -----

    def list_local_branches(self) -> list[str]:
        result = self._run_git(["branch", "--format=%(refname:short)"])
        return _nonempty_lines(result.stdout)

    def list_remote_branches(self) -> list[str]:
        result = self._run_git(["branch", "-r", "--format=%(refname:short)"])
        prefix = f"{self.remote_name}/"
        branches: list[str] = []
        for line in _nonempty_lines(result.stdout):
            if not line.startswith(prefix):
                continue
            name = line.removeprefix(prefix)
            if name != "HEAD":
                branches.append(name)
        return branches

    def current_branch(self) -> str:
        branch = self._run_git(["branch", "--show-current"]).stdout.strip()
        if not branch:
            raise GitEngineError("Detached HEAD is not supported for this operation.")
        return branch

    def has_local_branch(self, name: str) -> bool:
        ref = f"refs/heads/{name}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def switch_branch(self, name: str, *, force: bool = False) -> None:
        args = ["checkout", "-f", name] if force else ["checkout", name]
        self._run_git(args)

    def create_branch(self, name: str) -> None:
        self._run_git(["checkout", "-b", name])

    def create_branch_from_remote(self, name: str) -> None:
        self._run_git(["checkout", "-b", name, "--track", f"{self.remote_name}/{name}"])

    def delete_local_branch(self, name: str) -> None:
        self.policy.check_local_delete(name)
        self._run_git(["branch", "-D", name])

    def delete_remote_branch(self, name: str) -> None:
        self.policy.check_remote_delete(name)
        if self.review_adapter is not None:
            try:
                open_reviews = self.review_adapter.list_open_reviews(name)
            except ReviewClientError as exc:
                logger.warning("cannot list open reviews for %s: %s", name, exc)
                open_reviews = []
            if open_reviews:
                raise OpenReviewBlocksDeletionError(name, [r.web_url for r in open_reviews])
        self._run_git(["push", self.remote_name, "--delete", name])

    def branch_creation_time(self, name: str) -> datetime:
        """Timestamp of the first commit reachable from ``name``."""

        result = self._run_git(["log", "--pretty=format:%aI", "--reverse", name, "--"])
        for line in _nonempty_lines(result.stdout):
            return parse_iso8601(line)
        raise GitEngineError(f"no commit found for branch {name!r}")

    # ----- History rewriting -----

    def rebase(self, onto_branch: str) -> None:
        self._run_git(["rebase", onto_branch])

    def abort_rebase(self) -> None:
        self._run_git(["rebase", "--abort"])

    def cherry_pick(self, commit_id: str) -> CherryPickOutcome:
        if not commit_id.strip():
            raise GitEngineError("cherry-pick needs a commit id")
        result = self._run_git(["cherry-pick", commit_id], check=False)
        if result.returncode == 0:
            return CherryPickOutcome.APPLIED
        detail = f"{result.stderr}\n{result.stdout}"
        if _EMPTY_CHERRY_PICK_MARKER in detail:
            self.cherry_pick_skip()
            return CherryPickOutcome.ALREADY_PRESENT
        raise CherryPickConflictError(commit_id, result.stderr or result.stdout)

    def cherry_pick_skip(self) -> None:
        self._run_git(["cherry-pick", "--skip"])

    # ----- Remote -----

    def pull(self) -> None:
        self._run_git(["pull"])

    def push(self, local_branch: str, metadata: Mapping[str, str]) -> None:
        args = ["push", "-f", "--set-upstream", self.remote_name, local_branch]
        for key in sorted(metadata):
            args.extend(["-o", f"{key}={metadata[key]}"])
        self._run_git(args)

    def is_remote_reachable(self) -> bool:
        try:
            result = self._run_git(
                ["ls-remote", "--heads", self.remote_name],
                check=False,
                timeout=self.probe_timeout,
            )
        except subprocess.TimeoutExpired:
            logger.debug("ls-remote timed out in %s", self.repo_path)
            return False
        return result.returncode == 0

    # ----- Log queries -----

    def commit_log(self, criterion: str) -> list[Commit]:
        """
        Non-merge commits on HEAD whose message contains ``criterion``, oldest first.

        Topological order is kept for commits sharing a committer second, so a stable
        sort by timestamp still replays parents before children.
        """

        result = self._run_git(
            [
                "log",
                _LOG_FORMAT,
                "--reverse",
                "--topo-order",
                "--no-merges",
                "--fixed-strings",
                f"--grep={criterion}",
            ]
        )
        commits: list[Commit] = []
        for line in _nonempty_lines(result.stdout):
            parts = line.split(_LOG_FIELD_SEPARATOR)
            if len(parts) != 3:
                raise GitEngineError(f"unexpected git log line: {line!r}")
            commit_id, subject, committed = parts
            commits.append(
                Commit(
                    commit_id=commit_id,
                    description=subject,
                    timestamp=parse_iso8601(committed),
                )
            )
        return commits

    def commit_subject(self, commit_id: str | None = None) -> str:
        args = ["log", "--pretty=format:%s", "-n", "1"]
        if commit_id:
            args.append(commit_id)
        return self._run_git(args).stdout.strip()

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        input_text: str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        command = ("git", *args)
        run_cwd = (cwd if cwd is not None else self.repo_path).resolve()
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        completed = subprocess.run(
            command,
            cwd=run_cwd,
            env=env,
            text=True,
            capture_output=True,
            input=input_text,
            timeout=timeout,
            check=False,
        )

        result = CommandResult(
            command=command,
            cwd=run_cwd.as_posix(),
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )

        if check and result.returncode != 0:
            logger.debug(
                "git failed (%d): %s\nstdout: %s\nstderr: %s",
                result.returncode,
                " ".join(result.command),
                result.stdout.strip(),
                result.stderr.strip(),
            )
            raise GitCommandError(
                command=result.command,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        return result


def _nonempty_lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


__all__ = [
    "CherryPickConflictError",
    "CherryPickOutcome",
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "OpenReviewBlocksDeletionError",
    "ProtectedBranchError",
    "ProtectedBranchPolicy",
    "SourceControlAdapter",
]
