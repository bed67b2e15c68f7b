"""Real-git helpers shared by the integration tests."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from patchflow.control_plane.operator import ConflictResolution
from patchflow.domain.models import Commit


def run_git(
    cwd: Path, *args: str, check: bool = True, env_extra: Mapping[str, str] | None = None
) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    env.update(env_extra or {})
    completed = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        text=True,
        capture_output=True,
        check=False,
    )
    if check and completed.returncode != 0:
        raise AssertionError(
            f"git {' '.join(args)} failed\nstdout:\n{completed.stdout}\n"
            f"stderr:\n{completed.stderr}"
        )
    return completed


def commit_file(worktree: Path, rel_path: str, content: str, message: str, *, minute: int) -> str:
    when = f"2026-01-05T09:{minute:02d}:00+00:00"
    path = worktree / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    run_git(worktree, "add", "--all")
    run_git(
        worktree,
        "commit",
        "-m",
        message,
        env_extra={"GIT_AUTHOR_DATE": when, "GIT_COMMITTER_DATE": when},
    )
    return run_git(worktree, "rev-parse", "HEAD").stdout.strip()


def remote_heads(remote: Path) -> list[str]:
    return run_git(remote, "branch", "--format=%(refname:short)").stdout.split()


class AcceptingOperator:
    """Approves every commit list and aborts on conflicts."""

    def __init__(self) -> None:
        self.headers: list[str] = []

    def confirm_commits(self, header: str, commits: Sequence[Commit]) -> bool:
        self.headers.append(header)
        return True

    def resolve_conflict(self, commit: Commit, detail: str) -> ConflictResolution:
        return ConflictResolution.ABORT

    def confirm(self, question: str) -> bool:
        return True


__all__ = ["AcceptingOperator", "commit_file", "remote_heads", "run_git"]
