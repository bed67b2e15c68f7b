"""
patchflow — operator interaction

Purpose
- The two designed suspension points of a push (commit-list confirmation and
  cherry-pick conflict resolution) plus a generic yes/no, behind one injectable
  capability.

Functional requirements
- Declining aborts through ``UserAbort``, which callers treat as a silent stop and
  never as a failure.
- ``TerminalOperator`` re-prompts on unrecognized input and never times out.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from patchflow.domain.models import Commit


class UserAbort(Exception):
    """The operator explicitly declined; not an error."""


class ConflictResolution(StrEnum):
    ACCEPT = "accept"
    SKIP = "skip"
    ABORT = "abort"


class Operator(Protocol):
    def confirm_commits(self, header: str, commits: Sequence[Commit]) -> bool: ...

    def resolve_conflict(self, commit: Commit, detail: str) -> ConflictResolution: ...

    def confirm(self, question: str) -> bool: ...


class TerminalOperator:
    """Prompts on a rich console; answers are single letters."""

    def __init__(
        self,
        console: Console | None = None,
        *,
        read_line: Callable[[str], str] | None = None,
    ) -> None:
        self.console = console or Console()
        self._read_line = read_line or self._console_input

    def confirm_commits(self, header: str, commits: Sequence[Commit]) -> bool:
        table = Table(title=Text(header), show_lines=False)
        for column in ("commit", "description", "time"):
            table.add_column(column)
        for commit in commits:
            table.add_row(
                commit.commit_id[:10],
                Text(commit.description),
                commit.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            )
        self.console.print(table)
        return self.confirm(
            "Confirm these commits; they are cherry-picked oldest first. Continue?"
        )

    def resolve_conflict(self, commit: Commit, detail: str) -> ConflictResolution:
        self.console.print(
            f"[bold red]cherry-pick conflict[/]: {escape(commit.description)} "
            f"({commit.commit_id[:10]}, {commit.timestamp:%Y-%m-%d %H:%M:%S})",
            emoji=False,
        )
        if detail.strip():
            self.console.print(detail.strip(), markup=False, highlight=False)
        choices = {
            "y": ConflictResolution.ACCEPT,
            "s": ConflictResolution.SKIP,
            "n": ConflictResolution.ABORT,
        }
        while True:
            answer = self._ask(
                "Resolve the conflict and commit, then [y] continue, "
                "[s] skip this commit, [n] stop: "
            )
            if answer in choices:
                return choices[answer]

    def confirm(self, question: str) -> bool:
        while True:
            answer = self._ask(f"{question} [y/n]: ")
            if answer == "y":
                return True
            if answer == "n":
                return False

    def _console_input(self, prompt: str) -> str:
        return self.console.input(escape(prompt))

    def _ask(self, prompt: str) -> str:
        try:
            raw = self._read_line(prompt)
        except EOFError as exc:
            raise UserAbort("input closed") from exc
        return raw.strip().lower()[:1]


__all__ = ["ConflictResolution", "Operator", "TerminalOperator", "UserAbort"]
