"""
patchflow — CLI output rendering

Purpose
- Thin rendering layer over a rich console for headings, warnings, and the result
  tables of each command.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.

Functional requirements
- Table helpers accept the control-plane result types directly.
- Empty inputs print nothing rather than an empty table.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from patchflow.control_plane.sweeper import SweepAction

if TYPE_CHECKING:
    from collections.abc import Sequence

    from patchflow.control_plane.reconciler import MergeCheck
    from patchflow.control_plane.sweeper import SweepEntry
    from patchflow.control_plane.sync_engine import PushResult, TargetFailure
    from patchflow.control_plane.tickets import StatusRow


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    return not os.environ.get("NO_COLOR", "")


class CLIRenderer:
    """CLI output renderer.

    Writes to a rich console; color is dropped under ``NO_COLOR`` or ``--no-color``.
    """

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        console: Console | None = None,
    ) -> None:
        self.verbose = verbose
        self.console = console or Console(
            no_color=not _color_allowed(no_color), highlight=False, soft_wrap=True
        )

    def text(self, line: str) -> None:
        self.console.print(line, markup=False, emoji=False)

    def kv(self, key: str, value: object) -> None:
        self.console.print(f"{key}: {value}", markup=False, emoji=False)

    def warning(self, text: str) -> None:
        self.console.print(f"[yellow]warning[/]: {escape(text)}", emoji=False)

    def error(self, text: str) -> None:
        self.console.print(f"[bold red]error[/]: {escape(text)}", emoji=False)

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a table; nothing is printed for zero rows."""

        if not rows:
            return
        table = Table(title=Text(title) if title else None, show_lines=False)
        for header in headers:
            table.add_column(header, overflow="fold")
        for row in rows:
            table.add_row(*(Text(str(cell)) for cell in row))
        self.console.print(table)

    # ----- Command results -----

    def push_results(self, results: Sequence[PushResult]) -> None:
        self.table(
            ("project", "dev branch", "target", "staging branch", "commits", "merge", "review"),
            [
                (
                    result.project,
                    result.dev_branch,
                    result.target_branch,
                    result.staging_branch,
                    str(result.new_commit_count),
                    _merge_cell(result),
                    result.review_url,
                )
                for result in results
            ],
            title="Synchronized branches",
        )

    def push_failures(self, failures: Sequence[TargetFailure]) -> None:
        for failure in failures:
            self.error(f"{failure.target_branch}: {failure.error}")

    def status_rows(self, rows: Sequence[StatusRow]) -> None:
        self.table(
            ("project", "ticket", "dev branch", "target", "staging branch", "status", "review"),
            [
                (
                    row.project,
                    row.label,
                    row.dev_branch,
                    row.target_branch,
                    row.staging_branch,
                    row.status.value,
                    row.review_url,
                )
                for row in rows
            ],
        )

    def merge_checks(self, checks: Sequence[MergeCheck]) -> None:
        self.table(
            ("project", "ticket", "target", "staging branch", "merged"),
            [
                (
                    check.project,
                    check.ticket_id,
                    check.target_branch,
                    check.staging_branch,
                    "yes" if check.merged else ("error: " + check.error if check.error else "no"),
                )
                for check in checks
            ],
        )

    def sweep_entries(self, entries: Sequence[SweepEntry]) -> None:
        shown = (
            entries
            if self.verbose
            else [entry for entry in entries if entry.action is SweepAction.DELETED]
        )
        self.table(
            ("project", "ticket", "staging branch", "action"),
            [
                (entry.project, entry.ticket_id, entry.staging_branch, entry.action.value)
                for entry in shown
            ],
        )


def _merge_cell(result: PushResult) -> str:
    if result.outcome is None:
        return ""
    if result.hook_status:
        return f"{result.outcome.value} (hooks {result.hook_status})"
    return result.outcome.value


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
