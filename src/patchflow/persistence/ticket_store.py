"""
patchflow — ticket state store

Purpose
- Own the in-memory ``Ticket`` collection for one process run and persist it.

Functional requirements
- ``save()`` is a bulk replace: every table is cleared and rewritten inside one
  transaction, so a failed save leaves the previous state untouched.
- Reloading reproduces an equal collection, including list order.
- On first open of an empty store, a legacy ``jira.json`` export is imported.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Iterable, Iterator, Mapping, Sequence
from datetime import datetime
from pathlib import Path

from patchflow.domain.models import (
    Commit,
    CommitType,
    LinkedIssue,
    ReviewRef,
    Ticket,
    TicketBranch,
    datetime_to_iso8601z,
    parse_iso8601,
    utc_now,
)
from patchflow.persistence.state_db import RowValue, StateDB, StateDBError

logger = logging.getLogger(__name__)

_GO_FRACTION_RE = re.compile(r"(\.\d{6})\d+")
_GO_ZERO_TIME_PREFIX = "0001-01-01"
_LEGACY_COMMIT_TYPES = {"jira": CommitType.TRACKER, "msg": CommitType.MESSAGE}


class TicketStoreError(RuntimeError):
    """Raised when ticket state cannot be loaded, imported, or saved."""


class TicketStore:
    """Loads and bulk-persists the full ticket collection."""

    def __init__(self, db: StateDB, *, legacy_path: Path | None = None) -> None:
        self._db = db
        self._legacy_path = legacy_path
        self._tickets: list[Ticket] = []
        self._loaded = False

    @classmethod
    def open(cls, db_path: Path, *, legacy_path: Path | None = None) -> TicketStore:
        store = cls(StateDB(db_path), legacy_path=legacy_path)
        store.load()
        return store

    @property
    def tickets(self) -> list[Ticket]:
        self._ensure_loaded()
        return self._tickets

    # ----- Loading -----

    def load(self) -> list[Ticket]:
        try:
            self._db.migrate()
            if self._legacy_path is not None and self._is_empty():
                self._import_legacy(self._legacy_path)
            self._tickets = self._read_all()
        except StateDBError as exc:
            raise TicketStoreError(f"unable to load ticket state: {exc}") from exc
        self._loaded = True
        return self._tickets

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _is_empty(self) -> bool:
        row = self._db.query_one("SELECT COUNT(*) AS total FROM tickets")
        return row is None or row["total"] == 0

    def _read_all(self) -> list[Ticket]:
        with self._db.connection() as conn:
            ticket_rows = self._db.query_all(
                "SELECT * FROM tickets ORDER BY position ASC", conn=conn
            )
            return [self._read_ticket(conn, row) for row in ticket_rows]

    def _read_ticket(self, conn: sqlite3.Connection, row: Mapping[str, RowValue]) -> Ticket:
        ticket_pk = row["id"]
        targets = self._db.query_all(
            "SELECT target_branch FROM ticket_targets WHERE ticket_pk = ? ORDER BY position ASC",
            (ticket_pk,),
            conn=conn,
        )
        branch_rows = self._db.query_all(
            "SELECT * FROM ticket_branches WHERE ticket_pk = ? ORDER BY position ASC",
            (ticket_pk,),
            conn=conn,
        )
        return Ticket(
            project=str(row["project"]),
            ticket_id=str(row["ticket_id"]),
            commit_type=CommitType(str(row["commit_type"])),
            commit_message=str(row["commit_message"]),
            target_branches=[str(item["target_branch"]) for item in targets],
            branches=[self._read_branch(conn, item) for item in branch_rows],
            created_at=parse_iso8601(str(row["created_at"])),
            updated_at=parse_iso8601(str(row["updated_at"])),
        )

    def _read_branch(self, conn: sqlite3.Connection, row: Mapping[str, RowValue]) -> TicketBranch:
        branch_pk = row["id"]
        commits = [
            Commit(
                commit_id=str(item["commit_id"]),
                description=str(item["description"]),
                timestamp=parse_iso8601(str(item["committed_at"])),
                already_present=bool(item["already_present"]),
            )
            for item in self._db.query_all(
                "SELECT * FROM branch_commits WHERE branch_pk = ? ORDER BY position ASC",
                (branch_pk,),
                conn=conn,
            )
        ]
        reviews = [
            ReviewRef(
                title=str(item["title"]),
                review_id=int(item["review_id"] or 0),
                web_url=str(item["web_url"]),
            )
            for item in self._db.query_all(
                "SELECT * FROM branch_reviews WHERE branch_pk = ? ORDER BY position ASC",
                (branch_pk,),
                conn=conn,
            )
        ]
        linked_row = self._db.query_one(
            "SELECT * FROM branch_linked_issues WHERE branch_pk = ?", (branch_pk,), conn=conn
        )
        linked = (
            None
            if linked_row is None
            else LinkedIssue(
                link_type=str(linked_row["link_type"]),
                issue_id=str(linked_row["issue_id"]),
                summary=str(linked_row["summary"]),
                status=str(linked_row["status"]),
            )
        )
        return TicketBranch(
            staging_branch=str(row["staging_branch"]),
            dev_branch=str(row["dev_branch"]),
            target_branch=str(row["target_branch"]),
            merged=bool(row["merged"]),
            staging_deleted=bool(row["staging_deleted"]),
            commits=commits,
            reviews=reviews,
            linked_issue=linked,
            created_at=parse_iso8601(str(row["created_at"])),
            updated_at=parse_iso8601(str(row["updated_at"])),
        )

    # ----- Persisting -----

    def save(self) -> None:
        """Atomically replace the persisted collection with the in-memory one."""

        self._ensure_loaded()
        try:
            self._db.migrate()
            with self._db.transaction() as tx:
                self._replace_all(tx, self._tickets)
        except (StateDBError, sqlite3.IntegrityError) as exc:
            raise TicketStoreError(f"unable to save ticket state: {exc}") from exc
        logger.debug("saved %d ticket(s) to %s", len(self._tickets), self._db.path)

    def _replace_all(self, conn: sqlite3.Connection, tickets: Sequence[Ticket]) -> None:
        for table in (
            "branch_linked_issues",
            "branch_reviews",
            "branch_commits",
            "ticket_branches",
            "ticket_targets",
            "tickets",
        ):
            self._db.execute(f"DELETE FROM {table}", conn=conn)

        for position, ticket in enumerate(tickets):
            ticket_pk = self._db.insert(
                """
                INSERT INTO tickets (
                    project, ticket_id, commit_type, commit_message, position,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ticket.project,
                    ticket.ticket_id,
                    ticket.commit_type.value,
                    ticket.commit_message,
                    position,
                    datetime_to_iso8601z(ticket.created_at),
                    datetime_to_iso8601z(ticket.updated_at),
                ),
                conn=conn,
            )
            self._db.executemany(
                """
                INSERT INTO ticket_targets (ticket_pk, target_branch, position)
                VALUES (?, ?, ?)
                """,
                (
                    (ticket_pk, target, index)
                    for index, target in enumerate(ticket.target_branches)
                ),
                conn=conn,
            )
            for branch_position, branch in enumerate(ticket.branches):
                self._insert_branch(conn, ticket_pk, branch_position, branch)

    def _insert_branch(
        self,
        conn: sqlite3.Connection,
        ticket_pk: int,
        position: int,
        branch: TicketBranch,
    ) -> None:
        branch_pk = self._db.insert(
            """
            INSERT INTO ticket_branches (
                ticket_pk, staging_branch, dev_branch, target_branch, merged,
                staging_deleted, position, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                ticket_pk,
                branch.staging_branch,
                branch.dev_branch,
                branch.target_branch,
                int(branch.merged),
                int(branch.staging_deleted),
                position,
                datetime_to_iso8601z(branch.created_at),
                datetime_to_iso8601z(branch.updated_at),
            ),
            conn=conn,
        )
        self._db.executemany(
            """
            INSERT INTO branch_commits (
                branch_pk, commit_id, description, committed_at, already_present, position
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                (
                    branch_pk,
                    commit.commit_id,
                    commit.description,
                    datetime_to_iso8601z(commit.timestamp),
                    int(commit.already_present),
                    index,
                )
                for index, commit in enumerate(branch.commits)
            ),
            conn=conn,
        )
        self._db.executemany(
            """
            INSERT INTO branch_reviews (branch_pk, title, review_id, web_url, position)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                (branch_pk, review.title, review.review_id, review.web_url, index)
                for index, review in enumerate(branch.reviews)
            ),
            conn=conn,
        )
        if branch.linked_issue is not None:
            issue = branch.linked_issue
            self._db.execute(
                """
                INSERT INTO branch_linked_issues (branch_pk, link_type, issue_id, summary, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (branch_pk, issue.link_type, issue.issue_id, issue.summary, issue.status),
                conn=conn,
            )

    # ----- Collection operations -----

    def get(self, project: str, ticket_id: str) -> Ticket | None:
        for ticket in self.tickets:
            if ticket.project == project and ticket.ticket_id == ticket_id:
                return ticket
        return None

    def get_or_create(
        self,
        project: str,
        ticket_id: str,
        *,
        commit_type: CommitType = CommitType.TRACKER,
        commit_message: str = "",
    ) -> Ticket:
        existing = self.get(project, ticket_id)
        if existing is not None:
            return existing
        ticket = Ticket(
            project=project,
            ticket_id=ticket_id,
            commit_type=commit_type,
            commit_message=commit_message,
        )
        self.tickets.append(ticket)
        return ticket

    def upsert(self, ticket: Ticket) -> None:
        """Replace the ticket with the same key in place, or append it."""

        for index, existing in enumerate(self.tickets):
            if existing.key == ticket.key:
                self._tickets[index] = ticket
                return
        self._tickets.append(ticket)

    def select(self, *, project: str = "", ticket_id: str = "") -> list[Ticket]:
        return [
            ticket
            for ticket in self.tickets
            if (not project or ticket.project == project)
            and (not ticket_id or ticket.ticket_id == ticket_id)
        ]

    def iter_branches(
        self, *, project: str = "", ticket_id: str = ""
    ) -> Iterator[tuple[Ticket, TicketBranch]]:
        for ticket in self.select(project=project, ticket_id=ticket_id):
            for branch in ticket.branches:
                yield ticket, branch

    def add(self, project: str, ticket_id: str, targets: Sequence[str]) -> Ticket:
        """Register planned target branches for a ticket and persist."""

        ticket = self.get_or_create(project, ticket_id)
        ticket.add_targets(targets)
        self.save()
        return ticket

    def delete(self, project: str, ticket_id: str) -> bool:
        ticket = self.get(project, ticket_id)
        if ticket is None:
            return False
        self._tickets = [item for item in self.tickets if item is not ticket]
        self.save()
        return True

    def detach(self, project: str, ticket_id: str, target_branch: str) -> bool:
        ticket = self.get(project, ticket_id)
        if ticket is None:
            return False
        ticket.detach(target_branch)
        self.save()
        return True

    # ----- Legacy import -----

    def _import_legacy(self, path: Path) -> None:
        if not path.is_file():
            return
        try:
            raw_text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise TicketStoreError(f"unable to read legacy state {path}: {exc}") from exc
        if not raw_text.strip():
            return
        try:
            payload = json.loads(raw_text)
        except json.JSONDecodeError as exc:
            raise TicketStoreError(f"invalid legacy state {path}: {exc}") from exc
        if not isinstance(payload, list):
            raise TicketStoreError(f"legacy state {path} must be a JSON array")

        try:
            tickets = _merge_legacy_duplicates(
                _legacy_ticket(item) for item in payload if isinstance(item, Mapping)
            )
        except ValueError as exc:
            raise TicketStoreError(f"invalid legacy state {path}: {exc}") from exc
        with self._db.transaction() as tx:
            self._replace_all(tx, tickets)
        logger.info("imported %d ticket(s) from legacy state %s", len(tickets), path)


def _merge_legacy_duplicates(tickets: Iterable[Ticket]) -> list[Ticket]:
    merged: dict[tuple[str, str], Ticket] = {}
    for ticket in tickets:
        existing = merged.get(ticket.key)
        if existing is None:
            merged[ticket.key] = ticket
            continue
        existing.add_targets(ticket.target_branches)
        for branch in ticket.branches:
            existing.attach(branch)
    return list(merged.values())


def _pick(raw: Mapping[str, object], *names: str) -> object:
    for name in names:
        value = raw.get(name)
        if value is not None:
            return value
    return None


def _text(raw: Mapping[str, object], *names: str) -> str:
    value = _pick(raw, *names)
    return "" if value is None else str(value)


def _flag(raw: Mapping[str, object], *names: str) -> bool:
    return bool(_pick(raw, *names))


def _number(raw: Mapping[str, object], *names: str) -> int:
    value = _pick(raw, *names)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


def _objects(raw: Mapping[str, object], *names: str) -> list[Mapping[str, object]]:
    value = _pick(raw, *names)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, Mapping)]


def _strings(raw: Mapping[str, object], *names: str) -> list[str]:
    value = _pick(raw, *names)
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item).strip()]


def _legacy_time(raw: Mapping[str, object], *names: str) -> datetime:
    text = _text(raw, *names)
    if not text or text.startswith(_GO_ZERO_TIME_PREFIX):
        return utc_now()
    return parse_iso8601(_GO_FRACTION_RE.sub(r"\1", text))


def _legacy_ticket(raw: Mapping[str, object]) -> Ticket:
    branches: list[TicketBranch] = []
    for item in _objects(raw, "BranchList", "branch_list"):
        branch = _legacy_branch(item)
        if all(existing.target_branch != branch.target_branch for existing in branches):
            branches.append(branch)
    return Ticket(
        project=_text(raw, "Project", "project"),
        ticket_id=_text(raw, "JiraID", "jira_id"),
        commit_type=_LEGACY_COMMIT_TYPES.get(
            _text(raw, "CommitType", "commit_type"), CommitType.TRACKER
        ),
        commit_message=_text(raw, "CommitMessage", "commit_message"),
        target_branches=_strings(raw, "TargetBranch", "target_branch"),
        branches=branches,
        created_at=_legacy_time(raw, "CreateTime", "create_time"),
        updated_at=_legacy_time(raw, "UpdateTime", "update_time"),
    )


def _legacy_branch(raw: Mapping[str, object]) -> TicketBranch:
    commits = [
        Commit(
            commit_id=_text(item, "CommitId", "commit_id"),
            description=_text(item, "Desc", "desc"),
            timestamp=_legacy_time(item, "CreateTime", "create_time"),
            already_present=_flag(item, "TargetExists", "target_exists"),
        )
        for item in _objects(raw, "Commits", "commits")
    ]
    reviews = [
        ReviewRef(
            title=_text(item, "Title", "title"),
            review_id=_number(item, "MrId", "mr_id"),
            web_url=_text(item, "WebUrl", "web_url"),
        )
        for item in _objects(raw, "MergeRequests", "merge_requests")
    ]
    link_raw = _pick(raw, "LinkInfo", "link_info")
    linked = (
        LinkedIssue(
            link_type=_text(link_raw, "LinkType", "link_type"),
            issue_id=_text(link_raw, "IssueId", "issue_id"),
            summary=_text(link_raw, "Summary", "summary"),
            status=_text(link_raw, "Status", "status"),
        )
        if isinstance(link_raw, Mapping)
        else None
    )
    return TicketBranch(
        staging_branch=_text(raw, "BranchName", "branch_name"),
        dev_branch=_text(raw, "DevBranch", "dev_branch"),
        target_branch=_text(raw, "TargetBranch", "target_branch"),
        merged=_flag(raw, "Merged", "merged"),
        commits=commits,
        reviews=reviews,
        linked_issue=linked,
        created_at=_legacy_time(raw, "CreateTime", "create_time"),
        updated_at=_legacy_time(raw, "UpdateTime", "update_time"),
    )


__all__ = ["TicketStore", "TicketStoreError"]
