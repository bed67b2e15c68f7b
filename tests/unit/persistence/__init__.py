"""Shared deterministic builders and strategies for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Final

from hypothesis import strategies as st

from patchflow.domain.models import (
    Commit,
    CommitType,
    LinkedIssue,
    ReviewRef,
    Ticket,
    TicketBranch,
)

BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def ts(minutes: int) -> datetime:
    return BASE_TS + timedelta(minutes=minutes)


def make_ticket(
    ticket_id: str = "ABC-100",
    *,
    project: str = "svc",
    targets: tuple[str, ...] = ("qa", "staging"),
) -> Ticket:
    branch = TicketBranch(
        staging_branch=f"{ticket_id}_x_qa",
        dev_branch="feature/x",
        target_branch="qa",
        commits=[
            Commit(commit_id="a" * 40, description=f"{ticket_id} first", timestamp=ts(0)),
            Commit(
                commit_id="b" * 40,
                description=f"{ticket_id} second",
                timestamp=ts(5),
                already_present=True,
            ),
        ],
        reviews=[ReviewRef(title=f"{ticket_id} first", review_id=12, web_url="https://r/12")],
        linked_issue=LinkedIssue(link_type="relates", issue_id="OPS-1", summary="s", status="open"),
        created_at=ts(10),
        updated_at=ts(11),
    )
    return Ticket(
        project=project,
        ticket_id=ticket_id,
        target_branches=list(targets),
        branches=[branch],
        created_at=ts(0),
        updated_at=ts(11),
    )


_names = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789_-/", min_size=1, max_size=12)
_texts = st.text(max_size=40).filter(lambda value: "\x00" not in value)
_times = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2100, 1, 1),
    timezones=st.just(UTC),
)

commits = st.builds(
    Commit,
    commit_id=st.text(alphabet="0123456789abcdef", min_size=7, max_size=40),
    description=_texts,
    timestamp=_times,
    already_present=st.booleans(),
)

reviews = st.builds(
    ReviewRef,
    title=_texts,
    review_id=st.integers(min_value=0, max_value=10**6),
    web_url=_texts,
)

linked_issues = st.builds(
    LinkedIssue,
    link_type=_names,
    issue_id=_names,
    summary=_texts,
    status=_texts,
)


@st.composite
def tickets(draw: st.DrawFn, *, project: str = "svc", ticket_id: str = "ABC-1") -> Ticket:
    targets = draw(st.lists(_names, min_size=1, max_size=4, unique=True))
    branches = [
        TicketBranch(
            staging_branch=f"{ticket_id}_x_{target}",
            dev_branch=draw(_names),
            target_branch=target,
            merged=draw(st.booleans()),
            staging_deleted=draw(st.booleans()),
            commits=draw(st.lists(commits, max_size=4)),
            reviews=draw(st.lists(reviews, max_size=2)),
            linked_issue=draw(st.none() | linked_issues),
            created_at=draw(_times),
            updated_at=draw(_times),
        )
        for target in draw(st.lists(st.sampled_from(targets), unique=True))
    ]
    commit_type = draw(st.sampled_from(list(CommitType)))
    return Ticket(
        project=project,
        ticket_id=ticket_id,
        commit_type=commit_type,
        commit_message=draw(_texts) if commit_type is CommitType.MESSAGE else "",
        target_branches=targets,
        branches=branches,
        created_at=draw(_times),
        updated_at=draw(_times),
    )


__all__ = [
    "BASE_TS",
    "commits",
    "linked_issues",
    "make_ticket",
    "reviews",
    "tickets",
    "ts",
]
