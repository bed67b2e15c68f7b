"""Unit tests for ticket detection and staging-branch naming."""

from __future__ import annotations

import hashlib

import pytest
from hypothesis import given
from hypothesis import strategies as st

from patchflow.domain.models import CommitType
from patchflow.domain.ticket_ids import (
    TicketIdentity,
    detect_ticket,
    looks_like_commit_id,
    resolve_ticket,
    staging_branch_name,
)


@pytest.mark.parametrize(
    ("subject", "expected"),
    [
        ("ABC-123 add retry to client", "ABC-123"),
        ("fix: handle timeout (OPS-7)", "OPS-7"),
        ("  XY-1  ", "XY-1"),
    ],
)
def test_generic_tracker_ids(subject: str, expected: str) -> None:
    assert detect_ticket(subject) == TicketIdentity(expected, CommitType.TRACKER)


def test_configured_tracker_prefix_wins_over_generic_pattern() -> None:
    identity = detect_ticket("ABC-1 backport of pay-ment42 change", ["pay"])

    assert identity == TicketIdentity("pay-ment42", CommitType.TRACKER)


def test_plain_message_becomes_digest_ticket() -> None:
    identity = detect_ticket("  fix login redirect\n")

    assert identity is not None
    assert identity.commit_type is CommitType.MESSAGE
    assert identity.commit_message == "fix login redirect"
    assert identity.ticket_id == hashlib.md5(b"fix login redirect").hexdigest()
    assert len(identity.ticket_id) == 32


def test_blank_subject_has_no_ticket() -> None:
    assert detect_ticket("   ") is None


@given(st.text(alphabet="abcdefghijklmnopqrstuvwxyz .,:!", min_size=1).filter(str.strip))
def test_lowercase_messages_are_stable_digests(subject: str) -> None:
    first = detect_ticket(subject)
    second = detect_ticket(subject)

    assert first == second
    assert first is not None and first.commit_type is CommitType.MESSAGE


@pytest.mark.parametrize(
    ("value", "expected"),
    [("abc1234", True), ("a" * 40, True), ("abc", False), ("ABC-123", False), ("g123456", False)],
)
def test_looks_like_commit_id(value: str, expected: bool) -> None:
    assert looks_like_commit_id(value) is expected


def test_resolve_ticket_paths() -> None:
    asked: list[str | None] = []

    def subject_of(commit_id: str | None) -> str:
        asked.append(commit_id)
        return "ABC-9 latest" if commit_id is None else "OPS-4 from commit"

    assert resolve_ticket(None, subject_of=subject_of) == TicketIdentity(
        "ABC-9", CommitType.TRACKER
    )
    assert resolve_ticket("abc1234", subject_of=subject_of) == TicketIdentity(
        "OPS-4", CommitType.TRACKER
    )
    assert resolve_ticket("XYZ-5", subject_of=subject_of) == TicketIdentity(
        "XYZ-5", CommitType.TRACKER
    )
    assert asked == [None, "abc1234"]


def test_staging_branch_name_defaults_and_template() -> None:
    assert staging_branch_name("ABC-1", "qa") == "ABC-1_x_qa"
    assert staging_branch_name("ABC-1", "qa", ticket_desc="") == "ABC-1_x_qa"
    template = "sync/{targetBranch}/{ticketID}-{ticketDesc}"
    assert (
        staging_branch_name("ABC-1", "release/2", ticket_desc="cache", template=template)
        == "sync/release/2/ABC-1-cache"
    )
