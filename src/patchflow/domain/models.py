"""Domain models for synchronized tickets, with strict validation and canonical serialization."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192


class CommitType(StrEnum):
    """How a ticket's commits are recognized in the log."""

    TRACKER = "tracker"
    MESSAGE = "message"


class MergeOutcome(StrEnum):
    OK = "ok"
    WAIT_PIPELINE = "wait-pipeline"
    FAIL = "fail"


class CanonicalModel:
    """Mixin for canonical dict/json serialization."""

    def to_dict(self) -> dict[str, JSONValue]:
        serialized = _serialize_value(self, self.__class__.__name__)
        if not isinstance(serialized, dict):
            _fail(self.__class__.__name__, "serialized model must be an object")
        return serialized

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        _fail(cls.__name__, "from_dict is not implemented for this model type")


def utc_now() -> datetime:
    return datetime.now(UTC)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")

    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item

    allowed = required | (optional or set())
    unknown = sorted(key for key in parsed if key not in allowed)
    if unknown:
        _fail(path, f"unexpected fields: {unknown}")

    missing = sorted(key for key in required if key not in parsed)
    if missing:
        _fail(path, f"missing required fields: {missing}")

    return parsed


def _as_str(
    value: object,
    path: str,
    *,
    min_len: int = 1,
    max_len: int = _MAX_TEXT,
    strip: bool = True,
) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip() if strip else value
    if len(normalized) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_text(value: object, path: str) -> str:
    """Free text that may be empty and keeps its exact whitespace."""

    return _as_str(value, path, min_len=0, strip=False)


def _as_bool(value: object, path: str) -> bool:
    if isinstance(value, bool):
        return value
    _fail(path, f"expected boolean, got {type(value).__name__}")


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_datetime(value: object, path: str) -> datetime:
    parsed: datetime
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {type(value).__name__}")

    if parsed.tzinfo is None or parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware")
    return parsed.astimezone(UTC)


def datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso8601(value: str) -> datetime:
    """Parse a timezone-aware ISO-8601 timestamp into UTC."""

    return _as_datetime(value, "timestamp")


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    if not isinstance(value, str):
        _fail(path, f"expected string enum value, got {type(value).__name__}")
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(item.value for item in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if isinstance(value, (list, tuple)):
        return list(value)
    _fail(path, f"expected array, got {type(value).__name__}")


def _as_branch_list(value: object, path: str) -> list[str]:
    parsed: list[str] = []
    for index, item in enumerate(_as_sequence(value, path)):
        name = _as_str(item, f"{path}[{index}]", max_len=255)
        if name not in parsed:
            parsed.append(name)
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if value is None or isinstance(value, bool):
        return cast("JSONValue", value)
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, Enum):
        raw = value.value
        if not isinstance(raw, str):
            _fail(path, "enum value must be string")
        return raw
    if isinstance(value, datetime):
        return datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            out[key] = _serialize_value(item, f"{path}.{key}")
        return out
    if is_dataclass(value):
        out_obj: dict[str, JSONValue] = {}
        for dataclass_field in fields(value):
            out_obj[dataclass_field.name] = _serialize_value(
                getattr(value, dataclass_field.name),
                f"{path}.{dataclass_field.name}",
            )
        return out_obj

    _fail(path, f"cannot serialize value of type {type(value).__name__}")


@dataclass(slots=True)
class Commit(CanonicalModel):
    commit_id: str
    description: str
    timestamp: datetime
    already_present: bool = False

    def __post_init__(self) -> None:
        self.commit_id = _as_str(self.commit_id, "Commit.commit_id", max_len=64).lower()
        self.description = _as_text(self.description, "Commit.description")
        self.timestamp = _as_datetime(self.timestamp, "Commit.timestamp")
        self.already_present = _as_bool(self.already_present, "Commit.already_present")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Commit:
        parsed = _expect_object(
            data,
            "Commit",
            required={"commit_id", "description", "timestamp"},
            optional={"already_present"},
        )
        return cls(
            commit_id=_as_str(parsed["commit_id"], "Commit.commit_id"),
            description=_as_text(parsed["description"], "Commit.description"),
            timestamp=_as_datetime(parsed["timestamp"], "Commit.timestamp"),
            already_present=_as_bool(
                parsed.get("already_present", False), "Commit.already_present"
            ),
        )


@dataclass(slots=True)
class ReviewRef(CanonicalModel):
    title: str
    review_id: int
    web_url: str

    def __post_init__(self) -> None:
        self.title = _as_text(self.title, "ReviewRef.title")
        self.review_id = _as_int(self.review_id, "ReviewRef.review_id", minimum=0)
        self.web_url = _as_text(self.web_url, "ReviewRef.web_url")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ReviewRef:
        parsed = _expect_object(data, "ReviewRef", required={"title", "review_id", "web_url"})
        return cls(
            title=_as_text(parsed["title"], "ReviewRef.title"),
            review_id=_as_int(parsed["review_id"], "ReviewRef.review_id", minimum=0),
            web_url=_as_text(parsed["web_url"], "ReviewRef.web_url"),
        )


@dataclass(slots=True)
class LinkedIssue(CanonicalModel):
    """Snapshot of an external issue linked to a synchronized branch."""

    link_type: str
    issue_id: str
    summary: str = ""
    status: str = ""

    def __post_init__(self) -> None:
        self.link_type = _as_text(self.link_type, "LinkedIssue.link_type")
        self.issue_id = _as_text(self.issue_id, "LinkedIssue.issue_id")
        self.summary = _as_text(self.summary, "LinkedIssue.summary")
        self.status = _as_text(self.status, "LinkedIssue.status")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> LinkedIssue:
        parsed = _expect_object(
            data,
            "LinkedIssue",
            required={"link_type", "issue_id"},
            optional={"summary", "status"},
        )
        return cls(
            link_type=_as_text(parsed["link_type"], "LinkedIssue.link_type"),
            issue_id=_as_text(parsed["issue_id"], "LinkedIssue.issue_id"),
            summary=_as_text(parsed.get("summary", ""), "LinkedIssue.summary"),
            status=_as_text(parsed.get("status", ""), "LinkedIssue.status"),
        )


def sort_commits(commits: Iterable[Commit]) -> list[Commit]:
    """Order commits oldest-first; ties keep their incoming relative order."""

    return sorted(commits, key=lambda commit: commit.timestamp)


def exclude_reverted(commits: Iterable[Commit]) -> list[Commit]:
    """
    Drop reverted commits and the reverts themselves.

    A commit is dropped when its description appears inside the description of any
    "Revert ..." commit in the same batch; a revert always contains its own text.
    """

    batch = list(commits)
    reverts = [c.description for c in batch if c.description.startswith("Revert")]
    if not reverts:
        return batch
    return [
        commit
        for commit in batch
        if not (commit.description and any(commit.description in r for r in reverts))
    ]


@dataclass(slots=True)
class TicketBranch(CanonicalModel):
    """One synchronized (ticket, target branch) pair and the staging branch carrying it."""

    staging_branch: str
    dev_branch: str
    target_branch: str
    merged: bool = False
    staging_deleted: bool = False
    commits: list[Commit] = field(default_factory=list)
    reviews: list[ReviewRef] = field(default_factory=list)
    linked_issue: LinkedIssue | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.staging_branch = _as_text(self.staging_branch, "TicketBranch.staging_branch").strip()
        self.dev_branch = _as_text(self.dev_branch, "TicketBranch.dev_branch").strip()
        self.target_branch = _as_str(self.target_branch, "TicketBranch.target_branch", max_len=255)
        self.merged = _as_bool(self.merged, "TicketBranch.merged")
        self.staging_deleted = _as_bool(self.staging_deleted, "TicketBranch.staging_deleted")
        self.commits = list(self.commits)
        for index, commit in enumerate(self.commits):
            if not isinstance(commit, Commit):
                _fail(f"TicketBranch.commits[{index}]", "expected Commit")
        self.reviews = list(self.reviews)
        for index, review in enumerate(self.reviews):
            if not isinstance(review, ReviewRef):
                _fail(f"TicketBranch.reviews[{index}]", "expected ReviewRef")
        if self.linked_issue is not None and not isinstance(self.linked_issue, LinkedIssue):
            _fail("TicketBranch.linked_issue", "expected LinkedIssue")
        self.created_at = _as_datetime(self.created_at, "TicketBranch.created_at")
        self.updated_at = _as_datetime(self.updated_at, "TicketBranch.updated_at")

    @property
    def applied_commit_ids(self) -> frozenset[str]:
        return frozenset(commit.commit_id for commit in self.commits)

    @property
    def last_commit(self) -> Commit | None:
        if not self.commits:
            return None
        return max(self.commits, key=lambda commit: commit.timestamp)

    @property
    def latest_review(self) -> ReviewRef | None:
        return self.reviews[-1] if self.reviews else None

    def mark_merged(self, *, at: datetime | None = None) -> bool:
        """Flip the merged flag to true; returns whether it changed."""

        if self.merged:
            return False
        self.merged = True
        self.updated_at = at or utc_now()
        return True

    def mark_staging_deleted(self, *, at: datetime | None = None) -> bool:
        if self.staging_deleted:
            return False
        self.staging_deleted = True
        self.updated_at = at or utc_now()
        return True

    def absorb(self, newer: TicketBranch) -> None:
        """Fold a fresh synchronization of the same target into this record."""

        if newer.target_branch != self.target_branch:
            _fail("TicketBranch.absorb", "target branch mismatch")
        known = self.applied_commit_ids
        merged_commits = list(self.commits)
        merged_commits.extend(c for c in newer.commits if c.commit_id not in known)
        self.commits = sort_commits(merged_commits)
        known_reviews = {review.review_id for review in self.reviews}
        self.reviews.extend(r for r in newer.reviews if r.review_id not in known_reviews)
        if newer.linked_issue is not None:
            self.linked_issue = newer.linked_issue
        self.staging_branch = newer.staging_branch
        self.dev_branch = newer.dev_branch
        self.merged = False
        self.staging_deleted = False
        self.updated_at = newer.updated_at

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> TicketBranch:
        parsed = _expect_object(
            data,
            "TicketBranch",
            required={"staging_branch", "dev_branch", "target_branch"},
            optional={
                "merged",
                "staging_deleted",
                "commits",
                "reviews",
                "linked_issue",
                "created_at",
                "updated_at",
            },
        )
        linked_raw = parsed.get("linked_issue")
        now = utc_now()
        return cls(
            staging_branch=_as_text(parsed["staging_branch"], "TicketBranch.staging_branch"),
            dev_branch=_as_text(parsed["dev_branch"], "TicketBranch.dev_branch"),
            target_branch=_as_str(parsed["target_branch"], "TicketBranch.target_branch"),
            merged=_as_bool(parsed.get("merged", False), "TicketBranch.merged"),
            staging_deleted=_as_bool(
                parsed.get("staging_deleted", False), "TicketBranch.staging_deleted"
            ),
            commits=[
                Commit.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(parsed.get("commits", []), "TicketBranch.commits")
            ],
            reviews=[
                ReviewRef.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(parsed.get("reviews", []), "TicketBranch.reviews")
            ],
            linked_issue=(
                None
                if linked_raw is None
                else LinkedIssue.from_dict(cast("Mapping[str, object]", linked_raw))
            ),
            created_at=_as_datetime(parsed.get("created_at", now), "TicketBranch.created_at"),
            updated_at=_as_datetime(parsed.get("updated_at", now), "TicketBranch.updated_at"),
        )


@dataclass(slots=True)
class Ticket(CanonicalModel):
    """Durable aggregate for one (project, ticket id) pair."""

    project: str
    ticket_id: str
    commit_type: CommitType = CommitType.TRACKER
    commit_message: str = ""
    target_branches: list[str] = field(default_factory=list)
    branches: list[TicketBranch] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.project = _as_str(self.project, "Ticket.project", max_len=255)
        self.ticket_id = _as_str(self.ticket_id, "Ticket.ticket_id", max_len=255)
        self.commit_type = _as_enum(CommitType, self.commit_type, "Ticket.commit_type")
        self.commit_message = _as_text(self.commit_message, "Ticket.commit_message")
        self.target_branches = _as_branch_list(self.target_branches, "Ticket.target_branches")
        self.branches = list(self.branches)
        seen: set[str] = set()
        for index, branch in enumerate(self.branches):
            if not isinstance(branch, TicketBranch):
                _fail(f"Ticket.branches[{index}]", "expected TicketBranch")
            if branch.target_branch in seen:
                _fail(
                    f"Ticket.branches[{index}]",
                    f"duplicate entry for target branch {branch.target_branch!r}",
                )
            seen.add(branch.target_branch)
        self.created_at = _as_datetime(self.created_at, "Ticket.created_at")
        self.updated_at = _as_datetime(self.updated_at, "Ticket.updated_at")

    @property
    def key(self) -> tuple[str, str]:
        return (self.project, self.ticket_id)

    @property
    def match_criterion(self) -> str:
        """Text the commit log is grepped for when collecting this ticket's commits."""

        if self.commit_type is CommitType.MESSAGE and self.commit_message:
            return self.commit_message
        return self.ticket_id

    @property
    def label(self) -> str:
        if self.commit_type is CommitType.MESSAGE and self.commit_message:
            return self.commit_message.splitlines()[0]
        return self.ticket_id

    @property
    def complete(self) -> bool:
        """True once every planned target has a confirmed-merged branch."""

        if self.target_branches:
            return all(
                (branch := self.branch_for(target)) is not None and branch.merged
                for target in self.target_branches
            )
        return bool(self.branches) and all(branch.merged for branch in self.branches)

    def branch_for(self, target_branch: str) -> TicketBranch | None:
        for branch in self.branches:
            if branch.target_branch == target_branch:
                return branch
        return None

    def attach(self, branch: TicketBranch) -> TicketBranch:
        """Insert or fold a branch record so each target appears at most once."""

        existing = self.branch_for(branch.target_branch)
        if existing is None:
            self.branches.append(branch)
            existing = branch
        else:
            existing.absorb(branch)
        self.updated_at = existing.updated_at
        return existing

    def add_targets(self, targets: Iterable[str]) -> None:
        for target in targets:
            name = _as_str(target, "Ticket.target_branches[]", max_len=255)
            if name not in self.target_branches:
                self.target_branches.append(name)
        self.updated_at = utc_now()

    def detach(self, target_branch: str) -> None:
        self.target_branches = [name for name in self.target_branches if name != target_branch]
        self.branches = [b for b in self.branches if b.target_branch != target_branch]
        self.updated_at = utc_now()

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Ticket:
        parsed = _expect_object(
            data,
            "Ticket",
            required={"project", "ticket_id"},
            optional={
                "commit_type",
                "commit_message",
                "target_branches",
                "branches",
                "created_at",
                "updated_at",
            },
        )
        now = utc_now()
        return cls(
            project=_as_str(parsed["project"], "Ticket.project"),
            ticket_id=_as_str(parsed["ticket_id"], "Ticket.ticket_id"),
            commit_type=_as_enum(
                CommitType, parsed.get("commit_type", CommitType.TRACKER), "Ticket.commit_type"
            ),
            commit_message=_as_text(parsed.get("commit_message", ""), "Ticket.commit_message"),
            target_branches=_as_branch_list(
                parsed.get("target_branches", []), "Ticket.target_branches"
            ),
            branches=[
                TicketBranch.from_dict(cast("Mapping[str, object]", item))
                for item in _as_sequence(parsed.get("branches", []), "Ticket.branches")
            ],
            created_at=_as_datetime(parsed.get("created_at", now), "Ticket.created_at"),
            updated_at=_as_datetime(parsed.get("updated_at", now), "Ticket.updated_at"),
        )


__all__ = [
    "CanonicalModel",
    "Commit",
    "CommitType",
    "JSONValue",
    "LinkedIssue",
    "MergeOutcome",
    "ReviewRef",
    "Ticket",
    "TicketBranch",
    "datetime_to_iso8601z",
    "exclude_reverted",
    "parse_iso8601",
    "sort_commits",
    "utc_now",
]
