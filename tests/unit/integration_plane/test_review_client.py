"""Unit tests for the GitLab merge-request client over a recorded ``requests`` session."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import pytest
import requests

from patchflow.config.schema import PatchflowSettings, RepoSettings, ReviewHostSettings
from patchflow.integration_plane.review_client import (
    GitLabReviewClient,
    ReviewAuthError,
    ReviewClientError,
    project_path_for,
    review_client_for,
)

if TYPE_CHECKING:
    from pathlib import Path

PROJECT_URL = "https://gitlab.example.com/api/v4/projects/team%2Fsvc"


def response(status: int, payload: Any = None, *, raw: bytes | None = None) -> requests.Response:
    result = requests.Response()
    result.status_code = status
    result.encoding = "utf-8"
    if raw is not None:
        result._content = raw
    else:
        result._content = b"" if payload is None else json.dumps(payload).encode("utf-8")
    return result


def merge_request(iid: int, *, state: str = "opened") -> dict[str, Any]:
    return {
        "iid": iid,
        "title": "ABC-100 add endpoint",
        "web_url": f"https://gitlab.example.com/team/svc/-/merge_requests/{iid}",
        "state": state,
        "source_branch": "ABC-100_x_qa",
        "target_branch": "qa",
    }


class RecordingSession(requests.Session):
    def __init__(self, *replies: requests.Response | Exception) -> None:
        super().__init__()
        self.replies = list(replies)
        self.calls: list[tuple[str, str, dict[str, Any]]] = []

    def request(  # type: ignore[override]
        self, method: str, url: str, **kwargs: Any
    ) -> requests.Response:
        self.calls.append((method, url, kwargs))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def client_with(
    *replies: requests.Response | Exception,
) -> tuple[GitLabReviewClient, RecordingSession]:
    session = RecordingSession(*replies)
    client = GitLabReviewClient(
        "https://gitlab.example.com/", "secret-token", "team/svc", session=session
    )
    return client, session


def test_session_is_authenticated() -> None:
    _client, session = client_with()

    assert session.headers["PRIVATE-TOKEN"] == "secret-token"
    assert session.headers["Accept"] == "application/json"


def test_find_open_review_queries_source_and_target() -> None:
    client, session = client_with(response(200, [merge_request(4)]))

    review = client.find_open_review("ABC-100_x_qa", "qa")

    assert review is not None and review.review_id == 4
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("GET", f"{PROJECT_URL}/merge_requests")
    assert kwargs["params"] == {
        "state": "opened",
        "source_branch": "ABC-100_x_qa",
        "target_branch": "qa",
    }
    assert kwargs["timeout"] == 30.0


def test_find_open_review_returns_none_when_absent() -> None:
    client, _session = client_with(response(200, []))

    assert client.find_open_review("ABC-100_x_qa", "qa") is None


def test_list_open_reviews() -> None:
    client, session = client_with(response(200, [merge_request(1), merge_request(2)]))

    reviews = client.list_open_reviews("ABC-100_x_qa")

    assert [r.review_id for r in reviews] == [1, 2]
    assert session.calls[0][2]["params"] == {"state": "opened", "source_branch": "ABC-100_x_qa"}


def test_create_review_posts_squash_request() -> None:
    client, session = client_with(response(201, merge_request(9)))

    review = client.create_review("ABC-100 add endpoint", "ABC-100_x_qa", "qa")

    assert review.web_url.endswith("/merge_requests/9")
    method, url, kwargs = session.calls[0]
    assert (method, url) == ("POST", f"{PROJECT_URL}/merge_requests")
    assert kwargs["json"] == {
        "title": "ABC-100 add endpoint",
        "description": "ABC-100 add endpoint",
        "source_branch": "ABC-100_x_qa",
        "target_branch": "qa",
        "squash": True,
        "remove_source_branch": True,
    }


def test_accept_review_direct_and_when_pipeline_succeeds() -> None:
    client, session = client_with(response(200, merge_request(9)), response(200))

    client.accept_review(9)
    client.accept_review(9, merge_when_pipeline_succeeds=True)

    assert session.calls[0][0:2] == ("PUT", f"{PROJECT_URL}/merge_requests/9/merge")
    assert session.calls[0][2]["json"] is None
    assert session.calls[1][2]["json"] == {"merge_when_pipeline_succeeds": True}


def test_get_review_reports_merged_state() -> None:
    client, _session = client_with(response(200, merge_request(3, state="merged")))

    assert client.get_review(3).merged is True


@pytest.mark.parametrize("status", [401, 403])
def test_rejected_credentials(status: int) -> None:
    client, _session = client_with(response(status, {"message": "401 Unauthorized"}))

    with pytest.raises(ReviewAuthError) as excinfo:
        client.get_review(1)

    assert excinfo.value.status_code == status


def test_error_response_carries_host_message() -> None:
    client, _session = client_with(response(405, {"message": "Method Not Allowed"}))

    with pytest.raises(ReviewClientError, match="returned 405: Method Not Allowed") as excinfo:
        client.accept_review(9)

    assert excinfo.value.status_code == 405


def test_transport_failure_is_wrapped() -> None:
    client, _session = client_with(requests.exceptions.ConnectionError("refused"))

    with pytest.raises(ReviewClientError, match="refused"):
        client.list_open_reviews("ABC-100_x_qa")


@pytest.mark.parametrize(
    "reply",
    [
        response(200, raw=b"<html>not json</html>"),
        response(200, {"title": "no iid"}),
        response(200, [merge_request(1)]),
    ],
)
def test_malformed_replies(reply: requests.Response) -> None:
    client, _session = client_with(reply)

    with pytest.raises(ReviewClientError):
        client.get_review(1)


def test_empty_token_is_rejected() -> None:
    with pytest.raises(ReviewAuthError):
        GitLabReviewClient("https://gitlab.example.com", "", "team/svc")


def test_project_path_for() -> None:
    assert (
        project_path_for("https://gitlab.example.com/team/sub/svc", "https://gitlab.example.com/")
        == "team/sub/svc"
    )


def test_review_client_for_requires_matching_host_with_token(tmp_path: Path) -> None:
    repo = RepoSettings(name="svc", url="https://gitlab.example.com/team/svc")
    host = ReviewHostSettings(base_url="https://gitlab.example.com", token="t0k")
    tokenless = ReviewHostSettings(base_url="https://gitlab.example.com")

    assert review_client_for(PatchflowSettings(home_dir=tmp_path), repo) is None
    assert (
        review_client_for(PatchflowSettings(home_dir=tmp_path, review_hosts=(tokenless,)), repo)
        is None
    )
    client = review_client_for(PatchflowSettings(home_dir=tmp_path, review_hosts=(host,)), repo)
    assert client is not None
    assert client.project_path == "team/svc"
    assert review_client_for(
        PatchflowSettings(home_dir=tmp_path, review_hosts=(host,)),
        RepoSettings(name="svc"),
    ) is None
