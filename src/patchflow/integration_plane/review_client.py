"""
GitLab merge-request client behind the ``RemoteReviewAdapter`` contract.

The sync engine only needs four review operations (find, create, accept, get) plus
the open-review listing used by the remote-deletion guard. Everything here speaks
the GitLab v4 REST API over a single ``requests.Session`` authenticated with a
``PRIVATE-TOKEN`` header.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final, Protocol
from urllib.parse import quote

import requests

if TYPE_CHECKING:
    from patchflow.config.schema import PatchflowSettings, RepoSettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS: Final[float] = 30.0
_AUTH_STATUS_CODES: Final[frozenset[int]] = frozenset({401, 403})


class ReviewClientError(RuntimeError):
    """Raised when the review host rejects or cannot serve a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReviewAuthError(ReviewClientError):
    """Raised when the review host refuses the configured credentials."""


@dataclass(frozen=True, slots=True)
class Review:
    review_id: int
    title: str
    web_url: str
    state: str
    source_branch: str
    target_branch: str

    @property
    def merged(self) -> bool:
        return self.state == "merged"


class RemoteReviewAdapter(Protocol):
    """Review operations consumed by the sync engine and the deletion guard."""

    def find_open_review(self, source_branch: str, target_branch: str) -> Review | None: ...

    def list_open_reviews(self, source_branch: str) -> list[Review]: ...

    def create_review(
        self,
        title: str,
        source_branch: str,
        target_branch: str,
        *,
        squash: bool = True,
        remove_source_branch: bool = True,
    ) -> Review: ...

    def accept_review(
        self, review_id: int, *, merge_when_pipeline_succeeds: bool = False
    ) -> None: ...

    def get_review(self, review_id: int) -> Review: ...


def project_path_for(repo_url: str, base_url: str) -> str:
    """Return the ``group/project`` path of ``repo_url`` relative to the host ``base_url``."""

    path = repo_url.replace(base_url.rstrip("/"), "", 1)
    return path.strip("/")


class GitLabReviewClient:
    """Minimal GitLab merge-request client."""

    def __init__(
        self,
        base_url: str,
        token: str,
        project_path: str,
        *,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        if not token:
            raise ReviewAuthError("review host token is empty")
        if not project_path:
            raise ReviewClientError(f"cannot derive a project path from {base_url!r}")
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/v4"
        self.project_path = project_path
        self.timeout = timeout
        self._session = session if session is not None else requests.Session()
        self._session.headers.update({"PRIVATE-TOKEN": token, "Accept": "application/json"})

    @property
    def _project_url(self) -> str:
        return f"{self.api_url}/projects/{quote(self.project_path, safe='')}"

    def find_open_review(self, source_branch: str, target_branch: str) -> Review | None:
        payload = self._request(
            "GET",
            "/merge_requests",
            params={
                "state": "opened",
                "source_branch": source_branch,
                "target_branch": target_branch,
            },
        )
        reviews = _reviews_from(payload)
        return reviews[0] if reviews else None

    def list_open_reviews(self, source_branch: str) -> list[Review]:
        payload = self._request(
            "GET",
            "/merge_requests",
            params={"state": "opened", "source_branch": source_branch},
        )
        return _reviews_from(payload)

    def create_review(
        self,
        title: str,
        source_branch: str,
        target_branch: str,
        *,
        squash: bool = True,
        remove_source_branch: bool = True,
    ) -> Review:
        payload = self._request(
            "POST",
            "/merge_requests",
            json={
                "title": title,
                "description": title,
                "source_branch": source_branch,
                "target_branch": target_branch,
                "squash": squash,
                "remove_source_branch": remove_source_branch,
            },
        )
        return _review_from(payload)

    def accept_review(self, review_id: int, *, merge_when_pipeline_succeeds: bool = False) -> None:
        body: dict[str, Any] = {}
        if merge_when_pipeline_succeeds:
            body["merge_when_pipeline_succeeds"] = True
        self._request("PUT", f"/merge_requests/{review_id}/merge", json=body or None)

    def get_review(self, review_id: int) -> Review:
        return _review_from(self._request("GET", f"/merge_requests/{review_id}"))

    def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        url = f"{self._project_url}{endpoint}"
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self._session.request(method, url, **kwargs)
        except requests.exceptions.RequestException as exc:
            raise ReviewClientError(f"{method} {endpoint} failed: {exc}") from exc

        if response.status_code in _AUTH_STATUS_CODES:
            raise ReviewAuthError(
                f"review host refused credentials for {method} {endpoint}",
                status_code=response.status_code,
            )
        if not response.ok:
            raise ReviewClientError(
                f"{method} {endpoint} returned {response.status_code}: {_error_text(response)}",
                status_code=response.status_code,
            )
        if not response.text:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise ReviewClientError(f"{method} {endpoint} returned invalid JSON") from exc


def review_client_for(
    settings: PatchflowSettings,
    repo: RepoSettings,
    *,
    session: requests.Session | None = None,
) -> GitLabReviewClient | None:
    """Build a client for ``repo`` when a review host with a token covers its URL."""

    if not repo.url:
        return None
    host = settings.review_host_for(repo.url)
    if host is None or not host.token:
        logger.debug("no review host credentials for %s", repo.url)
        return None
    return GitLabReviewClient(
        host.base_url,
        host.token,
        project_path_for(repo.url, host.base_url),
        session=session,
    )


def _reviews_from(payload: Any) -> list[Review]:
    if not isinstance(payload, list):
        raise ReviewClientError("expected a list of merge requests")
    return [_review_from(item) for item in payload]


def _review_from(payload: Any) -> Review:
    if not isinstance(payload, dict):
        raise ReviewClientError("expected a merge request object")
    try:
        return Review(
            review_id=int(payload["iid"]),
            title=str(payload.get("title", "")),
            web_url=str(payload.get("web_url", "")),
            state=str(payload.get("state", "")),
            source_branch=str(payload.get("source_branch", "")),
            target_branch=str(payload.get("target_branch", "")),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ReviewClientError(f"malformed merge request payload: {exc}") from exc


def _error_text(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:200]
    return str(body)[:200]


__all__ = [
    "GitLabReviewClient",
    "RemoteReviewAdapter",
    "Review",
    "ReviewAuthError",
    "ReviewClientError",
    "project_path_for",
    "review_client_for",
]
