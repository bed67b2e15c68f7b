"""
patchflow — integration plane

Purpose
- Adapters to the outside world: the git CLI working copy, the GitLab review host,
  post-merge shell hooks, and origin URL discovery.

Functional requirements
- Protected branch names are refused before any git or review call is made.
- Raw subprocess and HTTP failures surface as typed errors for the control plane
  to translate.
"""

from patchflow.integration_plane.git_engine import (
    CherryPickConflictError,
    CherryPickOutcome,
    CommandResult,
    GitCommandError,
    GitEngine,
    GitEngineError,
    OpenReviewBlocksDeletionError,
    ProtectedBranchError,
    ProtectedBranchPolicy,
    SourceControlAdapter,
)
from patchflow.integration_plane.hooks import HookResult, HookRunner, hooks_succeeded
from patchflow.integration_plane.remote_url import (
    RemoteUrlError,
    find_origin_url,
    new_review_url,
    to_https,
)
from patchflow.integration_plane.review_client import (
    GitLabReviewClient,
    RemoteReviewAdapter,
    Review,
    ReviewAuthError,
    ReviewClientError,
    project_path_for,
    review_client_for,
)

__all__ = [
    "CherryPickConflictError",
    "CherryPickOutcome",
    "CommandResult",
    "GitCommandError",
    "GitEngine",
    "GitEngineError",
    "GitLabReviewClient",
    "HookResult",
    "HookRunner",
    "OpenReviewBlocksDeletionError",
    "ProtectedBranchError",
    "ProtectedBranchPolicy",
    "RemoteReviewAdapter",
    "RemoteUrlError",
    "Review",
    "ReviewAuthError",
    "ReviewClientError",
    "SourceControlAdapter",
    "find_origin_url",
    "hooks_succeeded",
    "new_review_url",
    "project_path_for",
    "review_client_for",
    "to_https",
]
