"""Origin URL discovery and web URL helpers for working copies."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Final
from urllib.parse import quote

_SSH_URL_RE: Final[re.Pattern[str]] = re.compile(r"^(?:ssh://)?git@([\w.-]+)[:/](.+?)$")
_GIT_PROTOCOL_RE: Final[re.Pattern[str]] = re.compile(r"^git://([\w.-]+)/(.+)$")
_ORIGIN_SECTION: Final[str] = '[remote "origin"]'


class RemoteUrlError(ValueError):
    """Raised when a working copy has no usable origin URL."""


def to_https(url: str) -> str:
    """Rewrite ssh/git protocol remotes to their https form and drop the ``.git`` suffix."""

    cleaned = url.strip()
    for pattern in (_SSH_URL_RE, _GIT_PROTOCOL_RE):
        match = pattern.match(cleaned)
        if match is not None:
            cleaned = f"https://{match.group(1)}/{match.group(2)}"
            break
    return cleaned.removesuffix(".git").rstrip("/")


def find_origin_url(repo_path: Path | str) -> str:
    """Read the ``origin`` remote URL from ``.git/config`` and normalize it to https."""

    config_path = Path(repo_path) / ".git" / "config"
    try:
        lines = config_path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise RemoteUrlError(f"cannot read git config {config_path}: {exc}") from exc

    in_origin = False
    for raw in lines:
        line = raw.strip()
        if line.startswith("["):
            in_origin = line.startswith(_ORIGIN_SECTION)
            continue
        if not in_origin:
            continue
        key, sep, value = line.partition("=")
        if sep and key.strip() == "url" and value.strip():
            return to_https(value)
    raise RemoteUrlError(f"no origin url configured in {config_path}")


def new_review_url(repo_url: str, source_branch: str, target_branch: str) -> str:
    """Web URL that opens the "new merge request" form for ``source -> target``."""

    query = (
        f"merge_request%5Bsource_branch%5D={quote(source_branch, safe='')}"
        f"&merge_request%5Btarget_branch%5D={quote(target_branch, safe='')}"
    )
    return f"{repo_url.rstrip('/')}/merge_requests/new?{query}"


__all__ = ["RemoteUrlError", "find_origin_url", "new_review_url", "to_https"]
