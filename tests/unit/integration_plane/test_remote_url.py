"""Unit tests for origin URL discovery and review URL helpers."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from patchflow.integration_plane.remote_url import (
    RemoteUrlError,
    find_origin_url,
    new_review_url,
    to_https,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("git@gitlab.example.com:team/svc.git", "https://gitlab.example.com/team/svc"),
        ("ssh://git@gitlab.example.com/team/svc.git", "https://gitlab.example.com/team/svc"),
        ("git://gitlab.example.com/team/svc.git", "https://gitlab.example.com/team/svc"),
        ("https://gitlab.example.com/team/svc.git", "https://gitlab.example.com/team/svc"),
        ("  https://gitlab.example.com/team/svc/  ", "https://gitlab.example.com/team/svc"),
    ],
)
def test_to_https(raw: str, expected: str) -> None:
    assert to_https(raw) == expected


def write_git_config(repo: Path, body: str) -> None:
    git_dir = repo / ".git"
    git_dir.mkdir(parents=True)
    (git_dir / "config").write_text(body, encoding="utf-8")


def test_find_origin_url_reads_origin_section_only(tmp_path: Path) -> None:
    write_git_config(
        tmp_path,
        "[core]\n"
        "\tbare = false\n"
        '[remote "upstream"]\n'
        "\turl = git@other.example.com:fork/svc.git\n"
        '[remote "origin"]\n'
        "\turl = git@gitlab.example.com:team/svc.git\n"
        "\tfetch = +refs/heads/*:refs/remotes/origin/*\n",
    )

    assert find_origin_url(tmp_path) == "https://gitlab.example.com/team/svc"


def test_find_origin_url_without_origin(tmp_path: Path) -> None:
    write_git_config(tmp_path, "[core]\n\tbare = false\n")

    with pytest.raises(RemoteUrlError, match="no origin url"):
        find_origin_url(tmp_path)


def test_find_origin_url_outside_working_copy(tmp_path: Path) -> None:
    with pytest.raises(RemoteUrlError, match="cannot read git config"):
        find_origin_url(tmp_path / "nowhere")


def test_new_review_url_escapes_branch_names() -> None:
    url = new_review_url("https://gitlab.example.com/team/svc/", "ABC-1_x_release/2", "release/2")

    assert url == (
        "https://gitlab.example.com/team/svc/merge_requests/new?"
        "merge_request%5Bsource_branch%5D=ABC-1_x_release%2F2"
        "&merge_request%5Btarget_branch%5D=release%2F2"
    )
