"""
patchflow — unit tests for the push synchronization engine

Purpose
- Drive ``SyncEngine`` against in-memory working-copy, review-host, and operator
  doubles and check replay order, persistence, and review automation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from patchflow.control_plane.operator import ConflictResolution
from patchflow.control_plane.sync_engine import (
    NoCommitsError,
    RemoteUnreachableError,
    RepositoryConfigError,
    TargetBranchError,
    preserve_checkout,
    review_title,
)
from patchflow.domain.models import CommitType, MergeOutcome, Ticket
from patchflow.integration_plane.git_engine import CherryPickConflictError, CherryPickOutcome

from . import (
    FakeReviews,
    FakeScm,
    RecordingHooks,
    ScriptedOperator,
    git_error,
    make_commit,
    make_engine,
    make_repo,
    make_settings,
    make_store,
)

if TYPE_CHECKING:
    from pathlib import Path

    from patchflow.config.schema import PatchflowSettings


def two_commit_scm() -> FakeScm:
    c1 = make_commit("c1", "ABC-100 add endpoint", 0)
    c2 = make_commit("c2", "ABC-100 fix endpoint", 10)
    # log order is newest first
    return FakeScm(dev_commits=[c2, c1])


def test_push_replays_ticket_onto_every_target(tmp_path: Path) -> None:
    scm = two_commit_scm()
    store = make_store(tmp_path)
    engine = make_engine(make_settings(tmp_path), store, scm, ScriptedOperator())

    report = engine.push(engine.build_request(ticket_id="ABC-100"))

    assert report.ok
    assert [r.staging_branch for r in report.results] == ["ABC-100_x_qa", "ABC-100_x_staging"]
    assert scm.picked == [
        ("ABC-100_x_qa", "c1"),
        ("ABC-100_x_qa", "c2"),
        ("ABC-100_x_staging", "c1"),
        ("ABC-100_x_staging", "c2"),
    ]
    assert scm.pushes == [
        ("ABC-100_x_qa", {"src_branch": "qa"}),
        ("ABC-100_x_staging", {"src_branch": "staging"}),
    ]
    assert scm.current == "feature/x"

    reloaded = make_store(tmp_path).get("svc", "ABC-100")
    assert reloaded is not None
    assert reloaded.target_branches == ["qa", "staging"]
    assert [b.target_branch for b in reloaded.branches] == ["qa", "staging"]
    for branch in reloaded.branches:
        assert [c.commit_id for c in branch.commits] == ["c1", "c2"]
        assert branch.dev_branch == "feature/x"
        assert not branch.merged


def test_manual_review_url_when_review_creation_disabled(tmp_path: Path) -> None:
    scm = two_commit_scm()
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )

    (result,) = engine.push(engine.build_request(ticket_id="ABC-100")).results

    assert result.review_url == (
        "https://gitlab.example.com/team/svc/merge_requests/new?"
        "merge_request%5Bsource_branch%5D=ABC-100_x_qa&merge_request%5Btarget_branch%5D=qa"
    )
    assert result.outcome is None


def test_second_push_without_new_commits_reports_no_commits(tmp_path: Path) -> None:
    scm = two_commit_scm()
    store = make_store(tmp_path)
    engine = make_engine(make_settings(tmp_path), store, scm, ScriptedOperator())
    engine.push(engine.build_request(ticket_id="ABC-100"))

    report = engine.push(engine.build_request(ticket_id="ABC-100"))

    assert report.results == []
    assert [f.target_branch for f in report.failures] == ["qa", "staging"]
    assert all(isinstance(f.error, NoCommitsError) for f in report.failures)
    ticket = make_store(tmp_path).get("svc", "ABC-100")
    assert ticket is not None
    assert len(ticket.branches) == 2
    assert all(len(branch.commits) == 2 for branch in ticket.branches)


def test_new_commit_is_folded_into_existing_branch(tmp_path: Path) -> None:
    scm = two_commit_scm()
    store = make_store(tmp_path)
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)), store, scm, ScriptedOperator()
    )
    engine.push(engine.build_request(ticket_id="ABC-100"))
    store.get("svc", "ABC-100").branches[0].mark_merged()  # type: ignore[union-attr]
    store.save()
    scm.logs["feature/x"].insert(0, make_commit("c3", "ABC-100 follow-up", 20))

    report = engine.push(engine.build_request(ticket_id="ABC-100"))

    assert [c.commit_id for c in report.results[0].commits] == ["c3"]
    branch = make_store(tmp_path).get("svc", "ABC-100").branches[0]  # type: ignore[union-attr]
    assert [c.commit_id for c in branch.commits] == ["c1", "c2", "c3"]
    assert branch.merged is False


def test_ignore_local_history_offers_recorded_commits_again(tmp_path: Path) -> None:
    scm = two_commit_scm()
    operator = ScriptedOperator()
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)), make_store(tmp_path), scm, operator
    )
    engine.push(engine.build_request(ticket_id="ABC-100"))

    engine.push(engine.build_request(ticket_id="ABC-100", ignore_local_history=True))

    assert operator.shown[-1] == ["c1", "c2"]


def test_declining_commit_list_aborts_without_persisting(tmp_path: Path) -> None:
    scm = two_commit_scm()
    engine = make_engine(
        make_settings(tmp_path), make_store(tmp_path), scm, ScriptedOperator(accept_commits=False)
    )

    report = engine.push(engine.build_request(ticket_id="ABC-100"))

    assert report.aborted
    assert report.results == [] and report.failures == []
    assert scm.pushes == []
    assert scm.current == "feature/x"
    assert make_store(tmp_path).get("svc", "ABC-100") is None


def test_conflict_accept_records_commit_and_continues(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.outcomes["c1"] = CherryPickConflictError("c1", "CONFLICT (content): api.py")
    operator = ScriptedOperator(conflicts=[ConflictResolution.ACCEPT])
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)), make_store(tmp_path), scm, operator
    )

    (result,) = engine.push(engine.build_request(ticket_id="ABC-100")).results

    assert operator.conflicts_seen == ["c1"]
    assert [c.commit_id for c in result.commits] == ["c1", "c2"]
    assert not any(c.already_present for c in result.commits)
    assert scm.skips == 0


def test_conflict_skip_invokes_skip_and_keeps_commit_recorded(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.outcomes["c1"] = CherryPickConflictError("c1", "CONFLICT (content): api.py")
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(conflicts=[ConflictResolution.SKIP]),
    )

    (result,) = engine.push(engine.build_request(ticket_id="ABC-100")).results

    assert scm.skips == 1
    assert [c.commit_id for c in result.commits] == ["c1", "c2"]
    assert result.commits[0].already_present is False


def test_conflict_abort_stops_everything(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.outcomes["c1"] = CherryPickConflictError("c1", "CONFLICT (content): api.py")
    engine = make_engine(
        make_settings(tmp_path),
        make_store(tmp_path),
        scm,
        ScriptedOperator(conflicts=[ConflictResolution.ABORT]),
    )

    report = engine.push(engine.build_request(ticket_id="ABC-100"))

    assert report.aborted
    assert scm.picked == [("ABC-100_x_qa", "c1")]
    assert scm.current == "feature/x"
    assert make_store(tmp_path).get("svc", "ABC-100") is None


def test_already_present_commits_are_flagged(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.outcomes["c1"] = CherryPickOutcome.ALREADY_PRESENT
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )

    (result,) = engine.push(engine.build_request(ticket_id="ABC-100")).results

    assert [(c.commit_id, c.already_present) for c in result.commits] == [
        ("c1", True),
        ("c2", False),
    ]
    assert result.new_commit_count == 1


def test_nothing_new_after_replay_skips_push(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.outcomes["c1"] = CherryPickOutcome.ALREADY_PRESENT
    scm.outcomes["c2"] = CherryPickOutcome.ALREADY_PRESENT
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )

    with pytest.raises(NoCommitsError):
        engine.push(engine.build_request(ticket_id="ABC-100"))

    assert scm.pushes == []
    assert make_store(tmp_path).get("svc", "ABC-100") is None


def test_reverted_commits_are_not_offered(tmp_path: Path) -> None:
    c1 = make_commit("c1", "ABC-100 add endpoint", 0)
    c2 = make_commit("c2", "ABC-100 add flag", 5)
    revert = make_commit("c3", 'Revert "ABC-100 add flag"', 10)
    scm = FakeScm(dev_commits=[revert, c2, c1])
    operator = ScriptedOperator()
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)), make_store(tmp_path), scm, operator
    )

    engine.push(engine.build_request(ticket_id="ABC-100"))

    assert operator.shown == [["c1"]]


def test_existing_staging_branch_is_rebased_and_reused(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.local += ["qa", "ABC-100_x_qa"]
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )

    engine.push(engine.build_request(ticket_id="ABC-100"))

    assert ("rebase", "qa") in scm.calls
    assert ("create_branch", "ABC-100_x_qa") not in scm.calls


def test_failed_rebase_recreates_staging_branch(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.local += ["qa", "ABC-100_x_qa"]
    scm.rebase_fails = True
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )

    report = engine.push(engine.build_request(ticket_id="ABC-100"))

    assert report.ok
    rebase_at = scm.calls.index(("rebase", "qa"))
    assert scm.calls[rebase_at + 1] == ("abort_rebase",)
    assert ("delete_local_branch", "ABC-100_x_qa") in scm.calls
    assert ("create_branch", "ABC-100_x_qa") in scm.calls


def test_diverged_target_is_recreated_from_remote(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.local.append("qa")
    scm.pull_failures["qa"] = 1
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )

    report = engine.push(engine.build_request(ticket_id="ABC-100"))

    assert report.ok
    assert ("switch_branch", "feature/x", "force") in scm.calls
    delete_at = scm.calls.index(("delete_local_branch", "qa"))
    assert scm.calls[delete_at + 1] == ("create_branch_from_remote", "qa")


def test_missing_target_fails_that_target_only(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.remote.discard("staging")
    engine = make_engine(make_settings(tmp_path), make_store(tmp_path), scm, ScriptedOperator())

    report = engine.push(engine.build_request(ticket_id="ABC-100"))

    assert [r.target_branch for r in report.results] == ["qa"]
    (failure,) = report.failures
    assert failure.target_branch == "staging"
    assert isinstance(failure.error, TargetBranchError)
    assert failure.error.branch == "staging"
    ticket = make_store(tmp_path).get("svc", "ABC-100")
    assert ticket is not None and [b.target_branch for b in ticket.branches] == ["qa"]


def test_unreachable_remote_fails_the_push(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.reachable = False
    engine = make_engine(make_settings(tmp_path), make_store(tmp_path), scm, ScriptedOperator())

    with pytest.raises(RemoteUnreachableError) as excinfo:
        engine.push(engine.build_request(ticket_id="ABC-100"))

    assert excinfo.value.project == "svc"
    assert excinfo.value.ticket_id == "ABC-100"
    assert scm.calls == [("switch_branch", "feature/x", ""), ("switch_branch", "feature/x", "")]


def test_dev_branch_equal_to_target_is_rejected(tmp_path: Path) -> None:
    scm = FakeScm(current="qa", dev_commits=[make_commit("c1", "ABC-100 change", 0)])
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )

    with pytest.raises(TargetBranchError):
        engine.push(engine.build_request(ticket_id="ABC-100"))


def test_failed_push_is_reported_per_target(tmp_path: Path) -> None:
    scm = two_commit_scm()
    scm.push_error = git_error("remote: rejected", "push")
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )

    with pytest.raises(TargetBranchError, match="push of ABC-100_x_qa failed"):
        engine.push(engine.build_request(ticket_id="ABC-100"))


def test_repository_without_url_is_rejected(tmp_path: Path) -> None:
    repo = make_repo(tmp_path, url="")
    engine = make_engine(
        make_settings(tmp_path, repo=repo),
        make_store(tmp_path),
        two_commit_scm(),
        ScriptedOperator(),
    )

    with pytest.raises(RepositoryConfigError, match="cannot determine remote address"):
        engine.push(engine.build_request(ticket_id="ABC-100"))


def test_ticket_detected_from_latest_commit_message(tmp_path: Path) -> None:
    scm = FakeScm(dev_commits=[make_commit("c1", "tidy up logging output", 0)])
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )

    request = engine.build_request()

    assert request.commit_type is CommitType.MESSAGE
    assert request.commit_message == "tidy up logging output"
    assert len(request.ticket_id) == 32
    assert request.dev_branch == "feature/x"


def test_planned_targets_are_recorded_on_the_ticket(tmp_path: Path) -> None:
    scm = two_commit_scm()
    store = make_store(tmp_path)
    engine = make_engine(
        make_settings(
            tmp_path,
            target_branches=("qa",),
            planned_target_branches=("qa", "staging", "master"),
        ),
        store,
        scm,
        ScriptedOperator(),
    )

    engine.push(engine.build_request(ticket_id="ABC-100"))

    ticket = make_store(tmp_path).get("svc", "ABC-100")
    assert ticket is not None
    assert ticket.target_branches == ["qa", "staging", "master"]
    assert not ticket.complete


@settings(max_examples=25, deadline=None)
@given(order=st.permutations(range(4)))
def test_commits_are_replayed_oldest_first(
    tmp_path_factory: pytest.TempPathFactory, order: list[int]
) -> None:
    tmp_path = tmp_path_factory.mktemp("order")
    commits = [make_commit(f"c{minute}", f"ABC-100 step {minute}", minute) for minute in order]
    scm = FakeScm(dev_commits=commits)
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )

    engine.push(engine.build_request(ticket_id="ABC-100"))

    assert [commit_id for _branch, commit_id in scm.picked] == ["c0", "c1", "c2", "c3"]


# ----- Review automation -----


def review_settings(tmp_path: Path, **repo_changes: object) -> PatchflowSettings:
    repo = make_repo(tmp_path, create_review=True, auto_merge_branches=("qa",), **repo_changes)
    return make_settings(tmp_path, repo=repo, target_branches=("qa",))


def test_review_is_created_and_accepted(tmp_path: Path) -> None:
    settings_ = review_settings(tmp_path)
    reviews = FakeReviews()
    engine = make_engine(
        settings_, make_store(tmp_path), two_commit_scm(), ScriptedOperator(), reviews=reviews
    )

    (result,) = engine.push(engine.build_request(ticket_id="ABC-100")).results

    assert reviews.created == [
        {
            "title": "ABC-100 add endpoint (+1 more)",
            "source": "ABC-100_x_qa",
            "target": "qa",
            "squash": True,
            "remove_source_branch": True,
        }
    ]
    assert reviews.accept_calls == [(1, False)]
    assert result.outcome is MergeOutcome.OK
    assert result.review_url.endswith("/merge_requests/1")
    ticket = make_store(tmp_path).get("svc", "ABC-100")
    assert ticket is not None
    assert ticket.branches[0].latest_review is not None
    assert ticket.branches[0].latest_review.review_id == 1


def test_open_review_is_reused(tmp_path: Path) -> None:
    settings_ = review_settings(tmp_path)
    reviews = FakeReviews()
    reviews.add_open("ABC-100_x_qa", "qa")
    engine = make_engine(
        settings_, make_store(tmp_path), two_commit_scm(), ScriptedOperator(), reviews=reviews
    )

    engine.push(engine.build_request(ticket_id="ABC-100"))

    assert reviews.created == []
    assert reviews.accept_calls == [(1, False)]


def test_accept_retries_before_succeeding(tmp_path: Path) -> None:
    settings_ = review_settings(tmp_path)
    reviews = FakeReviews(accept_failures=2)
    engine = make_engine(
        settings_, make_store(tmp_path), two_commit_scm(), ScriptedOperator(), reviews=reviews
    )

    (result,) = engine.push(engine.build_request(ticket_id="ABC-100")).results

    assert result.outcome is MergeOutcome.OK
    assert reviews.accept_calls == [(1, False)] * 3


def test_accept_falls_back_to_pipeline_merge(tmp_path: Path) -> None:
    settings_ = review_settings(tmp_path)
    reviews = FakeReviews(accept_failures=4, pipeline_failures=1)
    engine = make_engine(
        settings_, make_store(tmp_path), two_commit_scm(), ScriptedOperator(), reviews=reviews
    )

    (result,) = engine.push(engine.build_request(ticket_id="ABC-100")).results

    assert result.outcome is MergeOutcome.WAIT_PIPELINE
    assert reviews.accept_calls == [(1, False)] * 4 + [(1, True)] * 2


def test_accept_failure_is_recorded_not_raised(tmp_path: Path) -> None:
    settings_ = review_settings(tmp_path)
    reviews = FakeReviews(accept_failures=4, pipeline_failures=3)
    engine = make_engine(
        settings_, make_store(tmp_path), two_commit_scm(), ScriptedOperator(), reviews=reviews
    )

    report = engine.push(engine.build_request(ticket_id="ABC-100"))

    assert report.ok
    assert report.results[0].outcome is MergeOutcome.FAIL
    assert len(reviews.accept_calls) == 7
    ticket = make_store(tmp_path).get("svc", "ABC-100")
    assert ticket is not None and ticket.branches[0].reviews


def test_hooks_run_after_review_merges(tmp_path: Path) -> None:
    settings_ = review_settings(tmp_path, post_merge_hooks={"qa": ("make deploy-qa",)})
    reviews = FakeReviews(merged_after=3)
    hooks = RecordingHooks()
    engine = make_engine(
        settings_,
        make_store(tmp_path),
        two_commit_scm(),
        ScriptedOperator(),
        reviews=reviews,
        hooks=hooks,
    )

    (result,) = engine.push(engine.build_request(ticket_id="ABC-100")).results

    assert reviews.polls == 3
    assert hooks.runs == [["make deploy-qa"]]
    assert result.outcome is MergeOutcome.OK
    assert result.hook_status == "ok"


def test_merge_wait_is_bounded(tmp_path: Path) -> None:
    settings_ = review_settings(tmp_path, post_merge_hooks={"qa": ("make deploy-qa",)})
    reviews = FakeReviews(merged_after=None)
    hooks = RecordingHooks()
    engine = make_engine(
        settings_,
        make_store(tmp_path),
        two_commit_scm(),
        ScriptedOperator(),
        reviews=reviews,
        hooks=hooks,
        poll_attempts=4,
    )

    (result,) = engine.push(engine.build_request(ticket_id="ABC-100")).results

    assert reviews.polls == 4
    assert hooks.runs == []
    assert result.hook_status == "not-merged"


def test_failing_hook_is_reported_without_failing_sync(tmp_path: Path) -> None:
    settings_ = review_settings(tmp_path, post_merge_hooks={"qa": ("false",)})
    engine = make_engine(
        settings_,
        make_store(tmp_path),
        two_commit_scm(),
        ScriptedOperator(),
        reviews=FakeReviews(merged_after=1),
        hooks=RecordingHooks(returncode=1),
    )

    report = engine.push(engine.build_request(ticket_id="ABC-100"))

    assert report.ok
    assert report.results[0].hook_status == "failed"


def test_missing_review_host_falls_back_to_manual_url(tmp_path: Path) -> None:
    settings_ = review_settings(tmp_path)
    engine = make_engine(settings_, make_store(tmp_path), two_commit_scm(), ScriptedOperator())

    (result,) = engine.push(engine.build_request(ticket_id="ABC-100")).results

    assert "/merge_requests/new?" in result.review_url
    assert result.outcome is None


# ----- Helpers -----


class DirtyScm(FakeScm):
    """Working copy whose uncommitted changes block a plain checkout."""

    dirty = False

    def switch_branch(self, name: str, *, force: bool = False) -> None:
        if self.dirty and not force:
            self.calls.append(("switch_branch", name, ""))
            raise git_error("error: Your local changes would be overwritten", "checkout", name)
        self.dirty = False
        super().switch_branch(name, force=force)


def test_preserve_checkout_restores_branch() -> None:
    scm = FakeScm(current="feature/x", local=("qa",))

    with preserve_checkout(scm) as original:
        scm.switch_branch("qa")

    assert original == "feature/x"
    assert scm.current == "feature/x"


def test_preserve_checkout_forces_restore_when_plain_switch_fails() -> None:
    scm = DirtyScm(current="feature/x", local=("qa",))

    with pytest.raises(TargetBranchError), preserve_checkout(scm):
        scm.switch_branch("qa")
        scm.dirty = True
        raise TargetBranchError("boom", project="svc", ticket_id="ABC-100")

    assert scm.current == "feature/x"
    assert scm.calls[-2:] == [
        ("switch_branch", "feature/x", ""),
        ("switch_branch", "feature/x", "force"),
    ]


def test_review_title_uses_oldest_commit() -> None:
    ticket = Ticket(project="svc", ticket_id="ABC-100")
    one = [make_commit("c1", "ABC-100 add endpoint\n\nbody", 0)]
    many = [*one, make_commit("c2", "ABC-100 fix", 1), make_commit("c3", "ABC-100 docs", 2)]

    assert review_title(ticket, one) == "ABC-100 add endpoint"
    assert review_title(ticket, many) == "ABC-100 add endpoint (+2 more)"
    assert review_title(ticket, []) == "ABC-100"


class DetachedScm(FakeScm):
    def current_branch(self) -> str:
        raise git_error("fatal: HEAD is detached", "branch", "--show-current")


class StuckScm(FakeScm):
    """Refuses to leave the staging branch once it has been pushed."""

    def switch_branch(self, name: str, *, force: bool = False) -> None:
        if self.pushes and name == "feature/x":
            self.calls.append(("switch_branch", name, "force" if force else ""))
            raise git_error("error: unable to unlink old 'api.py'", "checkout", name)
        super().switch_branch(name, force=force)


def test_detached_head_is_reported_with_context(tmp_path: Path) -> None:
    scm = DetachedScm(dev_commits=[make_commit("c1", "ABC-100 add endpoint", 0)])
    engine = make_engine(make_settings(tmp_path), make_store(tmp_path), scm, ScriptedOperator())

    with pytest.raises(RepositoryConfigError, match="project=svc ticket=ABC-100"):
        engine.build_request(ticket_id="ABC-100")


def test_detached_head_with_configured_dev_branch_fails_push(tmp_path: Path) -> None:
    scm = DetachedScm(dev_commits=[make_commit("c1", "ABC-100 add endpoint", 0)])
    engine = make_engine(
        make_settings(tmp_path, dev_branch="feature/x"),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )
    request = engine.build_request(ticket_id="ABC-100")

    with pytest.raises(RepositoryConfigError, match="cannot determine the checked-out branch"):
        engine.push(request)
    assert scm.picked == []


def test_unknown_commit_id_as_ticket_is_reported_with_context(tmp_path: Path) -> None:
    engine = make_engine(
        make_settings(tmp_path), make_store(tmp_path), two_commit_scm(), ScriptedOperator()
    )

    with pytest.raises(RepositoryConfigError, match="bad object deadbeef") as excinfo:
        engine.build_request(ticket_id="deadbeef")
    assert excinfo.value.ticket_id == "deadbeef"
    assert excinfo.value.branch == ""


def test_failed_return_to_dev_branch_keeps_ticket(tmp_path: Path) -> None:
    c1 = make_commit("c1", "ABC-100 add endpoint", 0)
    scm = StuckScm(dev_commits=[c1])
    engine = make_engine(
        make_settings(tmp_path, target_branches=("qa",)),
        make_store(tmp_path),
        scm,
        ScriptedOperator(),
    )
    request = engine.build_request(ticket_id="ABC-100")

    with pytest.raises(TargetBranchError, match="could not restore") as excinfo:
        engine.push(request)

    assert excinfo.value.branch == "feature/x"
    assert scm.pushes == [("ABC-100_x_qa", {"src_branch": "qa"})]
    ticket = make_store(tmp_path).get("svc", "ABC-100")
    assert ticket is not None
    assert [b.staging_branch for b in ticket.branches] == ["ABC-100_x_qa"]
