"""Tests for CallbackGateway: the run state table and its idempotency rules."""

from pathlib import Path

import pytest

from scout.callbacks import resolve_pr_status
from scout.errors import NotFoundError, ValidationError
from scout.models import Issue, LaunchResult


@pytest.fixture
def launched(runtime, db, github_issue: Issue) -> LaunchResult:
    return runtime.launcher(db).launch(github_issue.id)


class TestResolvePrStatus:
    @pytest.mark.parametrize(
        ("reported", "auto_pr", "pr_url", "expected"),
        [
            ("complete", True, "https://github.com/acme/widgets/pull/7", "pr_created"),
            ("complete", True, None, "needs_review"),
            ("complete", False, None, "branch_pushed"),
            ("complete", False, "https://github.com/acme/widgets/pull/7", "branch_pushed"),
            ("failed", True, None, "failed"),
            ("failed", False, None, "failed"),
            ("needs_review", True, None, "needs_review"),
            ("needs_review", False, None, "needs_review"),
        ],
    )
    def test_table(self, reported: str, auto_pr: bool, pr_url: str | None, expected: str) -> None:
        assert resolve_pr_status(reported, auto_pr, pr_url) == expected


class TestHandleCallback:
    def test_complete_without_auto_pr(self, runtime, db, github_issue: Issue, launched: LaunchResult) -> None:
        ack = runtime.callbacks(db).handle_callback(launched.callback_id, "complete")

        assert not ack.ignored
        assert ack.pr_status == "branch_pushed"
        issue = db.require_issue(github_issue.id)
        assert issue.pr_status == "branch_pushed"
        assert issue.pr_branch == launched.branch_name
        callback = db.get_callback(launched.callback_id)
        assert callback is not None
        assert callback.status == "complete"
        assert callback.completed_at is not None

    def test_complete_with_pr_url(self, runtime, db, github_repo, github_issue: Issue) -> None:
        db.update_repo(github_repo.id, auto_create_pr=True)
        launched = runtime.launcher(db).launch(github_issue.id)
        url = "https://github.com/acme/widgets/pull/7"

        ack = runtime.callbacks(db).handle_callback(launched.callback_id, "complete", pr_url=url)

        assert ack.pr_status == "pr_created"
        issue = db.require_issue(github_issue.id)
        assert issue.pr_url == url

    def test_failed_keeps_error_text_off_the_issue(
        self, runtime, db, github_issue: Issue, launched: LaunchResult
    ) -> None:
        runtime.callbacks(db).handle_callback(launched.callback_id, "failed", error="tests did not pass")
        issue = db.require_issue(github_issue.id)
        assert issue.pr_status == "failed"
        assert issue.pr_url is None
        callback = db.get_callback(launched.callback_id)
        assert callback is not None
        assert callback.error == "tests did not pass"

    def test_reclaims_workspace_and_prompts(self, runtime, db, launched: LaunchResult, settings) -> None:
        callback = db.get_callback(launched.callback_id)
        assert callback is not None
        worktree = Path(callback.worktree_path or "")
        assert worktree.is_dir()

        runtime.callbacks(db).handle_callback(launched.callback_id, "complete")

        assert not worktree.exists()
        assert not (settings.runs_root / launched.callback_id).exists()

    def test_duplicate_delivery_is_ignored(self, runtime, db, github_issue: Issue, launched: LaunchResult) -> None:
        gateway = runtime.callbacks(db)
        gateway.handle_callback(launched.callback_id, "complete")
        before = db.require_issue(github_issue.id)

        ack = gateway.handle_callback(launched.callback_id, "failed")

        assert ack.ignored
        assert ack.message == "Callback already processed"
        after = db.require_issue(github_issue.id)
        assert after.pr_status == before.pr_status == "branch_pushed"
        callback = db.get_callback(launched.callback_id)
        assert callback is not None
        assert callback.status == "complete"

    def test_unknown_callback(self, runtime, db) -> None:
        with pytest.raises(NotFoundError):
            runtime.callbacks(db).handle_callback("nope", "complete")

    def test_invalid_status(self, runtime, db, launched: LaunchResult) -> None:
        with pytest.raises(ValidationError):
            runtime.callbacks(db).handle_callback(launched.callback_id, "cancelled")
        callback = db.get_callback(launched.callback_id)
        assert callback is not None
        assert callback.status == "pending"

    def test_empty_id(self, runtime, db) -> None:
        with pytest.raises(ValidationError):
            runtime.callbacks(db).handle_callback("", "complete")


class TestCancelThenCallback:
    def test_late_callback_after_cancel_changes_nothing(
        self, runtime, db, github_issue: Issue, launched: LaunchResult
    ) -> None:
        runtime.canceller(db).cancel(github_issue.id)

        ack = runtime.callbacks(db).handle_callback(launched.callback_id, "complete")

        assert ack.ignored
        assert ack.message == "Callback ignored because run was cancelled"
        issue = db.require_issue(github_issue.id)
        assert issue.pr_status == "none"
        assert issue.pr_branch is None
        callback = db.get_callback(launched.callback_id)
        assert callback is not None
        assert callback.status == "cancelled"

    def test_callback_then_cancel_leaves_terminal_run(
        self, runtime, db, github_issue: Issue, launched: LaunchResult, supervisor
    ) -> None:
        runtime.callbacks(db).handle_callback(launched.callback_id, "complete")
        result = runtime.canceller(db).cancel(github_issue.id)
        assert result.cancelled_callbacks == []
        callback = db.get_callback(launched.callback_id)
        assert callback is not None
        assert callback.status == "complete"
