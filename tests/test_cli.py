"""Smoke tests for the CLI commands using typer CliRunner."""

from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import add_issue, make_item
from pytest_httpx import HTTPXMock
from typer.testing import CliRunner

from scout.analysis import ModelClient
from scout.main import app

runner = CliRunner()

CALLBACK_URL = "http://scout.test/api/callback"


class ScriptedClient(ModelClient):
    def complete(self, prompt: str, model: str) -> str:
        return '{"assessment": "agentic_pr_capable", "summary": "Small fix."}'


def _invoke(runtime, args: list[str]):
    with patch("scout.main.get_runtime", return_value=runtime):
        return runner.invoke(app, args)


class TestAddRepo:
    def test_adds_github_repo(self, runtime, db, checkout: Path) -> None:
        result = _invoke(runtime, ["add-repo", "github", "acme/widgets", "--path", str(checkout), "--auto-pr"])

        assert result.exit_code == 0, result.output
        assert "Added repo" in result.output
        [repo] = db.list_repos()
        assert repo.source_id == "acme/widgets"
        assert repo.name == "acme/widgets"
        assert repo.auto_create_pr
        assert repo.local_path == str(checkout.resolve())

    def test_unknown_source(self, runtime, db) -> None:
        result = _invoke(runtime, ["add-repo", "jira", "ENG"])
        assert result.exit_code == 1
        assert "Unknown source" in result.output
        assert db.list_repos() == []

    def test_duplicate_exits(self, runtime, github_repo) -> None:
        result = _invoke(runtime, ["add-repo", "github", "acme/widgets"])
        assert result.exit_code == 1
        assert "Cannot add repo" in result.output


class TestUpdateAndDeleteRepo:
    def test_update_mode(self, runtime, db, github_repo) -> None:
        result = _invoke(runtime, ["update-repo", str(github_repo.id), "--mode", "quick", "--branch", "develop"])
        assert result.exit_code == 0, result.output
        repo = db.require_repo(github_repo.id)
        assert (repo.default_mode, repo.default_branch) == ("quick", "develop")

    def test_nothing_to_update(self, runtime, github_repo) -> None:
        result = _invoke(runtime, ["update-repo", str(github_repo.id)])
        assert result.exit_code == 0
        assert "Nothing to update" in result.output

    def test_delete_with_yes(self, runtime, db, github_issue, github_repo) -> None:
        result = _invoke(runtime, ["delete-repo", str(github_repo.id), "--yes"])
        assert result.exit_code == 0, result.output
        assert db.get_repo(github_repo.id) is None
        assert db.get_issue(github_issue.id) is None

    def test_delete_unknown_repo(self, runtime) -> None:
        result = _invoke(runtime, ["delete-repo", "99", "--yes"])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestListing:
    def test_repos_table(self, runtime, github_repo) -> None:
        result = _invoke(runtime, ["repos"])
        assert result.exit_code == 0
        assert "widgets" in result.output

    def test_issues_table(self, runtime, db, github_repo) -> None:
        add_issue(db, github_repo, make_item(7, title="Crash"))
        result = _invoke(runtime, ["issues", str(github_repo.id)])
        assert result.exit_code == 0, result.output
        assert "Crash" in result.output
        assert "1 issue(s)" in result.output


class TestRuns:
    def test_launch_then_cancel(self, runtime, db, github_issue, supervisor) -> None:
        result = _invoke(runtime, ["launch", str(github_issue.id), "--context", "Keep it small"])
        assert result.exit_code == 0, result.output
        assert "Launched run" in result.output
        assert len(supervisor.spawned) == 1
        assert db.require_issue(github_issue.id).pr_status == "in_progress"

        result = _invoke(runtime, ["cancel", str(github_issue.id)])
        assert result.exit_code == 0, result.output
        assert "Cancelled 1 run(s)" in result.output
        assert db.require_issue(github_issue.id).pr_status == "none"

    def test_launch_conflict_exits(self, runtime, github_issue) -> None:
        _invoke(runtime, ["launch", str(github_issue.id)])
        result = _invoke(runtime, ["launch", str(github_issue.id)])
        assert result.exit_code == 1
        assert "already has a run in progress" in result.output

    def test_launch_unknown_issue(self, runtime) -> None:
        result = _invoke(runtime, ["launch", "404"])
        assert result.exit_code == 1
        assert "not found" in result.output


class TestAnalyze:
    def test_requires_exactly_one_target(self, runtime, github_repo) -> None:
        result = _invoke(runtime, ["analyze"])
        assert result.exit_code == 1
        result = _invoke(runtime, ["analyze", str(github_repo.id), "--issue", "1"])
        assert result.exit_code == 1

    def test_single_issue(self, runtime, db, github_issue, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(runtime, "model_client", lambda model: ScriptedClient())
        result = _invoke(runtime, ["analyze", "--issue", str(github_issue.id)])

        assert result.exit_code == 0, result.output
        assert "agentic_pr_capable" in result.output
        assert db.require_issue(github_issue.id).assessment == "agentic_pr_capable"

    def test_repo_batch(self, runtime, db, github_repo, monkeypatch: pytest.MonkeyPatch) -> None:
        add_issue(db, github_repo, make_item(1))
        add_issue(db, github_repo, make_item(2))
        monkeypatch.setattr(runtime, "model_client", lambda model: ScriptedClient())
        result = _invoke(runtime, ["analyze", str(github_repo.id), "--limit", "1"])

        assert result.exit_code == 0, result.output
        assert "1 analyzed, 1 still pending" in result.output


class TestReport:
    def test_posts_callback(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            url=CALLBACK_URL,
            json={"ignored": False, "pr_status": "pr_created", "message": "Callback processed successfully"},
        )
        result = runner.invoke(
            app, ["report", "abc123", "complete", "--pr-url", "https://github.com/acme/widgets/pull/7", "--url", CALLBACK_URL]
        )

        assert result.exit_code == 0, result.output
        assert "Callback processed successfully" in result.output
        request = httpx_mock.get_request()
        assert request is not None
        assert b'"callback_id":"abc123"' in request.content.replace(b" ", b"")

    def test_rejected_callback_exits(self, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(
            url=CALLBACK_URL,
            status_code=404,
            json={"error": {"kind": "not_found", "message": "Callback abc123 not found"}},
        )
        result = runner.invoke(app, ["report", "abc123", "failed", "--url", CALLBACK_URL])
        assert result.exit_code == 1
        assert "Callback abc123 not found" in result.output

    def test_invalid_status(self) -> None:
        result = runner.invoke(app, ["report", "abc123", "done", "--url", CALLBACK_URL])
        assert result.exit_code == 1
        assert "Unknown status" in result.output


class TestConfigShow:
    def test_masks_secrets(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCOUT_GITHUB_TOKEN", "ghp_supersecretvalue12345")
        result = runner.invoke(app, ["config-show"])
        assert result.exit_code == 0, result.output
        assert "supersecretvalue" not in result.output
        assert "12345" in result.output

    def test_unset_secret(self) -> None:
        result = runner.invoke(app, ["config-show"])
        assert result.exit_code == 0
        assert "not set" in result.output
