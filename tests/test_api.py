"""Tests for the HTTP surface using FastAPI's TestClient."""

import pytest
from conftest import add_issue, make_item
from fastapi.testclient import TestClient

from scout import __version__
from scout.api import create_app
from scout.models import TrackerItem, TrackerPage
from scout.providers.base import TrackerProvider
from scout.runtime import Runtime


class StaticTracker(TrackerProvider):
    def __init__(self, items: list[TrackerItem]) -> None:
        self.items = items

    def list_open_items(self, repo_ref: str, page_size: int, position: int | str | None) -> TrackerPage:
        return TrackerPage(items=self.items, has_next=False)


@pytest.fixture
def client(runtime: Runtime) -> TestClient:
    return TestClient(create_app(runtime))


def _launch(client: TestClient, issue_id: int) -> dict:
    response = client.post(f"/api/issues/{issue_id}/launch")
    assert response.status_code == 200, response.text
    return response.json()


class TestHealth:
    def test_ok(self, client: TestClient) -> None:
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": __version__}


class TestCallback:
    def test_post_complete(self, client: TestClient, db, github_issue) -> None:
        launched = _launch(client, github_issue.id)

        response = client.post("/api/callback", json={"callback_id": launched["callback_id"], "status": "complete"})

        assert response.status_code == 200
        body = response.json()
        assert body["ignored"] is False
        assert body["pr_status"] == "branch_pushed"
        assert body["message"] == "Callback processed successfully"
        assert db.require_issue(github_issue.id).pr_status == "branch_pushed"

    def test_get_form(self, client: TestClient, db, github_issue) -> None:
        launched = _launch(client, github_issue.id)

        response = client.get("/api/callback", params={"id": launched["callback_id"], "status": "failed"})

        assert response.status_code == 200
        assert response.json()["pr_status"] == "failed"

    def test_duplicate_is_acknowledged(self, client: TestClient, github_issue) -> None:
        launched = _launch(client, github_issue.id)
        payload = {"callback_id": launched["callback_id"], "status": "complete"}
        client.post("/api/callback", json=payload)

        response = client.post("/api/callback", json=payload)

        assert response.status_code == 200
        assert response.json()["ignored"] is True

    def test_unknown_callback_is_404(self, client: TestClient) -> None:
        response = client.post("/api/callback", json={"callback_id": "nope", "status": "complete"})
        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "not_found"

    def test_bad_status_is_400(self, client: TestClient) -> None:
        response = client.post("/api/callback", json={"callback_id": "abc", "status": "done"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["kind"] == "invalid_argument"
        assert "status" in error["message"]

    def test_missing_id_on_get_is_400(self, client: TestClient) -> None:
        response = client.get("/api/callback", params={"status": "complete"})
        assert response.status_code == 400
        assert response.json()["error"]["kind"] == "invalid_argument"


class TestIssueActions:
    def test_launch(self, client: TestClient, db, github_issue, supervisor) -> None:
        launched = _launch(client, github_issue.id)

        assert launched["branch_name"].startswith("scout/")
        assert len(supervisor.spawned) == 1
        assert db.require_issue(github_issue.id).pr_status == "in_progress"

    def test_launch_with_context(self, client: TestClient, github_issue, settings) -> None:
        response = client.post(
            f"/api/issues/{github_issue.id}/launch", json={"context": "Only touch the auth module."}
        )
        assert response.status_code == 200
        callback_id = response.json()["callback_id"]
        prompts = "".join(p.read_text() for p in (settings.runs_root / callback_id).glob("*.md"))
        assert "Only touch the auth module." in prompts

    def test_second_launch_conflicts(self, client: TestClient, github_issue) -> None:
        _launch(client, github_issue.id)
        response = client.post(f"/api/issues/{github_issue.id}/launch")
        assert response.status_code == 409
        assert response.json()["error"]["kind"] == "conflict"

    def test_launch_unknown_issue(self, client: TestClient) -> None:
        response = client.post("/api/issues/999/launch")
        assert response.status_code == 404

    def test_cancel(self, client: TestClient, db, github_issue) -> None:
        launched = _launch(client, github_issue.id)

        response = client.post(f"/api/issues/{github_issue.id}/cancel")

        assert response.status_code == 200
        body = response.json()
        assert body["cancelled_callbacks"] == [launched["callback_id"]]
        assert body["terminated_process_count"] == 1
        assert db.require_issue(github_issue.id).pr_status == "none"


class TestRepoEndpoints:
    def test_issue_pagination(self, client: TestClient, db, github_repo) -> None:
        for n in range(1, 6):
            add_issue(db, github_repo, make_item(n, created_at=f"2026-01-0{n}T00:00:00Z"))

        response = client.get(f"/api/repos/{github_repo.id}/issues", params={"page": 2, "per_page": 2})

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 5
        assert body["total_pages"] == 3
        assert [i["source_id"] for i in body["issues"]] == ["acme/widgets#3", "acme/widgets#2"]

    def test_issues_of_unknown_repo(self, client: TestClient) -> None:
        response = client.get("/api/repos/42/issues")
        assert response.status_code == 404

    def test_per_page_out_of_range(self, client: TestClient, github_repo) -> None:
        response = client.get(f"/api/repos/{github_repo.id}/issues", params={"per_page": 0})
        assert response.status_code == 400

    def test_sync_and_reset(self, settings, vcs, supervisor, db, github_repo) -> None:
        tracker = StaticTracker([make_item(1), make_item(2)])
        runtime = Runtime(settings, vcs=vcs, supervisor=supervisor, provider_factory=lambda source: tracker)
        client = TestClient(create_app(runtime))

        response = client.post(f"/api/repos/{github_repo.id}/sync")
        assert response.status_code == 200
        assert response.json() == {"new": 2, "updated": 0, "fetched_count": 2, "has_more": False}

        response = client.post(f"/api/repos/{github_repo.id}/sync/reset")
        assert response.status_code == 200
        assert response.json()["has_more"] is True
        assert response.json()["next_page"] == 1


class TestUnhandledErrors:
    def test_internal_error_envelope(self, runtime: Runtime, github_issue, monkeypatch: pytest.MonkeyPatch) -> None:
        def broken(db):
            raise RuntimeError("boom")

        monkeypatch.setattr(runtime, "canceller", broken)
        client = TestClient(create_app(runtime), raise_server_exceptions=False)

        response = client.post(f"/api/issues/{github_issue.id}/cancel")

        assert response.status_code == 500
        assert response.json() == {"error": {"kind": "internal", "message": "Internal server error."}}
