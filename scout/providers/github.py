"""GitHub REST API v3 provider."""

import logging
import subprocess

import httpx

from scout.errors import UpstreamError, ValidationError
from scout.models import PullRequestRef, TrackerItem, TrackerPage
from scout.providers.base import TrackerProvider
from scout.settings import ScoutSettings

BASE_URL = "https://api.github.com"
RATE_LIMIT_WARNING = 10

logger = logging.getLogger(__name__)


def repo_from_remote_url(url: str) -> str | None:
    """Parse a git remote URL to 'owner/repo' if it points at github.com."""
    cleaned = url.strip().removesuffix(".git")
    for prefix in ("git@github.com:", "https://github.com/", "http://github.com/", "ssh://git@github.com/"):
        if cleaned.startswith(prefix):
            path = cleaned[len(prefix) :].strip("/")
            if path.count("/") == 1:
                return path
    return None


class GitHubProvider(TrackerProvider):
    source = "github"

    def __init__(self, settings: ScoutSettings) -> None:
        self._token = self._resolve_token(settings)
        self._timeout = settings.http_timeout
        self._headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "scout",
        }

    def _resolve_token(self, settings: ScoutSettings) -> str:
        if settings.github_auth == "gh-cli":
            result = subprocess.run(
                ["gh", "auth", "token"],
                capture_output=True,
                text=True,
            )
            if result.returncode != 0:
                raise ValidationError("gh auth token failed. Run: gh auth login")
            return result.stdout.strip()
        if settings.github_token:
            return settings.github_token.get_secret_value()
        raise ValidationError("GitHub token not configured. Set SCOUT_GITHUB_TOKEN or github_token in the config file.")

    def _get(self, path: str, params: dict | None = None) -> httpx.Response:
        try:
            response = httpx.get(
                f"{BASE_URL}{path}",
                headers=self._headers,
                params=params or {},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"GitHub request failed: {exc}") from exc

        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is not None and remaining.isdigit() and int(remaining) < RATE_LIMIT_WARNING:
            logger.warning("GitHub API rate limit low: %s requests remaining", remaining)

        if response.status_code == 401:
            raise UpstreamError("GitHub API returned 401. Update the GitHub token in the scout config.")
        if response.status_code >= 400:
            try:
                message = response.json().get("message", "Unknown error")
            except ValueError:
                message = response.text or "Unknown error"
            raise UpstreamError(f"GitHub API error ({response.status_code}): {message}")
        return response

    def _item_from_node(self, node: dict, repo_ref: str) -> TrackerItem:
        return TrackerItem(
            source_id=f"{repo_ref}#{node['number']}",
            url=node["html_url"],
            title=node["title"],
            body=node.get("body") or "",
            labels=[label["name"] for label in node.get("labels", [])],
            priority=None,  # GitHub has no native priority
            status="open" if node.get("state", "open") == "open" else "closed",
            created_at=node.get("created_at"),
        )

    def list_open_items(self, repo_ref: str, page_size: int, position: int | str | None) -> TrackerPage:
        # The search API returns issues only (no PRs), newest first.
        page = int(position or 1)
        response = self._get(
            "/search/issues",
            params={
                "q": f"repo:{repo_ref} type:issue state:open",
                "per_page": str(page_size),
                "page": str(page),
                "sort": "created",
                "order": "desc",
            },
        )
        items = [self._item_from_node(node, repo_ref) for node in response.json().get("items", [])]
        has_next = "next" in response.links
        return TrackerPage(items=items, has_next=has_next, next_position=page + 1 if has_next else None)

    def list_open_pull_requests(self, repo_ref: str) -> list[PullRequestRef]:
        response = self._get(f"/repos/{repo_ref}/pulls", params={"state": "open", "per_page": "100"})
        return [
            PullRequestRef(
                branch_ref=pr.get("head", {}).get("ref", ""),
                url=pr.get("html_url", ""),
                is_draft=bool(pr.get("draft")),
            )
            for pr in response.json()
        ]
