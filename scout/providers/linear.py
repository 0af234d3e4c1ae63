"""Linear GraphQL API provider."""

import logging

import httpx

from scout.errors import UpstreamError, ValidationError
from scout.models import TrackerItem, TrackerPage
from scout.providers.base import TrackerProvider
from scout.settings import ScoutSettings

ENDPOINT = "https://api.linear.app/graphql"
MAX_PAGE_SIZE = 100

logger = logging.getLogger(__name__)

_TEAM_ISSUES_PAGE = """
query TeamIssuesPage($teamId: String!, $first: Int!, $after: String) {
  team(id: $teamId) {
    issues(
      filter: { state: { type: { nin: ["completed", "canceled"] } } }
      first: $first
      after: $after
    ) {
      pageInfo { hasNextPage endCursor }
      nodes {
        id
        identifier
        url
        title
        description
        priority
        priorityLabel
        labels { nodes { name } }
        state { name type }
        createdAt
      }
    }
  }
}
"""


class LinearProvider(TrackerProvider):
    source = "linear"

    def __init__(self, settings: ScoutSettings) -> None:
        if not settings.linear_api_key:
            raise ValidationError("Linear token not configured. Set SCOUT_LINEAR_API_KEY or linear_api_key.")
        self._api_key = settings.linear_api_key.get_secret_value()
        self._timeout = settings.http_timeout

    def _gql(self, query: str, variables: dict | None = None) -> dict:
        try:
            response = httpx.post(
                ENDPOINT,
                json={"query": query, "variables": variables or {}},
                headers={
                    # Linear takes the bare key, not a Bearer token
                    "Authorization": self._api_key,
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Linear request failed: {exc}") from exc

        if response.status_code >= 400:
            try:
                message = response.json()["errors"][0]["message"]
            except (ValueError, KeyError, IndexError, TypeError):
                message = f"HTTP {response.status_code}"
            raise UpstreamError(f"Linear API error: {message}")

        data = response.json()
        errors = data.get("errors")
        if errors:
            messages = ", ".join(e.get("message", "Unknown error") for e in errors)
            if not data.get("data"):
                raise UpstreamError(f"Linear API error: {messages}")
            # Partial data is still usable.
            logger.warning("Linear API returned errors alongside data: %s", messages)
        return data["data"]

    def _item_from_node(self, node: dict) -> TrackerItem:
        state_type = (node.get("state") or {}).get("type")
        return TrackerItem(
            source_id=node["identifier"],
            url=node["url"],
            title=node["title"],
            body=node.get("description") or "",
            labels=[label["name"] for label in node.get("labels", {}).get("nodes", [])],
            priority=node.get("priorityLabel"),
            status="closed" if state_type in ("completed", "canceled") else "open",
            created_at=node.get("createdAt"),
        )

    def list_open_items(self, repo_ref: str, page_size: int, position: int | str | None) -> TrackerPage:
        variables = {
            "teamId": repo_ref,
            "first": min(max(int(page_size), 1), MAX_PAGE_SIZE),
            "after": position if isinstance(position, str) and position else None,
        }
        data = self._gql(_TEAM_ISSUES_PAGE, variables)
        team = data.get("team")
        if not team:
            raise UpstreamError(f"Linear team '{repo_ref}' not found")
        issues = team["issues"]
        page_info = issues.get("pageInfo") or {}
        has_next = bool(page_info.get("hasNextPage"))
        return TrackerPage(
            items=[self._item_from_node(n) for n in issues.get("nodes", [])],
            has_next=has_next,
            next_position=page_info.get("endCursor"),
        )
