"""Incremental, resumable issue sync and pull-request detection."""

import logging
from collections.abc import Callable
from pathlib import Path

from scout.db import ScoutDB, utc_now
from scout.errors import UpstreamError, ValidationError
from scout.models import RepoSyncState, SyncResult
from scout.providers.base import TrackerProvider
from scout.providers.github import GitHubProvider, repo_from_remote_url
from scout.vcs import VcsTool

logger = logging.getLogger(__name__)


class SyncEngine:
    def __init__(
        self,
        db: ScoutDB,
        provider_for: Callable[[str], TrackerProvider],
        page_size: int = 50,
    ) -> None:
        self.db = db
        self.provider_for = provider_for
        self.page_size = page_size

    def sync_page(self, repo_id: int) -> SyncResult:
        """Fetch one page after the repo's cursor and mirror it.

        The page's upserts and the cursor advance commit together; if either
        fails nothing is written and the next call refetches the same page.
        """
        repo = self.db.require_repo(repo_id)
        state = self.db.get_sync_state(repo.id, self.page_size)
        if not state.has_more:
            logger.debug("Repo %s is fully synced", repo.name)
            return SyncResult(has_more=False)

        position: int | str | None = state.next_page if repo.source == "github" else state.next_cursor
        provider = self.provider_for(repo.source)
        page = provider.list_open_items(repo.source_id, state.page_size, position)

        new = updated = 0
        with self.db.transaction():
            for item in page.items:
                outcome = self.db.upsert_tracker_item(repo.id, repo.source, item)
                if outcome == "inserted":
                    new += 1
                elif outcome == "updated":
                    updated += 1
            advanced = self._advance(state, repo.source, page.has_next, page.next_position, len(page.items))
            self.db.save_sync_state(advanced)

        logger.info(
            "Synced %s: %d new, %d updated, has_more=%s", repo.name, new, updated, page.has_next
        )
        return SyncResult(new=new, updated=updated, fetched_count=len(page.items), has_more=page.has_next)

    def _advance(
        self,
        state: RepoSyncState,
        source: str,
        has_next: bool,
        next_position: int | str | None,
        fetched: int,
    ) -> RepoSyncState:
        update: dict = {"has_more": has_next, "last_fetch_count": fetched, "last_fetch_at": utc_now()}
        if source == "github":
            update["next_page"] = state.next_page + 1
        elif next_position:
            # An exhausted connection may return no end cursor; keep the last one.
            update["next_cursor"] = str(next_position)
        return state.model_copy(update=update)

    def reset(self, repo_id: int) -> RepoSyncState:
        """Rewind the repo's cursor so the next sync starts from the first page."""
        repo = self.db.require_repo(repo_id)
        with self.db.transaction():
            state = self.db.reset_sync_state(repo.id, self.page_size)
        logger.info("Reset sync cursor for %s", repo.name)
        return state


class PullRequestDetector:
    """Matches open pull requests to issues by the branch a run pushed."""

    def __init__(self, db: ScoutDB, github: Callable[[], GitHubProvider], vcs: VcsTool) -> None:
        self.db = db
        self.github = github
        self.vcs = vcs

    def github_repo_for(self, repo_id: int) -> str:
        repo = self.db.require_repo(repo_id)
        if repo.source == "github":
            return repo.source_id
        if not repo.local_path:
            raise ValidationError(f"Repository {repo.name} has no local checkout to find its GitHub remote")
        remote = self.vcs.remote_url(Path(repo.local_path).expanduser())
        github_repo = repo_from_remote_url(remote) if remote else None
        if github_repo is None:
            raise ValidationError(f"Origin remote of {repo.local_path} is not a GitHub repository")
        return github_repo

    def check_repo(self, repo_id: int) -> int:
        """Update issues whose branch now has an open PR; returns how many changed."""
        awaiting = self.db.list_issues_awaiting_pr(repo_id)
        if not awaiting:
            return 0
        github_repo = self.github_repo_for(repo_id)
        pulls = {pr.branch_ref: pr for pr in self.github().list_open_pull_requests(github_repo)}

        updated = 0
        with self.db.transaction():
            for stale in awaiting:
                # Re-read under the lock: a callback or cancel may have moved it on.
                issue = self.db.get_issue(stale.id)
                if issue is None or issue.pr_status not in ("in_progress", "branch_pushed"):
                    continue
                pr = pulls.get(issue.pr_branch or "")
                if pr is None:
                    continue
                pr_status = "needs_review" if pr.is_draft else "pr_created"
                self.db.set_run_fields(issue.id, pr_status=pr_status, pr_url=pr.url)
                updated += 1
                logger.info("Found PR for %s on %s: %s", issue.source_id, issue.pr_branch, pr.url)
        return updated


def check_all_repos(detector: PullRequestDetector, repo_ids: list[int]) -> dict[int, int]:
    """Run PR detection per repo; one repo's upstream failure does not stop the rest."""
    results: dict[int, int] = {}
    for repo_id in repo_ids:
        try:
            results[repo_id] = detector.check_repo(repo_id)
        except (UpstreamError, ValidationError) as exc:
            logger.warning("PR check for repo %s skipped: %s", repo_id, exc.message)
    return results
