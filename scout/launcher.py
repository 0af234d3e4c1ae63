"""Run launcher: reserve an issue, build its workspace and prompts, start the agent detached."""

import logging
import re
import time
import uuid
from collections.abc import Callable
from pathlib import Path

from scout.context import RunContext
from scout.db import ScoutDB
from scout.errors import ConflictError, ResourceError, ScoutError, ValidationError
from scout.models import Issue, LaunchResult, Repo
from scout.process import TAG_ENV_VAR, ProcessSupervisor, terminate_tagged
from scout.settings import ScoutSettings, cli_model_name, resolve_model
from scout.templates import PROMPT_SEQUENCE, load_template
from scout.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

TITLE_SLUG_MAX = 40
SUFFIX_LEN = 8


# ---------------------------------------------------------------------------
# Branch names
# ---------------------------------------------------------------------------


def slugify(text: str, max_len: int = 0) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    if max_len:
        slug = slug[:max_len].rstrip("-")
    return slug


def make_branch_name(issue: Issue, callback_id: str) -> str:
    """Return a git-safe branch name for a run on the issue.

    Linear:  ENG-123  → scout/eng-123-fix-null-check-in-auth-middleware-1a2b3c4d
    GitHub:  acme/widgets#42 → scout/acme-widgets-42-fix-null-check-1a2b3c4d

    The callback-id suffix only keeps concurrent or repeated runs apart; the
    callback id, not the branch, identifies the run.
    """
    parts = [slugify(issue.source_id), slugify(issue.title, max_len=TITLE_SLUG_MAX), callback_id[:SUFFIX_LEN]]
    return "scout/" + "-".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Launcher
# ---------------------------------------------------------------------------


class RunLauncher:
    def __init__(
        self,
        db: ScoutDB,
        workspaces: WorkspaceManager,
        supervisor: ProcessSupervisor,
        settings: ScoutSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.workspaces = workspaces
        self.supervisor = supervisor
        self.settings = settings
        self.sleep = sleep

    def launch(self, issue_id: int, context_note: str | None = None, model: str | None = None) -> LaunchResult:
        issue = self.db.require_issue(issue_id)
        repo = self.db.require_repo(issue.repo_id)
        repo_root = self._checkout_root(repo)
        pr_model = resolve_model(self.settings, "pr_creation", model)
        review_model = resolve_model(self.settings, "review", model)

        callback_id = uuid.uuid4().hex
        branch_name = make_branch_name(issue, callback_id)
        ctx = RunContext(
            callback_id=callback_id,
            issue_id=issue.id,
            repo_root=repo_root,
            worktree_path=self.workspaces.workspace_path(repo.id, callback_id),
            run_dir=self.settings.runs_root / callback_id,
            branch_name=branch_name,
        )
        previous = self._reserve(issue, ctx, branch_name)
        logger.info("Reserved issue %s for run %s on %s", issue.source_id, callback_id, branch_name)

        try:
            workspace = self.workspaces.create_workspace(repo_root, repo.id, callback_id, branch_name, repo.default_branch)
            self._write_prompts(ctx, issue, repo, branch_name, context_note)
            if not self._still_pending(callback_id):
                raise ConflictError(f"Run {callback_id} for {issue.source_id} was cancelled during launch")
            pid = self._spawn(ctx, workspace, repo, pr_model, review_model)
        except Exception as exc:
            self._compensate(ctx, previous, exc)
            if isinstance(exc, ScoutError):
                raise
            raise ResourceError(f"Launch of {issue.source_id} failed: {exc}") from exc

        # A cancel that committed before the spawn found no process to stop.
        if not self._still_pending(callback_id):
            terminated = terminate_tagged(
                self.supervisor, callback_id, self.settings.cancel_grace_seconds, self.sleep
            )
            self.workspaces.reclaim(ctx)
            logger.warning(
                "Run %s was cancelled during launch; stopped %d process(es)", callback_id, terminated
            )
            raise ConflictError(f"Run {callback_id} for {issue.source_id} was cancelled during launch")

        logger.info("Launched run %s for %s (pid %s)", callback_id, issue.source_id, pid)
        return LaunchResult(callback_id=callback_id, branch_name=branch_name)

    def _checkout_root(self, repo: Repo) -> Path:
        if not repo.local_path:
            raise ValidationError(f"Repository {repo.name} has no local checkout configured")
        root = Path(repo.local_path).expanduser()
        if not root.is_dir():
            raise ValidationError(f"Local checkout {root} for {repo.name} does not exist")
        return root

    def _reserve(self, issue: Issue, ctx: RunContext, branch_name: str) -> tuple[str, str | None, str | None]:
        """Atomically claim the issue; returns its previous (pr_status, pr_branch, pr_url)."""
        with self.db.transaction():
            pending = self.db.list_pending_callbacks(issue.id)
            if pending:
                raise ConflictError(
                    f"Issue {issue.source_id} already has a run in progress ({pending[0].callback_id}); cancel it first"
                )
            current = self.db.require_issue(issue.id)
            self.db.set_run_fields(issue.id, pr_status="in_progress", pr_url=None, pr_branch=branch_name)
            self.db.insert_callback(
                ctx.callback_id,
                issue.id,
                worktree_path=str(ctx.worktree_path),
                repo_root_path=str(ctx.repo_root),
                branch_name=branch_name,
            )
        return current.pr_status, current.pr_branch, current.pr_url

    def _still_pending(self, callback_id: str) -> bool:
        with self.db.transaction():
            return self.db.require_callback(callback_id).status == "pending"

    def _write_prompts(
        self, ctx: RunContext, issue: Issue, repo: Repo, branch_name: str, context_note: str | None
    ) -> None:
        values = {
            "issue_identifier": issue.source_id,
            "issue_title": issue.title,
            "issue_description": issue.description or "_No description provided._",
            "issue_url": issue.source_url or "",
            "labels": ", ".join(issue.labels) if issue.labels else "none",
            "repo_name": repo.name,
            "branch_name": branch_name,
            "base_branch": repo.default_branch,
            "context": (context_note or "").strip(),
        }
        flags = {
            "is_github": issue.source == "github",
            "is_linear": issue.source == "linear",
            "auto_pr": repo.auto_create_pr,
            "has_context": bool((context_note or "").strip()),
            "quick_mode": repo.default_mode == "quick",
        }
        ctx.run_dir.mkdir(parents=True, exist_ok=True)
        for name in PROMPT_SEQUENCE:
            template = load_template(name, self.settings.prompts_dir)
            path = ctx.run_dir / f"{name}.md"
            path.write_text(template.render(values, flags), encoding="utf-8")
            ctx.prompt_paths[name] = path

    def _spawn(self, ctx: RunContext, workspace: Path, repo: Repo, pr_model: str, review_model: str) -> int:
        prompts = ctx.prompt_paths
        command = [
            *self.settings.agent_command,
            "--worktree", str(workspace),
            "--repo-root", str(ctx.repo_root),
            "--implement-prompt", str(prompts["implement"]),
            "--review-prompt", str(prompts["review"]),
            "--rework-prompt", str(prompts["rework"]),
            "--pr-prompt", str(prompts["create_pr"]),
            "--callback-url", self.settings.callback_url,
            "--callback-id", ctx.callback_id,
            "--model", cli_model_name(pr_model),
            "--review-model", cli_model_name(review_model),
            "--mode", repo.default_mode,
            "--auto-pr" if repo.auto_create_pr else "--no-auto-pr",
        ]  # fmt: skip
        env = {TAG_ENV_VAR: ctx.callback_id, "SCOUT_CALLBACK_URL": self.settings.callback_url}
        return self.supervisor.spawn_detached(
            command,
            env=env,
            cwd=workspace,
            log_path=self.settings.logs_root / f"{ctx.callback_id}.log",
        )

    def _compensate(self, ctx: RunContext, previous: tuple[str, str | None, str | None], exc: Exception) -> None:
        """Undo a launch that failed after the reservation."""
        logger.warning("Launch of run %s failed, rolling back: %s", ctx.callback_id, exc)
        self.workspaces.reclaim(ctx)
        prev_status, prev_branch, prev_url = previous
        if prev_status == "in_progress":
            # A stale marker with no live run behind it.
            prev_status, prev_branch, prev_url = "none", None, None
        with self.db.transaction():
            callback = self.db.get_callback(ctx.callback_id)
            if callback is None or callback.status != "pending":
                # Cancelled meanwhile; the canceller already reset the issue.
                return
            self.db.finish_callback(ctx.callback_id, "failed", error=str(exc))
            self.db.set_run_fields(ctx.issue_id, pr_status=prev_status, pr_url=prev_url, pr_branch=prev_branch)
