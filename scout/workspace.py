"""Per-run isolated git worktrees under the scout scratch root.

Layout: ``<scratch>/scout-worktrees/<repo_id>/<run_id>``. Destructive actions
(force-removing a worktree, deleting a directory) are only ever taken on
paths that resolve inside that root.
"""

import logging
import re
import shutil
from pathlib import Path

from scout.context import RunContext
from scout.errors import ConflictError, ResourceError, UpstreamError
from scout.vcs import VcsError, VcsTool

logger = logging.getLogger(__name__)

# git: "fatal: 'x' is already checked out at '/p'" (older) or
#      "fatal: 'x' is already used by worktree at '/p'" (newer)
_CLAIMED_RE = re.compile(r"already (?:checked out|used by worktree) at '(?P<path>[^']+)'")


def conflicting_worktree_path(error_text: str) -> Path | None:
    match = _CLAIMED_RE.search(error_text)
    return Path(match.group("path")) if match else None


class WorkspaceManager:
    def __init__(self, vcs: VcsTool, scratch_root: Path, runs_root: Path | None = None) -> None:
        self.vcs = vcs
        self.scratch_root = Path(scratch_root)
        self.runs_root = Path(runs_root) if runs_root else None

    def workspace_path(self, repo_id: int, run_id: str) -> Path:
        return self.scratch_root / str(repo_id) / run_id

    def owns(self, path: Path) -> bool:
        """True if ``path`` lies strictly inside the scratch root."""
        root = self.scratch_root.resolve()
        target = Path(path).resolve()
        return target != root and root in target.parents

    def create_workspace(self, repo_root: Path, repo_id: int, run_id: str, branch_name: str, base_ref: str) -> Path:
        """Fetch ``base_ref`` and check out ``branch_name`` from it in a fresh worktree."""
        repo_root = Path(repo_root)
        try:
            self.vcs.fetch(repo_root, base_ref)
        except VcsError as exc:
            # Never branch off a stale local ref.
            raise UpstreamError(f"Failed to fetch {base_ref} into {repo_root}: {exc.stderr.strip()}") from exc

        path = self.workspace_path(repo_id, run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.vcs.add_worktree(repo_root, branch_name, path, base_ref)
            return path
        except VcsError as exc:
            claimed = conflicting_worktree_path(exc.stderr)
            if claimed is None:
                raise ResourceError(f"Failed to create worktree at {path}: {exc.stderr.strip()}") from exc
            if not self.owns(claimed):
                raise ConflictError(
                    f"Branch {branch_name} is checked out at {claimed}, outside {self.scratch_root}; not touching it"
                ) from exc
            logger.warning("Reclaiming stale worktree %s holding %s", claimed, branch_name)

        try:
            self.vcs.remove_worktree(repo_root, claimed, force=True)
        except VcsError as exc:
            logger.warning("Could not remove stale worktree %s: %s", claimed, exc.stderr.strip())
        try:
            self.vcs.prune_worktrees(repo_root)
            self.vcs.add_worktree(repo_root, branch_name, path, base_ref)
        except VcsError as exc:
            raise ResourceError(f"Failed to create worktree at {path} after recovery: {exc.stderr.strip()}") from exc
        return path

    def destroy_workspace(self, repo_root: Path | str | None, workspace_path: Path | str | None) -> None:
        """Remove a run's worktree. Idempotent; logs and swallows every failure."""
        if not repo_root or not workspace_path:
            return
        path = Path(workspace_path)
        if not path.exists():
            return
        try:
            self.vcs.remove_worktree(Path(repo_root), path, force=True)
        except VcsError as exc:
            logger.warning("git worktree remove failed for %s: %s", path, exc.stderr.strip())
        except Exception:
            logger.exception("Unexpected error removing worktree %s", path)
        try:
            if path.exists() and self.owns(path):
                shutil.rmtree(path)
            self.vcs.prune_worktrees(Path(repo_root))
        except Exception:
            logger.exception("Cleanup of %s did not complete", path)

    def reclaim(self, ctx: RunContext) -> None:
        """Destroy the run's worktree and its prompt files; never raises."""
        self.destroy_workspace(ctx.repo_root, ctx.worktree_path)
        run_dir = ctx.run_dir
        if not run_dir.exists():
            return
        root = self.runs_root.resolve() if self.runs_root else None
        if root is None or root not in run_dir.resolve().parents:
            logger.warning("Not removing %s: outside the runs root", run_dir)
            return
        try:
            shutil.rmtree(run_dir)
        except OSError:
            logger.exception("Could not remove run files in %s", run_dir)
