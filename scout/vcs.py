"""Git plumbing behind a narrow interface.

Every value (branch names, paths, refs) goes in as a discrete argv element;
nothing here builds a shell string.
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 120


class VcsError(Exception):
    """A git command failed. ``stderr`` carries the tool's error text."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        super().__init__(f"{' '.join(args)} exited {returncode}: {stderr.strip()}")
        self.returncode = returncode
        self.stderr = stderr


class VcsTool(ABC):
    @abstractmethod
    def fetch(self, repo_root: Path, ref: str) -> None: ...

    @abstractmethod
    def add_worktree(self, repo_root: Path, new_branch: str, path: Path, base_ref: str) -> None: ...

    @abstractmethod
    def remove_worktree(self, repo_root: Path, path: Path, force: bool = True) -> None: ...

    @abstractmethod
    def prune_worktrees(self, repo_root: Path) -> None: ...

    @abstractmethod
    def remote_url(self, repo_root: Path, remote: str = "origin") -> str | None: ...


class GitTool(VcsTool):
    def __init__(self, remote: str = "origin", timeout: float = GIT_TIMEOUT) -> None:
        self.remote = remote
        self.timeout = timeout

    def _git(self, repo_root: Path, *args: str) -> subprocess.CompletedProcess[str]:
        argv = ["git", "-C", str(repo_root), *args]
        try:
            result = subprocess.run(argv, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise VcsError(argv, -1, f"timed out after {self.timeout}s") from exc
        except OSError as exc:
            raise VcsError(argv, -1, str(exc)) from exc
        if result.returncode != 0:
            raise VcsError(argv, result.returncode, result.stderr)
        return result

    def fetch(self, repo_root: Path, ref: str) -> None:
        self._git(repo_root, "fetch", self.remote, ref)

    def add_worktree(self, repo_root: Path, new_branch: str, path: Path, base_ref: str) -> None:
        self._git(repo_root, "worktree", "add", "-b", new_branch, str(path), f"{self.remote}/{base_ref}")

    def remove_worktree(self, repo_root: Path, path: Path, force: bool = True) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        self._git(repo_root, *args, str(path))

    def prune_worktrees(self, repo_root: Path) -> None:
        self._git(repo_root, "worktree", "prune")

    def remote_url(self, repo_root: Path, remote: str = "origin") -> str | None:
        try:
            return self._git(repo_root, "remote", "get-url", remote).stdout.strip() or None
        except VcsError:
            return None
