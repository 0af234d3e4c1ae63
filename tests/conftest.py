"""Shared test fixtures and in-memory fakes for git and process control."""

import os
import shutil
from collections.abc import Callable
from pathlib import Path

import pytest

import scout.settings as settings_module
from scout.db import ScoutDB
from scout.models import Issue, Repo, TrackerItem
from scout.process import ProcessSupervisor
from scout.runtime import Runtime
from scout.settings import ScoutSettings
from scout.vcs import VcsError, VcsTool


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep the user's config file and SCOUT_* environment out of every test."""
    monkeypatch.setattr(settings_module, "CONFIG_PATH", tmp_path / "no-config.toml")
    for name in list(os.environ):
        if name.startswith("SCOUT_"):
            monkeypatch.delenv(name)
    settings_module._load_toml.cache_clear()
    yield
    settings_module._load_toml.cache_clear()


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeVcs(VcsTool):
    """Worktree bookkeeping in memory; directories are really created and removed."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.worktrees: dict[Path, str] = {}  # path -> branch
        self.fetch_error: str | None = None
        self.add_error: str | None = None
        self.remove_error: str | None = None
        self.remote: str | None = "git@github.com:acme/widgets.git"
        self.on_fetch: Callable[[], None] | None = None

    def _fail(self, op: str, stderr: str) -> None:
        raise VcsError(["git", op], 128, stderr)

    def fetch(self, repo_root: Path, ref: str) -> None:
        self.calls.append(("fetch", repo_root, ref))
        if self.on_fetch:
            self.on_fetch()
        if self.fetch_error:
            self._fail("fetch", self.fetch_error)

    def add_worktree(self, repo_root: Path, new_branch: str, path: Path, base_ref: str) -> None:
        self.calls.append(("add", new_branch, path, base_ref))
        if self.add_error:
            self._fail("worktree", self.add_error)
        for existing, branch in self.worktrees.items():
            if branch == new_branch:
                self._fail("worktree", f"fatal: '{new_branch}' is already used by worktree at '{existing}'\n")
        path.mkdir(parents=True, exist_ok=True)
        self.worktrees[path] = new_branch

    def remove_worktree(self, repo_root: Path, path: Path, force: bool = True) -> None:
        self.calls.append(("remove", path, force))
        if self.remove_error:
            self._fail("worktree", self.remove_error)
        self.worktrees.pop(Path(path), None)
        if Path(path).exists():
            shutil.rmtree(path)

    def prune_worktrees(self, repo_root: Path) -> None:
        self.calls.append(("prune", repo_root))

    def remote_url(self, repo_root: Path, remote: str = "origin") -> str | None:
        return self.remote

    def ops(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakeSupervisor(ProcessSupervisor):
    """Process table in memory. ``stubborn`` pids ignore TERM."""

    def __init__(self) -> None:
        self.spawned: list[dict] = []
        self.processes: dict[int, str] = {}  # pid -> tag
        self.alive: set[int] = set()
        self.stubborn: set[int] = set()
        self.signals: list[tuple[int, str]] = []
        self.spawn_error: Exception | None = None
        self.before_spawn: Callable[[], None] | None = None
        self._next_pid = 4000

    def add_process(self, tag: str, stubborn: bool = False) -> int:
        self._next_pid += 1
        pid = self._next_pid
        self.processes[pid] = tag
        self.alive.add(pid)
        if stubborn:
            self.stubborn.add(pid)
        return pid

    def spawn_detached(self, command: list[str], env: dict[str, str], cwd: Path, log_path: Path) -> int:
        if self.spawn_error:
            raise self.spawn_error
        if self.before_spawn:
            self.before_spawn()
        pid = self.add_process(env["SCOUT_CALLBACK_ID"])
        self.spawned.append({"command": command, "env": env, "cwd": cwd, "log_path": log_path, "pid": pid})
        return pid

    def list_processes_tagged(self, tag: str) -> list[int]:
        return [pid for pid, t in self.processes.items() if t == tag and pid in self.alive]

    def signal(self, pid: int, kind: str) -> bool:
        self.signals.append((pid, kind))
        if pid not in self.alive:
            return False
        if kind == "kill" or pid not in self.stubborn:
            self.alive.discard(pid)
        return True

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> ScoutSettings:
    return ScoutSettings(
        db_path=tmp_path / "scout.sqlite",
        scratch_dir=tmp_path / "scratch",
        public_url="http://scout.test",
        github_token="ghp_test",
        linear_api_key="lin_api_test",
        agent_command=["scout-agent"],
        cancel_grace_seconds=0,
    )  # type: ignore[call-arg]


@pytest.fixture
def db(settings: ScoutSettings):
    store = ScoutDB(settings.db_path)
    yield store
    store.close()


@pytest.fixture
def vcs() -> FakeVcs:
    return FakeVcs()


@pytest.fixture
def supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture
def runtime(settings: ScoutSettings, vcs: FakeVcs, supervisor: FakeSupervisor) -> Runtime:
    return Runtime(settings, vcs=vcs, supervisor=supervisor)


@pytest.fixture
def checkout(tmp_path: Path) -> Path:
    path = tmp_path / "checkouts" / "widgets"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def github_repo(db: ScoutDB, checkout: Path) -> Repo:
    return db.add_repo("github", "acme/widgets", "widgets", local_path=str(checkout))


@pytest.fixture
def linear_repo(db: ScoutDB, checkout: Path) -> Repo:
    return db.add_repo("linear", "team_eng", "Engineering", local_path=str(checkout), auto_create_pr=True)


def make_item(number: int = 42, repo_ref: str = "acme/widgets", **overrides) -> TrackerItem:
    data = {
        "source_id": f"{repo_ref}#{number}",
        "url": f"https://github.com/{repo_ref}/issues/{number}",
        "title": "Fix null check in auth middleware",
        "body": "The middleware throws when session is None.",
        "labels": ["bug"],
        "created_at": "2026-01-02T03:04:05Z",
    }
    data.update(overrides)
    return TrackerItem(**data)


def add_issue(db: ScoutDB, repo: Repo, item: TrackerItem | None = None) -> Issue:
    item = item or make_item()
    db.upsert_tracker_item(repo.id, repo.source, item)
    issue = db.find_issue(repo.source, item.source_id)
    assert issue is not None
    return issue


@pytest.fixture
def github_issue(db: ScoutDB, github_repo: Repo) -> Issue:
    return add_issue(db, github_repo)
