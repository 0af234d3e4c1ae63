"""SQLite store: repos, issues, callbacks and per-repo sync cursors.

Every mutation goes through this module. One ``ScoutDB`` is opened per request
or CLI command; read-modify-write sequences run inside ``transaction()``,
which takes SQLite's write lock up front (``BEGIN IMMEDIATE``) so concurrent
requests serialise on it.
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from scout.errors import ConflictError, NotFoundError, ValidationError
from scout.models import Callback, Issue, Repo, RepoSyncState, TrackerItem

logger = logging.getLogger(__name__)

_KEEP: Any = object()

UpsertOutcome = Literal["inserted", "updated", "skipped"]

_SCHEMA = """
CREATE TABLE IF NOT EXISTS repos (
    id INTEGER PRIMARY KEY,
    source TEXT NOT NULL CHECK(source IN ('github', 'linear')),
    source_id TEXT NOT NULL,
    name TEXT NOT NULL,
    local_path TEXT,
    default_branch TEXT NOT NULL DEFAULT 'main',
    default_mode TEXT NOT NULL DEFAULT 'standard' CHECK(default_mode IN ('standard', 'quick')),
    auto_create_pr INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE(source, source_id)
);

CREATE TABLE IF NOT EXISTS issues (
    id INTEGER PRIMARY KEY,
    repo_id INTEGER NOT NULL REFERENCES repos(id) ON DELETE CASCADE,
    source TEXT NOT NULL CHECK(source IN ('github', 'linear')),
    source_id TEXT NOT NULL,
    source_url TEXT,
    title TEXT NOT NULL,
    description TEXT,
    labels TEXT NOT NULL DEFAULT '[]',
    priority TEXT,
    status TEXT NOT NULL DEFAULT 'open',
    summary TEXT,
    assessment TEXT NOT NULL DEFAULT 'pending'
        CHECK(assessment IN ('pending', 'too_complex', 'agentic_pr_capable')),
    pr_status TEXT NOT NULL DEFAULT 'none'
        CHECK(pr_status IN ('none', 'in_progress', 'branch_pushed', 'pr_created', 'needs_review', 'failed')),
    pr_url TEXT,
    pr_branch TEXT,
    analysis_model TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    analyzed_at TEXT,
    UNIQUE(source, source_id)
);

CREATE TABLE IF NOT EXISTS callbacks (
    id INTEGER PRIMARY KEY,
    callback_id TEXT UNIQUE NOT NULL,
    issue_id INTEGER NOT NULL REFERENCES issues(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK(status IN ('pending', 'complete', 'failed', 'needs_review', 'cancelled')),
    worktree_path TEXT,
    repo_root_path TEXT,
    branch_name TEXT,
    error TEXT,
    created_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS repo_sync_state (
    repo_id INTEGER PRIMARY KEY REFERENCES repos(id) ON DELETE CASCADE,
    next_page INTEGER NOT NULL DEFAULT 1,
    next_cursor TEXT,
    page_size INTEGER NOT NULL DEFAULT 50,
    has_more INTEGER NOT NULL DEFAULT 1,
    last_fetch_count INTEGER NOT NULL DEFAULT 0,
    last_fetch_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_issues_repo_id ON issues(repo_id);
CREATE INDEX IF NOT EXISTS idx_issues_assessment ON issues(assessment);
CREATE INDEX IF NOT EXISTS idx_callbacks_issue_id ON callbacks(issue_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_callbacks_one_pending
    ON callbacks(issue_id) WHERE status = 'pending';
"""

_REPO_FIELDS = ("local_path", "default_branch", "default_mode", "auto_create_pr")


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class ScoutDB:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        if str(path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; explicit BEGIN IMMEDIATE for multi-statement units.
        self._conn = sqlite3.connect(str(path), timeout=30, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.executescript(_SCHEMA)
        self._depth = 0

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "ScoutDB":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the block as one atomic unit; nested calls join the outer transaction."""
        if self._depth:
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return
        self._conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")
        finally:
            self._depth = 0

    def _one(self, query: str, params: tuple = ()) -> sqlite3.Row | None:
        return self._conn.execute(query, params).fetchone()

    def _all(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
        return self._conn.execute(query, params).fetchall()

    # ------------------------------------------------------------------
    # Repos
    # ------------------------------------------------------------------

    def add_repo(
        self,
        source: str,
        source_id: str,
        name: str,
        local_path: str | None = None,
        default_branch: str = "main",
        default_mode: str = "standard",
        auto_create_pr: bool = False,
    ) -> Repo:
        try:
            cur = self._conn.execute(
                """INSERT INTO repos (source, source_id, name, local_path, default_branch,
                                      default_mode, auto_create_pr, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (source, source_id, name, local_path, default_branch, default_mode, int(auto_create_pr), utc_now()),
            )
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Cannot add repo {source}:{source_id}: {exc}") from exc
        return self.require_repo(int(cur.lastrowid))

    def get_repo(self, repo_id: int) -> Repo | None:
        row = self._one("SELECT * FROM repos WHERE id = ?", (repo_id,))
        return _repo(row) if row else None

    def require_repo(self, repo_id: int) -> Repo:
        repo = self.get_repo(repo_id)
        if repo is None:
            raise NotFoundError(f"Repository {repo_id} not found")
        return repo

    def list_repos(self) -> list[Repo]:
        return [_repo(r) for r in self._all("SELECT * FROM repos ORDER BY id")]

    def update_repo(self, repo_id: int, **fields: Any) -> Repo:
        unknown = set(fields) - set(_REPO_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown repo fields: {sorted(unknown)}")
        self.require_repo(repo_id)
        for key, value in fields.items():
            if key == "auto_create_pr":
                value = int(bool(value))
            # key is checked against _REPO_FIELDS above
            self._conn.execute(f"UPDATE repos SET {key} = ? WHERE id = ?", (value, repo_id))
        return self.require_repo(repo_id)

    def delete_repo(self, repo_id: int) -> None:
        self.require_repo(repo_id)
        self._conn.execute("DELETE FROM repos WHERE id = ?", (repo_id,))

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def get_issue(self, issue_id: int) -> Issue | None:
        row = self._one("SELECT * FROM issues WHERE id = ?", (issue_id,))
        return _issue(row) if row else None

    def require_issue(self, issue_id: int) -> Issue:
        issue = self.get_issue(issue_id)
        if issue is None:
            raise NotFoundError(f"Issue {issue_id} not found")
        return issue

    def find_issue(self, source: str, source_id: str) -> Issue | None:
        row = self._one("SELECT * FROM issues WHERE source = ? AND source_id = ?", (source, source_id))
        return _issue(row) if row else None

    def list_issues(self, repo_id: int, page: int = 1, per_page: int = 50) -> tuple[list[Issue], int]:
        """Return one page of a repo's issues (newest first) and the total count."""
        page = max(page, 1)
        total = self._one("SELECT COUNT(*) AS total FROM issues WHERE repo_id = ?", (repo_id,))["total"]
        rows = self._all(
            "SELECT * FROM issues WHERE repo_id = ? ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
            (repo_id, per_page, (page - 1) * per_page),
        )
        return [_issue(r) for r in rows], int(total)

    def upsert_tracker_item(self, repo_id: int, source: str, item: TrackerItem) -> UpsertOutcome:
        """Mirror one tracker item and report whether it was inserted, updated or skipped.

        Existing rows only get tracker-owned fields refreshed; assessment and
        the run fields (pr_status, pr_url, pr_branch) are never written here.
        ``(source, source_id)`` is unique across repos: an item already
        mirrored under another repo is left where it is and skipped.
        """
        now = utc_now()
        labels = json.dumps(item.labels)
        existing = self._one(
            "SELECT id, repo_id FROM issues WHERE source = ? AND source_id = ?",
            (source, item.source_id),
        )
        if existing and existing["repo_id"] != repo_id:
            logger.warning(
                "Skipping %s %s for repo %s: already mirrored under repo %s",
                source,
                item.source_id,
                repo_id,
                existing["repo_id"],
            )
            return "skipped"
        try:
            if existing:
                self._conn.execute(
                    """UPDATE issues SET title = ?, description = ?, labels = ?, priority = ?,
                                         source_url = ?, status = ?, updated_at = ?
                       WHERE id = ?""",
                    (item.title, item.body, labels, item.priority, item.url, item.status, now, existing["id"]),
                )
                return "updated"
            self._conn.execute(
                """INSERT INTO issues (repo_id, source, source_id, source_url, title, description,
                                       labels, priority, status, assessment, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)""",
                (
                    repo_id,
                    source,
                    item.source_id,
                    item.url,
                    item.title,
                    item.body,
                    labels,
                    item.priority,
                    item.status,
                    item.created_at or now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Cannot store {source} issue {item.source_id} for repo {repo_id}: {exc}") from exc
        return "inserted"

    def set_run_fields(
        self,
        issue_id: int,
        *,
        pr_status: str,
        pr_url: str | None = _KEEP,
        pr_branch: str | None = _KEEP,
    ) -> None:
        """Write the run state machine fields; omitted url/branch are left as they are."""
        sets = ["pr_status = ?", "updated_at = ?"]
        params: list[Any] = [pr_status, utc_now()]
        if pr_url is not _KEEP:
            sets.append("pr_url = ?")
            params.append(pr_url)
        if pr_branch is not _KEEP:
            sets.append("pr_branch = ?")
            params.append(pr_branch)
        params.append(issue_id)
        self._conn.execute(f"UPDATE issues SET {', '.join(sets)} WHERE id = ?", tuple(params))

    def list_issues_awaiting_pr(self, repo_id: int) -> list[Issue]:
        rows = self._all(
            """SELECT * FROM issues
               WHERE repo_id = ? AND pr_branch IS NOT NULL AND pr_branch != ''
                 AND pr_status IN ('in_progress', 'branch_pushed')""",
            (repo_id,),
        )
        return [_issue(r) for r in rows]

    def list_pending_assessment(self, repo_id: int, limit: int = 5) -> list[Issue]:
        rows = self._all(
            "SELECT * FROM issues WHERE repo_id = ? AND assessment = 'pending' ORDER BY id LIMIT ?",
            (repo_id, limit),
        )
        return [_issue(r) for r in rows]

    def count_pending_assessment(self, repo_id: int) -> int:
        row = self._one(
            "SELECT COUNT(*) AS n FROM issues WHERE repo_id = ? AND assessment = 'pending'", (repo_id,)
        )
        return int(row["n"])

    def record_assessment(self, issue_id: int, assessment: str, summary: str, model: str) -> None:
        now = utc_now()
        self._conn.execute(
            """UPDATE issues SET assessment = ?, summary = ?, analysis_model = ?,
                                 analyzed_at = ?, updated_at = ?
               WHERE id = ?""",
            (assessment, summary, model, now, now, issue_id),
        )

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def insert_callback(
        self,
        callback_id: str,
        issue_id: int,
        worktree_path: str,
        repo_root_path: str,
        branch_name: str,
    ) -> Callback:
        try:
            self._conn.execute(
                """INSERT INTO callbacks (callback_id, issue_id, status, worktree_path, repo_root_path,
                                          branch_name, created_at)
                   VALUES (?, ?, 'pending', ?, ?, ?, ?)""",
                (callback_id, issue_id, worktree_path, repo_root_path, branch_name, utc_now()),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Cannot record run {callback_id} for issue {issue_id}: {exc}") from exc
        return self.require_callback(callback_id)

    def get_callback(self, callback_id: str) -> Callback | None:
        row = self._one("SELECT * FROM callbacks WHERE callback_id = ?", (callback_id,))
        return _callback(row) if row else None

    def require_callback(self, callback_id: str) -> Callback:
        callback = self.get_callback(callback_id)
        if callback is None:
            raise NotFoundError(f"Callback {callback_id} not found")
        return callback

    def list_pending_callbacks(self, issue_id: int) -> list[Callback]:
        rows = self._all(
            "SELECT * FROM callbacks WHERE issue_id = ? AND status = 'pending' ORDER BY id", (issue_id,)
        )
        return [_callback(r) for r in rows]

    def finish_callback(self, callback_id: str, status: str, error: str | None = None) -> None:
        self._conn.execute(
            "UPDATE callbacks SET status = ?, error = ?, completed_at = ? WHERE callback_id = ?",
            (status, error, utc_now(), callback_id),
        )

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    def get_sync_state(self, repo_id: int, page_size: int = 50) -> RepoSyncState:
        """Return the repo's cursor, creating it with defaults on first use."""
        self._conn.execute(
            "INSERT OR IGNORE INTO repo_sync_state (repo_id, page_size) VALUES (?, ?)", (repo_id, page_size)
        )
        row = self._one("SELECT * FROM repo_sync_state WHERE repo_id = ?", (repo_id,))
        return _sync_state(row)

    def save_sync_state(self, state: RepoSyncState) -> None:
        self._conn.execute(
            """INSERT INTO repo_sync_state (repo_id, next_page, next_cursor, page_size, has_more,
                                            last_fetch_count, last_fetch_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(repo_id) DO UPDATE SET
                   next_page = excluded.next_page,
                   next_cursor = excluded.next_cursor,
                   page_size = excluded.page_size,
                   has_more = excluded.has_more,
                   last_fetch_count = excluded.last_fetch_count,
                   last_fetch_at = excluded.last_fetch_at""",
            (
                state.repo_id,
                state.next_page,
                state.next_cursor,
                state.page_size,
                int(state.has_more),
                state.last_fetch_count,
                state.last_fetch_at,
            ),
        )

    def reset_sync_state(self, repo_id: int, page_size: int = 50) -> RepoSyncState:
        state = RepoSyncState(repo_id=repo_id, page_size=page_size)
        self.save_sync_state(state)
        return state


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _repo(row: sqlite3.Row) -> Repo:
    data = dict(row)
    data["auto_create_pr"] = bool(data["auto_create_pr"])
    return Repo(**data)


def _issue(row: sqlite3.Row) -> Issue:
    data = dict(row)
    try:
        data["labels"] = json.loads(data.get("labels") or "[]")
    except json.JSONDecodeError:
        logger.warning("Issue %s has unreadable labels %r", data["id"], data.get("labels"))
        data["labels"] = []
    return Issue(**data)


def _callback(row: sqlite3.Row) -> Callback:
    data = dict(row)
    data.pop("id", None)
    return Callback(**data)


def _sync_state(row: sqlite3.Row) -> RepoSyncState:
    data = dict(row)
    data["has_more"] = bool(data["has_more"])
    return RepoSyncState(**data)
