"""Shared pydantic models: the contract between providers, storage and the services."""

from typing import Literal

from pydantic import BaseModel, ConfigDict

Source = Literal["github", "linear"]
Assessment = Literal["pending", "agentic_pr_capable", "too_complex"]
PrStatus = Literal["none", "in_progress", "branch_pushed", "pr_created", "needs_review", "failed"]
CallbackStatus = Literal["pending", "complete", "failed", "needs_review", "cancelled"]
ReportedStatus = Literal["complete", "failed", "needs_review"]
RunMode = Literal["standard", "quick"]

SOURCES: tuple[str, ...] = ("github", "linear")
REPORTED_STATUSES: tuple[str, ...] = ("complete", "failed", "needs_review")
RUN_MODES: tuple[str, ...] = ("standard", "quick")


class Repo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    source: Source
    source_id: str  # "owner/repo" for GitHub, team id for Linear
    name: str
    local_path: str | None = None
    default_branch: str = "main"
    default_mode: RunMode = "standard"
    auto_create_pr: bool = False
    created_at: str | None = None


class Issue(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    repo_id: int
    source: Source
    source_id: str  # owner/repo#42 or ENG-123
    source_url: str | None = None
    title: str
    description: str | None = None
    labels: list[str] = []
    priority: str | None = None  # None for GitHub (no native priority)
    status: str = "open"
    summary: str | None = None
    assessment: Assessment = "pending"
    pr_status: PrStatus = "none"
    pr_url: str | None = None
    pr_branch: str | None = None
    analysis_model: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    analyzed_at: str | None = None


class Callback(BaseModel):
    model_config = ConfigDict(frozen=True)

    callback_id: str
    issue_id: int
    status: CallbackStatus = "pending"
    worktree_path: str | None = None
    repo_root_path: str | None = None
    branch_name: str | None = None
    error: str | None = None
    created_at: str | None = None
    completed_at: str | None = None


class RepoSyncState(BaseModel):
    model_config = ConfigDict(frozen=True)

    repo_id: int
    next_page: int = 1
    next_cursor: str | None = None
    page_size: int = 50
    has_more: bool = True
    last_fetch_count: int = 0
    last_fetch_at: str | None = None


class TrackerItem(BaseModel):
    """One issue as returned by a tracker, before it is mirrored locally."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    url: str
    title: str
    body: str | None = None
    labels: list[str] = []
    priority: str | None = None
    status: str = "open"
    created_at: str | None = None


class TrackerPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[TrackerItem]
    has_next: bool
    next_position: int | str | None = None  # page number (GitHub) or cursor (Linear)


class PullRequestRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    branch_ref: str
    url: str
    is_draft: bool = False


class LaunchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    callback_id: str
    branch_name: str


class CallbackAck(BaseModel):
    """Returned by the callback gateway. ``ignored`` is set for cancelled or duplicate deliveries."""

    model_config = ConfigDict(frozen=True)

    ignored: bool = False
    pr_status: PrStatus | None = None
    message: str


class CancelResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    terminated_process_count: int
    cancelled_callbacks: list[str] = []


class SyncResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    new: int = 0
    updated: int = 0
    fetched_count: int = 0
    has_more: bool = False


class AssessmentResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    assessment: Literal["agentic_pr_capable", "too_complex"]
    summary: str


class AnalysisError(BaseModel):
    model_config = ConfigDict(frozen=True)

    issue_id: int
    error: str


class BatchAnalysis(BaseModel):
    model_config = ConfigDict(frozen=True)

    analyzed: int
    remaining: int
    results: list[Issue] = []
    errors: list[AnalysisError] = []
