"""Request-scoped state for one run, passed explicitly through launch, callback and cancel."""

from dataclasses import dataclass, field
from pathlib import Path

from scout.models import Callback


@dataclass
class RunContext:
    callback_id: str
    issue_id: int
    repo_root: Path | None
    worktree_path: Path | None
    run_dir: Path  # rendered prompt files
    branch_name: str | None = None
    prompt_paths: dict[str, Path] = field(default_factory=dict)

    @classmethod
    def from_callback(cls, callback: Callback, runs_root: Path) -> "RunContext":
        return cls(
            callback_id=callback.callback_id,
            issue_id=callback.issue_id,
            repo_root=Path(callback.repo_root_path) if callback.repo_root_path else None,
            worktree_path=Path(callback.worktree_path) if callback.worktree_path else None,
            run_dir=runs_root / callback.callback_id,
            branch_name=callback.branch_name,
        )
