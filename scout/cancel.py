"""Cancellation: stop an issue's in-flight runs and put the issue back to ``none``."""

import logging
import time
from collections.abc import Callable
from pathlib import Path

from scout.context import RunContext
from scout.db import ScoutDB
from scout.models import CancelResult
from scout.process import ProcessSupervisor, terminate_tagged
from scout.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class CancellationController:
    def __init__(
        self,
        db: ScoutDB,
        workspaces: WorkspaceManager,
        supervisor: ProcessSupervisor,
        runs_root: Path,
        grace_seconds: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.workspaces = workspaces
        self.supervisor = supervisor
        self.runs_root = runs_root
        self.grace_seconds = grace_seconds
        self.sleep = sleep

    def cancel(self, issue_id: int) -> CancelResult:
        self.db.require_issue(issue_id)

        # Mark first: a callback racing this cancel either lands before (and we
        # find nothing pending) or after (and sees 'cancelled').
        with self.db.transaction():
            pending = self.db.list_pending_callbacks(issue_id)
            for callback in pending:
                self.db.finish_callback(callback.callback_id, "cancelled")
            self.db.set_run_fields(issue_id, pr_status="none", pr_url=None, pr_branch=None)

        terminated = 0
        for callback in pending:
            terminated += terminate_tagged(self.supervisor, callback.callback_id, self.grace_seconds, self.sleep)
            self.workspaces.reclaim(RunContext.from_callback(callback, self.runs_root))

        logger.info(
            "Cancelled %d run(s) for issue %s, signalled %d process(es)", len(pending), issue_id, terminated
        )
        return CancelResult(
            terminated_process_count=terminated,
            cancelled_callbacks=[c.callback_id for c in pending],
        )
