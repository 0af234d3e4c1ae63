"""Callback gateway: applies an agent's terminal report to the issue exactly once."""

import logging
from pathlib import Path

from scout.context import RunContext
from scout.db import ScoutDB
from scout.errors import NotFoundError, ValidationError
from scout.models import REPORTED_STATUSES, CallbackAck
from scout.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


def resolve_pr_status(reported_status: str, auto_create_pr: bool, pr_url: str | None) -> str:
    """Map a reported terminal status to the issue's pr_status."""
    if reported_status == "complete":
        if auto_create_pr:
            return "pr_created" if pr_url else "needs_review"
        return "branch_pushed"
    if reported_status == "failed":
        return "failed"
    if reported_status == "needs_review":
        return "needs_review"
    raise ValidationError(f"Unknown callback status '{reported_status}'")


class CallbackGateway:
    def __init__(self, db: ScoutDB, workspaces: WorkspaceManager, runs_root: Path) -> None:
        self.db = db
        self.workspaces = workspaces
        self.runs_root = runs_root

    def handle_callback(
        self,
        callback_id: str,
        reported_status: str,
        pr_url: str | None = None,
        error: str | None = None,
    ) -> CallbackAck:
        if not callback_id:
            raise ValidationError("callback_id is required")
        if reported_status not in REPORTED_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(REPORTED_STATUSES)}")
        pr_url = pr_url or None

        # Check, act and write under the write lock so a concurrent cancel or a
        # duplicate delivery sees either the pending row or our final one.
        with self.db.transaction():
            callback = self.db.get_callback(callback_id)
            if callback is None:
                raise NotFoundError(f"Callback {callback_id} not found")

            if callback.status == "cancelled":
                ack = CallbackAck(ignored=True, message="Callback ignored because run was cancelled")
            elif callback.status != "pending":
                return CallbackAck(ignored=True, message="Callback already processed")
            else:
                issue = self.db.require_issue(callback.issue_id)
                repo = self.db.require_repo(issue.repo_id)
                pr_status = resolve_pr_status(reported_status, repo.auto_create_pr, pr_url)
                if pr_url:
                    self.db.set_run_fields(issue.id, pr_status=pr_status, pr_url=pr_url)
                else:
                    self.db.set_run_fields(issue.id, pr_status=pr_status)
                self.db.finish_callback(callback_id, reported_status, error=error)
                ack = CallbackAck(pr_status=pr_status, message="Callback processed successfully")

        if ack.ignored:
            logger.info("Late callback %s (%s) for a cancelled run", callback_id, reported_status)
        else:
            logger.info("Run %s finished %s -> pr_status=%s", callback_id, reported_status, ack.pr_status)
        if error:
            # Diagnostics only; never drives state.
            logger.warning("Agent reported error for %s: %s", callback_id, error)

        self.workspaces.reclaim(RunContext.from_callback(callback, self.runs_root))
        return ack
