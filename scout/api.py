"""HTTP surface: the agent callback endpoint plus operator actions."""

import logging
import math
from collections.abc import Iterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from scout import __version__
from scout.db import ScoutDB
from scout.errors import ScoutError
from scout.models import (
    BatchAnalysis,
    CallbackAck,
    CancelResult,
    Issue,
    LaunchResult,
    RepoSyncState,
    ReportedStatus,
    SyncResult,
)
from scout.runtime import Runtime

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


def error_response(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": {"kind": kind, "message": message}})


async def scout_error_handler(_req: Request, exc: ScoutError) -> JSONResponse:
    return error_response(exc.status_code, exc.kind, exc.message)


async def validation_error_handler(_req: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{where}: {first.get('msg')}" if where else "Request validation failed."
    return error_response(400, "invalid_argument", message)


async def unhandled_error_handler(_req: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", exc_info=exc)
    return error_response(500, "internal", "Internal server error.")


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class CallbackRequest(BaseModel):
    callback_id: str = Field(min_length=1)
    status: ReportedStatus
    pr_url: str | None = None
    error: str | None = None


class LaunchRequest(BaseModel):
    context: str | None = None
    model: str | None = None


class AnalyzeRequest(BaseModel):
    model: str | None = None


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(runtime: Runtime | None = None) -> FastAPI:
    rt = runtime or Runtime()

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        scheduler = rt.build_scheduler() if rt.settings.enable_scheduler else None
        if scheduler is not None:
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.stop()

    app = FastAPI(title="Scout API", version=__version__, lifespan=lifespan)
    app.state.runtime = rt

    app.add_exception_handler(ScoutError, scout_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_error_handler)

    def get_db() -> Iterator[ScoutDB]:
        db = rt.open_db()
        try:
            yield db
        finally:
            db.close()

    @app.get("/api/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__}

    # -- agent callback -----------------------------------------------------

    @app.post("/api/callback")
    def post_callback(body: CallbackRequest, db: ScoutDB = Depends(get_db)) -> CallbackAck:
        return rt.callbacks(db).handle_callback(body.callback_id, body.status, body.pr_url, body.error)

    @app.get("/api/callback")
    def get_callback(
        callback_id: str = Query(alias="id", min_length=1),
        status: ReportedStatus = Query(),
        pr_url: str | None = None,
        error: str | None = None,
        db: ScoutDB = Depends(get_db),
    ) -> CallbackAck:
        return rt.callbacks(db).handle_callback(callback_id, status, pr_url, error)

    # -- issues ---------------------------------------------------------------

    @app.post("/api/issues/{issue_id}/launch")
    def launch_issue(issue_id: int, body: LaunchRequest | None = None, db: ScoutDB = Depends(get_db)) -> LaunchResult:
        body = body or LaunchRequest()
        return rt.launcher(db).launch(issue_id, context_note=body.context, model=body.model)

    @app.post("/api/issues/{issue_id}/cancel")
    def cancel_issue(issue_id: int, db: ScoutDB = Depends(get_db)) -> CancelResult:
        return rt.canceller(db).cancel(issue_id)

    @app.post("/api/issues/{issue_id}/analyze")
    def analyze_issue(issue_id: int, body: AnalyzeRequest | None = None, db: ScoutDB = Depends(get_db)) -> Issue:
        return rt.analyzer(db).analyze_issue(issue_id, model=(body or AnalyzeRequest()).model)

    # -- repos ----------------------------------------------------------------

    @app.get("/api/repos/{repo_id}/issues")
    def list_issues(
        repo_id: int,
        page: int = Query(default=1, ge=1),
        per_page: int = Query(default=50, ge=1, le=200),
        db: ScoutDB = Depends(get_db),
    ) -> dict[str, Any]:
        db.require_repo(repo_id)
        issues, total = db.list_issues(repo_id, page=page, per_page=per_page)
        return {
            "issues": [i.model_dump() for i in issues],
            "total": total,
            "page": page,
            "per_page": per_page,
            "total_pages": math.ceil(total / per_page) if total else 0,
        }

    @app.post("/api/repos/{repo_id}/sync")
    def sync_repo(repo_id: int, db: ScoutDB = Depends(get_db)) -> SyncResult:
        return rt.sync_engine(db).sync_page(repo_id)

    @app.post("/api/repos/{repo_id}/sync/reset")
    def reset_sync(repo_id: int, db: ScoutDB = Depends(get_db)) -> RepoSyncState:
        return rt.sync_engine(db).reset(repo_id)

    @app.post("/api/repos/{repo_id}/check-prs")
    def check_prs(repo_id: int, db: ScoutDB = Depends(get_db)) -> dict[str, int]:
        return {"updated": rt.pr_detector(db).check_repo(repo_id)}

    @app.post("/api/repos/{repo_id}/analyze")
    def analyze_repo(repo_id: int, body: AnalyzeRequest | None = None, db: ScoutDB = Depends(get_db)) -> BatchAnalysis:
        return rt.analyzer(db).analyze_batch(repo_id, model=(body or AnalyzeRequest()).model)

    return app


def serve(runtime: Runtime | None = None) -> None:
    rt = runtime or Runtime()
    uvicorn.run(create_app(rt), host=rt.settings.host, port=rt.settings.port, log_config=None)
