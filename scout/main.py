"""Scout CLI: operator commands and the server entry point."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated

import httpx
import typer
from rich import print as rprint
from rich.table import Table

from scout.db import ScoutDB
from scout.errors import ScoutError
from scout.log import configure_logging
from scout.models import REPORTED_STATUSES, RUN_MODES, SOURCES
from scout.runtime import Runtime
from scout.settings import available_models, get_settings, resolve_model

app = typer.Typer(help="scout: turn tracker issues into agent-authored branches and PRs", no_args_is_help=True)

RepoArg = Annotated[int, typer.Argument(help="Local repository id (see 'scout repos')")]
IssueArg = Annotated[int, typer.Argument(help="Local issue id (see 'scout issues')")]
ModelOpt = Annotated[str | None, typer.Option("--model", "-m", help="Override the configured model")]

_PR_STATUS_STYLE = {
    "in_progress": "yellow",
    "branch_pushed": "cyan",
    "pr_created": "green",
    "needs_review": "magenta",
    "failed": "red",
}


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging")] = False,
) -> None:
    configure_logging("DEBUG" if verbose else "INFO")


# ---------------------------------------------------------------------------
# Runtime factory
# ---------------------------------------------------------------------------


def get_runtime() -> Runtime:
    return Runtime(get_settings())


@contextmanager
def _session() -> Iterator[tuple[Runtime, ScoutDB]]:
    """Open the store for one command; ScoutErrors become a red message and exit 1."""
    rt = get_runtime()
    try:
        with rt.open_db() as db:
            yield rt, db
    except ScoutError as exc:
        rprint(f"[red]{exc.message}[/red]")
        raise typer.Exit(1) from exc


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


@app.command("add-repo")
def add_repo(
    source: Annotated[str, typer.Argument(help="github or linear")],
    source_id: Annotated[str, typer.Argument(help="owner/repo for GitHub, team id for Linear")],
    name: Annotated[str | None, typer.Option("--name", help="Display name (defaults to source id)")] = None,
    local_path: Annotated[Path | None, typer.Option("--path", "-p", help="Local git checkout")] = None,
    default_branch: Annotated[str, typer.Option("--branch", "-b", help="Base branch for runs")] = "main",
    mode: Annotated[str, typer.Option("--mode", help="standard or quick")] = "standard",
    auto_pr: Annotated[bool, typer.Option("--auto-pr/--no-auto-pr", help="Agent opens the PR itself")] = False,
) -> None:
    """Register a GitHub repository or Linear team."""
    if source not in SOURCES:
        rprint(f"[red]Unknown source '{source}'. Valid: {', '.join(SOURCES)}[/red]")
        raise typer.Exit(1)
    if mode not in RUN_MODES:
        rprint(f"[red]Unknown mode '{mode}'. Valid: {', '.join(RUN_MODES)}[/red]")
        raise typer.Exit(1)
    with _session() as (_, db):
        repo = db.add_repo(
            source,
            source_id,
            name or source_id,
            local_path=str(local_path.expanduser().resolve()) if local_path else None,
            default_branch=default_branch,
            default_mode=mode,
            auto_create_pr=auto_pr,
        )
    rprint(f"[green]✓[/green] Added repo [bold]{repo.name}[/bold] (id {repo.id})")


@app.command("update-repo")
def update_repo(
    repo_id: RepoArg,
    local_path: Annotated[Path | None, typer.Option("--path", "-p", help="Local git checkout")] = None,
    default_branch: Annotated[str | None, typer.Option("--branch", "-b", help="Base branch for runs")] = None,
    mode: Annotated[str | None, typer.Option("--mode", help="standard or quick")] = None,
    auto_pr: Annotated[bool | None, typer.Option("--auto-pr/--no-auto-pr")] = None,
) -> None:
    """Change a repository's checkout, base branch, run mode or auto-PR flag."""
    fields: dict = {}
    if local_path is not None:
        fields["local_path"] = str(local_path.expanduser().resolve())
    if default_branch is not None:
        fields["default_branch"] = default_branch
    if mode is not None:
        if mode not in RUN_MODES:
            rprint(f"[red]Unknown mode '{mode}'. Valid: {', '.join(RUN_MODES)}[/red]")
            raise typer.Exit(1)
        fields["default_mode"] = mode
    if auto_pr is not None:
        fields["auto_create_pr"] = auto_pr
    if not fields:
        rprint("[yellow]Nothing to update.[/yellow]")
        raise typer.Exit(0)
    with _session() as (_, db):
        repo = db.update_repo(repo_id, **fields)
    rprint(f"[green]✓[/green] Updated [bold]{repo.name}[/bold]")


@app.command("delete-repo")
def delete_repo(
    repo_id: RepoArg,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Remove a repository with its issues, runs and sync cursor."""
    if not yes:
        typer.confirm(f"Delete repo {repo_id} and all its issues?", abort=True)
    with _session() as (_, db):
        db.delete_repo(repo_id)
    rprint(f"[green]✓[/green] Deleted repo {repo_id}")


@app.command("repos")
def list_repos() -> None:
    """List registered repositories."""
    with _session() as (_, db):
        repos = db.list_repos()

    table = Table(title="Repositories")
    table.add_column("ID", style="cyan")
    table.add_column("Source")
    table.add_column("Name")
    table.add_column("Branch")
    table.add_column("Mode")
    table.add_column("Auto PR")
    table.add_column("Path", style="dim")

    for repo in repos:
        table.add_row(
            str(repo.id),
            repo.source,
            repo.name,
            repo.default_branch,
            repo.default_mode,
            "yes" if repo.auto_create_pr else "no",
            repo.local_path or "—",
        )

    rprint(table)


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


@app.command("issues")
def list_issues(
    repo_id: RepoArg,
    page: Annotated[int, typer.Option("--page", min=1)] = 1,
    per_page: Annotated[int, typer.Option("--per-page", min=1, max=200)] = 50,
) -> None:
    """List a repository's mirrored issues, newest first."""
    with _session() as (_, db):
        repo = db.require_repo(repo_id)
        issues, total = db.list_issues(repo_id, page=page, per_page=per_page)

    table = Table(title=f"{repo.name}: {total} issue(s)")
    table.add_column("ID", style="cyan")
    table.add_column("Issue")
    table.add_column("Pri")
    table.add_column("Assessment")
    table.add_column("PR status")
    table.add_column("Title")

    for issue in issues:
        style = _PR_STATUS_STYLE.get(issue.pr_status)
        pr_status = f"[{style}]{issue.pr_status}[/{style}]" if style else issue.pr_status
        table.add_row(
            str(issue.id),
            issue.source_id,
            issue.priority or "—",
            issue.assessment,
            pr_status,
            issue.title,
        )

    rprint(table)


@app.command("sync")
def sync(
    repo_id: RepoArg,
    all_pages: Annotated[bool, typer.Option("--all", help="Keep fetching until the tracker is exhausted")] = False,
) -> None:
    """Fetch the next page of open issues from the tracker."""
    with _session() as (rt, db):
        engine = rt.sync_engine(db)
        while True:
            result = engine.sync_page(repo_id)
            rprint(
                f"[green]✓[/green] {result.fetched_count} fetched, {result.new} new, {result.updated} updated"
                + ("" if result.has_more else " [dim](fully synced)[/dim]")
            )
            if not (all_pages and result.has_more):
                break


@app.command("reset-sync")
def reset_sync(repo_id: RepoArg) -> None:
    """Rewind a repository's sync cursor to the first page."""
    with _session() as (rt, db):
        rt.sync_engine(db).reset(repo_id)
    rprint(f"[green]✓[/green] Sync cursor reset for repo {repo_id}")


@app.command("check-prs")
def check_prs(repo_id: RepoArg) -> None:
    """Look for open pull requests on branches scout pushed."""
    with _session() as (rt, db):
        updated = rt.pr_detector(db).check_repo(repo_id)
    rprint(f"[green]✓[/green] {updated} issue(s) updated")


@app.command("analyze")
def analyze(
    repo_id: Annotated[int | None, typer.Argument(help="Analyze up to --limit pending issues of this repo")] = None,
    issue_id: Annotated[int | None, typer.Option("--issue", "-i", help="Analyze a single issue")] = None,
    model: ModelOpt = None,
    limit: Annotated[int, typer.Option("--limit", min=1)] = 5,
) -> None:
    """Assess whether issues are fit for an unattended agent run."""
    if issue_id is not None and repo_id is None:
        with _session() as (rt, db):
            issue = rt.analyzer(db).analyze_issue(issue_id, model)
        rprint(f"[bold]{issue.source_id}[/bold] → {issue.assessment}")
        rprint(f"  {issue.summary}")
        return
    if repo_id is None or issue_id is not None:
        rprint("[red]Pass either a repo id or --issue.[/red]")
        raise typer.Exit(1)
    with _session() as (rt, db):
        batch = rt.analyzer(db).analyze_batch(repo_id, model, limit=limit)

    for issue in batch.results:
        rprint(f"[green]✓[/green] [bold]{issue.source_id}[/bold] → {issue.assessment}")
    for err in batch.errors:
        rprint(f"[red]✗[/red] issue {err.issue_id}: {err.error}")
    rprint(f"{batch.analyzed} analyzed, {batch.remaining} still pending")


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


@app.command("launch")
def launch(
    issue_id: IssueArg,
    context: Annotated[str | None, typer.Option("--context", "-c", help="Extra notes for the agent")] = None,
    model: ModelOpt = None,
) -> None:
    """Start an agent run for an issue."""
    with _session() as (rt, db):
        result = rt.launcher(db).launch(issue_id, context_note=context, model=model)
    rprint(f"[green]✓[/green] Launched run [bold]{result.callback_id}[/bold]")
    rprint(f"  branch: {result.branch_name}")


@app.command("cancel")
def cancel(issue_id: IssueArg) -> None:
    """Stop an issue's running agent and reset it."""
    with _session() as (rt, db):
        result = rt.canceller(db).cancel(issue_id)
    rprint(
        f"[green]✓[/green] Cancelled {len(result.cancelled_callbacks)} run(s), "
        f"signalled {result.terminated_process_count} process(es)"
    )


@app.command("report")
def report(
    callback_id: Annotated[str, typer.Argument(help="Callback id the run was launched with")],
    status: Annotated[str, typer.Argument(help="complete, failed or needs_review")],
    pr_url: Annotated[str | None, typer.Option("--pr-url", help="URL of the PR the agent opened")] = None,
    error: Annotated[str | None, typer.Option("--error", help="Failure text")] = None,
    url: Annotated[str | None, typer.Option("--url", envvar="SCOUT_CALLBACK_URL", help="Callback endpoint")] = None,
) -> None:
    """Report a run's terminal status to the scout server (used by agent scripts)."""
    if status not in REPORTED_STATUSES:
        rprint(f"[red]Unknown status '{status}'. Valid: {', '.join(REPORTED_STATUSES)}[/red]")
        raise typer.Exit(1)
    endpoint = url or get_settings().callback_url
    payload = {"callback_id": callback_id, "status": status, "pr_url": pr_url, "error": error}
    try:
        response = httpx.post(endpoint, json=payload, timeout=get_settings().http_timeout)
    except httpx.HTTPError as exc:
        rprint(f"[red]Could not reach {endpoint}: {exc}[/red]")
        raise typer.Exit(1) from exc
    body = response.json() if response.content else {}
    if response.status_code >= 400:
        message = (body.get("error") or {}).get("message", response.text)
        rprint(f"[red]Callback rejected ({response.status_code}): {message}[/red]")
        raise typer.Exit(1)
    rprint(f"[green]✓[/green] {body.get('message', 'Reported')}")


# ---------------------------------------------------------------------------
# Server and configuration
# ---------------------------------------------------------------------------


@app.command("serve")
def serve_cmd(
    host: Annotated[str | None, typer.Option("--host")] = None,
    port: Annotated[int | None, typer.Option("--port")] = None,
    scheduler: Annotated[bool | None, typer.Option("--scheduler/--no-scheduler")] = None,
) -> None:
    """Run the HTTP server (callback endpoint and operator API)."""
    from scout.api import serve

    overrides: dict = {}
    if host is not None:
        overrides["host"] = host
    if port is not None:
        overrides["port"] = port
    if scheduler is not None:
        overrides["enable_scheduler"] = scheduler
    serve(Runtime(get_settings(**overrides)))


@app.command("config-show")
def config_show() -> None:
    """Show resolved configuration (masks credentials)."""
    settings = get_settings()

    def mask(val: str | None, prefix: str = "") -> str:
        if val is None:
            return "[dim](not set)[/dim]"
        if len(val) <= 5:
            return "***"
        return f"{prefix}...{val[-5:]}"

    def secret(field: str, prefix: str = "") -> str:
        value = getattr(settings, field)
        return mask(value.get_secret_value() if value else None, prefix=prefix)

    table = Table(title="Scout Configuration")
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("db_path", str(settings.db_path))
    table.add_row("scratch_dir", str(settings.scratch_dir))
    table.add_row("public_url", settings.public_url)
    table.add_row("github_auth", settings.github_auth)
    table.add_row("github_token", secret("github_token", prefix="ghp_"))
    table.add_row("linear_api_key", secret("linear_api_key", prefix="lin_api_"))
    table.add_row("openai_api_key", secret("openai_api_key", prefix="sk-"))
    table.add_row("anthropic_api_key", secret("anthropic_api_key", prefix="sk-ant-"))
    table.add_row("assessment_model", resolve_model(settings, "assessment"))
    table.add_row("pr_creation_model", resolve_model(settings, "pr_creation"))
    table.add_row("review_model", resolve_model(settings, "review"))
    models = [m["value"] for m in available_models(settings)]
    table.add_row("available_models", ", ".join(models) if models else "[dim](no model keys set)[/dim]")
    table.add_row("agent_command", " ".join(settings.agent_command))
    table.add_row("scheduler", "on" if settings.enable_scheduler else "off")

    rprint(table)
