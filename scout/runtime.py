"""Wires settings and the external collaborators (git, processes, trackers, models) into the services."""

import logging
from collections.abc import Callable

from scout.analysis import IssueAnalyzer, ModelClient, client_for_model
from scout.callbacks import CallbackGateway
from scout.cancel import CancellationController
from scout.db import ScoutDB
from scout.errors import ScoutError, ValidationError
from scout.launcher import RunLauncher
from scout.process import OsProcessSupervisor, ProcessSupervisor
from scout.providers.base import TrackerProvider
from scout.providers.github import GitHubProvider
from scout.providers.linear import LinearProvider
from scout.scheduler import PeriodicTask, Scheduler
from scout.settings import ScoutSettings, get_settings
from scout.sync import PullRequestDetector, SyncEngine, check_all_repos
from scout.vcs import GitTool, VcsTool
from scout.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class Runtime:
    """One per process. Services are cheap and built per request around a fresh ``ScoutDB``."""

    def __init__(
        self,
        settings: ScoutSettings | None = None,
        vcs: VcsTool | None = None,
        supervisor: ProcessSupervisor | None = None,
        provider_factory: Callable[[str], TrackerProvider] | None = None,
        model_client_factory: Callable[[str], ModelClient] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.vcs = vcs or GitTool()
        self.supervisor = supervisor or OsProcessSupervisor()
        self._provider_factory = provider_factory
        self._model_client_factory = model_client_factory

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def open_db(self) -> ScoutDB:
        return ScoutDB(self.settings.db_path)

    def get_provider(self, source: str) -> TrackerProvider:
        if self._provider_factory is not None:
            return self._provider_factory(source)
        match source:
            case "linear":
                return LinearProvider(self.settings)
            case "github":
                return GitHubProvider(self.settings)
            case _:
                raise ValidationError(f"Unknown source '{source}'. Valid: linear, github")

    def get_github(self) -> GitHubProvider:
        # PR listing is GitHub-only, Linear teams included
        return self.get_provider("github")  # type: ignore[return-value]

    def model_client(self, model: str) -> ModelClient:
        if self._model_client_factory is not None:
            return self._model_client_factory(model)
        return client_for_model(self.settings, model)

    def workspaces(self) -> WorkspaceManager:
        return WorkspaceManager(self.vcs, self.settings.worktrees_root, self.settings.runs_root)

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def launcher(self, db: ScoutDB) -> RunLauncher:
        return RunLauncher(db, self.workspaces(), self.supervisor, self.settings)

    def callbacks(self, db: ScoutDB) -> CallbackGateway:
        return CallbackGateway(db, self.workspaces(), self.settings.runs_root)

    def canceller(self, db: ScoutDB) -> CancellationController:
        return CancellationController(
            db,
            self.workspaces(),
            self.supervisor,
            self.settings.runs_root,
            grace_seconds=self.settings.cancel_grace_seconds,
        )

    def sync_engine(self, db: ScoutDB) -> SyncEngine:
        return SyncEngine(db, self.get_provider, page_size=self.settings.sync_page_size)

    def pr_detector(self, db: ScoutDB) -> PullRequestDetector:
        return PullRequestDetector(db, self.get_github, self.vcs)

    def analyzer(self, db: ScoutDB) -> IssueAnalyzer:
        return IssueAnalyzer(db, self.settings, client_for=self.model_client)

    # ------------------------------------------------------------------
    # Background cycles
    # ------------------------------------------------------------------

    def sync_cycle(self) -> None:
        """Sync one page for every repo that still has more to fetch."""
        with self.open_db() as db:
            engine = self.sync_engine(db)
            for repo in db.list_repos():
                if not db.get_sync_state(repo.id, self.settings.sync_page_size).has_more:
                    continue
                try:
                    engine.sync_page(repo.id)
                except ScoutError as exc:
                    logger.warning("Sync of %s failed: %s", repo.name, exc.message)

    def pr_check_cycle(self) -> None:
        with self.open_db() as db:
            check_all_repos(self.pr_detector(db), [repo.id for repo in db.list_repos()])

    def build_scheduler(self) -> Scheduler:
        return Scheduler(
            [
                PeriodicTask("sync", self.settings.sync_interval, self.sync_cycle),
                PeriodicTask("pr-check", self.settings.pr_check_interval, self.pr_check_cycle),
            ]
        )
