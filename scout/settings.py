"""Settings resolution: keyword → SCOUT_* env → .env → ~/.config/scout/config.toml → defaults."""

import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import tomlkit
from pydantic import SecretStr
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

CONFIG_PATH = Path.home() / ".config" / "scout" / "config.toml"

DEFAULT_ASSESSMENT_MODEL = "gpt-5.2"
DEFAULT_PR_CREATION_MODEL = "claude-opus-4-6"

# Friendly name → name understood by the agent CLI. Unknown names pass through.
_CLI_MODEL_NAMES = {
    "claude-opus-4-6": "claude-opus-4-6",
    "claude-sonnet-4-5": "claude-sonnet-4-5-20250929",
    "claude-3-5-sonnet-20241022": "claude-3-5-sonnet-20241022",
}

_OPENAI_MODELS = [("gpt-5.2", "GPT-5.2"), ("gpt-4o-mini", "GPT-4o Mini")]
_ANTHROPIC_MODELS = [("claude-sonnet-4-5", "Claude Sonnet 4.5"), ("claude-opus-4-6", "Claude Opus 4.6")]


@lru_cache(maxsize=1)
def _load_toml() -> tomlkit.TOMLDocument:
    """Load ~/.config/scout/config.toml, returning empty document if missing."""
    if not CONFIG_PATH.exists():
        return tomlkit.document()
    return tomlkit.load(CONFIG_PATH.open())


class _TomlFileSource(PydanticBaseSettingsSource):
    """Feeds the config file in below env vars and .env."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        doc = _load_toml()
        return doc.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        doc = _load_toml()
        # tomlkit items unwrap to plain python values
        return {k: v for k, v in doc.unwrap().items() if k in self.settings_cls.model_fields}


class ScoutSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SCOUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage and scratch space
    db_path: Path = Path.home() / ".local" / "share" / "scout" / "scout.sqlite"
    scratch_dir: Path = Path(tempfile.gettempdir())
    prompts_dir: Path | None = None  # overrides the packaged prompt templates

    # HTTP surface
    host: str = "127.0.0.1"
    port: int = 8000
    public_url: str = "http://127.0.0.1:8000"  # base URL the agent calls back on

    # Trackers
    github_token: SecretStr | None = None
    github_auth: Literal["token", "gh-cli"] = "token"
    linear_api_key: SecretStr | None = None

    # Models
    openai_api_key: SecretStr | None = None
    anthropic_api_key: SecretStr | None = None
    assessment_model: str | None = None
    pr_creation_model: str | None = None
    review_model: str | None = None

    # Agent process
    agent_command: list[str] = ["scout-agent"]
    cancel_grace_seconds: float = 3.0

    # Outbound calls and polling
    http_timeout: float = 30.0
    sync_page_size: int = 50
    enable_scheduler: bool = False
    sync_interval: float = 300.0
    pr_check_interval: float = 120.0

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, env_settings, dotenv_settings, _TomlFileSource(settings_cls)

    @property
    def worktrees_root(self) -> Path:
        return self.scratch_dir / "scout-worktrees"

    @property
    def runs_root(self) -> Path:
        """Per-run scratch files (rendered prompts)."""
        return self.scratch_dir / "scout-runs"

    @property
    def logs_root(self) -> Path:
        return self.scratch_dir / "scout-logs"

    @property
    def callback_url(self) -> str:
        return f"{self.public_url.rstrip('/')}/api/callback"


def get_settings(**overrides: Any) -> ScoutSettings:
    return ScoutSettings(**overrides)


# ---------------------------------------------------------------------------
# Model resolution
# ---------------------------------------------------------------------------


def available_models(settings: ScoutSettings) -> list[dict[str, str]]:
    """Models whose provider has an API key configured."""
    models: list[dict[str, str]] = []
    if settings.openai_api_key:
        models += [{"value": v, "label": label, "provider": "openai"} for v, label in _OPENAI_MODELS]
    if settings.anthropic_api_key:
        models += [{"value": v, "label": label, "provider": "anthropic"} for v, label in _ANTHROPIC_MODELS]
    return models


def resolve_model(
    settings: ScoutSettings,
    kind: Literal["assessment", "pr_creation", "review"],
    explicit: str | None = None,
) -> str:
    """Resolve a model id for a task.

    Precedence (highest to lowest):
    1. explicit argument
    2. configured setting for the task (review falls back to pr_creation)
    3. first available model of the provider preferred for the task
    4. hard default
    """
    if explicit:
        return explicit

    configured = {
        "assessment": settings.assessment_model,
        "pr_creation": settings.pr_creation_model,
        "review": settings.review_model or settings.pr_creation_model,
    }[kind]
    if configured:
        return configured

    default = DEFAULT_ASSESSMENT_MODEL if kind == "assessment" else DEFAULT_PR_CREATION_MODEL
    available = [m["value"] for m in available_models(settings)]
    if not available or default in available:
        return default
    prefix = "gpt" if kind == "assessment" else "claude"
    preferred = [m for m in available if m.startswith(prefix)] or available
    return preferred[0]


def cli_model_name(model: str) -> str:
    return _CLI_MODEL_NAMES.get(model, model)
