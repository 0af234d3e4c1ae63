"""Issue assessment: asks a chat model whether an agent can take the issue unattended."""

import json
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable

import httpx
import pydantic

from scout.db import ScoutDB
from scout.errors import ScoutError, UpstreamError, ValidationError
from scout.models import AnalysisError, AssessmentResult, BatchAnalysis, Issue
from scout.settings import ScoutSettings, resolve_model
from scout.templates import load_template

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
MAX_TOKENS = 1024
BATCH_LIMIT = 5

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(?P<body>.*?)\s*```$", re.DOTALL)


# ---------------------------------------------------------------------------
# Model clients
# ---------------------------------------------------------------------------


class ModelClient(ABC):
    @abstractmethod
    def complete(self, prompt: str, model: str) -> str:
        """Send one user prompt and return the reply text."""


def _post(url: str, headers: dict, payload: dict, timeout: float, vendor: str) -> dict:
    try:
        response = httpx.post(url, headers=headers, json=payload, timeout=timeout)
    except httpx.HTTPError as exc:
        raise UpstreamError(f"{vendor} request failed: {exc}") from exc
    if response.status_code >= 400:
        try:
            message = response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            message = response.text or f"HTTP {response.status_code}"
        raise UpstreamError(f"{vendor} API error ({response.status_code}): {message}")
    return response.json()


class OpenAIClient(ModelClient):
    def __init__(self, api_key: str, timeout: float = 30.0) -> None:
        self._api_key = api_key
        self._timeout = timeout

    def complete(self, prompt: str, model: str) -> str:
        data = _post(
            OPENAI_URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            payload={"model": model, "messages": [{"role": "user", "content": prompt}]},
            timeout=self._timeout,
            vendor="OpenAI",
        )
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise UpstreamError("OpenAI response had no message content") from exc


class AnthropicClient(ModelClient):
    def __init__(self, api_key: str, timeout: float = 30.0) -> None:
        self._api_key = api_key
        self._timeout = timeout

    def complete(self, prompt: str, model: str) -> str:
        data = _post(
            ANTHROPIC_URL,
            headers={"x-api-key": self._api_key, "anthropic-version": ANTHROPIC_VERSION},
            payload={
                "model": model,
                "max_tokens": MAX_TOKENS,
                "messages": [{"role": "user", "content": prompt}],
            },
            timeout=self._timeout,
            vendor="Anthropic",
        )
        blocks = data.get("content") or []
        return "".join(b.get("text", "") for b in blocks if b.get("type") == "text")


def client_for_model(settings: ScoutSettings, model: str) -> ModelClient:
    """gpt* models go to OpenAI, everything else to Anthropic."""
    if model.startswith("gpt"):
        if not settings.openai_api_key:
            raise ValidationError(f"Model {model} needs an OpenAI key. Set SCOUT_OPENAI_API_KEY.")
        return OpenAIClient(settings.openai_api_key.get_secret_value(), settings.http_timeout)
    if not settings.anthropic_api_key:
        raise ValidationError(f"Model {model} needs an Anthropic key. Set SCOUT_ANTHROPIC_API_KEY.")
    return AnthropicClient(settings.anthropic_api_key.get_secret_value(), settings.http_timeout)


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------


def parse_assessment(reply: str) -> AssessmentResult:
    """Parse a model reply, tolerating a fenced code block around the JSON.

    Raises ValueError describing what was wrong.
    """
    text = reply.strip()
    fenced = _FENCE_RE.match(text)
    if fenced:
        text = fenced.group("body")
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ValueError(f"not valid JSON ({exc.msg})") from exc
    try:
        return AssessmentResult.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValueError(f"wrong shape: {exc.errors()[0]['msg']}") from exc


class IssueAnalyzer:
    def __init__(
        self,
        db: ScoutDB,
        settings: ScoutSettings,
        client_for: Callable[[str], ModelClient] | None = None,
    ) -> None:
        self.db = db
        self.settings = settings
        self.client_for = client_for or (lambda model: client_for_model(settings, model))

    def _prompt(self, issue: Issue, retry_reason: str | None = None) -> str:
        template = load_template("assess", self.settings.prompts_dir)
        values = {
            "issue_identifier": issue.source_id,
            "issue_title": issue.title,
            "issue_description": issue.description or "_No description provided._",
            "labels": ", ".join(issue.labels) if issue.labels else "none",
            "priority": issue.priority or "none",
            "retry_reason": retry_reason,
        }
        return template.render(values, {"retry": retry_reason is not None})

    def assess(self, issue: Issue, model: str) -> AssessmentResult:
        client = self.client_for(model)
        reply = client.complete(self._prompt(issue), model)
        try:
            return parse_assessment(reply)
        except ValueError as exc:
            logger.warning("Unusable assessment for %s (%s), retrying once", issue.source_id, exc)
            reason = str(exc)
        reply = client.complete(self._prompt(issue, retry_reason=reason), model)
        try:
            return parse_assessment(reply)
        except ValueError as exc:
            raise UpstreamError(f"Model {model} gave no usable assessment for {issue.source_id}: {exc}") from exc

    def analyze_issue(self, issue_id: int, model: str | None = None) -> Issue:
        issue = self.db.require_issue(issue_id)
        model = resolve_model(self.settings, "assessment", model)
        result = self.assess(issue, model)
        with self.db.transaction():
            self.db.record_assessment(issue.id, result.assessment, result.summary, model)
        logger.info("Assessed %s with %s: %s", issue.source_id, model, result.assessment)
        return self.db.require_issue(issue.id)

    def analyze_batch(self, repo_id: int, model: str | None = None, limit: int = BATCH_LIMIT) -> BatchAnalysis:
        """Assess up to ``limit`` pending issues; per-issue failures are reported, not raised."""
        self.db.require_repo(repo_id)
        model = resolve_model(self.settings, "assessment", model)
        results: list[Issue] = []
        errors: list[AnalysisError] = []
        for issue in self.db.list_pending_assessment(repo_id, limit):
            try:
                results.append(self.analyze_issue(issue.id, model))
            except ScoutError as exc:
                logger.warning("Assessment of %s failed: %s", issue.source_id, exc.message)
                errors.append(AnalysisError(issue_id=issue.id, error=exc.message))
        return BatchAnalysis(
            analyzed=len(results),
            remaining=self.db.count_pending_assessment(repo_id),
            results=results,
            errors=errors,
        )
