"""Core data models for Loom."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Plans ────────────────────────────────────────────────────────────────────


class PlanStepStatus(str, enum.Enum):
    """Checklist step states shown in the Linear activity timeline."""

    PENDING = "pending"
    CURRENT = "current"
    COMPLETED = "completed"
    FAILED = "failed"


class PlanStep(BaseModel):
    label: str
    status: PlanStepStatus = PlanStepStatus.PENDING


Plan = list[PlanStep]


# ── Repository Detection ─────────────────────────────────────────────────────


class RepositorySuggestion(BaseModel):
    """One entry of Linear's ``issueRepositorySuggestions``."""

    owner: str = ""
    name: str = ""
    url: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def resolved_url(self) -> str:
        """Explicit URL if Linear provided one, else the GitHub URL for owner/name."""
        return self.url or f"https://github.com/{self.owner}/{self.name}"


class DetectionSource(str, enum.Enum):
    SUGGESTIONS = "suggestions"
    DESCRIPTION = "description"
    NONE = "none"


class DetectionResult(BaseModel):
    repo_url: str | None = None
    source: DetectionSource = DetectionSource.NONE
    suggestions: list[RepositorySuggestion] = Field(default_factory=list)


class SelectOption(BaseModel):
    """An option in an elicitation ``select`` signal."""

    key: str
    label: str
    value: str


# ── Sessions ─────────────────────────────────────────────────────────────────


class ExternalLink(BaseModel):
    label: str
    url: str


class SessionRecord(BaseModel):
    """Local record correlating a Linear agent session with a v0 chat."""

    tracker_session_id: str = Field(description="Linear agent session ID (primary key)")
    generation_chat_id: str | None = Field(
        default=None, description="v0 chat ID, assigned once by the first generation call"
    )
    project_id: str | None = Field(default=None, description="v0 project ID")
    chat_url: str | None = Field(default=None, description="Human-facing v0 chat link")
    deployment_url: str | None = Field(default=None, description="Set after a successful deploy")
    source_repo_url: str | None = Field(default=None, description="Imported repository, if any")
    latest_version_id: str | None = Field(
        default=None, description="Latest v0 version, updated on every refinement"
    )
    plan: list[PlanStep] = Field(default_factory=list)
    external_links: list[ExternalLink] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


# ── Linear Events ────────────────────────────────────────────────────────────


class ActivityType(str, enum.Enum):
    """Agent activity content types accepted by Linear."""

    THOUGHT = "thought"
    ACTION = "action"
    TOOL = "tool"
    MESSAGE = "message"
    ERROR = "error"
    ELICITATION = "elicitation"
    PLAN = "plan"


class LinearEvent(BaseModel):
    """Raw Linear webhook event."""

    type: str = Field(description="Webhook type, e.g. 'AgentSessionEvent'")
    action: str | None = Field(default=None, description="Event action, e.g. 'created'")
    data: dict = Field(default_factory=dict, description="Event-specific data")
    delivery_id: str | None = Field(default=None, description="Linear-Delivery header value")
    webhook_timestamp: int | None = Field(
        default=None, description="webhookTimestamp from the payload (ms since epoch)"
    )

    @property
    def full_type(self) -> str:
        """e.g. 'AgentSessionEvent.created'."""
        if self.action:
            return f"{self.type}.{self.action}"
        return self.type

    @property
    def agent_session(self) -> dict | None:
        session = self.data.get("agentSession")
        return session if isinstance(session, dict) else None

    @property
    def session_id(self) -> str | None:
        session = self.agent_session or {}
        return session.get("id")

    @property
    def issue(self) -> dict:
        session = self.agent_session or {}
        return session.get("issue") or {}

    @property
    def label_names(self) -> list[str]:
        return [label.get("name", "") for label in self.issue.get("labels") or []]

    @property
    def prompt_text(self) -> str:
        """The user's message for a prompted event.

        Linear delivers the new comment as ``agentActivity.content.body``; older
        payloads only carry the preformatted ``promptContext``.
        """
        activity = self.data.get("agentActivity") or {}
        body = (activity.get("content") or {}).get("body")
        if body:
            return body
        session = self.agent_session or {}
        return session.get("promptContext") or self.data.get("promptContext") or ""

    @property
    def repository_signal(self) -> str | None:
        """Value of the ``repository`` guidance signal, if the user answered one."""
        session = self.agent_session or {}
        guidance = session.get("guidance") or self.data.get("guidance") or {}
        for signal in guidance.get("signals") or []:
            if signal.get("key") == "repository" and signal.get("value"):
                return signal["value"]
        return None


# ── External Results ─────────────────────────────────────────────────────────


class GenerationChat(BaseModel):
    """A v0 chat as returned by create/init/continue calls."""

    chat_id: str
    chat_url: str
    project_id: str | None = None
    version_id: str | None = None
    demo_url: str | None = None


class Deployment(BaseModel):
    deployment_id: str
    url: str
    inspector_url: str | None = None


# ── Router Results ───────────────────────────────────────────────────────────


class RouteResult(BaseModel):
    """Structured outcome of handling one webhook event."""

    success: bool
    message: str
    session_id: str | None = None
    branch: str | None = None
    chat_id: str | None = None
    chat_url: str | None = None
    deployment_url: str | None = None
    awaiting_selection: bool = False
    duplicate: bool = False
    ignored: bool = False
    repo_detected: bool = False
