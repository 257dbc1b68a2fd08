"""Tests for Loom core data models."""

from loom.models import (
    LinearEvent,
    PlanStep,
    PlanStepStatus,
    RepositorySuggestion,
    SessionRecord,
)


def _prompted(**data) -> LinearEvent:
    return LinearEvent(type="AgentSessionEvent", action="prompted", data=data)


class TestLinearEvent:
    def test_full_type_with_action(self):
        event = LinearEvent(type="AgentSessionEvent", action="created")
        assert event.full_type == "AgentSessionEvent.created"

    def test_full_type_without_action(self):
        assert LinearEvent(type="Issue").full_type == "Issue"

    def test_session_accessors(self):
        event = _prompted(
            agentSession={
                "id": "s1",
                "issue": {"identifier": "ABC-1", "labels": [{"name": "ui"}, {"name": "small"}]},
            }
        )
        assert event.session_id == "s1"
        assert event.issue["identifier"] == "ABC-1"
        assert event.label_names == ["ui", "small"]

    def test_missing_agent_session(self):
        event = _prompted(agentSession="not-a-dict")
        assert event.agent_session is None
        assert event.session_id is None
        assert event.issue == {}
        assert event.label_names == []

    def test_prompt_text_prefers_activity_body(self):
        event = _prompted(
            agentSession={"id": "s1", "promptContext": "<issue/>"},
            agentActivity={"content": {"type": "prompt", "body": "make it blue"}},
        )
        assert event.prompt_text == "make it blue"

    def test_prompt_text_falls_back_to_prompt_context(self):
        event = _prompted(agentSession={"id": "s1", "promptContext": "make it blue"})
        assert event.prompt_text == "make it blue"

    def test_prompt_text_empty(self):
        assert _prompted(agentSession={"id": "s1"}).prompt_text == ""

    def test_repository_signal(self):
        event = _prompted(
            agentSession={
                "id": "s1",
                "guidance": {
                    "signals": [
                        {"key": "other", "value": "x"},
                        {"key": "repository", "value": "https://github.com/acme/web"},
                    ]
                },
            }
        )
        assert event.repository_signal == "https://github.com/acme/web"

    def test_repository_signal_ignores_empty_value(self):
        event = _prompted(
            agentSession={"id": "s1", "guidance": {"signals": [{"key": "repository", "value": ""}]}}
        )
        assert event.repository_signal is None


class TestRepositorySuggestion:
    def test_resolved_url_from_owner_name(self):
        s = RepositorySuggestion(owner="acme", name="web")
        assert s.full_name == "acme/web"
        assert s.resolved_url == "https://github.com/acme/web"

    def test_explicit_url_wins(self):
        s = RepositorySuggestion(owner="acme", name="web", url="https://gitlab.com/acme/web")
        assert s.resolved_url == "https://gitlab.com/acme/web"


class TestSessionRecord:
    def test_defaults(self):
        record = SessionRecord(tracker_session_id="s1")
        assert record.generation_chat_id is None
        assert record.plan == []
        assert record.external_links == []
        assert record.created_at.tzinfo is not None

    def test_plan_step_default_pending(self):
        assert PlanStep(label="x").status == PlanStepStatus.PENDING
