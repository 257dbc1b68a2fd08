"""Repository detection — find the source repository for a delegated issue.

Precedence (first match wins):
1. Linear's ``issueRepositorySuggestions`` on the agent session
2. A GitHub URL in the issue description
3. Nothing
"""

from __future__ import annotations

import re

from pydantic import ValidationError

from loom.models import DetectionResult, DetectionSource, RepositorySuggestion, SelectOption

# Matches https://github.com/<owner>/<repo>, repo may carry a trailing .git
_GITHUB_URL_RE = re.compile(r"https?://github\.com/([A-Za-z0-9_-]+)/([A-Za-z0-9_.-]+)")


def _suggestions(agent_session: dict) -> list[RepositorySuggestion]:
    raw = agent_session.get("issueRepositorySuggestions") or []
    suggestions = []
    for entry in raw:
        try:
            suggestions.append(RepositorySuggestion.model_validate(entry))
        except ValidationError:
            continue
    return suggestions


def detect(agent_session: dict) -> DetectionResult:
    """Extract a candidate repository URL from an agent session payload."""
    suggestions = _suggestions(agent_session)
    if suggestions:
        return DetectionResult(
            repo_url=suggestions[0].resolved_url,
            source=DetectionSource.SUGGESTIONS,
            suggestions=suggestions,
        )

    issue = agent_session.get("issue") or {}
    description = issue.get("description") or ""
    match = _GITHUB_URL_RE.search(description)
    if match:
        owner, repo = match.groups()
        repo = re.sub(r"\.git$", "", repo)
        return DetectionResult(
            repo_url=f"https://github.com/{owner}/{repo}",
            source=DetectionSource.DESCRIPTION,
        )

    return DetectionResult()


def needs_selection(agent_session: dict) -> bool:
    """True when Linear suggested more than one repository."""
    return len(_suggestions(agent_session)) > 1


def format_for_selection(suggestions: list[RepositorySuggestion]) -> list[SelectOption]:
    """Build ``select`` signal options, keyed by position (repo-0, repo-1, ...)."""
    return [
        SelectOption(key=f"repo-{i}", label=s.full_name, value=s.resolved_url)
        for i, s in enumerate(suggestions)
    ]
