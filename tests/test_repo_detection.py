"""Tests for repository detection."""

from loom.models import DetectionSource, RepositorySuggestion
from loom.repo_detection import detect, format_for_selection, needs_selection


class TestDetect:
    def test_suggestions_win_over_description(self):
        session = {
            "issueRepositorySuggestions": [{"owner": "acme", "name": "web"}],
            "issue": {"description": "see https://github.com/other/repo"},
        }
        result = detect(session)
        assert result.source == DetectionSource.SUGGESTIONS
        assert result.repo_url == "https://github.com/acme/web"
        assert len(result.suggestions) == 1

    def test_description_url(self):
        session = {"issue": {"description": "Base it on https://github.com/acme/site.git please"}}
        result = detect(session)
        assert result.source == DetectionSource.DESCRIPTION
        assert result.repo_url == "https://github.com/acme/site"

    def test_description_url_keeps_dots_in_name(self):
        result = detect({"issue": {"description": "http://github.com/acme/acme.io"}})
        assert result.repo_url == "https://github.com/acme/acme.io"

    def test_nothing_found(self):
        result = detect({"issue": {"description": "Build a login form"}})
        assert result.source == DetectionSource.NONE
        assert result.repo_url is None
        assert result.suggestions == []

    def test_empty_session(self):
        assert detect({}).repo_url is None

    def test_invalid_suggestion_entries_skipped(self):
        session = {"issueRepositorySuggestions": ["garbage", {"owner": "acme", "name": "web"}]}
        result = detect(session)
        assert result.repo_url == "https://github.com/acme/web"


class TestSelection:
    def test_needs_selection_only_for_multiple(self):
        one = {"issueRepositorySuggestions": [{"owner": "a", "name": "b"}]}
        two = {
            "issueRepositorySuggestions": [
                {"owner": "a", "name": "b"},
                {"owner": "c", "name": "d"},
            ]
        }
        assert needs_selection({}) is False
        assert needs_selection(one) is False
        assert needs_selection(two) is True

    def test_format_for_selection(self):
        options = format_for_selection(
            [
                RepositorySuggestion(owner="acme", name="web"),
                RepositorySuggestion(owner="acme", name="app", url="https://github.com/acme/app2"),
            ]
        )
        assert [o.key for o in options] == ["repo-0", "repo-1"]
        assert [o.label for o in options] == ["acme/web", "acme/app"]
        assert [o.value for o in options] == [
            "https://github.com/acme/web",
            "https://github.com/acme/app2",
        ]
