"""Tests for the reviewer and completeness checker."""

import json
from unittest.mock import MagicMock

import pytest

from stackloop.agent import AgentBlocked, AgentError, AgentErrorKind, AgentSuccess
from stackloop.review import CheckResult, Checker, ReviewResult, Reviewer, parse_check, parse_review

STATS = {"files_changed": 2, "lines_added": 10, "lines_removed": 1}


@pytest.fixture
def git(tmp_path):
    git = MagicMock()
    git.repo = tmp_path
    git.working_diff_stats.return_value = dict(STATS)
    git.working_diff.return_value = "diff --git a/a.py b/a.py\n+print('hi')\n"
    git.changed_files.return_value = []
    return git


@pytest.fixture
def harness():
    return MagicMock()


class TestModels:
    """Tests for lenient result parsing."""

    def test_blocking_issues_veto_approval(self):
        """Approval with blocking issues does not pass."""
        result = ReviewResult(approved=True, blocking_issues=[{"issue": "SQL injection"}])
        assert result.passed is False
        assert result.issues_text() == "SQL injection"

    def test_string_issues_coerced(self):
        """Plain strings become issues."""
        result = ReviewResult.model_validate({"approved": False, "blocking_issues": ["missing null check"]})
        assert result.blocking_issues[0].issue == "missing null check"

    def test_bad_line_number(self):
        """Non-numeric line numbers are dropped."""
        result = ReviewResult.model_validate({"blocking_issues": [{"issue": "x", "line": "near the top"}]})
        assert result.blocking_issues[0].line is None

    def test_check_confidence_coerced(self):
        """String confidences are parsed."""
        result = parse_check('{"complete": true, "confidence": "0.8"}')
        assert result.confidence == 0.8
        assert result.passes(0.7) is True
        assert result.passes(0.9) is False

    def test_incomplete_never_passes(self):
        """complete=false fails regardless of confidence."""
        assert CheckResult(complete=False, confidence=1.0).passes(0.5) is False

    def test_no_json(self):
        """Replies without JSON parse to None."""
        assert parse_review("Looks good to me!") is None
        assert parse_check("") is None


class TestReviewer:
    """Tests for Reviewer."""

    def test_should_review_threshold(self, harness, git, config):
        """Small changes skip review."""
        reviewer = Reviewer(harness, git, config)
        assert reviewer.should_review("abc") is True

        git.working_diff_stats.return_value = {"files_changed": 1, "lines_added": 3, "lines_removed": 0}
        assert reviewer.should_review("abc") is False

    def test_disabled(self, harness, git, config):
        """A disabled reviewer never reviews."""
        config.enable_reviewer = False
        assert Reviewer(harness, git, config).should_review("abc") is False

    def test_empty_diff_approves(self, harness, git, config, task):
        """Nothing to review is approved without calling the model."""
        git.working_diff.return_value = "   \n"

        result = Reviewer(harness, git, config).review(task, "abc")

        assert result.passed
        harness.invoke.assert_not_called()

    def test_review_result(self, harness, git, config, task):
        """The reviewer's JSON is returned."""
        harness.invoke.return_value = AgentSuccess(json.dumps({
            "approved": False,
            "confidence": 0.9,
            "blocking_issues": [{"file": "a.py", "line": 1, "issue": "debug print left in"}],
            "summary": "Remove the print",
        }))

        result = Reviewer(harness, git, config).review(task, "abc")

        assert result.passed is False
        assert result.blocking_issues[0].file == "a.py"
        assert harness.invoke.call_args[0][0] == config.reviewer_model
        git.working_diff.assert_called_with("abc")

    def test_agent_failure_not_approved(self, harness, git, config, task):
        """A reviewer that cannot run does not approve."""
        harness.invoke.return_value = AgentError(AgentErrorKind.FAILED, 1, "boom")

        result = Reviewer(harness, git, config).review(task, "abc")

        assert result.approved is False
        assert result.summary == "Reviewer failed: exit 1"

    def test_invalid_json_not_approved(self, harness, git, config, task):
        """Prose replies are not approvals."""
        harness.invoke.return_value = AgentSuccess("LGTM")
        assert Reviewer(harness, git, config).review(task, "abc").summary == "Reviewer returned invalid JSON"

    def test_thorough_includes_file_context(self, harness, git, config, task, tmp_path):
        """Thorough reviews see the changed files."""
        (tmp_path / "a.py").write_text("def login():\n    return True\n")
        git.changed_files.return_value = ["a.py", "deleted.py"]
        config.review_depth = "thorough"
        harness.invoke.return_value = AgentSuccess('{"approved": true}')

        Reviewer(harness, git, config).review(task, "abc")

        prompt = harness.invoke.call_args[0][1]
        assert "FULL FILE CONTEXT" in prompt
        assert "--- a.py (full file for context) ---" in prompt
        assert "deleted.py" not in prompt


class TestChecker:
    """Tests for Checker."""

    def test_fenced_answer(self, harness, git, config, task):
        """A fenced JSON answer is parsed."""
        harness.invoke.return_value = AgentSuccess('```json\n{"complete": true, "confidence": 0.92}\n```')

        result = Checker(harness, git, config).check(task, "abc")

        assert result.passes(config.checker_conf_threshold)

    def test_prompt_has_diffstat(self, harness, git, config, task):
        """The checker sees the diffstat and the validation command."""
        harness.invoke.return_value = AgentSuccess('{"complete": true, "confidence": 1}')

        Checker(harness, git, config).check(task, "abc")

        model, prompt = harness.invoke.call_args[0]
        assert model == config.checker_model
        assert "2 files changed, 10 insertions(+), 1 deletions(-)" in prompt
        assert "- make check" in prompt

    def test_blocked_checker_is_incomplete(self, harness, git, config, task):
        """A checker that reports blocked does not confirm completeness."""
        harness.invoke.return_value = AgentBlocked(reason="cannot see tests")

        result = Checker(harness, git, config).check(task, "abc")

        assert result.complete is False
        assert result.confidence == 0.0

    def test_threshold(self, harness, git, config):
        """The threshold comes from config."""
        assert Checker(harness, git, config).threshold == 0.70
