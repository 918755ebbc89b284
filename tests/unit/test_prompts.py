"""Tests for prompt rendering."""

from stackloop.beads import Task
from stackloop.prompts import (
    build_classifier_prompt,
    build_implementer_prompt,
    build_repair_prompt,
    build_review_fix_prompt,
    build_review_prompt,
    extract_acceptance,
    truncate_diff,
)
from stackloop.review import CheckResult, ReviewResult


class TestHelpers:
    """Tests for prompt helper functions."""

    def test_acceptance_markdown_heading(self):
        """A markdown heading section ends at the next heading."""
        details = "Intro\n## Acceptance Criteria\n- renders\n- posts\n## Notes\nignore me"
        assert extract_acceptance(details) == "## Acceptance Criteria\n- renders\n- posts"

    def test_acceptance_label(self):
        """A plain label section ends at the next label."""
        details = "Acceptance Criteria:\n- renders\nNotes:\n- later"
        assert extract_acceptance(details) == "Acceptance Criteria:\n- renders"

    def test_no_acceptance(self):
        """Details without criteria give an empty section."""
        assert extract_acceptance("Just do it") == ""

    def test_truncate_diff(self):
        """Long diffs keep their head and tail."""
        diff = "\n".join(str(i) for i in range(100))
        truncated = truncate_diff(diff, head=3, tail=2).splitlines()
        assert truncated == ["0", "1", "2", "...", "98", "99"]

    def test_short_diff_untouched(self):
        """Short diffs are returned as-is."""
        assert truncate_diff("a\nb", head=3, tail=2) == "a\nb"


class TestTemplates:
    """Tests for rendered prompts."""

    def test_implementer(self, task):
        """The implementer is told its branch, the rules and the blocked format."""
        prompt = build_implementer_prompt(task, "agent/T-1-add-login-form", "make check", [".beads/", ".claude/"])

        assert "You are on branch: agent/T-1-add-login-form" in prompt
        assert "Do NOT touch files in: .beads/, .claude/" in prompt
        assert "make check" in prompt
        assert "STATUS: BLOCKED" in prompt
        assert "## Acceptance Criteria" in prompt

    def test_review_standard_has_acceptance(self, task):
        """Standard reviews include the acceptance criteria."""
        prompt = build_review_prompt(task, "+code", depth="standard")
        assert "- form renders" in prompt
        assert "FULL FILE CONTEXT" not in prompt

    def test_review_minimal(self, task):
        """Minimal reviews are a quick check."""
        prompt = build_review_prompt(task, "+code", depth="minimal")
        assert "Quick check for" in prompt
        assert '"approved": boolean' in prompt

    def test_repair_lists_gaps(self, task):
        """Repair prompts list each blocking gap."""
        check = CheckResult(complete=False, confidence=0.4,
                            blocking_gaps=[{"ac": "form renders", "issue": "no template", "evidence": ""}])

        prompt = build_repair_prompt(task, check)

        assert "- [form renders] no template" in prompt
        assert '"confidence": 0.4' in prompt

    def test_repair_without_gaps(self, task):
        """A low-confidence check without gaps still explains itself."""
        prompt = build_repair_prompt(task, CheckResult(complete=True, confidence=0.5))
        assert "not confident the task is complete (confidence 0.5)" in prompt

    def test_review_fix(self, task):
        """Review fixes list issues with location and suggestion."""
        review = ReviewResult(
            approved=False,
            summary="One bug",
            blocking_issues=[{"file": "a.py", "line": 3, "issue": "off by one", "suggestion": "use <="}],
        )

        prompt = build_review_fix_prompt(task, review)

        assert "- a.py:3: off by one (suggestion: use <=)" in prompt

    def test_classifier_tail(self):
        """Only the last 100 lines of error output are sent."""
        output = "\n".join(f"err-{i:03d}" for i in range(150))

        prompt = build_classifier_prompt("submit", 1, output, {}, classes=[("UNKNOWN", "?")], actions=[])

        assert "err-050" in prompt
        assert "err-049" not in prompt
        assert "- UNKNOWN: ?" in prompt

    def test_task_without_details(self):
        """Tasks with no details still render."""
        prompt = build_review_prompt(Task(id="T-9", title="Tiny"), "+x")
        assert "Task: T-9" in prompt
