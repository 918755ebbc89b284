"""Reviewer and completeness-checker agents.

Both run a different model from the implementer over the task's diff and
answer in JSON. Parsing is lenient: models drift from the schema (strings
instead of objects, missing keys), so everything is coerced into
:class:`ReviewResult` / :class:`CheckResult` rather than rejected. A reply
that holds no JSON at all is treated as a failed review, never a pass.
"""

import logging
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from stackloop.agent import AgentBlocked, AgentHarness, AgentSuccess, extract_json
from stackloop.beads import Task
from stackloop.config import Config
from stackloop.git_utils import Git
from stackloop.prompts import build_checker_prompt, build_review_prompt

logger = logging.getLogger(__name__)

# Lines of each changed file shown to a thorough reviewer
CONTEXT_FILE_LINES = 200


class ReviewIssue(BaseModel):
    file: str = ""
    line: Optional[int] = None
    issue: str = ""
    suggestion: str = ""

    @field_validator("line", mode="before")
    @classmethod
    def _coerce_line(cls, value: Any) -> Optional[int]:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None


class CheckGap(BaseModel):
    ac: str = ""
    issue: str = ""
    evidence: str = ""


def _coerce_items(value: Any, key: str) -> List[dict]:
    """Turn a list of strings or dicts into a list of dicts."""
    if not value:
        return []
    if not isinstance(value, list):
        value = [value]
    items = []
    for item in value:
        if isinstance(item, dict):
            items.append({k: ("" if v is None else v) for k, v in item.items()})
        elif item:
            items.append({key: str(item)})
    return items


class ReviewResult(BaseModel):
    """Reviewer verdict."""

    approved: bool = False
    confidence: float = 0.0
    blocking_issues: List[ReviewIssue] = Field(default_factory=list)
    suggestions: List[ReviewIssue] = Field(default_factory=list)
    summary: str = ""

    @field_validator("blocking_issues", "suggestions", mode="before")
    @classmethod
    def _coerce_issues(cls, value: Any) -> List[dict]:
        return _coerce_items(value, "issue")

    @field_validator("summary", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def passed(self) -> bool:
        """Approval counts only with no blocking issues."""
        return self.approved and not self.blocking_issues

    def issues_text(self, limit: int = 5) -> str:
        return "; ".join(i.issue for i in self.blocking_issues[:limit] if i.issue)


class CheckResult(BaseModel):
    """Completeness-checker verdict."""

    complete: bool = False
    confidence: float = 0.0
    blocking_gaps: List[CheckGap] = Field(default_factory=list)
    suggested_edits: List[dict] = Field(default_factory=list)

    @field_validator("blocking_gaps", mode="before")
    @classmethod
    def _coerce_gaps(cls, value: Any) -> List[dict]:
        return _coerce_items(value, "issue")

    @field_validator("suggested_edits", mode="before")
    @classmethod
    def _coerce_edits(cls, value: Any) -> List[dict]:
        return _coerce_items(value, "issue")

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: Any) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0

    def passes(self, threshold: float) -> bool:
        return self.complete and self.confidence >= threshold


def parse_review(output: str) -> Optional[ReviewResult]:
    data = extract_json(output)
    if data is None:
        return None
    try:
        return ReviewResult.model_validate(data)
    except ValidationError as e:
        logger.warning("Review JSON failed validation: %s", e)
        return None


def parse_check(output: str) -> Optional[CheckResult]:
    data = extract_json(output)
    if data is None:
        return None
    try:
        return CheckResult.model_validate(data)
    except ValidationError as e:
        logger.warning("Checker JSON failed validation: %s", e)
        return None


class Reviewer:
    """Clean-context code review of a task's changes.

    Args:
        harness: Agent harness
        git: Adapter for the execution repo
        config: Reviewer model, depth and thresholds
    """

    def __init__(self, harness: AgentHarness, git: Git, config: Config) -> None:
        self.harness = harness
        self.git = git
        self.config = config

    def lines_changed(self, base: str) -> int:
        return self.git.working_diff_stats(base)["lines_added"]

    def should_review(self, base: str) -> bool:
        """Skip review for changes below ``min_lines_for_review`` insertions."""
        if not self.config.enable_reviewer:
            return False
        changed = self.lines_changed(base)
        if changed < self.config.min_lines_for_review:
            logger.info(
                "Skipping reviewer: only %d lines changed (min: %d)",
                changed, self.config.min_lines_for_review,
            )
            return False
        return True

    def file_context(self, base: str) -> str:
        """Head of each changed file, for thorough reviews."""
        sections = []
        for name in self.git.changed_files(base):
            path = Path(self.git.repo) / name
            if not path.is_file():
                continue
            try:
                lines = path.read_text(errors="replace").splitlines()[:CONTEXT_FILE_LINES]
            except OSError as e:
                logger.debug("Could not read %s for review context: %s", path, e)
                continue
            sections.append(f"--- {name} (full file for context) ---\n" + "\n".join(lines))
        return "\n\n".join(sections)

    def review(self, task: Task, base: str) -> ReviewResult:
        """Run one review pass.

        Args:
            task: Task under review
            base: Commit the diff is taken against

        Returns:
            ReviewResult; reviewer failures come back not approved
        """
        diff = self.git.working_diff(base)
        if not diff.strip():
            return ReviewResult(approved=True, summary="No changes to review")

        depth = self.config.review_depth
        context = self.file_context(base) if depth == "thorough" else ""
        prompt = build_review_prompt(task, diff, depth=depth, context=context)
        logger.info("Reviewer %s reviewing %s (depth=%s)", self.config.reviewer_model, task.id, depth)

        outcome = self.harness.invoke(self.config.reviewer_model, prompt)
        if not isinstance(outcome, AgentSuccess):
            reason = outcome.summary() if isinstance(outcome, AgentBlocked) else f"exit {outcome.exit_code}"
            logger.warning("Reviewer failed: %s", reason)
            return ReviewResult(approved=False, summary=f"Reviewer failed: {reason}")

        result = parse_review(outcome.output)
        if result is None:
            return ReviewResult(approved=False, summary="Reviewer returned invalid JSON")
        return result


class Checker:
    """Acceptance-criteria completeness check.

    Args:
        harness: Agent harness
        git: Adapter for the execution repo
        config: Checker model and confidence threshold
    """

    def __init__(self, harness: AgentHarness, git: Git, config: Config) -> None:
        self.harness = harness
        self.git = git
        self.config = config

    @property
    def threshold(self) -> float:
        return self.config.checker_conf_threshold

    def check(self, task: Task, base: str) -> CheckResult:
        """Ask the checker whether the diff satisfies the task.

        Args:
            task: Task being checked
            base: Commit the diff is taken against

        Returns:
            CheckResult; checker failures come back incomplete with zero confidence
        """
        stats = self.git.working_diff_stats(base)
        diffstat = (
            f"{stats['files_changed']} files changed, "
            f"{stats['lines_added']} insertions(+), {stats['lines_removed']} deletions(-)"
        )
        prompt = build_checker_prompt(task, diffstat, self.git.working_diff(base), self.config.validate_cmd)
        logger.info("Checker %s checking %s", self.config.checker_model, task.id)

        outcome = self.harness.invoke(self.config.checker_model, prompt)
        if not isinstance(outcome, AgentSuccess):
            logger.warning("Checker agent did not succeed: %s", outcome)
            return CheckResult(complete=False, confidence=0.0)

        result = parse_check(outcome.output)
        if result is None:
            logger.warning("Checker returned invalid JSON")
            return CheckResult(complete=False, confidence=0.0)
        logger.info("Checker: complete=%s confidence=%.2f", result.complete, result.confidence)
        return result
