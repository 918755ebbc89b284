"""Failure classification.

A failed step is classified into a closed set of failure classes, each with
a recommended list of allowlisted remediation actions. Cheap regex
heuristics run first; when none match, a model is asked. Anything the model
gets wrong (unknown class, unparseable output, agent failure) degrades to
``UNKNOWN``, which always needs a human.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, List, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError, field_validator

from stackloop.agent import AgentError, AgentHarness, AgentSuccess, extract_json
from stackloop.prompts import build_classifier_prompt
from stackloop.remediation import ACTION_DESCRIPTIONS, RemediationAction

logger = logging.getLogger(__name__)

MAX_ACTIONS = 3


class FailureClass(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    GRAPHITE_DRIFT = "GRAPHITE_DRIFT"
    PR_EXISTS = "PR_EXISTS"
    BRANCH_EXISTS = "BRANCH_EXISTS"
    MERGE_CONFLICT = "MERGE_CONFLICT"
    AUTH_FAILURE = "AUTH_FAILURE"
    VALIDATION_FAILURE = "VALIDATION_FAILURE"
    IMPLEMENTATION_GAP = "IMPLEMENTATION_GAP"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"


CLASS_DESCRIPTIONS = {
    FailureClass.RATE_LIMIT: "API rate limiting or provider overload (503, 429, overloaded, capacity)",
    FailureClass.GRAPHITE_DRIFT: "Graphite stack out of sync (diverged, needs restack, not tracked)",
    FailureClass.PR_EXISTS: "A pull request already exists for this branch",
    FailureClass.BRANCH_EXISTS: "The branch already exists locally or remotely",
    FailureClass.MERGE_CONFLICT: "Git merge or rebase conflict",
    FailureClass.AUTH_FAILURE: "Authentication or permission problem",
    FailureClass.VALIDATION_FAILURE: "Lint, typecheck or test failure",
    FailureClass.IMPLEMENTATION_GAP: "Agent made no changes or the work is incomplete",
    FailureClass.NETWORK_ERROR: "Network connectivity problem",
    FailureClass.UNKNOWN: "Cannot classify; requires human review",
}


class Classification(BaseModel):
    """A classifier verdict.

    Attributes:
        failure_class: Closed failure class
        retryable: Whether retrying the step may succeed
        recommended_actions: Up to three action names, validated later
        needs_human: The task cannot proceed without a person
        human_message: What the person should know
        diagnosis: Short explanation of the failure
        source: "heuristic", "model" or "fallback"
    """

    failure_class: FailureClass = FailureClass.UNKNOWN
    retryable: bool = False
    recommended_actions: List[str] = Field(default_factory=list)
    needs_human: bool = False
    human_message: str = ""
    diagnosis: str = ""
    source: str = "heuristic"

    @field_validator("recommended_actions", mode="before")
    @classmethod
    def _limit_actions(cls, value: Any) -> List[str]:
        if not value:
            return []
        if isinstance(value, str):
            value = [value]
        return [str(v) for v in value][:MAX_ACTIONS]

    @field_validator("human_message", "diagnosis", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


def unknown_classification(diagnosis: str, human_message: str = "", source: str = "fallback") -> Classification:
    """The safe default: block the task and tell a human."""
    return Classification(
        failure_class=FailureClass.UNKNOWN,
        retryable=False,
        recommended_actions=[RemediationAction.BLOCK_TASK.value, RemediationAction.NOTIFY_HUMAN.value],
        needs_human=True,
        human_message=human_message or diagnosis,
        diagnosis=diagnosis,
        source=source,
    )


class Classifier(ABC):
    """Maps a step failure to a :class:`Classification`."""

    @abstractmethod
    def classify(self, step: str, exit_code: int, error_output: str,
                 context: Optional[dict] = None) -> Optional[Classification]:
        """Classify a failure.

        Returns:
            Classification, or None when this classifier has no opinion
        """


class HeuristicRule:
    """One regex rule of the heuristic table."""

    def __init__(self, failure_class: FailureClass, pattern: str, retryable: bool,
                 actions: Sequence[RemediationAction], human_message: str = "") -> None:
        self.failure_class = failure_class
        self.pattern = re.compile(pattern, re.IGNORECASE)
        self.retryable = retryable
        self.actions = [a.value for a in actions]
        self.human_message = human_message

    def matches(self, text: str) -> bool:
        return bool(self.pattern.search(text))

    def to_classification(self) -> Classification:
        return Classification(
            failure_class=self.failure_class,
            retryable=self.retryable,
            recommended_actions=list(self.actions),
            needs_human=bool(self.human_message),
            human_message=self.human_message,
            diagnosis=f"Matched heuristic pattern for {self.failure_class.value}",
            source="heuristic",
        )


A = RemediationAction

# Order matters: the first matching rule wins
HEURISTIC_RULES = [
    HeuristicRule(
        FailureClass.RATE_LIMIT,
        r"rate limit|\b429\b|\b503\b|\b502\b|overloaded|capacity|too many requests",
        True,
        [A.RETRY_WITH_DELAY],
    ),
    HeuristicRule(
        FailureClass.GRAPHITE_DRIFT,
        r"diverged|needs restack|not tracked|cannot submit",
        True,
        [A.GT_TRACK_FORCE, A.GT_RESTACK, A.RETRY_STEP],
    ),
    HeuristicRule(
        FailureClass.PR_EXISTS,
        r"pull request already exists|PR already|already has a pull request",
        False,
        [A.SKIP_TO_CLOSE],
    ),
    HeuristicRule(
        FailureClass.BRANCH_EXISTS,
        r"branch.*already exists|fatal: a branch named",
        True,
        [A.GIT_FETCH, A.RETRY_STEP],
    ),
    HeuristicRule(
        FailureClass.MERGE_CONFLICT,
        r"CONFLICT|merge conflict|automatic merge failed|needs merge",
        False,
        [A.GIT_REBASE_ABORT, A.BLOCK_TASK],
        human_message="Merge conflict requires manual resolution",
    ),
    HeuristicRule(
        FailureClass.AUTH_FAILURE,
        r"permission denied|\b401\b|\b403\b|authentication|not authorized",
        False,
        [A.BLOCK_TASK, A.NOTIFY_HUMAN],
        human_message="Authentication or permission issue",
    ),
    HeuristicRule(
        FailureClass.NETWORK_ERROR,
        r"connection reset|ETIMEDOUT|ECONNREFUSED|network|timeout",
        True,
        [A.RETRY_WITH_DELAY],
    ),
]

del A


class HeuristicClassifier(Classifier):
    """Ordered regex table over the error output."""

    def __init__(self, rules: Optional[List[HeuristicRule]] = None) -> None:
        self.rules = HEURISTIC_RULES if rules is None else rules

    def classify(self, step: str, exit_code: int, error_output: str,
                 context: Optional[dict] = None) -> Optional[Classification]:
        text = error_output or ""
        for rule in self.rules:
            if rule.matches(text):
                logger.debug("Heuristic match for %s: %s", step, rule.failure_class.value)
                return rule.to_classification()
        return None


def parse_model_classification(data: dict) -> Classification:
    """Validate model JSON into a Classification.

    Unknown classes or malformed fields turn into UNKNOWN rather than
    raising.
    """
    try:
        FailureClass(str(data.get("failure_class", "")).upper())
    except ValueError:
        return unknown_classification(
            f"Model returned unknown class {data.get('failure_class')!r}",
            human_message="Classifier returned invalid output",
        )
    payload = dict(data)
    payload["failure_class"] = str(payload["failure_class"]).upper()
    payload["source"] = "model"
    try:
        classification = Classification.model_validate(payload)
    except ValidationError as e:
        logger.warning("Model classification failed validation: %s", e)
        return unknown_classification(
            "Model classification failed validation",
            human_message="Classifier returned invalid output",
        )
    if classification.failure_class == FailureClass.UNKNOWN:
        # UNKNOWN always blocks, whatever the model suggested
        classification.needs_human = True
        classification.retryable = False
        if not classification.recommended_actions:
            classification.recommended_actions = [
                RemediationAction.BLOCK_TASK.value, RemediationAction.NOTIFY_HUMAN.value,
            ]
        elif RemediationAction.BLOCK_TASK.value not in classification.recommended_actions:
            classification.recommended_actions.append(RemediationAction.BLOCK_TASK.value)
    return classification


class ModelClassifier(Classifier):
    """Asks a model to classify failures the heuristics missed.

    Args:
        harness: Agent harness used to run the classifier model
        model: Logical model name
    """

    def __init__(self, harness: AgentHarness, model: str) -> None:
        self.harness = harness
        self.model = model

    def classify(self, step: str, exit_code: int, error_output: str,
                 context: Optional[dict] = None) -> Optional[Classification]:
        prompt = build_classifier_prompt(
            step,
            exit_code,
            error_output,
            context or {},
            classes=[(c.value, d) for c, d in CLASS_DESCRIPTIONS.items()],
            actions=[(a.value, d) for a, d in ACTION_DESCRIPTIONS.items()],
        )
        outcome = self.harness.invoke(self.model, prompt, max_attempts=1)
        if isinstance(outcome, AgentError) or not isinstance(outcome, AgentSuccess):
            logger.warning("Classifier agent failed: %s", outcome)
            return unknown_classification(
                "LLM classifier unavailable", human_message="Classifier failed to run"
            )

        data = extract_json(outcome.output)
        if data is None:
            logger.warning("Classifier returned no JSON object")
            return unknown_classification(
                "Classifier output was not JSON", human_message="Classifier returned invalid output"
            )
        return parse_model_classification(data)


class FallbackClassifier(Classifier):
    """Tries each classifier in order; UNKNOWN if none has an opinion."""

    def __init__(self, chain: Sequence[Classifier]) -> None:
        self.chain = list(chain)

    def classify(self, step: str, exit_code: int, error_output: str,
                 context: Optional[dict] = None) -> Classification:
        for classifier in self.chain:
            result = classifier.classify(step, exit_code, error_output, context)
            if result is not None:
                return result
        return unknown_classification("No classifier matched this failure")


def default_classifier(harness: Optional[AgentHarness] = None,
                       model: Optional[str] = None) -> FallbackClassifier:
    """Heuristics first, then the model when a harness is available."""
    chain: List[Classifier] = [HeuristicClassifier()]
    if harness is not None and model:
        chain.append(ModelClassifier(harness, model))
    return FallbackClassifier(chain)


def classify_failure(step: str, exit_code: int, error_output: str, context: Optional[dict] = None,
                     harness: Optional[AgentHarness] = None,
                     model: Optional[str] = None) -> Classification:
    """Classify one failure with the default chain.

    Args:
        step: Lifecycle step that failed
        exit_code: Exit code of the failing command
        error_output: Combined output of the failure
        context: Task and repository context for the model
        harness: Agent harness; without one only heuristics run
        model: Classifier model name

    Returns:
        Classification (never None)
    """
    return default_classifier(harness, model).classify(step, exit_code, error_output, context)
