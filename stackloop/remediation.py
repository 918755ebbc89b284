"""Allowlisted remediation executor.

A classification only ever *recommends* actions by name. This module is the
single place where those names turn into side effects, and only names in
:class:`RemediationAction` are honoured. Anything else is rejected before
it touches git, gt or the tracker.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from stackloop.beads import Beads, TrackerError
from stackloop.commands import CommandError
from stackloop.config import Config
from stackloop.git_utils import Git, stash_label
from stackloop.graphite import Graphite

if TYPE_CHECKING:
    from stackloop.classifier import Classification, Classifier

logger = logging.getLogger(__name__)


class RemediationAction(str, Enum):
    """Every action a remediation may request."""

    GT_SYNC = "GT_SYNC"
    GT_RESTACK = "GT_RESTACK"
    GT_TRACK_FORCE = "GT_TRACK_FORCE"
    GT_SUBMIT = "GT_SUBMIT"
    GT_MODIFY = "GT_MODIFY"
    GIT_FETCH = "GIT_FETCH"
    GIT_PULL_REBASE = "GIT_PULL_REBASE"
    GIT_STASH_PUSH = "GIT_STASH_PUSH"
    GIT_REBASE_ABORT = "GIT_REBASE_ABORT"
    GIT_CHECKOUT_BRANCH = "GIT_CHECKOUT_BRANCH"
    BD_BLOCK = "BD_BLOCK"
    BD_CLOSE = "BD_CLOSE"
    RETRY_STEP = "RETRY_STEP"
    RETRY_WITH_DELAY = "RETRY_WITH_DELAY"
    RETRY_IMPLEMENTER = "RETRY_IMPLEMENTER"
    RETRY_CHECKER = "RETRY_CHECKER"
    SKIP_TO_CLOSE = "SKIP_TO_CLOSE"
    SKIP_TO_SUBMIT = "SKIP_TO_SUBMIT"
    BLOCK_TASK = "BLOCK_TASK"
    NOTIFY_HUMAN = "NOTIFY_HUMAN"
    NOOP = "NOOP"

    @classmethod
    def parse(cls, name: str) -> Optional["RemediationAction"]:
        """Allowlist lookup; None for anything not listed."""
        try:
            return cls(str(name).strip().upper())
        except ValueError:
            return None


ACTION_DESCRIPTIONS: Dict[RemediationAction, str] = {
    RemediationAction.GT_SYNC: "Sync the Graphite stack with the remote",
    RemediationAction.GT_RESTACK: "Restack the current Graphite stack",
    RemediationAction.GT_TRACK_FORCE: "Force gt tracking of the current branch",
    RemediationAction.GT_SUBMIT: "Submit the stack as draft PRs",
    RemediationAction.GT_MODIFY: "Stage changes and amend the current branch commit",
    RemediationAction.GIT_FETCH: "Fetch from origin with prune",
    RemediationAction.GIT_PULL_REBASE: "Pull with rebase",
    RemediationAction.GIT_STASH_PUSH: "Stash uncommitted changes",
    RemediationAction.GIT_REBASE_ABORT: "Abort an in-progress rebase",
    RemediationAction.GIT_CHECKOUT_BRANCH: "Checkout a specific branch",
    RemediationAction.BD_BLOCK: "Mark the task blocked",
    RemediationAction.BD_CLOSE: "Close the task (only with a confirmed PR)",
    RemediationAction.RETRY_STEP: "Retry the current step",
    RemediationAction.RETRY_WITH_DELAY: "Wait, then retry the current step",
    RemediationAction.RETRY_IMPLEMENTER: "Run the implementer again",
    RemediationAction.RETRY_CHECKER: "Run the checker again",
    RemediationAction.SKIP_TO_CLOSE: "Skip to closing the task (only with a confirmed PR)",
    RemediationAction.SKIP_TO_SUBMIT: "Skip to submitting the PR",
    RemediationAction.BLOCK_TASK: "Block the task for human review",
    RemediationAction.NOTIFY_HUMAN: "Notify a human operator",
    RemediationAction.NOOP: "Do nothing",
}

RETRY_SIGNALS = frozenset({
    RemediationAction.RETRY_STEP,
    RemediationAction.RETRY_IMPLEMENTER,
    RemediationAction.RETRY_CHECKER,
})

DEFAULT_BLOCK_REASON = "Blocked by orchestrator"
DEFAULT_NOTIFY_MESSAGE = "Requires human intervention"


@dataclass
class ActionResult:
    """Outcome of one remediation action."""

    action: str
    success: bool
    rejected: bool = False
    message: str = ""


@dataclass
class RemediationResult:
    """Aggregate outcome of a classification's recommended actions.

    Attributes:
        success: False if any action failed or was rejected
        actions_executed: Names run successfully, in order
        rejected: Names refused by the allowlist or a guard
        should_retry: A retry signal was given
        should_block: The task must be blocked
        skip_to: "close", "submit" or None
        retryable: Copied from the classification
    """

    success: bool = True
    actions_executed: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    should_retry: bool = False
    should_block: bool = False
    skip_to: Optional[str] = None
    retryable: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "actions_executed": list(self.actions_executed),
            "rejected": list(self.rejected),
            "should_retry": self.should_retry,
            "should_block": self.should_block,
            "skip_to": self.skip_to,
            "retryable": self.retryable,
        }


class RemediationExecutor:
    """Runs allowlisted actions against the loop's collaborators.

    Args:
        git: Adapter for the execution repo
        graphite: Stacked-branch adapter
        tracker: Issue-tracker adapter
        config: Loop configuration (excluded paths, retry delay)
        confirm_pr: Returns a PR number confirmed for a task id, or None
        sleep: Sleep function (injected by tests)
        notify: Callback taking (message, level, task_id)
        clock: Time source for stash labels
    """

    def __init__(
        self,
        git: Git,
        graphite: Graphite,
        tracker: Beads,
        config: Config,
        confirm_pr: Optional[Callable[[str], Optional[int]]] = None,
        sleep: Callable[[float], None] = time.sleep,
        notify: Optional[Callable[[str, str, Optional[str]], None]] = None,
    ) -> None:
        self.git = git
        self.graphite = graphite
        self.tracker = tracker
        self.config = config
        self.confirm_pr = confirm_pr
        self.sleep = sleep
        self.notify = notify

    def _notify(self, message: str, task_id: Optional[str]) -> None:
        logger.warning("HUMAN_INTERVENTION_REQUIRED: %s", message)
        if self.notify is not None:
            self.notify(message, "error", task_id)

    def _confirmed_pr(self, task_id: Optional[str]) -> Optional[int]:
        if not task_id or self.confirm_pr is None:
            return None
        return self.confirm_pr(task_id)

    def execute_action(self, name: str, task_id: Optional[str] = None,
                       arg: Optional[str] = None) -> ActionResult:
        """Run one action by name.

        Args:
            name: Action name as recommended by a classifier
            task_id: Task the action concerns
            arg: Optional argument (branch, message, reason or delay)

        Returns:
            ActionResult; unknown names come back rejected with no side effect
        """
        action = RemediationAction.parse(name)
        if action is None:
            logger.warning("REJECTED: action %r not in allowlist", name)
            return ActionResult(str(name), False, rejected=True, message="not in allowlist")

        logger.info("Remediation action: %s", action.value)
        A = RemediationAction

        if action in RETRY_SIGNALS or action in (A.SKIP_TO_SUBMIT, A.NOOP):
            return ActionResult(action.value, True)

        if action in (A.BD_CLOSE, A.SKIP_TO_CLOSE):
            pr_number = self._confirmed_pr(task_id)
            if pr_number is None:
                logger.warning("REJECTED: %s without a confirmed PR for %s", action.value, task_id)
                return ActionResult(action.value, False, rejected=True, message="no confirmed PR")
            if action == A.SKIP_TO_CLOSE:
                return ActionResult(action.value, True, message=str(pr_number))
            try:
                self.tracker.close_task(task_id, arg or f"Completed in PR #{pr_number}")
            except TrackerError as e:
                return ActionResult(action.value, False, message=str(e))
            return ActionResult(action.value, True)

        if action in (A.BD_BLOCK, A.BLOCK_TASK):
            if not task_id:
                return ActionResult(action.value, False, message="no task to block")
            ok = self.tracker.mark_blocked(task_id, arg or DEFAULT_BLOCK_REASON)
            return ActionResult(action.value, ok)

        if action == A.NOTIFY_HUMAN:
            self._notify(arg or DEFAULT_NOTIFY_MESSAGE, task_id)
            return ActionResult(action.value, True)

        if action == A.RETRY_WITH_DELAY:
            delay = float(arg) if arg and arg.isdigit() else float(self.config.retry_delay_secs)
            logger.info("Sleeping %ss before retry", int(delay))
            self.sleep(delay)
            return ActionResult(action.value, True)

        if action == A.GIT_STASH_PUSH:
            ok = self.git.stash_push(stash_label("remediation-stash", task_id))
            return ActionResult(action.value, ok)

        if action == A.GT_TRACK_FORCE:
            branch = arg or self.git.current_branch()
            if not branch:
                return ActionResult(action.value, False, message="not on a branch")
            result = self.graphite.track(branch)
        elif action == A.GT_SYNC:
            result = self.graphite.sync()
        elif action == A.GT_RESTACK:
            result = self.graphite.restack()
        elif action == A.GT_SUBMIT:
            result = self.graphite.submit()
        elif action == A.GT_MODIFY:
            try:
                self.git.stage_all(self.config.excluded_paths)
            except CommandError as e:
                return ActionResult(action.value, False, message=str(e))
            result = self.graphite.modify(arg or "WIP")
        elif action == A.GIT_FETCH:
            result = self.git.fetch(prune=True)
        elif action == A.GIT_PULL_REBASE:
            branch = arg or self.git.current_branch()
            if not branch:
                return ActionResult(action.value, False, message="not on a branch")
            result = self.git.pull_rebase(branch)
        elif action == A.GIT_REBASE_ABORT:
            # Nothing to abort is fine
            self.git.rebase_abort()
            return ActionResult(action.value, True)
        elif action == A.GIT_CHECKOUT_BRANCH:
            if not arg:
                return ActionResult(action.value, False, message="no branch given")
            result = self.git.checkout(arg)
        else:
            return ActionResult(action.value, False, message="not implemented")

        return ActionResult(action.value, result.ok, message=result.output.strip()[:200])

    def execute_remediation(self, classification: "Classification",
                            task_id: Optional[str] = None) -> RemediationResult:
        """Run a classification's recommended actions in order.

        Execution stops at the first failed or rejected action. Block
        actions only raise ``should_block`` here; the caller writes the
        block reason so it lands on the task exactly once. A classification
        that needs a human always ends with the task blocked.

        Args:
            classification: Classifier output
            task_id: Task the failure belongs to

        Returns:
            RemediationResult describing what ran and what the loop should do
        """
        outcome = RemediationResult(retryable=classification.retryable)
        A = RemediationAction

        for name in classification.recommended_actions:
            action = RemediationAction.parse(name)
            if action in RETRY_SIGNALS:
                outcome.should_retry = True
            elif action == A.SKIP_TO_SUBMIT:
                outcome.skip_to = "submit"
            elif action in (A.BLOCK_TASK, A.BD_BLOCK):
                outcome.should_block = True
                outcome.actions_executed.append(action.value)
                continue

            arg = None
            if action == A.NOTIFY_HUMAN:
                arg = classification.human_message or classification.diagnosis or None

            result = self.execute_action(name, task_id, arg)
            if not result.success:
                outcome.success = False
                if result.rejected:
                    outcome.rejected.append(result.action)
                break

            outcome.actions_executed.append(result.action)
            if action == A.SKIP_TO_CLOSE:
                outcome.skip_to = "close"
            elif action == A.RETRY_WITH_DELAY:
                outcome.should_retry = True

        if classification.needs_human:
            if A.NOTIFY_HUMAN.value not in outcome.actions_executed:
                self._notify(classification.human_message or classification.diagnosis
                             or f"{classification.failure_class.value} failure needs attention", task_id)
            outcome.should_block = True
            outcome.should_retry = False

        logger.info("Remediation result: %s", outcome.to_dict())
        return outcome

    def handle_failure(self, classifier: "Classifier", step: str, exit_code: int, output: str,
                       task_id: Optional[str] = None,
                       context: Optional[dict] = None) -> "HandledFailure":
        """Classify a step failure and run the recommended remediation.

        Args:
            classifier: Classifier (usually a FallbackClassifier chain)
            step: Lifecycle step that failed
            exit_code: Exit code of the failing command
            output: Its combined output
            task_id: Task being worked on
            context: Extra context for the model classifier

        Returns:
            HandledFailure with the classification and remediation result
        """
        from stackloop.classifier import unknown_classification

        classification = classifier.classify(step, exit_code, output, context or {})
        if classification is None:
            classification = unknown_classification("No classifier matched")
        logger.info(
            "Classified %s failure as %s (source=%s)",
            step, classification.failure_class.value, classification.source,
        )
        return HandledFailure(classification, self.execute_remediation(classification, task_id))


@dataclass
class HandledFailure:
    classification: "Classification"
    remediation: RemediationResult
