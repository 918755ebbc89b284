"""Reconciliation of existing state before risky steps.

Each ``*_reconcile`` method inspects one aspect of the world (tracker
status, PRs, branches, the working tree, the Graphite stack) and returns a
single :class:`ReconcileResult`. They only query; the one mutating entry
point is :meth:`Reconciler.apply_reconciliation`.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from stackloop.beads import Beads, Task, TaskStatus
from stackloop.branches import BranchManager
from stackloop.git_utils import Git, stash_label
from stackloop.graphite import Graphite

logger = logging.getLogger("stackloop.reconcile")


class ReconcileAction(str, Enum):
    CONTINUE = "continue"
    SKIP = "skip"
    CLOSE = "close"
    USE_EXISTING = "use_existing"
    SUBMIT = "submit"
    STASH = "stash"
    TRACK = "track"
    RESTACK = "restack"


@dataclass
class ReconcileResult:
    """One reconciliation decision.

    Attributes:
        action: What the loop should do
        reason: Human-readable explanation
        data: Action-specific values (branch, pr_number, commits_ahead, uncommitted)
    """

    action: ReconcileAction
    reason: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_continue(self) -> bool:
        return self.action == ReconcileAction.CONTINUE

    @property
    def branch(self) -> Optional[str]:
        return self.data.get("branch")

    @property
    def pr_number(self) -> Optional[int]:
        return self.data.get("pr_number")

    def to_dict(self) -> dict:
        return {"action": self.action.value, "reason": self.reason, "data": dict(self.data)}


def _continue(reason: str) -> ReconcileResult:
    return ReconcileResult(ReconcileAction.CONTINUE, reason)


class Reconciler:
    """Deterministic state checks over the loop's collaborators.

    Args:
        tracker: Issue-tracker adapter
        git: Adapter for the execution repo
        graphite: Stacked-branch adapter
        branches: Branch discovery
        excluded_paths: Paths ignored when checking for a dirty tree
    """

    def __init__(self, tracker: Beads, git: Git, graphite: Graphite,
                 branches: BranchManager, excluded_paths: Optional[List[str]] = None) -> None:
        self.tracker = tracker
        self.git = git
        self.graphite = graphite
        self.branches = branches
        self.excluded_paths = list(excluded_paths or [])

    def find_pr(self, task: Task) -> Optional[int]:
        """PR number confirmed by the Graphite log or the task's external ref."""
        pr_number = self.graphite.find_pr_number(task.id)
        if pr_number is None:
            pr_number = task.pr_ref
        return pr_number

    # Individual checks

    def task_status(self, task: Task) -> ReconcileResult:
        if task.status == TaskStatus.CLOSED:
            return ReconcileResult(ReconcileAction.SKIP, "Task is already closed")
        if task.status == TaskStatus.BLOCKED:
            notes = task.notes or "no notes"
            return ReconcileResult(ReconcileAction.SKIP, f"Task is blocked: {notes}")
        return _continue(f"Task status is {task.status.value}")

    def pr_reconcile(self, task: Task) -> ReconcileResult:
        pr_number = self.find_pr(task)
        if pr_number is not None:
            return ReconcileResult(
                ReconcileAction.CLOSE, f"PR #{pr_number} already exists", {"pr_number": pr_number}
            )
        return _continue("No existing PR found")

    def branch_reconcile(self, task: Task, epic: Optional[Task] = None) -> ReconcileResult:
        branch = self.branches.find_task_branch(task.id, epic.id if epic else None)
        if branch:
            return ReconcileResult(
                ReconcileAction.USE_EXISTING, f"Branch exists: {branch}", {"branch": branch}
            )
        return _continue("No existing branch found")

    def work_reconcile(self, branch: Optional[str] = None, parent: Optional[str] = None) -> ReconcileResult:
        """Detect committed work that was never submitted.

        Args:
            branch: Expected current branch (default: whatever is checked out)
            parent: Parent branch to compare against (default: base branch)
        """
        current = self.git.current_branch()
        if not current:
            return _continue("Not on a branch")
        if branch and current != branch:
            return _continue(f"On {current}, not {branch}")

        parent = parent or self.branches.base_branch
        self.git.fetch(parent)
        remote_parent = f"{self.git.remote}/{parent}"
        if not self.git.ref_exists(remote_parent):
            return _continue(f"No remote parent {remote_parent}")

        ahead = self.git.commits_ahead(remote_parent)
        if ahead > 0 and self.git.has_content_diff(remote_parent):
            return ReconcileResult(
                ReconcileAction.SUBMIT,
                f"Branch is {ahead} commits ahead of {parent}",
                {"branch": current, "commits_ahead": ahead},
            )
        return _continue("No work ahead of parent")

    def uncommitted_reconcile(self) -> ReconcileResult:
        files = self.git.uncommitted_files(self.excluded_paths)
        if files:
            return ReconcileResult(
                ReconcileAction.STASH, f"{len(files)} uncommitted changes found", {"uncommitted": len(files)}
            )
        return _continue("Working directory clean")

    def graphite_reconcile(self) -> ReconcileResult:
        current = self.git.current_branch()
        if not current:
            return _continue("Not on a branch")
        if not self.graphite.is_tracked(current):
            return ReconcileResult(
                ReconcileAction.TRACK, "Branch not tracked by Graphite", {"branch": current}
            )
        if self.graphite.needs_restack():
            return ReconcileResult(ReconcileAction.RESTACK, "Graphite stack needs restack")
        return _continue("Graphite state is clean")

    # Composition

    def reconcile_all(self, task: Task, epic: Optional[Task] = None,
                      parent: Optional[str] = None) -> ReconcileResult:
        """Status, then PR, then branch; the first non-continue result wins.

        ``parent`` is accepted for symmetry with :meth:`work_reconcile`; work
        detection runs separately once the branch is checked out.
        """
        for result in (
            self.task_status(task),
            self.pr_reconcile(task),
            self.branch_reconcile(task, epic),
        ):
            if not result.is_continue:
                logger.info("Reconcile %s: %s (%s)", task.id, result.action.value, result.reason)
                return result
        return _continue("All reconciliation checks passed")

    def apply_reconciliation(self, result: ReconcileResult, task: Task) -> bool:
        """Carry out a reconciliation decision.

        Args:
            result: Decision to apply
            task: Task it concerns

        Returns:
            True if the normal flow should continue, False if the task is done
        """
        action = result.action
        if action == ReconcileAction.SKIP:
            logger.info("SKIP %s: %s", task.id, result.reason)
            return False
        if action == ReconcileAction.CLOSE:
            if result.pr_number is None:
                logger.warning("Refusing to close %s without a PR number", task.id)
                return True
            self.tracker.close_task(task.id, f"Completed in PR #{result.pr_number}")
            return False
        if action == ReconcileAction.USE_EXISTING and result.branch:
            if not self.branches.checkout(result.branch):
                logger.warning("Could not checkout existing branch %s", result.branch)
        elif action == ReconcileAction.STASH:
            self.git.stash_push(stash_label("reconcile-stash"))
        elif action == ReconcileAction.TRACK and result.branch:
            self.graphite.track(result.branch)
        elif action == ReconcileAction.RESTACK:
            self.graphite.restack()
        return True
