"""Branch stack management.

Branch names follow ``epic/<epic-id>/<task-id>-<slug>`` for tasks that belong
to an epic and ``agent/<task-id>-<slug>`` otherwise. A branch is created at
most once per task: its existence is what marks work as started, so
:meth:`BranchManager.prepare_branch` reuses any branch it can find before it
considers creating one.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from stackloop.beads import Task
from stackloop.git_utils import Git
from stackloop.graphite import Graphite, GraphiteError

logger = logging.getLogger("stackloop.branches")

SLUG_MAX_LEN = 60
TEMP_BRANCH_PREFIX = "agent-base-"


def slugify(title: str) -> str:
    """Lowercase, collapse non-alphanumerics to '-', trim, cap at 60 chars."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug[:SLUG_MAX_LEN]


def sanitize_id(value: str) -> str:
    """Make a task or epic id safe for use inside a ref name."""
    return re.sub(r"[^a-zA-Z0-9._/-]", "-", value)


def generate_branch_name(task_id: str, title: str, epic_id: Optional[str] = None) -> str:
    """Deterministic branch name for a task.

    Args:
        task_id: Task id
        title: Task title (slugified)
        epic_id: Owning epic, if any

    Returns:
        e.g. "epic/E1/T1-add-login" or "agent/T1-add-login"
    """
    leaf = sanitize_id(task_id)
    slug = slugify(title)
    if slug:
        leaf = f"{leaf}-{slug}"
    if epic_id:
        return f"epic/{sanitize_id(epic_id)}/{leaf}"
    return f"agent/{leaf}"


def temp_branch_for(parent: str) -> str:
    return TEMP_BRANCH_PREFIX + parent.replace("/", "-")


def _matches_task(branch: str, task_id: str) -> bool:
    leaf = branch.rsplit("/", 1)[-1].lower()
    tid = sanitize_id(task_id).rsplit("/", 1)[-1].lower()
    return leaf == tid or leaf.startswith(tid + "-")


def _first_match(branches: Iterable[str], task_id: str) -> Optional[str]:
    for branch in branches:
        if branch.startswith(TEMP_BRANCH_PREFIX):
            continue
        if _matches_task(branch, task_id):
            return branch
    return None


@dataclass
class BranchResult:
    """Outcome of :meth:`BranchManager.prepare_branch`.

    Attributes:
        success: Whether the task now sits on its branch
        branch: Task branch name
        parent: Parent the branch is stacked on
        reused: True if an existing branch was checked out
        error: Failure description
    """

    success: bool
    branch: str = ""
    parent: Optional[str] = None
    reused: bool = False
    error: str = ""


class BranchManager:
    """Finds, chooses parents for, and creates task branches.

    Args:
        git: Adapter for the execution repo
        graphite: Stacked-branch adapter for the same repo
        base_branch: Fallback parent for new stacks
    """

    def __init__(self, git: Git, graphite: Graphite, base_branch: str = "main") -> None:
        self.git = git
        self.graphite = graphite
        self.base_branch = base_branch

    # Discovery

    def find_task_branch(self, task_id: str, epic_id: Optional[str] = None,
                         epic_only: bool = False) -> Optional[str]:
        """Find an existing branch for a task.

        Search order: local epic namespace, remote epic namespace, then flat
        local and flat remote branches.

        Args:
            task_id: Task to look for
            epic_id: Owning epic, if any
            epic_only: Only search the epic namespace

        Returns:
            Short branch name (no remote prefix), or None
        """
        if epic_id:
            namespace = f"epic/{sanitize_id(epic_id)}/"
            found = (
                _first_match(self.git.local_branches(namespace), task_id)
                or _first_match(self.git.remote_branches(namespace), task_id)
            )
            if found or epic_only:
                return found

        return (
            _first_match(self.git.local_branches(), task_id)
            or _first_match(self.git.remote_branches(), task_id)
        )

    def find_epic_tip_branch(self, epic_id: str) -> Optional[str]:
        """Newest remote branch under the epic namespace, by commit date."""
        branches = self.git.remote_branches(f"epic/{sanitize_id(epic_id)}/", newest_first=True)
        return branches[0] if branches else None

    def find_dependency_branch(self, task: Task, epic_id: str) -> Optional[str]:
        """First dependency (in order) with a branch in the same epic."""
        for dep_id in task.dependencies:
            branch = self.find_task_branch(dep_id, epic_id, epic_only=True)
            if branch:
                return branch
        return None

    def choose_parent(self, task: Task, epic_id: Optional[str]) -> str:
        """Parent for a new branch: dependency branch, epic tip, or base."""
        if epic_id:
            parent = self.find_dependency_branch(task, epic_id) or self.find_epic_tip_branch(epic_id)
            if parent:
                return parent
        return self.base_branch

    def _tip_ref(self, branch: str) -> Optional[str]:
        if self.git.remote_branch_exists(branch):
            return f"{self.git.remote}/{branch}"
        if self.git.local_branch_exists(branch):
            return branch
        return None

    def find_parent(self, branch: str, task: Task, epic_id: Optional[str] = None) -> str:
        """Parent an existing task branch is stacked on.

        Dependency branches are tried first, then other branches of the
        epic whose tip is strictly behind the branch. The candidate with the
        fewest commits between its tip and the branch wins; the base branch
        is the fallback.

        Args:
            branch: Existing task branch
            task: Task the branch belongs to
            epic_id: Owning epic, if any

        Returns:
            Short name of the parent branch
        """
        dependencies: List[str] = []
        others: List[str] = []
        for dep_id in task.dependencies:
            dep = self.find_task_branch(dep_id, epic_id, epic_only=bool(epic_id))
            if dep and dep != branch and dep not in dependencies:
                dependencies.append(dep)
        if epic_id:
            namespace = f"epic/{sanitize_id(epic_id)}/"
            for name in self.git.local_branches(namespace) + self.git.remote_branches(namespace):
                if name in (branch, *dependencies, *others) or name.startswith(TEMP_BRANCH_PREFIX):
                    continue
                others.append(name)

        best, best_distance = self.base_branch, None
        for candidate in dependencies + others:
            ref = self._tip_ref(candidate)
            if ref is None or not self.git.is_ancestor(ref, branch):
                continue
            distance = self.git.commits_ahead(ref, branch)
            # A sibling stacked on this branch can share its tip
            if candidate in others and distance == 0:
                continue
            if best_distance is None or distance < best_distance:
                best, best_distance = candidate, distance
        return best

    # Checkout

    def checkout(self, branch: str) -> bool:
        """Checkout through gt, then git, then from the remote copy."""
        if self.graphite.checkout(branch):
            return True
        if self.git.checkout(branch).ok:
            return True
        if self.git.remote_branch_exists(branch):
            return self.git.checkout_new(branch, f"{self.git.remote}/{branch}").ok
        return False

    def _checkout_parent(self, parent: str) -> Optional[str]:
        """Put HEAD on the parent, or on a tracking branch at its remote tip.

        Returns:
            Name of the branch now checked out, or None
        """
        if self.graphite.checkout(parent) or self.git.checkout(parent).ok:
            return parent

        # Parent is unavailable here (e.g. checked out in another worktree)
        temp = temp_branch_for(parent)
        logger.info("Branch %s unavailable; using tracking branch %s", parent, temp)
        self.git.fetch(parent)
        remote_ref = f"{self.git.remote}/{parent}"
        if self.git.local_branch_exists(temp):
            if not self.git.checkout(temp).ok:
                return None
            if not self.git.reset_hard(remote_ref).ok:
                logger.warning("Could not reset %s to %s", temp, remote_ref)
        elif not self.git.checkout_new(temp, remote_ref).ok:
            return None

        track = self.graphite.track(temp)
        if not track.ok:
            logger.warning("gt track %s failed: %s", temp, track.output.strip()[:200])
        return temp

    # Entry point

    def prepare_branch(self, task: Task, epic: Optional[Task] = None,
                       title: Optional[str] = None) -> BranchResult:
        """Put the working tree on the task's branch, creating it if needed.

        Args:
            task: Task to prepare
            epic: Owning epic, if any
            title: Title used for the slug (default: task title)

        Returns:
            BranchResult; failures are terminal for the task
        """
        epic_id = epic.id if epic else None
        title = task.title if title is None else title

        self.git.fetch()
        existing = self.find_task_branch(task.id, epic_id)
        if existing:
            logger.info("Found existing branch: %s", existing)
            if not self.checkout(existing):
                return BranchResult(False, existing, reused=True,
                                    error=f"Failed to checkout existing branch {existing}")
            if not self.git.pull_rebase(existing).ok:
                logger.debug("pull --rebase of %s failed (branch may be local only)", existing)
            parent = self.find_parent(existing, task, epic_id)
            logger.info("Existing branch %s is stacked on %s", existing, parent)
            return BranchResult(True, existing, parent=parent, reused=True)

        branch = generate_branch_name(task.id, title, epic_id)
        parent = self.choose_parent(task, epic_id)
        logger.info("Starting new work on %s from parent %s", branch, parent)

        checked_out = self._checkout_parent(parent)
        if checked_out is None:
            return BranchResult(False, branch, parent=parent,
                                error=f"Failed to checkout parent branch {parent}")

        if not self.git.pull_rebase(parent).ok:
            logger.debug("pull --rebase of parent %s failed", parent)

        try:
            self.graphite.create_with_retry(
                branch, f"[{task.id}] WIP", parent=checked_out, current_branch=checked_out
            )
        except GraphiteError as e:
            return BranchResult(False, branch, parent=parent,
                                error=f"Failed to create branch {branch} with Graphite: {e}")

        logger.info("Branch %s created and tracked by Graphite", branch)
        return BranchResult(True, branch, parent=parent)

