"""Task and epic resolution.

Picks the next eligible task from the tracker and finds the epic that owns
it by walking dependency edges breadth-first.
"""

import logging
from collections import deque
from typing import Dict, List, Optional

from stackloop.beads import Beads, Task, TrackerError
from stackloop.branches import sanitize_id
from stackloop.git_utils import Git

logger = logging.getLogger("stackloop.resolver")

DEFAULT_EPIC_DEPTH = 6
EPIC_COMPLETE_REASON = "Epic complete: no remaining remote epic branches and no READY child tasks"


class Resolver:
    """Task selection and epic lookup over the tracker.

    Args:
        tracker: Issue-tracker adapter
        git: Adapter used to look for remote epic branches
        max_depth: Dependency hops searched for an epic
    """

    def __init__(self, tracker: Beads, git: Optional[Git] = None, max_depth: int = DEFAULT_EPIC_DEPTH) -> None:
        self.tracker = tracker
        self.git = git
        self.max_depth = max_depth

    def ready_tasks(self) -> List[Task]:
        return [t for t in self.tracker.ready() if not t.is_epic]

    def ready_epics(self) -> List[Task]:
        return [t for t in self.tracker.ready() if t.is_epic]

    def next_task(self) -> Optional[Task]:
        """First ready non-epic task in tracker order, or None."""
        tasks = self.ready_tasks()
        return tasks[0] if tasks else None

    def resolve_epic(self, task: Task, max_depth: Optional[int] = None) -> Optional[Task]:
        """Find the epic owning a task.

        Breadth-first over dependency ids; the first epic-typed node within
        ``max_depth`` hops wins. Unknown ids and tracker errors count as
        "no epic here" rather than failures.

        Args:
            task: Task to resolve
            max_depth: Hop limit (default: resolver's max_depth)

        Returns:
            The epic task, or None if the task is epic-less
        """
        if task.is_epic:
            return task

        depth_limit = self.max_depth if max_depth is None else max_depth
        cache: Dict[str, Optional[Task]] = {task.id: task}
        seen = {task.id}
        frontier = deque([(task, 0)])

        while frontier:
            current, depth = frontier.popleft()
            if depth >= depth_limit:
                continue
            for dep_id in current.dependencies:
                if dep_id in seen:
                    continue
                seen.add(dep_id)
                dep = self._load(dep_id, cache)
                if dep is None:
                    continue
                if dep.is_epic:
                    logger.debug("Task %s belongs to epic %s (%d hops)", task.id, dep.id, depth + 1)
                    return dep
                frontier.append((dep, depth + 1))

        return None

    def _load(self, task_id: str, cache: Dict[str, Optional[Task]]) -> Optional[Task]:
        if task_id not in cache:
            try:
                cache[task_id] = self.tracker.show(task_id)
            except (TrackerError, ValueError) as e:
                logger.debug("Could not load dependency %s: %s", task_id, e)
                cache[task_id] = None
        return cache[task_id]

    def epic_has_remote_branches(self, epic_id: str) -> bool:
        if self.git is None:
            return True
        return bool(self.git.remote_branches(f"epic/{sanitize_id(epic_id)}/"))

    def maybe_close_epics(self) -> List[str]:
        """Close ready epics with nothing left to do.

        An epic closes when no remote branches remain under its namespace
        and no ready task resolves to it. Epics with only blocked or
        not-yet-ready children stay open.

        Returns:
            Ids of epics closed
        """
        epics = self.ready_epics()
        if not epics:
            return []

        ready = self.ready_tasks()
        closed = []
        for epic in epics:
            if self.epic_has_remote_branches(epic.id):
                continue
            if any(self._owner_id(t) == epic.id for t in ready):
                continue
            try:
                self.tracker.close_task(epic.id, EPIC_COMPLETE_REASON)
            except TrackerError as e:
                logger.warning("Could not close epic %s: %s", epic.id, e)
                continue
            logger.info("Closed epic %s", epic.id)
            closed.append(epic.id)
        return closed

    def _owner_id(self, task: Task) -> Optional[str]:
        epic = self.resolve_epic(task)
        return epic.id if epic else None
