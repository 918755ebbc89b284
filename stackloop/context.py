"""Failure context for the model classifier.

A snapshot of the task, the working tree and the Graphite stack at the
moment a step failed. Every collector is best-effort: a failing query
contributes an empty value, never an exception.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from stackloop.beads import Beads, Task
from stackloop.git_utils import Git
from stackloop.graphite import Graphite

logger = logging.getLogger(__name__)

STATUS_LINES = 20


class ContextCollector:
    """Collects classifier context for a task.

    Args:
        tracker: Issue-tracker adapter
        git: Adapter for the execution repo
        graphite: Stacked-branch adapter
        base_branch: Branch commits are counted against
    """

    def __init__(self, tracker: Beads, git: Git, graphite: Graphite, base_branch: str = "main") -> None:
        self.tracker = tracker
        self.git = git
        self.graphite = graphite
        self.base_branch = base_branch

    def task_context(self, task: Task) -> Dict[str, Any]:
        return {
            "id": task.id,
            "title": task.title,
            "status": task.status.value,
            "issue_type": task.issue_type,
            "external_ref": task.external_ref or "",
            "notes": task.notes,
        }

    def git_context(self) -> Dict[str, Any]:
        status = self.git.status_short().splitlines()[:STATUS_LINES]
        return {
            "branch": self.git.current_branch() or "detached",
            "uncommitted": len(self.git.uncommitted_files()),
            "commits_ahead": self.git.commits_ahead(f"{self.git.remote}/{self.base_branch}"),
            "status_short": ";".join(status),
        }

    def graphite_context(self, task_id: str) -> Dict[str, Any]:
        current = self.git.current_branch()
        log = self.graphite.log()
        lowered = log.lower()
        pr_number = self.graphite.find_pr_number(task_id) if log else None
        return {
            "is_tracked": bool(current) and self.graphite.is_tracked(current),
            "needs_restack": "needs restack" in lowered or "diverged" in lowered,
            "pr_number": pr_number,
        }

    def history_context(self, task_id: str) -> Dict[str, Any]:
        runs = self.tracker.run_history(task_id)
        return {
            "run_count": len(runs),
            "last_result": runs[-1] if runs else "none",
        }

    def collect(self, task: Task, epic: Optional[Task] = None) -> Dict[str, Any]:
        """Full context dict for one task."""
        return {
            "task": self.task_context(task),
            "git": self.git_context(),
            "graphite": self.graphite_context(task.id),
            "history": self.history_context(task.id),
            "epic": {"id": epic.id, "title": epic.title} if epic else {"id": "", "title": ""},
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
