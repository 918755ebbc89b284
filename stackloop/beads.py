"""Beads (``bd``) issue-tracker adapter.

Tasks are validated into :class:`Task` once, here, so the rest of the loop
never handles raw tracker JSON. Orchestrator bookkeeping lives on the task
itself:

- comments: run history (``Run: action=... result=... details="..."``)
- external_ref: branch and PR links (``branch:<name> pr:<number>``)
- notes: current blocker
"""

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stackloop.commands import CommandResult, run_command

logger = logging.getLogger(__name__)

BD_TIMEOUT = 60
MAX_DEPENDENCIES = 50

_DEP_ARROW = re.compile(r"→\s*([^:\s]+)")
_TYPE_LINE = re.compile(r"^\s*(?:Issue\s*)?Type:\s*(\S+)", re.IGNORECASE | re.MULTILINE)
_STATUS_LINE = re.compile(r"^\s*Status:\s*(\S+)", re.IGNORECASE | re.MULTILINE)
_TITLE_LINE = re.compile(r"^\s*(?:Title:\s*)?(\S+):\s*(.+)$")


class TrackerError(RuntimeError):
    """Raised when a tracker write that must succeed fails."""


class TaskStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    CLOSED = "closed"


@dataclass
class ExternalRef:
    """Branch and PR links stored in a task's external reference."""

    branch: Optional[str] = None
    pr: Optional[int] = None

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ExternalRef":
        ref = cls()
        if not raw:
            return ref
        branch = re.search(r"branch:(\S+)", raw)
        pr = re.search(r"pr:#?(\d+)", raw)
        if branch:
            ref.branch = branch.group(1)
        if pr:
            ref.pr = int(pr.group(1))
        return ref

    def format(self) -> str:
        parts = []
        if self.branch:
            parts.append(f"branch:{self.branch}")
        if self.pr is not None:
            parts.append(f"pr:{self.pr}")
        return " ".join(parts)


class Task(BaseModel):
    """A unit of work from the tracker."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    title: str = ""
    status: TaskStatus = TaskStatus.OPEN
    issue_type: str = "task"
    details: str = Field(default="", alias="description")
    dependencies: List[str] = Field(default_factory=list)
    external_ref: Optional[str] = None
    notes: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        if isinstance(value, TaskStatus):
            return value
        normalized = str(value or "open").strip().lower().replace("-", "_")
        try:
            return TaskStatus(normalized)
        except ValueError:
            return TaskStatus.OPEN

    @field_validator("issue_type", "title", "notes", "details", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("dependencies", mode="before")
    @classmethod
    def _normalize_dependencies(cls, value: Any) -> List[str]:
        """Accept plain ids or dependency objects, keep at most 50."""
        if not value:
            return []
        ids: List[str] = []
        for item in value:
            if isinstance(item, dict):
                dep_id = item.get("depends_on_id") or item.get("id")
            else:
                dep_id = item
            if dep_id and str(dep_id).strip():
                ids.append(str(dep_id).strip())
        return ids[:MAX_DEPENDENCIES]

    @property
    def is_epic(self) -> bool:
        return self.issue_type.strip().lower() == "epic"

    @property
    def ref(self) -> ExternalRef:
        return ExternalRef.parse(self.external_ref)

    @property
    def branch_ref(self) -> Optional[str]:
        return self.ref.branch

    @property
    def pr_ref(self) -> Optional[int]:
        return self.ref.pr


def extract_dependency_ids(show_text: str) -> List[str]:
    """Extract dependency ids from ``bd show`` text output.

    Dependency lines look like ``→ <ID>: <title>``.

    Args:
        show_text: Human-readable ``bd show`` output

    Returns:
        Dependency ids in order, at most 50
    """
    ids = [m.group(1) for m in _DEP_ARROW.finditer(show_text)]
    return [i for i in ids if i][:MAX_DEPENDENCIES]


def parse_show_text(task_id: str, show_text: str) -> Task:
    """Build a Task from ``bd show`` text output."""
    type_match = _TYPE_LINE.search(show_text)
    status_match = _STATUS_LINE.search(show_text)
    title = ""
    first_line = show_text.strip().splitlines()[0] if show_text.strip() else ""
    title_match = _TITLE_LINE.match(first_line)
    if title_match and title_match.group(1) == task_id:
        title = title_match.group(2).strip()
    return Task(
        id=task_id,
        title=title,
        status=status_match.group(1) if status_match else "open",
        issue_type=type_match.group(1) if type_match else "task",
        dependencies=extract_dependency_ids(show_text),
        description=show_text,
    )


def parse_tasks_json(raw: str) -> List[Task]:
    """Parse tracker JSON (a list, or a single object) into tasks.

    Entries that fail validation are logged and dropped.
    """
    try:
        data = json.loads(raw) if raw.strip() else []
    except json.JSONDecodeError as e:
        logger.warning("Could not parse tracker JSON: %s", e)
        return []

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []

    tasks = []
    for item in data:
        if not isinstance(item, dict):
            continue
        try:
            tasks.append(Task.model_validate(item))
        except ValueError as e:
            logger.warning("Skipping malformed task entry %r: %s", item.get("id"), e)
    return tasks


class Beads:
    """Issue-tracker adapter.

    Args:
        repo: Repository holding the tracker database (the main repo)
        actor: Name recorded on comments
    """

    def __init__(self, repo: Path, actor: str = "orchestrator") -> None:
        self.repo = Path(repo)
        self.actor = actor

    def run(self, *args: str) -> CommandResult:
        return run_command(["bd", *args], cwd=self.repo, timeout=BD_TIMEOUT)

    # Reads

    def ready(self) -> List[Task]:
        """Tasks whose dependencies are satisfied, in tracker order."""
        result = self.run("ready", "--json")
        if not result.ok:
            logger.warning("bd ready failed: %s", result.output.strip()[:200])
            return []
        return parse_tasks_json(result.stdout)

    def show(self, task_id: str) -> Optional[Task]:
        """Load one task, falling back to text output.

        Returns:
            The task, or None if the tracker does not know it
        """
        result = self.run("show", task_id, "--json")
        if result.ok:
            tasks = parse_tasks_json(result.stdout)
            if tasks:
                task = tasks[0]
                if not task.dependencies:
                    # Older bd versions only list dependencies in text output
                    text = self.show_text(task_id)
                    if text:
                        task.dependencies = extract_dependency_ids(text)
                return task

        text = self.show_text(task_id)
        if not text:
            return None
        return parse_show_text(task_id, text)

    def show_text(self, task_id: str) -> str:
        result = self.run("show", task_id)
        return result.stdout if result.ok else ""

    def comments(self, task_id: str) -> List[dict]:
        result = self.run("comments", task_id, "--json")
        if not result.ok:
            return []
        try:
            data = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            return []
        return [c for c in data if isinstance(c, dict)] if isinstance(data, list) else []

    def run_history(self, task_id: str) -> List[str]:
        """Run-history comment texts, oldest first."""
        return [
            c.get("text", "") for c in self.comments(task_id)
            if str(c.get("text", "")).startswith("Run:")
        ]

    # Writes

    def update(self, task_id: str, status: Optional[TaskStatus] = None,
               notes: Optional[str] = None, external_ref: Optional[str] = None) -> bool:
        args = ["update", task_id]
        if status is not None:
            args += ["--status", TaskStatus(status).value]
        if notes is not None:
            args += ["--notes", notes]
        if external_ref is not None:
            args += ["--external-ref", external_ref]
        result = self.run(*args)
        if not result.ok:
            logger.warning("bd update %s failed: %s", task_id, result.output.strip()[:200])
        return result.ok

    def close(self, task_id: str, reason: str) -> None:
        """Close a task.

        Raises:
            TrackerError: If bd refuses the close
        """
        result = self.run("close", task_id, "--reason", reason)
        if not result.ok:
            raise TrackerError(f"bd close {task_id} failed: {result.output.strip()[:200]}")

    def add_comment(self, task_id: str, text: str) -> bool:
        result = self.run("comments", "add", task_id, text, "--actor", self.actor)
        return result.ok

    def record_run(self, task_id: str, action: str, result: str, details: str = "") -> None:
        msg = f"Run: action={action} result={result}"
        if details:
            msg += f' details="{details}"'
        if not self.add_comment(task_id, msg):
            logger.debug("Could not record run on %s: %s", task_id, msg)

    def mark_in_progress(self, task_id: str) -> bool:
        return self.update(task_id, status=TaskStatus.IN_PROGRESS)

    def mark_blocked(self, task_id: str, reason: str) -> bool:
        ok = self.update(task_id, status=TaskStatus.BLOCKED, notes=reason)
        self.record_run(task_id, "block", "blocked", reason[:500])
        return ok

    def close_task(self, task_id: str, reason: str) -> None:
        self.close(task_id, reason)
        self.record_run(task_id, "close", "closed", reason)

    def _current_ref(self, task_id: str) -> ExternalRef:
        task = self.show(task_id)
        return task.ref if task else ExternalRef()

    def set_branch_ref(self, task_id: str, branch: str) -> bool:
        ref = self._current_ref(task_id)
        ref.branch = branch
        return self.update(task_id, external_ref=ref.format())

    def set_pr_ref(self, task_id: str, pr_number: int) -> bool:
        ref = self._current_ref(task_id)
        ref.pr = pr_number
        return self.update(task_id, external_ref=ref.format())
