"""Per-epic git worktrees.

Each epic can get its own working tree under ``Config.get_worktrees_dir()``
so one loop per epic can run in parallel without sharing a checkout. A
worktree starts detached at the remote base branch; the loop running in it
creates task branches as usual.
"""

import logging
import re
import shutil
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

from stackloop.beads import Beads, TaskStatus
from stackloop.commands import CommandError
from stackloop.config import Config
from stackloop.git_utils import Git

logger = logging.getLogger(__name__)


class WorktreeInfo(BaseModel):
    """One entry of ``git worktree list --porcelain``."""

    path: Path
    head: str = ""
    branch: str = ""
    detached: bool = False

    @property
    def name(self) -> str:
        return self.path.name


def worktree_name(epic_id: str) -> str:
    """Directory name for an epic's worktree.

    Args:
        epic_id: Epic id, e.g. "PROJ-12"

    Returns:
        Lowercase name with runs of other characters collapsed to '-'
    """
    return re.sub(r"[^a-z0-9]+", "-", epic_id.lower()).strip("-") or "epic"


def parse_worktree_list(output: str) -> List[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output.

    Args:
        output: Raw porcelain output (blank-line separated records)

    Returns:
        List of WorktreeInfo, main worktree first
    """
    entries: List[WorktreeInfo] = []
    current: Optional[dict] = None
    for line in output.splitlines():
        if line.startswith("worktree "):
            if current:
                entries.append(WorktreeInfo(**current))
            current = {"path": Path(line[len("worktree "):])}
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current["head"] = line[len("HEAD "):]
        elif line.startswith("branch "):
            current["branch"] = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "detached":
            current["detached"] = True
    if current:
        entries.append(WorktreeInfo(**current))
    return entries


class WorktreeManager:
    """Creates, lists and removes per-epic worktrees.

    Args:
        config: Loop configuration (main repo, base branch, worktrees dir)
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.git = Git(config.main_repo)
        self.root = config.get_worktrees_dir()

    def path_for(self, epic_id: str) -> Path:
        return self.root / worktree_name(epic_id)

    def list(self) -> List[WorktreeInfo]:
        """Worktrees under the managed directory."""
        result = self.git.run("worktree", "list", "--porcelain")
        if not result.ok:
            logger.warning("git worktree list failed: %s", result.output.strip()[:200])
            return []
        root = self.root.resolve()
        return [w for w in parse_worktree_list(result.stdout) if w.path.resolve().parent == root]

    def add(self, epic_id: str) -> Path:
        """Get or create the worktree for an epic.

        Args:
            epic_id: Epic the worktree is for

        Returns:
            Path to the worktree

        Raises:
            CommandError: If git cannot create the worktree
        """
        path = self.path_for(epic_id)
        if path.is_dir():
            return path

        self.root.mkdir(parents=True, exist_ok=True)
        base_ref = f"{self.git.remote}/{self.config.base_branch}"
        self.git.fetch(self.config.base_branch)
        logger.info("Creating worktree for epic %s at %s", epic_id, path)
        self.git.run("worktree", "add", "--detach", str(path), base_ref, check=True)
        return path

    def remove(self, epic_id: str) -> bool:
        """Remove an epic's worktree, forcing if git refuses.

        Returns:
            True if a worktree was removed
        """
        path = self.path_for(epic_id)
        if not path.exists():
            return False
        logger.info("Removing worktree for epic %s", epic_id)
        if not self.git.run("worktree", "remove", "--force", str(path)).ok:
            shutil.rmtree(path, ignore_errors=True)
            self.git.run("worktree", "prune")
        return True

    def prune(self, tracker: Optional[Beads] = None) -> List[str]:
        """Drop stale worktree metadata and worktrees of closed epics.

        Args:
            tracker: When given, worktrees whose epic is closed are removed

        Returns:
            Names of worktrees removed
        """
        try:
            self.git.run("worktree", "prune", check=True)
        except CommandError as e:
            logger.warning("git worktree prune failed: %s", e)

        removed: List[str] = []
        if tracker is None:
            return removed
        for info in self.list():
            epic = self._epic_for(tracker, info.name)
            if epic is not None and epic.status == TaskStatus.CLOSED:
                if self.remove(epic.id):
                    removed.append(info.name)
        return removed

    def _epic_for(self, tracker: Beads, name: str):
        for candidate in (name, name.upper()):
            epic = tracker.show(candidate)
            if epic is not None:
                return epic
        return None
