"""Graphite (``gt``) stacked-branch adapter.

Every command runs non-interactively. Query helpers never raise: a failing
``gt log`` simply means "nothing found", so callers fall back to git.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from stackloop.commands import CommandResult, run_command

logger = logging.getLogger(__name__)

GT_TIMEOUT = 300

CREATE_ARGS = ["--no-interactive", "-a"]
MODIFY_ARGS = ["--no-interactive", "-a"]
# No --ai: the PR title must keep the task id from the commit message
SUBMIT_ARGS = ["--no-interactive", "--draft", "--no-edit"]

_PR_IN_LOG = re.compile(r"PR #(\d+)", re.IGNORECASE)
_PR_IN_SUBMIT = re.compile(r"#(\d+)")
_PR_URL = re.compile(r"/pull/(\d+)")
_NEEDS_RESTACK = re.compile(r"needs restack|diverged", re.IGNORECASE)

# Lines of one gt log entry scanned for its PR
PR_SEARCH_WINDOW = 10
# Start of a branch entry in gt log ("◉ branch", "◯ branch", "│ ◯ branch")
_BRANCH_HEADER = re.compile(r"^[\s│├└─]*[◉◯○●]")


class GraphiteError(RuntimeError):
    """Raised when a gt command that must succeed fails."""

    def __init__(self, message: str, result: Optional[CommandResult] = None) -> None:
        self.result = result
        super().__init__(message)

    @property
    def output(self) -> str:
        return self.result.output if self.result else str(self)


def _task_pattern(task_id: str) -> "re.Pattern[str]":
    # T-1 must not match T-10 or the child T-1.2
    return re.compile(rf"(?<![\w.-]){re.escape(task_id)}(?!\w|\.\w)", re.IGNORECASE)


def find_pr_in_log(log_output: str, task_id: Optional[str] = None) -> Optional[int]:
    """Find a PR number in ``gt log`` output.

    With a task id, only the entry of the branch named after the task is
    searched: from its header line up to the next branch header. Logs
    without branch glyphs are matched line by line.

    Args:
        log_output: Raw ``gt log`` output
        task_id: Task to look for (case-insensitive)

    Returns:
        PR number, or None
    """
    lines = log_output.splitlines()
    if not task_id:
        match = _PR_IN_LOG.search(log_output)
        return int(match.group(1)) if match else None

    pattern = _task_pattern(task_id)
    headers = [i for i, line in enumerate(lines) if _BRANCH_HEADER.match(line)]
    for i, line in enumerate(lines):
        if headers and i not in headers:
            continue
        if not pattern.search(line):
            continue
        if headers:
            end = next((h for h in headers if h > i), len(lines))
        else:
            end = i + 1
        for candidate in lines[i:min(end, i + PR_SEARCH_WINDOW + 1)]:
            match = _PR_IN_LOG.search(candidate)
            if match:
                return int(match.group(1))
    return None


def parse_submit_output(output: str) -> Optional[int]:
    """Extract the PR number printed by ``gt submit``.

    Args:
        output: Combined submit output

    Returns:
        PR number, or None when none was printed
    """
    match = _PR_IN_SUBMIT.search(output) or _PR_URL.search(output)
    return int(match.group(1)) if match else None


class Graphite:
    """Stacked-branch adapter bound to one working tree."""

    def __init__(self, repo: Path) -> None:
        self.repo = Path(repo)

    def run(self, *args: str, timeout: float = GT_TIMEOUT) -> CommandResult:
        return run_command(["gt", *args], cwd=self.repo, timeout=timeout)

    # Queries

    def log(self) -> str:
        result = self.run("log")
        if not result.ok:
            logger.warning("gt log failed (exit %s): %s", result.returncode, result.output.strip()[:200])
            return ""
        return result.output

    def ls(self) -> str:
        result = self.run("ls")
        return result.stdout if result.ok else ""

    def is_tracked(self, branch: str) -> bool:
        return bool(branch) and branch in self.ls()

    def needs_restack(self) -> bool:
        return bool(_NEEDS_RESTACK.search(self.log()))

    def find_pr_number(self, task_id: Optional[str] = None) -> Optional[int]:
        return find_pr_in_log(self.log(), task_id)

    # Branch operations

    def checkout(self, branch: str) -> bool:
        return self.run("checkout", branch, "--no-interactive").ok

    def create(self, branch: str, message: str, parent: Optional[str] = None) -> CommandResult:
        args = ["create", *CREATE_ARGS, branch, "-m", message]
        if parent:
            args += ["--parent", parent]
        return self.run(*args)

    def track(self, branch: str, parent: Optional[str] = None) -> CommandResult:
        args = ["track", branch, "--force"]
        if parent:
            args += ["--parent", parent]
        return self.run(*args)

    def restack(self) -> CommandResult:
        return self.run("restack", "--no-interactive")

    def sync(self) -> CommandResult:
        return self.run("sync", "--no-interactive")

    def modify(self, message: str) -> CommandResult:
        return self.run("modify", *MODIFY_ARGS, "-m", message)

    def submit(self) -> CommandResult:
        return self.run("submit", *SUBMIT_ARGS)

    def create_with_retry(self, branch: str, message: str, parent: Optional[str] = None,
                          current_branch: Optional[str] = None) -> CommandResult:
        """Create a branch, repairing the two common gt failures once.

        Diverged tracking of the current branch is fixed with
        ``gt track --force`` and the create retried. An existing branch is
        checked out instead of created.

        Args:
            branch: New branch name
            message: Placeholder commit message
            parent: Parent branch passed to ``--parent``
            current_branch: Branch to re-track on divergence

        Returns:
            Result of the last gt command run

        Raises:
            GraphiteError: If the branch could not be created or checked out
        """
        result = self.create(branch, message, parent)
        if result.ok:
            return result

        output = result.output
        if re.search(r"diverged|tracking", output, re.IGNORECASE) and current_branch:
            logger.info("gt create hit diverged tracking; re-tracking %s", current_branch)
            self.track(current_branch)
            result = self.create(branch, message, parent)
            if result.ok:
                return result

        if re.search(r"already exists", output, re.IGNORECASE):
            checkout = self.run("checkout", branch, "--no-interactive")
            if checkout.ok:
                return checkout

        first_lines = " ".join(result.output.strip().splitlines()[:3])
        raise GraphiteError(f"gt create failed: {first_lines}", result)

    def submit_pr(self) -> int:
        """Submit the current stack as draft PRs.

        Returns:
            PR number of the current branch

        Raises:
            GraphiteError: If submit fails or prints no PR number
        """
        result = self.submit()
        if not result.ok:
            tail = "\n".join(result.output.strip().splitlines()[-50:])
            raise GraphiteError(tail or "gt submit failed", result)
        pr_number = parse_submit_output(result.output)
        if pr_number is None:
            raise GraphiteError("PR number not captured from gt submit output", result)
        return pr_number
