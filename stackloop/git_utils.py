"""Git operations used by the orchestration loop.

All calls go through :func:`stackloop.commands.run_command` with the
working tree as cwd, so a :class:`Git` instance is bound to one checkout.
"""

import logging
import re
import time
from pathlib import Path
from typing import Iterable, List, Optional

from stackloop.commands import CommandError, CommandResult, run_command

logger = logging.getLogger(__name__)

GIT_TIMEOUT = 120


def _is_excluded(path: str, excluded: Iterable[str]) -> bool:
    return any(path == prefix.rstrip("/") or path.startswith(prefix) for prefix in excluded)


def parse_porcelain(output: str) -> List[str]:
    """Parse ``git status --porcelain`` output into paths.

    Renames (``R  old -> new``) report the new path.

    Args:
        output: Raw porcelain output

    Returns:
        List of changed paths
    """
    paths = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip('"'))
    return paths


def parse_shortstat(output: str) -> dict[str, int]:
    """Parse ``git diff --shortstat`` output.

    Args:
        output: e.g. "5 files changed, 100 insertions(+), 20 deletions(-)"

    Returns:
        Dict with keys 'files_changed', 'lines_added', 'lines_removed'
    """
    stats = {"files_changed": 0, "lines_added": 0, "lines_removed": 0}

    files_match = re.search(r"(\d+) files? changed", output)
    insertions_match = re.search(r"(\d+) insertions?\(\+\)", output)
    deletions_match = re.search(r"(\d+) deletions?\(-\)", output)

    if files_match:
        stats["files_changed"] = int(files_match.group(1))
    if insertions_match:
        stats["lines_added"] = int(insertions_match.group(1))
    if deletions_match:
        stats["lines_removed"] = int(deletions_match.group(1))

    return stats


class Git:
    """Version-control adapter bound to one working tree."""

    def __init__(self, repo: Path, remote: str = "origin") -> None:
        self.repo = Path(repo)
        self.remote = remote

    def run(self, *args: str, check: bool = False, timeout: float = GIT_TIMEOUT) -> CommandResult:
        return run_command(["git", *args], cwd=self.repo, timeout=timeout, check=check)

    # Inspection

    def current_branch(self) -> Optional[str]:
        """Get current branch name.

        Returns:
            Branch name, or None when detached or not in a repository
        """
        result = self.run("symbolic-ref", "--quiet", "--short", "HEAD")
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def head_sha(self) -> Optional[str]:
        result = self.run("rev-parse", "HEAD")
        return result.stdout.strip() if result.ok else None

    def ref_exists(self, ref: str) -> bool:
        return self.run("rev-parse", "--verify", "--quiet", ref).ok

    def local_branch_exists(self, branch: str) -> bool:
        return self.ref_exists(f"refs/heads/{branch}")

    def remote_branch_exists(self, branch: str) -> bool:
        return self.ref_exists(f"refs/remotes/{self.remote}/{branch}")

    def list_refs(self, prefix: str, sort: Optional[str] = None) -> List[str]:
        """List short ref names under a ref prefix.

        Args:
            prefix: e.g. "refs/heads/epic/E1/" or "refs/remotes/origin/"
            sort: Optional for-each-ref sort key (e.g. "-committerdate")

        Returns:
            Short names, with the remote name stripped for remote refs
        """
        args = ["for-each-ref", "--format=%(refname)"]
        if sort:
            args.append(f"--sort={sort}")
        args.append(prefix)
        result = self.run(*args)
        if not result.ok:
            return []

        names = []
        remote_prefix = f"refs/remotes/{self.remote}/"
        for line in result.stdout.splitlines():
            ref = line.strip()
            if ref.startswith(remote_prefix):
                name = ref[len(remote_prefix):]
                if name == "HEAD":
                    continue
                names.append(name)
            elif ref.startswith("refs/heads/"):
                names.append(ref[len("refs/heads/"):])
        return names

    def local_branches(self, namespace: str = "") -> List[str]:
        return self.list_refs(f"refs/heads/{namespace}")

    def remote_branches(self, namespace: str = "", newest_first: bool = False) -> List[str]:
        sort = "-committerdate" if newest_first else None
        return self.list_refs(f"refs/remotes/{self.remote}/{namespace}", sort=sort)

    def uncommitted_files(self, excluded: Iterable[str] = ()) -> List[str]:
        """List uncommitted paths (staged, unstaged or untracked).

        Args:
            excluded: Path prefixes to ignore

        Returns:
            Changed paths not under an excluded prefix
        """
        result = self.run("status", "--porcelain")
        if not result.ok:
            return []
        excluded = list(excluded)
        return [p for p in parse_porcelain(result.stdout) if not _is_excluded(p, excluded)]

    def is_dirty(self, excluded: Iterable[str] = ()) -> bool:
        return bool(self.uncommitted_files(excluded))

    def status_short(self) -> str:
        return self.run("status", "--short").stdout

    def commits_ahead(self, base: str, head: str = "HEAD") -> int:
        """Count commits on head that are not on base.

        Returns:
            Commit count, or 0 when either ref is missing
        """
        result = self.run("rev-list", "--count", f"{base}..{head}")
        if not result.ok:
            return 0
        try:
            return int(result.stdout.strip())
        except ValueError:
            return 0

    def has_content_diff(self, base: str, head: str = "HEAD") -> bool:
        """Whether head's tree differs from base's tree."""
        result = self.run("diff", "--quiet", base, head)
        return result.returncode == 1

    def diff(self, base: str, head: str = "HEAD") -> str:
        return self.run("diff", f"{base}...{head}").stdout

    def diff_stats(self, base: str, head: str = "HEAD") -> dict[str, int]:
        result = self.run("diff", "--shortstat", f"{base}...{head}")
        if not result.ok:
            return parse_shortstat("")
        return parse_shortstat(result.stdout.strip())

    def working_diff_stats(self, base: str = "HEAD") -> dict[str, int]:
        """Diff statistics of the working tree against a commit.

        Only paths known to the index are included; stage new files first.
        """
        return parse_shortstat(self.run("diff", "--shortstat", base).stdout.strip())

    def working_diff(self, base: str = "HEAD") -> str:
        return self.run("diff", base).stdout

    def changed_files(self, base: str = "HEAD") -> List[str]:
        result = self.run("diff", "--name-only", base)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def is_ancestor(self, ancestor: str, head: str = "HEAD") -> bool:
        return self.run("merge-base", "--is-ancestor", ancestor, head).ok

    # Mutation

    def fetch(self, ref: Optional[str] = None, prune: bool = False) -> CommandResult:
        args = ["fetch", self.remote]
        if prune:
            args.append("--prune")
        if ref:
            args.append(ref)
        return self.run(*args)

    def checkout(self, branch: str) -> CommandResult:
        return self.run("checkout", branch)

    def checkout_new(self, branch: str, start_point: str, force: bool = False) -> CommandResult:
        return self.run("checkout", "-B" if force else "-b", branch, start_point)

    def pull_rebase(self, branch: str) -> CommandResult:
        return self.run("pull", "--rebase", self.remote, branch)

    def reset_hard(self, ref: str) -> CommandResult:
        return self.run("reset", "--hard", ref)

    def rebase_abort(self) -> CommandResult:
        return self.run("rebase", "--abort")

    def stash_push(self, message: str) -> bool:
        """Stash uncommitted work including untracked files.

        Returns:
            True if something was stashed
        """
        result = self.run("stash", "push", "--include-untracked", "-m", message)
        return result.ok and "No local changes" not in result.output

    def stage_all(self, excluded: Iterable[str] = ()) -> CommandResult:
        """Stage every change except excluded paths.

        Raises:
            CommandError: If git add fails
        """
        pathspec = ["."] + [f":(exclude){p}" for p in excluded]
        return self.run("add", "-A", "--", *pathspec, check=True)


def stash_label(prefix: str, task_id: Optional[str] = None) -> str:
    """Build a recognisable stash message.

    Args:
        prefix: e.g. "validate-failed" or "reconcile-stash"
        task_id: Optional task the stash belongs to

    Returns:
        "<prefix>-<task>-<epoch>" or "<prefix>-<epoch>"
    """
    ts = int(time.time())
    if task_id:
        return f"{prefix}-{task_id}-{ts}"
    return f"{prefix}-{ts}"


__all__ = ["Git", "CommandError", "parse_porcelain", "parse_shortstat", "stash_label"]
