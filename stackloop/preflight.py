"""Preflight checks for stackloop.

Verifies that the external tools the loop drives are installed and that
the configured repositories look right, before the loop takes the lock.

Usage:
    from stackloop.preflight import run_preflight

    results = run_preflight(config)
    if all(r.passed for r in results):
        print("Environment ready!")
"""

import shlex
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from stackloop.agent import AgentCli
from stackloop.commands import run_command
from stackloop.config import Config


@dataclass
class PreflightResult:
    """Result of a single preflight check.

    Attributes:
        name: Name of the check that was run
        passed: Whether the check passed
        message: Human-readable message describing the result
        fix_hint: Optional suggestion for how to fix a failure
    """

    name: str
    passed: bool
    message: str
    fix_hint: Optional[str] = None


class PreflightCheck(ABC):
    """Base class for preflight checks.

    Subclasses must define name, description, and implement check().
    """

    name: str = ""
    description: str = ""

    @abstractmethod
    def check(self) -> PreflightResult:
        """Run the preflight check.

        Returns:
            PreflightResult with the outcome of the check
        """


class PreflightRegistry:
    """Registry for collecting and running preflight checks."""

    def __init__(self) -> None:
        self.checks: List[PreflightCheck] = []

    def register(self, check: PreflightCheck) -> None:
        self.checks.append(check)

    def run_all(self) -> List[PreflightResult]:
        """Run all registered checks and return results.

        Continues running checks even if some fail or raise exceptions.

        Returns:
            List of PreflightResult for all checks
        """
        results: List[PreflightResult] = []
        for check in self.checks:
            try:
                results.append(check.check())
            except Exception as e:
                # Check crashed - treat as failure
                results.append(
                    PreflightResult(
                        name=check.name,
                        passed=False,
                        message=f"Check error: {e}",
                        fix_hint="Check implementation may have a bug",
                    )
                )
        return results


# Built-in checks


class GitRepoCheck(PreflightCheck):
    """Check that the execution repo is a git working tree."""

    name = "git_repo"
    description = "Verify the execution repo is a git repository"

    def __init__(self, repo: Path) -> None:
        self.repo = Path(repo)

    def check(self) -> PreflightResult:
        if not self.repo.is_dir():
            return PreflightResult(
                name=self.name,
                passed=False,
                message=f"{self.repo} does not exist",
                fix_hint="Set EXEC_REPO to an existing checkout",
            )
        result = run_command(["git", "rev-parse", "--is-inside-work-tree"], cwd=self.repo, timeout=30)
        if result.ok and result.stdout.strip() == "true":
            return PreflightResult(name=self.name, passed=True, message=f"{self.repo} is a git working tree")
        return PreflightResult(
            name=self.name,
            passed=False,
            message=f"Not a git repository: {self.repo}",
            fix_hint="Run stackloop inside a git checkout or set EXEC_REPO",
        )


class ToolCheck(PreflightCheck):
    """Check that a command-line tool is on PATH and runs."""

    description = "Verify an external tool is installed"

    def __init__(self, binary: str, version_args: Optional[List[str]] = None,
                 fix_hint: Optional[str] = None) -> None:
        self.binary = binary
        self.name = binary
        self.version_args = ["--version"] if version_args is None else version_args
        self.fix_hint = fix_hint or f"Install {binary} and make sure it is on PATH"

    def check(self) -> PreflightResult:
        path = shutil.which(self.binary)
        if path is None:
            return PreflightResult(
                name=self.name, passed=False, message=f"{self.binary} not found", fix_hint=self.fix_hint
            )
        result = run_command([path, *self.version_args], timeout=30)
        if not result.ok:
            return PreflightResult(
                name=self.name,
                passed=False,
                message=f"{self.binary} error: {result.output.strip()[:200]}",
                fix_hint=self.fix_hint,
            )
        first_line = result.output.strip().splitlines()[0] if result.output.strip() else path
        return PreflightResult(name=self.name, passed=True, message=f"{self.binary} available: {first_line}")


class BeadsDatabaseCheck(PreflightCheck):
    """Check that the main repo holds a Beads database."""

    name = "beads_db"
    description = "Verify the main repo has a .beads directory"

    def __init__(self, main_repo: Path) -> None:
        self.main_repo = Path(main_repo)

    def check(self) -> PreflightResult:
        if (self.main_repo / ".beads").is_dir():
            return PreflightResult(name=self.name, passed=True, message=f"Beads database in {self.main_repo}")
        return PreflightResult(
            name=self.name,
            passed=False,
            message=f"No .beads directory in {self.main_repo}",
            fix_hint="Run 'bd init' in the main repo or set MAIN_REPO",
        )


class AgentCliCheck(PreflightCheck):
    """Check that the configured agent CLI can be found."""

    name = "agent_cli"
    description = "Verify the agent CLI is installed"

    def __init__(self, config: Config) -> None:
        self.cli = AgentCli(config)

    def check(self) -> PreflightResult:
        if self.cli.is_available():
            return PreflightResult(
                name=self.name, passed=True, message=f"{self.cli.kind} CLI at {self.cli.bin}"
            )
        return PreflightResult(
            name=self.name,
            passed=False,
            message=f"{self.cli.kind} CLI not found",
            fix_hint="Install cursor-agent or claude, or set CURSOR_BIN / CLAUDE_CODE_BIN",
        )


class ValidateCommandCheck(PreflightCheck):
    """Check that the validation command's program exists."""

    name = "validate_cmd"
    description = "Verify the validation command can run"

    def __init__(self, command: str) -> None:
        self.command = command

    def check(self) -> PreflightResult:
        try:
            program = shlex.split(self.command)[0]
        except (ValueError, IndexError):
            return PreflightResult(
                name=self.name,
                passed=False,
                message=f"Cannot parse validation command: {self.command!r}",
                fix_hint="Set VALIDATE_CMD",
            )
        if shutil.which(program) is None:
            return PreflightResult(
                name=self.name,
                passed=False,
                message=f"{program} not found for validation command",
                fix_hint=f"Install {program} or set VALIDATE_CMD",
            )
        return PreflightResult(name=self.name, passed=True, message=f"Validation: {self.command}")


def get_default_registry(config: Config) -> PreflightRegistry:
    """Get a registry with all default preflight checks.

    Returns:
        PreflightRegistry populated with built-in checks
    """
    registry = PreflightRegistry()
    registry.register(ToolCheck("git"))
    registry.register(GitRepoCheck(config.repo))
    registry.register(ToolCheck("gt", fix_hint="Install the Graphite CLI: npm install -g @withgraphite/graphite-cli"))
    registry.register(ToolCheck("bd", fix_hint="Install Beads (bd) and make sure it is on PATH"))
    registry.register(BeadsDatabaseCheck(config.main_repo))
    registry.register(AgentCliCheck(config))
    registry.register(ValidateCommandCheck(config.validate_cmd or ""))
    return registry


def run_preflight(config: Config) -> List[PreflightResult]:
    """Run all default preflight checks.

    Returns:
        List of PreflightResult for all checks
    """
    return get_default_registry(config).run_all()
