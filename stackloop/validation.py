"""Validation command runner.

The configured validation command (lint, typecheck, tests) runs in the
execution repo through ``bash -c``; its exit code is the only signal.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from stackloop.commands import run_command

logger = logging.getLogger(__name__)

# Lines of output kept for task notes
TAIL_LINES = 180
VALIDATE_TIMEOUT = 1800


@dataclass
class ValidationResult:
    """Outcome of one validation run."""

    passed: bool
    output: str
    returncode: int

    @property
    def tail(self) -> str:
        return tail_lines(self.output, TAIL_LINES)


def tail_lines(text: str, count: int) -> str:
    lines = text.rstrip().splitlines()
    return "\n".join(lines[-count:])


class Validator:
    """Runs the validation command for a working tree."""

    def __init__(self, command: str, repo: Path, timeout: Optional[float] = VALIDATE_TIMEOUT) -> None:
        self.command = command
        self.repo = Path(repo)
        self.timeout = timeout

    def run(self) -> ValidationResult:
        logger.info("Validate: %s", self.command)
        result = run_command(self.command, cwd=self.repo, timeout=self.timeout)
        if not result.ok:
            logger.warning("Validation failed (exit %s)", result.returncode)
        return ValidationResult(passed=result.ok, output=result.output, returncode=result.returncode)
