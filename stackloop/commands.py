"""Command execution for stackloop.

Every external tool (git, gt, bd, agent CLIs, validation commands) is
invoked through :func:`run_command` so that timeouts and missing binaries
come back as exit codes instead of exceptions. The exit-code conventions
match the shell: 124 for a timeout and 127 for a missing binary.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence, Union

logger = logging.getLogger(__name__)

EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127


@dataclass
class CommandResult:
    """Outcome of an external command.

    Attributes:
        args: Command that was run
        returncode: Process exit code (124 on timeout, 127 if not found)
        stdout: Captured standard output
        stderr: Captured standard error
    """

    args: Sequence[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr combined, for logging and classification."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr

    @property
    def timed_out(self) -> bool:
        return self.returncode == EXIT_TIMEOUT


class CommandError(RuntimeError):
    """Raised when a checked command exits non-zero."""

    def __init__(self, result: CommandResult, message: Optional[str] = None) -> None:
        self.result = result
        if message is None:
            detail = result.output.strip().splitlines()
            tail = detail[-1] if detail else ""
            message = f"{' '.join(result.args)} failed (exit {result.returncode}): {tail}"
        super().__init__(message)

    @property
    def returncode(self) -> int:
        return self.result.returncode

    @property
    def output(self) -> str:
        return self.result.output


def run_command(
    args: Union[str, Sequence[str]],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    check: bool = False,
    env: Optional[Mapping[str, str]] = None,
    input: Optional[str] = None,
) -> CommandResult:
    """Run an external command and capture its output.

    Args:
        args: Argument list, or a shell string (run through ``bash -c``)
        cwd: Working directory for the command
        timeout: Seconds before the process is killed (None: no limit)
        check: Raise CommandError on a non-zero exit
        env: Full environment for the child (default: inherit)
        input: Text fed to stdin

    Returns:
        CommandResult with exit code and captured output

    Raises:
        CommandError: If check is True and the command fails
    """
    argv = ["bash", "-c", args] if isinstance(args, str) else list(args)
    logger.debug("Running %s (cwd=%s)", argv, cwd)

    try:
        proc = subprocess.run(
            argv,
            cwd=cwd,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            env=dict(env) if env is not None else None,
            input=input,
        )
        result = CommandResult(argv, proc.returncode, proc.stdout or "", proc.stderr or "")
    except subprocess.TimeoutExpired as e:
        stdout = e.stdout.decode(errors="replace") if isinstance(e.stdout, bytes) else (e.stdout or "")
        logger.warning("Command timed out after %ss: %s", timeout, argv[0])
        result = CommandResult(argv, EXIT_TIMEOUT, stdout, f"timeout after {timeout}s")
    except FileNotFoundError:
        logger.warning("Command not found: %s", argv[0])
        result = CommandResult(argv, EXIT_NOT_FOUND, "", f"{argv[0]}: command not found")

    if check and not result.ok:
        raise CommandError(result)
    return result
