"""Agent CLI adapter and invocation harness.

:class:`AgentCli` knows how to call one of the supported agent CLIs
(Cursor's ``cursor-agent`` or Claude Code's ``claude``). :class:`AgentHarness`
wraps it with exponential backoff for transient provider errors and turns
raw output into a typed :data:`AgentOutcome`, so nothing downstream has to
look for the ``STATUS: BLOCKED`` marker itself.
"""

import json
import logging
import os
import re
import shutil
import shlex
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Union

from stackloop.commands import EXIT_NOT_FOUND, EXIT_TIMEOUT, CommandResult, run_command
from stackloop.config import Config

logger = logging.getLogger("stackloop.agent")

TRANSIENT_PATTERN = re.compile(
    r"\b50[023]\b|rate.?limit|\btimed? ?out\b|overloaded|over capacity|provider error",
    re.IGNORECASE,
)
_BLOCKED_MARKER = re.compile(r"^STATUS:\s*BLOCKED\s*$", re.MULTILINE)

CLAUDE_CODE_PREFIX = (
    "You are running in Claude Code CLI mode. Use the available tools to complete the task.\n"
    "When editing files, use the appropriate file editing tools.\n\n"
)

CURSOR_MODELS = {
    "opus": "opus-4.5",
    "claude-opus": "opus-4.5",
    "opus-4.5": "opus-4.5",
    "opus-thinking": "opus-4.5-thinking",
    "claude-opus-thinking": "opus-4.5-thinking",
    "opus-4.5-thinking": "opus-4.5-thinking",
    "sonnet": "sonnet-4",
    "claude-sonnet": "sonnet-4",
    "sonnet-4": "sonnet-4",
    "gemini": "gemini-3-flash",
    "gemini-flash": "gemini-3-flash",
    "gemini-3-flash": "gemini-3-flash",
}

CLAUDE_CODE_MODELS = {
    "opus": "claude-opus-4-20250514",
    "opus-4": "claude-opus-4-20250514",
    "opus-4.5": "claude-opus-4-20250514",
    "opus-thinking": "claude-opus-4-20250514",
    "opus-4.5-thinking": "claude-opus-4-20250514",
    "sonnet": "claude-sonnet-4-20250514",
    "sonnet-4": "claude-sonnet-4-20250514",
    "haiku": "claude-3-5-haiku-20241022",
    "haiku-3.5": "claude-3-5-haiku-20241022",
}


def _candidate_bins(kind: str) -> List[str]:
    home = Path.home()
    if kind == "cursor":
        found = [shutil.which("cursor-agent"), shutil.which("cursor")]
        return [str(home / ".local/bin/cursor-agent"), str(home / ".cursor/bin/cursor")] + [
            f for f in found if f
        ]
    found = shutil.which("claude")
    return [str(home / ".local/bin/claude"), str(home / ".claude/bin/claude")] + ([found] if found else [])


def _first_executable(paths: List[str]) -> Optional[str]:
    for path in paths:
        if path and os.path.isfile(path) and os.access(path, os.X_OK):
            return path
    return None


class AgentCli:
    """Invokes one agent CLI with a model and a prompt.

    Args:
        config: Loop configuration (CLI choice, binaries, timeout)
        cwd: Working directory the agent edits
    """

    def __init__(self, config: Config, cwd: Optional[Path] = None) -> None:
        self.config = config
        self.cwd = Path(cwd) if cwd else config.repo
        self.timeout = config.agent_timeout_secs
        self._kind: Optional[str] = None
        self._bin: Optional[str] = None

    def detect_bin(self, kind: str) -> Optional[str]:
        override = self.config.cursor_bin if kind == "cursor" else self.config.claude_code_bin
        if override:
            return override
        return _first_executable(_candidate_bins(kind))

    @property
    def kind(self) -> str:
        """Resolved CLI kind ("cursor" or "claude-code")."""
        if self._kind is None:
            if self.config.agent_cli != "auto":
                self._kind = self.config.agent_cli
            elif self.detect_bin("cursor"):
                self._kind = "cursor"
            else:
                self._kind = "claude-code"
        return self._kind

    @property
    def bin(self) -> Optional[str]:
        if self._bin is None:
            self._bin = self.detect_bin(self.kind)
        return self._bin

    def is_available(self) -> bool:
        return self.bin is not None

    def map_model(self, model: str) -> str:
        """Translate a logical model name into the CLI's own identifier."""
        table = CURSOR_MODELS if self.kind == "cursor" else CLAUDE_CODE_MODELS
        return table.get(model, model)

    def build_args(self, model: str, prompt: str) -> List[str]:
        mapped = self.map_model(model)
        if self.kind == "cursor":
            return [self.bin or "cursor-agent", "--model", mapped, "-p", "--force", prompt]
        extra = shlex.split(self.config.claude_code_args)
        if "-p" not in extra and "--print" not in extra:
            extra = ["-p"] + extra
        return [self.bin or "claude", *extra, "--model", mapped, CLAUDE_CODE_PREFIX + prompt]

    def invoke(self, model: str, prompt: str) -> CommandResult:
        if not self.is_available():
            return CommandResult([self.kind], EXIT_NOT_FOUND, "", f"ERROR: {self.kind} CLI not found")
        logger.debug("Invoking %s (model=%s)", self.kind, self.map_model(model))
        return run_command(self.build_args(model, prompt), cwd=self.cwd, timeout=self.timeout)


class AgentErrorKind(str, Enum):
    TRANSIENT = "transient"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass
class AgentSuccess:
    output: str


@dataclass
class AgentBlocked:
    """The agent declared it cannot proceed."""

    reason: str
    questions: List[str] = field(default_factory=list)
    output: str = ""

    def summary(self) -> str:
        text = self.reason or "Agent reported blocked"
        if self.questions:
            text += " Questions: " + " ".join(f"- {q}" for q in self.questions)
        return text


@dataclass
class AgentError:
    kind: AgentErrorKind
    exit_code: int
    output: str = ""


AgentOutcome = Union[AgentSuccess, AgentBlocked, AgentError]


def is_transient(exit_code: int, output: str) -> bool:
    """Timeouts and provider-side errors are worth retrying."""
    return exit_code == EXIT_TIMEOUT or bool(TRANSIENT_PATTERN.search(output or ""))


def parse_blocked(output: str) -> Optional[AgentBlocked]:
    """Parse a ``STATUS: BLOCKED`` report from agent output.

    Expected shape::

        STATUS: BLOCKED
        REASON: <one paragraph>
        QUESTIONS:
        - <question>

    Returns:
        AgentBlocked, or None if the output has no marker
    """
    match = _BLOCKED_MARKER.search(output or "")
    if not match:
        return None

    reason_lines: List[str] = []
    questions: List[str] = []
    section = None
    for line in output[match.end():].splitlines():
        stripped = line.strip()
        upper = stripped.upper()
        if upper.startswith("REASON:"):
            section = "reason"
            rest = stripped[len("REASON:"):].strip()
            if rest:
                reason_lines.append(rest)
        elif upper.startswith("QUESTIONS:"):
            section = "questions"
        elif section == "questions" and stripped.startswith("-"):
            questions.append(stripped.lstrip("- ").strip())
        elif section == "reason" and stripped:
            reason_lines.append(stripped)
    return AgentBlocked(reason=" ".join(reason_lines), questions=questions[:3], output=output)


def strip_fences(text: str) -> str:
    """Remove markdown code fences around a model answer."""
    lines = [ln for ln in text.splitlines() if not re.match(r"^\s*```(?:json)?\s*$", ln)]
    return "\n".join(lines).replace("```", "")


def extract_json(text: str) -> Optional[dict]:
    """Pull the outermost JSON object out of model output.

    Returns:
        Parsed object, or None if no valid object is present
    """
    cleaned = strip_fences(text or "")
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        data = json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


class AgentHarness:
    """Runs agents with backoff on transient errors.

    Args:
        cli: Agent CLI adapter
        config: Backoff settings
        sleep: Sleep function (injected by tests)
    """

    def __init__(self, cli: AgentCli, config: Config, sleep: Callable[[float], None] = time.sleep) -> None:
        self.cli = cli
        self.config = config
        self.sleep = sleep

    def invoke(self, model: str, prompt: str, max_attempts: Optional[int] = None) -> AgentOutcome:
        """Run an agent until it succeeds, fails hard, or retries run out.

        Only transient failures (exit 124 or provider-error output) are
        retried; any other non-zero exit returns immediately.

        Args:
            model: Logical model name
            prompt: Full prompt text
            max_attempts: Attempt limit (default: config.max_agent_retries)

        Returns:
            AgentSuccess, AgentBlocked or AgentError
        """
        attempts = max(1, self.config.max_agent_retries if max_attempts is None else max_attempts)
        delays = self.config.backoff_delays(attempts)
        result: Optional[CommandResult] = None

        for attempt in range(1, attempts + 1):
            logger.info("Agent attempt %d/%d (cli=%s, model=%s)", attempt, attempts, self.cli.kind, model)
            result = self.cli.invoke(model, prompt)

            if result.ok:
                blocked = parse_blocked(result.output)
                if blocked is not None:
                    logger.warning("Agent reported blocked: %s", blocked.reason)
                    return blocked
                return AgentSuccess(result.output)

            if result.returncode == EXIT_NOT_FOUND:
                return AgentError(AgentErrorKind.NOT_FOUND, result.returncode, result.output)

            if not is_transient(result.returncode, result.output):
                blocked = parse_blocked(result.output)
                if blocked is not None:
                    return blocked
                return AgentError(AgentErrorKind.FAILED, result.returncode, result.output)

            if attempt < attempts:
                delay = delays[attempt - 1]
                logger.warning("Retryable agent error (exit %s). Sleeping %ss.", result.returncode, delay)
                self.sleep(delay)

        assert result is not None
        return AgentError(AgentErrorKind.TRANSIENT, result.returncode, result.output)
