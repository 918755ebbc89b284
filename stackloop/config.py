"""Configuration management for stackloop.

Values come from three layers, later layers winning:

1. Field defaults on :class:`Config`
2. A ``.stackloop.yaml`` file found by walking up from the working directory
3. Environment variables (the names the loop has always been driven by,
   e.g. ``BASE_BRANCH`` or ``MAX_REPAIR_ATTEMPTS``)
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

CONFIG_FILENAME = ".stackloop.yaml"

# Paths never considered "work" when deciding whether a tree is dirty
DEFAULT_EXCLUDED_PATHS = [".beads/", ".claude/", ".cursor/rules/personal/"]

FLAVOR_VALIDATE_COMMANDS: Dict[str, str] = {
    "be": "make fmt",
    "fe": "pnpm run typecheck",
    "ios": "xcodebuild -scheme App -destination 'generic/platform=iOS Simulator' build",
}

FLAVOR_INSTALL_COMMANDS: Dict[str, str] = {
    "fe": "pnpm install --frozen-lockfile",
}

# Environment variable -> Config field
ENV_OVERRIDES: Dict[str, str] = {
    "MAIN_REPO": "main_repo",
    "EXEC_REPO": "exec_repo",
    "BASE_BRANCH": "base_branch",
    "ORCH_FLAVOR": "flavor",
    "VALIDATE_CMD": "validate_cmd",
    "INSTALL_CMD": "install_cmd",
    "IMPLEMENTER_MODEL": "implementer_model",
    "CHECKER_MODEL": "checker_model",
    "REVIEWER_MODEL": "reviewer_model",
    "CLASSIFIER_MODEL": "classifier_model",
    "AGENT_CLI": "agent_cli",
    "CURSOR_BIN": "cursor_bin",
    "CLAUDE_CODE_BIN": "claude_code_bin",
    "CLAUDE_CODE_ARGS": "claude_code_args",
    "AGENT_TIMEOUT_SECS": "agent_timeout_secs",
    "MAX_AGENT_RETRIES": "max_agent_retries",
    "RETRY_DELAY_SECS": "retry_delay_secs",
    "BACKOFF_MULTIPLIER": "backoff_multiplier",
    "MAX_DELAY_SECS": "max_delay_secs",
    "MAX_COMMIT_FAILURES": "max_commit_failures",
    "ENABLE_CHECKER": "enable_checker",
    "CHECKER_CONF_THRESHOLD": "checker_conf_threshold",
    "MAX_REPAIR_ATTEMPTS": "max_repair_attempts",
    "ENABLE_REVIEWER": "enable_reviewer",
    "REVIEW_DEPTH": "review_depth",
    "REVIEWER_CAN_FIX": "reviewer_can_fix",
    "MAX_REVIEW_FIX_ATTEMPTS": "max_review_fix_attempts",
    "MIN_LINES_FOR_REVIEW": "min_lines_for_review",
    "MAX_INFRA_FAILURES": "max_infra_failures",
    "SYNC_INTERVAL_SECS": "sync_interval_secs",
    "LOCK_TTL_SECS": "lock_ttl_secs",
    "SLEEP_SECS": "sleep_secs",
    "STATE_DIR": "state_dir",
    "NOTIFY_BIN": "notify_bin",
    "BEADS_ACTOR": "beads_actor",
    "AUTO_CLOSE_EPICS": "auto_close_epics",
    "ENABLE_PREVIEW": "enable_preview",
    "PREVIEW_CMD": "preview_cmd",
    "PREVIEW_URL": "preview_url",
    "MAX_STEP_RETRIES": "max_step_retries",
    "EPIC_MAX_DEPTH": "epic_max_depth",
}


def _default_state_dir() -> Path:
    return Path(tempfile.gettempdir()) / "stackloop"


class Config(BaseModel):
    """stackloop configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    # Repositories
    main_repo: Path = Field(default_factory=Path.cwd)
    exec_repo: Optional[Path] = None
    base_branch: str = "main"
    flavor: Literal["be", "fe", "ios"] = "be"
    validate_cmd: Optional[str] = None
    install_cmd: Optional[str] = None
    excluded_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDED_PATHS))
    worktrees_dir: Optional[Path] = None

    # Agents
    agent_cli: Literal["auto", "cursor", "claude-code"] = "auto"
    cursor_bin: Optional[str] = None
    claude_code_bin: Optional[str] = None
    claude_code_args: str = "--dangerously-skip-permissions"
    implementer_model: str = "opus-4.5-thinking"
    checker_model: str = "gemini-3-flash"
    reviewer_model: str = "sonnet-4"
    classifier_model: str = "gemini-3-flash"
    agent_timeout_secs: int = 1800
    max_agent_retries: int = 10
    retry_delay_secs: int = 60
    backoff_multiplier: int = 2
    max_delay_secs: int = 600

    # Pipeline
    max_commit_failures: int = 2
    enable_checker: bool = True
    checker_conf_threshold: float = 0.70
    max_repair_attempts: int = 1
    enable_reviewer: bool = True
    review_depth: Literal["minimal", "standard", "thorough"] = "standard"
    reviewer_can_fix: bool = True
    max_review_fix_attempts: int = 2
    min_lines_for_review: int = 5
    max_step_retries: int = 2
    epic_max_depth: int = 6
    auto_close_epics: bool = True

    # Health and loop
    max_infra_failures: int = 3
    sync_interval_secs: int = 1800
    lock_ttl_secs: int = 3600
    sleep_secs: int = 120
    state_dir: Path = Field(default_factory=_default_state_dir)

    # Integrations
    notify_bin: Optional[str] = None
    beads_actor: str = "orchestrator"
    enable_preview: bool = False
    preview_cmd: Optional[str] = None
    preview_url: str = "http://localhost:3000"

    @model_validator(mode="after")
    def _apply_flavor_defaults(self) -> "Config":
        if self.validate_cmd is None:
            self.validate_cmd = FLAVOR_VALIDATE_COMMANDS[self.flavor]
        if self.install_cmd is None:
            self.install_cmd = FLAVOR_INSTALL_COMMANDS.get(self.flavor)
        if self.exec_repo is None:
            self.exec_repo = self.main_repo
        return self

    @property
    def repo(self) -> Path:
        """Working tree the loop operates in."""
        return Path(self.exec_repo or self.main_repo)

    def get_worktrees_dir(self) -> Path:
        """Get the directory holding per-epic worktrees.

        Returns:
            Configured directory, or ``<main_repo>/../<name>-worktrees``
        """
        if self.worktrees_dir is not None:
            return self.worktrees_dir
        main = Path(self.main_repo).resolve()
        return main.parent / f"{main.name}-worktrees"

    def backoff_delays(self, attempts: Optional[int] = None) -> List[int]:
        """Delays slept between agent retries, in order.

        Args:
            attempts: Attempt limit (default: max_agent_retries)

        Returns:
            One entry per retry (``attempts - 1`` entries)
        """
        attempts = self.max_agent_retries if attempts is None else attempts
        delays = []
        delay = self.retry_delay_secs
        for _ in range(max(attempts - 1, 0)):
            delays.append(delay)
            delay = min(delay * self.backoff_multiplier, self.max_delay_secs)
        return delays


def find_config_file(start_path: Path) -> Optional[Path]:
    """Find .stackloop.yaml file by walking up directory tree.

    Args:
        start_path: Directory to start searching from

    Returns:
        Path to config file, or None if not found
    """
    current = start_path.resolve()

    while True:
        config_file = current / CONFIG_FILENAME
        if config_file.exists():
            return config_file

        parent = current.parent
        if parent == current:
            break
        current = parent

    return None


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """Collect config overrides from environment variables.

    Boolean-like values such as ``0``/``1`` are passed through as strings;
    pydantic coerces them when the model is built.

    Args:
        environ: Mapping to read (default: ``os.environ``)

    Returns:
        Dict of field name -> raw string value
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, str] = {}
    for env_name, field_name in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None and value != "":
            overrides[field_name] = value
    return overrides


def load_config(path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None) -> Config:
    """Load configuration from .stackloop.yaml and the environment.

    Args:
        path: Path to directory to search from (default: current directory)
        environ: Environment mapping (default: ``os.environ``)

    Returns:
        Loaded configuration (defaults where nothing is set)
    """
    if path is None:
        path = Path.cwd()

    data: dict = {}
    config_file = find_config_file(path)
    if config_file is not None:
        with open(config_file, "r") as f:
            data = yaml.safe_load(f) or {}
        data.setdefault("main_repo", str(config_file.parent))

    data.update(env_overrides(environ))
    return Config(**data)
