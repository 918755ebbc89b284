"""Pytest configuration and fixtures for stackloop tests.

Clears every environment variable the config layer reads so a developer's
shell never leaks into a test, and provides a ready-made config and task.
"""

import pytest
from click.testing import CliRunner

from stackloop.beads import Task, TaskStatus
from stackloop.config import ENV_OVERRIDES, Config


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Remove config environment variables for all tests by default."""
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.delenv("STACKLOOP_LOG_LEVEL", raising=False)


@pytest.fixture
def config(tmp_path):
    """A config rooted in a temporary directory with fast, small limits."""
    return Config(
        main_repo=tmp_path,
        validate_cmd="make check",
        state_dir=tmp_path / "state",
        retry_delay_secs=1,
        max_agent_retries=3,
        sleep_secs=1,
    )


@pytest.fixture
def task():
    """An open task with acceptance criteria."""
    return Task(
        id="T-1",
        title="Add login form",
        status=TaskStatus.OPEN,
        details="Build the form.\n\n## Acceptance Criteria\n- form renders\n- submit posts",
    )


@pytest.fixture
def cli_runner():
    """Create a Click test runner."""
    return CliRunner()
