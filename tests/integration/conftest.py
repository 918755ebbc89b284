"""Integration test fixtures.

These fixtures create real git repositories (and a bare remote) so the git
adapters can be exercised against the real binary.
"""

import subprocess
from pathlib import Path
from typing import Generator

import pytest

from git_helpers import git


@pytest.fixture
def git_repo(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a real git repository on branch main with an initial commit."""
    repo_path = tmp_path / "test_repo"
    repo_path.mkdir()

    git(repo_path, "init")
    git(repo_path, "config", "user.email", "test@example.com")
    git(repo_path, "config", "user.name", "Test User")
    git(repo_path, "config", "commit.gpgsign", "false")

    (repo_path / "README.md").write_text("# Test Project\n")
    git(repo_path, "add", ".")
    git(repo_path, "commit", "-m", "Initial commit")
    git(repo_path, "branch", "-M", "main")

    yield repo_path


@pytest.fixture
def repo_with_remote(git_repo: Path, tmp_path: Path) -> Path:
    """A git_repo whose main branch is pushed to a bare 'origin'."""
    remote = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", str(remote)], check=True, capture_output=True)
    git(git_repo, "remote", "add", "origin", str(remote))
    git(git_repo, "push", "-u", "origin", "main")
    return git_repo
