"""Tests for per-epic worktrees."""

from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest

from stackloop.beads import Task, TaskStatus
from stackloop.commands import CommandError
from stackloop.worktree import WorktreeManager, parse_worktree_list, worktree_name

PORCELAIN = """\
worktree /src/app
HEAD 1111111111111111111111111111111111111111
branch refs/heads/main

worktree /src/app-worktrees/proj-12
HEAD 2222222222222222222222222222222222222222
detached

worktree /src/app-worktrees/proj-13
HEAD 3333333333333333333333333333333333333333
branch refs/heads/epic/PROJ-13/T-1-login
"""


class TestParsing:
    """Tests for naming and porcelain parsing."""

    def test_worktree_name(self):
        """Epic ids become lowercase directory names."""
        assert worktree_name("PROJ-12") == "proj-12"
        assert worktree_name("Epic #7 (auth)") == "epic-7-auth"
        assert worktree_name("!!!") == "epic"

    def test_parse_worktree_list(self):
        """Records are split on 'worktree' lines."""
        entries = parse_worktree_list(PORCELAIN)

        assert [e.name for e in entries] == ["app", "proj-12", "proj-13"]
        assert entries[0].branch == "main"
        assert entries[1].detached is True
        assert entries[1].branch == ""
        assert entries[2].branch == "epic/PROJ-13/T-1-login"
        assert entries[2].head.startswith("3333")


@pytest.fixture
def manager(config, tmp_path):
    config.worktrees_dir = tmp_path / "wts"
    return WorktreeManager(config)


class TestWorktreeManager:
    """Tests for WorktreeManager."""

    def test_path_for(self, manager, tmp_path):
        """Worktrees live under the configured directory."""
        assert manager.path_for("PROJ-12") == tmp_path / "wts" / "proj-12"

    def test_add_existing(self, manager):
        """An existing worktree is reused without git."""
        manager.path_for("E1").mkdir(parents=True)
        with patch("subprocess.run") as mock_run:
            assert manager.add("E1") == manager.path_for("E1")
        mock_run.assert_not_called()

    @patch("subprocess.run")
    def test_add_creates_detached(self, mock_run, manager):
        """New worktrees start detached at the remote base."""
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        path = manager.add("E1")

        assert mock_run.call_args[0][0] == [
            "git", "worktree", "add", "--detach", str(path), "origin/main",
        ]

    @patch("subprocess.run")
    def test_add_failure_raises(self, mock_run, manager):
        """A git failure raises CommandError."""
        mock_run.return_value = Mock(returncode=128, stdout="", stderr="fatal: invalid reference")
        with pytest.raises(CommandError):
            manager.add("E1")

    @patch("subprocess.run")
    def test_list_filters_to_managed(self, mock_run, manager, tmp_path):
        """Only worktrees in the managed directory are listed."""
        managed = tmp_path / "wts" / "e1"
        mock_run.return_value = Mock(returncode=0, stderr="", stdout=(
            f"worktree {tmp_path}\nHEAD aaa\nbranch refs/heads/main\n\n"
            f"worktree {managed}\nHEAD bbb\ndetached\n"
        ))

        assert [w.name for w in manager.list()] == ["e1"]

    def test_prune_removes_closed_epics(self, manager):
        """Worktrees of closed epics are removed."""
        info = MagicMock()
        info.name = "e1"
        tracker = MagicMock()
        tracker.show.side_effect = lambda tid: Task(id="E1", issue_type="epic", status=TaskStatus.CLOSED) \
            if tid == "E1" else None
        manager.path_for("E1").mkdir(parents=True)

        with patch.object(manager, "list", return_value=[info]), \
                patch("subprocess.run") as mock_run:
            mock_run.return_value = Mock(returncode=0, stdout="", stderr="")
            removed = manager.prune(tracker)

        assert removed == ["e1"]
        commands = [c[0][0] for c in mock_run.call_args_list]
        assert ["git", "worktree", "remove", "--force", str(manager.path_for("E1"))] in commands

    def test_prune_keeps_open_epics(self, manager):
        """Open epics keep their worktrees."""
        info = MagicMock()
        info.name = "e2"
        tracker = MagicMock()
        tracker.show.return_value = Task(id="e2", issue_type="epic", status=TaskStatus.OPEN)

        with patch.object(manager, "list", return_value=[info]), \
                patch("subprocess.run") as mock_run:
            mock_run.return_value = Mock(returncode=0, stdout="", stderr="")
            assert manager.prune(tracker) == []

    def test_remove_missing(self, manager):
        """Removing a worktree that does not exist is a no-op."""
        assert manager.remove("nope") is False


def test_worktree_info_path_type():
    """Entries carry real paths."""
    assert isinstance(parse_worktree_list("worktree /a/b\n")[0].path, Path)
