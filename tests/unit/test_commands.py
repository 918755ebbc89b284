"""Tests for stackloop.commands module."""

import subprocess
from unittest.mock import Mock, patch

import pytest

from stackloop.commands import EXIT_NOT_FOUND, EXIT_TIMEOUT, CommandError, CommandResult, run_command


class TestCommandResult:
    """Tests for CommandResult."""

    def test_ok(self):
        """Exit code 0 is ok."""
        assert CommandResult(["x"], 0).ok is True
        assert CommandResult(["x"], 1).ok is False

    def test_output_combines_streams(self):
        """output joins stdout and stderr."""
        result = CommandResult(["x"], 1, "out\n", "err")
        assert result.output == "out\nerr"

    def test_output_single_stream(self):
        """output is whichever stream has content."""
        assert CommandResult(["x"], 1, "", "err").output == "err"
        assert CommandResult(["x"], 0, "out", "").output == "out"

    def test_timed_out(self):
        """Exit 124 means the command timed out."""
        assert CommandResult(["x"], EXIT_TIMEOUT).timed_out is True


class TestRunCommand:
    """Tests for run_command."""

    @patch("subprocess.run")
    def test_captures_output(self, mock_run):
        """stdout, stderr and the exit code are captured."""
        mock_run.return_value = Mock(returncode=0, stdout="hello\n", stderr="")

        result = run_command(["echo", "hello"], cwd="/tmp")

        assert result.ok
        assert result.stdout == "hello\n"
        args, kwargs = mock_run.call_args
        assert args[0] == ["echo", "hello"]
        assert kwargs["cwd"] == "/tmp"
        assert kwargs["capture_output"] is True
        assert kwargs["encoding"] == "utf-8"
        assert kwargs["errors"] == "replace"

    @patch("subprocess.run")
    def test_shell_string_runs_through_bash(self, mock_run):
        """A string command is run with bash -c."""
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        run_command("make fmt && make test")

        assert mock_run.call_args[0][0] == ["bash", "-c", "make fmt && make test"]

    @patch("subprocess.run")
    def test_timeout_is_exit_124(self, mock_run):
        """A timeout comes back as exit code 124, not an exception."""
        mock_run.side_effect = subprocess.TimeoutExpired(cmd=["slow"], timeout=5, output=b"partial")

        result = run_command(["slow"], timeout=5)

        assert result.returncode == EXIT_TIMEOUT
        assert result.timed_out
        assert result.stdout == "partial"

    @patch("subprocess.run")
    def test_missing_binary_is_exit_127(self, mock_run):
        """A missing binary comes back as exit code 127."""
        mock_run.side_effect = FileNotFoundError("no such file")

        result = run_command(["cursor-agent", "-p"])

        assert result.returncode == EXIT_NOT_FOUND
        assert "command not found" in result.stderr

    @patch("subprocess.run")
    def test_check_raises(self, mock_run):
        """check=True raises CommandError on failure."""
        mock_run.return_value = Mock(returncode=2, stdout="", stderr="fatal: bad ref")

        with pytest.raises(CommandError) as exc_info:
            run_command(["git", "checkout", "nope"], check=True)

        assert exc_info.value.returncode == 2
        assert exc_info.value.output == "fatal: bad ref"
        assert "git checkout nope failed (exit 2)" in str(exc_info.value)

    @patch("subprocess.run")
    def test_check_passes_on_success(self, mock_run):
        """check=True returns normally on success."""
        mock_run.return_value = Mock(returncode=0, stdout="ok", stderr="")
        assert run_command(["true"], check=True).ok

    @patch("subprocess.run")
    def test_none_streams_become_empty(self, mock_run):
        """None stdout/stderr are normalised to empty strings."""
        mock_run.return_value = Mock(returncode=0, stdout=None, stderr=None)
        result = run_command(["true"])
        assert result.stdout == ""
        assert result.stderr == ""

    def test_invalid_utf8_output_is_replaced(self):
        """Undecodable bytes in the output never raise."""
        result = run_command("printf 'ok\\377\\376\\n'; exit 1")

        assert result.returncode == 1
        assert result.stdout.startswith("ok")
        assert "\ufffd" in result.stdout
