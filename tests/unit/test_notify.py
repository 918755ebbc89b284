"""Tests for stackloop.notify module."""

from unittest.mock import Mock, patch

from stackloop.notify import Notifier


class TestNotifier:
    """Tests for Notifier."""

    def test_no_bin_configured(self):
        """Without notify_bin nothing runs."""
        with patch("subprocess.run") as mock_run:
            assert Notifier(None)("hello") is False
        mock_run.assert_not_called()

    @patch("shutil.which", return_value=None)
    def test_bin_not_installed(self, mock_which):
        """A configured but missing binary is skipped."""
        with patch("subprocess.run") as mock_run:
            assert Notifier("notify-team")("hello") is False
        mock_run.assert_not_called()

    @patch("shutil.which", return_value="/usr/local/bin/notify-team")
    @patch("subprocess.run")
    def test_sends_message_level_task(self, mock_run, mock_which):
        """The command gets message, level and task id."""
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        assert Notifier("notify-team")("Blocked T-1: stuck", "blocked", "T-1") is True
        assert mock_run.call_args[0][0] == ["notify-team", "Blocked T-1: stuck", "blocked", "T-1"]

    @patch("shutil.which", return_value="/usr/local/bin/notify-team")
    @patch("subprocess.run")
    def test_failure_is_not_raised(self, mock_run, mock_which):
        """A failing notify command returns False."""
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="webhook down")
        assert Notifier("notify-team")("hi", "error") is False

    def test_home_relative_bin(self, tmp_path, monkeypatch):
        """A ~/ path is expanded before looking the binary up."""
        monkeypatch.setenv("HOME", str(tmp_path))
        script = tmp_path / "bin" / "notify-me"
        script.parent.mkdir()
        script.write_text("#!/bin/sh\nexit 0\n")
        script.chmod(0o755)

        notifier = Notifier("~/bin/notify-me")

        assert notifier.notify_bin == str(script)
        assert notifier.available
        assert notifier("Paused", "warning") is True
