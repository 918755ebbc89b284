"""Tests for stackloop.preflight module."""

from unittest.mock import Mock, patch

from stackloop.preflight import (
    AgentCliCheck,
    BeadsDatabaseCheck,
    GitRepoCheck,
    PreflightCheck,
    PreflightRegistry,
    PreflightResult,
    ToolCheck,
    ValidateCommandCheck,
    get_default_registry,
)


class TestPreflightResult:
    """Tests for PreflightResult dataclass."""

    def test_preflight_result_failure(self):
        """PreflightResult should represent a failed check."""
        result = PreflightResult(name="gt", passed=False, message="gt not found", fix_hint="Install gt")

        assert result.passed is False
        assert result.fix_hint == "Install gt"


class TestPreflightRegistry:
    """Tests for PreflightRegistry."""

    def test_run_all_continues_after_crash(self):
        """A crashing check is reported as a failure and the rest still run."""

        class Boom(PreflightCheck):
            name = "boom"

            def check(self):
                raise RuntimeError("kaboom")

        class Fine(PreflightCheck):
            name = "fine"

            def check(self):
                return PreflightResult(name=self.name, passed=True, message="OK")

        registry = PreflightRegistry()
        registry.register(Boom())
        registry.register(Fine())

        results = registry.run_all()

        assert [r.passed for r in results] == [False, True]
        assert results[0].message == "Check error: kaboom"

    def test_default_registry(self, config):
        """The default registry covers every tool the loop drives."""
        names = [check.name for check in get_default_registry(config).checks]
        assert names == ["git", "git_repo", "gt", "bd", "beads_db", "agent_cli", "validate_cmd"]


class TestToolCheck:
    """Tests for ToolCheck."""

    @patch("shutil.which", return_value=None)
    def test_missing(self, mock_which):
        """A tool not on PATH fails with a hint."""
        result = ToolCheck("gt", fix_hint="Install Graphite").check()
        assert result.passed is False
        assert result.fix_hint == "Install Graphite"

    @patch("shutil.which", return_value="/usr/bin/git")
    @patch("subprocess.run")
    def test_present(self, mock_run, mock_which):
        """A working tool passes with its version line."""
        mock_run.return_value = Mock(returncode=0, stdout="git version 2.44.0\n", stderr="")

        result = ToolCheck("git").check()

        assert result.passed is True
        assert result.message == "git available: git version 2.44.0"
        assert mock_run.call_args[0][0] == ["/usr/bin/git", "--version"]

    @patch("shutil.which", return_value="/usr/bin/bd")
    @patch("subprocess.run")
    def test_broken(self, mock_run, mock_which):
        """A tool that errors fails."""
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="segfault")
        assert ToolCheck("bd").check().passed is False


class TestRepoChecks:
    """Tests for repository checks."""

    def test_missing_repo(self, tmp_path):
        """A missing directory fails."""
        assert GitRepoCheck(tmp_path / "nope").check().passed is False

    @patch("subprocess.run")
    def test_git_repo(self, mock_run, tmp_path):
        """A git working tree passes."""
        mock_run.return_value = Mock(returncode=0, stdout="true\n", stderr="")
        assert GitRepoCheck(tmp_path).check().passed is True

    @patch("subprocess.run")
    def test_not_git_repo(self, mock_run, tmp_path):
        """A plain directory fails."""
        mock_run.return_value = Mock(returncode=128, stdout="", stderr="fatal: not a git repository")
        assert GitRepoCheck(tmp_path).check().passed is False

    def test_beads_database(self, tmp_path):
        """The main repo needs a .beads directory."""
        assert BeadsDatabaseCheck(tmp_path).check().passed is False
        (tmp_path / ".beads").mkdir()
        assert BeadsDatabaseCheck(tmp_path).check().passed is True


class TestValidateCommandCheck:
    """Tests for ValidateCommandCheck."""

    @patch("shutil.which", return_value="/usr/bin/make")
    def test_program_found(self, mock_which):
        """The first word of the command must be installed."""
        assert ValidateCommandCheck("make fmt && make test").check().passed is True
        mock_which.assert_called_once_with("make")

    @patch("shutil.which", return_value=None)
    def test_program_missing(self, mock_which):
        """A missing program fails with a hint."""
        result = ValidateCommandCheck("pnpm run typecheck").check()
        assert result.passed is False
        assert "pnpm" in result.message

    def test_empty(self):
        """An empty command fails."""
        assert ValidateCommandCheck("").check().passed is False


class TestAgentCliCheck:
    """Tests for AgentCliCheck."""

    def test_configured_bin(self, config):
        """An explicit binary passes."""
        config.agent_cli = "cursor"
        config.cursor_bin = "/opt/cursor-agent"
        result = AgentCliCheck(config).check()
        assert result.passed is True
        assert "/opt/cursor-agent" in result.message

    def test_not_found(self, config):
        """No agent CLI anywhere fails."""
        with patch("stackloop.agent._first_executable", return_value=None):
            assert AgentCliCheck(config).check().passed is False
