"""Tests for configuration management."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from stackloop.config import Config, env_overrides, find_config_file, load_config


class TestConfig:
    """Tests for Config model."""

    def test_default_config(self, tmp_path) -> None:
        """Test default configuration values."""
        config = Config(main_repo=tmp_path)
        assert config.base_branch == "main"
        assert config.flavor == "be"
        assert config.validate_cmd == "make fmt"
        assert config.install_cmd is None
        assert config.max_commit_failures == 2
        assert config.checker_conf_threshold == 0.70
        assert config.max_repair_attempts == 1
        assert config.max_infra_failures == 3
        assert config.lock_ttl_secs == 3600
        assert ".beads/" in config.excluded_paths

    def test_fe_flavor_defaults(self, tmp_path) -> None:
        """The fe flavor typechecks with pnpm and installs with a frozen lockfile."""
        config = Config(main_repo=tmp_path, flavor="fe")
        assert config.validate_cmd == "pnpm run typecheck"
        assert config.install_cmd == "pnpm install --frozen-lockfile"

    def test_explicit_validate_cmd_wins(self, tmp_path) -> None:
        """An explicit validation command overrides the flavor default."""
        config = Config(main_repo=tmp_path, flavor="fe", validate_cmd="npm test")
        assert config.validate_cmd == "npm test"

    def test_invalid_flavor(self, tmp_path) -> None:
        """Unknown flavors are rejected."""
        with pytest.raises(ValidationError):
            Config(main_repo=tmp_path, flavor="android")

    def test_exec_repo_defaults_to_main(self, tmp_path) -> None:
        """Without EXEC_REPO the loop works in the main repo."""
        config = Config(main_repo=tmp_path)
        assert config.repo == tmp_path

    def test_exec_repo_override(self, tmp_path) -> None:
        """A separate execution repo is used when set."""
        exec_repo = tmp_path / "wt"
        config = Config(main_repo=tmp_path, exec_repo=exec_repo)
        assert config.repo == exec_repo

    def test_worktrees_dir_default(self, tmp_path) -> None:
        """Worktrees sit beside the main repo by default."""
        main = tmp_path / "app"
        config = Config(main_repo=main)
        assert config.get_worktrees_dir() == tmp_path.resolve() / "app-worktrees"

    def test_backoff_delays(self, tmp_path) -> None:
        """Delays double from the base and are capped."""
        config = Config(main_repo=tmp_path, retry_delay_secs=60, backoff_multiplier=2,
                        max_delay_secs=600, max_agent_retries=10)
        assert config.backoff_delays() == [60, 120, 240, 480, 600, 600, 600, 600, 600]

    def test_backoff_delays_single_attempt(self, tmp_path) -> None:
        """One attempt means no sleeps."""
        config = Config(main_repo=tmp_path, max_agent_retries=1)
        assert config.backoff_delays() == []


class TestEnvOverrides:
    """Tests for environment-variable overrides."""

    def test_collects_known_variables(self) -> None:
        """Known variables map to config fields."""
        overrides = env_overrides({"BASE_BRANCH": "develop", "MAX_REPAIR_ATTEMPTS": "3", "HOME": "/root"})
        assert overrides == {"base_branch": "develop", "max_repair_attempts": "3"}

    def test_empty_values_ignored(self) -> None:
        """Empty variables do not override."""
        assert env_overrides({"VALIDATE_CMD": ""}) == {}


class TestLoadConfig:
    """Tests for load_config and find_config_file."""

    def test_no_file_uses_defaults(self, tmp_path) -> None:
        """No config file and no environment gives defaults."""
        config = load_config(tmp_path, environ={})
        assert config.base_branch == "main"

    def test_find_config_file_walks_up(self, tmp_path) -> None:
        """The config file is found from a nested directory."""
        (tmp_path / ".stackloop.yaml").write_text("base_branch: trunk\n")
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config_file(nested) == (tmp_path / ".stackloop.yaml").resolve()

    def test_yaml_file_loaded(self, tmp_path) -> None:
        """Values from .stackloop.yaml are applied, main_repo defaults to its directory."""
        (tmp_path / ".stackloop.yaml").write_text(
            yaml.dump({"base_branch": "trunk", "enable_reviewer": False, "min_lines_for_review": 10})
        )
        config = load_config(tmp_path, environ={})
        assert config.base_branch == "trunk"
        assert config.enable_reviewer is False
        assert config.min_lines_for_review == 10
        assert Path(config.main_repo) == tmp_path.resolve()

    def test_environment_beats_file(self, tmp_path) -> None:
        """Environment variables override the config file."""
        (tmp_path / ".stackloop.yaml").write_text("base_branch: trunk\n")
        config = load_config(tmp_path, environ={"BASE_BRANCH": "release", "ENABLE_CHECKER": "0"})
        assert config.base_branch == "release"
        assert config.enable_checker is False

    def test_numeric_environment_values_coerced(self, tmp_path) -> None:
        """String environment values are coerced to the field types."""
        config = load_config(tmp_path, environ={"CHECKER_CONF_THRESHOLD": "0.85", "SLEEP_SECS": "30"})
        assert config.checker_conf_threshold == 0.85
        assert config.sleep_secs == 30

    def test_invalid_environment_value(self, tmp_path) -> None:
        """A non-numeric value for a numeric field fails validation."""
        with pytest.raises(ValidationError):
            load_config(tmp_path, environ={"MAX_REPAIR_ATTEMPTS": "lots"})
