"""Tests for the health monitor and circuit breaker."""

from unittest.mock import MagicMock, Mock

import pytest

from stackloop.health import HealthMonitor, HealthStatus
from stackloop.state import FailureRecord, MemoryStateStore, OrchestratorState
from stackloop.validation import ValidationResult

PASS = ValidationResult(passed=True, output="ok", returncode=0)
FAIL = ValidationResult(passed=False, output="ModuleNotFoundError: No module named 'x'", returncode=1)


class Clock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def git():
    git = MagicMock()
    git.remote = "origin"
    git.is_dirty.return_value = False
    git.fetch.return_value = Mock(ok=True)
    git.checkout.return_value = Mock(ok=True)
    return git


@pytest.fixture
def monitor(config, git):
    validator = MagicMock()
    validator.run.return_value = PASS
    return HealthMonitor(config, MemoryStateStore(), validator, git, clock=Clock(), notify=MagicMock())


class TestPreflight:
    """Tests for preflight_check."""

    def test_ok_clears_log(self, monitor):
        """A passing check clears earlier failures."""
        monitor.record_failure("old")
        assert monitor.preflight_check() == HealthStatus.OK
        assert monitor.store.load().health_log == []

    def test_heals_after_sync(self, monitor):
        """A failure fixed by a resync is OK."""
        monitor.validator.run.side_effect = [FAIL, PASS]

        assert monitor.preflight_check() == HealthStatus.OK
        monitor.git.fetch.assert_called_once_with("main")
        monitor.git.checkout.assert_called_once_with("origin/main")

    def test_pass_after_failures_resets_count(self, monitor):
        """Three recorded failures are cleared by one passing preflight."""
        for reason in ("pip", "node", "db"):
            monitor.record_failure(reason)
        assert monitor.failure_count() == 3

        assert monitor.preflight_check() == HealthStatus.OK
        assert monitor.failure_count() == 0

    def test_failure_below_ceiling_retries(self, monitor):
        """Failures below the ceiling ask for a retry."""
        monitor.validator.run.return_value = FAIL

        assert monitor.preflight_check() == HealthStatus.RETRY
        assert monitor.failure_count() == 1
        monitor.notify.assert_not_called()

    def test_ceiling_pauses(self, monitor):
        """Reaching max_infra_failures within the hour pauses and notifies."""
        monitor.validator.run.return_value = FAIL

        statuses = [monitor.preflight_check() for _ in range(3)]

        assert statuses == [HealthStatus.RETRY, HealthStatus.RETRY, HealthStatus.PAUSE]
        message, level = monitor.notify.call_args[0]
        assert "3 infrastructure failures" in message
        assert level == "error"


class TestFailureWindow:
    """Tests for the rolling one-hour window."""

    def test_old_failures_pruned(self, config, git):
        """Failures older than an hour do not count."""
        clock = Clock(now=3650.0)
        store = MemoryStateStore(OrchestratorState(health_log=[
            FailureRecord(ts=0.0, reason="a"),
            FailureRecord(ts=100.0, reason="b"),
        ]))
        monitor = HealthMonitor(config, store, MagicMock(), git, clock=clock)

        assert monitor.failure_count() == 1
        assert [r.reason for r in store.load().health_log] == ["b"]


class TestBaselineCheck:
    """Tests for baseline_check."""

    def test_recheckout_after_sync(self, monitor):
        """The task branch is checked out again after a resync."""
        monitor.validator.run.side_effect = [FAIL, PASS]
        recheckout = Mock()

        outcome = monitor.baseline_check("T-1", recheckout)

        assert outcome.ok
        recheckout.assert_called_once()

    def test_failure_records_task(self, monitor):
        """A failing baseline records the task in the reason."""
        monitor.validator.run.return_value = FAIL

        outcome = monitor.baseline_check("T-1", Mock())

        assert outcome.status == HealthStatus.RETRY
        assert outcome.validation is FAIL
        assert monitor.store.load().health_log[-1].reason == "baseline_validation_T-1"

    def test_no_recheckout_when_sync_fails(self, monitor):
        """A failed resync does not touch the task branch."""
        monitor.validator.run.return_value = FAIL
        monitor.git.fetch.return_value = Mock(ok=False)
        recheckout = Mock()

        monitor.baseline_check("T-1", recheckout)

        recheckout.assert_not_called()


class TestSync:
    """Tests for sync_worktree and needs_sync."""

    def test_needs_sync_initially(self, monitor):
        """A worktree never synced needs a sync."""
        assert monitor.needs_sync() is True

    def test_recent_sync(self, monitor):
        """A sync within the interval is fresh."""
        assert monitor.sync_worktree() is True
        assert monitor.needs_sync() is False
        monitor.clock.now += monitor.config.sync_interval_secs + 1
        assert monitor.needs_sync() is True

    def test_dirty_tree_is_stashed(self, monitor):
        """Uncommitted work is stashed, never discarded."""
        monitor.git.is_dirty.return_value = True

        monitor.sync_worktree()

        label = monitor.git.stash_push.call_args[0][0]
        assert label.startswith("orchestrator-sync-")
        monitor.git.reset_hard.assert_not_called()

    def test_fetch_failure(self, monitor):
        """A failed fetch leaves last_sync alone."""
        monitor.git.fetch.return_value = Mock(ok=False)
        assert monitor.sync_worktree() is False
        assert monitor.store.load().last_sync == 0.0
