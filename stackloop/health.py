"""Self-healing health monitor.

Tracks environment-level (not task-level) breakage. Baseline validation
failures are appended to a rolling health log; once the number of failures
within the last hour reaches ``max_infra_failures`` the monitor signals
PAUSE so the loop backs off instead of spinning. Any successful validation
clears the whole log.
"""

import logging
import time
from enum import Enum
from typing import Callable, Optional

from stackloop.config import Config
from stackloop.commands import run_command
from stackloop.git_utils import Git, stash_label
from stackloop.state import HEALTH_LOG_LIMIT, HEALTH_WINDOW_SECS, FailureRecord, StateStore
from stackloop.validation import ValidationResult, Validator

logger = logging.getLogger(__name__)

INSTALL_TIMEOUT = 900


class HealthStatus(str, Enum):
    OK = "ok"
    RETRY = "retry"
    PAUSE = "pause"


class HealthMonitor:
    """Infra-failure circuit breaker with one-shot environment resync.

    Args:
        config: Loop configuration
        store: Persisted state (health log and last-sync time)
        validator: Baseline validation runner
        git: Adapter for the execution repo
        clock: Time source
        notify: Callback for human-facing notifications
    """

    def __init__(
        self,
        config: Config,
        store: StateStore,
        validator: Validator,
        git: Git,
        clock: Callable[[], float] = time.time,
        notify: Optional[Callable[[str, str], None]] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.validator = validator
        self.git = git
        self.clock = clock
        self.notify = notify

    # Failure log

    def record_failure(self, reason: str) -> int:
        """Append a failure record.

        Returns:
            Failure count within the window after recording
        """
        with self.store.transaction() as state:
            state.health_log.append(FailureRecord(ts=self.clock(), reason=reason))
            state.health_log = state.health_log[-HEALTH_LOG_LIMIT:]
        logger.warning("Recorded infra failure: %s", reason)
        return self.failure_count()

    def failure_count(self) -> int:
        """Count failures within the last hour, pruning older records."""
        cutoff = self.clock() - HEALTH_WINDOW_SECS
        with self.store.transaction() as state:
            state.health_log = [r for r in state.health_log if r.ts > cutoff]
            return len(state.health_log)

    def clear(self) -> None:
        with self.store.transaction() as state:
            state.health_log = []

    # Resync

    def needs_sync(self) -> bool:
        last_sync = self.store.load().last_sync
        return last_sync <= 0 or self.clock() - last_sync > self.config.sync_interval_secs

    def sync_worktree(self) -> bool:
        """Move the execution repo onto the latest base and reinstall deps.

        Uncommitted work is stashed first, never discarded.

        Returns:
            True if the repo now sits on the latest base
        """
        base = self.config.base_branch
        logger.info("Syncing worktree to latest %s...", base)

        if self.git.is_dirty():
            self.git.stash_push(stash_label("orchestrator-sync"))

        if not self.git.fetch(base).ok:
            logger.error("Sync failed: could not fetch %s", base)
            return False
        if not self.git.checkout(f"{self.git.remote}/{base}").ok:
            logger.error("Sync failed: could not checkout %s/%s", self.git.remote, base)
            return False

        if self.config.install_cmd:
            logger.info("Installing dependencies: %s", self.config.install_cmd)
            result = run_command(self.config.install_cmd, cwd=self.git.repo, timeout=INSTALL_TIMEOUT)
            if not result.ok:
                logger.warning("Dependency install failed (exit %s)", result.returncode)

        with self.store.transaction() as state:
            state.last_sync = self.clock()
        logger.info("Worktree synced successfully")
        return True

    # Checks

    def _validate_with_heal(self, after_sync: Optional[Callable[[], None]] = None) -> ValidationResult:
        result = self.validator.run()
        if result.passed:
            return result

        logger.warning("Validation failed; attempting self-heal")
        if self.sync_worktree():
            if after_sync is not None:
                after_sync()
            result = self.validator.run()
            if result.passed:
                logger.info("Self-heal successful after sync")
        return result

    def _breaker(self, reason: str) -> HealthStatus:
        count = self.record_failure(reason)
        if count >= self.config.max_infra_failures:
            message = (
                f"Orchestrator paused: {count} infrastructure failures in last hour. "
                "Manual intervention required."
            )
            logger.error(message)
            if self.notify is not None:
                self.notify(message, "error")
            return HealthStatus.PAUSE
        logger.warning("Health check failed (attempt %d/%d)", count, self.config.max_infra_failures)
        return HealthStatus.RETRY

    def preflight_check(self) -> HealthStatus:
        """Validate the environment, resyncing once on failure.

        Returns:
            OK on success, PAUSE once the hourly ceiling is reached, else RETRY
        """
        logger.info("Running pre-flight health check...")
        result = self._validate_with_heal()
        if result.passed:
            self.clear()
            return HealthStatus.OK
        return self._breaker("preflight_validation_failed")

    def baseline_check(self, task_id: str, recheckout: Callable[[], None]) -> "BaselineOutcome":
        """Baseline validation gate for a task.

        Same as :meth:`preflight_check`, but the task branch is checked out
        again after a resync so validation runs against the task's tree.

        Args:
            task_id: Task being prepared (recorded in the failure reason)
            recheckout: Puts the task branch back after a resync

        Returns:
            BaselineOutcome with status and the last validation result
        """
        result = self._validate_with_heal(after_sync=recheckout)
        if result.passed:
            self.clear()
            return BaselineOutcome(HealthStatus.OK, result)
        return BaselineOutcome(self._breaker(f"baseline_validation_{task_id}"), result)


class BaselineOutcome:
    """Status of a baseline check plus the validation that decided it."""

    def __init__(self, status: HealthStatus, validation: ValidationResult) -> None:
        self.status = status
        self.validation = validation

    @property
    def ok(self) -> bool:
        return self.status == HealthStatus.OK
