"""The orchestration loop.

:class:`Orchestrator` takes one task at a time through the lifecycle in
:mod:`stackloop.state_machine`. Each state has a step handler that does the
work and fires the next trigger. Handlers that hit an unexpected external
failure raise :class:`StepFailure`; the loop classifies it, runs the
allowlisted remediation and then retries the step, skips ahead, or ends the
task.

Guarantees the loop keeps:

- a task is closed at most once, and only with a confirmed PR
- every BLOCKED task gets a human-readable reason in its notes
- the current-task marker is written before any mutating step, so a crash
  resumes the same task instead of picking a new one
"""

import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from stackloop.agent import AgentBlocked, AgentCli, AgentError, AgentErrorKind, AgentHarness, AgentOutcome
from stackloop.beads import Beads, Task, TaskStatus, TrackerError
from stackloop.branches import BranchManager
from stackloop.classifier import Classifier, default_classifier
from stackloop.commands import CommandError
from stackloop.config import Config
from stackloop.context import ContextCollector
from stackloop.git_utils import Git, stash_label
from stackloop.graphite import Graphite, GraphiteError
from stackloop.health import HealthMonitor, HealthStatus
from stackloop.notify import Notifier
from stackloop.preview import PreviewServer
from stackloop.prompts import build_implementer_prompt, build_repair_prompt, build_review_fix_prompt
from stackloop.reconcile import ReconcileAction, Reconciler
from stackloop.remediation import RemediationExecutor
from stackloop.resolver import Resolver
from stackloop.review import Checker, CheckResult, Reviewer
from stackloop.state import FileStateStore, StateStore, WorkTreeLock
from stackloop.state_machine import (
    BLOCKED,
    CHECK,
    CLOSE,
    DONE,
    IMPLEMENT,
    PAUSED,
    PICK_TASK,
    PREPARE_BRANCH,
    REPAIR,
    REVIEW,
    SKIPPED,
    SUBMIT,
    VALIDATE_POST,
    VALIDATE_PRE,
    TaskStateMachine,
)
from stackloop.validation import ValidationResult, Validator

logger = logging.getLogger(__name__)

NO_CHANGES_REASON = (
    "Agent produced no changes. Likely underspecified. "
    "Add clearer acceptance criteria or examples."
)


class StepFailure(Exception):
    """An external failure inside a step handler.

    Args:
        step: State the failure happened in
        message: Short description
        exit_code: Exit code of the failing command
        output: Its combined output, fed to the classifier
    """

    def __init__(self, step: str, message: str, exit_code: int = 1, output: str = "") -> None:
        self.step = step
        self.exit_code = exit_code
        self.output = output or message
        super().__init__(message)


@dataclass
class TaskRun:
    """Working state of one task inside one iteration."""

    task: Task
    machine: TaskStateMachine
    resumed: bool = False
    epic: Optional[Task] = None
    branch: str = ""
    parent: Optional[str] = None
    baseline: Optional[str] = None
    validated: bool = False
    pr_number: Optional[int] = None
    pr_existed: bool = False
    repair_attempts: int = 0
    last_check: Optional[CheckResult] = None
    step_retries: Dict[str, int] = field(default_factory=dict)
    reason: str = ""

    @property
    def state(self) -> str:
        return self.machine.current_state


@dataclass
class IterationResult:
    """What one pass of the loop did."""

    task_id: Optional[str]
    state: str
    reason: str = ""

    @property
    def idle(self) -> bool:
        return self.task_id is None

    @property
    def paused(self) -> bool:
        return self.state == PAUSED


class Orchestrator:
    """Drives tasks through the lifecycle.

    All collaborators are injected; :meth:`from_config` wires the real ones.

    Args:
        config: Loop configuration
        tracker: Issue-tracker adapter (main repo)
        git: Adapter for the execution repo
        graphite: Stacked-branch adapter for the execution repo
        harness: Agent harness
        store: Persisted state
        validator: Validation command runner
        notify: Callback taking (message, level, task_id)
        preview: Optional preview server stopped on shutdown
        classifier: Failure classifier (default: heuristics, then model)
        sleep: Sleep function (injected by tests)
        clock: Time source
    """

    def __init__(
        self,
        config: Config,
        tracker: Beads,
        git: Git,
        graphite: Graphite,
        harness: AgentHarness,
        store: StateStore,
        validator: Validator,
        notify: Optional[Callable[..., object]] = None,
        preview: Optional[PreviewServer] = None,
        classifier: Optional[Classifier] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.tracker = tracker
        self.git = git
        self.graphite = graphite
        self.harness = harness
        self.store = store
        self.validator = validator
        self.notify = notify or (lambda message, level="info", task_id=None: None)
        self.preview = preview
        self.sleep = sleep
        self.clock = clock

        self.resolver = Resolver(tracker, git, max_depth=config.epic_max_depth)
        self.branches = BranchManager(git, graphite, config.base_branch)
        self.reconciler = Reconciler(tracker, git, graphite, self.branches, config.excluded_paths)
        self.health = HealthMonitor(config, store, validator, git, clock=clock, notify=self.notify)
        self.classifier = classifier or default_classifier(harness, config.classifier_model)
        self.remediation = RemediationExecutor(
            git, graphite, tracker, config,
            confirm_pr=self._confirmed_pr, sleep=sleep, notify=self.notify,
        )
        self.context = ContextCollector(tracker, git, graphite, config.base_branch)
        self.reviewer = Reviewer(harness, git, config)
        self.checker = Checker(harness, git, config)
        self.lock = WorkTreeLock(store, ttl_secs=config.lock_ttl_secs, clock=clock)

        self.handlers: Dict[str, Callable[[TaskRun], None]] = {
            PICK_TASK: self.step_pick_task,
            PREPARE_BRANCH: self.step_prepare_branch,
            VALIDATE_PRE: self.step_validate_pre,
            IMPLEMENT: self.step_implement,
            VALIDATE_POST: self.step_validate_post,
            REVIEW: self.step_review,
            CHECK: self.step_check,
            REPAIR: self.step_repair,
            SUBMIT: self.step_submit,
            CLOSE: self.step_close,
        }

    @classmethod
    def from_config(cls, config: Config, sleep: Callable[[float], None] = time.sleep) -> "Orchestrator":
        """Build an orchestrator over the real tools."""
        repo = config.repo
        preview = None
        if config.enable_preview and config.preview_cmd:
            preview = PreviewServer(
                config.preview_cmd, config.preview_url, repo,
                log_path=config.state_dir / "preview.log", sleep=sleep,
            )
        return cls(
            config=config,
            tracker=Beads(config.main_repo, actor=config.beads_actor),
            git=Git(repo),
            graphite=Graphite(repo),
            harness=AgentHarness(AgentCli(config, cwd=repo), config, sleep=sleep),
            store=FileStateStore.for_worktree(config.state_dir, repo),
            validator=Validator(config.validate_cmd or "", repo),
            notify=Notifier(config.notify_bin),
            preview=preview,
            sleep=sleep,
        )

    # Helpers

    def _confirmed_pr(self, task_id: str) -> Optional[int]:
        task = self.tracker.show(task_id)
        if task is None:
            return self.graphite.find_pr_number(task_id)
        return self.reconciler.find_pr(task)

    def _set_marker(self, task_id: Optional[str]) -> None:
        with self.store.transaction() as state:
            state.current_task = task_id

    def _record_fail(self, task_id: str) -> None:
        with self.store.transaction() as state:
            state.record_fail(task_id)

    def _clear_fail(self, task_id: str) -> None:
        with self.store.transaction() as state:
            state.clear_fail(task_id)

    def _block(self, run: TaskRun, reason: str) -> None:
        """Write the reason onto the task, then end the lifecycle BLOCKED."""
        task_id = run.task.id
        logger.error("BLOCK %s: %s", task_id, reason.splitlines()[0] if reason else "")
        if not self.tracker.mark_blocked(task_id, reason):
            logger.warning("Could not write block reason for %s", task_id)
        self.notify(f"Blocked {task_id}: {reason[:300]}", "blocked", task_id)
        run.reason = reason
        run.machine.fire("block")

    def _skip(self, run: TaskRun, reason: str, reopen: bool = False) -> None:
        """End the lifecycle SKIPPED; reopen puts the task back in the queue."""
        task_id = run.task.id
        logger.warning("SKIP %s: %s", task_id, reason)
        if reopen:
            self.tracker.update(task_id, status=TaskStatus.OPEN)
        self.tracker.record_run(task_id, "skip", "skipped", reason[:500])
        run.reason = reason
        run.machine.fire("skip")

    def _stash_and_block(self, run: TaskRun, prefix: str, reason: str) -> None:
        self.git.stash_push(stash_label(prefix, run.task.id))
        self._block(run, reason)

    def _stage(self, step: str) -> None:
        try:
            self.git.stage_all(self.config.excluded_paths)
        except CommandError as e:
            raise StepFailure(step, "git add failed", e.returncode, e.output) from e

    def _diff_base(self, run: TaskRun) -> str:
        return run.baseline or "HEAD"

    def _agent_failure(self, step: str, outcome: AgentError) -> StepFailure:
        return StepFailure(
            step, f"Agent failed ({outcome.kind.value}, exit {outcome.exit_code})",
            outcome.exit_code, outcome.output,
        )

    def _invoke_implementer(self, run: TaskRun, step: str, prompt: str) -> Optional[AgentOutcome]:
        """Run the implementer.

        A blocked report blocks the task. Exhausted transient retries skip
        the task and put it back in the queue without counting a failure.

        Returns:
            The outcome, or None if the task was blocked or skipped

        Raises:
            StepFailure: If the agent failed
        """
        outcome = self.harness.invoke(self.config.implementer_model, prompt)
        if isinstance(outcome, AgentBlocked):
            self._block(run, f"Agent blocked: {outcome.summary()}")
            return None
        if isinstance(outcome, AgentError) and outcome.kind == AgentErrorKind.TRANSIENT:
            self._skip(run, f"Agent unavailable after retries (exit {outcome.exit_code}); will retry later",
                       reopen=True)
            return None
        if isinstance(outcome, AgentError):
            raise self._agent_failure(step, outcome)
        return outcome

    def _validate_or_block(self, run: TaskRun, prefix: str, label: str) -> Optional[ValidationResult]:
        result = self.validator.run()
        if result.passed:
            run.validated = True
            return result
        self._stash_and_block(run, prefix, f"{label} Changes stashed. Tail:\n{result.tail}")
        return None

    def count_changes(self, run: TaskRun) -> int:
        """Uncommitted paths plus commits made since the baseline."""
        changes = len(self.git.uncommitted_files(self.config.excluded_paths))
        if run.baseline:
            changes += self.git.commits_ahead(run.baseline)
        return changes

    # Step handlers

    def step_pick_task(self, run: TaskRun) -> None:
        task = run.task
        fails = self.store.load().fail_count(task.id)
        if fails >= self.config.max_commit_failures:
            self._block(
                run, f"Exceeded failure threshold ({self.config.max_commit_failures}). Needs manual review."
            )
            return

        status = self.reconciler.task_status(task)
        if not status.is_continue:
            self._skip(run, status.reason)
            return

        run.epic = self.resolver.resolve_epic(task)
        logger.info("TASK %s (%s) epic=%s", task.id, task.title, run.epic.id if run.epic else "-")

        self._set_marker(task.id)

        pr = self.reconciler.pr_reconcile(task)
        if pr.action == ReconcileAction.CLOSE:
            run.pr_number = pr.pr_number
            run.pr_existed = True
            logger.info("PR #%s already exists for %s", run.pr_number, task.id)
            run.machine.fire("close_existing")
            return

        self.tracker.mark_in_progress(task.id)
        self.tracker.record_run(task.id, "pick", "started", "resumed" if run.resumed else "")
        run.machine.fire("advance")

    def step_prepare_branch(self, run: TaskRun) -> None:
        task = run.task
        result = self.branches.prepare_branch(task, run.epic)
        if not result.success:
            self._block(run, result.error)
            return

        run.branch = result.branch
        run.parent = result.parent
        if task.branch_ref != result.branch:
            self.tracker.set_branch_ref(task.id, result.branch)

        if result.reused:
            tracking = self.reconciler.graphite_reconcile()
            if not tracking.is_continue:
                self.reconciler.apply_reconciliation(tracking, task)
            work = self.reconciler.work_reconcile(result.branch, run.parent or self.config.base_branch)
            if work.action == ReconcileAction.SUBMIT:
                logger.info("Resuming %s: %s; skipping to submit", task.id, work.reason)
                self.tracker.record_run(task.id, "resume", "submit", work.reason)
                run.machine.fire("skip_to_submit")
                return

        run.machine.fire("advance")

    def step_validate_pre(self, run: TaskRun) -> None:
        outcome = self.health.baseline_check(run.task.id, recheckout=lambda: self.branches.checkout(run.branch))
        if outcome.ok:
            run.machine.fire("advance")
            return

        if outcome.status == HealthStatus.PAUSE:
            run.reason = "Baseline validation failing repeatedly; loop paused"
            self.tracker.record_run(run.task.id, "validate_pre", "paused", run.reason)
            self.notify(
                f"Orchestrator: baseline validation failing repeatedly. "
                f"Infrastructure issue, not blocking {run.task.id}.",
                "warning", run.task.id,
            )
            run.machine.fire("pause")
            return

        self._skip(run, "Baseline validation failed (infrastructure); task not blocked", reopen=True)

    def step_implement(self, run: TaskRun) -> None:
        task = run.task
        run.baseline = self.git.head_sha()
        prompt = build_implementer_prompt(task, run.branch, self.config.validate_cmd, self.config.excluded_paths)
        logger.info("IMPLEMENT %s with %s", task.id, self.config.implementer_model)
        if self._invoke_implementer(run, IMPLEMENT, prompt) is None:
            return

        if self.count_changes(run) == 0:
            self._block(run, NO_CHANGES_REASON)
            return
        run.machine.fire("advance")

    def step_validate_post(self, run: TaskRun) -> None:
        if self._validate_or_block(run, "validate-failed", "Post-change validation failed.") is None:
            return
        run.machine.fire("advance")

    def step_review(self, run: TaskRun) -> None:
        task = run.task
        base = self._diff_base(run)
        self._stage(REVIEW)
        if not self.reviewer.should_review(base):
            run.machine.fire("advance")
            return

        attempts = max(1, self.config.max_review_fix_attempts)
        review = None
        for attempt in range(1, attempts + 1):
            review = self.reviewer.review(task, base)
            if review.passed:
                logger.info("Reviewer approved %s (attempt %d)", task.id, attempt)
                break
            logger.warning("Reviewer found issues (attempt %d): %s", attempt, review.summary)
            if attempt >= attempts or not self.config.reviewer_can_fix:
                break

            if self._invoke_implementer(run, REVIEW, build_review_fix_prompt(task, review)) is None:
                return
            self._stage(REVIEW)
            if self._validate_or_block(
                run, "review-validate-failed", "Validation failed after reviewer fix."
            ) is None:
                return

        if review is None or not review.passed:
            issues = review.issues_text() if review else ""
            summary = issues or (review.summary if review else "")
            self._block(run, f"Clean reviewer did not approve after {attempt} attempts. Issues: {summary}")
            return
        self.tracker.record_run(task.id, "review", "approved", review.summary[:200])
        run.machine.fire("advance")

    def step_check(self, run: TaskRun) -> None:
        if not self.config.enable_checker:
            run.machine.fire("advance")
            return

        self._stage(CHECK)
        check = self.checker.check(run.task, self._diff_base(run))
        run.last_check = check
        if check.passes(self.checker.threshold):
            run.machine.fire("advance")
            return

        if run.repair_attempts < self.config.max_repair_attempts:
            logger.info("Checker not satisfied; repair %d/%d",
                        run.repair_attempts + 1, self.config.max_repair_attempts)
            run.machine.fire("repair")
            return

        self._block(
            run,
            f"Checker did not confirm completeness (complete={str(check.complete).lower()} "
            f"conf={check.confidence}). JSON: {check.model_dump_json()}",
        )

    def step_repair(self, run: TaskRun) -> None:
        run.repair_attempts += 1
        check = run.last_check or CheckResult()
        if self._invoke_implementer(run, REPAIR, build_repair_prompt(run.task, check)) is None:
            return
        if self._validate_or_block(run, "repair-validate-failed", "Validation failed after repair.") is None:
            return
        run.machine.fire("advance")

    def step_submit(self, run: TaskRun) -> None:
        task = run.task
        if self.git.uncommitted_files(self.config.excluded_paths):
            if not run.validated and self._validate_or_block(
                run, "validate-failed", "Pre-submit validation failed."
            ) is None:
                return
            self._stage(SUBMIT)
            modify = self.graphite.modify(f"[{task.id}] {task.title}")
            if not modify.ok:
                self._record_fail(task.id)
                raise StepFailure(SUBMIT, "gt modify failed", modify.returncode, modify.output)

        pr_number = self.reconciler.find_pr(task)
        if pr_number is None:
            try:
                pr_number = self.graphite.submit_pr()
            except GraphiteError as e:
                self._record_fail(task.id)
                pr_number = self.graphite.find_pr_number(task.id)
                if pr_number is None:
                    if e.result is not None and e.result.ok:
                        self._block(run, "PR submitted but PR number not captured")
                        return
                    code = e.result.returncode if e.result is not None else 1
                    raise StepFailure(SUBMIT, "gt submit failed", code, e.output) from e

        run.pr_number = pr_number
        self.tracker.set_pr_ref(task.id, pr_number)
        self.tracker.record_run(task.id, "submit", "success", f"PR #{pr_number}")
        logger.info("Submitted %s as PR #%s", task.id, pr_number)
        run.machine.fire("advance")

    def step_close(self, run: TaskRun) -> None:
        task = run.task
        current = self.tracker.show(task.id)
        if current is not None and current.status == TaskStatus.CLOSED:
            logger.info("%s is already closed; not closing again", task.id)
            self._clear_fail(task.id)
            run.machine.fire("advance")
            return

        pr_number = run.pr_number if run.pr_number is not None else self.reconciler.find_pr(task)
        if pr_number is None:
            self._block(run, "Refusing to close without a confirmed PR")
            return

        prefix = "Already completed" if run.pr_existed else "Completed"
        reason = f"{prefix} in PR #{pr_number}"
        try:
            self.tracker.close_task(task.id, reason)
        except TrackerError as e:
            raise StepFailure(CLOSE, "bd close failed", 1, str(e)) from e
        self._clear_fail(task.id)
        self.notify(f"Closed {task.id}: {reason}", "info", task.id)
        run.reason = reason
        run.machine.fire("advance")

    # Failure handling

    def handle_step_failure(self, run: TaskRun, failure: StepFailure) -> None:
        """Classify a step failure, remediate, and decide what happens next."""
        step = failure.step
        logger.warning("%s failed for %s: %s", step, run.task.id, failure)
        try:
            context = self.context.collect(run.task, run.epic)
        except (CommandError, TrackerError) as e:
            logger.warning("Could not collect failure context: %s", e)
            context = {}

        handled = self.remediation.handle_failure(
            self.classifier, step, failure.exit_code, failure.output, run.task.id, context
        )
        classification, remedy = handled.classification, handled.remediation
        label = classification.failure_class.value
        tail = "\n".join(failure.output.rstrip().splitlines()[-40:])

        if classification.needs_human:
            message = classification.human_message or classification.diagnosis or str(failure)
            self._block(run, f"{step} failed ({label}): {message}. Tail:\n{tail}")
            return

        if remedy.skip_to == "close" and run.state != CLOSE:
            run.pr_number = self._confirmed_pr(run.task.id)
            run.pr_existed = True
            run.machine.fire("close_existing")
            return

        if remedy.should_block or not remedy.success:
            message = classification.human_message or classification.diagnosis or str(failure)
            self._block(run, f"{step} failed ({label}): {message}. Tail:\n{tail}")
            return

        if remedy.skip_to == "submit" and run.machine.can_transition_to(SUBMIT):
            run.machine.fire("skip_to_submit")
            return

        if remedy.should_retry or remedy.skip_to or classification.retryable:
            retries = run.step_retries.get(step, 0) + 1
            run.step_retries[step] = retries
            if retries <= self.config.max_step_retries:
                logger.info("Retrying %s (%d/%d) after %s", step, retries, self.config.max_step_retries, label)
                return
            if classification.retryable:
                self._skip(run, f"{step} kept failing with {label}; will retry later", reopen=True)
            else:
                self._block(run, f"{step} failed after {retries - 1} retries ({label}). Tail:\n{tail}")
            return

        self._block(run, f"{step} failed ({label}): {classification.diagnosis or failure}. Tail:\n{tail}")

    # Loop

    def run_task(self, task: Task, resumed: bool = False) -> TaskRun:
        """Take one task through the lifecycle until a terminal state."""
        run = TaskRun(task=task, machine=TaskStateMachine(), resumed=resumed)
        while not run.machine.is_terminal():
            state = run.machine.current_state
            try:
                self.handlers[state](run)
            except CommandError as e:
                self.handle_step_failure(run, StepFailure(state, str(e), e.returncode, e.output))
            except StepFailure as failure:
                self.handle_step_failure(run, failure)
        logger.info("Task %s finished in %s %s", task.id, run.state, run.reason)
        return run

    def _resume_task(self) -> Optional[Task]:
        marker = self.store.load().current_task
        if not marker:
            return None
        task = self.tracker.show(marker)
        if task is None:
            logger.warning("Current-task marker points at unknown task %s; clearing", marker)
            self._set_marker(None)
            return None
        logger.info("Resuming interrupted task %s", marker)
        return task

    def run_once(self) -> IterationResult:
        """One iteration: resume or pick a task, run it, tidy up.

        Returns:
            IterationResult; idle when no task was ready
        """
        task = self._resume_task()
        resumed = task is not None
        if task is None:
            # Never resync underneath an interrupted task's work
            if self.health.needs_sync() and not self.git.is_dirty(self.config.excluded_paths):
                self.health.sync_worktree()
            task = self.resolver.next_task()
        if task is None:
            logger.info("No ready tasks")
            if self.config.auto_close_epics:
                self.resolver.maybe_close_epics()
            return IterationResult(None, "idle")

        run = self.run_task(task, resumed=resumed)
        if run.state != PAUSED:
            self._set_marker(None)
        if run.state in (DONE, BLOCKED, SKIPPED) and self.config.auto_close_epics:
            self.resolver.maybe_close_epics()
        return IterationResult(task.id, run.state, run.reason)

    def shutdown(self, clear_marker: bool = True) -> None:
        """Stop the preview server and release the lock and marker."""
        if self.preview is not None:
            self.preview.stop()
        self.lock.release(clear_marker=clear_marker)

    def _handle_signal(self, signum: int, frame: object) -> None:
        logger.warning("Received signal %s; shutting down", signum)
        self.shutdown(clear_marker=True)
        sys.exit(0)

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def run_forever(self, once: bool = False, max_iterations: Optional[int] = None) -> int:
        """Main loop.

        Args:
            once: Run a single iteration and return
            max_iterations: Stop after this many iterations (None: forever)

        Returns:
            Process exit code (1 if another orchestrator holds the lock)
        """
        if not self.lock.acquire():
            holder = self.lock.holder()
            logger.error("Another orchestrator holds the lock (pid %s)", holder.pid if holder else "?")
            return 1

        try:
            if self.health.preflight_check() == HealthStatus.PAUSE:
                logger.error("Startup health check paused the loop")
                if once:
                    return 1
                self.sleep(self.config.sleep_secs * 10)
            if self.preview is not None and not self.preview.start():
                logger.warning("Preview server unavailable; continuing without it")

            iterations = 0
            while True:
                self.lock.acquire()
                result = self.run_once()
                iterations += 1
                if once or (max_iterations is not None and iterations >= max_iterations):
                    break
                if result.idle:
                    self.sleep(self.config.sleep_secs)
                elif result.paused:
                    self.sleep(self.config.sleep_secs * 5)
            return 0
        finally:
            if self.preview is not None:
                self.preview.stop()
            self.lock.release()
