"""Persisted orchestrator state.

Everything the loop must remember across restarts lives in one
:class:`OrchestratorState`: the working-tree lock, the current-task marker,
per-task failure counters, the infra-failure health log and the time of the
last environment resync. A :class:`StateStore` loads and saves it;
:class:`FileStateStore` keeps line-oriented files under a per-worktree
directory, :class:`MemoryStateStore` keeps it in memory for tests.
"""

import hashlib
import logging
import os
import re
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional

from filelock import FileLock

logger = logging.getLogger(__name__)

# Seconds a failure record counts toward the infra-failure threshold
HEALTH_WINDOW_SECS = 3600
# Newest records kept in the health log
HEALTH_LOG_LIMIT = 20

# Lock timeout in seconds - prevents deadlocks if a process crashes while holding lock
_LOCK_TIMEOUT = 5.0


@dataclass
class LockToken:
    """Holder of the working-tree lock."""

    pid: int
    acquired_at: float

    def serialize(self) -> str:
        return f"{self.pid} {int(self.acquired_at)}"

    @classmethod
    def parse(cls, raw: str, fallback_time: float = 0.0) -> Optional["LockToken"]:
        """Parse "<pid> <epoch>" (or a bare pid, using fallback_time)."""
        parts = raw.split()
        if not parts:
            return None
        try:
            pid = int(parts[0])
            acquired_at = float(parts[1]) if len(parts) > 1 else fallback_time
        except ValueError:
            return None
        return cls(pid=pid, acquired_at=acquired_at)


@dataclass
class FailureRecord:
    """One infra failure in the health log."""

    ts: float
    reason: str

    def serialize(self) -> str:
        return f"{int(self.ts)}:{self.reason}"

    @classmethod
    def parse(cls, line: str) -> Optional["FailureRecord"]:
        ts, _, reason = line.partition(":")
        try:
            return cls(ts=float(ts), reason=reason)
        except ValueError:
            return None


@dataclass
class OrchestratorState:
    """All state the loop persists between iterations and restarts."""

    lock: Optional[LockToken] = None
    current_task: Optional[str] = None
    failed_tasks: List[str] = field(default_factory=list)
    health_log: List[FailureRecord] = field(default_factory=list)
    last_sync: float = 0.0

    def fail_count(self, task_id: str) -> int:
        return self.failed_tasks.count(task_id)

    def record_fail(self, task_id: str) -> None:
        self.failed_tasks.append(task_id)

    def clear_fail(self, task_id: str) -> None:
        self.failed_tasks = [t for t in self.failed_tasks if t != task_id]

    def failure_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for task_id in self.failed_tasks:
            counts[task_id] = counts.get(task_id, 0) + 1
        return counts


class StateStore(ABC):
    """Loads and saves :class:`OrchestratorState`."""

    @abstractmethod
    def load(self) -> OrchestratorState:
        """Read the current state."""

    @abstractmethod
    def save(self, state: OrchestratorState) -> None:
        """Persist the full state."""

    @contextmanager
    def transaction(self) -> Generator[OrchestratorState, None, None]:
        """Load, yield for mutation, then save.

        Example:
            with store.transaction() as state:
                state.record_fail("T1")
        """
        state = self.load()
        yield state
        self.save(state)


class MemoryStateStore(StateStore):
    """In-memory store for tests and dry runs."""

    def __init__(self, state: Optional[OrchestratorState] = None) -> None:
        self._state = state or OrchestratorState()

    def load(self) -> OrchestratorState:
        return replace(
            self._state,
            failed_tasks=list(self._state.failed_tasks),
            health_log=list(self._state.health_log),
        )

    def save(self, state: OrchestratorState) -> None:
        self._state = replace(
            state,
            failed_tasks=list(state.failed_tasks),
            health_log=list(state.health_log),
        )


def state_dir_for(base_dir: Path, worktree: Path) -> Path:
    """Directory holding state for one working tree.

    The key combines the tree's directory name with a hash of its absolute
    path so two checkouts with the same name never share a lock.
    """
    resolved = str(Path(worktree).resolve())
    digest = hashlib.sha1(resolved.encode()).hexdigest()[:12]
    name = re.sub(r"[^A-Za-z0-9._-]", "-", Path(resolved).name) or "root"
    return Path(base_dir) / f"{name}-{digest}"


def _write_atomic(path: Path, content: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(content)
    os.replace(tmp, path)


class FileStateStore(StateStore):
    """Line-oriented files under a per-worktree state directory.

    Files:
        lock: "<pid> <epoch>"
        current-task: task id being worked on
        failed-tasks: one task id per recorded failure
        health: "<epoch>:<reason>" per infra failure
        last-sync: epoch of the last environment resync
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    @classmethod
    def for_worktree(cls, base_dir: Path, worktree: Path) -> "FileStateStore":
        return cls(state_dir_for(base_dir, worktree))

    @property
    def lock_path(self) -> Path:
        return self.directory / "lock"

    @property
    def current_task_path(self) -> Path:
        return self.directory / "current-task"

    @property
    def failed_tasks_path(self) -> Path:
        return self.directory / "failed-tasks"

    @property
    def health_path(self) -> Path:
        return self.directory / "health"

    @property
    def last_sync_path(self) -> Path:
        return self.directory / "last-sync"

    def _read(self, path: Path) -> str:
        try:
            return path.read_text()
        except FileNotFoundError:
            return ""

    def load(self) -> OrchestratorState:
        state = OrchestratorState()

        raw_lock = self._read(self.lock_path).strip()
        if raw_lock:
            mtime = self.lock_path.stat().st_mtime if self.lock_path.exists() else 0.0
            state.lock = LockToken.parse(raw_lock, fallback_time=mtime)

        state.current_task = self._read(self.current_task_path).strip() or None
        state.failed_tasks = [
            line.strip() for line in self._read(self.failed_tasks_path).splitlines() if line.strip()
        ]
        for line in self._read(self.health_path).splitlines():
            record = FailureRecord.parse(line.strip())
            if record is not None:
                state.health_log.append(record)
        try:
            state.last_sync = float(self._read(self.last_sync_path).strip() or 0)
        except ValueError:
            state.last_sync = 0.0
        return state

    def save(self, state: OrchestratorState) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

        if state.lock is None:
            self.lock_path.unlink(missing_ok=True)
        else:
            _write_atomic(self.lock_path, state.lock.serialize() + "\n")

        if state.current_task is None:
            self.current_task_path.unlink(missing_ok=True)
        else:
            _write_atomic(self.current_task_path, state.current_task + "\n")

        _write_atomic(self.failed_tasks_path, "".join(f"{t}\n" for t in state.failed_tasks))
        _write_atomic(
            self.health_path,
            "".join(f"{r.serialize()}\n" for r in state.health_log[-HEALTH_LOG_LIMIT:]),
        )
        _write_atomic(self.last_sync_path, f"{int(state.last_sync)}\n")

    @contextmanager
    def transaction(self) -> Generator[OrchestratorState, None, None]:
        """Load-modify-save under a file lock.

        Raises:
            Timeout: If the lock cannot be acquired within _LOCK_TIMEOUT seconds
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        with FileLock(self.directory / "state.lock", timeout=_LOCK_TIMEOUT):
            state = self.load()
            yield state
            self.save(state)


def pid_alive(pid: int) -> bool:
    """Whether a process with this pid exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    return True


class WorkTreeLock:
    """TTL-bounded single-worker lock for one working tree.

    A held lock is honoured only while its holder is alive and younger than
    the TTL; otherwise it is reclaimed. The current-task marker survives a
    reclaim so the next holder can resume the interrupted task.

    Args:
        store: State store for the working tree
        ttl_secs: Age after which a lock is stale regardless of holder
        pid: Identity of this process
        clock: Time source
        is_alive: Liveness probe for a holder pid
    """

    def __init__(
        self,
        store: StateStore,
        ttl_secs: int = 3600,
        pid: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        is_alive: Callable[[int], bool] = pid_alive,
    ) -> None:
        self.store = store
        self.ttl_secs = ttl_secs
        self.pid = os.getpid() if pid is None else pid
        self.clock = clock
        self.is_alive = is_alive

    def is_stale(self, token: LockToken) -> bool:
        age = self.clock() - token.acquired_at
        return not self.is_alive(token.pid) or age >= self.ttl_secs

    def acquire(self) -> bool:
        """Try to take the lock.

        Returns:
            True if this process now holds the lock
        """
        with self.store.transaction() as state:
            token = state.lock
            if token is not None and token.pid != self.pid and not self.is_stale(token):
                logger.debug("Lock held by pid %s", token.pid)
                return False
            if token is not None and token.pid != self.pid:
                logger.warning(
                    "Reclaiming stale lock from pid %s (age %ds)",
                    token.pid, int(self.clock() - token.acquired_at),
                )
            state.lock = LockToken(pid=self.pid, acquired_at=self.clock())
            return True

    def release(self, clear_marker: bool = False) -> None:
        """Drop the lock if this process holds it.

        Args:
            clear_marker: Also remove the current-task marker
        """
        with self.store.transaction() as state:
            if state.lock is not None and state.lock.pid == self.pid:
                state.lock = None
            if clear_marker:
                state.current_task = None

    def holder(self) -> Optional[LockToken]:
        return self.store.load().lock
