"""Tests for stackloop.state module."""

from pathlib import Path

from stackloop.state import (
    FailureRecord,
    FileStateStore,
    LockToken,
    MemoryStateStore,
    OrchestratorState,
    WorkTreeLock,
    pid_alive,
    state_dir_for,
)


class TestLockToken:
    """Tests for LockToken parsing."""

    def test_round_trip(self):
        """A serialized token parses back."""
        token = LockToken(pid=123, acquired_at=1700000000.0)
        assert LockToken.parse(token.serialize()) == token

    def test_bare_pid_uses_fallback_time(self):
        """Older lock files hold only a pid; the file mtime is used."""
        token = LockToken.parse("456\n", fallback_time=99.0)
        assert token.pid == 456
        assert token.acquired_at == 99.0

    def test_garbage_is_none(self):
        """Unparseable content yields None."""
        assert LockToken.parse("not-a-pid") is None
        assert LockToken.parse("") is None


class TestFailureRecord:
    """Tests for FailureRecord parsing."""

    def test_parse(self):
        """A health line splits on the first colon."""
        record = FailureRecord.parse("1700000000:baseline_validation_T-1")
        assert record.ts == 1700000000.0
        assert record.reason == "baseline_validation_T-1"

    def test_parse_bad_timestamp(self):
        """A line without a numeric timestamp is ignored."""
        assert FailureRecord.parse("yesterday:oops") is None


class TestOrchestratorState:
    """Tests for the failure counter helpers."""

    def test_fail_counting(self):
        """record_fail appends; clear_fail removes every entry for a task."""
        state = OrchestratorState()
        state.record_fail("T-1")
        state.record_fail("T-2")
        state.record_fail("T-1")
        assert state.fail_count("T-1") == 2
        assert state.failure_counts() == {"T-1": 2, "T-2": 1}

        state.clear_fail("T-1")
        assert state.fail_count("T-1") == 0
        assert state.failed_tasks == ["T-2"]


class TestMemoryStateStore:
    """Tests for MemoryStateStore."""

    def test_load_returns_copy(self):
        """Mutating a loaded state does not touch the store without save."""
        store = MemoryStateStore()
        state = store.load()
        state.record_fail("T-1")
        assert store.load().failed_tasks == []

    def test_transaction_saves(self):
        """Changes inside a transaction are persisted."""
        store = MemoryStateStore()
        with store.transaction() as state:
            state.current_task = "T-9"
        assert store.load().current_task == "T-9"


class TestFileStateStore:
    """Tests for FileStateStore."""

    def test_empty_directory_loads_defaults(self, tmp_path):
        """A missing state directory loads as empty state."""
        state = FileStateStore(tmp_path / "state").load()
        assert state.lock is None
        assert state.current_task is None
        assert state.failed_tasks == []
        assert state.last_sync == 0.0

    def test_save_and_load(self, tmp_path):
        """Every field survives a save/load cycle."""
        store = FileStateStore(tmp_path / "state")
        state = OrchestratorState(
            lock=LockToken(pid=42, acquired_at=1000.0),
            current_task="T-1",
            failed_tasks=["T-1", "T-1"],
            health_log=[FailureRecord(ts=900.0, reason="preflight_validation_failed")],
            last_sync=800.0,
        )
        store.save(state)

        loaded = store.load()
        assert loaded.lock == LockToken(pid=42, acquired_at=1000.0)
        assert loaded.current_task == "T-1"
        assert loaded.fail_count("T-1") == 2
        assert loaded.health_log[0].reason == "preflight_validation_failed"
        assert loaded.last_sync == 800.0

    def test_line_oriented_files(self, tmp_path):
        """State is stored as plain line-oriented files."""
        store = FileStateStore(tmp_path)
        store.save(OrchestratorState(lock=LockToken(pid=7, acquired_at=5.0), current_task="T-3",
                                     failed_tasks=["T-3"]))
        assert (tmp_path / "lock").read_text() == "7 5\n"
        assert (tmp_path / "current-task").read_text() == "T-3\n"
        assert (tmp_path / "failed-tasks").read_text() == "T-3\n"

    def test_clearing_removes_files(self, tmp_path):
        """A released lock and cleared marker remove their files."""
        store = FileStateStore(tmp_path)
        store.save(OrchestratorState(lock=LockToken(pid=7, acquired_at=5.0), current_task="T-3"))
        store.save(OrchestratorState())
        assert not (tmp_path / "lock").exists()
        assert not (tmp_path / "current-task").exists()

    def test_transaction(self, tmp_path):
        """A transaction persists its changes."""
        store = FileStateStore(tmp_path / "s")
        with store.transaction() as state:
            state.record_fail("T-5")
        assert FileStateStore(tmp_path / "s").load().fail_count("T-5") == 1

    def test_for_worktree_is_stable_and_distinct(self, tmp_path):
        """Each worktree gets its own directory, the same one every time."""
        a = tmp_path / "one" / "repo"
        b = tmp_path / "two" / "repo"
        assert state_dir_for(tmp_path, a) == state_dir_for(tmp_path, a)
        assert state_dir_for(tmp_path, a) != state_dir_for(tmp_path, b)
        assert state_dir_for(tmp_path, a).name.startswith("repo-")
        assert FileStateStore.for_worktree(tmp_path, a).directory == state_dir_for(tmp_path, a)


class TestPidAlive:
    """Tests for pid_alive."""

    def test_own_pid(self):
        """The current process is alive."""
        import os

        assert pid_alive(os.getpid()) is True

    def test_non_positive(self):
        """Zero and negative pids are never alive."""
        assert pid_alive(0) is False
        assert pid_alive(-1) is False


class TestWorkTreeLock:
    """Tests for the TTL pid lock."""

    def _lock(self, store, pid, now=1000.0, alive=True, ttl=3600):
        return WorkTreeLock(store, ttl_secs=ttl, pid=pid, clock=lambda: now, is_alive=lambda p: alive)

    def test_acquire_free(self):
        """A free lock is taken."""
        store = MemoryStateStore()
        assert self._lock(store, 1).acquire() is True
        assert store.load().lock.pid == 1

    def test_held_by_live_process(self):
        """A fresh lock held by a live process is respected."""
        store = MemoryStateStore()
        self._lock(store, 1).acquire()
        assert self._lock(store, 2).acquire() is False
        assert store.load().lock.pid == 1

    def test_dead_holder_is_reclaimed(self):
        """A lock whose holder died is reclaimed."""
        store = MemoryStateStore()
        self._lock(store, 1).acquire()
        assert self._lock(store, 2, alive=False).acquire() is True
        assert store.load().lock.pid == 2

    def test_expired_lock_is_reclaimed(self):
        """A lock older than the TTL is reclaimed even if its holder lives."""
        store = MemoryStateStore()
        self._lock(store, 1, now=1000.0).acquire()
        assert self._lock(store, 2, now=1000.0 + 3600).acquire() is True

    def test_reclaim_keeps_marker(self):
        """Reclaiming a stale lock leaves the current-task marker for resumption."""
        store = MemoryStateStore(OrchestratorState(lock=LockToken(1, 0.0), current_task="T-1"))
        assert self._lock(store, 2, alive=False).acquire() is True
        assert store.load().current_task == "T-1"

    def test_reacquire_refreshes_timestamp(self):
        """The holder re-acquiring its own lock refreshes the timestamp."""
        store = MemoryStateStore()
        self._lock(store, 1, now=1000.0).acquire()
        assert self._lock(store, 1, now=2000.0).acquire() is True
        assert store.load().lock.acquired_at == 2000.0

    def test_release_only_own_lock(self):
        """release leaves another process's lock in place."""
        store = MemoryStateStore()
        self._lock(store, 1).acquire()
        self._lock(store, 2).release()
        assert store.load().lock.pid == 1

    def test_release_clear_marker(self):
        """release(clear_marker=True) drops the marker too."""
        store = MemoryStateStore(OrchestratorState(current_task="T-1"))
        lock = self._lock(store, 1)
        lock.acquire()
        lock.release(clear_marker=True)
        state = store.load()
        assert state.lock is None
        assert state.current_task is None

    def test_release_keeps_marker_by_default(self):
        """A plain release keeps the marker."""
        store = MemoryStateStore(OrchestratorState(current_task="T-1"))
        lock = self._lock(store, 1)
        lock.acquire()
        lock.release()
        assert store.load().current_task == "T-1"

    def test_file_backed_lock(self, tmp_path):
        """The lock works over a FileStateStore."""
        store = FileStateStore(Path(tmp_path))
        assert self._lock(store, 1).acquire() is True
        assert self._lock(store, 2).acquire() is False
        assert self._lock(store, 1).holder().pid == 1
