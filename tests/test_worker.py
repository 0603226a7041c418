"""Tests for the DatabaseWorker class."""

import time

from conftest import FakeSource, estimate, make_snapshot

from pgtop.queries import DatabaseError
from pgtop.worker import Command, CommandKind, DatabaseWorker, Result


def wait_for_results(worker, count, timeout=5.0):
    results = []
    deadline = time.monotonic() + timeout
    while len(results) < count and time.monotonic() < deadline:
        result = worker.poll_result()
        if result is None:
            time.sleep(0.01)
        else:
            results.append(result)
    return results


class TestCommands:
    """Tests for Command and Result dataclasses."""

    def test_command_uses_slots(self):
        """Test Command uses __slots__ for memory efficiency."""
        assert not hasattr(Command(CommandKind.FETCH_SNAPSHOT, 1), "__dict__")

    def test_result_defaults(self):
        """Test Result carries no value or error by default."""
        result = Result(CommandKind.FETCH_SNAPSHOT, 1, ok=True)
        assert result.value is None
        assert result.error is None


class TestExecute:
    """Tests for synchronous command execution."""

    def test_fetch_snapshot(self):
        """Test a fetch returns the source's snapshot."""
        snap = make_snapshot()
        worker = DatabaseWorker(FakeSource([snap]))
        result = worker.execute(Command(CommandKind.FETCH_SNAPSHOT, 1))
        assert result.ok
        assert result.value is snap
        assert result.seq == 1

    def test_failure_becomes_error_result(self):
        """Test a failing source produces an error Result instead of raising."""
        source = FakeSource(fail_with=DatabaseError("fetch_active_queries", RuntimeError("connection lost")))
        worker = DatabaseWorker(source)
        result = worker.execute(Command(CommandKind.FETCH_SNAPSHOT, 7))
        assert not result.ok
        assert result.seq == 7
        assert result.error == "fetch_active_queries: connection lost"

    def test_single_signal(self):
        """Test cancel and terminate report whether the pid was signalled."""
        source = FakeSource()
        source.dead_pids.add(99)
        worker = DatabaseWorker(source)
        assert worker.execute(Command(CommandKind.CANCEL_QUERY, 1, pid=10)).value is True
        result = worker.execute(Command(CommandKind.TERMINATE_BACKEND, 2, pid=99))
        assert result.ok
        assert result.value is False
        assert result.pid == 99

    def test_batch_signal(self):
        """Test batch commands report per-pid outcomes."""
        source = FakeSource()
        source.dead_pids.add(2)
        worker = DatabaseWorker(source)
        result = worker.execute(Command(CommandKind.TERMINATE_BACKENDS, 1, pids=(1, 2, 3)))
        assert result.value == [(1, True), (2, False), (3, True)]
        assert result.pids == (1, 2, 3)

    def test_bloat(self):
        """Test bloat refresh returns both estimate dicts."""
        source = FakeSource()
        source.bloat = ({"public.t": estimate(10.0)}, {})
        worker = DatabaseWorker(source)
        result = worker.execute(Command(CommandKind.REFRESH_BLOAT, 1))
        assert result.value == source.bloat


class TestWorkerThread:
    """Tests for the background thread."""

    def test_submit_assigns_increasing_seq(self):
        """Test submitted commands get strictly increasing sequence numbers."""
        worker = DatabaseWorker(FakeSource())
        first = worker.submit(CommandKind.FETCH_SNAPSHOT)
        second = worker.submit(CommandKind.CANCEL_QUERY, pid=5)
        assert second.seq > first.seq
        assert second.pid == 5

    def test_full_queue_drops_command(self):
        """Test submit returns None when the queue is full."""
        worker = DatabaseWorker(FakeSource(), queue_size=1)
        assert worker.submit(CommandKind.FETCH_SNAPSHOT) is not None
        assert worker.submit(CommandKind.FETCH_SNAPSHOT) is None

    def test_results_in_submission_order(self):
        """Test every command yields one result, in order."""
        source = FakeSource()
        worker = DatabaseWorker(source)
        worker.start()
        try:
            commands = [
                worker.submit(CommandKind.FETCH_SNAPSHOT),
                worker.submit(CommandKind.CANCEL_QUERY, pid=1),
                worker.submit(CommandKind.RESET_STAT_STATEMENTS),
                worker.submit(CommandKind.FETCH_SNAPSHOT),
            ]
            results = wait_for_results(worker, len(commands))
        finally:
            worker.stop()
        assert [r.seq for r in results] == [c.seq for c in commands]
        assert [r.kind for r in results] == [c.kind for c in commands]
        assert all(r.ok for r in results)

    def test_stop_closes_source(self):
        """Test stopping the worker closes the data source."""
        source = FakeSource()
        worker = DatabaseWorker(source)
        worker.start()
        assert worker.is_running
        worker.stop()
        assert not worker.is_running
        assert source.closed

    def test_start_twice_is_harmless(self):
        """Test a second start does not spawn another thread."""
        worker = DatabaseWorker(FakeSource())
        worker.start()
        thread = worker._thread
        worker.start()
        try:
            assert worker._thread is thread
        finally:
            worker.stop()
