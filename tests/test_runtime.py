"""Tests for the runtime scheduling loop."""

from collections import deque

import pytest

from conftest import estimate, make_query, make_snapshot, make_state

from pgtop.events import KeyEvent
from pgtop.modes import BottomPanel, Normal
from pgtop.recorder import Recorder, RecordingError
from pgtop.replay import ReplayLoadError, ReplayLoop
from pgtop.runtime import SPINNER_INTERVAL, ReplayOnlyLoop, RuntimeLoop
from pgtop.worker import Command, CommandKind, Result


class FakeWorker:
    """Captures submitted commands; results are fed in by the test."""

    def __init__(self):
        self.submitted: list[Command] = []
        self.results: deque[Result] = deque()
        self.full = False
        self._seq = 0

    def submit(self, kind, pid=None, pids=()):
        if self.full:
            return None
        self._seq += 1
        command = Command(kind, self._seq, pid=pid, pids=tuple(pids))
        self.submitted.append(command)
        return command

    def poll_result(self):
        return self.results.popleft() if self.results else None

    def has_results(self):
        return bool(self.results)

    def finish(self, command, value=None, ok=True, error=None):
        self.results.append(Result(command.kind, command.seq, ok, value, error, command.pid, command.pids))

    def of_kind(self, kind):
        return [c for c in self.submitted if c.kind is kind]


class FakeRecorder:
    def __init__(self, fail=False):
        self.recorded = []
        self.fail = fail

    def record(self, snapshot):
        if self.fail:
            raise RecordingError("disk full")
        self.recorded.append(snapshot)


@pytest.fixture
def worker():
    return FakeWorker()


@pytest.fixture
def saved():
    return []


@pytest.fixture
def runtime(worker, saved, clipboard):
    state = make_state(clipboard)
    loop = RuntimeLoop(state, worker, recorder=FakeRecorder(), save_config=saved.append)
    loop.start(0.0)
    return loop


def run_keys(runtime, *keys, now=0.0):
    for key in keys:
        runtime.push_key(KeyEvent(key))
    while runtime.run_once(now):
        pass


def deliver_snapshot(runtime, worker, snapshot=None, now=0.0):
    command = worker.of_kind(CommandKind.FETCH_SNAPSHOT)[-1]
    worker.finish(command, snapshot or make_snapshot())
    runtime.run_once(now)


class TestScheduling:
    """Tests for event priority and timers."""

    def test_start_fetches(self, runtime, worker):
        """Test start issues the first fetch."""
        assert [c.kind for c in worker.submitted] == [CommandKind.FETCH_SNAPSHOT]

    def test_idle_step_reports_nothing(self, runtime):
        """Test a step with nothing ready returns False."""
        assert runtime.run_once(0.01) is False

    def test_input_before_results(self, runtime, worker):
        """Test key input is handled before a pending worker result."""
        worker.finish(worker.submitted[0], make_snapshot())
        runtime.push_key(KeyEvent("t"))
        assert runtime.run_once(0.0)
        assert runtime.state.bottom_panel is BottomPanel.TABLE_STATS
        assert runtime.state.snapshot is None
        assert runtime.run_once(0.0)
        assert runtime.state.snapshot is not None

    def test_refresh_tick(self, runtime, worker):
        """Test a fetch is issued every refresh interval."""
        runtime.run_once(1.9)
        assert len(worker.of_kind(CommandKind.FETCH_SNAPSHOT)) == 1
        runtime.run_once(2.0)
        assert len(worker.of_kind(CommandKind.FETCH_SNAPSHOT)) == 2

    def test_paused_skips_fetch(self, runtime, worker):
        """Test no fetch is issued while paused."""
        run_keys(runtime, "p")
        runtime.run_once(2.0)
        runtime.run_once(4.0)
        assert len(worker.of_kind(CommandKind.FETCH_SNAPSHOT)) == 1

    def test_refresh_interval_change_reschedules(self, runtime, worker):
        """Test a new interval takes effect from the moment it changes."""
        run_keys(runtime, ",", "down", "down", "right", now=1.0)
        assert runtime.state.refresh_interval_secs == 3
        runtime.run_once(2.5)
        assert len(worker.of_kind(CommandKind.FETCH_SNAPSHOT)) == 1
        runtime.run_once(4.0)
        assert len(worker.of_kind(CommandKind.FETCH_SNAPSHOT)) == 2

    def test_spinner_advances_only_while_loading(self, runtime):
        """Test the spinner frame moves only while bloat is loading."""
        assert runtime.run_once(SPINNER_INTERVAL) is False
        runtime.state.feedback.bloat_loading = True
        assert runtime.run_once(SPINNER_INTERVAL * 2)
        assert runtime.state.feedback.spinner_frame == 1

    def test_render_called_when_handled(self, worker, clipboard):
        """Test the render callback runs after each handled event."""
        renders = []
        loop = RuntimeLoop(make_state(clipboard), worker, render=lambda: renders.append(1))
        loop.start(0.0)
        loop.run_once(0.01)
        assert renders == []
        loop.push_key(KeyEvent("?"))
        loop.run_once(0.01)
        assert renders == [1]

    def test_stopped_after_quit(self, runtime):
        """Test the runtime reports stopped once the state stops running."""
        assert not runtime.stopped
        run_keys(runtime, "q")
        assert runtime.stopped


class TestSnapshotResults:
    """Tests for applying fetch results."""

    def test_snapshot_applied_and_recorded(self, runtime, worker):
        """Test a fetched snapshot is recorded and installed."""
        snap = make_snapshot()
        deliver_snapshot(runtime, worker, snap)
        assert runtime.state.snapshot is snap
        assert runtime.recorder.recorded == [snap]
        assert runtime.last_fetch_seq == 1

    def test_stale_snapshot_discarded(self, runtime, worker):
        """Test an older fetch completing after a newer one is ignored."""
        run_keys(runtime, "r")
        first, second = worker.of_kind(CommandKind.FETCH_SNAPSHOT)
        newer = make_snapshot([make_query(2)])
        older = make_snapshot([make_query(1)])
        worker.finish(second, newer)
        worker.finish(first, older)
        runtime.run_once(0.0)
        runtime.run_once(0.0)
        assert runtime.state.snapshot is newer
        assert runtime.last_fetch_seq == second.seq
        assert runtime.recorder.recorded == [newer]

    def test_fetch_error_shown(self, runtime, worker):
        """Test a failed fetch sets the footer error and keeps the old snapshot."""
        deliver_snapshot(runtime, worker)
        old = runtime.state.snapshot
        run_keys(runtime, "r")
        worker.finish(worker.of_kind(CommandKind.FETCH_SNAPSHOT)[-1], ok=False, error="fetch_wait_events: timeout")
        runtime.run_once(0.0)
        assert runtime.state.feedback.last_error == "fetch_wait_events: timeout"
        assert runtime.state.snapshot is old

    def test_recording_failure_not_fatal(self, worker, clipboard):
        """Test a recorder error is reported and the snapshot still applied."""
        loop = RuntimeLoop(make_state(clipboard), worker, recorder=FakeRecorder(fail=True))
        loop.start(0.0)
        deliver_snapshot(loop, worker)
        assert loop.state.snapshot is not None
        assert loop.state.feedback.status_message == "Recording failed: disk full"


class TestActions:
    """Tests for turning queued actions into commands."""

    def test_terminate_flow(self, runtime, worker):
        """Test K, y terminates the selected backend and refreshes."""
        deliver_snapshot(runtime, worker)
        run_keys(runtime, "j", "K", "y")
        (command,) = worker.of_kind(CommandKind.TERMINATE_BACKEND)
        assert command.pid == 100
        fetches = len(worker.of_kind(CommandKind.FETCH_SNAPSHOT))
        worker.finish(command, True)
        runtime.run_once(0.0)
        assert runtime.state.feedback.status_message == "Terminated backend PID 100"
        assert len(worker.of_kind(CommandKind.FETCH_SNAPSHOT)) == fetches + 1

    def test_cancel_already_finished(self, runtime, worker):
        """Test a cancel that found no backend says so."""
        deliver_snapshot(runtime, worker)
        run_keys(runtime, "j", "C", "y")
        (command,) = worker.of_kind(CommandKind.CANCEL_QUERY)
        worker.finish(command, False)
        runtime.run_once(0.0)
        assert runtime.state.feedback.status_message == "PID 100 not found or already finished"

    def test_batch_terminate_message(self, runtime, worker):
        """Test batch results are summarised."""
        deliver_snapshot(runtime, worker)
        run_keys(runtime, "/", "S", "enter", "K", "a", "y")
        (command,) = worker.of_kind(CommandKind.TERMINATE_BACKENDS)
        assert command.pids == (100, 200, 300)
        worker.finish(command, [(100, True), (200, False), (300, True)])
        runtime.run_once(0.0)
        assert runtime.state.feedback.status_message == "Terminated 2/3 backends (1 already finished)"

    def test_bloat_refresh(self, runtime, worker):
        """Test bloat results are applied and the spinner stops."""
        deliver_snapshot(runtime, worker, make_snapshot(table_stats=[]))
        run_keys(runtime, "t", "b")
        (command,) = worker.of_kind(CommandKind.REFRESH_BLOAT)
        worker.finish(command, ({"public.a": estimate(5.0)}, {}))
        runtime.run_once(0.0)
        assert not runtime.state.feedback.bloat_loading
        assert runtime.state.feedback.status_message == "Bloat estimates refreshed (1 tables, 0 indexes)"

    def test_bloat_dropped_when_queue_full(self, runtime, worker):
        """Test a dropped bloat command does not leave the spinner running."""
        worker.full = True
        run_keys(runtime, "t", "b")
        assert not runtime.state.feedback.bloat_loading

    def test_bloat_failure(self, runtime, worker):
        """Test a failed bloat refresh is reported."""
        run_keys(runtime, "t", "b")
        (command,) = worker.of_kind(CommandKind.REFRESH_BLOAT)
        worker.finish(command, ok=False, error="permission denied")
        runtime.run_once(0.0)
        assert runtime.state.feedback.status_message == "Bloat estimation failed: permission denied"

    def test_reset_statements(self, runtime, worker):
        """Test the statements reset is submitted and confirmed."""
        run_keys(runtime, "S", "X", "y")
        (command,) = worker.of_kind(CommandKind.RESET_STAT_STATEMENTS)
        worker.finish(command)
        runtime.run_once(0.0)
        assert runtime.state.feedback.status_message == "Statement statistics reset"

    def test_config_saved(self, runtime, saved):
        """Test closing the config overlay saves the config."""
        run_keys(runtime, ",", "escape")
        assert saved == [runtime.state.config]

    def test_config_save_failure(self, worker, clipboard):
        """Test a failed save is reported in the footer."""

        def failing_save(config):
            raise PermissionError("read-only")

        loop = RuntimeLoop(make_state(clipboard), worker, save_config=failing_save)
        loop.start(0.0)
        run_keys(loop, ",", "escape")
        assert loop.state.feedback.status_message == "Config save failed: read-only"


class TestReplayHandOff:
    """Tests for switching between live monitoring and replay."""

    @pytest.fixture
    def recording(self, runtime):
        state = runtime.state
        with Recorder.create("db1", 5432, "shop", "postgres", state.server_info, state.config.recordings_path()) as rec:
            rec.record(make_snapshot([make_query(777)]))
        return rec.path

    def test_replay_and_back(self, runtime, worker, recording):
        """Test choosing a recording replays it, and quitting returns to live."""
        deliver_snapshot(runtime, worker)
        run_keys(runtime, "t", "L", "enter")
        assert runtime.replay is not None
        assert not runtime.stopped
        assert runtime.current_state is runtime.replay.state
        assert runtime.current_state.snapshot.active_queries[0].pid == 777

        fetches = len(worker.of_kind(CommandKind.FETCH_SNAPSHOT))
        run_keys(runtime, "q")
        assert runtime.replay is None
        assert runtime.current_state is runtime.state
        assert runtime.state.running
        assert runtime.state.bottom_panel is BottomPanel.QUERIES
        assert isinstance(runtime.state.view_mode, Normal)
        assert len(worker.of_kind(CommandKind.FETCH_SNAPSHOT)) == fetches + 1

    def test_live_results_wait_during_replay(self, runtime, worker, recording):
        """Test worker results are not applied while replaying."""
        run_keys(runtime, "L", "enter")
        worker.finish(worker.of_kind(CommandKind.FETCH_SNAPSHOT)[-1], make_snapshot())
        runtime.run_once(0.0)
        assert runtime.state.snapshot is None
        assert worker.has_results()

    def test_config_changed_in_replay_carries_over(self, runtime, worker, recording):
        """Test config edits made while replaying apply to the live state."""
        run_keys(runtime, "L", "enter", ",", "down", "down", "right", "escape", "q")
        assert runtime.replay is None
        assert runtime.state.config.refresh_interval_secs == 3
        assert runtime.state.refresh_interval_secs == 3

    def test_replay_load_failure(self, worker, clipboard, recording):
        """Test a broken recording keeps the live view running with a message."""

        def broken(path, config, now, save_config=None):
            raise ReplayLoadError("recording contains no snapshots")

        loop = RuntimeLoop(make_state(clipboard), worker, open_replay=broken)
        loop.start(0.0)
        run_keys(loop, "L", "enter")
        assert loop.replay is None
        assert not loop.stopped
        assert loop.state.running
        assert loop.state.feedback.status_message == "Replay failed: recording contains no snapshots"


class TestReplayOnlyLoop:
    """Tests for replaying a file given on the command line."""

    def test_drives_replay(self, tmp_path):
        """Test keys and ticks reach the replay and q stops it."""
        path = tmp_path / "r.jsonl"
        with Recorder.open(path, "db1", 5432, "shop", "postgres", make_state().server_info) as rec:
            rec.record(make_snapshot([make_query(1)]))
            rec.record(make_snapshot([make_query(2)]))
        loop = ReplayOnlyLoop(ReplayLoop.open(path, make_state().config, 0.0, save_config=lambda config: None))
        loop.start(0.0)
        assert loop.current_state.snapshot.active_queries[0].pid == 1
        # Identical timestamps fall back to the default gap
        assert loop.run_once(2.0)
        assert loop.current_state.snapshot.active_queries[0].pid == 2
        loop.push_key(KeyEvent("q"))
        assert loop.run_once(2.0)
        assert loop.stopped
