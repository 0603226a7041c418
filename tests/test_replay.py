"""Tests for replaying recorded sessions."""

import json
from datetime import timedelta

import pytest

from conftest import T0, FakeClipboard, make_query, make_server_info, make_snapshot, make_table

from pgtop.config import AppConfig
from pgtop.events import KeyEvent
from pgtop.modes import Filter
from pgtop.recorder import Recorder
from pgtop.replay import (
    DEFAULT_GAP_SECS,
    MIN_INTERVAL_SECS,
    ReplayLoadError,
    ReplayLoop,
    ReplaySession,
    next_speed,
    prev_speed,
    replay_interval,
)


def record(path, count=3, gap=4.0):
    """Write a recording with ``count`` snapshots ``gap`` seconds apart; query pid n+1 marks snapshot n."""
    with Recorder.open(path, "db1", 5432, "shop", "postgres", make_server_info()) as recorder:
        for n in range(count):
            recorder.record(make_snapshot([make_query(n + 1)], timestamp=T0 + timedelta(seconds=gap * n)))
    return path


def open_loop(path, now=0.0, saved=None):
    def save(config):
        if saved is not None:
            saved.append(config)

    return ReplayLoop.open(path, AppConfig(), now, save_config=save, clipboard=FakeClipboard())


def current_pid(loop):
    return loop.state.snapshot.active_queries[0].pid


class TestReplaySessionLoad:
    """Tests for loading recordings."""

    def test_load(self, tmp_path):
        """Test a recording loads header and snapshots."""
        session = ReplaySession.load(record(tmp_path / "r.jsonl", count=3))
        assert len(session) == 3
        assert session.host == "db1"
        assert session.port == 5432
        assert session.recorded_at is not None
        assert session.current().active_queries[0].pid == 1

    def test_header_only(self, tmp_path):
        """Test a recording without snapshots is rejected."""
        path = record(tmp_path / "r.jsonl", count=0)
        with pytest.raises(ReplayLoadError, match="no snapshots"):
            ReplaySession.load(path)

    def test_empty_file(self, tmp_path):
        """Test an empty file is rejected."""
        path = tmp_path / "r.jsonl"
        path.write_text("", encoding="utf-8")
        with pytest.raises(ReplayLoadError, match="empty"):
            ReplaySession.load(path)

    def test_missing_file(self, tmp_path):
        """Test a missing file is rejected."""
        with pytest.raises(ReplayLoadError, match="cannot open"):
            ReplaySession.load(tmp_path / "missing.jsonl")

    def test_must_start_with_header(self, tmp_path):
        """Test a snapshot before the header is rejected."""
        path = tmp_path / "r.jsonl"
        path.write_text(json.dumps({"type": "snapshot", "data": {}}) + "\n", encoding="utf-8")
        with pytest.raises(ReplayLoadError, match="header"):
            ReplaySession.load(path)

    def test_malformed_line_reports_line_number(self, tmp_path):
        """Test malformed JSON names the offending line."""
        path = record(tmp_path / "r.jsonl", count=1)
        with path.open("a", encoding="utf-8") as f:
            f.write("{not json\n")
        with pytest.raises(ReplayLoadError, match="line 3"):
            ReplaySession.load(path)

    def test_blank_lines_skipped(self, tmp_path):
        """Test blank lines between records are ignored."""
        path = record(tmp_path / "r.jsonl", count=2)
        path.write_text(path.read_text(encoding="utf-8").replace("\n", "\n\n"), encoding="utf-8")
        assert len(ReplaySession.load(path)) == 2


class TestReplaySessionStepping:
    """Tests for bounded stepping."""

    def test_bounds(self, tmp_path):
        """Test stepping never leaves the recording."""
        session = ReplaySession.load(record(tmp_path / "r.jsonl", count=2))
        assert not session.step_back()
        assert session.step_forward()
        assert session.at_end()
        assert not session.step_forward()
        session.jump_start()
        assert session.position == 0
        session.jump_end()
        assert session.position == 1


class TestSpeedsAndIntervals:
    """Tests for playback speed and timing."""

    def test_speed_steps(self):
        """Test speed steps through the fixed ladder and saturates."""
        assert next_speed(1.0) == 2.0
        assert next_speed(8.0) == 8.0
        assert prev_speed(1.0) == 0.5
        assert prev_speed(0.25) == 0.25

    def test_interval_scales_with_speed(self, tmp_path):
        """Test the wait is the recorded gap divided by speed."""
        session = ReplaySession.load(record(tmp_path / "r.jsonl", gap=4.0))
        assert replay_interval(session, 1.0) == 4.0
        assert replay_interval(session, 2.0) == 2.0

    def test_zero_gap_uses_default(self, tmp_path):
        """Test identical timestamps fall back to the default gap."""
        session = ReplaySession.load(record(tmp_path / "r.jsonl", gap=0.0))
        assert replay_interval(session, 1.0) == DEFAULT_GAP_SECS

    def test_interval_floor(self, tmp_path):
        """Test very short gaps are floored."""
        session = ReplaySession.load(record(tmp_path / "r.jsonl", gap=0.01))
        assert replay_interval(session, 8.0) == MIN_INTERVAL_SECS


class TestReplayLoop:
    """Tests for the playback driver."""

    def test_starts_playing_at_first_snapshot(self, tmp_path):
        """Test the loop starts playing with the first snapshot shown."""
        loop = open_loop(record(tmp_path / "r.jsonl"))
        replay = loop.state.replay
        assert replay.playing
        assert replay.position == 0
        assert replay.total == 3
        assert replay.filename == "r.jsonl"
        assert current_pid(loop) == 1
        assert loop.state.is_replay

    def test_tick_waits_for_deadline(self, tmp_path):
        """Test ticks advance only once the scaled gap has passed."""
        loop = open_loop(record(tmp_path / "r.jsonl", gap=4.0))
        assert not loop.tick(3.9)
        assert loop.tick(4.0)
        assert current_pid(loop) == 2
        assert not loop.tick(7.9)
        assert loop.tick(8.0)
        assert current_pid(loop) == 3

    def test_stops_at_end(self, tmp_path):
        """Test playback pauses on the last snapshot."""
        loop = open_loop(record(tmp_path / "r.jsonl", count=2, gap=1.0))
        assert loop.tick(1.0)
        assert not loop.state.replay.playing
        assert loop.next_deadline() is None
        assert not loop.tick(100.0)

    def test_space_pauses(self, tmp_path):
        """Test space toggles playback."""
        loop = open_loop(record(tmp_path / "r.jsonl"))
        loop.handle_key(KeyEvent(" "), 0.0)
        assert not loop.state.replay.playing
        assert not loop.tick(100.0)

    def test_manual_stepping(self, tmp_path):
        """Test arrow keys and g/G move through the recording."""
        loop = open_loop(record(tmp_path / "r.jsonl"))
        loop.handle_key(KeyEvent("right"), 0.0)
        assert current_pid(loop) == 2
        loop.handle_key(KeyEvent("h"), 0.0)
        assert current_pid(loop) == 1
        loop.handle_key(KeyEvent("G"), 0.0)
        assert current_pid(loop) == 3
        assert loop.state.replay.position == 2
        assert not loop.state.replay.playing
        loop.handle_key(KeyEvent("g"), 0.0)
        assert current_pid(loop) == 1

    def test_stepping_leaves_recording_untouched(self, tmp_path):
        """Test bloat carried between snapshots never leaks into the loaded recording."""
        path = tmp_path / "r.jsonl"
        with Recorder.open(path, "db1", 5432, "shop", "postgres", make_server_info()) as recorder:
            recorder.record(make_snapshot([make_query(1)], table_stats=[make_table("public", "t")]))
            recorder.record(
                make_snapshot(
                    [make_query(2)],
                    timestamp=T0 + timedelta(seconds=4),
                    table_stats=[make_table("public", "t", bloat_bytes=4096, bloat_pct=50.0)],
                )
            )
        loop = open_loop(path)
        loop.handle_key(KeyEvent("G"), 0.0)
        loop.handle_key(KeyEvent("g"), 0.0)
        assert loop.state.snapshot.table_stats[0].bloat_pct == 50.0
        assert loop.session.snapshots[0].table_stats[0].bloat_pct is None
        assert loop.session.snapshots[0].table_stats[0].bloat_bytes is None
        assert loop.session.snapshots[1].table_stats[0].bloat_pct == 50.0

    def test_speed_keys(self, tmp_path):
        """Test > and < change speed."""
        loop = open_loop(record(tmp_path / "r.jsonl"))
        loop.handle_key(KeyEvent(">"), 0.0)
        assert loop.state.replay.speed == 2.0
        loop.handle_key(KeyEvent("<"), 0.0)
        loop.handle_key(KeyEvent("<"), 0.0)
        assert loop.state.replay.speed == 0.5

    def test_filter_owns_letter_keys(self, tmp_path):
        """Test replay keys are plain text while the filter is open."""
        loop = open_loop(record(tmp_path / "r.jsonl"))
        for key in ("/", "l", "g", " "):
            loop.handle_key(KeyEvent(key), 0.0)
        assert isinstance(loop.state.view_mode, Filter)
        assert loop.state.filter.text == "lg "
        assert current_pid(loop) == 1

    def test_state_keys_still_work(self, tmp_path):
        """Test non-replay keys reach the AppState."""
        loop = open_loop(record(tmp_path / "r.jsonl"))
        loop.handle_key(KeyEvent("I"), 0.0)
        assert loop.state.bottom_panel.label == "Indexes"

    def test_quit_finishes(self, tmp_path):
        """Test q finishes the replay."""
        loop = open_loop(record(tmp_path / "r.jsonl"))
        assert not loop.finished
        loop.handle_key(KeyEvent("q"), 0.0)
        assert loop.finished

    def test_config_saved_during_replay(self, tmp_path):
        """Test closing the Config overlay saves through the callback."""
        saved = []
        loop = open_loop(record(tmp_path / "r.jsonl"), saved=saved)
        loop.handle_key(KeyEvent(","), 0.0)
        loop.handle_key(KeyEvent("escape"), 0.0)
        assert saved == [loop.state.config]
        assert len(loop.state.actions) == 0

    def test_open_bad_file(self, tmp_path):
        """Test open raises ReplayLoadError for a header-only recording."""
        with pytest.raises(ReplayLoadError):
            open_loop(record(tmp_path / "r.jsonl", count=0))
