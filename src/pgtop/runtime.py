"""Cooperative scheduler tying key input, worker results and timers to AppState."""

import logging
from collections import deque
from collections.abc import Callable

from pgtop.appstate import AppState
from pgtop.config import AppConfig
from pgtop.events import KeyEvent
from pgtop.modes import (
    AppAction,
    BottomPanel,
    CancelQueries,
    CancelQuery,
    ForceRefresh,
    Normal,
    RefreshBloat,
    RefreshIntervalChanged,
    ResetStatStatements,
    SaveConfig,
    TerminateBackend,
    TerminateBackends,
)
from pgtop.recorder import Recorder, RecordingError
from pgtop.replay import ReplayLoadError, ReplayLoop
from pgtop.worker import CommandKind, DatabaseWorker, Result

logger = logging.getLogger(__name__)

SPINNER_INTERVAL = 0.08


def _batch_message(verb: str, noun: str, outcomes: list[tuple[int, bool]]) -> str:
    total = len(outcomes)
    succeeded = sum(1 for _, ok in outcomes if ok)
    message = f"{verb} {succeeded}/{total} {noun}"
    if succeeded < total:
        message += f" ({total - succeeded} already finished)"
    return message


class RuntimeLoop:
    """
    Single-threaded driver for the live dashboard.

    Each run_once() call handles at most one ready event source, in priority
    order: key input, worker result, refresh tick, spinner tick. It then
    renders, hands queued actions to the worker and starts a replay if one
    was requested. While a replay is active the live loop is suspended and
    run_once() drives the replay instead.
    """

    def __init__(
        self,
        state: AppState,
        worker: DatabaseWorker,
        recorder: Recorder | None = None,
        render: Callable[[], None] | None = None,
        save_config: Callable[[AppConfig], None] | None = None,
        open_replay: Callable[..., ReplayLoop] = ReplayLoop.open,
    ) -> None:
        self.state = state
        self.worker = worker
        self.recorder = recorder
        self.inputs: deque[KeyEvent] = deque()
        self.replay: ReplayLoop | None = None
        self.last_fetch_seq = 0
        self._render = render
        self._save_config = save_config or AppConfig.save
        self._open_replay = open_replay
        self._next_refresh: float | None = None
        self._next_spinner: float | None = None

    @property
    def current_state(self) -> AppState:
        """The state the renderer should paint: the replay's while one is running."""
        return self.replay.state if self.replay is not None else self.state

    @property
    def stopped(self) -> bool:
        return self.replay is None and not self.state.running

    def push_key(self, event: KeyEvent) -> None:
        self.inputs.append(event)

    def start(self, now: float) -> None:
        """Issue the first fetch and arm the timers."""
        self.fetch()
        self._schedule_refresh(now)
        self._next_spinner = now + SPINNER_INTERVAL

    def fetch(self) -> None:
        self.worker.submit(CommandKind.FETCH_SNAPSHOT)

    def _schedule_refresh(self, now: float) -> None:
        interval = self.state.refresh_interval_secs
        self._next_refresh = now + interval if interval > 0 else None

    def run_once(self, now: float) -> bool:
        """Run one scheduling step. Returns whether any event source was handled."""
        if self.replay is not None:
            return self._run_replay_once(now)

        handled = True
        if self.inputs:
            self.state.handle_key(self.inputs.popleft())
        elif self.worker.has_results():
            result = self.worker.poll_result()
            if result is not None:
                self.apply_result(result)
        elif self._next_refresh is not None and now >= self._next_refresh:
            self._schedule_refresh(now)
            if not self.state.paused:
                self.fetch()
        elif self._next_spinner is not None and now >= self._next_spinner:
            self._next_spinner = now + SPINNER_INTERVAL
            if self.state.feedback.bloat_loading:
                self.state.feedback.spinner_frame += 1
            else:
                handled = False
        else:
            handled = False

        if handled and self._render is not None:
            self._render()
        self.drain_actions(now)
        self._maybe_start_replay(now)
        return handled

    # Actions

    def drain_actions(self, now: float) -> None:
        """Turn every queued AppAction into a worker command or local effect."""
        while len(self.state.actions):
            self._execute(self.state.actions.take(), now)

    def _execute(self, action: AppAction, now: float) -> None:
        submit = self.worker.submit
        if isinstance(action, ForceRefresh):
            self.fetch()
        elif isinstance(action, CancelQuery):
            submit(CommandKind.CANCEL_QUERY, pid=action.pid)
        elif isinstance(action, TerminateBackend):
            submit(CommandKind.TERMINATE_BACKEND, pid=action.pid)
        elif isinstance(action, CancelQueries):
            submit(CommandKind.CANCEL_QUERIES, pids=action.pids)
        elif isinstance(action, TerminateBackends):
            submit(CommandKind.TERMINATE_BACKENDS, pids=action.pids)
        elif isinstance(action, RefreshBloat):
            if submit(CommandKind.REFRESH_BLOAT) is None:
                self.state.feedback.bloat_loading = False
        elif isinstance(action, ResetStatStatements):
            submit(CommandKind.RESET_STAT_STATEMENTS)
        elif isinstance(action, SaveConfig):
            self._persist_config(self.state)
        elif isinstance(action, RefreshIntervalChanged):
            self._schedule_refresh(now)

    def _persist_config(self, state: AppState) -> None:
        try:
            self._save_config(state.config)
        except OSError as e:
            logger.error("Failed to save config: %s", e)
            state.feedback.status_message = f"Config save failed: {e}"

    # Results

    def apply_result(self, result: Result) -> None:
        """Apply one worker result to the live state."""
        state = self.state
        feedback = state.feedback
        kind = result.kind

        if kind is CommandKind.FETCH_SNAPSHOT:
            if result.seq < self.last_fetch_seq:
                logger.debug("Discarding stale snapshot (seq %d < %d)", result.seq, self.last_fetch_seq)
                return
            self.last_fetch_seq = result.seq
            if not result.ok:
                state.update_error(result.error)
                return
            if self.recorder is not None:
                try:
                    self.recorder.record(result.value)
                except RecordingError as e:
                    logger.error("Recording failed: %s", e)
                    feedback.status_message = f"Recording failed: {e}"
            state.update(result.value)

        elif kind in (CommandKind.CANCEL_QUERY, CommandKind.TERMINATE_BACKEND):
            cancel = kind is CommandKind.CANCEL_QUERY
            if not result.ok:
                feedback.status_message = f"{'Cancel' if cancel else 'Terminate'} failed: {result.error}"
            elif result.value:
                if cancel:
                    feedback.status_message = f"Cancelled query on PID {result.pid}"
                else:
                    feedback.status_message = f"Terminated backend PID {result.pid}"
                self.fetch()
            else:
                feedback.status_message = f"PID {result.pid} not found or already finished"

        elif kind in (CommandKind.CANCEL_QUERIES, CommandKind.TERMINATE_BACKENDS):
            cancel = kind is CommandKind.CANCEL_QUERIES
            if not result.ok:
                feedback.status_message = f"Batch {'cancel' if cancel else 'kill'} failed: {result.error}"
                return
            if cancel:
                feedback.status_message = _batch_message("Cancelled", "queries", result.value)
            else:
                feedback.status_message = _batch_message("Terminated", "backends", result.value)
            self.fetch()

        elif kind is CommandKind.REFRESH_BLOAT:
            feedback.bloat_loading = False
            if not result.ok:
                feedback.status_message = f"Bloat estimation failed: {result.error}"
                return
            table_bloat, index_bloat = result.value
            state.apply_bloat(table_bloat, index_bloat)
            feedback.status_message = (
                f"Bloat estimates refreshed ({len(table_bloat)} tables, {len(index_bloat)} indexes)"
            )

        elif kind is CommandKind.RESET_STAT_STATEMENTS:
            if not result.ok:
                feedback.status_message = f"Reset failed: {result.error}"
                return
            feedback.status_message = "Statement statistics reset"
            self.fetch()

    # Replay hand-off

    def _maybe_start_replay(self, now: float) -> None:
        path = self.state.recordings.pending_path
        if path is None:
            return
        self.state.recordings.pending_path = None
        try:
            self.replay = self._open_replay(path, self.state.config, now, save_config=self._save_config)
        except ReplayLoadError as e:
            logger.warning("Replay of %s failed: %s", path, e)
            self.state.running = True
            self.state.feedback.status_message = f"Replay failed: {e}"
            return
        if self._render is not None:
            self._render()

    def _run_replay_once(self, now: float) -> bool:
        replay = self.replay
        handled = True
        if self.inputs:
            replay.handle_key(self.inputs.popleft(), now)
        elif not replay.tick(now):
            handled = False

        if replay.finished:
            self._finish_replay(now)
        if handled and self._render is not None:
            self._render()
        return handled

    def _finish_replay(self, now: float) -> None:
        state = self.state
        previous_interval = state.config.refresh_interval_secs
        state.config = self.replay.state.config
        if state.config.refresh_interval_secs != previous_interval:
            state.refresh_interval_secs = state.config.refresh_interval_secs
        self.replay = None
        state.running = True
        state.bottom_panel = BottomPanel.QUERIES
        state.view_mode = Normal()
        state.filter.clear()
        state.overlay_scroll = 0
        self.fetch()
        self._schedule_refresh(now)
        logger.info("Replay finished, back to live monitoring")


class ReplayOnlyLoop:
    """
    Drives a single replay with no live connection behind it.

    Exposes the same surface the UI uses on RuntimeLoop so a recording
    given on the command line can be shown without a server.
    """

    def __init__(self, replay: ReplayLoop) -> None:
        self.replay = replay
        self.inputs: deque[KeyEvent] = deque()

    @property
    def current_state(self) -> AppState:
        return self.replay.state

    @property
    def stopped(self) -> bool:
        return self.replay.finished

    def push_key(self, event: KeyEvent) -> None:
        self.inputs.append(event)

    def start(self, now: float) -> None:
        pass

    def run_once(self, now: float) -> bool:
        if self.inputs:
            self.replay.handle_key(self.inputs.popleft(), now)
            return True
        return self.replay.tick(now)
