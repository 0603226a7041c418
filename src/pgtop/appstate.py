"""The application state machine: snapshot, panels, view modes and queued actions."""

import dataclasses
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pyperclip

from pgtop.config import AppConfig, ConfigItem
from pgtop.events import KeyEvent
from pgtop.models import BloatEstimate, ServerInfo, Snapshot
from pgtop.modes import (
    ActionQueue,
    AppAction,
    BottomPanel,
    CancelQueries,
    CancelQuery,
    Config,
    ConfigEditField,
    Confirm,
    ConfirmAction,
    ConfirmCancel,
    ConfirmCancelBatch,
    ConfirmCancelChoice,
    ConfirmDeleteRecording,
    ConfirmKill,
    ConfirmKillBatch,
    ConfirmKillChoice,
    ConfirmResetStatements,
    Filter,
    ForceRefresh,
    Help,
    Inspect,
    InspectTarget,
    Normal,
    Recordings,
    RefreshBloat,
    RefreshIntervalChanged,
    ResetStatStatements,
    SaveConfig,
    TerminateBackend,
    TerminateBackends,
    ViewMode,
)
from pgtop.recorder import delete_recording, list_recordings
from pgtop.sorting import filter_indices, sort_indices
from pgtop.state import (
    ConfigOverlay,
    ConnectionInfo,
    FilterState,
    MetricsHistory,
    PanelStates,
    RecordingsBrowser,
    ReplayState,
    UiFeedback,
)

logger = logging.getLogger(__name__)

CLIPBOARD_PREVIEW_LEN = 40
PAGE_SIZE = 10
# Renderers clamp scroll offsets to the content height
OVERLAY_SCROLL_MAX = 65535

PANEL_KEYS = {
    "Q": BottomPanel.QUERIES,
    "tab": BottomPanel.BLOCKING,
    "w": BottomPanel.WAIT_EVENTS,
    "t": BottomPanel.TABLE_STATS,
    "R": BottomPanel.REPLICATION,
    "v": BottomPanel.VACUUM_PROGRESS,
    "x": BottomPanel.WRAPAROUND,
    "I": BottomPanel.INDEXES,
    "S": BottomPanel.STATEMENTS,
    "A": BottomPanel.WAL_IO,
    "P": BottomPanel.SETTINGS,
    "E": BottomPanel.EXTENSIONS,
}


@dataclass(frozen=True, slots=True)
class PanelRows:
    """How a table panel finds its rows, identifies them and copies them."""

    rows: Callable[["AppState"], Sequence[Any]]
    key: Callable[[Any], int | str]
    copy_text: Callable[[Any], str | None]


def _snapshot_rows(attr: str) -> Callable[["AppState"], Sequence[Any]]:
    def rows(state: "AppState") -> Sequence[Any]:
        return getattr(state.snapshot, attr) if state.snapshot is not None else []

    return rows


PANEL_ROWS: dict[BottomPanel, PanelRows] = {
    BottomPanel.QUERIES: PanelRows(_snapshot_rows("active_queries"), lambda q: q.pid, lambda q: q.query),
    BottomPanel.INDEXES: PanelRows(_snapshot_rows("indexes"), lambda i: i.key, lambda i: i.index_definition),
    BottomPanel.STATEMENTS: PanelRows(_snapshot_rows("stat_statements"), lambda s: s.queryid, lambda s: s.query),
    BottomPanel.TABLE_STATS: PanelRows(_snapshot_rows("table_stats"), lambda t: t.key, lambda t: t.key),
    BottomPanel.REPLICATION: PanelRows(
        _snapshot_rows("replication"), lambda r: r.pid, lambda r: r.application_name or ""
    ),
    BottomPanel.BLOCKING: PanelRows(
        _snapshot_rows("blocking_info"), lambda b: b.blocked_pid, lambda b: b.blocked_query or ""
    ),
    BottomPanel.VACUUM_PROGRESS: PanelRows(_snapshot_rows("vacuum_progress"), lambda v: v.pid, lambda v: v.table_name),
    BottomPanel.WRAPAROUND: PanelRows(_snapshot_rows("wraparound"), lambda w: w.datname, lambda w: w.datname),
    BottomPanel.SETTINGS: PanelRows(
        lambda state: state.server_info.settings, lambda s: s.name, lambda s: f"{s.name} = {s.setting}"
    ),
    BottomPanel.EXTENSIONS: PanelRows(
        lambda state: state.server_info.extensions_list, lambda e: e.name, lambda e: e.name
    ),
}


def _carry_bloat(rows: list, previous: list) -> list:
    known = {row.key: row for row in previous if row.bloat_pct is not None}
    if not known:
        return rows
    carried = []
    for row in rows:
        old = known.get(row.key)
        if old is not None:
            row = dataclasses.replace(
                row, bloat_bytes=old.bloat_bytes, bloat_pct=old.bloat_pct, bloat_source=old.bloat_source
            )
        carried.append(row)
    return carried


def _apply_estimates(rows: list, estimates: dict[str, BloatEstimate]) -> list:
    applied = []
    for row in rows:
        estimate = estimates.get(row.key)
        if estimate is not None:
            row = dataclasses.replace(
                row,
                bloat_bytes=estimate.bloat_bytes,
                bloat_pct=estimate.bloat_pct,
                bloat_source=estimate.source,
            )
        applied.append(row)
    return applied


class AppState:
    """
    Aggregate root for everything the UI shows.

    Only the runtime loop mutates an AppState: snapshots and worker results
    arrive through update(), update_error() and apply_bloat(), and key presses
    through handle_key(). Side effects are never performed here; they are
    queued on ``actions`` for the runtime to hand to the worker.
    """

    def __init__(
        self,
        connection: ConnectionInfo,
        refresh_interval: int,
        history_len: int,
        config: AppConfig,
        server_info: ServerInfo,
        clipboard: Callable[[str], None] = pyperclip.copy,
    ) -> None:
        self.connection = connection
        self.refresh_interval_secs = refresh_interval
        self.config = config
        self.server_info = server_info
        self.running = True
        self.paused = False
        self.snapshot: Snapshot | None = None
        self.view_mode: ViewMode = Normal()
        self.bottom_panel = BottomPanel.QUERIES
        self.panels = PanelStates()
        self.metrics = MetricsHistory(history_len)
        self.feedback = UiFeedback()
        self.config_overlay = ConfigOverlay()
        self.filter = FilterState()
        self.replay: ReplayState | None = None
        self.overlay_scroll = 0
        self.recordings = RecordingsBrowser()
        self.actions = ActionQueue()
        self._clipboard = clipboard

    @classmethod
    def for_replay(
        cls,
        connection: ConnectionInfo,
        history_len: int,
        config: AppConfig,
        server_info: ServerInfo,
        filename: str,
        total: int,
        clipboard: Callable[[str], None] = pyperclip.copy,
    ) -> "AppState":
        """A state for replaying a recording; live polling is disabled."""
        state = cls(connection, 0, history_len, config, server_info, clipboard=clipboard)
        state.replay = ReplayState(filename=filename, total=total)
        return state

    @property
    def is_replay(self) -> bool:
        return self.replay is not None

    @property
    def pending_action(self) -> AppAction | None:
        return self.actions.pending

    def queue_action(self, action: AppAction) -> None:
        self.actions.push(action)

    # Data updates

    def update(self, snapshot: Snapshot) -> None:
        """Install a new snapshot, carrying bloat estimates forward by "schema.name"."""
        self.metrics.push_snapshot_metrics(snapshot)
        self.metrics.calculate_rates(snapshot)

        if self.snapshot is not None:
            # The caller keeps its snapshot untouched; replay steps over the same objects
            snapshot = dataclasses.replace(
                snapshot,
                table_stats=_carry_bloat(snapshot.table_stats, self.snapshot.table_stats),
                indexes=_carry_bloat(snapshot.indexes, self.snapshot.indexes),
            )

        self.snapshot = snapshot
        self.feedback.last_error = None
        self._clamp_all()

    def update_error(self, message: str) -> None:
        self.feedback.last_error = message

    def apply_bloat(
        self,
        table_bloat: dict[str, BloatEstimate],
        index_bloat: dict[str, BloatEstimate],
    ) -> None:
        if self.snapshot is None:
            return
        self.snapshot = dataclasses.replace(
            self.snapshot,
            table_stats=_apply_estimates(self.snapshot.table_stats, table_bloat),
            indexes=_apply_estimates(self.snapshot.indexes, index_bloat),
        )

    def _clamp_all(self) -> None:
        for panel, view in self.panels.items():
            view.clamp(len(self.sorted_indices(panel)))

    # Row lookup

    def rows(self, panel: BottomPanel) -> Sequence[Any]:
        panel_rows = PANEL_ROWS.get(panel)
        return panel_rows.rows(self) if panel_rows is not None else []

    def should_apply_filter(self, panel: BottomPanel) -> bool:
        return (
            self.bottom_panel == panel
            and bool(self.filter.text)
            and (self.filter.active or isinstance(self.view_mode, Filter))
        )

    def sorted_indices(self, panel: BottomPanel) -> list[int]:
        """Indices into the panel's rows after filtering and sorting."""
        rows = self.rows(panel)
        if self.should_apply_filter(panel):
            indices = filter_indices(rows, self.filter.text)
        else:
            indices = list(range(len(rows)))
        view = self.panels.get(panel)
        if view is not None and view.sort_column is not None:
            indices = sort_indices(indices, rows, view.sort_column, view.sort_ascending)
        return indices

    def _selected_row(self, panel: BottomPanel, default_first: bool = True) -> Any | None:
        view = self.panels.get(panel)
        if view is None:
            return None
        cursor = view.selected
        if cursor is None:
            if not default_first:
                return None
            cursor = 0
        indices = self.sorted_indices(panel)
        if cursor >= len(indices):
            return None
        return self.rows(panel)[indices[cursor]]

    def selected_key(self, panel: BottomPanel) -> int | str | None:
        """Stable id of the row under the cursor; the first row when nothing is selected."""
        row = self._selected_row(panel)
        return PANEL_ROWS[panel].key(row) if row is not None else None

    def selected_query_pid(self) -> int | None:
        """PID under the cursor; requires an explicit selection."""
        row = self._selected_row(BottomPanel.QUERIES, default_first=False)
        return row.pid if row is not None else None

    def selected_index_key(self) -> str | None:
        return self.selected_key(BottomPanel.INDEXES)

    def selected_statement_queryid(self) -> int | None:
        return self.selected_key(BottomPanel.STATEMENTS)

    def selected_table_key(self) -> str | None:
        return self.selected_key(BottomPanel.TABLE_STATS)

    def filtered_pids(self) -> list[int]:
        """PIDs of every query currently visible, in display order."""
        rows = self.rows(BottomPanel.QUERIES)
        return [rows[i].pid for i in self.sorted_indices(BottomPanel.QUERIES)]

    def find_row(self, target: InspectTarget) -> Any | None:
        panel_rows = PANEL_ROWS.get(target.panel)
        if panel_rows is None:
            return None
        return next((row for row in panel_rows.rows(self) if panel_rows.key(row) == target.key), None)

    def inspected_row(self) -> Any | None:
        """The row the Inspect overlay points at, or None if it has disappeared."""
        if not isinstance(self.view_mode, Inspect):
            return None
        return self.find_row(self.view_mode.target)

    # Helpers

    def _copy_to_clipboard(self, text: str) -> None:
        try:
            self._clipboard(text)
        except pyperclip.PyperclipException as e:
            self.feedback.status_message = f"Clipboard error: {e}"
            return
        preview = text[:CLIPBOARD_PREVIEW_LEN]
        suffix = "..." if len(text) > CLIPBOARD_PREVIEW_LEN else ""
        self.feedback.status_message = f"Copied: {preview}{suffix}"

    def _yank_selected(self) -> None:
        row = self._selected_row(self.bottom_panel)
        if row is None:
            return
        text = PANEL_ROWS[self.bottom_panel].copy_text(row)
        if text:
            self._copy_to_clipboard(text)

    def _reset_panel_selection(self) -> None:
        panel = self.bottom_panel
        if panel in self.panels:
            self.panels.reset_selection(panel, len(self.sorted_indices(panel)))

    def _switch_panel(self, target: BottomPanel) -> None:
        self.bottom_panel = BottomPanel.QUERIES if self.bottom_panel == target else target
        self.filter.clear()
        self.view_mode = Normal()
        self.overlay_scroll = 0

    def _open_inspect(self, panel: BottomPanel, key: int | str | None) -> None:
        if key is None:
            return
        self.overlay_scroll = 0
        self.view_mode = Inspect(InspectTarget(panel, key))

    def _list_recordings(self) -> None:
        self.recordings.recordings = list_recordings(self.config.recordings_path())
        self.recordings.clamp()

    # Key dispatch

    def handle_key(self, event: KeyEvent) -> None:
        """
        Route a key press through the four input layers.

        An open overlay consumes every key. Otherwise global keys are tried
        first, then panel switches, then the active panel's own keys.
        """
        mode = self.view_mode
        if not isinstance(mode, Normal):
            if isinstance(mode, Confirm):
                self._handle_confirm_key(event, mode.action)
            elif isinstance(mode, Inspect):
                self._handle_inspect_key(event, mode.target)
            elif isinstance(mode, Config):
                self._handle_config_key(event)
            elif isinstance(mode, ConfigEditField):
                self._handle_config_edit_key(event)
            elif isinstance(mode, Help):
                self._handle_help_key(event)
            elif isinstance(mode, Filter):
                self._handle_filter_key(event)
            elif isinstance(mode, Recordings):
                self._handle_recordings_key(event)
            return

        if self._handle_global_key(event):
            return
        if self._handle_panel_switch_key(event):
            return
        self._handle_panel_key(event)

    def _handle_global_key(self, event: KeyEvent) -> bool:
        key = event.key
        if key in ("q", "escape"):
            if self.bottom_panel == BottomPanel.QUERIES:
                self.running = False
            else:
                self._switch_panel(BottomPanel.QUERIES)
        elif key == "ctrl+c":
            self.running = False
        elif key == "p" and not self.is_replay:
            self.paused = not self.paused
        elif key == "r" and not self.is_replay:
            self.queue_action(ForceRefresh())
        elif key == "?":
            self.overlay_scroll = 0
            self.view_mode = Help()
        elif key == ",":
            self.view_mode = Config()
        elif key == "y":
            self._yank_selected()
        elif key == "L" and not self.is_replay:
            self.recordings.selected = 0
            self._list_recordings()
            self.view_mode = Recordings()
        else:
            return False
        return True

    def _handle_panel_switch_key(self, event: KeyEvent) -> bool:
        target = PANEL_KEYS.get(event.key)
        if target is not None:
            self._switch_panel(target)
            return True
        if event.key == "/":
            if self.bottom_panel.supports_filter:
                self.view_mode = Filter()
            return True
        return False

    def _handle_panel_key(self, event: KeyEvent) -> None:
        panel = self.bottom_panel
        view = self.panels.get(panel)
        if view is None:
            # Wait events and WAL/IO have no cursor
            return
        key = event.key
        live = not self.is_replay

        if key in ("up", "k"):
            view.select_prev(len(self.sorted_indices(panel)))
            self.feedback.status_message = None
        elif key in ("down", "j"):
            view.select_next(len(self.sorted_indices(panel)))
            self.feedback.status_message = None
        elif key == "enter" or (key == "i" and panel is BottomPanel.QUERIES):
            if panel is BottomPanel.QUERIES:
                self._open_inspect(panel, self.selected_query_pid())
            else:
                self._open_inspect(panel, self.selected_key(panel))
        elif key == "s" and view.sort_column is not None:
            view.cycle_sort()
            view.select_first(len(self.sorted_indices(panel)))
            self.feedback.status_message = f"Sort: {view.sort_column.label} {view.direction_arrow}"
        elif key in ("K", "C") and live and panel is BottomPanel.QUERIES:
            self._confirm_signal(kill=key == "K")
        elif key == "b" and live and panel in (BottomPanel.INDEXES, BottomPanel.TABLE_STATS):
            self.queue_action(RefreshBloat())
            self.feedback.status_message = "Refreshing bloat estimates..."
            self.feedback.bloat_loading = True
        elif key == "X" and live and panel is BottomPanel.STATEMENTS:
            self.view_mode = Confirm(ConfirmResetStatements())

    def _confirm_signal(self, kill: bool) -> None:
        pid = self.selected_query_pid()
        if pid is None:
            return
        pids = tuple(self.filtered_pids())
        if self.filter.active and len(pids) > 1:
            action = ConfirmKillChoice(pid, pids) if kill else ConfirmCancelChoice(pid, pids)
        else:
            action = ConfirmKill(pid) if kill else ConfirmCancel(pid)
        self.view_mode = Confirm(action)

    # Overlays

    def _handle_confirm_key(self, event: KeyEvent, action: ConfirmAction) -> None:
        if isinstance(action, ConfirmCancel):
            self._yes_no(event, CancelQuery(action.pid), "Cancel aborted")
        elif isinstance(action, ConfirmKill):
            self._yes_no(event, TerminateBackend(action.pid), "Kill aborted")
        elif isinstance(action, ConfirmCancelChoice):
            batch = Confirm(ConfirmCancelBatch(action.all_pids))
            self._choice(event, CancelQuery(action.selected_pid), batch, "Cancel aborted")
        elif isinstance(action, ConfirmKillChoice):
            batch = Confirm(ConfirmKillBatch(action.all_pids))
            self._choice(event, TerminateBackend(action.selected_pid), batch, "Kill aborted")
        elif isinstance(action, ConfirmCancelBatch):
            self._yes_no(event, CancelQueries(action.pids), "Batch cancel aborted")
        elif isinstance(action, ConfirmKillBatch):
            self._yes_no(event, TerminateBackends(action.pids), "Batch kill aborted")
        elif isinstance(action, ConfirmResetStatements):
            self._yes_no(event, ResetStatStatements(), "Reset aborted")
        elif isinstance(action, ConfirmDeleteRecording):
            self._confirm_delete_recording(event, action.path)

    def _yes_no(self, event: KeyEvent, action: AppAction, abort_message: str) -> None:
        self.view_mode = Normal()
        if event.key in ("y", "Y"):
            self.queue_action(action)
        else:
            self.feedback.status_message = abort_message

    def _choice(self, event: KeyEvent, single: AppAction, batch: ViewMode, abort_message: str) -> None:
        if event.key in ("1", "o"):
            self.queue_action(single)
            self.view_mode = Normal()
        elif event.key == "a":
            self.view_mode = batch
        elif event.key == "escape":
            self.view_mode = Normal()
            self.feedback.status_message = abort_message

    def _confirm_delete_recording(self, event: KeyEvent, path: Path) -> None:
        if event.key in ("y", "Y"):
            try:
                delete_recording(path)
            except OSError as e:
                logger.warning("Could not delete recording %s: %s", path, e)
                self.feedback.status_message = "Failed to delete recording"
            else:
                self.feedback.status_message = "Recording deleted"
                self._list_recordings()
        self.view_mode = Recordings()

    def _scroll_overlay(self, event: KeyEvent) -> bool:
        key = event.key
        if key in ("up", "k"):
            self.overlay_scroll = max(0, self.overlay_scroll - 1)
        elif key in ("down", "j"):
            self.overlay_scroll = min(OVERLAY_SCROLL_MAX, self.overlay_scroll + 1)
        elif key in ("pageup", "ctrl+u"):
            self.overlay_scroll = max(0, self.overlay_scroll - PAGE_SIZE)
        elif key in ("pagedown", "ctrl+d"):
            self.overlay_scroll = min(OVERLAY_SCROLL_MAX, self.overlay_scroll + PAGE_SIZE)
        elif key == "g":
            self.overlay_scroll = 0
        elif key == "G":
            self.overlay_scroll = OVERLAY_SCROLL_MAX
        else:
            return False
        return True

    def _handle_inspect_key(self, event: KeyEvent, target: InspectTarget) -> None:
        key = event.key
        is_query = target.panel is BottomPanel.QUERIES
        if key in ("escape", "q") or (key == "enter" and is_query):
            self.overlay_scroll = 0
            self.view_mode = Normal()
            return
        if key == "y":
            row = self.find_row(target)
            text = PANEL_ROWS[target.panel].copy_text(row) if row is not None else None
            if text:
                self._copy_to_clipboard(text)
            return
        if is_query and not self.is_replay and key in ("K", "C"):
            pid = int(target.key)
            self.view_mode = Confirm(ConfirmKill(pid) if key == "K" else ConfirmCancel(pid))
            return
        self._scroll_overlay(event)

    def _handle_config_key(self, event: KeyEvent) -> None:
        key = event.key
        items = list(ConfigItem)
        if key in ("escape", "q"):
            self.queue_action(SaveConfig())
            self.view_mode = Normal()
        elif key in ("up", "k"):
            self.config_overlay.selected = max(0, self.config_overlay.selected - 1)
        elif key in ("down", "j"):
            self.config_overlay.selected = min(len(items) - 1, self.config_overlay.selected + 1)
        elif key in ("left", "h", "right", "l"):
            self._config_adjust(items[self.config_overlay.selected], 1 if key in ("right", "l") else -1)
        elif key == "enter" and items[self.config_overlay.selected] is ConfigItem.RECORDINGS_DIR:
            self.config_overlay.input_buffer = self.config.recordings_dir or ""
            self.view_mode = ConfigEditField()

    def _config_adjust(self, item: ConfigItem, direction: int) -> None:
        self.config.adjust(item, direction)
        if item is ConfigItem.REFRESH_INTERVAL:
            self.refresh_interval_secs = self.config.refresh_interval_secs
            self.queue_action(RefreshIntervalChanged())

    def _handle_config_edit_key(self, event: KeyEvent) -> None:
        key = event.key
        if key == "escape":
            self.config_overlay.input_buffer = ""
            self.view_mode = Config()
        elif key == "enter":
            value = self.config_overlay.input_buffer.strip()
            self.config.recordings_dir = value or None
            self.config_overlay.input_buffer = ""
            self.view_mode = Config()
        elif key == "backspace":
            self.config_overlay.input_buffer = self.config_overlay.input_buffer[:-1]
        elif event.is_char:
            self.config_overlay.input_buffer += key

    def _handle_help_key(self, event: KeyEvent) -> None:
        if event.key in ("escape", "q", "enter"):
            self.overlay_scroll = 0
            self.view_mode = Normal()
        else:
            self._scroll_overlay(event)

    def _handle_filter_key(self, event: KeyEvent) -> None:
        key = event.key
        if key == "escape":
            self.filter.clear()
            self.view_mode = Normal()
        elif key == "enter":
            self.filter.active = bool(self.filter.text)
            self.view_mode = Normal()
        elif key == "backspace":
            self.filter.pop_char()
        elif event.is_char:
            self.filter.push_char(key)
        else:
            return
        self._reset_panel_selection()

    def _handle_recordings_key(self, event: KeyEvent) -> None:
        key = event.key
        if key in ("escape", "q"):
            self.view_mode = Normal()
        elif key in ("up", "k"):
            self.recordings.select_prev()
        elif key in ("down", "j"):
            self.recordings.select_next()
        elif key == "enter":
            recording = self.recordings.current()
            if recording is not None:
                self.recordings.pending_path = recording.path
                self.running = False
        elif key == "d":
            recording = self.recordings.current()
            if recording is not None:
                self.view_mode = Confirm(ConfirmDeleteRecording(recording.path))
