"""Per-panel cursors, overlay state and rolling metrics owned by AppState."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from pgtop.history import RingHistory
from pgtop.modes import BottomPanel
from pgtop.models import Snapshot
from pgtop.sorting import IndexSort, QuerySort, SortColumn, StatementSort, TableStatSort


@dataclass(slots=True)
class TableViewState:
    """
    Selection cursor and sort order for one table panel.

    The cursor indexes the panel's filtered+sorted index list, never the raw
    snapshot collection. Every movement takes the current list length so the
    cursor is always None or a valid position.
    """

    sort_column: SortColumn | None = None
    sort_ascending: bool = False
    selected: int | None = None

    def select_next(self, n: int) -> None:
        if n <= 0:
            self.selected = None
        elif self.selected is None:
            self.selected = 0
        else:
            self.selected = min(self.selected + 1, n - 1)

    def select_prev(self, n: int) -> None:
        if n <= 0:
            self.selected = None
        elif self.selected is None:
            self.selected = 0
        else:
            self.selected = max(0, min(self.selected, n) - 1)

    def select_first(self, n: int) -> None:
        self.selected = 0 if n > 0 else None

    def clamp(self, n: int) -> None:
        """Pull a cursor that points past the end back onto the last row."""
        if self.selected is not None and self.selected >= n:
            self.selected = n - 1 if n > 0 else None

    def cycle_sort(self) -> None:
        """Advance to the next sort column, or flip direction if there is only one."""
        if self.sort_column is None:
            return
        next_column = self.sort_column.next()
        if next_column == self.sort_column:
            self.sort_ascending = not self.sort_ascending
        else:
            self.sort_column = next_column
            self.sort_ascending = next_column.default_ascending

    @property
    def direction_arrow(self) -> str:
        return "↑" if self.sort_ascending else "↓"


# Panels whose rows are addressable by a cursor
TABLE_PANELS = (
    BottomPanel.QUERIES,
    BottomPanel.BLOCKING,
    BottomPanel.TABLE_STATS,
    BottomPanel.REPLICATION,
    BottomPanel.VACUUM_PROGRESS,
    BottomPanel.WRAPAROUND,
    BottomPanel.INDEXES,
    BottomPanel.STATEMENTS,
    BottomPanel.SETTINGS,
    BottomPanel.EXTENSIONS,
)


def _initial_view(panel: BottomPanel) -> TableViewState:
    if panel is BottomPanel.QUERIES:
        return TableViewState(QuerySort.DURATION, False)
    if panel is BottomPanel.INDEXES:
        return TableViewState(IndexSort.SCANS, True)
    if panel is BottomPanel.TABLE_STATS:
        return TableViewState(TableStatSort.DEAD_TUPLES, False)
    if panel is BottomPanel.STATEMENTS:
        return TableViewState(StatementSort.TOTAL_TIME, False)
    return TableViewState()


class PanelStates:
    """One TableViewState per table panel."""

    def __init__(self) -> None:
        self._views = {panel: _initial_view(panel) for panel in TABLE_PANELS}

    def get(self, panel: BottomPanel) -> TableViewState | None:
        return self._views.get(panel)

    def __getitem__(self, panel: BottomPanel) -> TableViewState:
        return self._views[panel]

    def __contains__(self, panel: BottomPanel) -> bool:
        return panel in self._views

    def items(self):
        return self._views.items()

    def reset_selection(self, panel: BottomPanel, n: int) -> None:
        """Move the panel's cursor back to the first row (or None if empty)."""
        view = self._views.get(panel)
        if view is not None:
            view.select_first(n)


@dataclass(slots=True)
class FilterState:
    """
    Fuzzy filter text for the active panel.

    ``active`` is set only once the filter is committed with Enter; while the
    Filter overlay is open the text is applied as a live preview.
    """

    text: str = ""
    active: bool = False

    def clear(self) -> None:
        self.text = ""
        self.active = False

    def push_char(self, ch: str) -> None:
        self.text += ch

    def pop_char(self) -> None:
        self.text = self.text[:-1]


@dataclass(slots=True)
class ReplayState:
    """Playback cursor shown while replaying a recording. Position is 0-based."""

    filename: str
    total: int
    position: int = 0
    speed: float = 1.0
    playing: bool = False


@dataclass(slots=True)
class RecordingsBrowser:
    """Contents of the Recordings overlay."""

    recordings: list = field(default_factory=list)
    selected: int = 0
    pending_path: Path | None = None

    def current(self):
        if 0 <= self.selected < len(self.recordings):
            return self.recordings[self.selected]
        return None

    def select_next(self) -> None:
        if self.selected < len(self.recordings) - 1:
            self.selected += 1

    def select_prev(self) -> None:
        if self.selected > 0:
            self.selected -= 1

    def clamp(self) -> None:
        if self.selected >= len(self.recordings):
            self.selected = max(0, len(self.recordings) - 1)


@dataclass(slots=True)
class ConfigOverlay:
    selected: int = 0
    input_buffer: str = ""


@dataclass(slots=True)
class UiFeedback:
    """Messages and indicators shown in the footer."""

    last_error: str | None = None
    status_message: str | None = None
    bloat_loading: bool = False
    spinner_frame: int = 0


@dataclass(slots=True)
class ConnectionInfo:
    host: str
    port: int
    dbname: str
    user: str
    ssl_mode: str | None = None

    @property
    def display(self) -> str:
        return f"{self.user}@{self.host}:{self.port}/{self.dbname}"


@dataclass(slots=True)
class _PrevCounters:
    timestamp: datetime
    xact_commit: int
    xact_rollback: int
    blks_read: int
    wal_bytes: int | None


class MetricsHistory:
    """
    Rolling sparkline buffers and counter-delta rates.

    Rates are only computed between two snapshots that both carry database
    counters. A non-positive elapsed time or a negative delta (counters reset
    by a server restart) skips that rate for the tick.
    """

    def __init__(self, capacity: int) -> None:
        self.connections = RingHistory(capacity)
        self.avg_query_time_ms = RingHistory(capacity)
        self.hit_ratio = RingHistory(capacity)
        self.active_queries = RingHistory(capacity)
        self.lock_count = RingHistory(capacity)
        self.tps = RingHistory(capacity)
        self.wal_rate_kb = RingHistory(capacity)
        self.blks_read = RingHistory(capacity)

        self.current_tps: float | None = None
        self.current_wal_rate: float | None = None
        self.current_blks_read_rate: float | None = None

        self._prev: _PrevCounters | None = None

    def push_snapshot_metrics(self, snap: Snapshot) -> None:
        self.connections.push(snap.summary.total_backends)

        running = [q.duration_secs for q in snap.active_queries if q.state in ("active", "idle in transaction")]
        avg_ms = sum(running) / len(running) * 1000.0 if running else 0.0
        self.avg_query_time_ms.push(avg_ms)

        # Stored per-mille so the sparkline has integer resolution
        self.hit_ratio.push(snap.buffer_cache.hit_ratio * 1000.0)
        self.active_queries.push(snap.summary.active_query_count)
        self.lock_count.push(snap.summary.lock_count)

    def calculate_rates(self, snap: Snapshot) -> None:
        prev = self._prev
        db = snap.db_stats
        if prev is not None and db is not None:
            secs = (snap.timestamp - prev.timestamp).total_seconds()
            if secs > 0:
                commits = db.xact_commit - prev.xact_commit
                rollbacks = db.xact_rollback - prev.xact_rollback
                if commits >= 0 and rollbacks >= 0:
                    self.current_tps = (commits + rollbacks) / secs
                    self.tps.push(self.current_tps)

                blocks = db.blks_read - prev.blks_read
                if blocks >= 0:
                    self.current_blks_read_rate = blocks / secs
                    self.blks_read.push(self.current_blks_read_rate)

                if snap.wal_stats is not None and prev.wal_bytes is not None:
                    wal_bytes = snap.wal_stats.wal_bytes - prev.wal_bytes
                    if wal_bytes >= 0:
                        self.current_wal_rate = wal_bytes / secs
                        self.wal_rate_kb.push(self.current_wal_rate / 1024.0)

        if db is not None:
            self._prev = _PrevCounters(
                timestamp=snap.timestamp,
                xact_commit=db.xact_commit,
                xact_rollback=db.xact_rollback,
                blks_read=db.blks_read,
                wal_bytes=snap.wal_stats.wal_bytes if snap.wal_stats is not None else None,
            )
