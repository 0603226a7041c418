"""Rich renderables for each region of the screen.

Every function takes the AppState and the ThemeConfig for the frame and
returns something a textual Static can display. Nothing here mutates state.
"""

from dataclasses import fields, is_dataclass
from datetime import datetime, timezone

from rich.console import Group
from rich.table import Table
from rich.text import Text

from pgtop.appstate import AppState
from pgtop.config import ConfigItem, GraphMarker, ThemeConfig
from pgtop.history import RingHistory
from pgtop.models import utcnow
from pgtop.modes import (
    BottomPanel,
    Config,
    ConfigEditField,
    Confirm,
    ConfirmCancel,
    ConfirmCancelBatch,
    ConfirmCancelChoice,
    ConfirmDeleteRecording,
    ConfirmKill,
    ConfirmKillBatch,
    ConfirmKillChoice,
    ConfirmResetStatements,
    Filter,
    Help,
    Inspect,
    Recordings,
)

SPINNER_FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
SPARK_CHARS = {
    GraphMarker.BRAILLE: " ⡀⣀⣄⣤⣦⣶⣷⣿",
    GraphMarker.HALF_BLOCK: " ▁▂▃▄▅▆▇█",
    GraphMarker.BLOCK: " ░▒▓█",
}
QUERY_PREVIEW_LEN = 80

HELP_LINES = [
    ("Navigation", ""),
    ("↑/k ↓/j", "Move selection"),
    ("Enter", "Inspect selected row"),
    ("s", "Cycle sort column"),
    ("/", "Fuzzy filter (Queries, Indexes, Statements, Tables, Settings, Extensions)"),
    ("y", "Copy selected row to clipboard"),
    ("Panels", ""),
    ("Q", "Active queries"),
    ("Tab", "Blocking chains"),
    ("w", "Wait events"),
    ("t", "Table stats"),
    ("R", "Replication"),
    ("v", "Vacuum progress"),
    ("x", "Transaction ID wraparound"),
    ("I", "Indexes"),
    ("S", "pg_stat_statements"),
    ("A", "WAL & I/O"),
    ("P", "Server settings"),
    ("E", "Extensions"),
    ("Actions", ""),
    ("C / K", "Cancel query / terminate backend (all filtered with a filter)"),
    ("b", "Refresh bloat estimates (Tables, Indexes)"),
    ("X", "Reset pg_stat_statements"),
    ("p", "Pause / resume refresh"),
    ("r", "Refresh now"),
    ("L", "Browse recordings"),
    (",", "Configuration"),
    ("?", "This help"),
    ("q / Esc", "Back to Queries, or quit"),
    ("Replay", ""),
    ("Space", "Play / pause"),
    ("←/h →/l", "Step backward / forward"),
    ("< / >", "Slower / faster"),
    ("g / G", "Jump to start / end"),
]


def format_bytes(size: int | float | None) -> str:
    """Format bytes as human-readable string."""
    if size is None:
        return "-"
    for unit in ["B", "K", "M", "G", "T"]:
        if abs(size) < 1024:
            return f"{size:.1f}{unit}" if unit != "B" else f"{int(size)}B"
        size = size / 1024
    return f"{size:.1f}P"


def format_duration(secs: float | None) -> str:
    if secs is None:
        return "-"
    if secs < 1:
        return f"{secs * 1000:.0f}ms"
    if secs < 60:
        return f"{secs:.1f}s"
    if secs < 3600:
        return f"{int(secs // 60)}m{int(secs % 60):02d}s"
    hours = int(secs // 3600)
    if hours < 48:
        return f"{hours}h{int(secs % 3600 // 60):02d}m"
    return f"{hours // 24}d{hours % 24:02d}h"


def format_ms(ms: float) -> str:
    return format_duration(ms / 1000.0)


def format_count(value: int | float) -> str:
    if value >= 1_000_000_000:
        return f"{value / 1_000_000_000:.1f}G"
    if value >= 1_000_000:
        return f"{value / 1_000_000:.1f}M"
    if value >= 10_000:
        return f"{value / 1000:.1f}k"
    return str(int(value))


def truncate(text: str | None, width: int) -> str:
    if not text:
        return ""
    text = " ".join(text.split())
    return text if len(text) <= width else text[: width - 1] + "…"


def sparkline(values: list[float], width: int, marker: GraphMarker, peak: float | None = None) -> str:
    """Scale the newest ``width`` values onto the marker's glyph ramp."""
    chars = SPARK_CHARS[marker]
    values = values[-width:] if width > 0 else []
    top = peak if peak is not None else max(values, default=0)
    if top <= 0:
        return chars[0] * len(values)
    levels = len(chars) - 1
    out = []
    for value in values:
        level = round(max(0.0, min(value, top)) / top * levels)
        if value > 0 and level == 0:
            level = 1
        out.append(chars[level])
    return "".join(out)


def _since(then: datetime) -> float:
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    return (utcnow() - then).total_seconds()


def _age(then: datetime | None) -> str:
    if then is None:
        return "never"
    return format_duration(_since(then)) + " ago"


# Header and metrics


def render_header(state: AppState, theme: ThemeConfig) -> Text:
    palette = theme.palette
    text = Text()
    text.append(" pgtop ", style=f"bold {palette.highlight_bg} on {palette.accent}")
    text.append(f" {state.connection.display}", style=palette.fg)
    if state.connection.ssl_mode:
        text.append(f" ssl={state.connection.ssl_mode}", style=palette.fg_dim)
    info = state.server_info
    text.append(f"  {info.version.split(' on ', 1)[0]}", style=palette.fg_dim)
    if state.replay is None:
        text.append(f"  up {format_duration(_since(info.start_time))}", style=palette.fg_dim)

    snap = state.snapshot
    if snap is not None:
        conns = snap.summary.total_backends
        ratio = conns / info.max_connections if info.max_connections else 0.0
        conn_style = palette.danger if ratio >= 0.9 else palette.warn if ratio >= 0.75 else palette.ok
        text.append("\n")
        text.append(" conns ", style=palette.fg_dim)
        text.append(f"{conns}/{info.max_connections}", style=conn_style)
        text.append("  active ", style=palette.fg_dim)
        text.append(str(snap.summary.active_query_count), style=palette.fg)
        text.append("  idle-in-tx ", style=palette.fg_dim)
        idle = snap.summary.idle_in_transaction_count
        text.append(str(idle), style=palette.warn if idle else palette.fg)
        text.append("  waiting ", style=palette.fg_dim)
        text.append(str(snap.summary.waiting_count), style=palette.fg)
        text.append("  locks ", style=palette.fg_dim)
        text.append(str(snap.summary.lock_count), style=palette.fg)
        text.append("  size ", style=palette.fg_dim)
        text.append(format_bytes(snap.db_size), style=palette.fg)
        if snap.summary.oldest_xact_secs is not None:
            text.append("  oldest xact ", style=palette.fg_dim)
            text.append(
                format_duration(snap.summary.oldest_xact_secs),
                style=theme.duration_style(snap.summary.oldest_xact_secs),
            )
        wrap = max((w.pct_towards_wraparound for w in snap.wraparound), default=0.0)
        if wrap >= 50:
            text.append(f"  wraparound {wrap:.0f}%", style=palette.danger if wrap >= 75 else palette.warn)
    return text


def _metric_line(
    label: str, history: RingHistory, value: str, theme: ThemeConfig, width: int, style: str | None = None
) -> Text:
    line = Text()
    line.append(f" {label:<10}", style=theme.palette.fg_dim)
    line.append(sparkline(history.values(), width, theme.marker), style=style or theme.palette.accent)
    line.append(f" {value}", style=theme.palette.fg)
    return line


def render_metrics(state: AppState, theme: ThemeConfig, width: int = 40) -> Group:
    m = state.metrics
    hit = m.hit_ratio.last()
    hit_style = theme.palette.ok
    if hit is not None and hit < 900:
        hit_style = theme.palette.danger
    elif hit is not None and hit < 990:
        hit_style = theme.palette.warn

    lines = [
        _metric_line("conns", m.connections, format_count(m.connections.last() or 0), theme, width),
        _metric_line("active", m.active_queries, format_count(m.active_queries.last() or 0), theme, width),
        _metric_line("avg query", m.avg_query_time_ms, format_ms(m.avg_query_time_ms.last() or 0), theme, width),
        _metric_line(
            "hit ratio",
            m.hit_ratio,
            f"{(hit or 0) / 10:.1f}%" if hit is not None else "-",
            theme,
            width,
            style=hit_style,
        ),
        _metric_line("locks", m.lock_count, format_count(m.lock_count.last() or 0), theme, width),
        _metric_line("tps", m.tps, f"{m.current_tps:.1f}" if m.current_tps is not None else "-", theme, width),
        _metric_line(
            "wal",
            m.wal_rate_kb,
            f"{format_bytes(m.current_wal_rate)}/s" if m.current_wal_rate is not None else "-",
            theme,
            width,
        ),
        _metric_line(
            "blks read",
            m.blks_read,
            f"{m.current_blks_read_rate:.0f}/s" if m.current_blks_read_rate is not None else "-",
            theme,
            width,
        ),
    ]
    return Group(*lines)


# Panels


def _table(theme: ThemeConfig, title: str) -> Table:
    return Table(
        title=title,
        title_justify="left",
        title_style=f"bold {theme.palette.accent}",
        header_style=f"bold {theme.palette.fg}",
        border_style=theme.palette.border,
        style=theme.palette.fg,
        expand=True,
        box=None,
        pad_edge=False,
    )


def _panel_title(state: AppState, panel: BottomPanel) -> str:
    title = panel.label
    view = state.panels.get(panel)
    shown = len(state.sorted_indices(panel)) if view is not None else None
    if shown is not None:
        total = len(state.rows(panel))
        title += f" ({shown}/{total})" if shown != total else f" ({total})"
    if view is not None and view.sort_column is not None:
        title += f"  sort: {view.sort_column.label} {view.direction_arrow}"
    if state.filter.text and state.should_apply_filter(panel):
        title += f"  filter: {state.filter.text}"
    return title


def _visible(indices: list[int], selected: int | None, max_rows: int) -> tuple[int, list[int]]:
    """Window of positions that keeps the cursor on screen."""
    if max_rows <= 0 or len(indices) <= max_rows:
        return 0, indices
    cursor = selected or 0
    start = min(max(0, cursor - max_rows + 1), len(indices) - max_rows)
    return start, indices[start : start + max_rows]


def _bloat_cell(bloat_bytes: int | None, bloat_pct: float | None, theme: ThemeConfig) -> Text:
    if bloat_pct is None:
        return Text("-", style=theme.palette.fg_dim)
    style = theme.palette.danger if bloat_pct >= 50 else theme.palette.warn if bloat_pct >= 20 else theme.palette.fg
    return Text(f"{format_bytes(bloat_bytes)} {bloat_pct:.0f}%", style=style)


def _query_cells(q, theme: ThemeConfig) -> list:
    state_style = theme.palette.ok if q.state == "active" else theme.palette.fg_dim
    if q.state and q.state.startswith("idle in transaction"):
        state_style = theme.palette.warn
    wait = f"{q.wait_event_type}:{q.wait_event}" if q.wait_event_type else ""
    return [
        str(q.pid),
        truncate(q.usename, 12),
        truncate(q.datname, 12),
        Text(q.state or "", style=state_style),
        truncate(wait, 20),
        Text(format_duration(q.duration_secs), style=theme.duration_style(q.duration_secs)),
        truncate(q.query, QUERY_PREVIEW_LEN),
    ]


def _blocking_cells(b, theme: ThemeConfig) -> list:
    return [
        str(b.blocked_pid),
        truncate(b.blocked_user, 12),
        Text(format_duration(b.blocked_duration_secs), style=theme.duration_style(b.blocked_duration_secs)),
        truncate(b.blocked_query, 40),
        str(b.blocker_pid),
        truncate(b.blocker_user, 12),
        b.blocker_state or "",
        truncate(b.blocker_query, 40),
    ]


def _table_stat_cells(t, theme: ThemeConfig) -> list:
    dead_style = theme.palette.danger if t.dead_ratio >= 20 else theme.palette.warn if t.dead_ratio >= 10 else None
    return [
        t.key,
        format_bytes(t.total_size_bytes),
        format_count(t.n_live_tup),
        Text(format_count(t.n_dead_tup), style=dead_style or theme.palette.fg),
        f"{t.dead_ratio:.1f}%",
        format_count(t.seq_scan),
        format_count(t.idx_scan),
        _bloat_cell(t.bloat_bytes, t.bloat_pct, theme),
        _age(t.last_autovacuum or t.last_vacuum),
    ]


def _replication_cells(r, theme: ThemeConfig) -> list:
    lag = r.replay_lag_secs
    return [
        str(r.pid),
        truncate(r.application_name, 16),
        r.client_addr or "local",
        r.state or "",
        r.sent_lsn or "",
        r.replay_lsn or "",
        format_duration(r.write_lag_secs),
        format_duration(r.flush_lag_secs),
        Text(format_duration(lag), style=theme.duration_style(lag or 0.0)),
        r.sync_state or "",
    ]


def _vacuum_cells(v, theme: ThemeConfig) -> list:
    return [
        str(v.pid),
        v.datname or "",
        truncate(v.table_name, 30),
        v.phase,
        f"{v.heap_blks_vacuumed}/{v.heap_blks_total}",
        f"{v.progress_pct:.1f}%",
    ]


def _wraparound_cells(w, theme: ThemeConfig) -> list:
    pct = w.pct_towards_wraparound
    style = theme.palette.danger if pct >= 75 else theme.palette.warn if pct >= 50 else theme.palette.ok
    return [w.datname, format_count(w.xid_age), format_count(w.xids_remaining), Text(f"{pct:.2f}%", style=style)]


def _index_cells(i, theme: ThemeConfig) -> list:
    scans_style = theme.palette.warn if i.idx_scan == 0 else theme.palette.fg
    return [
        i.key,
        truncate(i.table_name, 24),
        format_bytes(i.index_size_bytes),
        Text(format_count(i.idx_scan), style=scans_style),
        format_count(i.idx_tup_read),
        format_count(i.idx_tup_fetch),
        _bloat_cell(i.bloat_bytes, i.bloat_pct, theme),
    ]


def _statement_cells(s, theme: ThemeConfig) -> list:
    return [
        format_count(s.calls),
        format_ms(s.total_exec_time),
        Text(format_ms(s.mean_exec_time), style=theme.duration_style(s.mean_exec_time / 1000.0)),
        format_ms(s.max_exec_time),
        format_count(s.rows),
        f"{s.hit_ratio * 100:.1f}%",
        truncate(s.query, QUERY_PREVIEW_LEN),
    ]


def _setting_cells(s, theme: ThemeConfig) -> list:
    value = f"{s.setting}{s.unit or ''}" if s.unit and s.unit[0].isalpha() else s.setting
    name = Text(s.name, style=theme.palette.warn if s.pending_restart else theme.palette.fg)
    return [name, truncate(value, 30), truncate(s.category, 30), s.source, truncate(s.short_desc, 60)]


def _extension_cells(e, theme: ThemeConfig) -> list:
    return [e.name, e.version, e.schema, truncate(e.description, 60)]


PANEL_COLUMNS = {
    BottomPanel.QUERIES: (("PID", "User", "Database", "State", "Wait", "Duration", "Query"), _query_cells),
    BottomPanel.BLOCKING: (
        ("Blocked", "User", "Waiting", "Blocked Query", "Blocker", "User", "State", "Blocker Query"),
        _blocking_cells,
    ),
    BottomPanel.TABLE_STATS: (
        ("Table", "Size", "Live", "Dead", "Dead %", "Seq Scan", "Idx Scan", "Bloat", "Vacuumed"),
        _table_stat_cells,
    ),
    BottomPanel.REPLICATION: (
        ("PID", "Application", "Client", "State", "Sent", "Replayed", "Write", "Flush", "Replay", "Sync"),
        _replication_cells,
    ),
    BottomPanel.VACUUM_PROGRESS: (("PID", "Database", "Table", "Phase", "Heap Blocks", "Progress"), _vacuum_cells),
    BottomPanel.WRAPAROUND: (("Database", "XID Age", "Remaining", "Towards Wrap"), _wraparound_cells),
    BottomPanel.INDEXES: (("Index", "Table", "Size", "Scans", "Tup Read", "Tup Fetch", "Bloat"), _index_cells),
    BottomPanel.STATEMENTS: (("Calls", "Total", "Mean", "Max", "Rows", "Hit %", "Query"), _statement_cells),
    BottomPanel.SETTINGS: (("Name", "Value", "Category", "Source", "Description"), _setting_cells),
    BottomPanel.EXTENSIONS: (("Name", "Version", "Schema", "Description"), _extension_cells),
}


def render_panel(state: AppState, theme: ThemeConfig, max_rows: int = 0):
    """The active bottom panel as a rich renderable."""
    panel = state.bottom_panel
    if state.snapshot is None and panel not in (BottomPanel.SETTINGS, BottomPanel.EXTENSIONS):
        return Text("Waiting for first snapshot...", style=theme.palette.fg_dim)
    if panel is BottomPanel.WAIT_EVENTS:
        return _render_wait_events(state, theme)
    if panel is BottomPanel.WAL_IO:
        return _render_wal_io(state, theme)

    headers, cells = PANEL_COLUMNS[panel]
    table = _table(theme, _panel_title(state, panel))
    for header in headers:
        table.add_column(header, no_wrap=True, overflow="ellipsis")

    rows = state.rows(panel)
    indices = state.sorted_indices(panel)
    selected = state.panels[panel].selected
    start, window = _visible(indices, selected, max_rows)
    for offset, index in enumerate(window):
        style = f"on {theme.palette.highlight_bg}" if selected == start + offset else None
        table.add_row(*cells(rows[index], theme), style=style)

    if panel is BottomPanel.STATEMENTS and not rows:
        snap = state.snapshot
        if snap.stat_statements_error:
            return Group(table, Text(snap.stat_statements_error, style=theme.palette.danger))
        if not snap.extensions.pg_stat_statements:
            return Group(table, Text("pg_stat_statements is not installed", style=theme.palette.fg_dim))
    return table


def _render_wait_events(state: AppState, theme: ThemeConfig) -> Table:
    table = _table(theme, BottomPanel.WAIT_EVENTS.label)
    table.add_column("Type", no_wrap=True)
    table.add_column("Event", no_wrap=True)
    table.add_column("Count", justify="right")
    table.add_column("", ratio=1)
    events = state.snapshot.wait_events
    top = max((w.count for w in events), default=0)
    for w in events:
        bar_len = round(w.count / top * 30) if top else 0
        table.add_row(w.wait_event_type, w.wait_event, str(w.count), Text("█" * bar_len, style=theme.palette.accent))
    return table


def _render_wal_io(state: AppState, theme: ThemeConfig) -> Table:
    snap = state.snapshot
    metrics = state.metrics
    table = _table(theme, BottomPanel.WAL_IO.label)
    table.add_column("Metric", no_wrap=True, style=theme.palette.fg_dim)
    table.add_column("Value", no_wrap=True)

    def row(label: str, value: str) -> None:
        table.add_row(label, value)

    if snap.wal_stats is not None:
        wal = snap.wal_stats
        row("WAL generated", format_bytes(wal.wal_bytes))
        row("WAL rate", f"{format_bytes(metrics.current_wal_rate)}/s" if metrics.current_wal_rate is not None else "-")
        row("WAL records", format_count(wal.wal_records))
        row("Full page images", format_count(wal.wal_fpi))
        row("WAL buffers full", format_count(wal.wal_buffers_full))
    else:
        row("WAL statistics", "unavailable (PostgreSQL 14+)")
    if snap.checkpoint_stats is not None:
        cp = snap.checkpoint_stats
        row("Checkpoints timed / requested", f"{cp.checkpoints_timed} / {cp.checkpoints_req}")
        row("Checkpoint write / sync", f"{format_ms(cp.checkpoint_write_time)} / {format_ms(cp.checkpoint_sync_time)}")
        row("Buffers written by checkpoints", format_count(cp.buffers_checkpoint))
    if snap.db_stats is not None:
        db = snap.db_stats
        row("Commits / rollbacks", f"{format_count(db.xact_commit)} / {format_count(db.xact_rollback)}")
        row("Blocks read", format_count(db.blks_read))
        row("Tuples returned / fetched", f"{format_count(db.tup_returned)} / {format_count(db.tup_fetched)}")
        row("Deadlocks", str(db.deadlocks))
        row("Temp files", f"{db.temp_files} ({format_bytes(db.temp_bytes)})")
    cache = snap.buffer_cache
    row("Buffer cache hit ratio", f"{cache.hit_ratio * 100:.2f}%")
    row("Blocks hit / read", f"{format_count(cache.blks_hit)} / {format_count(cache.blks_read)}")
    return table


# Footer


def render_footer(state: AppState, theme: ThemeConfig) -> Text:
    palette = theme.palette
    text = Text()
    if state.replay is not None:
        replay = state.replay
        icon = "▶" if replay.playing else "⏸"
        text.append(
            f" {icon} REPLAY {replay.position + 1}/{replay.total} {replay.speed:g}x {replay.filename} ",
            style=f"bold {palette.highlight_bg} on {palette.warn}",
        )
    elif state.paused:
        text.append(" PAUSED ", style=f"bold {palette.highlight_bg} on {palette.warn}")

    if isinstance(state.view_mode, Filter):
        text.append(f" /{state.filter.text}█", style=palette.accent)
    feedback = state.feedback
    if feedback.bloat_loading:
        frame = SPINNER_FRAMES[feedback.spinner_frame % len(SPINNER_FRAMES)]
        text.append(f" {frame}", style=palette.accent)
    if feedback.last_error:
        text.append(f" {feedback.last_error}", style=palette.danger)
    elif feedback.status_message:
        text.append(f" {feedback.status_message}", style=palette.fg)
    if not text.plain.strip():
        text.append(" ?:help  /:filter  s:sort  Enter:inspect  C/K:cancel/kill  ,:config  q:quit", style=palette.fg_dim)
    return text


# Overlays


def _lines_window(lines: list[Text], scroll: int, height: int) -> list[Text]:
    if height <= 0:
        return lines[scroll:]
    scroll = max(0, min(scroll, max(0, len(lines) - height)))
    return lines[scroll : scroll + height]


def _format_field(value) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        return value.isoformat(sep=" ", timespec="seconds")
    if isinstance(value, float):
        return f"{value:.3f}"
    return str(value)


def render_inspect(state: AppState, theme: ThemeConfig, height: int = 0) -> Text:
    target = state.view_mode.target
    row = state.inspected_row()
    text = Text()
    text.append(f"{target.panel.label}: {target.key}\n\n", style=f"bold {theme.palette.accent}")
    if row is None:
        text.append("No longer present in the latest snapshot.\n", style=theme.palette.warn)
        text.append("Press Esc to close.", style=theme.palette.fg_dim)
        return text

    lines = []
    long_fields = []
    for f in fields(row) if is_dataclass(row) else ():
        value = getattr(row, f.name)
        if isinstance(value, str) and len(value) > 60:
            long_fields.append((f.name, value))
            continue
        line = Text()
        line.append(f"{f.name:<24}", style=theme.palette.fg_dim)
        line.append(_format_field(value), style=theme.palette.fg)
        lines.append(line)
    for name, value in long_fields:
        lines.append(Text(""))
        lines.append(Text(name, style=theme.palette.fg_dim))
        lines.extend(Text(part, style=theme.palette.fg) for part in value.splitlines())
    text.append(Text("\n").join(_lines_window(lines, state.overlay_scroll, height)))
    hints = "\n\nEsc:close  y:copy  ↑↓:scroll"
    if target.panel is BottomPanel.QUERIES and not state.is_replay:
        hints += "  C:cancel  K:kill"
    text.append(hints, style=theme.palette.fg_dim)
    return text


def _confirm_text(action) -> tuple[str, str]:
    if isinstance(action, ConfirmCancel):
        return f"Cancel query on PID {action.pid}?", "y:confirm  any other key:abort"
    if isinstance(action, ConfirmKill):
        return f"Terminate backend PID {action.pid}?", "y:confirm  any other key:abort"
    if isinstance(action, ConfirmCancelChoice):
        return (
            f"Cancel PID {action.selected_pid} only, or all {len(action.all_pids)} filtered queries?",
            "1/o:selected only  a:all filtered  Esc:abort",
        )
    if isinstance(action, ConfirmKillChoice):
        return (
            f"Terminate PID {action.selected_pid} only, or all {len(action.all_pids)} filtered backends?",
            "1/o:selected only  a:all filtered  Esc:abort",
        )
    if isinstance(action, ConfirmCancelBatch):
        return f"Cancel {len(action.pids)} queries?", "y:confirm  any other key:abort"
    if isinstance(action, ConfirmKillBatch):
        return f"Terminate {len(action.pids)} backends?", "y:confirm  any other key:abort"
    if isinstance(action, ConfirmDeleteRecording):
        return f"Delete recording {action.path.name}?", "y:delete  any other key:keep"
    if isinstance(action, ConfirmResetStatements):
        return "Reset all pg_stat_statements statistics?", "y:confirm  any other key:abort"
    return "", ""


def render_confirm(state: AppState, theme: ThemeConfig) -> Text:
    question, hints = _confirm_text(state.view_mode.action)
    text = Text()
    text.append(question, style=f"bold {theme.palette.danger}")
    text.append(f"\n\n{hints}", style=theme.palette.fg_dim)
    return text


def render_config(state: AppState, theme: ThemeConfig) -> Text:
    palette = theme.palette
    text = Text()
    text.append("Configuration\n\n", style=f"bold {palette.accent}")
    editing = isinstance(state.view_mode, ConfigEditField)
    for i, item in enumerate(ConfigItem):
        selected = i == state.config_overlay.selected
        style = f"{palette.fg} on {palette.highlight_bg}" if selected else palette.fg
        value = state.config.display_value(item)
        if editing and selected:
            value = f"  {state.config_overlay.input_buffer}█"
        elif selected:
            value = f"◀ {value} ▶"
        else:
            value = f"  {value}"
        text.append(f" {item.label:<22}{value}\n", style=style)
    hint = "Enter:save  Esc:cancel" if editing else "↑↓:select  ←→:change  Enter:edit path  Esc:save and close"
    text.append(f"\n{hint}", style=palette.fg_dim)
    return text


def render_help(state: AppState, theme: ThemeConfig, height: int = 0) -> Text:
    lines = []
    for key, description in HELP_LINES:
        line = Text()
        if not description:
            line.append(key, style=f"bold {theme.palette.accent}")
        else:
            line.append(f"  {key:<12}", style=theme.palette.fg)
            line.append(description, style=theme.palette.fg_dim)
        lines.append(line)
    return Text("\n").join(_lines_window(lines, state.overlay_scroll, height))


def render_recordings(state: AppState, theme: ThemeConfig) -> Text:
    palette = theme.palette
    browser = state.recordings
    text = Text()
    text.append(f"Recordings in {state.config.recordings_path()}\n\n", style=f"bold {palette.accent}")
    if not browser.recordings:
        text.append("No recordings found.\n", style=palette.fg_dim)
    for i, info in enumerate(browser.recordings):
        style = f"{palette.fg} on {palette.highlight_bg}" if i == browser.selected else palette.fg
        when = info.recorded_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        text.append(
            f" {when}  {info.connection_display:<32} {info.pg_version_short:<8} {info.size_display:>8}\n",
            style=style,
        )
    text.append("\nEnter:replay  d:delete  Esc:close", style=palette.fg_dim)
    if state.feedback.status_message:
        text.append(f"\n{state.feedback.status_message}", style=palette.fg)
    return text


def render_overlay(state: AppState, theme: ThemeConfig, height: int = 0):
    """The overlay for the current view mode, or None in Normal and Filter modes."""
    mode = state.view_mode
    if isinstance(mode, Inspect):
        return render_inspect(state, theme, height)
    if isinstance(mode, Confirm):
        return render_confirm(state, theme)
    if isinstance(mode, (Config, ConfigEditField)):
        return render_config(state, theme)
    if isinstance(mode, Help):
        return render_help(state, theme, height)
    if isinstance(mode, Recordings):
        return render_recordings(state, theme)
    return None

