"""Shared fixtures and builders for pgtop tests."""

from datetime import datetime, timedelta, timezone

import pytest

from pgtop.appstate import AppState
from pgtop.config import AppConfig
from pgtop.models import (
    ActiveQuery,
    ActivitySummary,
    BloatEstimate,
    DatabaseStats,
    DetectedExtensions,
    IndexInfo,
    PgExtension,
    PgSetting,
    ServerInfo,
    Snapshot,
    TableStat,
)
from pgtop.state import ConnectionInfo

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Point every XDG directory at a temp dir so nothing touches the real home."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    return tmp_path


class FakeClipboard:
    """Records copied text instead of touching the system clipboard."""

    def __init__(self):
        self.copied: list[str] = []

    def __call__(self, text: str) -> None:
        self.copied.append(text)


@pytest.fixture
def clipboard():
    return FakeClipboard()


def make_server_info(**overrides) -> ServerInfo:
    values = {
        "version": "PostgreSQL 16.2 on x86_64-pc-linux-gnu",
        "start_time": T0 - timedelta(days=1),
        "max_connections": 100,
        "extensions": DetectedExtensions(pg_stat_statements=True),
        "settings": [
            PgSetting(name="max_connections", setting="100", category="Connections"),
            PgSetting(name="shared_buffers", setting="16384", unit="8kB", category="Resource Usage"),
            PgSetting(name="work_mem", setting="4096", unit="kB", category="Resource Usage"),
        ],
        "extensions_list": [
            PgExtension(name="plpgsql", version="1.0", schema="pg_catalog"),
            PgExtension(name="pg_stat_statements", version="1.10", schema="public"),
        ],
    }
    values.update(overrides)
    return ServerInfo(**values)


def make_query(pid: int, duration: float = 1.0, state: str = "active", query: str | None = None, **kw) -> ActiveQuery:
    return ActiveQuery(
        pid=pid,
        usename=kw.pop("usename", "app"),
        datname=kw.pop("datname", "shop"),
        state=state,
        duration_secs=duration,
        query=query if query is not None else f"SELECT {pid}",
        **kw,
    )


def make_snapshot(
    queries: list[ActiveQuery] | None = None,
    timestamp: datetime = T0,
    db_stats: DatabaseStats | None = None,
    **kw,
) -> Snapshot:
    if queries is None:
        queries = [make_query(100, 5.0), make_query(200, 3.0), make_query(300, 1.0)]
    summary = kw.pop("summary", ActivitySummary(total_backends=len(queries), active_query_count=len(queries)))
    return Snapshot(timestamp=timestamp, active_queries=queries, summary=summary, db_stats=db_stats, **kw)


def make_table(schema: str, name: str, dead: int = 0, size: int = 8192, **kw) -> TableStat:
    return TableStat(schemaname=schema, relname=name, n_dead_tup=dead, total_size_bytes=size, **kw)


def make_index(schema: str, name: str, table: str = "orders", scans: int = 0, **kw) -> IndexInfo:
    return IndexInfo(schemaname=schema, table_name=table, index_name=name, idx_scan=scans, **kw)


def make_state(clipboard=None, refresh_interval: int = 2, **kw) -> AppState:
    return AppState(
        ConnectionInfo("localhost", 5432, "shop", "postgres"),
        refresh_interval,
        kw.pop("history_len", 60),
        kw.pop("config", AppConfig()),
        kw.pop("server_info", make_server_info()),
        clipboard=clipboard or FakeClipboard(),
    )


def estimate(pct: float, size: int = 1024, source: str = "statistical") -> BloatEstimate:
    return BloatEstimate(bloat_bytes=size, bloat_pct=pct, source=source)


class FakeSource:
    """In-memory DataSource for worker and runtime tests."""

    def __init__(self, snapshots=None, fail_with: Exception | None = None):
        self.snapshots = list(snapshots or [])
        self.fail_with = fail_with
        self.calls: list[tuple] = []
        self.closed = False
        self.dead_pids: set[int] = set()
        self.bloat = ({}, {})

    def fetch_snapshot(self):
        self.calls.append(("fetch_snapshot",))
        if self.fail_with is not None:
            raise self.fail_with
        if self.snapshots:
            return self.snapshots.pop(0)
        return make_snapshot()

    def cancel_backend(self, pid):
        self.calls.append(("cancel_backend", pid))
        return pid not in self.dead_pids

    def terminate_backend(self, pid):
        self.calls.append(("terminate_backend", pid))
        return pid not in self.dead_pids

    def cancel_backends(self, pids):
        return [(pid, self.cancel_backend(pid)) for pid in pids]

    def terminate_backends(self, pids):
        return [(pid, self.terminate_backend(pid)) for pid in pids]

    def fetch_bloat(self):
        self.calls.append(("fetch_bloat",))
        return self.bloat

    def reset_stat_statements(self):
        self.calls.append(("reset_stat_statements",))

    def close(self):
        self.closed = True
