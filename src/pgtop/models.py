"""Data models for pgtop."""

import types
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timezone
from typing import Any, Union, get_args, get_origin, get_type_hints


@dataclass(slots=True, frozen=True)
class DetectedExtensions:
    """Optional server extensions that unlock extra panels or estimates."""

    pg_stat_statements: bool = False
    pg_stat_kcache: bool = False
    pg_wait_sampling: bool = False
    pg_buffercache: bool = False
    pgstattuple: bool = False


@dataclass(slots=True, frozen=True)
class PgSetting:
    """One row of pg_settings."""

    name: str
    setting: str
    unit: str | None = None
    category: str = ""
    short_desc: str = ""
    context: str = ""
    source: str = ""
    pending_restart: bool = False


@dataclass(slots=True, frozen=True)
class PgExtension:
    """An installed extension."""

    name: str
    version: str
    schema: str
    relocatable: bool = False
    description: str | None = None


@dataclass(slots=True, frozen=True)
class ServerInfo:
    """Static facts about the monitored server, fetched once per connection."""

    version: str
    start_time: datetime
    max_connections: int
    extensions: DetectedExtensions = field(default_factory=DetectedExtensions)
    settings: list[PgSetting] = field(default_factory=list)
    extensions_list: list[PgExtension] = field(default_factory=list)

    def major_version(self) -> int:
        """Major version parsed from "PostgreSQL 15.3 on ...", 0 if unknown."""
        rest = self.version.removeprefix("PostgreSQL ")
        head = rest.split(" ", 1)[0].split(".", 1)[0]
        # Development builds report e.g. "17devel"
        digits = "".join(ch for ch in head if ch.isdigit())
        return int(digits) if digits else 0


@dataclass(slots=True, frozen=True)
class ActiveQuery:
    """A client backend from pg_stat_activity."""

    pid: int
    usename: str | None = None
    datname: str | None = None
    state: str | None = None
    wait_event_type: str | None = None
    wait_event: str | None = None
    query_start: datetime | None = None
    duration_secs: float = 0.0
    query: str | None = None
    backend_type: str | None = None


@dataclass(slots=True, frozen=True)
class WaitEventCount:
    """Active backends grouped by wait event."""

    wait_event_type: str
    wait_event: str
    count: int


@dataclass(slots=True, frozen=True)
class BlockingInfo:
    """A blocked backend paired with the backend holding the lock."""

    blocked_pid: int
    blocker_pid: int
    blocked_user: str | None = None
    blocked_query: str | None = None
    blocked_duration_secs: float = 0.0
    blocker_user: str | None = None
    blocker_query: str | None = None
    blocker_state: str | None = None


@dataclass(slots=True, frozen=True)
class BufferCacheStats:
    """Shared buffer hit statistics for the current database."""

    blks_hit: int = 0
    blks_read: int = 0
    hit_ratio: float = 1.0


@dataclass(slots=True, frozen=True)
class ActivitySummary:
    """Aggregate counts over pg_stat_activity and pg_locks."""

    total_backends: int = 0
    active_query_count: int = 0
    idle_in_transaction_count: int = 0
    waiting_count: int = 0
    lock_count: int = 0
    oldest_xact_secs: float | None = None
    autovacuum_count: int = 0


@dataclass(slots=True, frozen=True)
class TableStat:
    """Per-table statistics; bloat fields are filled on demand."""

    schemaname: str
    relname: str
    total_size_bytes: int = 0
    seq_scan: int = 0
    idx_scan: int = 0
    n_live_tup: int = 0
    n_dead_tup: int = 0
    dead_ratio: float = 0.0
    last_vacuum: datetime | None = None
    last_autovacuum: datetime | None = None
    last_analyze: datetime | None = None
    bloat_bytes: int | None = None
    bloat_pct: float | None = None
    bloat_source: str | None = None

    @property
    def key(self) -> str:
        return f"{self.schemaname}.{self.relname}"


@dataclass(slots=True, frozen=True)
class ReplicationInfo:
    """A connected standby or logical replication client."""

    pid: int
    usename: str | None = None
    application_name: str | None = None
    client_addr: str | None = None
    state: str | None = None
    sent_lsn: str | None = None
    replay_lsn: str | None = None
    write_lag_secs: float | None = None
    flush_lag_secs: float | None = None
    replay_lag_secs: float | None = None
    sync_state: str | None = None


@dataclass(slots=True, frozen=True)
class VacuumProgress:
    """A running VACUUM from pg_stat_progress_vacuum."""

    pid: int
    table_name: str
    phase: str
    datname: str | None = None
    heap_blks_total: int = 0
    heap_blks_vacuumed: int = 0
    progress_pct: float = 0.0
    num_dead_tuples: int = 0


@dataclass(slots=True, frozen=True)
class WraparoundInfo:
    """Transaction ID age per database."""

    datname: str
    xid_age: int
    xids_remaining: int
    pct_towards_wraparound: float


@dataclass(slots=True, frozen=True)
class IndexInfo:
    """Per-index usage statistics; bloat fields are filled on demand."""

    schemaname: str
    table_name: str
    index_name: str
    index_size_bytes: int = 0
    idx_scan: int = 0
    idx_tup_read: int = 0
    idx_tup_fetch: int = 0
    index_definition: str = ""
    bloat_bytes: int | None = None
    bloat_pct: float | None = None
    bloat_source: str | None = None

    @property
    def key(self) -> str:
        return f"{self.schemaname}.{self.index_name}"


@dataclass(slots=True, frozen=True)
class StatStatement:
    """One normalized statement from pg_stat_statements."""

    queryid: int
    query: str
    calls: int = 0
    total_exec_time: float = 0.0
    min_exec_time: float = 0.0
    mean_exec_time: float = 0.0
    max_exec_time: float = 0.0
    stddev_exec_time: float = 0.0
    rows: int = 0
    shared_blks_hit: int = 0
    shared_blks_read: int = 0
    temp_blks_read: int = 0
    temp_blks_written: int = 0
    blk_read_time: float = 0.0
    blk_write_time: float = 0.0
    hit_ratio: float = 0.0


@dataclass(slots=True, frozen=True)
class CheckpointStats:
    """Checkpointer counters."""

    checkpoints_timed: int = 0
    checkpoints_req: int = 0
    checkpoint_write_time: float = 0.0
    checkpoint_sync_time: float = 0.0
    buffers_checkpoint: int = 0


@dataclass(slots=True, frozen=True)
class WalStats:
    """pg_stat_wal counters (PostgreSQL 14+)."""

    wal_records: int = 0
    wal_fpi: int = 0
    wal_bytes: int = 0
    wal_buffers_full: int = 0


@dataclass(slots=True, frozen=True)
class DatabaseStats:
    """Cumulative pg_stat_database counters used for rate calculations."""

    xact_commit: int = 0
    xact_rollback: int = 0
    blks_read: int = 0
    tup_returned: int = 0
    tup_fetched: int = 0
    deadlocks: int = 0
    temp_files: int = 0
    temp_bytes: int = 0


@dataclass(slots=True, frozen=True)
class BloatEstimate:
    """On-demand bloat estimate for a table or index, keyed by "schema.name"."""

    bloat_bytes: int
    bloat_pct: float
    source: str


@dataclass(slots=True)
class Snapshot:
    """One point-in-time read of the monitored server."""

    timestamp: datetime
    active_queries: list[ActiveQuery] = field(default_factory=list)
    wait_events: list[WaitEventCount] = field(default_factory=list)
    blocking_info: list[BlockingInfo] = field(default_factory=list)
    buffer_cache: BufferCacheStats = field(default_factory=BufferCacheStats)
    summary: ActivitySummary = field(default_factory=ActivitySummary)
    table_stats: list[TableStat] = field(default_factory=list)
    replication: list[ReplicationInfo] = field(default_factory=list)
    vacuum_progress: list[VacuumProgress] = field(default_factory=list)
    wraparound: list[WraparoundInfo] = field(default_factory=list)
    indexes: list[IndexInfo] = field(default_factory=list)
    stat_statements: list[StatStatement] = field(default_factory=list)
    stat_statements_error: str | None = None
    extensions: DetectedExtensions = field(default_factory=DetectedExtensions)
    db_size: int = 0
    checkpoint_stats: CheckpointStats | None = None
    wal_stats: WalStats | None = None
    db_stats: DatabaseStats | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dict."""
        return to_dict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Snapshot":
        """Rebuild from the output of to_dict()."""
        return from_dict(cls, data)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def to_dict(obj: Any) -> Any:
    """Recursively convert dataclasses, lists and datetimes to JSON-compatible values."""
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_dict(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, (list, tuple)):
        return [to_dict(item) for item in obj]
    if isinstance(obj, datetime):
        return obj.isoformat()
    return obj


def from_dict(cls: type, data: dict[str, Any]) -> Any:
    """
    Build a dataclass instance from a dict produced by to_dict().

    Unknown keys are ignored and absent keys fall back to field defaults, so
    recordings written by other versions still load.
    """
    hints = get_type_hints(cls)
    kwargs = {}
    for f in fields(cls):
        if f.name in data:
            kwargs[f.name] = _decode(hints[f.name], data[f.name])
    return cls(**kwargs)


def _decode(tp: Any, value: Any) -> Any:
    if value is None:
        return None
    origin = get_origin(tp)
    if origin in (Union, types.UnionType):
        inner = [arg for arg in get_args(tp) if arg is not type(None)]
        return _decode(inner[0], value)
    if origin is list:
        (item_type,) = get_args(tp)
        return [_decode(item_type, item) for item in value]
    if tp is datetime:
        return datetime.fromisoformat(value)
    if is_dataclass(tp):
        return from_dict(tp, value)
    if tp is float:
        return float(value)
    return value
