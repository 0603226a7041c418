"""PostgreSQL data source: the SQL behind every panel."""

import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row

from pgtop.models import (
    ActiveQuery,
    ActivitySummary,
    BlockingInfo,
    BloatEstimate,
    BufferCacheStats,
    CheckpointStats,
    DatabaseStats,
    DetectedExtensions,
    IndexInfo,
    PgExtension,
    PgSetting,
    ReplicationInfo,
    ServerInfo,
    Snapshot,
    StatStatement,
    TableStat,
    VacuumProgress,
    WaitEventCount,
    WalStats,
    WraparoundInfo,
    utcnow,
)

logger = logging.getLogger(__name__)

ACTIVE_QUERIES_SQL = """
SELECT
    pid,
    usename,
    datname,
    state,
    wait_event_type,
    wait_event,
    query_start,
    COALESCE(EXTRACT(EPOCH FROM (clock_timestamp() - query_start))::float8, 0) AS duration_secs,
    query,
    backend_type
FROM pg_stat_activity
WHERE pid <> pg_backend_pid()
  AND state IS NOT NULL
  AND backend_type = 'client backend'
ORDER BY
    CASE state
        WHEN 'active' THEN 0
        WHEN 'idle in transaction' THEN 1
        WHEN 'idle in transaction (aborted)' THEN 2
        ELSE 3
    END,
    duration_secs DESC
LIMIT 100
"""

WAIT_EVENTS_SQL = """
SELECT
    COALESCE(wait_event_type, 'CPU/Running') AS wait_event_type,
    COALESCE(wait_event, 'CPU/Running') AS wait_event,
    COUNT(*) AS count
FROM pg_stat_activity
WHERE pid <> pg_backend_pid()
  AND state = 'active'
  AND backend_type = 'client backend'
GROUP BY wait_event_type, wait_event
ORDER BY count DESC
"""

BLOCKING_SQL = """
SELECT
    blocked.pid AS blocked_pid,
    blocked.usename AS blocked_user,
    blocked.query AS blocked_query,
    COALESCE(EXTRACT(EPOCH FROM (clock_timestamp() - blocked.query_start))::float8, 0) AS blocked_duration_secs,
    blocker.pid AS blocker_pid,
    blocker.usename AS blocker_user,
    blocker.query AS blocker_query,
    blocker.state AS blocker_state
FROM pg_stat_activity AS blocked
JOIN LATERAL unnest(pg_blocking_pids(blocked.pid)) AS blocker_pid ON TRUE
JOIN pg_stat_activity AS blocker ON blocker.pid = blocker_pid
WHERE blocked.pid <> pg_backend_pid()
  AND cardinality(pg_blocking_pids(blocked.pid)) > 0
ORDER BY blocked_duration_secs DESC
LIMIT 50
"""

BUFFER_CACHE_SQL = """
SELECT
    COALESCE(blks_hit, 0) AS blks_hit,
    COALESCE(blks_read, 0) AS blks_read,
    (CASE
        WHEN COALESCE(blks_hit, 0) + COALESCE(blks_read, 0) = 0 THEN 1.0
        ELSE blks_hit::float8 / (blks_hit + blks_read)
    END)::float8 AS hit_ratio
FROM pg_stat_database
WHERE datname = current_database()
"""

ACTIVITY_SUMMARY_SQL = """
SELECT
    COUNT(*) FILTER (WHERE state = 'active' AND pid <> pg_backend_pid()) AS active_query_count,
    COUNT(*) FILTER (WHERE state = 'idle in transaction') AS idle_in_transaction_count,
    COUNT(*) AS total_backends,
    (SELECT COUNT(*) FROM pg_locks WHERE NOT granted) AS lock_count,
    COUNT(*) FILTER (WHERE wait_event_type = 'Lock') AS waiting_count,
    MAX(EXTRACT(EPOCH FROM (clock_timestamp() - xact_start)))::float8 AS oldest_xact_secs,
    (SELECT COUNT(*) FROM pg_stat_activity WHERE backend_type = 'autovacuum worker') AS autovacuum_count
FROM pg_stat_activity
WHERE backend_type = 'client backend'
"""

TABLE_STATS_SQL = """
SELECT
    schemaname,
    relname,
    COALESCE(pg_total_relation_size(relid), 0) AS total_size_bytes,
    COALESCE(seq_scan, 0) AS seq_scan,
    COALESCE(idx_scan, 0) AS idx_scan,
    COALESCE(n_live_tup, 0) AS n_live_tup,
    COALESCE(n_dead_tup, 0) AS n_dead_tup,
    COALESCE((CASE WHEN n_live_tup > 0 THEN (100.0 * n_dead_tup / n_live_tup) ELSE 0 END)::float8, 0) AS dead_ratio,
    last_vacuum,
    last_autovacuum,
    last_analyze
FROM pg_stat_user_tables
ORDER BY n_dead_tup DESC
LIMIT 30
"""

REPLICATION_SQL = """
SELECT
    pid,
    usename,
    application_name,
    host(client_addr) AS client_addr,
    state::text AS state,
    sent_lsn::text AS sent_lsn,
    replay_lsn::text AS replay_lsn,
    EXTRACT(EPOCH FROM write_lag)::float8 AS write_lag_secs,
    EXTRACT(EPOCH FROM flush_lag)::float8 AS flush_lag_secs,
    EXTRACT(EPOCH FROM replay_lag)::float8 AS replay_lag_secs,
    sync_state::text AS sync_state
FROM pg_stat_replication
ORDER BY replay_lag DESC NULLS LAST
"""

# num_dead_tuples was renamed across versions; report 0 everywhere
VACUUM_PROGRESS_SQL = """
SELECT
    p.pid,
    a.datname,
    COALESCE(n.nspname || '.' || c.relname, p.relid::text) AS table_name,
    p.phase,
    p.heap_blks_total,
    p.heap_blks_vacuumed,
    (CASE WHEN p.heap_blks_total > 0 THEN (100.0 * p.heap_blks_vacuumed / p.heap_blks_total) ELSE 0 END)::float8
        AS progress_pct,
    0::bigint AS num_dead_tuples
FROM pg_stat_progress_vacuum p
JOIN pg_stat_activity a ON a.pid = p.pid
LEFT JOIN pg_class c ON c.oid = p.relid
LEFT JOIN pg_namespace n ON n.oid = c.relnamespace
ORDER BY p.pid
"""

WRAPAROUND_SQL = """
SELECT
    datname,
    age(datfrozenxid)::bigint AS xid_age,
    (2147483647 - age(datfrozenxid))::bigint AS xids_remaining,
    round(100.0 * age(datfrozenxid) / 2147483647, 2)::float8 AS pct_towards_wraparound
FROM pg_database
WHERE datallowconn
ORDER BY age(datfrozenxid) DESC
"""

INDEXES_SQL = """
SELECT
    s.schemaname,
    s.relname AS table_name,
    s.indexrelname AS index_name,
    COALESCE(pg_relation_size(s.indexrelid), 0)::bigint AS index_size_bytes,
    COALESCE(s.idx_scan, 0)::bigint AS idx_scan,
    COALESCE(s.idx_tup_read, 0)::bigint AS idx_tup_read,
    COALESCE(s.idx_tup_fetch, 0)::bigint AS idx_tup_fetch,
    pg_get_indexdef(s.indexrelid) AS index_definition
FROM pg_stat_user_indexes s
ORDER BY pg_relation_size(s.indexrelid) DESC NULLS LAST
"""

EXTENSIONS_SQL = """
SELECT extname, extversion FROM pg_extension
WHERE extname IN ('pg_stat_statements', 'pg_stat_kcache', 'pg_wait_sampling', 'pg_buffercache', 'pgstattuple')
"""

SERVER_INFO_SQL = """
SELECT
    version() AS version,
    pg_postmaster_start_time() AS start_time,
    (SELECT setting::bigint FROM pg_settings WHERE name = 'max_connections') AS max_connections
"""

PG_SETTINGS_SQL = """
SELECT
    name,
    setting,
    unit,
    category,
    short_desc,
    context,
    source,
    COALESCE(pending_restart, false) AS pending_restart
FROM pg_settings
ORDER BY category, name
"""

PG_EXTENSIONS_LIST_SQL = """
SELECT
    e.extname AS name,
    e.extversion AS version,
    n.nspname AS schema,
    e.extrelocatable AS relocatable,
    a.comment AS description
FROM pg_extension e
JOIN pg_namespace n ON n.oid = e.extnamespace
LEFT JOIN pg_available_extensions a ON a.name = e.extname
ORDER BY e.extname
"""

DB_SIZE_SQL = "SELECT pg_database_size(current_database()) AS db_size"

# pg_stat_bgwriter lost its checkpoint columns to pg_stat_checkpointer in 17
CHECKPOINT_STATS_SQL = """
SELECT
    COALESCE(checkpoints_timed, 0) AS checkpoints_timed,
    COALESCE(checkpoints_req, 0) AS checkpoints_req,
    COALESCE(checkpoint_write_time, 0)::float8 AS checkpoint_write_time,
    COALESCE(checkpoint_sync_time, 0)::float8 AS checkpoint_sync_time,
    COALESCE(buffers_checkpoint, 0) AS buffers_checkpoint
FROM pg_stat_bgwriter
"""

CHECKPOINT_STATS_SQL_V17 = """
SELECT
    COALESCE(num_timed, 0) AS checkpoints_timed,
    COALESCE(num_requested, 0) AS checkpoints_req,
    COALESCE(write_time, 0)::float8 AS checkpoint_write_time,
    COALESCE(sync_time, 0)::float8 AS checkpoint_sync_time,
    COALESCE(buffers_written, 0) AS buffers_checkpoint
FROM pg_stat_checkpointer
"""

WAL_STATS_SQL = """
SELECT
    COALESCE(wal_records, 0) AS wal_records,
    COALESCE(wal_fpi, 0) AS wal_fpi,
    COALESCE(wal_bytes, 0)::bigint AS wal_bytes,
    COALESCE(wal_buffers_full, 0) AS wal_buffers_full
FROM pg_stat_wal
"""

DATABASE_STATS_SQL = """
SELECT
    COALESCE(xact_commit, 0) AS xact_commit,
    COALESCE(xact_rollback, 0) AS xact_rollback,
    COALESCE(blks_read, 0) AS blks_read,
    COALESCE(tup_returned, 0) AS tup_returned,
    COALESCE(tup_fetched, 0) AS tup_fetched,
    COALESCE(deadlocks, 0) AS deadlocks,
    COALESCE(temp_files, 0) AS temp_files,
    COALESCE(temp_bytes, 0) AS temp_bytes
FROM pg_stat_database
WHERE datname = current_database()
"""

STAT_STATEMENTS_COUNT_SQL = "SELECT COUNT(*)::bigint AS cnt FROM pg_stat_statements"

# (time column prefix, block read time column, block write time column)
# total_time became total_exec_time in extension 1.8; blk_*_time became
# shared_blk_*_time in server 17.
STAT_STATEMENTS_V11 = ("", "blk_read_time", "blk_write_time")
STAT_STATEMENTS_V13 = ("exec_", "blk_read_time", "blk_write_time")
STAT_STATEMENTS_V17 = ("exec_", "shared_blk_read_time", "shared_blk_write_time")

TABLE_BLOAT_PGSTATTUPLE_SQL = """
SELECT
    s.schemaname,
    s.relname AS name,
    (t.dead_tuple_percent + t.free_percent)::float8 AS bloat_pct,
    ((t.table_len * (t.dead_tuple_percent + t.free_percent) / 100.0))::bigint AS bloat_bytes
FROM pg_stat_user_tables s,
LATERAL pgstattuple_approx(s.relid) t
WHERE s.n_live_tup > 100
ORDER BY bloat_bytes DESC
"""

INDEX_BLOAT_PGSTATTUPLE_SQL = """
SELECT
    sui.schemaname,
    sui.indexrelname AS name,
    (100.0 - t.avg_leaf_density)::float8 AS bloat_pct,
    ((pg_relation_size(sui.indexrelid) * (100.0 - t.avg_leaf_density) / 100.0))::bigint AS bloat_bytes
FROM pg_stat_user_indexes sui
JOIN pg_class c ON c.oid = sui.indexrelid
JOIN pg_index i ON i.indexrelid = sui.indexrelid,
LATERAL pgstatindex(sui.indexrelid) t
WHERE pg_relation_size(sui.indexrelid) > 65536
  AND i.indisvalid
  AND c.relam = (SELECT oid FROM pg_am WHERE amname = 'btree')
ORDER BY bloat_bytes DESC
"""

# Expected heap pages from average row widths in pg_stats, compared with relpages
TABLE_BLOAT_STATISTICAL_SQL = """
WITH constants AS (
    SELECT current_setting('block_size')::numeric AS bs, 23 AS page_hdr, 8 AS tuple_hdr
),
table_stats AS (
    SELECT
        s.schemaname,
        s.relname,
        s.relid,
        c.relpages,
        c.reltuples,
        COALESCE(
            (SELECT (CASE WHEN regexp_replace(reloptions::text, '.*fillfactor=([0-9]+).*', '\\1') ~ '^[0-9]+$'
                          THEN regexp_replace(reloptions::text, '.*fillfactor=([0-9]+).*', '\\1')::int
                          ELSE 100 END)
             FROM pg_class WHERE oid = s.relid), 100
        ) AS fillfactor
    FROM pg_stat_user_tables s
    JOIN pg_class c ON c.oid = s.relid
    WHERE c.reltuples > 100
),
col_stats AS (
    SELECT
        ts.schemaname,
        ts.relname,
        ts.relpages,
        ts.reltuples,
        ts.fillfactor,
        SUM((1 - COALESCE(s.null_frac, 0)) * COALESCE(s.avg_width, 10)) AS avg_row_width
    FROM table_stats ts
    JOIN pg_attribute a ON a.attrelid = ts.relid AND a.attnum > 0 AND NOT a.attisdropped
    LEFT JOIN pg_stats s ON s.schemaname = ts.schemaname
                        AND s.tablename = ts.relname
                        AND s.attname = a.attname
    GROUP BY ts.schemaname, ts.relname, ts.relpages, ts.reltuples, ts.fillfactor
),
bloat_calc AS (
    SELECT
        cs.schemaname,
        cs.relname,
        cs.relpages,
        cs.reltuples,
        c.bs,
        (c.tuple_hdr + cs.avg_row_width + 7)::int / 8 * 8 AS tpl_size,
        ((c.bs - c.page_hdr) * cs.fillfactor / 100)::int AS usable_page
    FROM col_stats cs
    CROSS JOIN constants c
),
expected AS (
    SELECT
        schemaname,
        relname,
        relpages,
        bs,
        CEIL(reltuples * tpl_size / NULLIF(usable_page, 0)) AS expected_pages
    FROM bloat_calc
    WHERE tpl_size > 0 AND usable_page > 0
)
SELECT
    schemaname,
    relname AS name,
    GREATEST(0.0, 100.0 * (relpages - expected_pages) / NULLIF(relpages, 0))::float8 AS bloat_pct,
    GREATEST(0, (relpages - expected_pages) * bs)::bigint AS bloat_bytes
FROM expected
WHERE relpages > 0
ORDER BY bloat_bytes DESC
"""

# Expected B-tree size is tuples * key width with ~30% structural overhead
INDEX_BLOAT_STATISTICAL_SQL = """
WITH index_stats AS (
    SELECT
        sui.schemaname,
        sui.indexrelname AS index_name,
        pg_relation_size(sui.indexrelid) AS index_size,
        c.reltuples AS table_tuples,
        COALESCE(
            (SELECT SUM(COALESCE(s.avg_width, 8))
             FROM pg_index i
             JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = ANY(i.indkey)
             LEFT JOIN pg_stats s ON s.schemaname = sui.schemaname
                                  AND s.tablename = sui.relname
                                  AND s.attname = a.attname
             WHERE i.indexrelid = sui.indexrelid),
            24
        ) + 8 AS est_idx_tuple_size
    FROM pg_stat_user_indexes sui
    JOIN pg_class c ON c.oid = sui.relid
    JOIN pg_index i ON i.indexrelid = sui.indexrelid
    WHERE pg_relation_size(sui.indexrelid) > 65536
      AND i.indisvalid
),
bloat_calc AS (
    SELECT
        schemaname,
        index_name,
        index_size,
        GREATEST(8192, (table_tuples * est_idx_tuple_size * 1.3)::bigint) AS expected_size
    FROM index_stats
    WHERE table_tuples > 0
)
SELECT
    schemaname,
    index_name AS name,
    GREATEST(0.0, 100.0 * (index_size - expected_size) / NULLIF(index_size, 0))::float8 AS bloat_pct,
    GREATEST(0, index_size - expected_size)::bigint AS bloat_bytes
FROM bloat_calc
ORDER BY bloat_bytes DESC
"""

TABLE_BLOAT_NAIVE_SQL = """
SELECT
    schemaname,
    relname AS name,
    GREATEST(0, pg_table_size(relid) - (n_live_tup * 100))::bigint AS bloat_bytes,
    (CASE
        WHEN pg_table_size(relid) > 0 AND n_live_tup > 0
        THEN GREATEST(0.0, 100.0 * (1.0 - (n_live_tup * 100.0 / pg_table_size(relid))))
        ELSE 0.0
    END)::float8 AS bloat_pct
FROM pg_stat_user_tables
WHERE n_live_tup > 0
ORDER BY bloat_bytes DESC
"""

INDEX_BLOAT_NAIVE_SQL = """
SELECT
    sui.schemaname,
    sui.indexrelname AS name,
    GREATEST(0, pg_relation_size(sui.indexrelid) - GREATEST(c.reltuples * 50, 8192))::bigint AS bloat_bytes,
    (CASE
        WHEN pg_relation_size(sui.indexrelid) > 8192 AND c.reltuples > 0
        THEN GREATEST(0.0, 100.0 * (1.0 - (c.reltuples * 50.0 / pg_relation_size(sui.indexrelid))))
        ELSE 0.0
    END)::float8 AS bloat_pct
FROM pg_stat_user_indexes sui
JOIN pg_class c ON c.oid = sui.indexrelid
WHERE pg_relation_size(sui.indexrelid) > 0
ORDER BY bloat_bytes DESC
"""

PERMISSION_HINT = "(Try: GRANT pg_read_all_stats TO your_user;)"


class DatabaseError(Exception):
    """A driver error annotated with what pgtop was doing at the time."""

    def __init__(self, context: str, cause: Exception) -> None:
        super().__init__(f"{context}: {cause}")
        self.context = context
        self.cause = cause


def parse_ext_version(version: str | None) -> tuple[int, int] | None:
    """Parse "1.10" or "1.8.3" into (major, minor)."""
    if not version:
        return None
    parts = version.split(".")
    if len(parts) < 2:
        return None
    try:
        return int(parts[0]), int(parts[1])
    except ValueError:
        return None


def stat_statements_sql(columns: tuple[str, str, str]) -> str:
    """Build the pg_stat_statements query for one column naming variant."""
    prefix, blk_read, blk_write = columns
    return f"""
SELECT
    COALESCE(queryid, 0) AS queryid,
    query,
    COALESCE(calls, 0) AS calls,
    COALESCE(total_{prefix}time, 0)::float8 AS total_exec_time,
    COALESCE(min_{prefix}time, 0)::float8 AS min_exec_time,
    COALESCE(mean_{prefix}time, 0)::float8 AS mean_exec_time,
    COALESCE(max_{prefix}time, 0)::float8 AS max_exec_time,
    COALESCE(stddev_{prefix}time, 0)::float8 AS stddev_exec_time,
    COALESCE(rows, 0) AS rows,
    COALESCE(shared_blks_hit, 0) AS shared_blks_hit,
    COALESCE(shared_blks_read, 0) AS shared_blks_read,
    COALESCE(temp_blks_read, 0) AS temp_blks_read,
    COALESCE(temp_blks_written, 0) AS temp_blks_written,
    COALESCE({blk_read}, 0)::float8 AS blk_read_time,
    COALESCE({blk_write}, 0)::float8 AS blk_write_time,
    (CASE
        WHEN COALESCE(shared_blks_hit, 0) + COALESCE(shared_blks_read, 0) = 0 THEN 1.0
        ELSE COALESCE(shared_blks_hit, 0)::float8 / (COALESCE(shared_blks_hit, 0) + COALESCE(shared_blks_read, 0))
    END)::float8 AS hit_ratio
FROM pg_stat_statements
ORDER BY total_{prefix}time DESC
LIMIT 100
"""


def stat_statements_variants(major_version: int, ext_version: str | None) -> list[tuple[str, str, str]]:
    """Column variants to try, most likely first."""
    if major_version >= 17:
        return [STAT_STATEMENTS_V17, STAT_STATEMENTS_V13, STAT_STATEMENTS_V11]
    parsed = parse_ext_version(ext_version)
    if parsed is not None and parsed >= (1, 8):
        return [STAT_STATEMENTS_V13, STAT_STATEMENTS_V11]
    return [STAT_STATEMENTS_V11]


def describe_error(error: Exception) -> str:
    """Server message plus detail and hint, when the driver has them."""
    diag = getattr(error, "diag", None)
    if diag is None or not diag.message_primary:
        return str(error).strip()
    parts = [diag.message_primary]
    if diag.message_detail:
        parts.append(f"Detail: {diag.message_detail}")
    if diag.message_hint:
        parts.append(f"Hint: {diag.message_hint}")
    return " - ".join(parts)


class PostgresSource:
    """
    A single autocommit psycopg connection exposing what the worker needs.

    Autocommit keeps one failed statement from poisoning the rest of the
    snapshot. The connection is used from the worker thread only.
    """

    def __init__(self, conninfo: str, **kwargs: Any) -> None:
        """
        Connect to the server.

        Args:
            conninfo: libpq connection string.
            **kwargs: Extra connection parameters (host, port, password...).

        Raises:
            DatabaseError: If the connection cannot be established.
        """
        try:
            self._conn = psycopg.connect(conninfo, autocommit=True, row_factory=dict_row, **kwargs)
        except psycopg.Error as e:
            raise DatabaseError("connect", e) from e
        self._extensions = DetectedExtensions()
        self._ext_versions: dict[str, str] = {}
        self._major_version = 0

    def _query(self, sql: str, context: str, params: tuple = ()) -> list[dict[str, Any]]:
        try:
            with self._conn.cursor() as cur:
                cur.execute(sql, params or None)
                return cur.fetchall()
        except psycopg.Error as e:
            raise DatabaseError(context, e) from e

    def _query_one(self, sql: str, context: str, params: tuple = ()) -> dict[str, Any]:
        rows = self._query(sql, context, params)
        if not rows:
            raise DatabaseError(context, LookupError("query returned no rows"))
        return rows[0]

    # Server info

    def detect_extensions(self) -> DetectedExtensions:
        try:
            rows = self._query(EXTENSIONS_SQL, "detect_extensions")
        except DatabaseError as e:
            logger.warning("Extension detection failed: %s", e)
            return DetectedExtensions()
        self._ext_versions = {row["extname"]: row["extversion"] for row in rows}
        return DetectedExtensions(**{name: True for name in self._ext_versions})

    def fetch_server_info(self) -> ServerInfo:
        """Version, start time and settings; also primes version-dependent queries."""
        extensions = self.detect_extensions()
        try:
            settings = [PgSetting(**row) for row in self._query(PG_SETTINGS_SQL, "fetch_pg_settings")]
        except DatabaseError as e:
            logger.warning("Could not read pg_settings: %s", e)
            settings = []
        try:
            extensions_list = [
                PgExtension(**row) for row in self._query(PG_EXTENSIONS_LIST_SQL, "fetch_extensions_list")
            ]
        except DatabaseError as e:
            logger.warning("Could not list extensions: %s", e)
            extensions_list = []
        row = self._query_one(SERVER_INFO_SQL, "fetch_server_info")
        info = ServerInfo(
            version=row["version"],
            start_time=row["start_time"],
            max_connections=int(row["max_connections"]),
            extensions=extensions,
            settings=settings,
            extensions_list=extensions_list,
        )
        self._extensions = extensions
        self._major_version = info.major_version()
        logger.info("Connected to %s", info.version)
        return info

    # Snapshot

    def fetch_snapshot(self) -> Snapshot:
        """
        Read every panel's data.

        Core sections raise DatabaseError. Table and index stats degrade to
        empty lists (relations can be dropped mid-query) and checkpoint, WAL
        and database counters degrade to None.
        """
        version = self._major_version
        active = [ActiveQuery(**row) for row in self._query(ACTIVE_QUERIES_SQL, "fetch_active_queries")]
        waits = [WaitEventCount(**row) for row in self._query(WAIT_EVENTS_SQL, "fetch_wait_events")]
        blocking = [BlockingInfo(**row) for row in self._query(BLOCKING_SQL, "fetch_blocking_info")]
        cache_rows = self._query(BUFFER_CACHE_SQL, "fetch_buffer_cache")
        cache = BufferCacheStats(**cache_rows[0]) if cache_rows else BufferCacheStats()
        summary = ActivitySummary(**self._query_one(ACTIVITY_SUMMARY_SQL, "fetch_activity_summary"))
        replication = [ReplicationInfo(**row) for row in self._query(REPLICATION_SQL, "fetch_replication")]
        vacuum = [VacuumProgress(**row) for row in self._query(VACUUM_PROGRESS_SQL, "fetch_vacuum_progress")]
        wraparound = [WraparoundInfo(**row) for row in self._query(WRAPAROUND_SQL, "fetch_wraparound")]
        db_size = int(self._query_one(DB_SIZE_SQL, "fetch_db_size")["db_size"])

        statements, statements_error = self.fetch_stat_statements()
        checkpoint_sql = CHECKPOINT_STATS_SQL_V17 if version >= 17 else CHECKPOINT_STATS_SQL
        return Snapshot(
            timestamp=utcnow(),
            active_queries=active,
            wait_events=waits,
            blocking_info=blocking,
            buffer_cache=cache,
            summary=summary,
            table_stats=self._optional_rows(TableStat, TABLE_STATS_SQL, "fetch_table_stats"),
            replication=replication,
            vacuum_progress=vacuum,
            wraparound=wraparound,
            indexes=self._optional_rows(IndexInfo, INDEXES_SQL, "fetch_indexes"),
            stat_statements=statements,
            stat_statements_error=statements_error,
            extensions=self._extensions,
            db_size=db_size,
            checkpoint_stats=self._optional_row(CheckpointStats, checkpoint_sql, "fetch_checkpoint_stats"),
            # pg_stat_wal exists from 14 on
            wal_stats=self._optional_row(WalStats, WAL_STATS_SQL, "fetch_wal_stats") if version >= 14 else None,
            db_stats=self._optional_row(DatabaseStats, DATABASE_STATS_SQL, "fetch_database_stats"),
        )

    def _optional_rows(self, cls: type, sql: str, context: str) -> list:
        try:
            return [cls(**row) for row in self._query(sql, context)]
        except DatabaseError as e:
            logger.debug("%s", e)
            return []

    def _optional_row(self, cls: type, sql: str, context: str) -> Any:
        try:
            rows = self._query(sql, context)
        except DatabaseError as e:
            logger.debug("%s", e)
            return None
        return cls(**rows[0]) if rows else None

    def fetch_stat_statements(self) -> tuple[list[StatStatement], str | None]:
        """
        Top statements from pg_stat_statements and an error message for the panel.

        Column names changed across versions, so variants are tried in order
        until one does not fail with a missing column.
        """
        if not self._extensions.pg_stat_statements:
            return [], None
        ext_version = self._ext_versions.get("pg_stat_statements")
        try:
            count = self._query_one(STAT_STATEMENTS_COUNT_SQL, "fetch_stat_statements")["cnt"]
        except DatabaseError as e:
            message = describe_error(e.cause)
            if "permission denied" in message:
                message = f"{message} {PERMISSION_HINT}"
            elif "does not exist" in message:
                message = f"{message} (Extension may be in a different schema)"
            return [], message
        if count == 0:
            return [], None

        version_info = f"PG{self._major_version}, ext {ext_version or 'unknown'}"
        last_error = ""
        for columns in stat_statements_variants(self._major_version, ext_version):
            try:
                rows = self._query(stat_statements_sql(columns), "fetch_stat_statements")
            except DatabaseError as e:
                if isinstance(e.cause, psycopg.errors.UndefinedColumn):
                    last_error = describe_error(e.cause)
                    continue
                message = describe_error(e.cause)
                if "permission denied" in message:
                    return [], f"{message} {PERMISSION_HINT}"
                return [], f"{message} ({version_info})"
            return [StatStatement(**row) for row in rows], None
        return [], f"{last_error} ({version_info}, tried all query variants)"

    # Actions

    def cancel_backend(self, pid: int) -> bool:
        row = self._query_one("SELECT pg_cancel_backend(%s) AS ok", "cancel_backend", (pid,))
        return bool(row["ok"])

    def terminate_backend(self, pid: int) -> bool:
        row = self._query_one("SELECT pg_terminate_backend(%s) AS ok", "terminate_backend", (pid,))
        return bool(row["ok"])

    def cancel_backends(self, pids: tuple[int, ...]) -> list[tuple[int, bool]]:
        return self._signal_each(self.cancel_backend, pids)

    def terminate_backends(self, pids: tuple[int, ...]) -> list[tuple[int, bool]]:
        return self._signal_each(self.terminate_backend, pids)

    def _signal_each(self, signal, pids: tuple[int, ...]) -> list[tuple[int, bool]]:
        outcomes = []
        for pid in pids:
            try:
                outcomes.append((pid, signal(pid)))
            except DatabaseError as e:
                logger.warning("Signalling PID %d failed: %s", pid, e)
                outcomes.append((pid, False))
        return outcomes

    def reset_stat_statements(self) -> None:
        self._query("SELECT pg_stat_statements_reset()", "reset_stat_statements")

    # Bloat

    def fetch_bloat(self) -> tuple[dict[str, BloatEstimate], dict[str, BloatEstimate]]:
        """Table and index bloat keyed by "schema.name"."""
        tables = self._estimate_bloat(
            TABLE_BLOAT_PGSTATTUPLE_SQL, TABLE_BLOAT_STATISTICAL_SQL, TABLE_BLOAT_NAIVE_SQL, "fetch_table_bloat"
        )
        indexes = self._estimate_bloat(
            INDEX_BLOAT_PGSTATTUPLE_SQL, INDEX_BLOAT_STATISTICAL_SQL, INDEX_BLOAT_NAIVE_SQL, "fetch_index_bloat"
        )
        return tables, indexes

    def _estimate_bloat(
        self, pgstattuple_sql: str, statistical_sql: str, naive_sql: str, context: str
    ) -> dict[str, BloatEstimate]:
        attempts = [("statistical", statistical_sql)]
        if self._extensions.pgstattuple:
            attempts.insert(0, ("pgstattuple", pgstattuple_sql))
        for source, sql in attempts:
            try:
                estimates = self._bloat_rows(sql, context, source)
            except DatabaseError as e:
                logger.info("%s bloat estimate unavailable: %s", source, e)
                continue
            if estimates:
                return estimates
        return self._bloat_rows(naive_sql, context, "naive")

    def _bloat_rows(self, sql: str, context: str, source: str) -> dict[str, BloatEstimate]:
        return {
            f"{row['schemaname']}.{row['name']}": BloatEstimate(
                bloat_bytes=int(row["bloat_bytes"] or 0),
                bloat_pct=float(row["bloat_pct"] or 0.0),
                source=source,
            )
            for row in self._query(sql, context)
        }

    def close(self) -> None:
        if not self._conn.closed:
            self._conn.close()
