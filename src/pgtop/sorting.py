"""Sorting and fuzzy filtering over panel rows.

Every operation works on index lists into the original row collection, so
the rows themselves are never copied or reordered.
"""

from collections.abc import Callable, Sequence
from enum import Enum
from functools import cmp_to_key
from typing import Any

from textual.fuzzy import Matcher

from pgtop.models import (
    ActiveQuery,
    IndexInfo,
    PgExtension,
    PgSetting,
    StatStatement,
    TableStat,
)


class SortColumn(Enum):
    """Base for per-panel sort column enums.

    Members are labelled by their value; key extractors and default
    directions are registered in SORT_KEYS and ASCENDING_BY_DEFAULT.
    """

    @property
    def label(self) -> str:
        return self.value

    @property
    def default_ascending(self) -> bool:
        return self in ASCENDING_BY_DEFAULT

    def next(self) -> "SortColumn":
        """The next column in declaration order, wrapping around."""
        members = list(type(self))
        return members[(members.index(self) + 1) % len(members)]

    def key(self, item: Any) -> Any:
        return SORT_KEYS[self](item)


class QuerySort(SortColumn):
    DURATION = "Duration"
    PID = "PID"
    USER = "User"
    STATE = "State"


class IndexSort(SortColumn):
    SCANS = "Scans"
    SIZE = "Size"
    NAME = "Name"
    TUP_READ = "Tup Read"
    TUP_FETCH = "Tup Fetch"


class TableStatSort(SortColumn):
    DEAD_TUPLES = "Dead Tuples"
    SIZE = "Size"
    NAME = "Name"
    SEQ_SCAN = "Seq Scan"
    IDX_SCAN = "Idx Scan"
    DEAD_RATIO = "Dead %"


class StatementSort(SortColumn):
    TOTAL_TIME = "Total Time"
    MEAN_TIME = "Mean Time"
    MAX_TIME = "Max Time"
    STDDEV = "Stddev"
    CALLS = "Calls"
    ROWS = "Rows"
    HIT_RATIO = "Hit %"
    SHARED_READS = "Reads"
    IO_TIME = "I/O Time"
    TEMP = "Temp"


SORT_KEYS: dict[SortColumn, Callable[[Any], Any]] = {
    QuerySort.DURATION: lambda q: q.duration_secs,
    QuerySort.PID: lambda q: q.pid,
    QuerySort.USER: lambda q: q.usename or "",
    QuerySort.STATE: lambda q: q.state or "",
    IndexSort.SCANS: lambda i: i.idx_scan,
    IndexSort.SIZE: lambda i: i.index_size_bytes,
    IndexSort.NAME: lambda i: i.index_name,
    IndexSort.TUP_READ: lambda i: i.idx_tup_read,
    IndexSort.TUP_FETCH: lambda i: i.idx_tup_fetch,
    TableStatSort.DEAD_TUPLES: lambda t: t.n_dead_tup,
    TableStatSort.SIZE: lambda t: t.total_size_bytes,
    TableStatSort.NAME: lambda t: t.relname,
    TableStatSort.SEQ_SCAN: lambda t: t.seq_scan,
    TableStatSort.IDX_SCAN: lambda t: t.idx_scan,
    TableStatSort.DEAD_RATIO: lambda t: t.dead_ratio,
    StatementSort.TOTAL_TIME: lambda s: s.total_exec_time,
    StatementSort.MEAN_TIME: lambda s: s.mean_exec_time,
    StatementSort.MAX_TIME: lambda s: s.max_exec_time,
    StatementSort.STDDEV: lambda s: s.stddev_exec_time,
    StatementSort.CALLS: lambda s: s.calls,
    StatementSort.ROWS: lambda s: s.rows,
    StatementSort.HIT_RATIO: lambda s: s.hit_ratio,
    StatementSort.SHARED_READS: lambda s: s.shared_blks_read,
    StatementSort.IO_TIME: lambda s: s.blk_read_time + s.blk_write_time,
    StatementSort.TEMP: lambda s: s.temp_blks_read + s.temp_blks_written,
}

# Columns that start ascending when selected; everything else starts descending
ASCENDING_BY_DEFAULT = frozenset({IndexSort.SCANS, IndexSort.NAME, TableStatSort.NAME})


def _search_text_query(q: ActiveQuery) -> str:
    parts = [str(q.pid), q.usename, q.datname, q.state, q.wait_event, q.query]
    return " ".join(part or "" for part in parts)


SEARCH_TEXT: dict[type, Callable[[Any], str]] = {
    ActiveQuery: _search_text_query,
    IndexInfo: lambda i: f"{i.schemaname} {i.table_name} {i.index_name} {i.index_definition}",
    StatStatement: lambda s: s.query,
    TableStat: lambda t: f"{t.schemaname} {t.relname}",
    PgSetting: lambda s: f"{s.name} {s.category} {s.short_desc}",
    PgExtension: lambda e: f"{e.name} {e.schema} {e.description or ''}",
}


def search_text(item: Any) -> str:
    """The string a row is fuzzy-matched against; empty for unsearchable rows."""
    build = SEARCH_TEXT.get(type(item))
    return build(item) if build is not None else ""


def fuzzy_matchers(text: str) -> list[Matcher]:
    """One case-insensitive matcher per whitespace-separated atom of the filter text."""
    return [Matcher(atom, case_sensitive=False) for atom in text.split()]


def fuzzy_match(text: str, haystack: str) -> bool:
    """True when every atom of text appears as a subsequence of haystack."""
    return _matches_all(fuzzy_matchers(text), haystack)


def _matches_all(matchers: list[Matcher], haystack: str) -> bool:
    return all(matcher.match(haystack) > 0 for matcher in matchers)


def filter_indices(items: Sequence[Any], text: str) -> list[int]:
    """Indices of items whose search text matches the filter, in original order."""
    matchers = fuzzy_matchers(text)
    if not matchers:
        return list(range(len(items)))
    return [i for i, item in enumerate(items) if _matches_all(matchers, search_text(item))]


def compare_keys(a: Any, b: Any) -> int:
    """Three-way compare; NaN, None and mismatched types compare as equal."""
    try:
        if a < b:
            return -1
        if b < a:
            return 1
    except TypeError:
        pass
    return 0


def sort_indices(
    indices: Sequence[int],
    items: Sequence[Any],
    column: SortColumn,
    ascending: bool,
) -> list[int]:
    """Stable sort of indices by the column's key; never raises on odd values."""
    direction = 1 if ascending else -1

    def compare(a: int, b: int) -> int:
        return direction * compare_keys(column.key(items[a]), column.key(items[b]))

    return sorted(indices, key=cmp_to_key(compare))
