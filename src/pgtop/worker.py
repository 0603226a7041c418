"""Background worker that owns the database connection."""

import itertools
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from queue import Empty, Full, Queue
from typing import Any, Protocol

from pgtop.models import BloatEstimate, Snapshot

logger = logging.getLogger(__name__)

COMMAND_QUEUE_SIZE = 16


class CommandKind(Enum):
    FETCH_SNAPSHOT = "fetch_snapshot"
    CANCEL_QUERY = "cancel_query"
    TERMINATE_BACKEND = "terminate_backend"
    CANCEL_QUERIES = "cancel_queries"
    TERMINATE_BACKENDS = "terminate_backends"
    REFRESH_BLOAT = "refresh_bloat"
    RESET_STAT_STATEMENTS = "reset_stat_statements"


@dataclass(frozen=True, slots=True)
class Command:
    """One unit of work for the worker, tagged with a monotonically increasing sequence number."""

    kind: CommandKind
    seq: int
    pid: int | None = None
    pids: tuple[int, ...] = ()


@dataclass(frozen=True, slots=True)
class Result:
    """
    Outcome of exactly one Command.

    ``value`` depends on the kind: a Snapshot for fetches, a bool for single
    cancel/terminate, a list of (pid, ok) pairs for batches and a pair of
    bloat estimate dicts for bloat refreshes.
    """

    kind: CommandKind
    seq: int
    ok: bool
    value: Any = None
    error: str | None = None
    pid: int | None = None
    pids: tuple[int, ...] = ()


class DataSource(Protocol):
    """The operations the worker needs from a database connection."""

    def fetch_snapshot(self) -> Snapshot: ...

    def cancel_backend(self, pid: int) -> bool: ...

    def terminate_backend(self, pid: int) -> bool: ...

    def cancel_backends(self, pids: tuple[int, ...]) -> list[tuple[int, bool]]: ...

    def terminate_backends(self, pids: tuple[int, ...]) -> list[tuple[int, bool]]: ...

    def fetch_bloat(self) -> tuple[dict[str, BloatEstimate], dict[str, BloatEstimate]]: ...

    def reset_stat_statements(self) -> None: ...

    def close(self) -> None: ...


class DatabaseWorker:
    """
    Executes commands against a DataSource on a daemon thread.

    Commands are taken from a bounded queue and run strictly one at a time,
    so the connection is never used concurrently and results come back in
    the order the commands were submitted. Every command produces exactly
    one Result; failures become error Results instead of escaping the thread.
    """

    def __init__(self, source: DataSource, queue_size: int = COMMAND_QUEUE_SIZE) -> None:
        """
        Initialize the DatabaseWorker.

        Args:
            source: Connection wrapper the worker takes ownership of.
            queue_size: Capacity of the command queue.
        """
        self._source = source
        self._commands: Queue[Command] = Queue(maxsize=queue_size)
        self._results: Queue[Result] = Queue()
        self._seq = itertools.count(1)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="DatabaseWorker")
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Stop after the command in flight (if any) and close the source."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def submit(self, kind: CommandKind, pid: int | None = None, pids: tuple[int, ...] = ()) -> Command | None:
        """
        Queue a command without blocking.

        Returns the queued Command, or None if the queue was full and the
        command was dropped.
        """
        command = Command(kind=kind, seq=next(self._seq), pid=pid, pids=tuple(pids))
        try:
            self._commands.put_nowait(command)
        except Full:
            logger.warning("Command queue full, dropping %s", kind.value)
            return None
        return command

    def poll_result(self) -> Result | None:
        try:
            return self._results.get_nowait()
        except Empty:
            return None

    def has_results(self) -> bool:
        return not self._results.empty()

    def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                try:
                    command = self._commands.get(timeout=0.1)
                except Empty:
                    continue
                self._results.put(self.execute(command))
        finally:
            try:
                self._source.close()
            except Exception:
                logger.exception("Error closing data source")

    def execute(self, command: Command) -> Result:
        """Run one command synchronously and wrap its outcome."""
        try:
            value = self._dispatch(command)
        except Exception as e:
            logger.warning("%s (seq %d) failed: %s", command.kind.value, command.seq, e)
            return Result(command.kind, command.seq, ok=False, error=str(e), pid=command.pid, pids=command.pids)
        return Result(command.kind, command.seq, ok=True, value=value, pid=command.pid, pids=command.pids)

    def _dispatch(self, command: Command) -> Any:
        source = self._source
        kind = command.kind
        if kind is CommandKind.FETCH_SNAPSHOT:
            return source.fetch_snapshot()
        if kind is CommandKind.CANCEL_QUERY:
            return source.cancel_backend(command.pid)
        if kind is CommandKind.TERMINATE_BACKEND:
            return source.terminate_backend(command.pid)
        if kind is CommandKind.CANCEL_QUERIES:
            return source.cancel_backends(command.pids)
        if kind is CommandKind.TERMINATE_BACKENDS:
            return source.terminate_backends(command.pids)
        if kind is CommandKind.REFRESH_BLOAT:
            return source.fetch_bloat()
        if kind is CommandKind.RESET_STAT_STATEMENTS:
            return source.reset_stat_statements()
        raise ValueError(f"unknown command {kind}")
