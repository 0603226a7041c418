"""Panels, view modes and the actions the UI asks the runtime to perform."""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class BottomPanel(Enum):
    """The table shown in the lower half of the screen."""

    QUERIES = "Queries"
    BLOCKING = "Blocking"
    WAIT_EVENTS = "Wait Events"
    TABLE_STATS = "Table Stats"
    REPLICATION = "Replication"
    VACUUM_PROGRESS = "Vacuum Progress"
    WRAPAROUND = "Wraparound"
    INDEXES = "Indexes"
    STATEMENTS = "Statements"
    WAL_IO = "WAL & I/O"
    SETTINGS = "Settings"
    EXTENSIONS = "Extensions"

    @property
    def label(self) -> str:
        return self.value

    @property
    def supports_filter(self) -> bool:
        return self in _FILTERABLE


_FILTERABLE = frozenset(
    {
        BottomPanel.QUERIES,
        BottomPanel.INDEXES,
        BottomPanel.STATEMENTS,
        BottomPanel.TABLE_STATS,
        BottomPanel.SETTINGS,
        BottomPanel.EXTENSIONS,
    }
)


@dataclass(frozen=True, slots=True)
class InspectTarget:
    """
    The entity an Inspect overlay shows.

    Holds a stable identifier (pid, "schema.name", queryid, datname or
    setting/extension name) rather than a row index, so the overlay keeps
    pointing at the same entity after the snapshot is replaced.
    """

    panel: BottomPanel
    key: int | str


# Confirmation dialogs


@dataclass(frozen=True, slots=True)
class ConfirmCancel:
    pid: int


@dataclass(frozen=True, slots=True)
class ConfirmKill:
    pid: int


@dataclass(frozen=True, slots=True)
class ConfirmCancelChoice:
    selected_pid: int
    all_pids: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class ConfirmKillChoice:
    selected_pid: int
    all_pids: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class ConfirmCancelBatch:
    pids: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class ConfirmKillBatch:
    pids: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class ConfirmDeleteRecording:
    path: Path


@dataclass(frozen=True, slots=True)
class ConfirmResetStatements:
    pass


ConfirmAction = (
    ConfirmCancel
    | ConfirmKill
    | ConfirmCancelChoice
    | ConfirmKillChoice
    | ConfirmCancelBatch
    | ConfirmKillBatch
    | ConfirmDeleteRecording
    | ConfirmResetStatements
)


# View modes: exactly one is active and it decides which keys are legal


@dataclass(frozen=True, slots=True)
class Normal:
    pass


@dataclass(frozen=True, slots=True)
class Filter:
    pass


@dataclass(frozen=True, slots=True)
class Inspect:
    target: InspectTarget


@dataclass(frozen=True, slots=True)
class Confirm:
    action: ConfirmAction


@dataclass(frozen=True, slots=True)
class Config:
    pass


@dataclass(frozen=True, slots=True)
class ConfigEditField:
    """Free-text editing of the recordings directory inside the Config overlay."""


@dataclass(frozen=True, slots=True)
class Help:
    pass


@dataclass(frozen=True, slots=True)
class Recordings:
    pass


ViewMode = Normal | Filter | Inspect | Confirm | Config | ConfigEditField | Help | Recordings


# Side effects requested by the UI and carried out by the runtime


@dataclass(frozen=True, slots=True)
class CancelQuery:
    pid: int


@dataclass(frozen=True, slots=True)
class TerminateBackend:
    pid: int


@dataclass(frozen=True, slots=True)
class CancelQueries:
    pids: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class TerminateBackends:
    pids: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class ForceRefresh:
    pass


@dataclass(frozen=True, slots=True)
class RefreshBloat:
    pass


@dataclass(frozen=True, slots=True)
class SaveConfig:
    pass


@dataclass(frozen=True, slots=True)
class RefreshIntervalChanged:
    pass


@dataclass(frozen=True, slots=True)
class ResetStatStatements:
    pass


AppAction = (
    CancelQuery
    | TerminateBackend
    | CancelQueries
    | TerminateBackends
    | ForceRefresh
    | RefreshBloat
    | SaveConfig
    | RefreshIntervalChanged
    | ResetStatStatements
)


class ActionQueue:
    """
    Bounded FIFO of pending actions.

    When full, queueing another action drops the oldest pending one so the
    most recent user intent always survives.
    """

    def __init__(self, capacity: int = 4) -> None:
        self._items: deque[AppAction] = deque()
        self._capacity = max(1, capacity)

    def push(self, action: AppAction) -> None:
        if len(self._items) >= self._capacity:
            dropped = self._items.popleft()
            logger.warning("Action queue full, dropping %r", dropped)
        self._items.append(action)

    def take(self) -> AppAction | None:
        return self._items.popleft() if self._items else None

    @property
    def pending(self) -> AppAction | None:
        """The action that take() would return next."""
        return self._items[0] if self._items else None

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))
