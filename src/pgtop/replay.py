"""Loading recorded sessions and playing them back."""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import pyperclip

from pgtop.appstate import AppState
from pgtop.config import AppConfig
from pgtop.events import KeyEvent
from pgtop.models import ServerInfo, Snapshot, from_dict
from pgtop.modes import ConfigEditField, Filter, Normal, SaveConfig
from pgtop.state import ConnectionInfo

logger = logging.getLogger(__name__)

SPEEDS = (0.25, 0.5, 1.0, 2.0, 4.0, 8.0)
DEFAULT_GAP_SECS = 2.0
MIN_INTERVAL_SECS = 0.05
REPLAY_HISTORY_LEN = 120


class ReplayLoadError(Exception):
    """A recording could not be loaded for replay."""


@dataclass(slots=True)
class ReplaySession:
    """
    An in-memory recording with a playback position.

    Nothing here touches the filesystem after load(); stepping is bounded
    and reports whether the position moved.
    """

    host: str
    port: int
    dbname: str
    user: str
    server_info: ServerInfo
    snapshots: list[Snapshot]
    recorded_at: datetime | None = None
    position: int = field(default=0)

    @classmethod
    def load(cls, path: Path) -> "ReplaySession":
        path = Path(path)
        try:
            f = path.open(encoding="utf-8")
        except OSError as e:
            raise ReplayLoadError(f"cannot open {path}: {e}") from e

        header = None
        snapshots: list[Snapshot] = []
        with f:
            try:
                for lineno, line in enumerate(f, start=1):
                    if not line.strip():
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError as e:
                        raise ReplayLoadError(f"line {lineno}: malformed JSON: {e}") from e
                    if not isinstance(record, dict):
                        raise ReplayLoadError(f"line {lineno}: not a record")
                    if header is None:
                        if record.get("type") != "header":
                            raise ReplayLoadError("recording does not start with a header")
                        header = record
                        continue
                    if record.get("type") != "snapshot":
                        raise ReplayLoadError(f"line {lineno}: expected a snapshot record")
                    try:
                        snapshots.append(Snapshot.from_dict(record["data"]))
                    except (KeyError, TypeError, ValueError) as e:
                        raise ReplayLoadError(f"line {lineno}: invalid snapshot: {e}") from e
            except (OSError, UnicodeDecodeError) as e:
                raise ReplayLoadError(f"cannot read {path}: {e}") from e

        if header is None:
            raise ReplayLoadError("recording is empty")
        if not snapshots:
            raise ReplayLoadError("recording contains no snapshots")

        try:
            recorded_at = header.get("recorded_at")
            return cls(
                host=header["host"],
                port=int(header["port"]),
                dbname=header["dbname"],
                user=header["user"],
                server_info=from_dict(ServerInfo, header["server_info"]),
                snapshots=snapshots,
                recorded_at=datetime.fromisoformat(recorded_at) if recorded_at else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ReplayLoadError(f"invalid header: {e}") from e

    def current(self) -> Snapshot | None:
        if 0 <= self.position < len(self.snapshots):
            return self.snapshots[self.position]
        return None

    def __len__(self) -> int:
        return len(self.snapshots)

    def step_forward(self) -> bool:
        if self.position + 1 < len(self.snapshots):
            self.position += 1
            return True
        return False

    def step_back(self) -> bool:
        if self.position > 0:
            self.position -= 1
            return True
        return False

    def jump_start(self) -> None:
        self.position = 0

    def jump_end(self) -> None:
        if self.snapshots:
            self.position = len(self.snapshots) - 1

    def at_end(self) -> bool:
        return self.position + 1 >= len(self.snapshots)


def next_speed(current: float) -> float:
    return next((s for s in SPEEDS if s > current + 0.01), SPEEDS[-1])


def prev_speed(current: float) -> float:
    return next((s for s in reversed(SPEEDS) if s < current - 0.01), SPEEDS[0])


def replay_interval(session: ReplaySession, speed: float) -> float:
    """Seconds to wait before the next step: the recorded gap scaled by speed."""
    pos = session.position
    gap = 0.0
    if pos + 1 < len(session):
        gap = abs((session.snapshots[pos + 1].timestamp - session.snapshots[pos].timestamp).total_seconds())
    if gap <= 0:
        gap = DEFAULT_GAP_SECS
    return max(MIN_INTERVAL_SECS, gap / speed)


class ReplayLoop:
    """
    Playback driver for one recording.

    Owns a replay-only AppState. Replay keys are tried before the state's
    own key handling. The loop is finished once the state stops running.
    """

    def __init__(
        self,
        session: ReplaySession,
        state: AppState,
        now: float,
        save_config: Callable[[AppConfig], None] | None = None,
    ) -> None:
        self.session = session
        self.state = state
        self._save_config = save_config or AppConfig.save
        self._last_advance = now
        self._sync()
        state.replay.playing = True

    @classmethod
    def open(
        cls,
        path: Path,
        config: AppConfig,
        now: float,
        save_config: Callable[[AppConfig], None] | None = None,
        clipboard: Callable[[str], None] = pyperclip.copy,
    ) -> "ReplayLoop":
        """Load a recording and start playing it. Raises ReplayLoadError."""
        path = Path(path)
        session = ReplaySession.load(path)
        connection = ConnectionInfo(session.host, session.port, session.dbname, session.user)
        state = AppState.for_replay(
            connection,
            REPLAY_HISTORY_LEN,
            config,
            session.server_info,
            filename=path.name,
            total=len(session),
            clipboard=clipboard,
        )
        logger.info("Replaying %s (%d snapshots)", path, len(session))
        return cls(session, state, now, save_config=save_config)

    @property
    def finished(self) -> bool:
        return not self.state.running

    def _sync(self) -> None:
        snapshot = self.session.current()
        if snapshot is not None:
            self.state.update(snapshot)
            self.state.replay.position = self.session.position

    def next_deadline(self) -> float | None:
        """Monotonic time of the next automatic step, or None when not playing."""
        replay = self.state.replay
        if not replay.playing or self.session.at_end():
            return None
        return self._last_advance + replay_interval(self.session, replay.speed)

    def tick(self, now: float) -> bool:
        """Advance one snapshot if playback is due. Returns whether it moved."""
        deadline = self.next_deadline()
        if deadline is None or now < deadline:
            return False
        moved = self.session.step_forward()
        if moved:
            self._sync()
        self._last_advance = now
        if self.session.at_end():
            self.state.replay.playing = False
        return moved

    def handle_key(self, event: KeyEvent, now: float) -> None:
        if not self._handle_replay_key(event, now):
            self.state.handle_key(event)
        self._drain_actions()

    def _handle_replay_key(self, event: KeyEvent, now: float) -> bool:
        replay = self.state.replay
        mode = self.state.view_mode
        if isinstance(mode, (Filter, ConfigEditField)):
            # Text entry owns every printable key
            return False
        normal = isinstance(mode, Normal)
        key = event.key

        if key == " ":
            replay.playing = not replay.playing
            self._last_advance = now
        elif key in ("right", "l") and normal:
            if self.session.step_forward():
                self._sync()
        elif key in ("left", "h") and normal:
            if self.session.step_back():
                self._sync()
        elif key == ">":
            replay.speed = next_speed(replay.speed)
        elif key == "<":
            replay.speed = prev_speed(replay.speed)
        elif key == "g" and normal:
            self.session.jump_start()
            self._sync()
        elif key == "G" and normal:
            self.session.jump_end()
            self._sync()
            replay.playing = False
        else:
            return False
        return True

    def _drain_actions(self) -> None:
        """Only SaveConfig means anything while replaying; everything else is dropped."""
        while len(self.state.actions):
            action = self.state.actions.take()
            if isinstance(action, SaveConfig):
                try:
                    self._save_config(self.state.config)
                except OSError as e:
                    logger.error("Failed to save config: %s", e)
                    self.state.feedback.status_message = f"Config save failed: {e}"
            else:
                logger.debug("Ignoring %r during replay", action)
