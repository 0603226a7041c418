"""Session recording as newline-delimited JSON."""

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

from pgtop.models import ServerInfo, Snapshot, to_dict, utcnow

logger = logging.getLogger(__name__)

RECORDING_SUFFIX = ".jsonl"


class RecordingError(Exception):
    """A recording file could not be created or written."""


@dataclass(slots=True, frozen=True)
class RecordingInfo:
    """Header summary of a recording, as listed in the Recordings overlay."""

    path: Path
    host: str
    port: int
    dbname: str
    recorded_at: datetime
    pg_version: str
    file_size: int

    @property
    def connection_display(self) -> str:
        return f"{self.host}:{self.port}/{self.dbname}"

    @property
    def size_display(self) -> str:
        if self.file_size >= 1024 * 1024:
            return f"{self.file_size / (1024 * 1024):.1f}MB"
        if self.file_size >= 1024:
            return f"{self.file_size / 1024:.0f}KB"
        return f"{self.file_size}B"

    @property
    def pg_version_short(self) -> str:
        if self.pg_version.startswith("PostgreSQL "):
            major = self.pg_version.removeprefix("PostgreSQL ").split(".", 1)[0]
            return f"PG {major}"
        return self.pg_version[:10]


def recording_filename(host: str, port: int, when: datetime) -> str:
    """<host>_<port>_<YYYYmmdd_HHMMSS>.jsonl with path separators replaced."""
    name = f"{host}_{port}_{when:%Y%m%d_%H%M%S}{RECORDING_SUFFIX}"
    return name.replace("/", "_").replace("\\", "_")


def header_record(host: str, port: int, dbname: str, user: str, server_info: ServerInfo) -> dict:
    return {
        "type": "header",
        "host": host,
        "port": port,
        "dbname": dbname,
        "user": user,
        "server_info": to_dict(server_info),
        "recorded_at": utcnow().isoformat(),
    }


class Recorder:
    """
    Append-only writer for one monitoring session.

    The header line is written as soon as the recorder is created; each
    record() call appends one snapshot line and flushes it to disk.
    """

    def __init__(self, path: Path, stream: TextIO) -> None:
        self.path = path
        self._stream = stream

    @classmethod
    def create(
        cls,
        host: str,
        port: int,
        dbname: str,
        user: str,
        server_info: ServerInfo,
        dest_dir: Path,
    ) -> "Recorder":
        """Start a new recording named after the connection and local time."""
        path = Path(dest_dir) / recording_filename(host, port, datetime.now())
        return cls.open(path, host, port, dbname, user, server_info)

    @classmethod
    def open(
        cls,
        path: Path,
        host: str,
        port: int,
        dbname: str,
        user: str,
        server_info: ServerInfo,
    ) -> "Recorder":
        """Start a recording at an explicit path, truncating any existing file."""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            stream = path.open("w", encoding="utf-8")
        except OSError as e:
            raise RecordingError(f"cannot create {path}: {e}") from e
        recorder = cls(path, stream)
        try:
            recorder._write(header_record(host, port, dbname, user, server_info))
        except RecordingError:
            stream.close()
            raise
        logger.info("Recording session to %s", path)
        return recorder

    def record(self, snapshot: Snapshot) -> None:
        self._write({"type": "snapshot", "data": snapshot.to_dict()})

    def _write(self, record: dict) -> None:
        try:
            self._stream.write(json.dumps(record, separators=(",", ":")))
            self._stream.write("\n")
            self._stream.flush()
        except (OSError, ValueError) as e:
            raise RecordingError(f"write to {self.path} failed: {e}") from e

    def close(self) -> None:
        if not self._stream.closed:
            self._stream.close()

    def __enter__(self) -> "Recorder":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def cleanup_old(retention_seconds: int, dest_dir: Path) -> int:
    """Delete recordings whose mtime is older than the retention window."""
    dest_dir = Path(dest_dir)
    if not dest_dir.is_dir():
        return 0
    cutoff = time.time() - retention_seconds
    removed = 0
    for path in dest_dir.iterdir():
        if path.suffix != RECORDING_SUFFIX or not path.is_file():
            continue
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logger.warning("Could not remove old recording %s: %s", path, e)
    if removed:
        logger.info("Removed %d expired recordings from %s", removed, dest_dir)
    return removed


def _as_utc(stamp: datetime) -> datetime:
    # Headers written elsewhere may carry naive stamps
    return stamp.replace(tzinfo=timezone.utc) if stamp.tzinfo is None else stamp


def _read_info(path: Path) -> RecordingInfo | None:
    try:
        size = path.stat().st_size
        with path.open(encoding="utf-8") as f:
            first_line = next((line for line in f if line.strip()), None)
        if first_line is None:
            return None
        header = json.loads(first_line)
        if not isinstance(header, dict) or header.get("type") != "header":
            return None
        return RecordingInfo(
            path=path,
            host=header["host"],
            port=int(header["port"]),
            dbname=header["dbname"],
            recorded_at=_as_utc(datetime.fromisoformat(header["recorded_at"])),
            pg_version=header["server_info"]["version"],
            file_size=size,
        )
    except (OSError, ValueError, KeyError, TypeError):
        return None


def list_recordings(dest_dir: Path) -> list[RecordingInfo]:
    """
    Recordings in dest_dir, newest first.

    Only the header line of each file is read. Files that are not
    recordings are skipped silently.
    """
    dest_dir = Path(dest_dir)
    if not dest_dir.is_dir():
        return []
    infos = []
    for path in dest_dir.iterdir():
        if path.suffix != RECORDING_SUFFIX:
            continue
        info = _read_info(path)
        if info is not None:
            infos.append(info)
    infos.sort(key=lambda info: info.recorded_at, reverse=True)
    return infos


def delete_recording(path: Path) -> None:
    Path(path).unlink()
