"""Logging bootstrap: a rotating log file, since the terminal belongs to the UI."""

import logging
import os
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_LEVEL_ENV = "PGTOP_LOG_LEVEL"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3


@dataclass(frozen=True)
class LoggingRuntime:
    """Resolved logging configuration."""

    level_name: str
    level: int
    file_path: Path


_RUNTIME: LoggingRuntime | None = None


def parse_level(raw: str | None) -> tuple[str, int]:
    """Map a level name to (canonical name, number); unknown names mean INFO."""
    normalized = str(raw or "INFO").strip().upper()
    level = getattr(logging, normalized, None)
    if not isinstance(level, int):
        level = logging.INFO
    return logging.getLevelName(level), level


def default_log_dir() -> Path:
    base = os.environ.get("XDG_STATE_HOME") or os.path.expanduser("~/.local/state")
    return Path(base) / "pgtop" / "logs"


def configure(level: str | None = None, log_dir: Path | None = None) -> LoggingRuntime:
    """
    Send the pgtop logger hierarchy to a rotating file.

    The level comes from the argument, then PGTOP_LOG_LEVEL, then INFO.
    Idempotent: repeated calls return the runtime configured first.
    """
    global _RUNTIME
    if _RUNTIME is not None:
        return _RUNTIME

    level_name, level_no = parse_level(level or os.environ.get(LOG_LEVEL_ENV))
    log_dir = Path(log_dir) if log_dir is not None else default_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    file_path = log_dir / "pgtop.log"

    handler = RotatingFileHandler(file_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8")
    handler.setLevel(level_no)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )

    logger = logging.getLogger("pgtop")
    logger.setLevel(level_no)
    logger.propagate = False
    logger.handlers.clear()
    logger.addHandler(handler)

    # Third-party libraries only get a say at WARNING and above
    root = logging.getLogger()
    if root.level > logging.WARNING:
        root.setLevel(logging.WARNING)
    logging.captureWarnings(True)

    _RUNTIME = LoggingRuntime(level_name=level_name, level=level_no, file_path=file_path)
    return _RUNTIME


def get_runtime() -> LoggingRuntime | None:
    return _RUNTIME


def reset() -> None:
    """Drop the pgtop handlers so configure() can run again."""
    global _RUNTIME
    logger = logging.getLogger("pgtop")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    _RUNTIME = None
