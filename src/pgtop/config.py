"""User configuration, persisted as JSON under XDG_CONFIG_HOME/pgtop."""

import json
import logging
import math
import os
import tempfile
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

REFRESH_RANGE = (1, 60)
RETENTION_RANGE = (600, 86400)
MAX_DANGER_SECS = 300.0
MIN_WARN_SECS = 0.1


class _Cycle(Enum):
    """Enum whose members can be stepped through with wrap-around."""

    def next(self):
        members = list(type(self))
        return members[(members.index(self) + 1) % len(members)]

    def prev(self):
        members = list(type(self))
        return members[(members.index(self) - 1) % len(members)]

    @property
    def label(self) -> str:
        return self.value


class GraphMarker(_Cycle):
    BRAILLE = "Braille"
    HALF_BLOCK = "Half Block"
    BLOCK = "Block"


class ColorTheme(_Cycle):
    TOKYO_NIGHT = "Tokyo Night"
    DRACULA = "Dracula"
    NORD = "Nord"
    SOLARIZED_DARK = "Solarized Dark"
    SOLARIZED_LIGHT = "Solarized Light"
    CATPPUCCIN_LATTE = "Catppuccin Latte"


@dataclass(frozen=True, slots=True)
class Palette:
    """Rich color names/hex strings used by the renderer."""

    fg: str
    fg_dim: str
    border: str
    ok: str
    warn: str
    danger: str
    highlight_bg: str
    accent: str


PALETTES: dict[ColorTheme, Palette] = {
    ColorTheme.TOKYO_NIGHT: Palette("#c0caf5", "#737994", "#7dcfff", "#9ece6a", "#e0af68", "#f7768e", "#282a40", "#61afef"),
    ColorTheme.DRACULA: Palette("#f8f8f2", "#6272a4", "#8be9fd", "#50fa7b", "#f1fa8c", "#ff5555", "#37394a", "#bd93f9"),
    ColorTheme.NORD: Palette("#d8dee9", "#6b798e", "#88c0d0", "#a3be8c", "#ebcb8b", "#bf616a", "#3b4252", "#8fbcbb"),
    ColorTheme.SOLARIZED_DARK: Palette("#839496", "#586e75", "#268bd2", "#859900", "#b58900", "#dc322f", "#073642", "#2aa198"),
    ColorTheme.SOLARIZED_LIGHT: Palette("#657b83", "#93a1a1", "#268bd2", "#859900", "#b58900", "#dc322f", "#eee8d5", "#2aa198"),
    ColorTheme.CATPPUCCIN_LATTE: Palette("#4c4f69", "#8c8fa1", "#1e66f5", "#40a02b", "#df8e1d", "#d20f39", "#dce0e8", "#179299"),
}


@dataclass(frozen=True, slots=True)
class ThemeConfig:
    """Everything the renderer needs for coloring, passed in explicitly each frame."""

    palette: Palette
    marker: GraphMarker
    warn_duration_secs: float
    danger_duration_secs: float

    def duration_style(self, secs: float) -> str:
        if secs >= self.danger_duration_secs:
            return self.palette.danger
        if secs >= self.warn_duration_secs:
            return self.palette.warn
        return self.palette.ok


class ConfigItem(Enum):
    """Rows of the Config overlay, in display order."""

    GRAPH_MARKER = "Graph Marker"
    COLOR_THEME = "Color Theme"
    REFRESH_INTERVAL = "Refresh Interval"
    WARN_DURATION = "Warn Duration"
    DANGER_DURATION = "Danger Duration"
    RECORDING_RETENTION = "Recording Retention"
    RECORDINGS_DIR = "Recordings Dir"

    @property
    def label(self) -> str:
        return self.value


def config_path() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "pgtop" / "config.json"


def default_recordings_dir() -> Path:
    data_home = os.environ.get("XDG_DATA_HOME", os.path.expanduser("~/.local/share"))
    return Path(data_home) / "pgtop" / "recordings"


def _clamp(value, low, high):
    return max(low, min(high, value))


def _coerce_number(value, kind: type):
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise TypeError(f"expected a number, got {type(value).__name__}")
    number = kind(value)
    if not math.isfinite(number):
        raise ValueError(f"{value!r} is not finite")
    return number


# Numeric settings and the type each is stored as
NUMERIC_FIELDS = {
    "refresh_interval_secs": int,
    "warn_duration_secs": float,
    "danger_duration_secs": float,
    "recording_retention_secs": int,
}


@dataclass(slots=True)
class AppConfig:
    """Settings adjustable from the Config overlay."""

    graph_marker: GraphMarker = GraphMarker.BRAILLE
    color_theme: ColorTheme = ColorTheme.TOKYO_NIGHT
    refresh_interval_secs: int = 2
    warn_duration_secs: float = 1.0
    danger_duration_secs: float = 10.0
    recording_retention_secs: int = 3600
    recordings_dir: str | None = None

    def theme(self) -> ThemeConfig:
        return ThemeConfig(
            palette=PALETTES[self.color_theme],
            marker=self.graph_marker,
            warn_duration_secs=self.warn_duration_secs,
            danger_duration_secs=self.danger_duration_secs,
        )

    def recordings_path(self) -> Path:
        return Path(self.recordings_dir).expanduser() if self.recordings_dir else default_recordings_dir()

    def display_value(self, item: ConfigItem) -> str:
        """Human-readable value for a Config overlay row."""
        if item is ConfigItem.GRAPH_MARKER:
            return self.graph_marker.label
        if item is ConfigItem.COLOR_THEME:
            return self.color_theme.label
        if item is ConfigItem.REFRESH_INTERVAL:
            return f"{self.refresh_interval_secs}s"
        if item is ConfigItem.WARN_DURATION:
            return f"{self.warn_duration_secs:.1f}s"
        if item is ConfigItem.DANGER_DURATION:
            return f"{self.danger_duration_secs:.1f}s"
        if item is ConfigItem.RECORDING_RETENTION:
            secs = self.recording_retention_secs
            return f"{secs // 3600}h" if secs >= 3600 and secs % 3600 == 0 else f"{secs // 60}m"
        return self.recordings_dir or f"{default_recordings_dir()} (default)"

    def adjust(self, item: ConfigItem, direction: int) -> None:
        """Step a setting left (-1) or right (+1), clamped to its valid range."""
        if item is ConfigItem.GRAPH_MARKER:
            self.graph_marker = self.graph_marker.next() if direction > 0 else self.graph_marker.prev()
        elif item is ConfigItem.COLOR_THEME:
            self.color_theme = self.color_theme.next() if direction > 0 else self.color_theme.prev()
        elif item is ConfigItem.REFRESH_INTERVAL:
            self.refresh_interval_secs = _clamp(self.refresh_interval_secs + direction, *REFRESH_RANGE)
        elif item is ConfigItem.WARN_DURATION:
            value = self.warn_duration_secs + 0.5 * direction
            self.warn_duration_secs = _clamp(value, MIN_WARN_SECS, self.danger_duration_secs)
        elif item is ConfigItem.DANGER_DURATION:
            value = self.danger_duration_secs + 1.0 * direction
            self.danger_duration_secs = _clamp(value, self.warn_duration_secs, MAX_DANGER_SECS)
        elif item is ConfigItem.RECORDING_RETENTION:
            step = 3600 if self.recording_retention_secs >= 7200 else 600
            value = self.recording_retention_secs + direction * step
            self.recording_retention_secs = _clamp(value, *RETENTION_RANGE)
        # The recordings directory is edited as text, not stepped

    def to_dict(self) -> dict:
        data = asdict(self)
        data["graph_marker"] = self.graph_marker.name
        data["color_theme"] = self.color_theme.name
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        config = cls()
        known = {f.name for f in fields(cls)}
        for name, value in data.items():
            if name not in known:
                continue
            try:
                if name == "graph_marker":
                    value = GraphMarker[value]
                elif name == "color_theme":
                    value = ColorTheme[value]
                elif name in NUMERIC_FIELDS:
                    value = _coerce_number(value, NUMERIC_FIELDS[name])
                elif name == "recordings_dir" and value is not None and not isinstance(value, str):
                    raise TypeError(f"expected a path string, got {type(value).__name__}")
            except (KeyError, TypeError, ValueError):
                logger.warning("Ignoring invalid %s %r in config", name, value)
                continue
            setattr(config, name, value)
        config.refresh_interval_secs = _clamp(config.refresh_interval_secs, *REFRESH_RANGE)
        config.recording_retention_secs = _clamp(config.recording_retention_secs, *RETENTION_RANGE)
        config.danger_duration_secs = _clamp(config.danger_duration_secs, MIN_WARN_SECS, MAX_DANGER_SECS)
        config.warn_duration_secs = _clamp(config.warn_duration_secs, MIN_WARN_SECS, config.danger_duration_secs)
        config.recordings_dir = config.recordings_dir or None
        return config

    @classmethod
    def load(cls, path: Path | None = None) -> "AppConfig":
        """Load config; a missing or corrupt file yields the defaults."""
        path = path or config_path()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return cls()
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Could not read config %s: %s", path, e)
            return cls()
        if not isinstance(data, dict):
            logger.warning("Config %s is not a JSON object, using defaults", path)
            return cls()
        return cls.from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """
        Atomically write the config file.

        Writes to a temp file in the same directory then renames it over the
        target so a crash never leaves a partial file.
        """
        path = path or config_path()
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
                f.write("\n")
            os.replace(tmp_path, path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
