"""pgtop - Main Textual application."""

import logging
import time
from collections.abc import Callable

from textual.app import App, ComposeResult
from textual.containers import Horizontal
from textual.widgets import Static

from pgtop.appstate import AppState
from pgtop.events import KeyEvent
from pgtop.render import render_footer, render_header, render_metrics, render_overlay, render_panel
from pgtop.runtime import ReplayOnlyLoop, RuntimeLoop

logger = logging.getLogger(__name__)

TICK_INTERVAL = 0.05
# Upper bound on scheduling steps per timer tick so a burst of input can't starve rendering
MAX_STEPS_PER_TICK = 64


class PgTopApp(App, inherit_bindings=False):
    """
    Textual shell around the runtime loop.

    Keys are forwarded to the runtime untouched; a short interval timer runs
    the runtime's scheduling steps and repaints from whichever AppState it
    currently exposes. The app exits once the runtime reports it has stopped.
    """

    TITLE = "pgtop"
    SUB_TITLE = "PostgreSQL Monitor"

    CSS = """
    Screen {
        layout: vertical;
        layers: base overlay;
    }

    #header {
        height: auto;
        padding: 0 1;
    }

    #metrics-row {
        height: auto;
    }

    #metrics {
        width: 1fr;
        height: auto;
    }

    #panel {
        height: 1fr;
        padding: 0 1;
        border-top: solid $primary;
    }

    #overlay {
        layer: overlay;
        dock: top;
        offset: 4 3;
        width: 90%;
        height: auto;
        max-height: 80%;
        padding: 1 2;
        border: round $accent;
        background: $surface;
        display: none;
    }

    #footer {
        dock: bottom;
        height: 1;
    }
    """

    def __init__(
        self,
        runtime: RuntimeLoop | ReplayOnlyLoop,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: float = TICK_INTERVAL,
    ) -> None:
        """
        Initialize the PgTopApp.

        Args:
            runtime: Scheduler owning the AppState (live or replay-only).
            clock: Monotonic time source handed to the runtime.
            tick_interval: Seconds between scheduling ticks.
        """
        super().__init__()
        self.runtime = runtime
        self._clock = clock
        self._tick_interval = tick_interval

    @property
    def state(self) -> AppState:
        return self.runtime.current_state

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield Static(id="header")
        yield Horizontal(Static(id="metrics"), id="metrics-row")
        yield Static(id="panel")
        yield Static(id="overlay")
        yield Static(id="footer")

    def on_mount(self) -> None:
        """Start the runtime and the scheduling timer."""
        self.runtime.start(self._clock())
        self.refresh_view()
        self.set_interval(self._tick_interval, self.tick)

    def on_key(self, event) -> None:
        event.prevent_default()
        event.stop()
        self.runtime.push_key(KeyEvent.from_textual(event))
        self.tick()

    def tick(self) -> None:
        """Run every ready scheduling step, repaint, and exit if the runtime stopped."""
        now = self._clock()
        handled = False
        for _ in range(MAX_STEPS_PER_TICK):
            if not self.runtime.run_once(now):
                break
            handled = True
        if self.runtime.stopped:
            logger.info("Runtime stopped, exiting")
            self.exit()
            return
        if handled:
            self.refresh_view()

    def refresh_view(self) -> None:
        """Repaint every region from the current state."""
        state = self.state
        theme = state.config.theme()
        width = max(10, self.size.width - 24)
        panel_height = self.query_one("#panel", Static).size.height

        self.query_one("#header", Static).update(render_header(state, theme))
        self.query_one("#metrics", Static).update(render_metrics(state, theme, width=width))
        # Title and header row take two lines
        self.query_one("#panel", Static).update(render_panel(state, theme, max_rows=max(0, panel_height - 2)))
        self.query_one("#footer", Static).update(render_footer(state, theme))

        overlay = self.query_one("#overlay", Static)
        content = render_overlay(state, theme, height=max(0, self.size.height - 12))
        if content is None:
            overlay.display = False
        else:
            overlay.update(content)
            overlay.display = True
