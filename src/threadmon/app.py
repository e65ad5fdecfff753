"""threadmon - live Textual view of the sampling loop."""

from queue import Empty, Queue

from rich.markup import escape
from rich.text import Text
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from threadmon.config import MonitorConfig
from threadmon.models import EventKind, LoopEvent
from threadmon.monitor import SamplingLoop

# Rows kept on screen; the output file keeps everything.
MAX_VISIBLE_ROWS = 200


class SessionStats(Static):
    """Header widget showing the loop configuration and progress."""

    DEFAULT_CSS = """
    SessionStats {
        height: auto;
        min-height: 5;
        padding: 1;
        background: $surface;
    }
    """

    def __init__(self, config: MonitorConfig, *args, **kwargs) -> None:
        """Initialize SessionStats."""
        super().__init__(*args, **kwargs)
        self._monitor_config = config
        self._loop_status = "waiting for setup"
        self._output_path = ""
        self._row_count = 0
        self._last_message = ""

    def on_mount(self) -> None:
        """Render the initial text."""
        self.update(self._stats_text())

    def apply(self, event: LoopEvent) -> None:
        """Update the statistics from a loop event."""
        if event.kind is EventKind.SESSION:
            self._loop_status = "logging"
            self._output_path = event.path
            self._row_count = 0
            self._last_message = f"{len(event.fields) - 2} columns"
        elif event.kind is EventKind.ROW:
            self._row_count += 1
        elif event.kind is EventKind.DEGRADED:
            self._loop_status = f"restarting in {self._monitor_config.backoff:g}s"
            self._last_message = event.message
        elif event.kind is EventKind.SETUP_FAILED:
            self._loop_status = f"setup failed, retrying in {self._monitor_config.backoff:g}s"
            self._last_message = event.message
        self.update(self._stats_text())

    @property
    def rows(self) -> int:
        """Rows written in the current session."""
        return self._row_count

    def _stats_text(self) -> str:
        config = self._monitor_config
        aux = ", ".join(config.aux_names) or "none"
        return (
            f"State: [b]{self._loop_status}[/b]\n"
            f"Threads: {escape(config.thread_pattern)}   Backend: {config.backend}   Aux: {escape(aux)}\n"
            f"Output: {escape(self._output_path) or '-'}   Rows: {self._row_count}\n"
            f"{escape(self._last_message)}"
        )


class SampleTable(Container):
    """Container for the table of recent rows."""

    DEFAULT_CSS = """
    SampleTable {
        height: 1fr;
        border: solid $primary;
    }
    """

    def compose(self) -> ComposeResult:
        """Compose the sample table."""
        yield DataTable(id="sample-table")

    def on_mount(self) -> None:
        """Initialize the data table when mounted."""
        table = self.query_one("#sample-table", DataTable)
        table.cursor_type = "row"

    def reset_columns(self, header: tuple[str, ...]) -> None:
        """Start over with the columns of a new session."""
        table = self.query_one("#sample-table", DataTable)
        table.clear(columns=True)
        for name in header:
            table.add_column(Text(name))

    def add_sample(self, row: tuple[str, ...]) -> None:
        """Append a row, dropping the oldest beyond the visible limit."""
        table = self.query_one("#sample-table", DataTable)
        if len(row) != len(table.columns):
            return
        table.add_row(*row)
        while table.row_count > MAX_VISIBLE_ROWS:
            first_key = next(iter(table.rows))
            table.remove_row(first_key)
        table.move_cursor(row=table.row_count - 1)


class ThreadmonApp(App):
    """Live view of a threadmon run."""

    TITLE = "threadmon"
    SUB_TITLE = "Thread CPU and memory logger"

    CSS = """
    Screen {
        layout: vertical;
    }

    #session-stats {
        dock: top;
        height: auto;
        min-height: 6;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
    ]

    def __init__(self, config: MonitorConfig, loop: SamplingLoop | None = None) -> None:
        """Initialize the ThreadmonApp."""
        super().__init__()
        self._monitor_config = config
        self._update_queue: Queue[LoopEvent] = Queue()
        self._monitor = loop or SamplingLoop(config, listener=self._update_queue.put)

    @property
    def events(self) -> "Queue[LoopEvent]":
        """Queue the sampling loop pushes its events to."""
        return self._update_queue

    def compose(self) -> ComposeResult:
        """Compose the application layout."""
        yield SessionStats(self._monitor_config, id="session-stats")
        yield SampleTable()
        yield Footer()

    def on_mount(self) -> None:
        """Start the sampling loop when the app is mounted."""
        self._monitor.start()
        self.set_interval(0.5, self._check_for_updates)

    def _check_for_updates(self) -> None:
        """Drain the event queue and refresh the widgets."""
        while True:
            try:
                event = self._update_queue.get_nowait()
            except Empty:
                break
            self._apply_event(event)

    def _apply_event(self, event: LoopEvent) -> None:
        self.query_one("#session-stats", SessionStats).apply(event)
        table = self.query_one(SampleTable)
        if event.kind is EventKind.SESSION:
            table.reset_columns(event.fields)
        elif event.kind is EventKind.ROW:
            table.add_sample(event.fields)
        elif event.kind is EventKind.DEGRADED:
            self.notify(event.message, severity="warning")

    def action_quit(self) -> None:
        """Stop the sampling loop and exit."""
        self._monitor.stop()
        self.exit()
