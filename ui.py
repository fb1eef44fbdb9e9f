import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, List, Optional, Tuple

from rich.align import Align
from rich.console import Console, Group, RenderResult
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from navigation import Pane

logger = logging.getLogger(__name__)

DEFAULT_NOTICE = "Press '?' to toggle help"
FLASH_STYLE = "italic blink cyan"
ERROR_STYLE = "bold italic red"
DEFAULT_STYLE = "dim"
EMPTY_PLACEHOLDER = "(empty)"

HELP_ENTRIES: List[Tuple[str, str]] = [
    ("q / Esc / Ctrl-c", "Quit"),
    ("?", "Toggle this help"),
    ("a", "Toggle hidden files"),
    ("j / Down", "Move down"),
    ("k / Up", "Move up"),
    ("g / t / Ctrl-Up", "Jump to top"),
    ("b / Ctrl-Down", "Jump to bottom"),
    ("Tab / w / Ctrl-w", "Switch pane"),
    ("l / Right", "Enter directory"),
    ("h / Left", "Parent directory"),
    ("Enter / y", "Copy to other pane"),
]


def smart_truncate(text: str, max_width: int, min_width: int = 20) -> str:
    """Truncates a string to `max_width`, keeping the tail of paths.

    - Short strings are returned unchanged.
    - Paths keep their last components behind a ".../" prefix, so the
      directory the user is in stays readable.
    - Anything else is cut at the end with '...'.

    Args:
        text: The string to truncate.
        max_width: The maximum desired width.
        min_width: Below this width paths are cut like plain strings.

    Returns:
        The truncated string.
    """
    if len(text) <= max_width:
        return text
    if max_width <= 3:
        return text[:max_width]

    if '/' in text and max_width > min_width:
        parts = text.rstrip('/').split('/')
        tail = parts[-1]
        for part in reversed(parts[:-1]):
            candidate = f"{part}/{tail}"
            if len(candidate) + 4 > max_width:
                break
            tail = candidate
        if len(tail) + 4 <= max_width:
            return f".../{tail}"
        return "..." + tail[-(max_width - 3):]

    return text[:max_width - 3] + "..."


@dataclass
class Notice:
    """The one-line message shown in the status bar."""
    text: str = DEFAULT_NOTICE
    style: str = DEFAULT_STYLE
    expires_at: Optional[float] = None

    def expired(self, now: Optional[float] = None) -> bool:
        if self.expires_at is None:
            return True
        return (now if now is not None else time.monotonic()) >= self.expires_at


class _PanePanel:
    """A renderable for one directory pane."""
    def __init__(self, ui_manager: "FileManagerUI", pane: Pane):
        self.ui_manager = ui_manager
        self.pane = pane

    def _visible_window(self, names: List[str], index: Optional[int], rows: int) -> Tuple[int, List[str]]:
        if rows <= 0 or len(names) <= rows:
            return 0, names
        start = 0
        if index is not None and index >= rows:
            start = index - rows + 1
        return start, names[start:start + rows]

    def __rich_console__(self, console: Console, options: Any) -> RenderResult:
        controller = self.ui_manager.controller
        names = controller.listing(self.pane)
        index = controller.selection.index(self.pane)
        is_active = controller.active is self.pane
        backend = controller.backends[self.pane]

        height = getattr(options, "height", None) or console.height
        width = getattr(options, "max_width", None) or console.width
        rows = max(height - 2, 1)

        if not names:
            body = Align.center(Text(EMPTY_PLACEHOLDER, style="dim italic"), vertical="middle")
        else:
            start, window = self._visible_window(names, index, rows)
            lines = []
            for offset, name in enumerate(window):
                if start + offset == index:
                    style = "bold black on cyan" if is_active else "reverse"
                    lines.append(Text(name, style=style, no_wrap=True, overflow="ellipsis"))
                else:
                    lines.append(Text(name, no_wrap=True, overflow="ellipsis"))
            body = Text("\n").join(lines)

        title_path = smart_truncate(controller.working_dirs.get(self.pane), max(width - len(backend.label) - 8, 10))
        yield Panel(
            body,
            title=Text.assemble((backend.label, "bold"), " ", title_path),
            title_align="left",
            border_style="bold cyan" if is_active else "dim",
        )


class _HelpPanel:
    """A renderable for the keyboard shortcut list."""
    def __rich_console__(self, console: Console, options: Any) -> RenderResult:
        table = Table.grid(padding=(0, 2))
        table.add_column(style="bold yellow", no_wrap=True)
        table.add_column()
        for keys, action in HELP_ENTRIES:
            table.add_row(keys, action)
        yield Panel(table, title="[bold]Shortcuts", border_style="dim")


class _LogPanel:
    """A renderable for the most recent log lines."""
    def __init__(self, ui_manager: "FileManagerUI"):
        self.ui_manager = ui_manager

    def __rich_console__(self, console: Console, options: Any) -> RenderResult:
        with self.ui_manager._lock:
            lines = list(self.ui_manager._log_buffer)
        yield Panel(
            Text("\n").join(lines) if lines else Text(""),
            title="[bold]Log",
            border_style="dim",
        )


class _StatusBar:
    """A renderable for the notice line at the bottom of the screen."""
    def __init__(self, ui_manager: "FileManagerUI"):
        self.ui_manager = ui_manager

    def __rich_console__(self, console: Console, options: Any) -> RenderResult:
        notice = self.ui_manager.notice
        yield Text(notice.text, style=notice.style, no_wrap=True, overflow="ellipsis")


class UILogHandler(logging.Handler):
    """Forwards log records into the UI's log panel while the screen is live.

    Attached to the root logger by `FileManagerUI.__enter__` in place of the
    console handler, which would otherwise scribble over the full-screen
    display.
    """
    def __init__(self, ui_manager: "FileManagerUI"):
        super().__init__(level=logging.INFO)
        self.ui_manager = ui_manager

    def emit(self, record: logging.LogRecord):
        self.ui_manager.log(record.getMessage(), record.levelno)


class FileManagerUI:
    """Full-screen dual-pane display.

    The UI never redraws on its own: the event loop calls `draw()` on every
    draw tick. Log records may arrive from any thread; everything else is
    called from the event loop thread.

    Attributes:
        controller: The `PaneController` whose state is drawn.
        notice: The message currently shown in the status bar.
        show_help: Whether the shortcut panel is visible.
    """
    def __init__(self, controller, rich_handler: Optional[logging.Handler] = None,
                 show_help: bool = False, log_lines: int = 5, console: Optional[Console] = None):
        self.controller = controller
        self.console = console or Console()
        self.notice = Notice()
        self.show_help = show_help
        self._lock = threading.RLock()
        self._live: Optional[Live] = None
        self._rich_handler_ref = rich_handler
        self._ui_log_handler = UILogHandler(self)
        self._log_buffer: Deque[Text] = deque(maxlen=log_lines)

        self.layout = Layout()
        self.layout.split(
            Layout(name="body", ratio=1),
            Layout(name="log", size=log_lines + 2),
            Layout(name="status", size=1),
        )
        self.layout["body"].split_row(
            Layout(_PanePanel(self, Pane.LOCAL), name="local", ratio=1),
            Layout(_PanePanel(self, Pane.REMOTE), name="remote", ratio=1),
            Layout(_HelpPanel(), name="help", size=44),
        )
        self.layout["log"].update(_LogPanel(self))
        self.layout["status"].update(_StatusBar(self))
        self.layout["help"].visible = show_help

    def __enter__(self):
        root_logger = logging.getLogger()
        if self._rich_handler_ref:
            root_logger.removeHandler(self._rich_handler_ref)
        root_logger.addHandler(self._ui_log_handler)
        self._live = Live(
            self.layout,
            console=self.console,
            screen=True,
            auto_refresh=False,
            redirect_stderr=False,
        )
        self._live.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._live:
            try:
                self._live.stop()
            except Exception as e:
                logging.error(f"Error stopping live display: {e}")
            self._live = None

        root_logger = logging.getLogger()
        root_logger.removeHandler(self._ui_log_handler)
        if self._rich_handler_ref:
            root_logger.addHandler(self._rich_handler_ref)

    def draw(self) -> None:
        if self._live:
            self._live.refresh()

    def toggle_help(self) -> None:
        self.show_help = not self.show_help
        self.layout["help"].visible = self.show_help

    def log(self, message: str, level: int = logging.INFO) -> None:
        style = "red" if level >= logging.ERROR else "yellow" if level >= logging.WARNING else ""
        line = Text(f"{time.strftime('%H:%M:%S')} {message}", style=style, no_wrap=True, overflow="ellipsis")
        with self._lock:
            self._log_buffer.append(line)

    # --- Notices ---

    def flash(self, text: str, seconds: float = 3.0) -> None:
        self.notice = Notice(text, FLASH_STYLE, time.monotonic() + seconds)

    def error(self, text: str, seconds: float = 3.0) -> None:
        self.notice = Notice(text, ERROR_STYLE, time.monotonic() + seconds)

    def notice_expired(self, now: Optional[float] = None) -> bool:
        return self.notice.expired(now)

    def clear_notice(self) -> None:
        self.notice = Notice()

    def render_text(self, width: int = 100, height: int = 30) -> str:
        """Renders the current screen to plain text, for tests and debug dumps."""
        with open(os.devnull, "w") as devnull:
            console = Console(width=width, height=height, record=True, file=devnull)
            console.print(self.layout, height=height)
            return console.export_text()
