"""The single-threaded loop that drives the file manager.

Four producers feed one queue: the SIGINT/SIGTERM handlers, the draw ticker,
the refresh ticker and the key reader. The loop thread is the only one that
touches navigation state, the listings and the UI notice.
"""
import enum
import logging
import queue
import signal
import threading
from dataclasses import dataclass
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    INTERRUPT = "interrupt"
    DRAW = "draw"
    REFRESH = "refresh"
    INPUT = "input"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    key: Optional[str] = None


class Command(enum.Enum):
    QUIT = "quit"
    TOGGLE_HELP = "toggle_help"
    TOGGLE_HIDDEN = "toggle_hidden"
    MOVE_DOWN = "move_down"
    MOVE_UP = "move_up"
    JUMP_TOP = "jump_top"
    JUMP_BOTTOM = "jump_bottom"
    SWITCH_PANE = "switch_pane"
    ENTER = "enter"
    EXIT = "exit"
    TRANSFER = "transfer"


KEY_BINDINGS: Dict[str, Command] = {
    "q": Command.QUIT,
    "ESC": Command.QUIT,
    "CTRL_C": Command.QUIT,
    "?": Command.TOGGLE_HELP,
    "a": Command.TOGGLE_HIDDEN,
    "j": Command.MOVE_DOWN,
    "DOWN": Command.MOVE_DOWN,
    "k": Command.MOVE_UP,
    "UP": Command.MOVE_UP,
    "g": Command.JUMP_TOP,
    "t": Command.JUMP_TOP,
    "CTRL_UP": Command.JUMP_TOP,
    "b": Command.JUMP_BOTTOM,
    "CTRL_DOWN": Command.JUMP_BOTTOM,
    "TAB": Command.SWITCH_PANE,
    "w": Command.SWITCH_PANE,
    "CTRL_W": Command.SWITCH_PANE,
    "l": Command.ENTER,
    "RIGHT": Command.ENTER,
    "h": Command.EXIT,
    "LEFT": Command.EXIT,
    "ENTER": Command.TRANSFER,
    "y": Command.TRANSFER,
}


class Ticker(threading.Thread):
    """Posts `event` every `interval` seconds until stopped."""

    def __init__(self, post, event: Event, interval: float):
        super().__init__(name=f"{event.kind.value.capitalize()}Ticker", daemon=True)
        self._post = post
        self._event = event
        self._interval = interval
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            self._post(self._event)


class EventLoop:
    """Dispatches events to the pane controller, the scheduler and the UI.

    Attributes:
        controller: The `PaneController` holding both panes.
        scheduler: The `TransferScheduler` running transfers.
        ui: The `FileManagerUI` (or anything with the same notice/draw API).
        notice_seconds: How long transfer notices stay on screen.
    """

    def __init__(self, controller, scheduler, ui, draw_rate: float = 60.0, refresh_rate: float = 1.0,
                 notice_seconds: float = 3.0, events: Optional["queue.SimpleQueue[Event]"] = None):
        self.controller = controller
        self.scheduler = scheduler
        self.ui = ui
        self.draw_interval = 1.0 / draw_rate
        self.refresh_interval = 1.0 / refresh_rate
        self.notice_seconds = notice_seconds
        # SimpleQueue.put is reentrant, so the signal handlers may call it
        self.events: "queue.SimpleQueue[Event]" = events if events is not None else queue.SimpleQueue()

    def post(self, event: Event) -> None:
        self.events.put(event)

    def post_key(self, key: str) -> None:
        self.post(Event(EventKind.INPUT, key))

    def _on_signal(self, signum, frame) -> None:
        self.post(Event(EventKind.INTERRUPT))

    def run(self) -> None:
        """Blocks until the user quits or an interrupt arrives."""
        tickers = [
            Ticker(self.post, Event(EventKind.DRAW), self.draw_interval),
            Ticker(self.post, Event(EventKind.REFRESH), self.refresh_interval),
        ]
        previous_handlers = {
            signum: signal.signal(signum, self._on_signal)
            for signum in (signal.SIGINT, signal.SIGTERM)
        }
        for ticker in tickers:
            ticker.start()
        logger.debug("Event loop started.")
        try:
            self.ui.draw()
            while self.dispatch(self.events.get()):
                pass
        finally:
            for ticker in tickers:
                ticker.stop()
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)
            logger.debug("Event loop stopped.")

    def dispatch(self, event: Event) -> bool:
        """Handles one event.

        Returns:
            False when the loop should stop.
        """
        if event.kind is EventKind.INTERRUPT:
            logger.info("Interrupted, shutting down.")
            return False
        if event.kind is EventKind.DRAW:
            self.ui.draw()
            return True
        if event.kind is EventKind.REFRESH:
            self.on_refresh_tick()
            return True
        return self.handle_key(event.key)

    def handle_key(self, key: Optional[str]) -> bool:
        command = KEY_BINDINGS.get(key)
        if command is None:
            return True

        if command is Command.QUIT:
            return False
        elif command is Command.TOGGLE_HELP:
            self.ui.toggle_help()
        elif command is Command.TOGGLE_HIDDEN:
            self.controller.toggle_hidden()
        elif command is Command.MOVE_DOWN:
            self.controller.move_down()
        elif command is Command.MOVE_UP:
            self.controller.move_up()
        elif command is Command.JUMP_TOP:
            self.controller.jump_top()
        elif command is Command.JUMP_BOTTOM:
            self.controller.jump_bottom()
        elif command is Command.SWITCH_PANE:
            self.controller.switch_pane()
        elif command is Command.ENTER:
            self.controller.enter()
        elif command is Command.EXIT:
            self.controller.exit()
        elif command is Command.TRANSFER:
            self.trigger_transfer()
        return True

    def trigger_transfer(self) -> bool:
        """Snapshots the selection and hands it to the scheduler.

        Returns:
            False if the active pane was empty and nothing was submitted.
        """
        request = self.controller.snapshot_transfer()
        if request is None:
            return False
        self.scheduler.submit(request)
        self.ui.flash(f"{request.progressive} {request.name}...", self.notice_seconds)
        self.controller.refresh(self.controller.active.other)
        return True

    def on_refresh_tick(self) -> None:
        self.controller.refresh()
        errors = [message for message in self.scheduler.poll() if message]
        if errors:
            self.ui.error(errors[0], self.notice_seconds)
            for extra in errors[1:]:
                logger.debug(f"Additional transfer error not shown: {extra}")
        elif self.scheduler.pending_count == 0 and self.ui.notice_expired():
            self.ui.clear_notice()
