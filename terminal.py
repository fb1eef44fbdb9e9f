"""Terminal mode handling and key decoding for the interactive session.

The terminal is put in cbreak mode rather than raw mode: echo and line
buffering are off, but the terminal still turns Ctrl-c into SIGINT, which the
event loop treats as an interrupt.
"""
import contextlib
import logging
import os
import select
import sys
import termios
import threading
import tty
from typing import Callable, List, Optional

from utils import StartupError

logger = logging.getLogger(__name__)

ESC_SEQUENCE_TIMEOUT_MS = 25
KEY_POLL_TIMEOUT_MS = 100

_PENDING_BYTES: List[bytes] = []

_SINGLE_BYTE_KEYS = {
    b"\t": "TAB",
    b"\r": "ENTER",
    b"\n": "ENTER",
    b"\x17": "CTRL_W",
    b"\x03": "CTRL_C",
}

_CSI_KEYS = {
    b"A": "UP",
    b"B": "DOWN",
    b"C": "RIGHT",
    b"D": "LEFT",
}

_CTRL_CSI_KEYS = {
    b"A": "CTRL_UP",
    b"B": "CTRL_DOWN",
    b"C": "CTRL_RIGHT",
    b"D": "CTRL_LEFT",
}


class TerminalController:
    """Switches stdin into cbreak mode and back."""

    def __init__(self, stdin_fd: int):
        self.stdin_fd = stdin_fd
        self._saved_tty_state = None

    @classmethod
    def for_stdin(cls) -> "TerminalController":
        """
        Raises:
            StartupError: If stdin is not an interactive terminal.
        """
        if not sys.stdin.isatty():
            raise StartupError("Standard input is not a terminal; sftp-commander must be run interactively.")
        return cls(sys.stdin.fileno())

    def enable(self) -> None:
        self._saved_tty_state = termios.tcgetattr(self.stdin_fd)
        tty.setcbreak(self.stdin_fd, termios.TCSANOW)

    def disable(self) -> None:
        if self._saved_tty_state is not None:
            termios.tcsetattr(self.stdin_fd, termios.TCSAFLUSH, self._saved_tty_state)
            self._saved_tty_state = None

    @contextlib.contextmanager
    def cbreak_mode(self):
        try:
            self.enable()
            yield
        finally:
            self.disable()


def _read_ready_byte(fd: int, timeout_ms: int) -> Optional[bytes]:
    ready, _, _ = select.select([fd], [], [], timeout_ms / 1000.0)
    if not ready:
        return None
    ch = os.read(fd, 1)
    return ch or None


def _utf8_length(lead: int) -> int:
    if lead >= 0xF0:
        return 4
    if lead >= 0xE0:
        return 3
    if lead >= 0xC0:
        return 2
    return 1


def _read_utf8(fd: int, lead: bytes) -> str:
    data = lead
    for _ in range(_utf8_length(lead[0]) - 1):
        part = _read_ready_byte(fd, ESC_SEQUENCE_TIMEOUT_MS)
        if part is None:
            break
        data += part
    return data.decode("utf-8", errors="replace")


def _read_csi(fd: int) -> str:
    seq = _read_ready_byte(fd, ESC_SEQUENCE_TIMEOUT_MS)
    if seq is None:
        return "ESC"
    if seq in _CSI_KEYS:
        return _CSI_KEYS[seq]

    # Modified keys: ESC [ 1 ; <mod> <final>
    params = [seq]
    while True:
        part = _read_ready_byte(fd, ESC_SEQUENCE_TIMEOUT_MS)
        if part is None:
            return "ESC"
        if part.isalpha() or part == b"~":
            break
        params.append(part)
        if len(params) > 16:
            return "ESC"
    if b"".join(params) == b"1;5" and part in _CTRL_CSI_KEYS:
        return _CTRL_CSI_KEYS[part]
    return "UNKNOWN"


def read_key(fd: int, timeout_ms: Optional[int] = None) -> str:
    """Reads and decodes one key press from `fd`.

    Returns:
        A key token such as "UP", "ENTER" or "ESC", the character itself for
        printable keys, or "" if nothing arrived within `timeout_ms`.
    """
    if _PENDING_BYTES:
        ch = _PENDING_BYTES.pop(0)
    else:
        if timeout_ms is not None:
            ready, _, _ = select.select([fd], [], [], max(0.0, timeout_ms / 1000.0))
            if not ready:
                return ""
        ch = os.read(fd, 1)
        if not ch:
            return ""

    if ch in _SINGLE_BYTE_KEYS:
        return _SINGLE_BYTE_KEYS[ch]
    if ch != b"\x1b":
        return _read_utf8(fd, ch)

    seq = _read_ready_byte(fd, ESC_SEQUENCE_TIMEOUT_MS)
    if seq is None:
        return "ESC"
    if seq == b"[":
        return _read_csi(fd)
    if seq == b"O":
        # application cursor mode
        final = _read_ready_byte(fd, ESC_SEQUENCE_TIMEOUT_MS)
        if final in _CSI_KEYS:
            return _CSI_KEYS[final]
        return "ESC"
    _PENDING_BYTES.append(seq)
    return "ESC"


class KeyReader(threading.Thread):
    """Daemon thread that decodes keys from `fd` and hands them to `on_key`.

    Stops when `stop()` is called or the input reaches end of file.
    """

    def __init__(self, fd: int, on_key: Callable[[str], None], poll_timeout_ms: int = KEY_POLL_TIMEOUT_MS):
        super().__init__(name="KeyReader", daemon=True)
        self.fd = fd
        self.on_key = on_key
        self.poll_timeout_ms = poll_timeout_ms
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        while not self._stop_event.is_set():
            try:
                if not _PENDING_BYTES:
                    ready, _, _ = select.select([self.fd], [], [], self.poll_timeout_ms / 1000.0)
                    if not ready:
                        continue
                key = read_key(self.fd, timeout_ms=0)
            except OSError as e:
                logger.error(f"Keyboard input failed: {e}")
                break
            if key == "":
                # select reported readable but nothing came back: EOF
                logger.debug("Keyboard input closed.")
                break
            if key and key != "UNKNOWN":
                self.on_key(key)
