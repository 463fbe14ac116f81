"""Background reader of single key presses from a terminal or stream."""

from __future__ import annotations

import sys
import threading
import time
from typing import TextIO

__all__ = ["UserInputThread"]


class UserInputThread:
    """Reads characters one at a time on a background thread.

    When the stream is a terminal it is put into unbuffered, no-echo mode
    until ``close`` restores it. The thread ends on ``stop`` or end of input.
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdin
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._input: str | None = None
        self._saved_terminal = None
        self._configure_terminal()
        self._thread = threading.Thread(target=self._acquire_user_input, daemon=True)
        self._thread.start()

    def __enter__(self) -> "UserInputThread":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _configure_terminal(self) -> None:
        try:
            import termios

            fd = self._stream.fileno()
            if not self._stream.isatty():
                return
            self._saved_terminal = termios.tcgetattr(fd)
            settings = termios.tcgetattr(fd)
            settings[3] &= ~(termios.ICANON | termios.ECHO)
            settings[6][termios.VMIN] = 1
            termios.tcsetattr(fd, termios.TCSANOW, settings)
        except (ImportError, AttributeError, OSError, ValueError):
            self._saved_terminal = None

    def _restore_terminal(self) -> None:
        if self._saved_terminal is None:
            return
        import termios

        termios.tcsetattr(self._stream.fileno(), termios.TCSANOW, self._saved_terminal)
        self._saved_terminal = None

    def get_input(self) -> str | None:
        """Return the last character read and clear it; ``None`` if there is none."""
        with self._lock:
            value, self._input = self._input, None
        return value

    def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        """Restore the terminal and wait for the reader thread to finish."""
        self._restore_terminal()
        self._thread.join()
        print("UserInputThread destructed.")

    def _acquire_user_input(self) -> None:
        while not self._stop.is_set():
            c = self._stream.read(1)
            if not c:
                break
            print("USER INPUT: SPACE" if c == " " else f"USER INPUT: {c}")
            with self._lock:
                self._input = c
            time.sleep(0.01)