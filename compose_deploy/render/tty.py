"""Line-oriented terminal output on top of a rich Console.

Control sequences (cursor movement, line erasure) are emitted through
`Console.control`, so they are dropped when the console is not a terminal.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from rich.console import Console
from rich.control import Control, ControlType
from rich.text import Text

# Erase from the cursor to the end of the screen
_ERASE_BELOW = "\x1b[0J"


class Tty:
    """Cursor and line primitives used by the progress renderers."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console if console is not None else Console()

    def write(self, text: str | Text) -> None:
        self.console.print(
            text, end="", markup=False, highlight=False, soft_wrap=True
        )

    def write_line(self, text: str | Text = "") -> None:
        self.console.print(text, markup=False, highlight=False, soft_wrap=True)

    def clear_line(self) -> None:
        self.console.control(
            Control(ControlType.CARRIAGE_RETURN, (ControlType.ERASE_IN_LINE, 2))
        )

    def replace_line(self, text: str | Text) -> None:
        self.clear_line()
        self.write(text)

    def cursor_up(self, rows: int = 1) -> None:
        if rows > 0:
            self.console.control(Control((ControlType.CURSOR_UP, rows)))

    def delete_to_end(self) -> None:
        if self.console.is_terminal:
            self.console.file.write(_ERASE_BELOW)

    def hide_cursor(self) -> None:
        self.console.show_cursor(False)

    def show_cursor(self) -> None:
        self.console.show_cursor(True)

    @contextmanager
    def cursor_hidden(self) -> Iterator[None]:
        """Hide the cursor for the duration of the block."""
        self.hide_cursor()
        try:
            yield
        finally:
            self.show_cursor()

    def flush(self) -> None:
        self.console.file.flush()

    def window_width(self) -> int:
        return self.console.width

    @property
    def is_terminal(self) -> bool:
        return self.console.is_terminal


__all__ = ["Tty"]
