"""
synvm Console
==============
The machine's only I/O device:

  - InputBuffer: takes one whole line from an external source and hands
    it to the program one character per ``in`` instruction.
  - Console: wraps an InputBuffer and the outbound byte stream.

The line source is any zero-argument callable returning a line of text
(``sys.stdin.readline`` by default).  The machine never reads process
stdin itself.
"""

from __future__ import annotations
import sys
from collections import deque
from typing import Callable, Optional

from synvm import EndOfInput

# ---------------------------------------------------------------------------
#  Input buffer
# ---------------------------------------------------------------------------

class InputBuffer:
    """One buffered input line, delivered a character at a time.

    The line is stored reversed so each delivery is a pop from the tail.
    Delivering the newline empties the buffer; the next request pulls a
    fresh line from the source.

    ``on_line`` sees every freshly received raw line before buffering.
    If it returns true the line is consumed (treated as a tool command)
    and ``read_char`` returns None.
    """

    def __init__(self, line_source: Optional[Callable[[], str]] = None,
                 on_line: Optional[Callable[[str], bool]] = None):
        self.line_source = line_source or sys.stdin.readline
        self.on_line = on_line
        self._chars: Optional[list[str]] = None
        self.lines_read: int = 0

    @property
    def buffering(self) -> bool:
        """True while part of a line is still waiting to be delivered."""
        return self._chars is not None

    @property
    def pending(self) -> str:
        """Undelivered characters, in delivery order."""
        return "".join(reversed(self._chars)) if self._chars else ""

    def feed(self, line: str):
        """Buffer *line* directly, bypassing the source and the hook."""
        if not line.endswith("\n"):
            line += "\n"
        self._chars = list(reversed(line))

    def clear(self):
        self._chars = None

    def read_char(self) -> Optional[int]:
        """Return the next character code, or None if the line was intercepted."""
        if self._chars is None:
            line = self.line_source()
            if not line:
                raise EndOfInput("Input source exhausted")
            self.lines_read += 1
            if self.on_line is not None and self.on_line(line):
                return None
            self.feed(line)

        c = self._chars.pop()
        if c == "\n":
            self._chars = None
        return ord(c)


# ---------------------------------------------------------------------------
#  Console
# ---------------------------------------------------------------------------

class Console:
    """Input buffer plus the outbound character stream."""

    def __init__(self, line_source: Optional[Callable[[], str]] = None,
                 on_line: Optional[Callable[[str], bool]] = None):
        self.input = InputBuffer(line_source, on_line)
        self.tx_buffer: deque[int] = deque()   # bytes emitted by ``out``

        # Callbacks
        self.on_tx: Optional[Callable[[int], None]] = None  # called with each byte

    def read_char(self) -> Optional[int]:
        return self.input.read_char()

    def write(self, value: int):
        value &= 0xFF
        self.tx_buffer.append(value)
        if self.on_tx:
            self.on_tx(value)

    def inject_input(self, text: str):
        """Queue *text* (one or more lines) ahead of the line source."""
        lines = text.splitlines(keepends=True)
        if not lines:
            return
        source = self.input.line_source
        queued = deque(lines)

        def chained():
            if queued:
                return queued.popleft()
            self.input.line_source = source
            return source()

        self.input.line_source = chained

    def drain_tx(self) -> str:
        """Return all pending output as text and clear the buffer."""
        out = "".join(chr(b) for b in self.tx_buffer)
        self.tx_buffer.clear()
        return out
