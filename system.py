"""
synvm System
=============
Wires together:
  - the Machine (synvm.py)
  - the Console device (console.py)
  - the binary image loader

Program images are flat little-endian 16-bit words: word *i* of the file
lands at address *i*.
"""

from __future__ import annotations
import json
import logging
import struct
from typing import Callable, Optional

from synvm import Machine, LoadError, StopReason, ExecContext, WORD_MAX
from console import Console

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
#  Loader
# ---------------------------------------------------------------------------

def decode_image(data: bytes | bytearray) -> list[int]:
    """Decode a little-endian word image.  An odd trailing byte is an error."""
    if len(data) % 2:
        raise LoadError(f"Image has odd length ({len(data)} bytes); "
                        f"trailing byte at offset {len(data) - 1}")
    return list(struct.unpack(f"<{len(data) // 2}H", data))


def encode_image(words: list[int]) -> bytes:
    """Inverse of decode_image."""
    for i, w in enumerate(words):
        if not 0 <= w <= WORD_MAX:
            raise LoadError(f"Word {w} at index {i} does not fit 16 bits")
    return struct.pack(f"<{len(words)}H", *words)


def read_image(path: str) -> list[int]:
    """Read and decode a program image file."""
    with open(path, "rb") as f:
        data = f.read()
    return decode_image(data)

# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class VMSystem:
    """A machine with its console attached."""

    def __init__(self, line_source: Optional[Callable[[], str]] = None,
                 on_line: Optional[Callable[[str], bool]] = None):
        self.console = Console(line_source, on_line)
        self.cpu = Machine(console=self.console)

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_words(self, words: list[int], addr: int = 0):
        self.cpu.load_words(words, addr)

    def load_binary(self, data: bytes | bytearray, addr: int = 0):
        """Decode a raw image and place it at *addr*."""
        words = decode_image(data)
        self.load_words(words, addr)
        log.info("Loaded %d words at %d", len(words), addr)

    def load_binary_file(self, path: str, addr: int = 0):
        """Load a binary file into memory."""
        with open(path, "rb") as f:
            data = f.read()
        self.load_binary(data, addr)

    # -----------------------------------------------------------------
    #  Boot / execution
    # -----------------------------------------------------------------

    def boot(self):
        """Registers zeroed, stack empty, IP = 0, input buffer cleared."""
        self.cpu.reset()
        self.console.input.clear()
        log.debug("Boot: IP=0, %d words in memory", len(self.cpu.mem))

    def step(self):
        return self.cpu.step()

    def run(self, ctx: Optional[ExecContext] = None,
            max_steps: Optional[int] = None) -> StopReason:
        return self.cpu.run(ctx, max_steps)

    def run_until_halt(self, max_steps: int = 10_000_000) -> StopReason:
        """Headless run with a fresh context: breakpoints are ignored.

        Pause requests made on ``cpu.context`` (the ``debug`` console line)
        do not reach this context, so such a line is consumed and execution
        carries on.
        """
        return self.cpu.run(ExecContext(), max_steps)

    @property
    def halted(self) -> bool:
        return self.cpu.halted

    # -----------------------------------------------------------------
    #  Convenience
    # -----------------------------------------------------------------

    def get_tx_output(self) -> str:
        """Get any console output that has been produced."""
        return self.console.drain_tx()

    def write_snapshot(self, path: str):
        """Write the machine state as JSON."""
        with open(path, "w") as f:
            json.dump(self.cpu.snapshot(), f)
        log.info("Snapshot written to %s", path)

    def dump_state(self) -> str:
        """Registers, stack and console state."""
        lines = ["=== Machine ===", self.cpu.dump_regs()]
        stack = self.cpu.read_stack()
        lines.append(f"  Stack: {' '.join(str(v) for v in stack) or '(empty)'}")
        if self.cpu.fault is not None:
            lines.append(f"  Fault: {self.cpu.fault}")
        lines.append("")
        lines.append("=== Console ===")
        lines.append(f"  TX buf={len(self.console.tx_buffer)} "
                     f"lines read={self.console.input.lines_read} "
                     f"pending={self.console.input.pending!r}")
        return "\n".join(lines)
