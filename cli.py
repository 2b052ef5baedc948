#!/usr/bin/env python3
"""
synvm Runner / Monitor
=======================
Command-line front end for the synvm virtual machine.

Provides:
  - Running a program image with stdin/stdout as the console
  - Interception of the console lines ``dump`` (write a state snapshot)
    and ``debug`` (drop into the monitor)
  - An interactive monitor: step / run / breakpoints, register, memory and
    stack inspection and modification, look-ahead disassembly
  - Static disassembly and assembly of images

Usage:
  python cli.py PROGRAM.bin [--debug] [--break ADDR] [--input FILE]
  python cli.py PROGRAM.bin --disassemble
  python cli.py --assemble SRC.asm OUT.bin [--listing]
"""

from __future__ import annotations
import argparse
import cmd
import logging
import shlex
import sys
from typing import Optional

from synvm import VMError, HaltError, StopReason
from system import VMSystem, read_image, encode_image
from disasm import disasm_one, disassemble, to_ascii, mask_word
from asm import assemble, AsmError

log = logging.getLogger(__name__)

DEFAULT_SNAPSHOT = "snapshot.json"

# ---------------------------------------------------------------------------
#  Monitor
# ---------------------------------------------------------------------------

class DebuggerCLI(cmd.Cmd):
    """Interactive monitor for a paused machine.

    Works only through the machine's inspection interface.  Commands are
    read from *stdin* (any file-like object), so scripted sessions and
    tests need no terminal.
    """

    intro = (
        "\n"
        "synvm monitor -- 'help' for commands, 'c' to resume, 'quit' to exit.\n"
    )
    prompt = "vm> "

    def __init__(self, system: VMSystem, stdin=None, stdout=None):
        super().__init__(stdin=stdin, stdout=stdout)
        if stdin is not None:
            self.use_rawinput = False
        self.sys = system
        self.cpu = system.cpu
        self.resume = False
        self.quit_requested = False

    def _print(self, text: str = ""):
        print(text, file=self.stdout)

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address: number (0x hex allowed), register name or 'ip'."""
        s = s.strip().lower()
        if s.startswith("r") and s[1:].isdigit():
            return self.cpu.read_register(int(s[1:]))
        if s == "ip":
            return self.cpu.get_ip()
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except ValueError as e:
            self._print(f"Error: {e}")
        except VMError as e:
            self._print(f"Fault: {e}")
        return False

    def _where(self, addr: int) -> str:
        text, _ = disasm_one(self.cpu.read_memory_word, addr)
        return f"{addr:5d}: {text}"

    # ================================================================
    #  Commands
    # ================================================================

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            if self.cpu.is_halted():
                self._print("Machine is halted.")
                break
            where = self._where(self.cpu.get_ip())
            try:
                ins = self.cpu.step_one_instruction()
            except HaltError:
                self._print("Machine halted.")
                break
            except VMError as e:
                self._print(f"  {where}")
                self._print(f"Fault: {e}")
                break
            self._print(f"  {where}" + ("" if ins else "   (line intercepted)"))
    do_s = do_step

    def do_run(self, arg):
        """Run inside the monitor until halt/breakpoint: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else None
        try:
            reason = self.cpu.run(max_steps=max_steps)
        except VMError as e:
            self._print(f"Fault: {e}")
            return
        if reason is StopReason.HALTED:
            self._print("Machine halted.")
        elif reason is StopReason.BREAKPOINT:
            self._print(f"Breakpoint hit at {self.cpu.get_ip()}")
        else:
            self._print(f"Stopped ({reason.value}) at {self.cpu.get_ip()}")

    def do_continue(self, arg):
        """Leave the monitor and resume normal execution."""
        self.resume = True
        return True
    do_c = do_continue

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>  (no argument lists them)"""
        if not arg.strip():
            bps = self.cpu.context.breakpoints
            if bps:
                self._print("Breakpoints:")
                for a in sorted(bps):
                    self._print(f"  {a}")
            else:
                self._print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.cpu.register_breakpoint(addr)
        self._print(f"Breakpoint set at {addr}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.cpu.context.breakpoints.clear()
            self._print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.cpu.remove_breakpoint(addr)
        self._print(f"Breakpoint at {addr} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show registers and IP."""
        self._print(self.cpu.dump_regs())

    def do_setreg(self, arg):
        """Set register: setreg <r0-r7|ip> <value>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._print("Usage: setreg <reg> <value>")
            return
        reg_s = parts[0].lower()
        val = self._parse_int(parts[1])
        if reg_s == "ip":
            self.cpu.set_ip(val)
        elif reg_s.startswith("r") and reg_s[1:].isdigit():
            self.cpu.write_register(int(reg_s[1:]), val)
        else:
            self._print("Unknown register.")
            return
        self._print(f"  {reg_s} = {val}")

    def do_stack(self, arg):
        """Show the stack, bottom first."""
        stack = self.cpu.read_stack()
        self._print(" ".join(str(v) for v in stack) if stack else "(empty)")
    do_t = do_stack

    def do_mem(self, arg):
        """Read memory words: mem <address> [count] [mask_key]
        Each word is shown with its ASCII glyph.  A mask key XORs the
        displayed value (for obfuscated regions)."""
        parts = shlex.split(arg)
        if not parts:
            self._print("Usage: mem <address> [count] [mask_key]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16
        key = self._parse_int(parts[2]) if len(parts) > 2 else None
        for a in range(addr, addr + count):
            w = self.cpu.read_memory_word(a)
            if w is None:
                self._print(f"  {a:5d}: <BLANK>")
                continue
            if key is not None:
                w = mask_word(w, key)
            self._print(f"  {a:5d}: {w:5d} / {to_ascii(w)}")
    do_r = do_mem

    def do_setmem(self, arg):
        """Write memory words: setmem <address> <word> [word] ..."""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._print("Usage: setmem <addr> <word...>")
            return
        addr = self._parse_addr(parts[0])
        for i, tok in enumerate(parts[1:]):
            self.cpu.write_memory_word(addr + i, self._parse_int(tok))
        self._print(f"  Wrote {len(parts) - 1} word(s) at {addr}")
    do_w = do_setmem

    def do_disasm(self, arg):
        """Disassemble ahead without executing: disasm [address] [count]
        Defaults to the current IP, 5 instructions."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.cpu.get_ip()
        count = self._parse_int(parts[1]) if len(parts) > 1 else 5
        for _ in range(count):
            text, size = disasm_one(self.cpu.read_memory_word, addr)
            marker = ">>>" if addr == self.cpu.get_ip() else "   "
            self._print(f"  {marker} {addr:5d}: {text}")
            addr += size
    do_l = do_disasm

    def do_text(self, arg):
        """Show all of memory as ASCII glyphs."""
        snap = self.cpu.snapshot()
        self._print("".join(to_ascii(w) for _, w in snap["memory"]))

    def do_status(self, arg):
        """Show machine and console status."""
        self._print(self.sys.dump_state())

    def do_stats(self, arg):
        """Show instruction counts for this session."""
        ctx = self.cpu.context
        self._print(f"  {ctx.steps} instructions executed")
        for op, n in ctx.op_counts.most_common():
            self._print(f"    {op.mnemonic:<5s} {n}")

    def do_snapshot(self, arg):
        """Write the machine state as JSON: snapshot [path]"""
        path = arg.strip() or DEFAULT_SNAPSHOT
        self.sys.write_snapshot(path)
        self._print(f"Snapshot written to {path}")

    # -- Misc --

    def do_quit(self, arg):
        """Exit the monitor and stop the machine."""
        self.quit_requested = True
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        self._print()
        return self.do_quit(arg)

    def default(self, line):
        """Handle unknown commands gracefully."""
        self._print(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        """Don't repeat the last command on empty input."""
        pass

# ---------------------------------------------------------------------------
#  Run console
# ---------------------------------------------------------------------------

def make_line_hook(system: VMSystem, snapshot_path: str = DEFAULT_SNAPSHOT):
    """Console hook intercepting the ``dump`` and ``debug`` lines."""
    ctx = system.cpu.context

    def hook(line: str) -> bool:
        cmd_s = line.strip()
        if cmd_s == "dump":
            system.write_snapshot(snapshot_path)
            print("Dumped", file=sys.stderr)
            return True
        if cmd_s == "debug":
            print("Starting debugger...", file=sys.stderr)
            ctx.pause_requested = True
            return True
        return False

    return hook


def run_console(system: VMSystem, debug: bool = False,
                max_steps: Optional[int] = None,
                monitor_stdin=None, monitor_stdout=None) -> int:
    """Run the machine until it halts; returns a process exit status.

    Breakpoints, a ``debug`` line or *debug* at start open the monitor.
    A fatal fault ends the run, unless *debug* is set, in which case the
    monitor opens for post-mortem editing.  *max_steps* bounds the whole
    session, including instructions stepped in the monitor.
    """
    def monitor() -> bool:
        cli = DebuggerCLI(system, stdin=monitor_stdin, stdout=monitor_stdout)
        cli.prompt = f"vm [{system.cpu.get_ip()}]> "
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print()
            return False
        return cli.resume and not cli.quit_requested

    ctx = system.cpu.context
    start = ctx.steps
    if debug and not monitor():
        return 0

    while True:
        budget = None
        if max_steps is not None:
            budget = max(0, max_steps - (ctx.steps - start))
        try:
            reason = system.run(max_steps=budget)
        except VMError as e:
            log.error("Fatal: %s", e)
            print(f"\nFatal: {e}", file=sys.stderr)
            if debug and monitor():
                continue
            return 1

        if reason is StopReason.HALTED:
            print("\nExecution complete.")
            return 0
        if reason is StopReason.STEP_LIMIT:
            print(f"\nStopped after {max_steps} steps.", file=sys.stderr)
            return 2
        if reason is StopReason.BREAKPOINT:
            print(f"\nBreakpoint hit at {system.cpu.get_ip()}", file=sys.stderr)
        if not monitor():
            return 0

# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

def _stdout_tx(byte_val: int):
    """Print console output to the host terminal in real time."""
    sys.stdout.write(chr(byte_val))
    sys.stdout.flush()


def setup_logging(verbose: int):
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, stream=sys.stderr,
                        format="%(levelname)s %(name)s: %(message)s")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="synvm runner and monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py challenge.bin\n"
               "  python cli.py challenge.bin --debug --break 0x1000\n"
               "  python cli.py challenge.bin --input moves.txt\n"
               "  python cli.py challenge.bin --disassemble > listing.txt\n"
               "  python cli.py --assemble hello.asm hello.bin --listing\n"
    )
    parser.add_argument("program", nargs="?", help="Program image (little-endian 16-bit words)")
    parser.add_argument("--debug", action="store_true",
                        help="Open the monitor before the first instruction "
                             "and after a fatal fault")
    parser.add_argument("--break", dest="breaks", type=lambda s: int(s, 0),
                        action="append", default=[], metavar="ADDR",
                        help="Set a breakpoint (can repeat)")
    parser.add_argument("--input", type=str, default=None, metavar="FILE",
                        help="Feed these lines to the program before stdin")
    parser.add_argument("--no-intercept", action="store_true",
                        help="Pass 'dump' and 'debug' lines to the program")
    parser.add_argument("--snapshot", type=str, default=DEFAULT_SNAPSHOT,
                        metavar="PATH", help="Where 'dump' writes the state snapshot")
    parser.add_argument("--max-steps", type=int, default=None,
                        help="Stop after this many instructions")
    parser.add_argument("--trace", action="store_true",
                        help="Print each executed instruction to stderr")
    parser.add_argument("--disassemble", action="store_true",
                        help="Print a static listing of the program and exit")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC to OUT and exit")
    parser.add_argument("--listing", action="store_true",
                        help="Print assembly listing (with --assemble)")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase log verbosity (-v, -vv)")
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        with open(src_path, "r") as f:
            source = f.read()
        try:
            words = assemble(source, 0, listing=args.listing)
        except AsmError as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            return 1
        with open(out_path, "wb") as f:
            f.write(encode_image(words))
        print(f"Assembled {src_path} -> {out_path} ({len(words)} words)")
        return 0

    if not args.program:
        parser.error("a program image is required")

    try:
        words = read_image(args.program)
    except (OSError, VMError) as e:
        print(f"Error loading '{args.program}': {e}", file=sys.stderr)
        return 1

    # ---- Disassemble-only mode ----------------------------------------
    if args.disassemble:
        for line in disassemble(words):
            print(line)
        return 0

    system = VMSystem()
    system.load_words(words)
    system.boot()
    system.console.on_tx = _stdout_tx
    if not args.no_intercept:
        system.console.input.on_line = make_line_hook(system, args.snapshot)
    if args.input:
        with open(args.input, "r") as f:
            system.console.inject_input(f.read())
    for addr in args.breaks:
        system.cpu.register_breakpoint(addr)
    if args.trace:
        system.cpu.context.trace = lambda ins: print(
            f"  {ins.addr:5d}: {ins}", file=sys.stderr)

    try:
        return run_console(system, debug=args.debug, max_steps=args.max_steps)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
