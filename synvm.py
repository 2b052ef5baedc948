"""
synvm: 16-bit Word Virtual Machine
===================================
A fetch/decode/execute emulator for a small 22-opcode instruction set over
15-bit words.  Memory is word addressed and self-modifiable; eight
registers are reached through the encoded addresses 32768..32775.

Every instruction is decoded from memory at the moment it executes, with no
decode cache, so a program that rewrites its own text sees the new words
on the next fetch.

Encoding:
  0..32767       literal value
  32768..32775   register r0..r7
  32776..65535   invalid
"""

from __future__ import annotations
import enum
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Optional

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MODULUS       = 32768          # arithmetic is taken mod 2**15
MASK15        = MODULUS - 1
WORD_MAX      = 0xFFFF
NUM_REGS      = 8
REG_BASE      = 32768          # encoded address of r0
REG_LAST      = REG_BASE + NUM_REGS - 1


class Opcode(enum.IntEnum):
    HALT        = 0
    SET         = 1
    PUSH        = 2
    POP         = 3
    EQ          = 4
    GT          = 5
    JMP         = 6
    JT          = 7
    JF          = 8
    ADD         = 9
    MULT        = 10
    MOD         = 11
    AND         = 12
    OR          = 13
    NOT         = 14
    RMEM        = 15
    WMEM        = 16
    CALL        = 17
    RET         = 18
    OUT         = 19
    IN          = 20
    NOOP        = 21
    UNKNOWN     = -1   # decode-only tag for words outside 0..21

    @classmethod
    def from_word(cls, word: int) -> "Opcode":
        if 0 <= word <= 21:
            return cls(word)
        return cls.UNKNOWN

    @property
    def mnemonic(self) -> str:
        return self.name.lower()


# Operand policies: DST operands stay as the raw register address (write
# target), VAL operands are resolved through the register file.
DST = "dst"
VAL = "val"

OPERAND_MODES: dict[Opcode, tuple[str, ...]] = {
    Opcode.HALT:    (),
    Opcode.SET:     (DST, VAL),
    Opcode.PUSH:    (VAL,),
    Opcode.POP:     (DST,),
    Opcode.EQ:      (DST, VAL, VAL),
    Opcode.GT:      (DST, VAL, VAL),
    Opcode.JMP:     (VAL,),
    Opcode.JT:      (VAL, VAL),
    Opcode.JF:      (VAL, VAL),
    Opcode.ADD:     (DST, VAL, VAL),
    Opcode.MULT:    (DST, VAL, VAL),
    Opcode.MOD:     (DST, VAL, VAL),
    Opcode.AND:     (DST, VAL, VAL),
    Opcode.OR:      (DST, VAL, VAL),
    Opcode.NOT:     (DST, VAL),
    Opcode.RMEM:    (DST, VAL),
    Opcode.WMEM:    (VAL, VAL),
    Opcode.CALL:    (VAL,),
    Opcode.RET:     (),
    Opcode.OUT:     (VAL,),
    Opcode.IN:      (DST,),
    Opcode.NOOP:    (),
    Opcode.UNKNOWN: (),
}

ARITY: dict[Opcode, int] = {op: len(modes) for op, modes in OPERAND_MODES.items()}

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def is_literal(word: int) -> bool:
    return 0 <= word <= MASK15

def is_register(word: int) -> bool:
    return REG_BASE <= word <= REG_LAST

def reg_index(word: int) -> int:
    """Encoded register address → index 0..7."""
    return word - REG_BASE

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class VMError(Exception):
    """Base for fatal machine conditions.

    ``ip``, ``opcode`` and ``operands`` are filled in by ``Machine.step``
    when the error escapes an instruction, so callers can report where
    execution stopped.
    """

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message
        self.ip: Optional[int] = None
        self.opcode: Optional[Opcode] = None
        self.operands: tuple[int, ...] = ()

    def attach(self, ip: int, opcode: Optional[Opcode] = None,
               operands: tuple[int, ...] = ()) -> "VMError":
        if self.ip is None:
            self.ip = ip
            self.opcode = opcode
            self.operands = tuple(operands)
        return self

    def __str__(self):
        if self.ip is None:
            return self.message
        op = self.opcode.name if self.opcode is not None else "?"
        args = ", ".join(str(a) for a in self.operands)
        return f"{self.message} (ip={self.ip}, op={op}, operands=[{args}])"


class LoadError(VMError):
    pass

class InvalidOpcode(VMError):
    pass

class InvalidOperand(VMError):
    pass

class InvalidAddress(VMError):
    pass

class StackUnderflow(VMError):
    pass

class DivideByZero(VMError):
    pass

class EndOfInput(VMError):
    pass

class HaltError(VMError):
    pass

# ---------------------------------------------------------------------------
#  Decoded instruction
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Instruction:
    addr: int
    opcode: Opcode
    word: int                       # raw opcode word as fetched
    raw: tuple[int, ...]            # operand words as stored in memory
    args: tuple[int, ...]           # DST operands raw, VAL operands resolved

    @property
    def size(self) -> int:
        return 1 + len(self.raw)

    def __str__(self):
        name = self.opcode.mnemonic if self.opcode is not Opcode.UNKNOWN else str(self.word)
        return f"{name} " + ", ".join(str(a) for a in self.args) if self.args else name


def decode(machine: "Machine", addr: int, strict: bool = True) -> Instruction:
    """Decode the instruction at *addr* from current memory.

    Strict decoding is the execution path: unknown opcodes and invalid
    operands raise.  Non-strict decoding is for display and never raises
    on those; unresolvable operands are echoed raw and missing memory
    reads as 0.
    """
    if strict:
        word = machine.read_word(addr)
    else:
        word = machine.read_memory_word(addr) or 0
    op = Opcode.from_word(word)
    if op is Opcode.UNKNOWN and strict:
        raise InvalidOpcode(f"Unknown opcode {word}").attach(addr, op)

    raw = []
    for i in range(ARITY[op]):
        a = addr + 1 + i
        if strict:
            raw.append(machine.read_word(a))
        else:
            w = machine.read_memory_word(a)
            raw.append(0 if w is None else w)

    args = []
    for mode, w in zip(OPERAND_MODES[op], raw):
        if mode == DST:
            args.append(w)
        elif strict:
            try:
                args.append(machine.resolve(w))
            except VMError as e:
                raise e.attach(addr, op, tuple(raw))
        else:
            args.append(machine.resolve(w) if is_literal(w) or is_register(w) else w)
    return Instruction(addr, op, word, tuple(raw), tuple(args))

# ---------------------------------------------------------------------------
#  Execution context
# ---------------------------------------------------------------------------

class StopReason(enum.Enum):
    HALTED      = "halted"
    BREAKPOINT  = "breakpoint"
    PAUSED      = "paused"
    STEP_LIMIT  = "step-limit"


@dataclass
class ExecContext:
    """Per-session execution state owned by the caller, not the machine.

    Debuggers and tests pass one of these into ``step``/``run``; the
    machine keeps a default instance for headless use.
    """
    breakpoints: set[int] = field(default_factory=set)
    steps: int = 0
    op_counts: Counter = field(default_factory=Counter)
    trace: Optional[Callable[[Instruction], None]] = None
    pause_requested: bool = False
    resume_ip: Optional[int] = None     # breakpoint address last stopped at

# ---------------------------------------------------------------------------
#  Machine
# ---------------------------------------------------------------------------

class Machine:
    """The VM: memory arena, register file, stack, IP and the run loop."""

    def __init__(self, program: Optional[list[int]] = None, console=None):
        self.mem: dict[int, int] = {}
        self.regs: list[int] = [0] * NUM_REGS
        self.stack: list[int] = []
        self.ip: int = 0
        self.halted: bool = False
        self.fault: Optional[VMError] = None
        self.context = ExecContext()

        # Console: anything with read_char() -> Optional[int] and write(byte)
        self.console = console

        if program:
            self.load_words(program)

    # -- Memory & registers --

    def load_words(self, words: list[int], addr: int = 0):
        """Place *words* in memory starting at *addr*."""
        for i, w in enumerate(words):
            self.mem[addr + i] = w

    def read_word(self, addr: int) -> int:
        if addr in self.mem:
            return self.mem[addr]
        if is_register(addr):
            return self.regs[reg_index(addr)]
        raise InvalidAddress(f"Read of unset address {addr}")

    def write_word(self, addr: int, value: int):
        if not 0 <= addr <= WORD_MAX:
            raise InvalidAddress(f"Write to address {addr} outside 0..{WORD_MAX}")
        self.mem[addr] = value

    def resolve(self, value: int) -> int:
        if value <= MASK15:
            return value
        if value <= REG_LAST:
            return self.regs[value - REG_BASE]
        raise InvalidOperand(f"Operand {value} is neither literal nor register")

    def set_register(self, raw: int, value: int):
        if not is_register(raw):
            raise InvalidOperand(f"Write target {raw} is not a register")
        self.regs[raw - REG_BASE] = value

    # -- Stack --

    def push(self, value: int):
        self.stack.append(value)

    def pop(self) -> Optional[int]:
        return self.stack.pop() if self.stack else None

    # =====================================================================
    #  STEP: one fetch/decode/execute cycle
    # =====================================================================

    def step(self, ctx: Optional[ExecContext] = None) -> Optional[Instruction]:
        """Execute one instruction.

        Returns the decoded instruction, or None when an ``in`` was
        intercepted by the console hook and will be replayed.  Fatal
        conditions raise a VMError with ip/opcode/operands attached and
        leave IP on the failing instruction; the error is kept in ``fault``
        until an instruction completes, so state edited in the monitor is
        picked up when the instruction is retried.
        """
        if self.halted:
            raise HaltError("Machine is halted")
        ctx = ctx or self.context

        ip = self.ip
        try:
            ins = decode(self, ip)
            next_ip = self._execute(ins, ip + ins.size)
        except VMError as e:
            self.fault = e.attach(ip)
            raise

        self.fault = None
        if next_ip is None:
            return None
        self.ip = next_ip
        ctx.steps += 1
        ctx.op_counts[ins.opcode] += 1
        if ctx.trace:
            ctx.trace(ins)
        return ins

    def _execute(self, ins: Instruction, next_ip: int) -> Optional[int]:
        """Apply *ins*; return the IP to continue at (None = replay)."""
        op = ins.opcode
        a = ins.args

        try:
            if op is Opcode.HALT:
                self._halt()
            elif op is Opcode.SET:
                self.set_register(a[0], a[1])
            elif op is Opcode.PUSH:
                self.push(a[0])
            elif op is Opcode.POP:
                if not is_register(a[0]):
                    raise InvalidOperand(f"Write target {a[0]} is not a register")
                if not self.stack:
                    raise StackUnderflow("Pop from empty stack")
                self.set_register(a[0], self.pop())
            elif op is Opcode.EQ:
                self.set_register(a[0], 1 if a[1] == a[2] else 0)
            elif op is Opcode.GT:
                self.set_register(a[0], 1 if a[1] > a[2] else 0)
            elif op is Opcode.JMP:
                next_ip = a[0]
            elif op is Opcode.JT:
                if a[0] != 0:
                    next_ip = a[1]
            elif op is Opcode.JF:
                if a[0] == 0:
                    next_ip = a[1]
            elif op is Opcode.ADD:
                self.set_register(a[0], (a[1] + a[2]) % MODULUS)
            elif op is Opcode.MULT:
                self.set_register(a[0], (a[1] * a[2]) % MODULUS)
            elif op is Opcode.MOD:
                if a[2] == 0:
                    raise DivideByZero("Mod by zero")
                self.set_register(a[0], a[1] % a[2])
            elif op is Opcode.AND:
                self.set_register(a[0], a[1] & a[2])
            elif op is Opcode.OR:
                self.set_register(a[0], a[1] | a[2])
            elif op is Opcode.NOT:
                self.set_register(a[0], ~a[1] & MASK15)
            elif op is Opcode.RMEM:
                self.set_register(a[0], self.read_word(a[1]))
            elif op is Opcode.WMEM:
                self.write_word(a[0], a[1])
            elif op is Opcode.CALL:
                self.push(next_ip)
                next_ip = a[0]
            elif op is Opcode.RET:
                target = self.pop()
                if target is None:
                    self._halt()
                else:
                    next_ip = target
            elif op is Opcode.OUT:
                self._require_console().write(a[0] & 0xFF)
            elif op is Opcode.IN:
                if not is_register(a[0]):
                    raise InvalidOperand(f"Write target {a[0]} is not a register")
                ch = self._require_console().read_char()
                if ch is None:
                    return None
                self.set_register(a[0], ch)
            elif op is Opcode.NOOP:
                pass
        except VMError as e:
            raise e.attach(ins.addr, op, ins.raw)
        return next_ip

    def _halt(self):
        self.halted = True

    def _require_console(self):
        if self.console is None:
            raise VMError("No console attached")
        return self.console

    # -- Run loop --

    def run(self, ctx: Optional[ExecContext] = None,
            max_steps: Optional[int] = None) -> StopReason:
        """Run until halt, breakpoint, pause request or *max_steps*.

        Breakpoints are checked before every instruction.  A run that starts
        on the breakpoint it last stopped at executes that instruction
        first, so resuming makes progress.
        """
        ctx = ctx or self.context
        ctx.pause_requested = False
        n = 0
        while not self.halted:
            if max_steps is not None and n >= max_steps:
                return StopReason.STEP_LIMIT
            if self.ip in ctx.breakpoints and self.ip != ctx.resume_ip:
                ctx.resume_ip = self.ip
                return StopReason.BREAKPOINT
            ctx.resume_ip = None
            self.step(ctx)
            n += 1
            if ctx.pause_requested:
                ctx.pause_requested = False
                return StopReason.PAUSED
        return StopReason.HALTED

    # =====================================================================
    #  Inspection interface (debugger / disassembler)
    # =====================================================================

    def get_ip(self) -> int:
        return self.ip

    def set_ip(self, addr: int):
        self.ip = addr

    def read_memory_word(self, addr: int) -> Optional[int]:
        return self.mem.get(addr)

    def write_memory_word(self, addr: int, value: int):
        self.write_word(addr, value)

    def read_register(self, idx: int) -> int:
        if not 0 <= idx < NUM_REGS:
            raise InvalidOperand(f"Register index {idx} outside 0..{NUM_REGS - 1}")
        return self.regs[idx]

    def write_register(self, idx: int, value: int):
        if not 0 <= idx < NUM_REGS:
            raise InvalidOperand(f"Register index {idx} outside 0..{NUM_REGS - 1}")
        self.regs[idx] = value

    def read_stack(self) -> list[int]:
        return list(self.stack)

    def step_one_instruction(self) -> Optional[Instruction]:
        return self.step(self.context)

    def register_breakpoint(self, addr: int):
        self.context.breakpoints.add(addr)

    def remove_breakpoint(self, addr: int):
        self.context.breakpoints.discard(addr)

    def is_halted(self) -> bool:
        return self.halted

    # -- Reset --

    def reset(self):
        """Registers, stack and IP back to power-on; memory is kept."""
        self.regs = [0] * NUM_REGS
        self.stack = []
        self.ip = 0
        self.halted = False
        self.fault = None

    # -- Debug / introspection --

    def snapshot(self) -> dict:
        """Plain-data copy of the machine state (JSON-serialisable)."""
        return {
            "ip": self.ip,
            "opcode_word": self.mem.get(self.ip),
            "halted": self.halted,
            "registers": list(self.regs),
            "stack": list(self.stack),
            "memory": [[a, self.mem[a]] for a in sorted(self.mem)],
        }

    def dump_regs(self) -> str:
        lines = []
        for i in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(f"r{j} = {self.regs[j]:5d}"
                                          for j in range(i, i + 4)))
        lines.append(f"  IP = {self.ip}  stack depth = {len(self.stack)}  "
                     f"halted = {self.halted}")
        return "\n".join(lines)
