"""
synvm Disassembler
===================
Display-only decoding.  Nothing here affects execution: unknown opcodes
are echoed as their number instead of raising, and operands that are not
valid literals or registers are printed as-is.
"""

from __future__ import annotations
from typing import Callable, Optional

from synvm import Opcode, ARITY, is_register, reg_index, MASK15

PLACEHOLDER = "."


def to_ascii(word: int) -> str:
    """Printable glyph for a word: ASCII below 128, placeholder otherwise."""
    return chr(word) if 0 <= word < 128 else PLACEHOLDER


def register_pretty(word: int) -> str:
    return f"r{reg_index(word)}" if is_register(word) else str(word)


def mask_word(word: int, key: int) -> int:
    """XOR the 15-bit payload with *key*.  Applying it twice is identity."""
    return (word & ~MASK15) | ((word ^ key) & MASK15)


def mask_words(words: list[int], key: int) -> list[int]:
    return [mask_word(w, key) for w in words]


def _format_arg(word: int) -> str:
    # Printable characters are shown with their glyph, e.g. (A)65
    if 32 <= word < 127:
        return f"({chr(word)}){word}"
    return register_pretty(word)


def disasm_one(read: Callable[[int], Optional[int]], addr: int) -> tuple[str, int]:
    """Disassemble one instruction at `addr`. Returns (text, word_count).

    *read* returns the word at an address or None if unset.  Operand
    words missing from memory are shown as '?'.
    """
    word = read(addr)
    if word is None:
        return "<blank>", 1
    op = Opcode.from_word(word)
    if op is Opcode.UNKNOWN:
        return str(word), 1

    args = []
    for i in range(ARITY[op]):
        w = read(addr + 1 + i)
        args.append("?" if w is None else _format_arg(w))
    text = op.mnemonic
    if args:
        text += " " + ", ".join(args)
    return text, 1 + ARITY[op]


def disassemble(words: list[int], start: int = 0) -> list[str]:
    """Static listing of a whole word image, one line per instruction.

    A blank line follows every ``ret`` to separate routines.
    """
    def read(a):
        i = a - start
        return words[i] if 0 <= i < len(words) else None

    lines = []
    addr = start
    end = start + len(words)
    while addr < end:
        text, size = disasm_one(read, addr)
        lines.append(f"{addr:5d}: {text}")
        if words[addr - start] == Opcode.RET:
            lines.append("")
        addr += size
    return lines
