"""
synvm Assembler
================
Translates assembly text into a word image.

Supports:
  - Labels (terminated with ':')
  - All 22 mnemonics
  - Registers r0..r7, integers (decimal or 0x hex), character literals
    ('A', '\\n'), label references
  - Comments (';' to end of line)
  - .org, .dw, .str directives

Usage:
  from asm import assemble
  words = assemble(source_text)
"""

from __future__ import annotations
from typing import Optional

from synvm import Opcode, ARITY, REG_BASE, NUM_REGS, WORD_MAX
from system import encode_image

MNEMONICS = {op.mnemonic: op for op in Opcode if op is not Opcode.UNKNOWN}
# Common aliases
MNEMONICS["nop"] = Opcode.NOOP
MNEMONICS["mul"] = Opcode.MULT

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "\\": "\\",
            "'": "'", '"': '"'}

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _parse_reg(tok: str) -> Optional[int]:
    """Parse 'r0'-'r7' into its encoded address, or None."""
    tok = tok.strip().lower()
    if tok.startswith("r") and tok[1:].isdigit():
        n = int(tok[1:])
        if 0 <= n < NUM_REGS:
            return REG_BASE + n
    return None

def _parse_imm(tok: str) -> int:
    """Parse an immediate value (decimal, 0x hex or char literal)."""
    tok = tok.strip()
    if len(tok) >= 3 and tok[0] == "'" and tok[-1] == "'":
        body = tok[1:-1]
        if len(body) == 2 and body[0] == "\\" and body[1] in _ESCAPES:
            return ord(_ESCAPES[body[1]])
        if len(body) == 1:
            return ord(body)
        raise ValueError(f"Bad character literal: {tok}")
    return int(tok, 0)

def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace.

    Commas inside quotes (e.g. ',') are not separators.
    """
    out, cur, quote = [], [], None
    for ch in rest:
        if quote:
            cur.append(ch)
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
            cur.append(ch)
        elif ch == ",":
            out.append("".join(cur).strip())
            cur = []
        else:
            cur.append(ch)
    if "".join(cur).strip():
        out.append("".join(cur).strip())
    return [s for s in out if s]


def _parse_string(lineno: int, text: str) -> str:
    """Parse a double-quoted string literal with escape sequences."""
    text = text.strip()
    if not (len(text) >= 2 and text.startswith('"') and text.endswith('"')):
        raise AsmError(lineno, f"Expected quoted string, got: {text}")
    s = text[1:-1]
    result = []
    i = 0
    while i < len(s):
        if s[i] == "\\" and i + 1 < len(s):
            result.append(_ESCAPES.get(s[i + 1], s[i + 1]))
            i += 2
        else:
            result.append(s[i])
            i += 1
    return "".join(result)


def _strip_comment(raw: str) -> str:
    # Strip comments, but respect quoted strings and char literals
    result = []
    quote = None
    for ch in raw:
        if quote:
            if ch == quote:
                quote = None
        elif ch in "'\"":
            quote = ch
        elif ch == ";":
            break
        result.append(ch)
    return "".join(result).strip()

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def assemble(source: str, base_addr: int = 0, listing: bool = False) -> list[int]:
    """
    Two-pass assembler.
    Pass 1: collect labels, compute statement sizes.
    Pass 2: emit words with resolved labels.
    If listing=True, print an address/words/source listing to stdout.

    The returned image starts at *base_addr*.
    """
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = _strip_comment(raw)
        if not stripped:
            continue
        # Allow "label: instruction" on one line
        if ":" in stripped and not stripped.startswith((".", "'", '"')):
            head, _, tail = stripped.partition(":")
            if head.strip().isidentifier() and "'" not in head:
                cleaned.append((i, head.strip() + ":"))
                stripped = tail.strip()
                if not stripped:
                    continue
        cleaned.append((i, stripped))

    # ---- Pass 1: label collection and size computation ----
    labels: dict[str, int] = {}
    sizes: list[tuple[int, str, int]] = []  # (line_no, text, size_words)
    pc = base_addr

    for lineno, text in cleaned:
        if text.endswith(":"):
            lbl = text[:-1].strip()
            if lbl in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl] = pc
            continue

        lower = text.lower()
        if lower.startswith(".org"):
            target = _imm_or_error(lineno, text[4:])
            if target < pc:
                raise AsmError(lineno, f".org {target} moves backwards from {pc}")
            sizes.append((lineno, text, target - pc))
            pc = target
            continue
        if lower.startswith(".dw"):
            n = len(_split_ops(text[3:]))
            sizes.append((lineno, text, n))
            pc += n
            continue
        if lower.startswith(".str"):
            n = len(_parse_string(lineno, text[4:]))
            sizes.append((lineno, text, n))
            pc += n
            continue

        mnem, _ = _split_mnemonic(text)
        op = MNEMONICS.get(mnem.lower())
        if op is None:
            raise AsmError(lineno, f"Unknown mnemonic: {mnem}")
        sizes.append((lineno, text, 1 + ARITY[op]))
        pc += 1 + ARITY[op]

    # ---- Pass 2: emit words ----
    code: list[int] = []
    pc = base_addr
    listing_lines = []  # (addr, words, source_text)

    for lineno, text, sz in sizes:
        start_pc = pc
        lower = text.lower()

        if lower.startswith(".org"):
            emitted = [0] * sz
        elif lower.startswith(".dw"):
            emitted = [_operand(lineno, tok, labels) for tok in _split_ops(text[3:])]
        elif lower.startswith(".str"):
            emitted = [ord(c) for c in _parse_string(lineno, text[4:])]
        else:
            emitted = _emit_instruction(lineno, text, labels)

        assert len(emitted) == sz, f"Size mismatch line {lineno}: expected {sz}, got {len(emitted)}"
        if listing and not lower.startswith(".org"):
            listing_lines.append((start_pc, emitted, text))
        code.extend(emitted)
        pc += sz

    if listing:
        addr_labels: dict[int, list[str]] = {}
        for lbl, addr in labels.items():
            addr_labels.setdefault(addr, []).append(lbl)
        for addr, words, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"                    {lbl}:")
            shown = " ".join(str(w) for w in words[:4])
            if len(words) > 4:
                shown += " ..."
            print(f"  {addr:5d}  {shown:<28s}  {src}")

    return code


def assemble_image(source: str, base_addr: int = 0) -> bytes:
    """Assemble straight to a little-endian binary image."""
    return encode_image(assemble(source, base_addr))

# ---------------------------------------------------------------------------
#  Operands and instructions (pass 2)
# ---------------------------------------------------------------------------

def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' → (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]


def _imm_or_error(lineno: int, tok: str) -> int:
    try:
        return _parse_imm(tok)
    except ValueError:
        raise AsmError(lineno, f"Bad number: {tok.strip()!r}")


def _operand(lineno: int, tok: str, labels: dict[str, int]) -> int:
    """Resolve a register, label or immediate into one word."""
    tok = tok.strip()
    reg = _parse_reg(tok)
    if reg is not None:
        return reg
    if tok in labels:
        return labels[tok]
    val = _imm_or_error(lineno, tok)
    if not 0 <= val <= WORD_MAX:
        raise AsmError(lineno, f"Value {val} does not fit in a word")
    return val


def _emit_instruction(lineno: int, text: str, labels: dict[str, int]) -> list[int]:
    mnem, rest = _split_mnemonic(text)
    op = MNEMONICS[mnem.lower()]
    ops = _split_ops(rest)
    if len(ops) != ARITY[op]:
        raise AsmError(lineno, f"{mnem} takes {ARITY[op]} operand(s), got {len(ops)}")
    return [int(op)] + [_operand(lineno, tok, labels) for tok in ops]
