#!/usr/bin/env python3
"""
Integration tests for the synvm system.

Tests the full stack: Machine + Console + image loader + snapshot.

Run with:
    python -m pytest test_system.py
"""
import json
import os
import tempfile
import unittest

from synvm import LoadError, EndOfInput, StopReason, REG_BASE
from console import Console, InputBuffer
from system import VMSystem, decode_image, encode_image, read_image
from asm import assemble, assemble_image

R0 = REG_BASE


def make_system(*lines) -> VMSystem:
    queue = list(lines)
    return VMSystem(line_source=lambda: queue.pop(0) if queue else "")


def run_until(system: VMSystem, max_steps: int = 500_000):
    """Step until halted or step limit."""
    for i in range(max_steps):
        system.step()
        if system.halted:
            return i
    return max_steps


def capture_tx(system: VMSystem):
    """Set up console output capture, return list ref."""
    buf = []
    system.console.on_tx = lambda b: buf.append(b)
    return buf


# ---------------------------------------------------------------------------
#  Device-level tests
# ---------------------------------------------------------------------------

class TestInputBuffer(unittest.TestCase):
    def test_one_char_per_request(self):
        buf = InputBuffer(iter(["hi\n"]).__next__)
        self.assertEqual(buf.read_char(), ord("h"))
        self.assertTrue(buf.buffering)
        self.assertEqual(buf.pending, "i\n")
        self.assertEqual(buf.read_char(), ord("i"))
        self.assertEqual(buf.read_char(), ord("\n"))
        self.assertFalse(buf.buffering)
        self.assertEqual(buf.lines_read, 1)

    def test_missing_newline_is_supplied(self):
        lines = ["ok", ""]
        buf = InputBuffer(lambda: lines.pop(0))
        got = [buf.read_char() for _ in range(3)]
        self.assertEqual(got, [ord("o"), ord("k"), ord("\n")])
        with self.assertRaises(EndOfInput):
            buf.read_char()

    def test_hook_consumes_line(self):
        lines = ["dump\n", "a\n"]
        buf = InputBuffer(lambda: lines.pop(0), on_line=lambda l: l == "dump\n")
        self.assertIsNone(buf.read_char())
        self.assertFalse(buf.buffering)
        self.assertEqual(buf.read_char(), ord("a"))
        self.assertEqual(buf.lines_read, 2)

    def test_hook_not_consulted_mid_line(self):
        calls = []
        buf = InputBuffer(iter(["xyz\n"]).__next__,
                          on_line=lambda l: calls.append(l) or False)
        for _ in range(4):
            buf.read_char()
        self.assertEqual(calls, ["xyz\n"])

    def test_clear(self):
        buf = InputBuffer(iter(["abc\n", "d\n"]).__next__)
        buf.read_char()
        buf.clear()
        self.assertEqual(buf.read_char(), ord("d"))


class TestConsole(unittest.TestCase):
    def test_tx_callback(self):
        con = Console(lambda: "")
        out = []
        con.on_tx = lambda b: out.append(b)
        con.write(0x41)
        con.write(0x42)
        self.assertEqual(out, [0x41, 0x42])

    def test_write_keeps_low_byte(self):
        con = Console(lambda: "")
        con.write(0x141)
        self.assertEqual(list(con.tx_buffer), [0x41])

    def test_tx_drain(self):
        con = Console(lambda: "")
        con.write(0x41)
        con.write(0x42)
        self.assertEqual(con.drain_tx(), "AB")
        self.assertEqual(con.drain_tx(), "")

    def test_inject_input_ahead_of_source(self):
        con = Console(iter(["later\n", ""]).__next__)
        con.inject_input("one\ntwo\n")
        chars = "".join(chr(con.read_char()) for _ in range(14))
        self.assertEqual(chars, "one\ntwo\nlater\n")
        with self.assertRaises(EndOfInput):
            con.read_char()


# ---------------------------------------------------------------------------
#  Loader
# ---------------------------------------------------------------------------

class TestLoader(unittest.TestCase):
    def test_little_endian(self):
        self.assertEqual(decode_image(b"\x09\x00\x00\x80\x04\x00"),
                         [9, 32768, 4])

    def test_empty_image(self):
        self.assertEqual(decode_image(b""), [])

    def test_odd_length_rejected(self):
        with self.assertRaises(LoadError) as cm:
            decode_image(b"\x15\x00\x00")
        self.assertIn("offset 2", str(cm.exception))

    def test_encode(self):
        self.assertEqual(encode_image([21, 0xFFFF]), b"\x15\x00\xff\xff")
        with self.assertRaises(LoadError):
            encode_image([0x10000])

    def test_image_file(self):
        words = [9, 32768, 4, 5, 19, 32768, 0]
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "prog.bin")
            with open(path, "wb") as f:
                f.write(encode_image(words))
            self.assertEqual(read_image(path), words)


# ---------------------------------------------------------------------------
#  System
# ---------------------------------------------------------------------------

class TestVMSystem(unittest.TestCase):
    def test_load_binary_and_run(self):
        system = make_system()
        system.load_binary(encode_image([9, 32768, 4, 5, 19, 32768, 0]))
        system.boot()
        self.assertIs(system.run(), StopReason.HALTED)
        self.assertEqual(system.cpu.regs[0], 9)
        self.assertEqual(system.get_tx_output(), "\x09")

    def test_load_binary_file(self):
        image = assemble_image("out 'o'\nout 'k'\nhalt\n")
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "ok.bin")
            with open(path, "wb") as f:
                f.write(image)
            system = make_system()
            system.load_binary_file(path)
        system.boot()
        buf = capture_tx(system)
        run_until(system)
        self.assertEqual(bytes(buf), b"ok")

    def test_odd_file_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "bad.bin")
            with open(path, "wb") as f:
                f.write(b"\x00\x00\x15")
            system = make_system()
            with self.assertRaises(LoadError):
                system.load_binary_file(path)

    def test_boot_clears_input(self):
        system = make_system("abc\n", "z\n")
        system.load_words([20, R0, 20, R0, 0])
        system.boot()
        system.step()
        system.boot()
        system.step()
        self.assertEqual(system.cpu.regs[0], ord("z"))

    def test_echo_program(self):
        system = make_system("Hello\n")
        system.load_words(assemble("""
        loop:
            in r0
            out r0
            eq r1, r0, 10
            jf r1, loop
            halt
        """))
        system.boot()
        self.assertIs(system.run_until_halt(), StopReason.HALTED)
        self.assertEqual(system.get_tx_output(), "Hello\n")

    def test_run_until_halt_ignores_breakpoints(self):
        system = make_system()
        system.load_words([21, 21, 0])
        system.boot()
        system.cpu.register_breakpoint(1)
        self.assertIs(system.run_until_halt(), StopReason.HALTED)

    def test_run_until_halt_consumes_debug_line(self):
        # Pause requests target cpu.context; the headless run carries on
        system = make_system("debug\n", "y\n")
        ctx = system.cpu.context

        def hook(line):
            if line == "debug\n":
                ctx.pause_requested = True
                return True
            return False

        system.console.input.on_line = hook
        system.load_words(assemble("in r0\nout r0\nhalt"))
        system.boot()
        self.assertIs(system.run_until_halt(), StopReason.HALTED)
        self.assertEqual(system.get_tx_output(), "y")
        self.assertEqual(system.console.input.lines_read, 2)

    def test_snapshot_file(self):
        system = make_system()
        system.load_words([2, 7, 1, R0, 3, 0])
        system.boot()
        system.run()
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "dump.json")
            system.write_snapshot(path)
            with open(path) as f:
                snap = json.load(f)
        self.assertEqual(snap["registers"][0], 3)
        self.assertEqual(snap["stack"], [7])
        self.assertEqual(snap["ip"], 6)
        self.assertTrue(snap["halted"])
        self.assertIn([4, 3], snap["memory"])

    def test_dump_state(self):
        system = make_system()
        system.load_words([2, 42, 0])
        system.boot()
        system.run()
        text = system.dump_state()
        self.assertIn("r0 =", text)
        self.assertIn("Stack: 42", text)
        self.assertIn("lines read=0", text)


if __name__ == "__main__":
    unittest.main()
