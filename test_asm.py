"""
Assembler tests: encoding, labels, literals, directives and error reporting.
"""

import io
import unittest
from contextlib import redirect_stdout

from asm import assemble, assemble_image, AsmError
from synvm import Opcode, ARITY, REG_BASE
from system import decode_image


class TestEncoding(unittest.TestCase):
    def test_registers_and_literals(self):
        self.assertEqual(assemble("add r0, 4, 5"), [9, REG_BASE, 4, 5])
        self.assertEqual(assemble("set r7, 0x10"), [1, REG_BASE + 7, 16])

    def test_every_mnemonic(self):
        for op, arity in ARITY.items():
            if op is Opcode.UNKNOWN:
                continue
            src = op.mnemonic + (" " + ", ".join(["r1"] * arity) if arity else "")
            words = assemble(src)
            self.assertEqual(words, [int(op)] + [REG_BASE + 1] * arity, src)

    def test_aliases(self):
        self.assertEqual(assemble("nop"), [21])
        self.assertEqual(assemble("mul r0, 2, 3"), [10, REG_BASE, 2, 3])

    def test_case_insensitive_mnemonics(self):
        self.assertEqual(assemble("HALT\nOut 'x'"), [0, 19, ord("x")])

    def test_char_literals(self):
        self.assertEqual(assemble("out 'A'"), [19, 65])
        self.assertEqual(assemble("out '\\n'"), [19, 10])
        self.assertEqual(assemble("out ','"), [19, ord(",")])
        self.assertEqual(assemble("out ';'"), [19, ord(";")])

    def test_comments_and_blank_lines(self):
        src = """
            ; header comment

            noop        ; trailing comment
            halt
        """
        self.assertEqual(assemble(src), [21, 0])

    def test_base_address(self):
        words = assemble("start: jmp start", base_addr=100)
        self.assertEqual(words, [6, 100])


class TestLabels(unittest.TestCase):
    def test_forward_and_backward(self):
        words = assemble("""
        top:
            jmp end
            jmp top
        end:
            halt
        """)
        self.assertEqual(words, [6, 4, 6, 0, 0])

    def test_label_on_same_line(self):
        self.assertEqual(assemble("here: jmp here"), [6, 0])

    def test_label_as_data(self):
        words = assemble("""
            set r0, msg
            halt
        msg: .dw 1, 2
        """)
        self.assertEqual(words, [1, REG_BASE, 4, 0, 1, 2])

    def test_register_like_label_names(self):
        words = assemble("rec: ret\ncall rec")
        self.assertEqual(words, [18, 17, 0])


class TestDirectives(unittest.TestCase):
    def test_dw(self):
        self.assertEqual(assemble(".dw 1, 0x20, 'a', r2"),
                         [1, 32, 97, REG_BASE + 2])

    def test_str(self):
        self.assertEqual(assemble('.str "Hi, you\\n"'),
                         [ord(c) for c in "Hi, you\n"])

    def test_org_pads_with_zero(self):
        words = assemble("noop\n.org 4\nhalt")
        self.assertEqual(words, [21, 0, 0, 0, 0])

    def test_org_backwards(self):
        with self.assertRaises(AsmError):
            assemble("noop\nnoop\n.org 1")


class TestErrors(unittest.TestCase):
    def test_unknown_mnemonic(self):
        with self.assertRaises(AsmError) as cm:
            assemble("noop\nfrob r0")
        self.assertEqual(cm.exception.line, 2)
        self.assertIn("frob", str(cm.exception))

    def test_wrong_operand_count(self):
        with self.assertRaises(AsmError) as cm:
            assemble("add r0, 1")
        self.assertIn("3 operand", str(cm.exception))

    def test_duplicate_label(self):
        with self.assertRaises(AsmError):
            assemble("a:\nnoop\na:\nhalt")

    def test_undefined_label(self):
        with self.assertRaises(AsmError):
            assemble("jmp nowhere")

    def test_value_too_large(self):
        with self.assertRaises(AsmError):
            assemble(".dw 65536")

    def test_bad_string(self):
        with self.assertRaises(AsmError):
            assemble(".str missing quotes")


class TestOutput(unittest.TestCase):
    def test_image(self):
        image = assemble_image("out 'A'\nhalt")
        self.assertEqual(image, b"\x13\x00\x41\x00\x00\x00")
        self.assertEqual(decode_image(image), [19, 65, 0])

    def test_listing(self):
        buf = io.StringIO()
        with redirect_stdout(buf):
            assemble("main:\n  out 'A'\n  halt", listing=True)
        text = buf.getvalue()
        self.assertIn("main:", text)
        self.assertIn("19 65", text)
        self.assertIn("halt", text)


if __name__ == "__main__":
    unittest.main()
