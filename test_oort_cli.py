#!/usr/bin/env python3
"""
Host-side tests: disassembler, state dump, monitor commands, and the
command-line entry point (including the bundled demo program).
"""
import contextlib
import io
import os
import tempfile
import unittest

import pytest

from oort import Oort, Memory, MASK64, SIGN64
from oort_cli import (
    DEMO_PROGRAM, OortCLI, cond_mask, lane_pattern, disasm_one, disasm_range,
    format_u64, format_mem, dump_state, main,
)


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def demo_cpu(mem_size: int = 0x400) -> Oort:
    mem = Memory(mem_size)
    mem.load(DEMO_PROGRAM)
    return Oort(mem)


def run_main(*argv) -> tuple[int, str, str]:
    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        try:
            code = main(list(argv))
        except SystemExit as e:
            code = e.code
    return code, out.getvalue(), err.getvalue()


DEMO_LISTING = [
    "test $zpmn",
    "mt r5",
    "test 0",
    "addi $1x00, 0x6942",
    "test 0",
    "xori $000x, 0x1000",
    "mt r8",
    "mf r9",
    "addi $000x, 0x47",
    "mt r9",
    "mf r8",
    "addi $111x, 0xffff",
    "jump $p, -0xd",
    "mf r9",
    "st r15, 0x100",
    "test 0",
    "ori $000x, 0x2301",
    "ori $00x0, 0x6745",
    "ori $0x00, 0xab89",
    "ori $x000, 0xefcd",
    "st r15, 0x207",
    "halt",
]


# =========================================================================
#  Disassembler
# =========================================================================

class TestDisassembler(unittest.TestCase):

    def test_cond_mask(self):
        self.assertEqual(cond_mask(0), "0")
        self.assertEqual(cond_mask(0xF), "$zpmn")
        self.assertEqual(cond_mask(0x2), "$p")
        self.assertEqual(cond_mask(0x9), "$zn")

    def test_lane_pattern(self):
        self.assertEqual(lane_pattern(0x0), "$000x")
        self.assertEqual(lane_pattern(0x3), "$111x")
        self.assertEqual(lane_pattern(0x4), "$00x0")
        self.assertEqual(lane_pattern(0x5), "$00x1")
        self.assertEqual(lane_pattern(0x8), "$0x00")
        self.assertEqual(lane_pattern(0x9), "$1x00")
        self.assertEqual(lane_pattern(0xC), "$x000")
        self.assertEqual(lane_pattern(0xF), "$x111")

    def test_demo_listing(self):
        mem = Memory(0x40)
        mem.load(DEMO_PROGRAM)
        addr = 0
        texts = []
        while addr < len(DEMO_PROGRAM):
            text, size = disasm_one(mem, addr)
            texts.append(text)
            addr += size
        self.assertEqual(texts, DEMO_LISTING)
        self.assertEqual(addr, len(DEMO_PROGRAM))

    def test_sys_and_register_names(self):
        mem = Memory(16)
        mem.load(bytes([0x06, 0x0A, 0x4C, 0x7F]))
        self.assertEqual(disasm_one(mem, 0), ("shl", 1))
        self.assertEqual(disasm_one(mem, 1), ("ret", 1))
        self.assertEqual(disasm_one(mem, 2), ("and r12", 1))
        self.assertEqual(disasm_one(mem, 3), ("add r15", 1))

    def test_call_and_load(self):
        mem = Memory(16)
        mem.load(bytes([0x9F, 0x10, 0x00, 0xA3, 0xF8, 0xFF]))
        self.assertEqual(disasm_one(mem, 0), ("call $zpmn, 0x10", 3))
        self.assertEqual(disasm_one(mem, 3), ("ld r3, -0x8", 3))

    def test_range_stops_at_end(self):
        mem = Memory(8)
        mem.load(bytes([0x0B] * 7 + [0xD0]))
        lines = disasm_range(mem, 0, 20)
        self.assertEqual(len(lines), 7)
        self.assertEqual(lines[0], "0x00000000: 0b        nop")


# =========================================================================
#  State dump
# =========================================================================

class TestDump(unittest.TestCase):

    def test_format_u64(self):
        self.assertEqual(format_u64(44), " 0x 0000 0000 0000 002c (44)")
        self.assertEqual(format_u64(MASK64), " 0x ffff ffff ffff ffff (-1)")
        self.assertEqual(format_u64(SIGN64),
                         " 0x 8000 0000 0000 0000 (-9223372036854775808)")

    def test_format_mem(self):
        mem = Memory(24)
        mem.load(bytes(range(24)))
        self.assertEqual(format_mem(mem, 0),
                         " 00 01 02 03 04 05 06 07 08 09 0a 0b 0c 0d 0e 0f")
        self.assertEqual(format_mem(mem, 16).split()[-8:], ["--"] * 8)

    def test_format_mem_negative_address(self):
        mem = Memory(24)
        mem.data[23] = 0xAB
        self.assertEqual(format_mem(mem, -2, 4), " -- -- 00 01")

    def test_dump_state(self):
        cpu = demo_cpu()
        cpu.gpr[10] = 5
        text = dump_state(cpu)
        lines = text.splitlines()
        self.assertEqual(lines[0], "*** begin CPU state ***")
        self.assertEqual(lines[-1], "*** end CPU state ***")
        self.assertEqual(len(lines), 2 + 4 + 16 + 1)
        self.assertEqual(lines[1], "pc  = 0x 0000 0000 0000 0000 (0)")
        self.assertIn("r10 = 0x 0000 0000 0000 0005 (5)", lines)
        self.assertTrue(lines[-2].startswith("mem[pc:pc+16] = 1f 35 10 f9"))


# =========================================================================
#  Demo program
# =========================================================================

@pytest.mark.slow
class TestDemoProgram(unittest.TestCase):

    def test_runs_to_halt(self):
        cpu = demo_cpu()
        cpu.run()
        self.assertTrue(cpu.halted)
        self.assertEqual(cpu.pc, len(DEMO_PROGRAM))
        self.assertEqual(cpu.gpr[5], MASK64)
        self.assertEqual(cpu.gpr[8], 1)
        self.assertEqual(cpu.gpr[9], 0x47 * 0x1000)
        self.assertEqual(cpu.acc, 0xEFCDAB8967452301)
        self.assertEqual(cpu.mem.read_word(0x100), 0x47000)
        self.assertEqual(cpu.mem.window(0x200, 8),
                         bytes([0x23, 0x45, 0x67, 0x89, 0xAB, 0xCD, 0xEF, 0x01]))
        self.assertEqual(cpu.mem.read_word(0x207), 0xEFCDAB8967452301)

    def test_step_count(self):
        cpu = demo_cpu()
        # 6 setup, 7 per loop pass, 8 to build and store, plus halt
        self.assertEqual(cpu.run(), 6 + 7 * 0x1000 + 8 + 1)


# =========================================================================
#  Monitor
# =========================================================================

class TestMonitor(unittest.TestCase):

    def setUp(self):
        self.out = io.StringIO()
        self.cpu = Oort(Memory(0x100))
        self.cli = OortCLI(self.cpu, stdout=self.out)

    def output(self) -> str:
        text = self.out.getvalue()
        self.out.seek(0)
        self.out.truncate()
        return text

    def test_setmem_and_step(self):
        self.cli.onecmd("setmem 0 0x1f 0x35 0x0f")
        self.assertIn("Wrote 3 bytes at 0x0", self.output())
        self.cli.onecmd("step 2")
        text = self.output()
        self.assertIn("0x00000000: test $zpmn", text)
        self.assertIn("0x00000001: mt r5", text)
        self.assertEqual(self.cpu.gpr[5], MASK64)

    def test_run_to_halt(self):
        self.cli.onecmd("setmem 0 0x0b 0x0b 0x0f")
        self.output()
        self.cli.onecmd("run")
        self.assertIn("CPU halted after 3 steps.", self.output())
        self.cli.onecmd("step")
        self.assertIn("CPU is halted.", self.output())

    def test_breakpoints(self):
        self.cli.onecmd("setmem 0 0x0b 0x0b 0x0b 0x0f")
        self.cli.onecmd("break 2")
        self.output()
        self.cli.onecmd("run")
        self.assertIn("Breakpoint hit at 0x00000002", self.output())
        self.assertEqual(self.cpu.pc, 2)
        self.cli.onecmd("break")
        self.assertIn("0x00000002", self.output())
        self.cli.onecmd("run")
        self.assertIn("CPU halted after 2 steps.", self.output())
        self.cli.onecmd("delete")
        self.cli.onecmd("break")
        self.assertIn("No breakpoints set.", self.output())

    def test_run_limit(self):
        self.cli.onecmd("run 5")
        # zero memory is a null trap, which halts
        self.assertIn("CPU halted after 1 steps.", self.output())

    def test_setreg_and_regs(self):
        self.cli.onecmd("setreg r3 0x10")
        self.cli.onecmd("setreg acc -1")
        self.cli.onecmd("setreg r16 1")
        self.assertIn("Register must be r0-r15.", self.output())
        self.assertEqual(self.cpu.gpr[3], 0x10)
        self.assertEqual(self.cpu.acc, MASK64)
        self.cli.onecmd("regs")
        text = self.output()
        self.assertIn("acc = 0x ffff ffff ffff ffff (-1)", text)
        self.assertIn("Steps: 0", text)

    def test_dump_and_disasm(self):
        self.cli.onecmd("setmem 0x10 0xd0 0x01 0x23")
        self.output()
        self.cli.onecmd("dump r0 16")
        self.assertIn("0x00000000: 00 00", self.output())
        self.cli.onecmd("disasm 0x10 1")
        self.assertIn("0x00000010: d0 01 23  ori $000x, 0x2301", self.output())

    def test_fault_reported(self):
        self.cli.onecmd("setreg pc 0x100")
        self.output()
        self.cli.onecmd("step")
        self.assertIn("Fault: Memory fault @ 0x0000000000000100", self.output())
        self.cli.onecmd("setmem 0xff 1 2")
        self.assertIn("Fault:", self.output())

    def test_bad_number(self):
        self.cli.onecmd("dump zz")
        self.assertIn("Error:", self.output())

    def test_setmem_negative_address(self):
        self.assertFalse(self.cli.onecmd("setmem -1 0x42"))
        self.assertIn("Fault: Memory fault @ 0xffffffffffffffff", self.output())
        self.assertEqual(bytes(self.cpu.mem.data), bytes(0x100))

    def test_dump_negative_address(self):
        self.cpu.mem.data[0xFF] = 0xAB
        self.cli.onecmd("dump -1 2")
        text = self.output()
        self.assertIn(": -- 00", text)
        self.assertNotIn("ab", text)

    def test_reset(self):
        self.cpu.acc = 5
        self.cli.onecmd("reset")
        self.assertEqual(self.cpu.acc, 0)

    def test_quit(self):
        self.assertTrue(self.cli.onecmd("quit"))


# =========================================================================
#  Command line
# =========================================================================

class TestMain(unittest.TestCase):

    def _image(self, data: bytes) -> str:
        fd, path = tempfile.mkstemp(suffix=".bin")
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        self.addCleanup(os.unlink, path)
        return path

    def test_image_run(self):
        path = self._image(bytes([0x1F, 0x35, 0x0F]))
        code, out, _ = run_main(path, "--mem", "64")
        self.assertEqual(code, 0)
        self.assertEqual(out.count("*** begin CPU state ***"), 2)
        self.assertIn("r5  = 0x ffff ffff ffff ffff (-1)", out)
        self.assertIn("pc  = 0x 0000 0000 0000 0003 (3)", out)

    @pytest.mark.slow
    def test_demo_with_dumps(self):
        code, out, _ = run_main("--demo", "--quiet",
                                "--dump", "0x100", "--dump", "0x200")
        self.assertEqual(code, 0)
        self.assertIn("mem[0x100]: 00 70 04 00 00 00 00 00", out)
        self.assertIn("mem[0x200]: 23 45 67 89 ab cd ef 01", out)
        self.assertNotIn("begin CPU state", out)

    def test_trace(self):
        path = self._image(bytes([0xF0, 0x47, 0x00, 0x0F]))
        code, out, _ = run_main(path, "--quiet", "--trace")
        self.assertEqual(code, 0)
        self.assertIn("0x00000000: f0 47 00  addi $000x, 0x47", out)
        self.assertIn("0x00000003: 0f        halt", out)

    def test_max_steps(self):
        path = self._image(bytes([0x0B] * 10))
        code, out, _ = run_main(path, "--max-steps", "4")
        self.assertEqual(code, 0)
        self.assertIn("pc  = 0x 0000 0000 0000 0004 (4)", out)

    def test_trap_banner(self):
        code, out, _ = run_main("--quiet")
        self.assertEqual(code, 0)
        self.assertIn("*** executed null ***", out)

    def test_missing_image(self):
        code, out, err = run_main("/nonexistent/oort/image.bin")
        self.assertEqual(code, 1)
        self.assertIn("Error:", err)
        self.assertEqual(out, "")

    def test_image_and_demo_conflict(self):
        path = self._image(b"\x0f")
        code, _, err = run_main(path, "--demo")
        self.assertEqual(code, 1)
        self.assertIn("not both", err)

    def test_monitor_rejects_run_options(self):
        for extra in (["--trace"], ["--quiet"], ["--dump", "0"],
                      ["--max-steps", "3"]):
            code, out, err = run_main("--monitor", *extra)
            self.assertEqual(code, 1)
            self.assertIn("--monitor cannot be combined", err)
            self.assertEqual(out, "")

    def test_bad_mem_size(self):
        for size in ("0", "-8", "lots"):
            code, _, err = run_main("--mem", size)
            self.assertEqual(code, 2)
            self.assertIn("--mem", err)

    def test_fault_exit_code(self):
        code, out, err = run_main("--demo", "--mem", "8", "--quiet")
        self.assertEqual(code, 2)
        self.assertIn("Memory fault @ 0x0000000000000008", err)
        self.assertIn("mem[pc:pc+16] = e0 --", out)


if __name__ == "__main__":
    unittest.main()
