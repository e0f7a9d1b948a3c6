#!/usr/bin/env python3
"""
Oort Emulator CLI / Monitor
===========================
Command-line front end for the Oort emulator.

Provides:
  - Memory image loading (or the bundled demo program)
  - Run with optional per-instruction trace
  - Before/after register dumps and memory windows
  - An interactive monitor: step / run / breakpoints / inspection

Usage:
  python oort_cli.py [IMAGE] [--mem SIZE] [--demo] [--max-steps N]
                     [--trace] [--dump ADDR ...] [--monitor] [--quiet]
"""

from __future__ import annotations
import argparse
import cmd
import shlex
import sys
from typing import Optional

from oort import (
    Oort, Memory, MemoryFault, DEFAULT_MEM_SIZE,
    pattern_extend, sign_extend, s64, u64, load_image, round_mem_size,
)

# ---------------------------------------------------------------------------
#  Demo program
# ---------------------------------------------------------------------------

# Counts r8 down from 0x1000 while adding 0x47 to r9 each pass, stores the
# total at 0x100, then builds 0xEFCDAB8967452301 one lane at a time and
# stores it at 0x207 (rotated within the block at 0x200).
DEMO_PROGRAM = bytes([
    0x1F,               # test $zpmn
    0x35,               # mt r5
    0x10,               # test 0
    0xF9, 0x42, 0x69,   # addi $1x00, 0x6942
    0x10,               # test 0
    0xE0, 0x00, 0x10,   # xori $000x, 0x1000
    0x38,               # mt r8
    0x29,               # mf r9
    0xF0, 0x47, 0x00,   # addi $000x, 0x47
    0x39,               # mt r9
    0x28,               # mf r8
    0xF3, 0xFF, 0xFF,   # addi $111x, 0xffff
    0x82, 0xF3, 0xFF,   # jump $p, -0xd
    0x29,               # mf r9
    0xBF, 0x00, 0x01,   # st r15, 0x100
    0x10,               # test 0
    0xD0, 0x01, 0x23,   # ori $000x, 0x2301
    0xD4, 0x45, 0x67,   # ori $00x0, 0x6745
    0xD8, 0x89, 0xAB,   # ori $0x00, 0xab89
    0xDC, 0xCD, 0xEF,   # ori $x000, 0xefcd
    0xBF, 0x07, 0x02,   # st r15, 0x207
    0x0F,               # halt
])

# ---------------------------------------------------------------------------
#  Disassembler (diagnostic only)
# ---------------------------------------------------------------------------

SYS_NAMES = {
    0x0: "null", 0x1: "trace", 0x2: "sys", 0x3: "ext",
    0x4: "mfsr", 0x5: "mtsr", 0x6: "shl", 0x7: "shr",
    0x8: "jr", 0x9: "callr", 0xA: "ret", 0xB: "nop",
    0xC: "mflr", 0xD: "mtlr", 0xE: "getpc", 0xF: "halt",
}

REG_NAMES = {0x2: "mf", 0x3: "mt", 0x4: "and", 0x5: "or", 0x6: "xor", 0x7: "add"}

XIMM_NAMES = {0xC: "andi", 0xD: "ori", 0xE: "xori", 0xF: "addi"}

COND_LETTERS = "zpmn"


def cond_mask(arg: int) -> str:
    """Condition selector as letters: bit 0 z(ero), 1 p(ositive),
    2 m(in), 3 n(egative).  '0' when no category is selected."""
    letters = "".join(c for i, c in enumerate(COND_LETTERS) if arg & (1 << i))
    return f"${letters}" if letters else "0"


def lane_pattern(arg: int) -> str:
    """Lane layout of a pattern-extended immediate, high lane first."""
    literal_lane = (2 if arg & 0x8 else 0) + (1 if arg & 0x4 else 0)
    fill = pattern_extend(0, arg)
    out = []
    for lane in range(3, -1, -1):
        if lane == literal_lane:
            out.append("x")
        else:
            out.append("1" if (fill >> (16 * lane)) & 0xFFFF else "0")
    return "$" + "".join(out)


def _signed_hex(v: int) -> str:
    return f"-{-v:#x}" if v < 0 else f"{v:#x}"


def disasm_one(mem: Memory, addr: int) -> tuple[str, int]:
    """Disassemble one instruction at `addr`. Returns (text, byte_count)."""
    b0 = mem.read8(addr)
    op = (b0 >> 4) & 0xF
    n = b0 & 0xF

    if op == 0x0:
        return SYS_NAMES[n], 1
    if op == 0x1:
        return f"test {cond_mask(n)}", 1
    if op in REG_NAMES:
        return f"{REG_NAMES[op]} r{n}", 1

    imm = mem.read8(u64(addr + 1)) | (mem.read8(u64(addr + 2)) << 8)
    if op in (0x8, 0x9):
        name = "jump" if op == 0x8 else "call"
        off = s64(sign_extend(imm, 16))
        return f"{name} {cond_mask(n)}, {_signed_hex(off)}", 3
    if op in (0xA, 0xB):
        name = "ld" if op == 0xA else "st"
        off = s64(sign_extend(imm, 16))
        return f"{name} r{n}, {_signed_hex(off)}", 3
    return f"{XIMM_NAMES[op]} {lane_pattern(n)}, {imm:#x}", 3


def disasm_range(mem: Memory, addr: int, count: int = 8) -> list[str]:
    """Disassemble up to *count* instructions starting at *addr*."""
    lines = []
    for _ in range(count):
        try:
            text, size = disasm_one(mem, addr)
            raw = " ".join(f"{b:02x}" for b in mem.window(addr, size))
        except MemoryFault:
            break
        lines.append(f"{addr:#010x}: {raw:<9s} {text}")
        addr += size
    return lines

# ---------------------------------------------------------------------------
#  State dump
# ---------------------------------------------------------------------------

def format_u64(x: int) -> str:
    """' 0x 0000 0000 0000 002c (44)': four 16-bit groups, then signed."""
    groups = " ".join(f"{(x >> (16 * (3 - i))) & 0xFFFF:04x}" for i in range(4))
    return f" 0x {groups} ({s64(x)})"


def format_mem(mem: Memory, addr: int, count: int = 16) -> str:
    """Space-prefixed hex bytes; '--' for bytes outside memory."""
    out = []
    for i in range(count):
        a = addr + i
        out.append(f" {mem.data[a]:02x}" if 0 <= a < mem.size else " --")
    return "".join(out)


def dump_state(cpu: Oort) -> str:
    lines = ["*** begin CPU state ***"]
    lines.append("pc  =" + format_u64(cpu.pc))
    lines.append("acc =" + format_u64(cpu.acc))
    lines.append("sr  =" + format_u64(cpu.sr))
    lines.append("lr  =" + format_u64(cpu.lr))
    for i in range(16):
        lines.append(f"r{i:<2d} =" + format_u64(cpu.gpr[i]))
    lines.append("mem[pc:pc+16] =" + format_mem(cpu.mem, cpu.pc))
    lines.append("*** end CPU state ***")
    return "\n".join(lines)

# ---------------------------------------------------------------------------
#  Interactive monitor
# ---------------------------------------------------------------------------

class OortCLI(cmd.Cmd):
    """Interactive monitor for an Oort machine."""

    intro = "Oort monitor.  Type 'help' for commands, 'quit' to exit.\n"
    prompt = "oort> "

    def __init__(self, cpu: Oort, stdout=None):
        super().__init__(stdout=stdout)
        self.cpu = cpu
        self.breakpoints: set[int] = set()

    def _out(self, text: str = ""):
        self.stdout.write(text + "\n")

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (numeric literal or register name)."""
        s = s.strip().lower()
        if s.startswith("r") and s[1:].isdigit():
            return self.cpu.gpr[int(s[1:])]
        if s in ("pc", "acc", "lr", "sr"):
            return getattr(self.cpu, s)
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def _fault(self, e: MemoryFault):
        self._out(f"Fault: {e}")

    # ================================================================
    #  Commands
    # ================================================================

    # -- Execution --

    def do_step(self, arg):
        """Execute instructions one at a time: step [count]"""
        try:
            count = self._parse_int(arg) if arg.strip() else 1
        except ValueError:
            self._out("Usage: step [count]")
            return
        for _ in range(count):
            if self.cpu.halted:
                self._out("CPU is halted.")
                return
            addr = self.cpu.pc
            try:
                text, _ = disasm_one(self.cpu.mem, addr)
                self.cpu.step()
            except MemoryFault as e:
                self._fault(e)
                return
            self._out(f"  {addr:#010x}: {text}")

    def do_run(self, arg):
        """Run until halt or breakpoint: run [max_steps]"""
        try:
            limit = self._parse_int(arg) if arg.strip() else None
        except ValueError:
            self._out("Usage: run [max_steps]")
            return
        total = 0
        while not self.cpu.halted:
            if limit is not None and total >= limit:
                self._out(f"Stopped after {total} steps.")
                return
            if total and self.cpu.pc in self.breakpoints:
                self._out(f"Breakpoint hit at {self.cpu.pc:#010x}")
                return
            try:
                self.cpu.step()
            except MemoryFault as e:
                self._fault(e)
                return
            total += 1
        self._out(f"CPU halted after {total} steps.")

    # -- Breakpoints --

    def do_break(self, arg):
        """Set a breakpoint: break <addr>.  No argument lists them."""
        if not arg.strip():
            if self.breakpoints:
                self._out("Breakpoints:")
                for a in sorted(self.breakpoints):
                    self._out(f"  {a:#010x}")
            else:
                self._out("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        self._out(f"Breakpoint set at {addr:#010x}")

    def do_delete(self, arg):
        """Remove a breakpoint: delete <addr>.  No argument clears all."""
        if not arg.strip():
            self.breakpoints.clear()
            self._out("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        self._out(f"Breakpoint at {addr:#010x} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show the register file."""
        self._out(dump_state(self.cpu))
        self._out(f"  Steps: {self.cpu.step_count}  Halted: {self.cpu.halted}")

    def do_dump(self, arg):
        """Hex dump memory: dump <addr> [count]"""
        parts = shlex.split(arg)
        if not parts:
            self._out("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64
        for row in range(addr, addr + count, 16):
            n = min(16, addr + count - row)
            self._out(f"  {row:#010x}:{format_mem(self.cpu.mem, row, n)}")

    def do_disasm(self, arg):
        """Disassemble: disasm [addr] [count]"""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 8
        for line in disasm_range(self.cpu.mem, addr, count):
            marker = ">" if line.startswith(f"{self.cpu.pc:#010x}:") else " "
            self._out(f"{marker} {line}")

    # -- Modification --

    def do_setreg(self, arg):
        """Set a register: setreg <pc|acc|lr|sr|rN> <value>"""
        parts = shlex.split(arg)
        if len(parts) != 2:
            self._out("Usage: setreg <reg> <value>")
            return
        reg = parts[0].lower()
        val = u64(self._parse_int(parts[1]))
        if reg.startswith("r") and reg[1:].isdigit():
            idx = int(reg[1:])
            if not 0 <= idx < 16:
                self._out("Register must be r0-r15.")
                return
            self.cpu.gpr[idx] = val
        elif reg in ("pc", "acc", "lr", "sr"):
            setattr(self.cpu, reg, val)
        else:
            self._out("Unknown register.")
            return
        self._out(f"  {reg} = {val:#018x}")

    def do_setmem(self, arg):
        """Write bytes to memory: setmem <addr> <byte...>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            self._out("Usage: setmem <addr> <byte...>")
            return
        addr = self._parse_addr(parts[0])
        data = bytes(self._parse_int(p) & 0xFF for p in parts[1:])
        if addr < 0 or addr + len(data) > self.cpu.mem.size:
            self._fault(MemoryFault(u64(addr)))
            return
        self.cpu.load_bytes(addr, data)
        self._out(f"  Wrote {len(data)} bytes at {addr:#x}")

    def do_reset(self, arg):
        """Reset the register file (memory is kept)."""
        self.cpu.reset()
        self._out("CPU reset.")

    def do_quit(self, arg):
        """Exit the monitor."""
        return True

    do_exit = do_quit
    do_EOF = do_quit

    def emptyline(self):
        pass

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except MemoryFault as e:
            self._fault(e)
            return False
        except (ValueError, IndexError) as e:
            self._out(f"Error: {e}")
            return False

# ---------------------------------------------------------------------------
#  Entry point
# ---------------------------------------------------------------------------

def _mem_size(text: str) -> int:
    try:
        return round_mem_size(int(text, 0))
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _address(text: str) -> int:
    try:
        return int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid address: {text!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oort",
        description="Oort instruction-set emulator")
    parser.add_argument("image", nargs="?", default=None,
                        help="binary memory image to load at address 0")
    parser.add_argument("--mem", type=_mem_size, default=DEFAULT_MEM_SIZE,
                        metavar="SIZE",
                        help=f"memory size in bytes, rounded up to a "
                             f"multiple of 8 (default: {DEFAULT_MEM_SIZE})")
    parser.add_argument("--demo", action="store_true",
                        help="load the bundled demo program")
    parser.add_argument("--max-steps", type=int, default=None, metavar="N",
                        help="stop after N instructions")
    parser.add_argument("--trace", action="store_true",
                        help="print each instruction before it executes")
    parser.add_argument("--dump", type=_address, action="append", default=[],
                        metavar="ADDR",
                        help="print 16 bytes at ADDR after the run "
                             "(repeatable)")
    parser.add_argument("--monitor", action="store_true",
                        help="start the interactive monitor instead of running "
                             "(not combinable with run options)")
    parser.add_argument("--quiet", action="store_true",
                        help="do not print the CPU state before and after")
    return parser


def _trace(cpu: Oort, ins):
    text, size = disasm_one(cpu.mem, cpu.pc)
    raw = " ".join(f"{b:02x}" for b in cpu.mem.window(cpu.pc, size))
    print(f"  {cpu.pc:#010x}: {raw:<9s} {text}")


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.image and args.demo:
        print("Error: give either an image or --demo, not both",
              file=sys.stderr)
        return 1

    if args.monitor and (args.trace or args.quiet or args.dump
                         or args.max_steps is not None):
        print("Error: --monitor cannot be combined with --trace, --quiet, "
              "--dump or --max-steps", file=sys.stderr)
        return 1

    if args.image:
        try:
            mem = load_image(args.image, args.mem)
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    else:
        mem = Memory(args.mem)
        if args.demo:
            mem.load(DEMO_PROGRAM)

    cpu = Oort(mem)

    if args.monitor:
        cli = OortCLI(cpu)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted.")
        return 0

    if args.trace:
        cpu.on_step = _trace

    if not args.quiet:
        print(dump_state(cpu))
    try:
        cpu.run(max_steps=args.max_steps)
    except MemoryFault as e:
        print(f"Fault: {e}", file=sys.stderr)
        print(dump_state(cpu))
        return 2
    if not args.quiet:
        print(dump_state(cpu))
    for addr in args.dump:
        print(f"mem[{addr:#x}]:" + format_mem(mem, addr))
    return 0


if __name__ == "__main__":
    sys.exit(main())
