"""
Oort Bytecode Emulator
======================
A step emulator for the Oort accumulator architecture.

Every instruction is one opcode byte, optionally followed by a 16-bit
little-endian literal.  The high nibble of the opcode byte selects the
instruction group, the low nibble is its argument: a register number, a
condition mask over the accumulator, or an immediate-shaping pattern.

The fetch/decode/execute loop is deliberately literal: decode the byte at
PC into an ``Instruction``, apply it, move PC.  Memory is a flat byte store
whose 64-bit word accesses stay inside their aligned 8-byte block.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Optional

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MASK64 = (1 << 64) - 1
SIGN64 = 1 << 63

DEFAULT_MEM_SIZE = 65536

# Instruction groups (high nibble)
OP_SYS   = 0x0
OP_TEST  = 0x1
OP_MF    = 0x2
OP_MT    = 0x3
OP_AND   = 0x4
OP_OR    = 0x5
OP_XOR   = 0x6
OP_ADD   = 0x7
OP_JUMP  = 0x8
OP_CALL  = 0x9
OP_LD    = 0xA
OP_ST    = 0xB
OP_ANDI  = 0xC
OP_ORI   = 0xD
OP_XORI  = 0xE
OP_ADDI  = 0xF

# OP_SYS sub-operations (low nibble)
SYS_NULL  = 0x0
SYS_TRACE = 0x1
SYS_SYS   = 0x2
SYS_EXT   = 0x3
SYS_MFSR  = 0x4
SYS_MTSR  = 0x5
SYS_SHL   = 0x6
SYS_SHR   = 0x7
SYS_JR    = 0x8
SYS_CALLR = 0x9
SYS_RET   = 0xA
SYS_NOP   = 0xB
SYS_MFLR  = 0xC
SYS_MTLR  = 0xD
SYS_GETPC = 0xE
SYS_HALT  = 0xF

# Accumulator categories, selected by bits 0-3 of a condition mask
CAT_ZERO     = 0  # acc == 0
CAT_POSITIVE = 1  # sign clear, nonzero
CAT_MIN      = 2  # only the sign bit set
CAT_NEGATIVE = 3  # sign set plus other bits

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u64(v: int) -> int:
    """Mask to unsigned 64 bits."""
    return v & MASK64

def s64(v: int) -> int:
    """Interpret a 64-bit value as signed."""
    v = u64(v)
    return v - (1 << 64) if v >= SIGN64 else v

def sign_extend(val: int, bits: int) -> int:
    """Sign-extend a *bits*-wide value to 64 bits."""
    mask = (1 << bits) - 1
    val &= mask
    if val & (1 << (bits - 1)):
        val -= (1 << bits)
    return u64(val)

def pattern_extend(imm: int, arg: int) -> int:
    """Place a 16-bit literal into one lane of a 64-bit word.

    ``arg`` bit 0 fills bits 16-31 with ones, bit 2 swaps the low two
    16-bit lanes, bit 1 fills bits 32-63 with ones, bit 3 swaps the two
    32-bit halves.  The steps are applied in exactly that order.
    """
    x = imm & 0xFFFF
    if arg & 0x1:
        x |= 0xFFFF0000
    if arg & 0x4:
        x = ((x & 0x0000FFFF) << 16) | ((x & 0xFFFF0000) >> 16)
    if arg & 0x2:
        x |= 0xFFFFFFFF00000000
    if arg & 0x8:
        x = ((x & 0x00000000FFFFFFFF) << 32) | ((x & 0xFFFFFFFF00000000) >> 32)
    return x

def category(acc: int) -> int:
    """Classify the accumulator into one of the four CAT_* values."""
    sign = 1 if acc & SIGN64 else 0
    rest = 1 if acc & (MASK64 ^ SIGN64) else 0
    return 2 * sign + rest

def round_mem_size(n: int) -> int:
    """Round a requested memory size up to a multiple of 8."""
    if n <= 0:
        raise ValueError(f"memory size must be positive, got {n}")
    return ((n - 1) | 7) + 1

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class OortError(Exception):
    """Base for emulator-generated faults."""
    pass

class MemoryFault(OortError):
    def __init__(self, addr: int, message: str = ""):
        self.addr = addr
        super().__init__(message or f"Memory fault @ {addr:#018x}")

# ---------------------------------------------------------------------------
#  Memory
# ---------------------------------------------------------------------------

class Memory:
    """Flat byte store with block-local 64-bit word access."""

    def __init__(self, size: int = DEFAULT_MEM_SIZE):
        self.size = round_mem_size(size)
        self.data = bytearray(self.size)

    def __len__(self) -> int:
        return self.size

    def _check(self, addr: int, count: int = 1):
        if addr + count > self.size:
            raise MemoryFault(addr)

    def read8(self, addr: int) -> int:
        addr = u64(addr)
        self._check(addr)
        return self.data[addr]

    def read_word(self, idx: int) -> int:
        """Read the aligned block holding *idx*, rotated so that the byte
        at *idx* becomes the least significant byte."""
        idx = u64(idx)
        base = idx & ~7
        off = idx & 7
        self._check(base, 8)
        val = 0
        for i in range(8):
            val |= self.data[base + ((off + i) & 7)] << (8 * i)
        return val

    def write_word(self, idx: int, val: int):
        idx = u64(idx)
        base = idx & ~7
        off = idx & 7
        self._check(base, 8)
        for i in range(8):
            self.data[base + ((off + i) & 7)] = (val >> (8 * i)) & 0xFF

    def load(self, data: bytes | bytearray, addr: int = 0):
        """Copy raw bytes in at *addr*; anything past the end is dropped."""
        if addr < 0 or addr > self.size:
            raise MemoryFault(u64(addr))
        chunk = bytes(data[:self.size - addr])
        self.data[addr:addr + len(chunk)] = chunk

    def window(self, addr: int, count: int = 16) -> bytes:
        addr = u64(addr)
        self._check(addr, count)
        return bytes(self.data[addr:addr + count])


def load_image(path: str, mem_size: int = DEFAULT_MEM_SIZE) -> Memory:
    """Build a Memory of *mem_size* (rounded) from a binary file.

    The image is truncated or zero-padded to fit.  ``OSError`` from the
    read is left for the caller to report.
    """
    mem = Memory(mem_size)
    with open(path, "rb") as f:
        data = f.read(mem.size)
    mem.load(data)
    return mem

# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Instruction:
    """One decoded instruction; lives for a single step."""
    op: int
    arg: int
    length: int
    imm: int = 0
    simm: int = 0
    ximm: int = 0
    cond: int = 0


def decode(mem: Memory, pc: int, acc: int) -> Instruction:
    """Decode the instruction at *pc*.  The condition bit depends on the
    accumulator, so it is evaluated here as well."""
    byte0 = mem.read8(pc)
    op = (byte0 >> 4) & 0xF
    arg = byte0 & 0xF

    length = 1
    imm = 0
    if op & 0x8:
        imm = mem.read8(u64(pc + 1)) | (mem.read8(u64(pc + 2)) << 8)
        length = 3

    ximm = 0
    simm = 0
    if (op & 0xC) == 0xC:
        ximm = pattern_extend(imm, arg)
    elif (op & 0xC) == 0x8:
        simm = sign_extend(imm, 16)

    cond = 0
    if (op & 0x6) == 0:
        cond = (arg >> category(acc)) & 1

    return Instruction(op, arg, length, imm, simm, ximm, cond)

# ---------------------------------------------------------------------------
#  Trap hooks
# ---------------------------------------------------------------------------

class TrapHandler:
    """Hooks for the four trap instructions (op 0, arg 0-3).

    Each hook receives the CPU and returns True to halt it.  The default
    behaviour prints a banner and halts; subclass to give a trap real
    semantics.
    """

    def _placeholder(self, cpu: "Oort", name: str) -> bool:
        print(f"\n*** executed {name} ***")
        return True

    def on_null(self, cpu: "Oort") -> bool:
        return self._placeholder(cpu, "null")

    def on_trace(self, cpu: "Oort") -> bool:
        return self._placeholder(cpu, "trace")

    def on_sys(self, cpu: "Oort") -> bool:
        return self._placeholder(cpu, "sys")

    def on_ext(self, cpu: "Oort") -> bool:
        return self._placeholder(cpu, "ext")

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class Oort:
    """Oort processor, bytecode level."""

    def __init__(self, mem: Optional[Memory] = None,
                 traps: Optional[TrapHandler] = None):
        self.mem = mem if mem is not None else Memory()
        self.traps = traps if traps is not None else TrapHandler()

        # Called with (cpu, instruction) before each instruction executes
        self.on_step: Optional[Callable[["Oort", Instruction], None]] = None

        self.reset()

    def reset(self):
        """Clear the register file.  Memory is left alone."""
        self.gpr: list[int] = [0] * 16
        self.pc: int = 0
        self.acc: int = 0
        self.lr: int = 0
        self.sr: int = 0
        self.halted: bool = False
        self.step_count: int = 0

    # =====================================================================
    #  STEP: decode, execute, advance
    # =====================================================================

    def step(self) -> bool:
        """Execute one instruction.  Returns False if the CPU was already
        halted and nothing happened."""
        if self.halted:
            return False
        ins = decode(self.mem, self.pc, self.acc)
        if self.on_step:
            self.on_step(self, ins)
        self.pc = self.execute(ins)
        self.step_count += 1
        return True

    def execute(self, ins: Instruction) -> int:
        """Apply *ins* at the current PC and return the next PC.

        Memory is touched before any register write, so a MemoryFault
        leaves the machine unchanged.
        """
        op = ins.op
        arg = ins.arg
        next_pc = u64(self.pc + ins.length)

        if   op == OP_SYS:  next_pc = self._exec_sys(arg, next_pc)
        elif op == OP_TEST: self.acc = MASK64 if ins.cond else 0
        elif op == OP_MF:   self.acc = self.gpr[arg]
        elif op == OP_MT:   self.gpr[arg] = self.acc
        elif op == OP_AND:  self.acc &= self.gpr[arg]
        elif op == OP_OR:   self.acc |= self.gpr[arg]
        elif op == OP_XOR:  self.acc ^= self.gpr[arg]
        elif op == OP_ADD:  self.acc = u64(self.acc + self.gpr[arg])
        elif op == OP_JUMP:
            if ins.cond:
                next_pc = u64(next_pc + ins.simm)
        elif op == OP_CALL:
            if ins.cond:
                self.lr = next_pc
                next_pc = u64(next_pc + ins.simm)
        elif op == OP_LD:
            self.acc = self.mem.read_word(u64(self.gpr[arg] + ins.simm))
        elif op == OP_ST:
            self.mem.write_word(u64(self.gpr[arg] + ins.simm), self.acc)
        elif op == OP_ANDI: self.acc &= ins.ximm
        elif op == OP_ORI:  self.acc |= ins.ximm
        elif op == OP_XORI: self.acc ^= ins.ximm
        elif op == OP_ADDI: self.acc = u64(self.acc + ins.ximm)

        return next_pc

    # -- 0x0: SYS --
    def _exec_sys(self, n: int, next_pc: int) -> int:
        if n == SYS_NULL:
            self._trap(self.traps.on_null)
        elif n == SYS_TRACE:
            self._trap(self.traps.on_trace)
        elif n == SYS_SYS:
            self._trap(self.traps.on_sys)
        elif n == SYS_EXT:
            self._trap(self.traps.on_ext)
        elif n == SYS_MFSR:
            self.acc = self.sr
        elif n == SYS_MTSR:
            self.sr = self.acc
        elif n == SYS_SHL:
            # shifting by 64 or more moves every bit out
            self.acc = u64(self.sr << self.acc) if self.acc < 64 else 0
        elif n == SYS_SHR:
            self.acc = self.sr >> self.acc if self.acc < 64 else 0
        elif n == SYS_JR:
            next_pc = self.acc
        elif n == SYS_CALLR:
            self.lr = next_pc
            next_pc = self.acc
        elif n == SYS_RET:
            next_pc = self.lr
        elif n == SYS_NOP:
            pass
        elif n == SYS_MFLR:
            self.acc = self.lr
        elif n == SYS_MTLR:
            self.lr = self.acc
        elif n == SYS_GETPC:
            self.acc = next_pc
        elif n == SYS_HALT:
            self.halted = True
        return next_pc

    def _trap(self, hook: Callable[["Oort"], bool]):
        if hook(self):
            self.halted = True

    # -- Run loop --

    def run(self, max_steps: Optional[int] = None) -> int:
        """Step until halted, or until *max_steps* instructions have run.
        Returns the number of instructions executed."""
        count = 0
        while not self.halted:
            if max_steps is not None and count >= max_steps:
                break
            self.step()
            count += 1
        return count

    # -- Load bytes at address --

    def load_bytes(self, addr: int, data: bytes | bytearray):
        """Write raw bytes into memory at the given address."""
        self.mem.load(data, addr)
