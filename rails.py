"""
Rails CPU Emulator
==================
A step emulator for the Rails 16-instruction CPU.

Machine model:
  - 256-word program ROM (16-bit instructions), never written by execution
  - 256 bytes of RAM
  - 16 general-purpose 8-bit registers; R0 always reads as zero
  - 16 input and 16 output port registers
  - 8-bit program counter (wraps at 256) and a carry flag

The fetch/decode/execute step reads the word at PC, switches on the top
nibble, and advances PC unless the instruction set it explicitly.
"""

from __future__ import annotations
from dataclasses import dataclass, field

from isa import (
    BYTE_MASK, EXIT_INSTRUCTION, PROM_SIZE, WORD_MASK, decode, disasm_one,
    OP_ADD, OP_ADDC, OP_SUB, OP_SWB, OP_NAND, OP_RSFT, OP_IMM, OP_LD,
    OP_LDIM, OP_ST, OP_STIM, OP_BEQ, OP_BGT, OP_JMPL, OP_IN, OP_OUT,
)

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

RAM_SIZE = 256
NUM_REGS = 16
NUM_PORTS = 16

# Branch compare register (BEQ / BGT compare R15 against Rc)
CMP_REG = 15

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class RailsError(Exception):
    """Base for emulator errors."""
    pass


class InvariantError(RailsError):
    """Corrupted program memory or an emulator bug.  Not recoverable."""
    pass

# ---------------------------------------------------------------------------
#  Machine state
# ---------------------------------------------------------------------------

@dataclass
class MachineState:
    prom: list[int] = field(default_factory=lambda: [0] * PROM_SIZE)
    ram: bytearray = field(default_factory=lambda: bytearray(RAM_SIZE))
    regfile: bytearray = field(default_factory=lambda: bytearray(NUM_REGS))
    in_regs: bytearray = field(default_factory=lambda: bytearray(NUM_PORTS))
    out_regs: bytearray = field(default_factory=lambda: bytearray(NUM_PORTS))
    pc: int = 0
    program_length: int = 0
    carry_flag: bool = False

    def copy(self) -> MachineState:
        return MachineState(
            prom=list(self.prom),
            ram=bytearray(self.ram),
            regfile=bytearray(self.regfile),
            in_regs=bytearray(self.in_regs),
            out_regs=bytearray(self.out_regs),
            pc=self.pc,
            program_length=self.program_length,
            carry_flag=self.carry_flag,
        )

# ---------------------------------------------------------------------------
#  CPU
# ---------------------------------------------------------------------------

class RailsCPU:
    """Rails CPU -- instruction-word level.

    Not thread-safe on its own; RailsSystem serialises access.
    """

    def __init__(self, state: MachineState | None = None):
        self.state = state if state is not None else MachineState()

    # -- Fetch --

    def peek(self) -> int:
        """Word at PC, without executing it."""
        word = self.state.prom[self.state.pc]
        if not 0 <= word <= WORD_MASK:
            raise InvariantError(f"Program word {word!r} at {self.state.pc} is not 16-bit")
        return word

    # -- Execute --

    def step(self) -> int:
        """Execute one instruction. Returns the executed word."""
        s = self.state
        regs = s.regfile
        word = self.peek()
        opcode, a, b, c, imm = decode(word)

        if opcode == OP_ADD:
            result = regs[a] + regs[b]
            s.carry_flag = result > 0xFF
            regs[c] = result & BYTE_MASK
        elif opcode == OP_ADDC:
            result = regs[a] + regs[b] + int(s.carry_flag)
            s.carry_flag = result > 0xFF
            regs[c] = result & BYTE_MASK
        elif opcode == OP_SUB:
            # carry = borrow occurred
            result = regs[a] - regs[b]
            s.carry_flag = result < 0
            regs[c] = result & BYTE_MASK
        elif opcode == OP_SWB:
            result = regs[b] - regs[a] - int(s.carry_flag)
            s.carry_flag = result < 0
            regs[c] = result & BYTE_MASK
        elif opcode == OP_NAND:
            regs[c] = ~(regs[a] & regs[b]) & BYTE_MASK
        elif opcode == OP_RSFT:
            regs[c] = regs[a] >> 1
        elif opcode == OP_IMM:
            regs[c] = imm
        elif opcode == OP_LD:
            regs[c] = s.ram[regs[a]]
        elif opcode == OP_LDIM:
            regs[c] = s.ram[imm]
        elif opcode == OP_ST:
            s.ram[regs[a]] = regs[b]
        elif opcode == OP_STIM:
            s.ram[imm] = regs[c]
        elif opcode == OP_BEQ:
            if regs[CMP_REG] == regs[c]:
                return self._branch(word, imm)
        elif opcode == OP_BGT:
            if regs[CMP_REG] > regs[c]:
                return self._branch(word, imm)
        elif opcode == OP_JMPL:
            # Link first, then read the target: JMPL rX rX resumes at PC+1
            regs[c] = (s.pc + 1) & BYTE_MASK
            target = regs[a]
            regs[0] = 0
            s.pc = target
            s.carry_flag = False
            return word
        elif opcode == OP_IN:
            regs[c] = s.in_regs[a]
        elif opcode == OP_OUT:
            s.out_regs[a] = regs[b]
        else:
            raise InvariantError(f"Invalid opcode {opcode} in word {word:#06x}")

        regs[0] = 0
        s.pc = (s.pc + 1) & BYTE_MASK
        return word

    def _branch(self, word: int, target: int) -> int:
        self.state.pc = target
        self.state.carry_flag = False
        return word

    # -- Reset --

    def reset_state(self):
        """Clear RAM, registers, ports, carry and PC.  The program stays."""
        s = self.state
        s.ram = bytearray(RAM_SIZE)
        s.regfile = bytearray(NUM_REGS)
        s.in_regs = bytearray(NUM_PORTS)
        s.out_regs = bytearray(NUM_PORTS)
        s.carry_flag = False
        s.pc = 0

    # -- Debug / introspection --

    @property
    def at_exit(self) -> bool:
        return self.state.prom[self.state.pc] == EXIT_INSTRUCTION

    def dump_regs(self) -> str:
        s = self.state
        lines = []
        for row in range(0, NUM_REGS, 4):
            cells = "  ".join(f"R{i:<2d} = {s.regfile[i]:#04x}" for i in range(row, row + 4))
            lines.append(f"  {cells}")
        lines.append(f"  PC = {s.pc:#04x}  C={int(s.carry_flag)}  "
                     f"next: {disasm_one(s.prom[s.pc])}")
        return "\n".join(lines)
