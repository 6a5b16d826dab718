"""
Rails ISA
=========
Opcode table, instruction-word layout and small formatting helpers for
the Rails 16-instruction CPU.

Every instruction is one 16-bit word, in one of two layouts:

    register form:   [opcode:4][a:4][b:4][c:4]
    immediate form:  [opcode:4][imm:8][c:4]

The operand format of a mnemonic decides which fields the assembler
fills in and which layout is used.
"""

from __future__ import annotations
from enum import Enum

# ---------------------------------------------------------------------------
#  Word layout
# ---------------------------------------------------------------------------

OPCODE_MASK = 0xF000
A_MASK      = 0x0F00
B_MASK      = 0x00F0
C_MASK      = 0x000F
IMM_MASK    = 0x0FF0
WORD_MASK   = 0xFFFF
BYTE_MASK   = 0xFF

# Program ROM holds one word per instruction slot
PROM_SIZE   = 256


class Fmt(Enum):
    """Operand encoding formats."""
    AB    = "AB"      # reads a, b; no destination
    CA    = "CA"      # c <- f(a)
    CAB   = "CAB"     # c <- f(a, b)
    C_IMM = "C_IMM"   # c <- f(imm)
    IMM_C = "IMM_C"   # reads c, carries imm (stores, branches)


# ---------------------------------------------------------------------------
#  Opcode table
# ---------------------------------------------------------------------------

OP_ADD  = 0x0
OP_ADDC = 0x1
OP_SUB  = 0x2
OP_SWB  = 0x3
OP_NAND = 0x4
OP_RSFT = 0x5
OP_IMM  = 0x6
OP_LD   = 0x7
OP_LDIM = 0x8
OP_ST   = 0x9
OP_STIM = 0xA
OP_BEQ  = 0xB
OP_BGT  = 0xC
OP_JMPL = 0xD
OP_IN   = 0xE
OP_OUT  = 0xF

INSTRUCTIONS: dict[str, tuple[int, Fmt]] = {
    "ADD":  (OP_ADD,  Fmt.CAB),
    "ADDC": (OP_ADDC, Fmt.CAB),
    "SUB":  (OP_SUB,  Fmt.CAB),
    "SWB":  (OP_SWB,  Fmt.CAB),
    "NAND": (OP_NAND, Fmt.CAB),
    "RSFT": (OP_RSFT, Fmt.CA),
    "IMM":  (OP_IMM,  Fmt.C_IMM),
    "LD":   (OP_LD,   Fmt.CA),
    "LDIM": (OP_LDIM, Fmt.C_IMM),
    "ST":   (OP_ST,   Fmt.AB),
    "STIM": (OP_STIM, Fmt.IMM_C),
    "BEQ":  (OP_BEQ,  Fmt.IMM_C),
    "BGT":  (OP_BGT,  Fmt.IMM_C),
    "JMPL": (OP_JMPL, Fmt.CA),
    "IN":   (OP_IN,   Fmt.CA),
    "OUT":  (OP_OUT,  Fmt.AB),
}

OPCODE_NAMES: dict[int, str] = {op: name for name, (op, _) in INSTRUCTIONS.items()}
OPCODE_FMTS: dict[int, Fmt] = {op: fmt for op, fmt in INSTRUCTIONS.values()}

# JMPL r0 r0 -- the expansion of pseudo EXIT
EXIT_INSTRUCTION = 0xD000

IO_OPCODES = (OP_IN, OP_OUT)

# ---------------------------------------------------------------------------
#  Encode / decode
# ---------------------------------------------------------------------------

def encode(opcode: int, a: int, b: int, c: int) -> int:
    """Register form: [opcode | a | b | c]."""
    return ((opcode & 0xF) << 12) | ((a & 0xF) << 8) | ((b & 0xF) << 4) | (c & 0xF)


def encode_imm(opcode: int, imm: int, c: int) -> int:
    """Immediate form: [opcode | imm8 | c]."""
    return ((opcode & 0xF) << 12) | ((imm & BYTE_MASK) << 4) | (c & 0xF)


def decode(word: int) -> tuple[int, int, int, int, int]:
    """Split a word into (opcode, a, b, c, imm).

    Both layouts are extracted at once; the opcode decides which
    fields are meaningful.
    """
    opcode = (word & OPCODE_MASK) >> 12
    a = (word & A_MASK) >> 8
    b = (word & B_MASK) >> 4
    c = word & C_MASK
    imm = (word & IMM_MASK) >> 4
    return opcode, a, b, c, imm


# ---------------------------------------------------------------------------
#  Formatting
# ---------------------------------------------------------------------------

def format_word(word: int) -> str:
    """Binary rendering grouped by nibble: 'xxxx-xxxx-xxxx-xxxx'."""
    bits = f"{word & WORD_MASK:016b}"
    return "-".join(bits[i:i + 4] for i in range(0, 16, 4))


def fmt_u8(v: int) -> str:
    return f"{v & BYTE_MASK:03d}"


def fmt_s8(v: int) -> str:
    v &= BYTE_MASK
    if v & 0x80:
        v -= 0x100
    return f"{v:4d}"


def fmt_index(i: int, width: int = 3) -> str:
    return f"{i:0{width}d}"


def format_cell(index: int, value: int, signed: bool = False,
                index_width: int = 3) -> str:
    """One 'index: value' cell for register, RAM and port tables."""
    val = fmt_s8(value) if signed else fmt_u8(value)
    return f"{fmt_index(index, index_width)}: {val}"


def disasm_one(word: int) -> str:
    """Render one word as assembler text (no label recovery)."""
    if word == EXIT_INSTRUCTION:
        return "EXIT"
    opcode, a, b, c, imm = decode(word)
    name = OPCODE_NAMES[opcode]
    fmt = OPCODE_FMTS[opcode]
    if fmt is Fmt.CAB:
        return f"{name} r{c} r{a} r{b}"
    if fmt is Fmt.CA:
        return f"{name} r{c} r{a}"
    if fmt is Fmt.AB:
        return f"{name} r{a} r{b}"
    if fmt is Fmt.C_IMM:
        return f"{name} r{c} {imm}"
    return f"{name} {imm} r{c}"
