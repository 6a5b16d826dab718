"""
Rails Assembler
===============
Translates Rails assembly text into a 256-word program image.

Source format:
  - one instruction per line, tokens separated by whitespace
  - optional leading label token ending in ':' (e.g. 'loop: ADD r1 r1 r2')
  - whole-line comments start with '#' or '//'; blank lines are ignored
  - registers are 0-15 with an optional 'r' prefix
  - immediates are unsigned decimal 0-255, or a label reference ('loop:')
  - pseudo-instructions: NOP, MOV rd rs, JMP tag, EXIT

Labels resolve to the index of the line they sit on, counting only
significant (non-blank, non-comment) lines.  A label must share its line
with an instruction.

Usage:
  from asm import assemble
  length, words = assemble(source_text)
"""

from __future__ import annotations
import re

from isa import INSTRUCTIONS, PROM_SIZE, Fmt, encode, encode_imm, format_word

_DECIMAL = re.compile(r"[0-9]+")

COMMENT_PREFIXES = ("#", "//")

# mnemonic -> (operand count, expansion)
PSEUDO_OPS = {
    "NOP":  (0, lambda ops: ["ADD", "r0", "r0", "r0"]),
    "MOV":  (2, lambda ops: ["ADD", ops[0], "r0", ops[1]]),
    "JMP":  (1, lambda ops: ["BEQ", ops[0], "r15"]),
    "EXIT": (0, lambda ops: ["JMPL", "r0", "r0"]),
}

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        self.msg = msg
        super().__init__(f"Line {line}: {msg}" if line else msg)


class UnknownInstruction(AsmError):
    pass

class UnknownLabel(AsmError):
    pass

class RegisterOutOfRange(AsmError):
    pass

class RegisterParseFailure(AsmError):
    pass

class ImmediateParseFailure(AsmError):
    pass

class NotEnoughArguments(AsmError):
    pass

class ProgramTooLong(AsmError):
    pass

class EmptySource(AsmError):
    pass

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _is_significant(text: str) -> bool:
    """True for stripped lines that hold an instruction."""
    return bool(text) and not text.startswith(COMMENT_PREFIXES)


def _is_label(tok: str) -> bool:
    return tok.endswith(":")


def _parse_reg(lineno: int, tok: str) -> int:
    """Parse 'r0'-'r15' or '0'-'15'. Returns register index."""
    digits = tok[1:] if tok.startswith("r") else tok
    if not _DECIMAL.fullmatch(digits):
        raise RegisterParseFailure(lineno, f"failed to parse register: {tok}")
    n = int(digits)
    if n > 15:
        raise RegisterOutOfRange(lineno, f"register out of range: {tok}")
    return n


def _parse_imm(lineno: int, tok: str, labels: dict[str, int]) -> int:
    """Parse an 8-bit immediate, or resolve a label reference."""
    if _is_label(tok):
        if tok not in labels:
            raise UnknownLabel(lineno, f"unknown line tag: {tok}")
        return labels[tok]
    if not _DECIMAL.fullmatch(tok) or int(tok) > 0xFF:
        raise ImmediateParseFailure(lineno, f"failed to parse immediate: {tok}")
    return int(tok)


def _expand_pseudo(lineno: int, tokens: list[str]) -> list[str]:
    """Rewrite a pseudo-instruction into the real instruction it stands for."""
    if tokens[0] not in PSEUDO_OPS:
        return tokens
    argc, expand = PSEUDO_OPS[tokens[0]]
    ops = tokens[1:]
    if len(ops) < argc:
        raise NotEnoughArguments(
            lineno, f"not enough args for {tokens[0]}, expected {argc}, got: {len(ops)}")
    return expand(ops)

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

def assemble(source: str, listing: bool = False) -> tuple[int, list[int]]:
    """
    Two-pass assembler.
    Pass 1: map labels to significant-line indices, enforce the length limit.
    Pass 2: expand pseudo-ops and encode every line into a word.
    Returns (program_length, words) where words always has PROM_SIZE entries.
    If listing=True, print an index/hex/binary/source listing to stdout.
    """
    if not source.strip():
        raise EmptySource(0, "source is empty")

    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = raw.strip()
        if _is_significant(stripped):
            cleaned.append((i, stripped))

    # ---- Pass 1: label collection ----
    labels: dict[str, int] = {}
    for index, (lineno, text) in enumerate(cleaned):
        if index >= PROM_SIZE:
            raise ProgramTooLong(
                lineno, f"program is too long, max length is {PROM_SIZE} instructions")
        first = text.split()[0]
        if _is_label(first):
            labels[first] = index   # redefinition: last one wins

    # ---- Pass 2: encode ----
    words = [0] * PROM_SIZE
    for index, (lineno, text) in enumerate(cleaned):
        words[index] = _emit_instruction(lineno, text, labels)

    if listing:
        _print_listing(cleaned, words, labels)

    return len(cleaned), words


def assemble_file(path: str, listing: bool = False) -> tuple[int, list[int]]:
    """Read and assemble a program file."""
    with open(path, "r", encoding="utf-8") as f:
        source = f.read()
    return assemble(source, listing=listing)


def _emit_instruction(lineno: int, text: str, labels: dict[str, int]) -> int:
    """Encode one significant line."""
    tokens = text.split()
    if _is_label(tokens[0]):
        label = tokens[0]
        tokens = tokens[1:]
        if not tokens:
            raise UnknownInstruction(lineno, f"missing instruction after label {label}")

    tokens = _expand_pseudo(lineno, tokens)
    mnem = tokens[0]
    if mnem not in INSTRUCTIONS:
        raise UnknownInstruction(lineno, f"unknown instruction: {mnem}")
    opcode, fmt = INSTRUCTIONS[mnem]

    ops = tokens[1:]
    want = 3 if fmt is Fmt.CAB else 2
    if len(ops) < want:
        raise NotEnoughArguments(
            lineno, f"not enough args, expected {want}, got: {len(ops)}")

    if fmt is Fmt.AB:
        a = _parse_reg(lineno, ops[0])
        b = _parse_reg(lineno, ops[1])
        return encode(opcode, a, b, 0)
    if fmt is Fmt.CA:
        c = _parse_reg(lineno, ops[0])
        a = _parse_reg(lineno, ops[1])
        return encode(opcode, a, 0, c)
    if fmt is Fmt.CAB:
        c = _parse_reg(lineno, ops[0])
        a = _parse_reg(lineno, ops[1])
        b = _parse_reg(lineno, ops[2])
        return encode(opcode, a, b, c)
    if fmt is Fmt.C_IMM:
        c = _parse_reg(lineno, ops[0])
        imm = _parse_imm(lineno, ops[1], labels)
        return encode_imm(opcode, imm, c)
    # IMM_C
    imm = _parse_imm(lineno, ops[0], labels)
    c = _parse_reg(lineno, ops[1])
    return encode_imm(opcode, imm, c)


def _print_listing(cleaned: list[tuple[int, str]], words: list[int],
                   labels: dict[str, int]):
    index_labels: dict[int, list[str]] = {}
    for lbl, index in labels.items():
        index_labels.setdefault(index, []).append(lbl)
    for index, (_, text) in enumerate(cleaned):
        for lbl in index_labels.get(index, []):
            print(f"                                {lbl}")
        tokens = text.split()
        if _is_label(tokens[0]):
            tokens = tokens[1:]
        word = words[index]
        print(f"  {index:03d}  {word:04X}  {format_word(word)}  {' '.join(tokens)}")
