"""
Rails machine-state snapshots.

Fixed-order, fixed-width little-endian layout with no header:

    prom            256 x u16
    ram             256 x u8
    regfile          16 x u8
    in_regs          16 x u8
    out_regs         16 x u8
    pc                    u8
    program_length        u16   (0-256)
    carry_flag            u8    (0 or 1)

820 bytes in total.  program_length is widened to u16 so a full
256-instruction program fits, which makes this layout deliberately not
byte-compatible with the older 817-byte snapshots that stored it as u8.
"""

from __future__ import annotations
import struct

from isa import PROM_SIZE
from rails import RailsError, MachineState, RAM_SIZE, NUM_REGS, NUM_PORTS

SNAPSHOT_FORMAT = struct.Struct(
    f"<{PROM_SIZE}H{RAM_SIZE}s{NUM_REGS}s{NUM_PORTS}s{NUM_PORTS}sBHB")
SNAPSHOT_SIZE = SNAPSHOT_FORMAT.size


class PersistenceError(RailsError):
    """Malformed snapshot data, or I/O failure while saving/loading."""
    pass


def encode(state: MachineState) -> bytes:
    return SNAPSHOT_FORMAT.pack(
        *state.prom,
        bytes(state.ram),
        bytes(state.regfile),
        bytes(state.in_regs),
        bytes(state.out_regs),
        state.pc,
        state.program_length,
        1 if state.carry_flag else 0,
    )


def decode(data: bytes | bytearray) -> MachineState:
    """Decode a snapshot into a fresh MachineState.

    Raises PersistenceError for anything that is not a well-formed
    snapshot; never returns a partially filled state.
    """
    if len(data) != SNAPSHOT_SIZE:
        raise PersistenceError(
            f"Snapshot is {len(data)} bytes, expected {SNAPSHOT_SIZE}")
    try:
        fields = SNAPSHOT_FORMAT.unpack(bytes(data))
    except struct.error as e:
        raise PersistenceError(f"Malformed snapshot: {e}") from e

    prom = list(fields[:PROM_SIZE])
    ram, regfile, in_regs, out_regs, pc, program_length, carry = fields[PROM_SIZE:]

    if carry > 1:
        raise PersistenceError(f"Malformed snapshot: carry byte {carry:#04x}")
    if program_length > PROM_SIZE:
        raise PersistenceError(
            f"Malformed snapshot: program length {program_length} > {PROM_SIZE}")
    if regfile[0] != 0:
        raise PersistenceError("Malformed snapshot: R0 is not zero")

    return MachineState(
        prom=prom,
        ram=bytearray(ram),
        regfile=bytearray(regfile),
        in_regs=bytearray(in_regs),
        out_regs=bytearray(out_regs),
        pc=pc,
        program_length=program_length,
        carry_flag=bool(carry),
    )


def write_file(path: str, data: bytes):
    try:
        with open(path, "wb") as f:
            f.write(data)
    except OSError as e:
        raise PersistenceError(f"Failed to write snapshot '{path}': {e}") from e


def read_file(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise PersistenceError(f"Failed to read snapshot '{path}': {e}") from e
