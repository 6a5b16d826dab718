#!/usr/bin/env python3
"""
Integration tests for the Rails system emulator.

Covers the engine protocol (busy gate, run-until-IO/EXIT, cooperative
stop), program loading, input ports and snapshot save/restore.
"""
import os
import tempfile
import threading
import unittest

import pytest

import snapshot
from asm import AsmError, EmptySource
from isa import EXIT_INSTRUCTION, PROM_SIZE
from rails import MachineState, InvariantError
from snapshot import PersistenceError, SNAPSHOT_SIZE
from system import (
    RailsSystem, StopCondition, StopReason, Busy, NoProgramLoaded,
    EngineStateError,
)

# Generous upper bound for any wait on a background run
RUN_TIMEOUT = 5.0

INFINITE_LOOP = "loop: JMP loop:\n"

COUNTER = """\
# count r1 up to 5, publish on port 0, then exit
IMM r2 1
IMM r15 5
loop: ADD r1 r1 r2
BGT loop: r1
OUT r0 r1
EXIT
"""


def make_system(source: str = None) -> RailsSystem:
    sys_emu = RailsSystem()
    if source is not None:
        sys_emu.load_source(source)
    return sys_emu


def start_spinning(sys_emu: RailsSystem):
    """Load an infinite loop and start it in the background."""
    sys_emu.load_source(INFINITE_LOOP)
    sys_emu.run_until(StopCondition.UNTIL_EXIT)
    assert sys_emu.busy


def stop_and_wait(testcase: unittest.TestCase, sys_emu: RailsSystem):
    sys_emu.request_stop()
    testcase.assertTrue(sys_emu.wait_idle(RUN_TIMEOUT), "run did not stop")


# ---------------------------------------------------------------------------
#  Loading
# ---------------------------------------------------------------------------

class TestLoading(unittest.TestCase):

    def test_load_source_resets_and_installs(self):
        sys_emu = make_system("IMM r1 5\nSTIM 9 r1\n")
        sys_emu.step()
        sys_emu.step()
        self.assertEqual(sys_emu.ram[9], 5)

        length = sys_emu.load_source("IMM r2 7\n")
        self.assertEqual(length, 1)
        self.assertEqual(sys_emu.program_length, 1)
        self.assertEqual(sys_emu.pc, 0)
        self.assertEqual(sys_emu.ram, bytes(256))
        self.assertEqual(sys_emu.regfile, bytes(16))

    def test_failed_assembly_leaves_machine(self):
        sys_emu = make_system("IMM r1 5\n")
        sys_emu.step()
        with self.assertRaises(AsmError):
            sys_emu.load_source("IMM r1 5\nBOGUS\n")
        self.assertEqual(sys_emu.program_length, 1)
        self.assertEqual(sys_emu.regfile[1], 5)
        self.assertEqual(sys_emu.pc, 1)

    def test_empty_source(self):
        sys_emu = make_system()
        with self.assertRaises(EmptySource):
            sys_emu.load_source("   \n")

    def test_load_program_keeps_registers(self):
        sys_emu = make_system("IMM r3 33\n")
        sys_emu.step()
        sys_emu.load_program([0x6011, EXIT_INSTRUCTION], 2)
        self.assertEqual(sys_emu.program_length, 2)
        self.assertEqual(sys_emu.regfile[3], 33)
        self.assertEqual(len(sys_emu.state_copy().prom), PROM_SIZE)

    def test_load_program_validates(self):
        sys_emu = make_system()
        with self.assertRaises(ValueError):
            sys_emu.load_program([0] * (PROM_SIZE + 1), 1)
        with self.assertRaises(ValueError):
            sys_emu.load_program([0x1_0000], 1)
        with self.assertRaises(ValueError):
            sys_emu.load_program([0], PROM_SIZE + 1)

    def test_load_file(self):
        with tempfile.NamedTemporaryFile("w", suffix=".rails", delete=False) as f:
            f.write(COUNTER)
            path = f.name
        try:
            sys_emu = make_system()
            self.assertEqual(sys_emu.load_file(path), 6)
        finally:
            os.unlink(path)

    def test_program_listing(self):
        sys_emu = make_system("ADD r1 r2 r3\nEXIT\n")
        self.assertEqual(sys_emu.program_listing(), [
            "  0: 0000-0010-0011-0001",
            "  1: 1101-0000-0000-0000",
        ])
        self.assertEqual(sys_emu.instruction_at(1), "1101-0000-0000-0000")


# ---------------------------------------------------------------------------
#  Synchronous execution
# ---------------------------------------------------------------------------

class TestRunSync(unittest.TestCase):

    def test_step(self):
        sys_emu = make_system("IMM r1 42\n")
        self.assertEqual(sys_emu.step(), 0x62A1)
        self.assertEqual(sys_emu.regfile[1], 42)
        self.assertEqual(sys_emu.pc, 1)

    def test_reset_keeps_program(self):
        sys_emu = make_system("IMM r1 42\n")
        sys_emu.step()
        sys_emu.set_input(4, 12)
        sys_emu.reset()
        self.assertEqual(sys_emu.pc, 0)
        self.assertEqual(sys_emu.regfile, bytes(16))
        self.assertEqual(sys_emu.in_regs, bytes(16))
        self.assertEqual(sys_emu.program_length, 1)

    def test_run_until_exit(self):
        sys_emu = make_system(COUNTER)
        sys_emu.run_until(StopCondition.UNTIL_EXIT, background=False)
        self.assertEqual(sys_emu.last_stop_reason, StopReason.EXIT)
        self.assertEqual(sys_emu.pc, 5)
        self.assertEqual(sys_emu.state_copy().prom[sys_emu.pc], EXIT_INSTRUCTION)
        self.assertEqual(sys_emu.out_regs[0], 5)
        self.assertFalse(sys_emu.busy)

        # EXIT is executed only by an explicit step
        sys_emu.step()
        self.assertEqual(sys_emu.pc, 6)

    def test_run_until_io(self):
        sys_emu = make_system(COUNTER)
        sys_emu.run_until(StopCondition.UNTIL_IO, background=False)
        self.assertEqual(sys_emu.last_stop_reason, StopReason.IO)
        self.assertEqual(sys_emu.pc, 4)
        self.assertEqual(sys_emu.regfile[1], 5)
        self.assertEqual(sys_emu.out_regs[0], 0)

    def test_run_until_io_at_io_does_nothing(self):
        sys_emu = make_system("IN r1 r0\nNOP\n")
        sys_emu.run_until(StopCondition.UNTIL_IO, background=False)
        self.assertEqual(sys_emu.pc, 0)
        self.assertEqual(sys_emu.last_stop_reason, StopReason.IO)

    def test_no_program_loaded(self):
        sys_emu = make_system()
        with self.assertRaises(NoProgramLoaded) as ctx:
            sys_emu.run_until(StopCondition.UNTIL_EXIT)
        self.assertIsInstance(ctx.exception, EngineStateError)
        self.assertEqual(ctx.exception.state, "idle")
        self.assertFalse(sys_emu.busy)

    def test_comment_only_program_is_not_runnable(self):
        sys_emu = make_system("# nothing\n")
        with self.assertRaises(NoProgramLoaded):
            sys_emu.run_until(StopCondition.UNTIL_IO, background=False)

    def test_fault_is_reraised_in_foreground(self):
        state = MachineState(program_length=1)
        state.prom[0] = 0x2_0000
        sys_emu = RailsSystem(state)
        with self.assertRaises(InvariantError):
            sys_emu.run_until(StopCondition.UNTIL_EXIT, background=False)
        self.assertEqual(sys_emu.last_stop_reason, StopReason.FAULT)
        self.assertIsInstance(sys_emu.fault, InvariantError)
        self.assertFalse(sys_emu.busy)

    def test_on_stop_callback(self):
        seen = []
        sys_emu = make_system(COUNTER)
        sys_emu.on_stop = seen.append
        sys_emu.run_until(StopCondition.UNTIL_EXIT, background=False)
        self.assertEqual(seen, [StopReason.EXIT])

    def test_on_stop_fires_on_foreground_fault(self):
        seen = []
        state = MachineState(program_length=1)
        state.prom[0] = 0x2_0000
        sys_emu = RailsSystem(state)
        sys_emu.on_stop = seen.append
        with self.assertRaises(InvariantError):
            sys_emu.run_until(StopCondition.UNTIL_EXIT, background=False)
        self.assertEqual(seen, [StopReason.FAULT])

    def test_request_stop_when_idle_is_noop(self):
        sys_emu = make_system(COUNTER)
        sys_emu.request_stop()
        sys_emu.request_stop()
        sys_emu.run_until(StopCondition.UNTIL_EXIT, background=False)
        self.assertEqual(sys_emu.last_stop_reason, StopReason.EXIT)


# ---------------------------------------------------------------------------
#  Background runs
# ---------------------------------------------------------------------------

@pytest.mark.threaded
class TestRunBackground(unittest.TestCase):

    def test_background_run_to_exit(self):
        sys_emu = make_system(COUNTER)
        done = threading.Event()
        sys_emu.on_stop = lambda reason: done.set()
        sys_emu.run_until(StopCondition.UNTIL_EXIT)
        self.assertTrue(sys_emu.wait_idle(RUN_TIMEOUT))
        self.assertTrue(done.wait(RUN_TIMEOUT))
        self.assertEqual(sys_emu.last_stop_reason, StopReason.EXIT)
        self.assertEqual(sys_emu.out_regs[0], 5)

    def test_busy_rejects_step_reset_run(self):
        sys_emu = make_system("IMM r1 7\nSTIM 20 r1\nloop: JMP loop:\n")
        sys_emu.step()
        sys_emu.step()
        sys_emu.set_input(3, 44)
        sys_emu.run_until(StopCondition.UNTIL_EXIT)
        try:
            before = sys_emu.state_copy()
            self.assertEqual(before.ram[20], 7)
            self.assertEqual(before.pc, 2)

            with self.assertRaises(Busy) as ctx:
                sys_emu.step()
            self.assertEqual(ctx.exception.state, "running")
            with self.assertRaises(Busy):
                sys_emu.reset()
            with self.assertRaises(Busy):
                sys_emu.run_until(StopCondition.UNTIL_IO)
            with self.assertRaises(Busy):
                sys_emu.load_source("NOP")
            with self.assertRaises(Busy):
                sys_emu.load_program([0], 1)
            with self.assertRaises(Busy):
                sys_emu.snapshot_load(snapshot.encode(MachineState()))

            # The spin loop itself changes nothing either
            self.assertEqual(sys_emu.state_copy(), before)
        finally:
            stop_and_wait(self, sys_emu)
        self.assertEqual(sys_emu.state_copy(), before)

    def test_request_stop(self):
        sys_emu = RailsSystem()
        start_spinning(sys_emu)
        stop_and_wait(self, sys_emu)
        self.assertFalse(sys_emu.busy)
        self.assertEqual(sys_emu.last_stop_reason, StopReason.STOPPED)
        self.assertIsNone(sys_emu.fault)

        # Idle again: step works, and a new run can start and stop
        sys_emu.step()
        sys_emu.run_until(StopCondition.UNTIL_IO)
        stop_and_wait(self, sys_emu)

    def test_request_stop_is_idempotent(self):
        sys_emu = RailsSystem()
        start_spinning(sys_emu)
        sys_emu.request_stop()
        sys_emu.request_stop()
        self.assertTrue(sys_emu.wait_idle(RUN_TIMEOUT))
        self.assertEqual(sys_emu.last_stop_reason, StopReason.STOPPED)

    def test_wait_idle_times_out(self):
        sys_emu = RailsSystem()
        start_spinning(sys_emu)
        try:
            self.assertFalse(sys_emu.wait_idle(0.05))
        finally:
            stop_and_wait(self, sys_emu)

    def test_reads_while_running(self):
        sys_emu = RailsSystem()
        start_spinning(sys_emu)
        try:
            self.assertEqual(len(sys_emu.regfile), 16)
            self.assertEqual(sys_emu.pc, 0)
            self.assertEqual(len(sys_emu.snapshot_save()), SNAPSHOT_SIZE)
            sys_emu.set_input(1, 200)
            self.assertEqual(sys_emu.in_regs[1], 200)
        finally:
            stop_and_wait(self, sys_emu)

    def test_snapshot_load_refused_while_running(self):
        sys_emu = RailsSystem()
        start_spinning(sys_emu)
        try:
            blob = sys_emu.snapshot_save()
            with self.assertRaises(Busy):
                sys_emu.snapshot_load(blob)
        finally:
            stop_and_wait(self, sys_emu)

    def test_input_seen_by_running_program(self):
        src = (
            "IMM r15 1\n"
            "wait: IN r1 r2\n"      # r1 = IN[2]
            "BEQ done: r1\n"
            "JMP wait:\n"
            "done: EXIT\n"
        )
        sys_emu = make_system(src)
        sys_emu.run_until(StopCondition.UNTIL_EXIT)
        self.assertFalse(sys_emu.wait_idle(0.05))
        sys_emu.set_input(2, 1)
        self.assertTrue(sys_emu.wait_idle(RUN_TIMEOUT))
        self.assertEqual(sys_emu.last_stop_reason, StopReason.EXIT)
        self.assertEqual(sys_emu.pc, 4)

    def test_background_fault(self):
        state = MachineState(program_length=1)
        state.prom[0] = 0x2_0000
        sys_emu = RailsSystem(state)
        sys_emu.run_until(StopCondition.UNTIL_EXIT)
        self.assertTrue(sys_emu.wait_idle(RUN_TIMEOUT))
        self.assertEqual(sys_emu.last_stop_reason, StopReason.FAULT)
        self.assertIsInstance(sys_emu.fault, InvariantError)


# ---------------------------------------------------------------------------
#  Input ports
# ---------------------------------------------------------------------------

class TestInputPorts(unittest.TestCase):

    def test_set_input(self):
        sys_emu = make_system()
        sys_emu.set_input(0, 255)
        sys_emu.set_input(15, -1)
        sys_emu.set_input(7, -128)
        self.assertEqual(sys_emu.in_regs[0], 255)
        self.assertEqual(sys_emu.in_regs[15], 255)
        self.assertEqual(sys_emu.in_regs[7], 128)

    def test_set_input_range(self):
        sys_emu = make_system()
        for port, value in ((16, 0), (-1, 0), (0, 256), (0, -129)):
            with self.assertRaises(ValueError):
                sys_emu.set_input(port, value)
        self.assertEqual(sys_emu.in_regs, bytes(16))


# ---------------------------------------------------------------------------
#  Snapshots
# ---------------------------------------------------------------------------

class TestSnapshot(unittest.TestCase):

    def _busy_machine(self) -> RailsSystem:
        sys_emu = make_system(COUNTER)
        sys_emu.set_input(3, 77)
        sys_emu.run_until(StopCondition.UNTIL_IO, background=False)
        sys_emu.step()
        return sys_emu

    def test_layout_size(self):
        self.assertEqual(SNAPSHOT_SIZE, 820)
        self.assertEqual(len(snapshot.encode(MachineState())), 820)

    def test_round_trip(self):
        sys_emu = self._busy_machine()
        before = sys_emu.state_copy()
        blob = sys_emu.snapshot_save()

        other = RailsSystem()
        other.snapshot_load(blob)
        self.assertEqual(other.state_copy(), before)

        # Restored machine carries on exactly where the first one stopped
        other.run_until(StopCondition.UNTIL_EXIT, background=False)
        self.assertEqual(other.pc, 5)

    def test_full_length_program(self):
        sys_emu = make_system("NOP\n" * PROM_SIZE)
        other = RailsSystem()
        other.snapshot_load(sys_emu.snapshot_save())
        self.assertEqual(other.program_length, PROM_SIZE)

    def test_layout_is_little_endian(self):
        sys_emu = make_system("ADD r1 r2 r3\n")
        blob = sys_emu.snapshot_save()
        self.assertEqual(blob[0:2], b"\x31\x02")
        # pc, program_length (u16), carry
        self.assertEqual(blob[-4:], b"\x00\x01\x00\x00")

    def test_truncated_leaves_state(self):
        sys_emu = self._busy_machine()
        before = sys_emu.state_copy()
        blob = sys_emu.snapshot_save()
        with self.assertRaises(PersistenceError):
            sys_emu.snapshot_load(blob[:-1])
        with self.assertRaises(PersistenceError):
            sys_emu.snapshot_load(b"")
        self.assertEqual(sys_emu.state_copy(), before)

    def test_malformed_fields_rejected(self):
        sys_emu = self._busy_machine()
        before = sys_emu.state_copy()
        blob = bytearray(sys_emu.snapshot_save())

        bad_carry = bytearray(blob)
        bad_carry[-1] = 2
        bad_length = bytearray(blob)
        bad_length[-3:-1] = (PROM_SIZE + 1).to_bytes(2, "little")
        bad_r0 = bytearray(blob)
        bad_r0[2 * PROM_SIZE + 256] = 1

        for data in (bad_carry, bad_length, bad_r0):
            with self.assertRaises(PersistenceError):
                sys_emu.snapshot_load(bytes(data))
        self.assertEqual(sys_emu.state_copy(), before)

    def test_file_round_trip(self):
        sys_emu = self._busy_machine()
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "state.bin")
            sys_emu.save_snapshot(path)
            self.assertEqual(os.path.getsize(path), SNAPSHOT_SIZE)
            other = RailsSystem()
            other.load_snapshot(path)
        self.assertEqual(other.state_copy(), sys_emu.state_copy())

    def test_missing_file(self):
        sys_emu = make_system()
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(PersistenceError):
                sys_emu.load_snapshot(os.path.join(tmp, "nope.bin"))
            with self.assertRaises(PersistenceError):
                sys_emu.save_snapshot(os.path.join(tmp, "no", "such", "dir.bin"))


if __name__ == "__main__":
    unittest.main()
