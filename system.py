"""
Rails System Emulator
=====================
Wraps one RailsCPU with everything needed to drive it from more than
one thread:

  - a lock held for one instruction (inspect + execute) at a time
  - a busy gate so at most one step or run touches the machine
  - run-until-IO / run-until-EXIT on a background worker thread,
    cancellable with request_stop()
  - program loading, reset, and snapshot save/restore

A UI or API thread may read registers, RAM and ports at any time; it
waits at most one instruction for the lock.
"""

from __future__ import annotations
import threading
from enum import Enum
from typing import Callable, Iterable, Optional

import snapshot
from asm import assemble
from isa import EXIT_INSTRUCTION, IO_OPCODES, PROM_SIZE, WORD_MASK, format_word
from rails import RailsCPU, RailsError, MachineState, NUM_PORTS


class StopCondition(Enum):
    """Predicate over the next (not yet executed) instruction."""
    UNTIL_IO = "io"
    UNTIL_EXIT = "exit"


class StopReason(Enum):
    STOPPED = "stopped"   # request_stop() observed
    IO = "io"             # next instruction is IN/OUT
    EXIT = "exit"         # next instruction is EXIT
    FAULT = "fault"       # the run raised


class EngineStateError(RailsError):
    """Operation refused because of the engine's current state."""

    def __init__(self, state: str, message: str):
        self.state = state
        super().__init__(message)


class Busy(EngineStateError):
    pass


class NoProgramLoaded(EngineStateError):
    pass


class RailsSystem:
    """Thread-safe owner of one Rails machine."""

    def __init__(self, state: MachineState | None = None):
        self.cpu = RailsCPU(state)
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._busy = False
        self._stop_event = threading.Event()
        self._worker: threading.Thread | None = None

        self.last_stop_reason: StopReason | None = None
        self.fault: BaseException | None = None

        # Callbacks
        self.on_stop: Optional[Callable[[StopReason], None]] = None

    def _check_idle(self, action: str):
        """Caller holds the lock."""
        if self._busy:
            raise Busy("running", f"Cannot {action}: CPU is busy running")

    # -----------------------------------------------------------------
    #  Program loading
    # -----------------------------------------------------------------

    def load_program(self, words: Iterable[int], length: int):
        """Install a program image.  Registers and RAM are left alone."""
        words = list(words)
        if len(words) > PROM_SIZE:
            raise ValueError(f"Program image has {len(words)} words, max {PROM_SIZE}")
        if not 0 <= length <= PROM_SIZE:
            raise ValueError(f"Program length {length} out of range 0-{PROM_SIZE}")
        for i, w in enumerate(words):
            if not 0 <= w <= WORD_MASK:
                raise ValueError(f"Word {i} ({w!r}) is not a 16-bit value")
        prom = words + [0] * (PROM_SIZE - len(words))

        with self._lock:
            self._check_idle("load a program")
            self.cpu.state.prom = prom
            self.cpu.state.program_length = length

    def load_source(self, source: str) -> int:
        """Assemble, reset, then load.  Returns the program length.

        On an assembly error the machine is left untouched.
        """
        with self._lock:
            self._check_idle("assemble")
            length, words = assemble(source)
            self.cpu.reset_state()
            self.cpu.state.prom = words
            self.cpu.state.program_length = length
        return length

    def load_file(self, path: str) -> int:
        with open(path, "r", encoding="utf-8") as f:
            source = f.read()
        return self.load_source(source)

    # -----------------------------------------------------------------
    #  Execution
    # -----------------------------------------------------------------

    def reset(self):
        """Clear RAM, registers, ports, carry and PC; keep the program."""
        with self._lock:
            self._check_idle("reset")
            self.cpu.reset_state()

    def step(self) -> int:
        """Execute one instruction synchronously.  Returns the word run."""
        with self._lock:
            self._check_idle("step")
            return self.cpu.step()

    def run_until(self, condition: StopCondition, background: bool = True):
        """Run until *condition* holds for the next instruction, or until
        request_stop().

        With background=True the loop runs on a worker thread and this
        returns immediately; use wait_idle() to block until it ends.
        """
        with self._lock:
            self._check_idle("run")
            if self.cpu.state.program_length == 0:
                raise NoProgramLoaded(
                    "idle", "No program appears to be loaded, or it is empty")
            self._busy = True
            self._stop_event.clear()
            self.fault = None
            self.last_stop_reason = None

        if not background:
            self._run_loop(condition, reraise=True)
            return

        self._worker = threading.Thread(
            target=self._run_loop, args=(condition,), daemon=True,
            name="rails-run")
        self._worker.start()

    def request_stop(self):
        """Ask a running loop to stop before its next instruction."""
        if self._busy:
            self._stop_event.set()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no run is in flight.  False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._busy, timeout)

    def _run_loop(self, condition: StopCondition, reraise: bool = False):
        reason = StopReason.FAULT
        fault = None
        try:
            while True:
                with self._lock:
                    if self._stop_event.is_set():
                        reason = StopReason.STOPPED
                        break
                    word = self.cpu.peek()
                    if condition is StopCondition.UNTIL_IO and (word >> 12) in IO_OPCODES:
                        reason = StopReason.IO
                        break
                    if condition is StopCondition.UNTIL_EXIT and word == EXIT_INSTRUCTION:
                        reason = StopReason.EXIT
                        break
                    self.cpu.step()
        except RailsError as e:
            fault = e
            self.fault = e
            if not reraise:
                print(f"[run] CPU fault: {e}")
        finally:
            with self._lock:
                self._busy = False
                self._stop_event.clear()
                self.last_stop_reason = reason
                self._idle.notify_all()

        # Fires for every run, foreground faults included
        if self.on_stop is not None:
            self.on_stop(reason)
        if reraise and fault is not None:
            raise fault

    # -----------------------------------------------------------------
    #  I/O ports
    # -----------------------------------------------------------------

    def set_input(self, port: int, value: int):
        """Write an input port.  Negative values are stored two's complement."""
        if not 0 <= port < NUM_PORTS:
            raise ValueError(f"Invalid IO address {port}. Must be between 0 and {NUM_PORTS - 1}")
        if not -128 <= value <= 255:
            raise ValueError(f"Input value {value} out of range -128..255")
        with self._lock:
            self.cpu.state.in_regs[port] = value & 0xFF

    # -----------------------------------------------------------------
    #  Snapshots
    # -----------------------------------------------------------------

    def snapshot_save(self) -> bytes:
        with self._lock:
            return snapshot.encode(self.cpu.state)

    def snapshot_load(self, data: bytes | bytearray):
        """Replace the whole machine state.  Bad data changes nothing."""
        new_state = snapshot.decode(data)
        with self._lock:
            self._check_idle("load a snapshot")
            self.cpu.state = new_state

    def save_snapshot(self, path: str):
        snapshot.write_file(path, self.snapshot_save())

    def load_snapshot(self, path: str):
        self.snapshot_load(snapshot.read_file(path))

    # -----------------------------------------------------------------
    #  State queries
    # -----------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def regfile(self) -> bytes:
        with self._lock:
            return bytes(self.cpu.state.regfile)

    @property
    def ram(self) -> bytes:
        with self._lock:
            return bytes(self.cpu.state.ram)

    @property
    def in_regs(self) -> bytes:
        with self._lock:
            return bytes(self.cpu.state.in_regs)

    @property
    def out_regs(self) -> bytes:
        with self._lock:
            return bytes(self.cpu.state.out_regs)

    @property
    def pc(self) -> int:
        with self._lock:
            return self.cpu.state.pc

    @property
    def carry_flag(self) -> bool:
        with self._lock:
            return self.cpu.state.carry_flag

    @property
    def program_length(self) -> int:
        with self._lock:
            return self.cpu.state.program_length

    def state_copy(self) -> MachineState:
        with self._lock:
            return self.cpu.state.copy()

    def instruction_at(self, addr: int) -> str:
        """Binary rendering of the program word at *addr*."""
        with self._lock:
            return format_word(self.cpu.state.prom[addr & 0xFF])

    def program_listing(self) -> list[str]:
        with self._lock:
            prom = list(self.cpu.state.prom)
            length = self.cpu.state.program_length
        return [f"{i:3d}: {format_word(prom[i])}" for i in range(length)]

    def dump_state(self) -> str:
        with self._lock:
            s = self.cpu.state
            lines = ["=== Registers ===", self.cpu.dump_regs()]
            lines.append(f"  Program: {s.program_length} instructions  "
                         f"Busy: {self._busy}")
            lines.append(f"  IN : {' '.join(f'{v:02x}' for v in s.in_regs)}")
            lines.append(f"  OUT: {' '.join(f'{v:02x}' for v in s.out_regs)}")
        if self.last_stop_reason is not None:
            lines.append(f"  Last run: {self.last_stop_reason.value}")
        return "\n".join(lines)
