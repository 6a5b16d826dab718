#!/usr/bin/env python3
"""
Rails System Monitor / CLI
==========================
Interactive command-line interface for the Rails emulator.

Provides:
  - Program assembly and loading
  - Step / run-until-IO / run-until-EXIT execution (runs in background)
  - Register, RAM and I/O port inspection
  - Snapshot save / restore

Usage:
  python cli.py [--load PROGRAM] [--snapshot FILE] [--run io|exit]
  python cli.py --assemble SRC OUT [--listing]
"""

from __future__ import annotations
import argparse
import cmd
import shlex
import struct
import sys

from asm import assemble_file, AsmError
from isa import PROM_SIZE, disasm_one, format_cell, format_word
from rails import RailsError
from system import RailsSystem, StopCondition, StopReason

RUN_CONDITIONS = {
    "io": StopCondition.UNTIL_IO,
    "exit": StopCondition.UNTIL_EXIT,
}


def _table(values: bytes, cols: int, signed: bool) -> list[str]:
    rows = []
    for start in range(0, len(values), cols):
        cells = [format_cell(i, values[i], signed)
                 for i in range(start, min(start + cols, len(values)))]
        rows.append("  " + "  ".join(cells))
    return rows


class RailsCLI(cmd.Cmd):
    intro = (
        "\n"
        "Rails System Monitor\n"
        "Type 'help' for commands.  'quit' to exit.\n"
    )
    prompt = "RAILS> "

    def __init__(self, system: RailsSystem, stdout=None):
        super().__init__(stdout=stdout)
        self.sys = system
        self.program_name = ""
        self.sys.on_stop = self._on_stop

    def _on_stop(self, reason: StopReason):
        """Report the end of a background run."""
        if reason is StopReason.FAULT:
            print(f"\nRun faulted: {self.sys.fault}")
            return
        print(f"\nRun ended ({reason.value}) at PC={self.sys.pc}")

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def onecmd(self, line):
        try:
            return super().onecmd(line)
        except (RailsError, AsmError, ValueError) as e:
            print(f"Error: {e}")

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_asm(self, arg):
        """Assemble and load a program: asm <file>
        Or inline:  asm -e "IMM r1 42; EXIT"
        Resets the machine before loading."""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: asm <file>  OR  asm -e \"code\"")
            return

        if parts[0] == "-e":
            source = parts[1].replace(";", "\n") if len(parts) > 1 else ""
            name = "<inline>"
        else:
            name = parts[0]
            try:
                with open(name, "r", encoding="utf-8") as f:
                    source = f.read()
            except OSError as e:
                print(f"Error reading '{name}': {e}")
                return

        try:
            length = self.sys.load_source(source)
        except AsmError as e:
            print(f"Assembly error: {e}")
            return
        self.program_name = name
        print(f"Loaded {name} ({length} instructions)")

    def do_prog(self, arg):
        """Print the loaded program in binary."""
        listing = self.sys.program_listing()
        if not listing:
            print("No program loaded")
            return
        print(f"Printing {self.program_name or 'program'} ...")
        for line in listing:
            print(line)

    # -- Execution --

    def do_reset(self, arg):
        """Clear RAM, registers, ports, carry and PC (the program stays)."""
        self.sys.reset()
        print("System reset.")

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            addr = self.sys.pc
            word = self.sys.step()
            print(f"  {addr:3d}: {format_word(word)}  {disasm_one(word)}")

    def do_run(self, arg):
        """Run in the background until the next IO or EXIT instruction:
        run io|exit"""
        mode = arg.strip().lower()
        if mode not in RUN_CONDITIONS:
            print("Usage: run io|exit")
            return
        self.sys.run_until(RUN_CONDITIONS[mode])
        print(f"Running until {mode} ... ('stop' to interrupt)")

    def do_stop(self, arg):
        """Stop a background run before its next instruction."""
        if not self.sys.busy:
            print("CPU is not running.")
            return
        self.sys.request_stop()

    def do_wait(self, arg):
        """Wait for a background run to finish: wait [seconds]"""
        timeout = float(arg) if arg.strip() else None
        if not self.sys.wait_idle(timeout):
            print("Still running.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show registers, PC and carry flag: regs [signed]"""
        signed = arg.strip().lower() == "signed"
        for row in _table(self.sys.regfile, 4, signed):
            print(row)
        print(f"  PC={self.sys.pc}  C={int(self.sys.carry_flag)}")

    def do_ram(self, arg):
        """Show RAM: ram [signed]"""
        signed = arg.strip().lower() == "signed"
        for row in _table(self.sys.ram, 8, signed):
            print(row)

    def do_ports(self, arg):
        """Show input and output ports: ports [signed]"""
        signed = arg.strip().lower() == "signed"
        print("  IN:")
        for row in _table(self.sys.in_regs, 4, signed):
            print(row)
        print("  OUT:")
        for row in _table(self.sys.out_regs, 4, signed):
            print(row)

    def do_in(self, arg):
        """Set an input port: in <port> <value>
        Value may be -128..255."""
        parts = shlex.split(arg)
        if len(parts) < 2:
            print("Usage: in <port> <value>")
            return
        port = self._parse_int(parts[0])
        value = self._parse_int(parts[1])
        self.sys.set_input(port, value)
        print(f"  IN[{port}] = {value & 0xFF}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        pc = self.sys.pc
        addr = self._parse_int(parts[0]) if parts else pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16
        prom = self.sys.state_copy().prom

        for _ in range(count):
            word = prom[addr % PROM_SIZE]
            marker = ">>>" if addr % PROM_SIZE == pc else "   "
            print(f"  {marker} {addr % PROM_SIZE:3d}: {format_word(word)}  {disasm_one(word)}")
            addr += 1

    def do_status(self, arg):
        """Show full machine status."""
        print(self.sys.dump_state())

    # -- Snapshots --

    def do_save(self, arg):
        """Save a snapshot of the whole machine: save <file>"""
        path = arg.strip()
        if not path:
            print("Usage: save <file>")
            return
        self.sys.save_snapshot(path)
        print(f"Snapshot saved to '{path}'")

    def do_restore(self, arg):
        """Restore a snapshot: restore <file>"""
        path = arg.strip()
        if not path:
            print("Usage: restore <file>")
            return
        self.sys.load_snapshot(path)
        print(f"Snapshot restored from '{path}'")

    # -- Exit --

    def do_quit(self, arg):
        """Exit the monitor."""
        self.sys.request_stop()
        print("Goodbye.")
        return True
    do_exit = do_quit

    def do_EOF(self, arg):
        print()
        return self.do_quit(arg)

    def default(self, line):
        print(f"Unknown command: {line.split()[0]}  (type 'help')")

    def emptyline(self):
        pass


def main():
    parser = argparse.ArgumentParser(
        description="Rails System Monitor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  python cli.py --load count.rails\n"
               "  python cli.py --load count.rails --run exit\n"
               "  python cli.py --snapshot snapshot.bin\n"
               "  python cli.py --assemble count.rails count.rom --listing\n"
    )
    parser.add_argument("--load", type=str, default=None, metavar="PROGRAM",
                        help="Assemble and load a program file")
    parser.add_argument("--snapshot", type=str, default=None, metavar="FILE",
                        help="Restore a machine snapshot")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC to a raw little-endian image OUT and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="Print assembly listing (with --assemble)")
    parser.add_argument("--run", choices=sorted(RUN_CONDITIONS), default=None,
                        help="Run until the next IO or EXIT instruction, "
                             "print the machine state and exit")
    args = parser.parse_args()

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        try:
            length, words = assemble_file(src_path, listing=args.listing)
            with open(out_path, "wb") as f:
                f.write(struct.pack(f"<{PROM_SIZE}H", *words))
        except (AsmError, OSError) as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"Assembled {src_path} → {out_path} ({length} instructions)")
        return

    sys_emu = RailsSystem()

    if args.snapshot:
        try:
            sys_emu.load_snapshot(args.snapshot)
        except RailsError as e:
            print(f"Error loading snapshot: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"Snapshot restored from '{args.snapshot}'")

    if args.load:
        try:
            length = sys_emu.load_file(args.load)
        except (AsmError, OSError) as e:
            print(f"Error loading program: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"Loaded {args.load} ({length} instructions)")

    # ---- Batch mode: one run, then report -----------------------------
    if args.run:
        try:
            sys_emu.run_until(RUN_CONDITIONS[args.run], background=False)
        except RailsError as e:
            print(f"Error during run: {e}", file=sys.stderr)
            sys.exit(1)
        print(sys_emu.dump_state())
        return

    cli = RailsCLI(sys_emu)
    cli.program_name = args.load or ""
    try:
        cli.cmdloop()
    except KeyboardInterrupt:
        sys_emu.request_stop()
        print("\nInterrupted. Goodbye.")


if __name__ == "__main__":
    main()
