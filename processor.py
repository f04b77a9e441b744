"""Processor (Datapath + ControlUnit) and CLI wrapper.

Provides VM execution over a loaded program image, character I/O against
the host streams and logging initialization.
"""

from __future__ import annotations

import logging
import sys
from array import array
from collections.abc import Iterable
from pathlib import Path
from typing import Any, TextIO

from config import DEFAULTS, ConfigError, load_config
from isa import (
    NUM_REGISTERS,
    WORD_MASK,
    WORD_MOD,
    Deferred,
    DivisionByZeroError,
    ExpectedRegisterError,
    Instruction,
    Literal,
    MemoryAccessError,
    OpCode,
    Operand,
    Register,
    StackUnderflowError,
    VMError,
    VMIOError,
    classify_word,
    decode_instr,
    mnemonic,
    read_program,
)

LOGFILE = DEFAULTS["logfile"]


def init_logging(logfile: str = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level, otherwise only warnings and errors are kept.
    If console=True also echo logs to stderr (stdout belongs to the guest).

    NOTE: when debug=True we use a compact log format without timestamp so that
    entries look like:
        DEBUG root:processor.py:352 TICK:     1 IP:     0 INSTR: out 72
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.WARNING
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-5s %(message)s"

    # Custom formatter that indents all but the first formatted record.
    class _IndentOnceFormatter(logging.Formatter):
        def __init__(self, fmt: str | None = None):
            super().__init__(fmt)
            self._seen_first = False

        def format(self, record: logging.LogRecord) -> str:
            s = super().format(record)
            if not self._seen_first:
                self._seen_first = True
                return s
            return "    " + s

    fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    fh.setLevel(lvl)
    if debug:
        fh.setFormatter(_IndentOnceFormatter(file_fmt))
    else:
        fh.setFormatter(logging.Formatter(file_fmt))
    root.addHandler(fh)

    if console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


def parse_input_script(path: str) -> list[str]:
    """Parse an input script: one guest input line per line.

    Blank lines and lines starting with '#' are skipped.
    """
    result: list[str] = []
    with open(path, encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\r\n")
            if not line.strip() or line.lstrip().startswith("#"):
                continue
            result.append(line + "\n")
    return result


class Datapath:
    """Datapath (memory + registers + stack + host I/O) for the VM."""

    memory: array
    mem_cells: int
    registers: list[int]
    stack: list[int]
    IP: int
    tick: int
    halted: bool

    input_buffer: list[int]
    input_lines: list[str]
    stdin: TextIO
    stdout: TextIO
    lenient_log: bool

    def __init__(
        self,
        program: Iterable[int],
        mem_cells: int = 32768,
        registers: Iterable[int] | None = None,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        input_lines: Iterable[str] | None = None,
        lenient_log: bool = False,
    ) -> None:
        """Initialize Datapath state and load the program image at address 0."""
        image = array("H", program)
        self.mem_cells = int(mem_cells)
        if len(image) > self.mem_cells:
            err = f"Program image ({len(image)} words) doesn't fit into memory ({self.mem_cells} words)"
            raise MemoryAccessError(err)
        self.memory = array("H", bytes(2 * self.mem_cells))
        self.memory[0 : len(image)] = image
        logging.debug("Datapath: loaded %d words into %d memory cells", len(image), self.mem_cells)

        self.registers = [0] * NUM_REGISTERS
        if registers is not None:
            for r, v in enumerate(registers):
                self.set_register(r, v)
        self.stack = []
        self.IP = 0
        self.tick = 0
        self.halted = False

        self.input_buffer = []
        self.input_lines = list(input_lines) if input_lines is not None else []
        self.stdin = stdin if stdin is not None else sys.stdin
        self.stdout = stdout if stdout is not None else sys.stdout
        self.lenient_log = bool(lenient_log)

    # --- memory ---
    def read_word(self, addr: int) -> int:
        """Read the raw 16-bit container at `addr`."""
        if not 0 <= addr < self.mem_cells:
            err = f"read outside memory: {addr}"
            raise MemoryAccessError(err, word=addr)
        return self.memory[addr]

    def write_word(self, addr: int, value: int) -> None:
        """Write a literal word to memory.

        Raises MemoryAccessError for out-of-range writes.
        """
        if not 0 <= addr < self.mem_cells:
            err = f"write outside memory: {addr}"
            raise MemoryAccessError(err, word=addr)
        self.memory[addr] = value % WORD_MOD

    # --- registers ---
    def set_register(self, r: int, value: int) -> None:
        if not 0 <= r < NUM_REGISTERS:
            err = f"no such register: {r}"
            raise ValueError(err)
        self.registers[r] = int(value)

    # --- stack ---
    def push(self, value: int) -> None:
        self.stack.append(value)

    def pop(self) -> int:
        if not self.stack:
            err = "pop from empty stack"
            raise StackUnderflowError(err)
        return self.stack.pop()

    # --- operands ---
    def value_of(self, operand: Operand) -> int:
        """Project an operand to a concrete value."""
        if isinstance(operand, Deferred):
            operand = classify_word(operand.word, operand.addr)
        if isinstance(operand, Register):
            return self.registers[operand.index]
        return operand.value

    def resolve(self, addr: int) -> int:
        """Read memory[addr]: a literal is its own value, a register reference its contents."""
        return self.value_of(classify_word(self.read_word(addr), addr))

    def as_register(self, addr: int) -> int:
        """Read memory[addr], which must encode a register reference; return its index."""
        word = self.read_word(addr)
        operand = classify_word(word, addr)
        if isinstance(operand, Literal):
            err = f"expected register, got literal {word} at {addr}"
            raise ExpectedRegisterError(err, word=word)
        return operand.index

    # --- host I/O ---
    def write_char(self, code: int) -> None:
        """Write one character to the host; flush on newline."""
        try:
            self.stdout.write(chr(code))
            if code == 10:
                self.stdout.flush()
        except (OSError, UnicodeEncodeError) as e:
            err = f"write failed: {e}"
            raise VMIOError(err, word=code) from e

    def _next_line(self) -> str:
        if self.input_lines:
            line = self.input_lines.pop(0)
            logging.info("input script: %r", line)
            return line
        try:
            self.stdout.flush()
            return self.stdin.readline()
        except OSError as e:
            err = f"read failed: {e}"
            raise VMIOError(err) from e

    def read_char(self) -> int:
        """Return the next input code, reading one host line when the buffer is empty."""
        if not self.input_buffer:
            line = self._next_line()
            if line == "":
                err = "end of input"
                raise VMIOError(err)
            codes = [ord(ch) for ch in line]
            for code in codes:
                if code >= WORD_MOD:
                    err = f"input character out of range: {code}"
                    raise VMIOError(err, word=code)
            self.input_buffer.extend(codes)
            logging.debug("[IN] buffered %d chars", len(codes))
        return self.input_buffer.pop(0)


class ControlUnit:
    """Control unit implementing the FETCH-DECODE-EXEC loop for the Datapath."""

    dp: Datapath
    halt_on_empty_ret: bool

    def __init__(self, dp: Datapath, halt_on_empty_ret: bool = False) -> None:
        """Create a ControlUnit bound to `dp`."""
        self.dp = dp
        self.halt_on_empty_ret = bool(halt_on_empty_ret)

    def _log_step(self, instr: Instruction) -> None:
        dp = self.dp
        regs = " ".join(f"{v:5d}" for v in dp.registers)
        logging.debug(
            "TICK: %6d IP: %5d REGS: [%s] SP: %4d\tINSTR: %s",
            dp.tick,
            instr.ip,
            regs,
            len(dp.stack),
            mnemonic(instr),
        )

    def run(self) -> tuple[int, str]:
        """Execute until halt. Returns (ticks, state).

        Fatal guest errors propagate as VMError subclasses with opcode and
        instruction pointer attached.
        """
        dp = self.dp
        trace = logging.getLogger().isEnabledFor(logging.DEBUG) and not dp.lenient_log
        logging.debug("running the program from %d", dp.IP)
        while not dp.halted:
            try:
                instr = decode_instr(dp.memory, dp.IP)
            except VMError as e:
                if e.ip is None:
                    e.ip = dp.IP
                raise
            dp.tick += 1
            if trace:
                self._log_step(instr)
            try:
                self.exec(instr)
            except VMError as e:
                raise e.attach(instr.opcode, instr.ip)
        logging.debug("HALT encountered at %d after %d ticks", dp.IP, dp.tick)
        return dp.tick, "halted"

    def exec(self, instr: Instruction) -> None:  # noqa: C901
        """Execute a single instruction (hardwired control unit)."""
        dp = self.dp
        opcode = instr.opcode
        ops = instr.operands
        val = dp.value_of
        next_ip = instr.ip + instr.size

        if opcode == OpCode.HALT:
            dp.halted = True
            return
        if opcode == OpCode.SET:
            dp.set_register(ops[0].index, val(ops[1]))
            dp.IP = next_ip
            return
        if opcode == OpCode.PUSH:
            dp.push(val(ops[0]))
            dp.IP = next_ip
            return
        if opcode == OpCode.POP:
            dp.set_register(ops[0].index, dp.pop())
            dp.IP = next_ip
            return
        if opcode == OpCode.EQ:
            dp.set_register(ops[0].index, 1 if val(ops[1]) == val(ops[2]) else 0)
            dp.IP = next_ip
            return
        if opcode == OpCode.GT:
            dp.set_register(ops[0].index, 1 if val(ops[1]) > val(ops[2]) else 0)
            dp.IP = next_ip
            return

        if opcode == OpCode.JMP:
            dp.IP = val(ops[0])
            return
        if opcode == OpCode.JT:
            dp.IP = val(ops[1]) if val(ops[0]) != 0 else next_ip
            return
        if opcode == OpCode.JF:
            dp.IP = val(ops[1]) if val(ops[0]) == 0 else next_ip
            return

        if opcode == OpCode.ADD:
            dp.set_register(ops[0].index, (val(ops[1]) + val(ops[2])) % WORD_MOD)
            dp.IP = next_ip
            return
        if opcode == OpCode.MULT:
            dp.set_register(ops[0].index, (val(ops[1]) * val(ops[2])) % WORD_MOD)
            dp.IP = next_ip
            return
        if opcode == OpCode.MOD:
            b, c = val(ops[1]), val(ops[2])
            if c == 0:
                err = f"mod {b} by zero"
                raise DivisionByZeroError(err, word=c)
            dp.set_register(ops[0].index, (b % c) % WORD_MOD)
            dp.IP = next_ip
            return
        if opcode == OpCode.AND:
            dp.set_register(ops[0].index, (val(ops[1]) & val(ops[2])) % WORD_MOD)
            dp.IP = next_ip
            return
        if opcode == OpCode.OR:
            dp.set_register(ops[0].index, (val(ops[1]) | val(ops[2])) % WORD_MOD)
            dp.IP = next_ip
            return
        if opcode == OpCode.NOT:
            dp.set_register(ops[0].index, ~val(ops[1]) & WORD_MASK)
            dp.IP = next_ip
            return

        if opcode == OpCode.RMEM:
            # raw fetch: a stored register encoding is not dereferenced
            dp.set_register(ops[0].index, dp.read_word(val(ops[1])))
            dp.IP = next_ip
            return
        if opcode == OpCode.WMEM:
            dp.write_word(val(ops[0]), val(ops[1]))
            dp.IP = next_ip
            return

        if opcode == OpCode.CALL:
            target = val(ops[0])
            dp.push(next_ip)
            dp.IP = target
            return
        if opcode == OpCode.RET:
            if not dp.stack and self.halt_on_empty_ret:
                logging.debug("RET on empty stack -> halt")
                dp.halted = True
                return
            dp.IP = dp.pop()
            return

        if opcode == OpCode.OUT:
            dp.write_char(val(ops[0]))
            dp.IP = next_ip
            return
        if opcode == OpCode.IN:
            dp.set_register(ops[0].index, dp.read_char())
            dp.IP = next_ip
            return
        if opcode == OpCode.NOOP:
            dp.IP = next_ip
            return


# ---------- Public API ----------
def run_words(
    words: Iterable[int],
    config: dict[str, Any] | None = None,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
    registers: Iterable[int] | None = None,
) -> tuple[int, str]:
    """Run VM on given program words and config and return (ticks, state)."""
    cfg = load_config(config)
    input_lines = parse_input_script(cfg["input_script"]) if cfg["input_script"] else None
    dp = Datapath(
        words,
        mem_cells=cfg["mem_cells"],
        registers=registers,
        stdin=stdin,
        stdout=stdout,
        input_lines=input_lines,
        lenient_log=cfg["lenient_log"],
    )
    cu = ControlUnit(dp, halt_on_empty_ret=cfg["halt_on_empty_ret"])
    return cu.run()


# ---------- CLI ----------
def main(argv: list[str] | None = None) -> int:
    """Entry point: run a program image against the host terminal."""
    import argparse

    ap = argparse.ArgumentParser(
        description="Puzzle VM runner. Loads a little-endian 16-bit program image and runs it to halt."
    )
    ap.add_argument("program", nargs="?", default=None, help="program image (default: config 'program').")
    ap.add_argument("--config", help="path to yaml config", default=None)
    ap.add_argument(
        "--input",
        dest="input_script",
        default=None,
        help="input script fed to the guest line by line before stdin ('#' lines skipped)",
    )

    help_debug = "enable debug logging to logfile (detailed per-step state)."
    help_logfile = "path to processor log"
    help_console = "also echo logs to stderr"
    ap.add_argument("--debug", action="store_true", help=help_debug)
    ap.add_argument("--logfile", default=None, help=help_logfile)
    ap.add_argument("--console", action="store_true", help=help_console)
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print("Bad config:", e, file=sys.stderr)
        return 2

    # CLI flags override the config file
    if args.program is not None:
        cfg["program"] = args.program
    if args.input_script is not None:
        cfg["input_script"] = args.input_script
    if args.logfile is not None:
        cfg["logfile"] = args.logfile
    if args.debug:
        cfg["debug"] = True

    init_logging(logfile=cfg["logfile"], debug=cfg["debug"], console=args.console)

    code_path = Path(cfg["program"])
    if not code_path.is_file():
        print("Program file not found:", cfg["program"], file=sys.stderr)
        return 2
    if cfg["input_script"] and not Path(cfg["input_script"]).is_file():
        print("Input script not found:", cfg["input_script"], file=sys.stderr)
        return 2

    try:
        words = read_program(code_path)
    except OSError as e:
        print("Cannot read program:", e, file=sys.stderr)
        return 2
    logging.debug("CLI: read %d words from %s", len(words), code_path)

    try:
        ticks, state = run_words(words, cfg)
    except VMError as e:
        sys.stdout.flush()
        logging.error("%s: %s", e.kind, e)
        print(f"\nvm: {e.kind}: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        logging.warning("interrupted")
        return 130
    finally:
        sys.stdout.flush()

    logging.info("%s after %d ticks", state, ticks)
    return 0


if __name__ == "__main__":
    sys.exit(main())
