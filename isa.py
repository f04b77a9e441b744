"""ISA: opcodes, operand kinds, word codec and program image helpers."""

from __future__ import annotations

import struct
from enum import Enum, IntEnum
from pathlib import Path
from typing import NamedTuple, Union

WORD_MOD = 32768  # words are 15-bit, arithmetic is modulo 2**15
WORD_MASK = 0x7FFF
NUM_REGISTERS = 8
REGISTER_BASE = WORD_MOD  # 32768 + r encodes register r
ILLEGAL_MIN = REGISTER_BASE + NUM_REGISTERS  # 32776 and above are invalid
WORD_SIZE = 2  # bytes per word in the program image


class OpCode(IntEnum):
    """Keeps opcodes from all operations."""

    HALT = 0
    SET = 1
    PUSH = 2
    POP = 3
    EQ = 4
    GT = 5
    JMP = 6
    JT = 7
    JF = 8
    ADD = 9
    MULT = 10
    MOD = 11
    AND = 12
    OR = 13
    NOT = 14
    RMEM = 15
    WMEM = 16
    CALL = 17
    RET = 18
    OUT = 19
    IN = 20
    NOOP = 21


class Kind(Enum):
    """Operand slot kinds: destination register or resolvable value."""

    REG = "reg"
    VAL = "val"
    TARGET = "target"  # branch target, resolved only when the branch is taken


REG = Kind.REG
VAL = Kind.VAL
TARGET = Kind.TARGET

OPERANDS: dict[OpCode, tuple[Kind, ...]] = {
    OpCode.HALT: (),
    OpCode.SET: (REG, VAL),
    OpCode.PUSH: (VAL,),
    OpCode.POP: (REG,),
    OpCode.EQ: (REG, VAL, VAL),
    OpCode.GT: (REG, VAL, VAL),
    OpCode.JMP: (VAL,),
    OpCode.JT: (VAL, TARGET),
    OpCode.JF: (VAL, TARGET),
    OpCode.ADD: (REG, VAL, VAL),
    OpCode.MULT: (REG, VAL, VAL),
    OpCode.MOD: (REG, VAL, VAL),
    OpCode.AND: (REG, VAL, VAL),
    OpCode.OR: (REG, VAL, VAL),
    OpCode.NOT: (REG, VAL),
    OpCode.RMEM: (REG, VAL),
    OpCode.WMEM: (VAL, VAL),
    OpCode.CALL: (VAL,),
    OpCode.RET: (),
    OpCode.OUT: (VAL,),
    OpCode.IN: (REG,),
    OpCode.NOOP: (),
}


# --- errors ---
class VMError(RuntimeError):
    """Fatal guest error. Carries the opcode, instruction pointer and offending word."""

    kind = "vm error"

    def __init__(
        self,
        message: str,
        *,
        opcode: int | None = None,
        ip: int | None = None,
        word: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.opcode = opcode
        self.ip = ip
        self.word = word

    def attach(self, opcode: int, ip: int) -> VMError:
        """Fill in instruction context when the raiser did not know it."""
        if self.opcode is None:
            self.opcode = opcode
        if self.ip is None:
            self.ip = ip
        return self

    def __str__(self) -> str:
        parts = [self.message]
        if self.opcode is not None:
            try:
                name = OpCode(self.opcode).name.lower()
            except ValueError:
                name = "?"
            parts.append(f"opcode={int(self.opcode)} ({name})")
        if self.ip is not None:
            parts.append(f"ip={self.ip}")
        if self.word is not None:
            parts.append(f"word={self.word}")
        return " ".join(parts)


class IllegalWordError(VMError):
    """Memory word >= 32776 used as an operand."""

    kind = "illegal value"


class ExpectedRegisterError(VMError):
    """Literal found where a destination register is expected."""

    kind = "expected register"


class UnknownOpcodeError(VMError):
    kind = "unknown opcode"


class StackUnderflowError(VMError):
    kind = "stack underflow"


class DivisionByZeroError(VMError):
    kind = "division by zero"


class MemoryAccessError(VMError):
    """Address outside of memory, or image too large to load."""

    kind = "memory access"


class VMIOError(VMError):
    """EOF on input, write failure on output or non-ASCII input."""

    kind = "i/o error"


# --- word codec ---
class Literal(NamedTuple):
    value: int


class Register(NamedTuple):
    index: int


class Deferred(NamedTuple):
    """Branch target word not yet classified; may be illegal."""

    word: int
    addr: int


Operand = Union[Literal, Register, Deferred]


def classify_word(value: int, addr: int | None = None) -> Operand:
    """Classify a raw 16-bit container as literal or register reference.

    Raises IllegalWordError for values >= 32776.
    """
    if value < REGISTER_BASE:
        return Literal(value)
    if value < ILLEGAL_MIN:
        return Register(value - REGISTER_BASE)
    err = f"illegal value {value}" if addr is None else f"illegal value {value} at {addr}"
    raise IllegalWordError(err, word=value)


# --- decoder ---
class Instruction(NamedTuple):
    ip: int
    opcode: OpCode
    operands: tuple[Operand, ...]

    @property
    def size(self) -> int:
        return 1 + len(self.operands)


def _fetch(memory: object, addr: int) -> int:
    try:
        return int(memory[addr])  # type: ignore[index]
    except IndexError as e:
        err = f"address {addr} outside memory"
        raise MemoryAccessError(err) from e


def decode_instr(memory: object, ip: int) -> Instruction:
    """Decode the instruction at `ip`.

    Reads the opcode word and the operand words its OPERANDS entry expects.
    Branch target words are returned as Deferred and classified only when
    the branch is taken.
    Raises UnknownOpcodeError, IllegalWordError, ExpectedRegisterError or
    MemoryAccessError; each error carries ip and the offending word.
    """
    raw = _fetch(memory, ip)
    if raw >= ILLEGAL_MIN:
        err = f"illegal value {raw} at {ip}"
        raise IllegalWordError(err, ip=ip, word=raw)
    try:
        opcode = OpCode(raw)
    except ValueError as e:
        err = f"unknown opcode {raw}"
        raise UnknownOpcodeError(err, opcode=raw, ip=ip, word=raw) from e

    operands: list[Operand] = []
    for offset, kind in enumerate(OPERANDS[opcode], start=1):
        addr = ip + offset
        word = _fetch(memory, addr)
        if kind is TARGET:
            operands.append(Deferred(word, addr))
            continue
        try:
            operand = classify_word(word, addr)
        except VMError as e:
            raise e.attach(opcode, ip) from None
        if kind is REG and not isinstance(operand, Register):
            err = f"expected register, got literal {word} at {addr}"
            raise ExpectedRegisterError(err, opcode=opcode, ip=ip, word=word)
        operands.append(operand)
    return Instruction(ip, opcode, tuple(operands))


def _format_operand(operand: Operand) -> str:
    if isinstance(operand, Deferred):
        operand = classify_word(operand.word) if operand.word < ILLEGAL_MIN else Literal(operand.word)
    if isinstance(operand, Register):
        return f"r{operand.index}"
    return str(operand.value)


def mnemonic(instr: Instruction) -> str:
    """Get instruction mnemonic for log lines."""
    name = instr.opcode.name.lower()
    if not instr.operands:
        return name
    return name + " " + " ".join(_format_operand(o) for o in instr.operands)


# --- program image ---
def load_image(blob: bytes) -> list[int]:
    """Pair bytes little-endian into 16-bit words. An odd trailing byte is dropped."""
    count = len(blob) // WORD_SIZE
    return list(struct.unpack(f"<{count}H", blob[: count * WORD_SIZE]))


def encode_image(words: list[int]) -> bytes:
    """Encode words as a little-endian program image."""
    return struct.pack(f"<{len(words)}H", *words)


def read_program(path: str | Path) -> list[int]:
    """Read a program image file into a list of words."""
    return load_image(Path(path).read_bytes())
