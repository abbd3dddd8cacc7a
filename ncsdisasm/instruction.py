"""Decoding and linking of NCS instructions.

The decoder turns the raw bytecode into :class:`Instruction` objects, strictly
in increasing address order.  Every instruction reports the number of bytes it
occupies and the sizes have to add up to the script size announced in the
header: a mismatch means the stream is truncated or malformed and the script is
rejected outright.

Once the whole stream is decoded :func:`link_branches` resolves jump, call and
state destinations to the instructions living at those addresses.  Anything
that points into the void is rejected as well, later stages rely on every
destination being a real instruction.
"""

from __future__ import annotations

import struct
from bisect import bisect_left
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence, Tuple, Union

from .constants import (
    CONDITIONAL_JUMP_OPCODES,
    JUMP_OPCODES,
    NO_FOLLOWER_OPCODES,
    InstructionType,
    Opcode,
    type_suffix,
)

if TYPE_CHECKING:  # pragma: no cover
    from .block import Block


class ScriptParseError(ValueError):
    """Raised when the bytecode cannot be turned into a consistent CFG."""

    def __init__(self, message: str, address: Optional[int] = None) -> None:
        if address is not None:
            message = f"0x{address:08X}: {message}"
        super().__init__(message)
        self.address = address


class AddressType(Enum):
    """What kind of control flow leads to an instruction's address."""

    NONE = 0
    JUMP_LABEL = 1
    STORE_STATE = 2
    SUBROUTINE = 3


Constant = Union[int, float, str, None]


@dataclass(eq=False)
class Instruction:
    """A single decoded instruction.

    ``follower``, ``branches`` and ``address_type`` are filled in by the
    branch linker, ``block`` by the block builder.
    """

    address: int
    opcode: Opcode
    type: int
    size: int
    args: Tuple[int, ...] = ()
    constant: Constant = None
    follower: Optional["Instruction"] = field(default=None, repr=False)
    branches: List["Instruction"] = field(default_factory=list, repr=False)
    address_type: AddressType = AddressType.NONE
    block: Optional["Block"] = field(default=None, repr=False)

    @property
    def end(self) -> int:
        return self.address + self.size

    @property
    def mnemonic(self) -> str:
        if self.opcode is Opcode.STORESTATE:
            return self.opcode.name
        return self.opcode.name + type_suffix(self.type)

    def is_jump(self) -> bool:
        return self.opcode in JUMP_OPCODES

    def is_conditional(self) -> bool:
        return self.opcode in CONDITIONAL_JUMP_OPCODES

    def format(self) -> str:
        operands: List[str] = [str(arg) for arg in self.args]
        if self.constant is not None:
            operands.append(repr(self.constant))
        if self.branches:
            operands.append("-> " + ", ".join(f"0x{b.address:08X}" for b in self.branches))
        text = f"{self.address:08X}: {self.mnemonic:<14}"
        if operands:
            text += " " + " ".join(operands)
        return text.rstrip()


def _read(data: bytes, offset: int, length: int, end: int, address: int) -> bytes:
    if offset + length > end:
        raise ScriptParseError("instruction truncated by the end of the script", address)
    return data[offset : offset + length]


def _int32(raw: bytes) -> int:
    return int.from_bytes(raw, "big", signed=True)


def read_instruction(data: bytes, address: int, end: Optional[int] = None) -> Instruction:
    """Decode the instruction starting at ``address`` within ``data``.

    ``end`` bounds the decodable region (defaults to ``len(data)``).
    """

    if end is None:
        end = len(data)

    opcode_byte, type_byte = _read(data, address, 2, end, address)
    try:
        opcode = Opcode(opcode_byte)
    except ValueError:
        raise ScriptParseError(f"invalid opcode 0x{opcode_byte:02X}", address) from None

    pos = address + 2
    args: Tuple[int, ...] = ()
    constant: Constant = None

    if opcode in (Opcode.CPDOWNSP, Opcode.CPTOPSP, Opcode.CPDOWNBP, Opcode.CPTOPBP):
        raw = _read(data, pos, 6, end, address)
        args = (_int32(raw[:4]), int.from_bytes(raw[4:], "big"))
        pos += 6
    elif opcode is Opcode.CONST:
        if type_byte in (InstructionType.INT, InstructionType.OBJECT):
            raw = _read(data, pos, 4, end, address)
            signed = type_byte == InstructionType.INT
            constant = int.from_bytes(raw, "big", signed=signed)
            pos += 4
        elif type_byte == InstructionType.FLOAT:
            constant = struct.unpack(">f", _read(data, pos, 4, end, address))[0]
            pos += 4
        elif type_byte == InstructionType.STRING:
            length = int.from_bytes(_read(data, pos, 2, end, address), "big")
            pos += 2
            constant = _read(data, pos, length, end, address).decode("latin-1")
            pos += length
        else:
            raise ScriptParseError(f"invalid CONST type 0x{type_byte:02X}", address)
    elif opcode is Opcode.ACTION:
        raw = _read(data, pos, 3, end, address)
        args = (int.from_bytes(raw[:2], "big"), raw[2])
        pos += 3
    elif opcode in (Opcode.EQ, Opcode.NEQ) and type_byte == InstructionType.STRUCT_STRUCT:
        args = (int.from_bytes(_read(data, pos, 2, end, address), "big"),)
        pos += 2
    elif opcode in (
        Opcode.MOVSP,
        Opcode.JMP,
        Opcode.JSR,
        Opcode.JZ,
        Opcode.JNZ,
        Opcode.DECISP,
        Opcode.INCISP,
        Opcode.DECIBP,
        Opcode.INCIBP,
    ):
        args = (_int32(_read(data, pos, 4, end, address)),)
        pos += 4
    elif opcode is Opcode.DESTRUCT:
        raw = _read(data, pos, 6, end, address)
        args = tuple(int.from_bytes(raw[i : i + 2], "big", signed=True) for i in (0, 2, 4))
        pos += 6
    elif opcode is Opcode.STORESTATE:
        raw = _read(data, pos, 8, end, address)
        # The type byte doubles as the offset of the stored continuation.
        args = (type_byte, int.from_bytes(raw[:4], "big"), int.from_bytes(raw[4:], "big"))
        pos += 8

    return Instruction(
        address=address,
        opcode=opcode,
        type=type_byte,
        size=pos - address,
        args=args,
        constant=constant,
    )


def decode_instructions(data: bytes, start: int, end: int) -> List[Instruction]:
    """Decode every instruction in ``data[start:end]``."""

    instructions: List[Instruction] = []
    address = start
    while address < end:
        instruction = read_instruction(data, address, end)
        instructions.append(instruction)
        address += instruction.size

    return instructions


class InstructionStore(Sequence[Instruction]):
    """Address ordered, append-only collection of instructions."""

    def __init__(self, instructions: Sequence[Instruction] = ()) -> None:
        self._instructions: List[Instruction] = []
        self._addresses: List[int] = []
        for instruction in instructions:
            self.append(instruction)

    def append(self, instruction: Instruction) -> None:
        if self._addresses and instruction.address <= self._addresses[-1]:
            raise ScriptParseError("instructions must be stored in address order", instruction.address)
        self._instructions.append(instruction)
        self._addresses.append(instruction.address)

    def __len__(self) -> int:
        return len(self._instructions)

    def __getitem__(self, index):  # type: ignore[override]
        return self._instructions[index]

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self._instructions)

    def _locate(self, address: int) -> Optional[int]:
        index = bisect_left(self._addresses, address)
        if index < len(self._addresses) and self._addresses[index] == address:
            return index
        return None

    def find(self, address: int) -> Optional[Instruction]:
        """Return the instruction at ``address`` or ``None``."""

        index = self._locate(address)
        if index is None:
            return None
        return self._instructions[index]

    @property
    def size(self) -> int:
        return sum(instruction.size for instruction in self._instructions)


def _tag(instruction: Instruction, address_type: AddressType) -> None:
    if address_type.value > instruction.address_type.value:
        instruction.address_type = address_type


def link_branches(store: InstructionStore) -> None:
    """Resolve followers and branch destinations of every instruction."""

    for index, instruction in enumerate(store):
        nxt = store[index + 1] if index + 1 < len(store) else None
        opcode = instruction.opcode

        if opcode not in NO_FOLLOWER_OPCODES:
            instruction.follower = nxt

        if opcode in (Opcode.JZ, Opcode.JNZ, Opcode.JSR, Opcode.STORESTATE) and nxt is None:
            raise ScriptParseError(
                f"{instruction.mnemonic} is not followed by another instruction",
                instruction.address,
            )

        if not instruction.is_jump() and opcode not in (Opcode.JSR, Opcode.STORESTATE):
            continue

        # STORESTATE keeps its continuation offset in args[0] as well.
        target_address = instruction.address + instruction.args[0]

        target = store.find(target_address)
        if target is None:
            raise ScriptParseError(
                f"{instruction.mnemonic} destination 0x{target_address:08X} is not an instruction",
                instruction.address,
            )

        instruction.branches = [target]
        if opcode is Opcode.JSR:
            _tag(target, AddressType.SUBROUTINE)
        elif opcode is Opcode.STORESTATE:
            _tag(target, AddressType.STORE_STATE)
        else:
            _tag(target, AddressType.JUMP_LABEL)
