"""Opcode and instruction type tables for compiled NWScript (NCS)."""

from __future__ import annotations

from enum import IntEnum
from typing import Dict, FrozenSet


NCS_MAGIC = b"NCS V1.0"
SCRIPT_SIZE_OPCODE = 0x42
HEADER_SIZE = len(NCS_MAGIC) + 1 + 4

# A stack cell is 4 bytes wide, every offset and size in the bytecode is a
# multiple of this.
CELL_SIZE = 4


class Opcode(IntEnum):
    CPDOWNSP = 0x01
    RSADD = 0x02
    CPTOPSP = 0x03
    CONST = 0x04
    ACTION = 0x05
    LOGAND = 0x06
    LOGOR = 0x07
    INCOR = 0x08
    EXCOR = 0x09
    BOOLAND = 0x0A
    EQ = 0x0B
    NEQ = 0x0C
    GEQ = 0x0D
    GT = 0x0E
    LT = 0x0F
    LEQ = 0x10
    SHLEFT = 0x11
    SHRIGHT = 0x12
    USHRIGHT = 0x13
    ADD = 0x14
    SUB = 0x15
    MUL = 0x16
    DIV = 0x17
    MOD = 0x18
    NEG = 0x19
    COMP = 0x1A
    MOVSP = 0x1B
    STORESTATEALL = 0x1C
    JMP = 0x1D
    JSR = 0x1E
    JZ = 0x1F
    RETN = 0x20
    DESTRUCT = 0x21
    NOTI = 0x22
    DECISP = 0x23
    INCISP = 0x24
    JNZ = 0x25
    CPDOWNBP = 0x26
    CPTOPBP = 0x27
    DECIBP = 0x28
    INCIBP = 0x29
    SAVEBP = 0x2A
    RESTOREBP = 0x2B
    STORESTATE = 0x2C
    NOP = 0x2D


class InstructionType(IntEnum):
    """Operand type byte following the opcode."""

    NONE = 0x00
    STACK = 0x01
    INT = 0x03
    FLOAT = 0x04
    STRING = 0x05
    OBJECT = 0x06
    ENGINE0 = 0x10
    ENGINE1 = 0x11
    ENGINE2 = 0x12
    ENGINE3 = 0x13
    ENGINE4 = 0x14
    ENGINE5 = 0x15
    ENGINE6 = 0x16
    ENGINE7 = 0x17
    ENGINE8 = 0x18
    ENGINE9 = 0x19
    INT_INT = 0x20
    FLOAT_FLOAT = 0x21
    OBJECT_OBJECT = 0x22
    STRING_STRING = 0x23
    STRUCT_STRUCT = 0x24
    INT_FLOAT = 0x25
    FLOAT_INT = 0x26
    ENGINE0_ENGINE0 = 0x30
    ENGINE1_ENGINE1 = 0x31
    ENGINE2_ENGINE2 = 0x32
    ENGINE3_ENGINE3 = 0x33
    ENGINE4_ENGINE4 = 0x34
    ENGINE5_ENGINE5 = 0x35
    ENGINE6_ENGINE6 = 0x36
    ENGINE7_ENGINE7 = 0x37
    ENGINE8_ENGINE8 = 0x38
    ENGINE9_ENGINE9 = 0x39
    VECTOR_VECTOR = 0x3A
    VECTOR_FLOAT = 0x3B
    FLOAT_VECTOR = 0x3C


_TYPE_SUFFIXES: Dict[InstructionType, str] = {
    InstructionType.INT: "I",
    InstructionType.FLOAT: "F",
    InstructionType.STRING: "S",
    InstructionType.OBJECT: "O",
    InstructionType.INT_INT: "II",
    InstructionType.FLOAT_FLOAT: "FF",
    InstructionType.OBJECT_OBJECT: "OO",
    InstructionType.STRING_STRING: "SS",
    InstructionType.STRUCT_STRUCT: "TT",
    InstructionType.INT_FLOAT: "IF",
    InstructionType.FLOAT_INT: "FI",
    InstructionType.VECTOR_VECTOR: "VV",
    InstructionType.VECTOR_FLOAT: "VF",
    InstructionType.FLOAT_VECTOR: "FV",
}
for _index in range(10):
    _TYPE_SUFFIXES[InstructionType(InstructionType.ENGINE0 + _index)] = f"E{_index}"
    _TYPE_SUFFIXES[InstructionType(InstructionType.ENGINE0_ENGINE0 + _index)] = (
        f"E{_index}E{_index}"
    )


def type_suffix(type_byte: int) -> str:
    """Return the mnemonic suffix for ``type_byte`` (empty when it has none)."""

    try:
        return _TYPE_SUFFIXES.get(InstructionType(type_byte), "")
    except ValueError:
        return ""


def is_engine_pair(type_byte: int) -> bool:
    return InstructionType.ENGINE0_ENGINE0 <= type_byte <= InstructionType.ENGINE9_ENGINE9


JUMP_OPCODES: FrozenSet[Opcode] = frozenset({Opcode.JMP, Opcode.JZ, Opcode.JNZ})
CONDITIONAL_JUMP_OPCODES: FrozenSet[Opcode] = frozenset({Opcode.JZ, Opcode.JNZ})

# Instructions after which control does not continue with the next address.
NO_FOLLOWER_OPCODES: FrozenSet[Opcode] = frozenset({Opcode.JMP, Opcode.RETN})

# Instructions that end a basic block.
BLOCK_END_OPCODES: FrozenSet[Opcode] = frozenset(
    {Opcode.JMP, Opcode.JZ, Opcode.JNZ, Opcode.JSR, Opcode.RETN, Opcode.STORESTATE}
)
