"""Loading of compiled NWScript (``.ncs``) files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, Dict, List, Mapping, Optional, Sequence

from .actions import ActionSignature
from .block import Block, construct_blocks, find_dead_block_edges, find_unreachable_blocks
from .constants import HEADER_SIZE, NCS_MAGIC, SCRIPT_SIZE_OPCODE
from .instruction import (
    AddressType,
    Instruction,
    InstructionStore,
    ScriptParseError,
    decode_instructions,
    link_branches,
)
from .stack import StackAnalysis, StackAnalyzer
from .subroutine import (
    SubRoutine,
    SubRoutineType,
    apply_subroutine_roles,
    identify_subroutine_types,
)


logger = logging.getLogger(__name__)


class NCSFile:
    """Instructions, blocks and subroutines of one compiled script.

    Everything except the stack analysis is built in the constructor, in the
    order decode, link, build blocks, find dead edges, classify subroutines.
    Any structural problem raises :class:`ScriptParseError` and no object is
    produced.  Afterwards the structures are never modified again.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self._size = 0
        self._instructions = InstructionStore()
        self._blocks: List[Block] = []
        self._subroutines: List[SubRoutine] = []
        self._start: Optional[SubRoutine] = None
        self._global: Optional[SubRoutine] = None
        self._main: Optional[SubRoutine] = None
        self._multiple_global = False
        self._stack_analysis: Optional[StackAnalysis] = None

        self._load(stream.read())

    @classmethod
    def load(cls, path: Path) -> "NCSFile":
        with path.open("rb") as stream:
            return cls(stream)

    # ------------------------------------------------------------------
    # construction
    # ------------------------------------------------------------------
    def _load(self, data: bytes) -> None:
        if len(data) < HEADER_SIZE:
            raise ScriptParseError(f"stream of {len(data)} bytes is too short for an NCS header")
        if data[: len(NCS_MAGIC)] != NCS_MAGIC:
            raise ScriptParseError(f"not an NCS V1.0 file (magic {data[:len(NCS_MAGIC)]!r})")

        marker = data[len(NCS_MAGIC)]
        if marker != SCRIPT_SIZE_OPCODE:
            raise ScriptParseError(
                f"script size opcode is 0x{marker:02X}, expected 0x{SCRIPT_SIZE_OPCODE:02X}",
                len(NCS_MAGIC),
            )
        size = int.from_bytes(data[len(NCS_MAGIC) + 1 : HEADER_SIZE], "big")
        if size > len(data):
            raise ScriptParseError(f"script size {size} exceeds stream size {len(data)}")
        if size < HEADER_SIZE:
            raise ScriptParseError(f"script size {size} is smaller than the header")
        if size < len(data):
            logger.warning("script size %d is smaller than stream size %d", size, len(data))
        self._size = size

        self._parse(data, size)
        link_branches(self._instructions)
        self._find_blocks()
        self._identify_subroutine_types()

    def _parse(self, data: bytes, size: int) -> None:
        for instruction in decode_instructions(data, HEADER_SIZE, size):
            self._instructions.append(instruction)
        if HEADER_SIZE + self._instructions.size != size:
            raise ScriptParseError(
                f"instructions cover {self._instructions.size} bytes, "
                f"script size announces {size - HEADER_SIZE}"
            )

    def _find_blocks(self) -> None:
        if not self._instructions:
            return

        roots: Dict[int, SubRoutine] = {}
        entry = self._instructions[0].address
        roots[entry] = SubRoutine(entry)
        for instruction in self._instructions:
            if instruction.address_type is AddressType.SUBROUTINE:
                roots.setdefault(instruction.address, SubRoutine(instruction.address))
            elif instruction.address_type is AddressType.STORE_STATE:
                roots.setdefault(
                    instruction.address,
                    SubRoutine(instruction.address, SubRoutineType.STORE_STATE),
                )

        blocks = construct_blocks(self._instructions, roots)
        find_dead_block_edges(blocks, self._instructions[0].block)

        self._blocks = sorted(blocks, key=lambda block: block.address)
        for subroutine in roots.values():
            subroutine.blocks.sort(key=lambda block: block.address)
        self._subroutines = [roots[address] for address in sorted(roots)]

    def _identify_subroutine_types(self) -> None:
        roles = identify_subroutine_types(self._subroutines)
        apply_subroutine_roles(roles)
        self._start = roles.start
        self._global = roles.global_
        self._main = roles.main
        self._multiple_global = roles.multiple_global

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    @property
    def size(self) -> int:
        """Size of the script in bytes, header included."""

        return self._size

    @property
    def instructions(self) -> Sequence[Instruction]:
        return self._instructions

    @property
    def blocks(self) -> Sequence[Block]:
        return tuple(self._blocks)

    @property
    def root_block(self) -> Optional[Block]:
        """The block execution starts in, ``None`` for an empty script."""

        if not self._instructions:
            return None
        return self._instructions[0].block

    @property
    def subroutines(self) -> Sequence[SubRoutine]:
        return tuple(self._subroutines)

    @property
    def start_subroutine(self) -> Optional[SubRoutine]:
        return self._start

    @property
    def global_subroutine(self) -> Optional[SubRoutine]:
        return self._global

    @property
    def main_subroutine(self) -> Optional[SubRoutine]:
        return self._main

    @property
    def has_multiple_global(self) -> bool:
        return self._multiple_global

    def find_instruction(self, address: int) -> Optional[Instruction]:
        return self._instructions.find(address)

    def find_block(self, address: int) -> Optional[Block]:
        """Return the block containing the instruction at ``address``."""

        instruction = self._instructions.find(address)
        return instruction.block if instruction is not None else None

    def unreachable_blocks(self) -> List[Block]:
        return find_unreachable_blocks(self._blocks, self.root_block)

    # ------------------------------------------------------------------
    # stack analysis
    # ------------------------------------------------------------------
    def analyze_stack(
        self, actions: Optional[Mapping[int, ActionSignature]] = None
    ) -> StackAnalysis:
        """Simulate the script stack.

        Runs once, later calls return the first result.  A failed analysis is
        reported through :attr:`StackAnalysis.success`, never by raising.
        """

        if self._stack_analysis is None:
            self._stack_analysis = StackAnalyzer(self._start, actions).analyze()
        return self._stack_analysis

    @property
    def has_stack_analysis(self) -> bool:
        return self._stack_analysis is not None and self._stack_analysis.success

    @property
    def stack_analysis(self) -> Optional[StackAnalysis]:
        return self._stack_analysis
