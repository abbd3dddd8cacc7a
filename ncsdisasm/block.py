"""Basic blocks and control-flow graph construction.

Blocks are created by walking the instruction stream from every subroutine
entry point.  A walk appends instructions to the current block until it hits an
instruction that transfers control, or an address that already starts a
block.  Branch destinations are looked up in the address -> block map, which is
the only record of what has been visited: loops and arbitrary backward jumps
therefore terminate without any recursion.

Branching into the middle of a block that has already been walked splits that
block.  The new tail block takes over the tail instructions and all outgoing
edges, and the children's parent lists are repointed to it, so no edge ever
refers to a block that no longer holds the instructions it claims to.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .constants import BLOCK_END_OPCODES, CELL_SIZE, InstructionType, Opcode
from .instruction import Instruction, InstructionStore

if TYPE_CHECKING:  # pragma: no cover
    from .subroutine import SubRoutine


logger = logging.getLogger(__name__)


class EdgeType(Enum):
    """How a block leads into one of its children."""

    UNCONDITIONAL = "unconditional"
    CONDITIONAL_TRUE = "conditional-true"
    CONDITIONAL_FALSE = "conditional-false"
    FUNCTION_CALL = "function-call"
    FUNCTION_RETURN = "function-return"
    STORE_STATE = "store-state"
    DEAD = "dead"


_CONDITIONAL_EDGES = frozenset({EdgeType.CONDITIONAL_TRUE, EdgeType.CONDITIONAL_FALSE})
_SUBROUTINE_EDGES = frozenset(
    {EdgeType.FUNCTION_CALL, EdgeType.FUNCTION_RETURN, EdgeType.STORE_STATE}
)


@dataclass(eq=False)
class Block:
    """A run of instructions with a single entry and a single exit."""

    address: int
    instructions: List[Instruction] = field(default_factory=list, repr=False)
    parents: List["Block"] = field(default_factory=list, repr=False)
    children: List["Block"] = field(default_factory=list, repr=False)
    children_types: List[EdgeType] = field(default_factory=list)
    subroutine: Optional["SubRoutine"] = field(default=None, repr=False)

    @property
    def end(self) -> int:
        if not self.instructions:
            return self.address
        return self.instructions[-1].end

    @property
    def last(self) -> Optional[Instruction]:
        return self.instructions[-1] if self.instructions else None

    def has_conditional_children(self) -> bool:
        """Does this block branch into two live conditional arms?"""

        if EdgeType.DEAD in self.children_types:
            return False
        return any(t in _CONDITIONAL_EDGES for t in self.children_types)

    def has_unconditional_children(self) -> bool:
        """Does this block always continue with the same child?

        A two-way branch that lost one arm to dead edge analysis counts as
        unconditional.
        """

        types = self.children_types
        if len(types) == 1:
            return types[0] is EdgeType.UNCONDITIONAL
        if len(types) == 2 and types.count(EdgeType.DEAD) == 1:
            live = types[0] if types[1] is EdgeType.DEAD else types[1]
            return live is EdgeType.UNCONDITIONAL or live in _CONDITIONAL_EDGES
        return False

    def _edges(self, include_subroutines: bool) -> Iterable[Tuple["Block", EdgeType]]:
        for child, edge_type in zip(self.children, self.children_types):
            if not include_subroutines and edge_type in _SUBROUTINE_EDGES:
                continue
            yield child, edge_type

    def get_earlier_children(self, include_subroutines: bool = False) -> List["Block"]:
        """Children jumped to backwards, including a jump to this block itself."""

        return [c for c, _ in self._edges(include_subroutines) if c.address <= self.address]

    def get_later_children(self, include_subroutines: bool = False) -> List["Block"]:
        """Children jumped to forwards."""

        return [c for c, _ in self._edges(include_subroutines) if c.address > self.address]

    def get_earlier_parents(self, include_subroutines: bool = False) -> List["Block"]:
        """Parents that jump forward into this block."""

        return [
            p for p in self._parent_edges(include_subroutines) if p.address < self.address
        ]

    def get_later_parents(self, include_subroutines: bool = False) -> List["Block"]:
        """Parents that jump backward into this block."""

        return [
            p for p in self._parent_edges(include_subroutines) if p.address >= self.address
        ]

    def _parent_edges(self, include_subroutines: bool) -> List["Block"]:
        result: List[Block] = []
        for parent in self.parents:
            if parent in result:
                continue
            if include_subroutines or any(
                child is self and edge_type not in _SUBROUTINE_EDGES
                for child, edge_type in zip(parent.children, parent.children_types)
            ):
                result.append(parent)
        return result

    def describe(self) -> str:
        edges = ", ".join(
            f"{edge_type.value}->0x{child.address:08X}"
            for child, edge_type in zip(self.children, self.children_types)
        )
        return (
            f"block 0x{self.address:08X}-0x{self.end:08X} "
            f"instructions={len(self.instructions)} children=[{edges}]"
        )


def link_blocks(parent: Block, child: Block, edge_type: EdgeType) -> None:
    parent.children.append(child)
    parent.children_types.append(edge_type)
    child.parents.append(parent)


@dataclass(frozen=True)
class CallSite:
    """A JSR together with the block control returns to."""

    instruction: Instruction
    callee: "SubRoutine"
    return_block: Block


class BlockBuilder:
    """Partition an instruction store into interconnected blocks.

    ``subroutines`` maps every subroutine entry address to its (still empty)
    :class:`SubRoutine`.  Walks start from each entry in address order, the
    first entry being the script's entry point.
    """

    def __init__(
        self,
        instructions: InstructionStore,
        subroutines: Dict[int, "SubRoutine"],
    ) -> None:
        self._instructions = instructions
        self._subroutines = subroutines
        self._by_address: Dict[int, Block] = {}
        self._pending: Deque[Block] = deque()
        self._call_sites: List[CallSite] = []
        self.blocks: List[Block] = []

    def build(self) -> List[Block]:
        for address in sorted(self._subroutines):
            subroutine = self._subroutines[address]
            entry = self._get_block(address, subroutine)
            subroutine.entry = entry
            self._drain()

        # Code no walk reaches still has to end up in a block.
        for instruction in self._instructions:
            if instruction.block is None and instruction.address not in self._by_address:
                self._get_block(instruction.address, None)
                self._drain()

        self._link_returns()
        logger.debug(
            "constructed %d blocks for %d instructions", len(self.blocks), len(self._instructions)
        )
        return self.blocks

    def _drain(self) -> None:
        while self._pending:
            self._walk(self._pending.popleft())

    def _get_block(self, address: int, subroutine: Optional["SubRoutine"]) -> Block:
        block = self._by_address.get(address)
        if block is not None:
            return block

        instruction = self._instructions.find(address)
        if instruction is None:
            raise ValueError(f"no instruction at 0x{address:08X}")

        if instruction.block is not None:
            return self._split_block(instruction.block, instruction)

        if address in self._subroutines:
            subroutine = self._subroutines[address]
        block = Block(address, subroutine=subroutine)
        self._register(block)
        self._pending.append(block)
        return block

    def _register(self, block: Block) -> None:
        self._by_address[block.address] = block
        self.blocks.append(block)
        if block.subroutine is not None:
            block.subroutine.blocks.append(block)

    def _split_block(self, block: Block, instruction: Instruction) -> Block:
        index = block.instructions.index(instruction)
        tail = Block(instruction.address, subroutine=block.subroutine)
        tail.instructions = block.instructions[index:]
        del block.instructions[index:]
        for moved in tail.instructions:
            moved.block = tail

        tail.children, block.children = block.children, []
        tail.children_types, block.children_types = block.children_types, []
        for child in set(tail.children):
            child.parents = [tail if parent is block else parent for parent in child.parents]

        self._register(tail)
        link_blocks(block, tail, EdgeType.UNCONDITIONAL)
        return tail

    def _stops_walk(self, address: int) -> bool:
        return address in self._by_address or address in self._subroutines

    def _walk(self, block: Block) -> None:
        instruction = self._instructions.find(block.address)
        while instruction is not None:
            instruction.block = block
            block.instructions.append(instruction)

            if instruction.opcode in BLOCK_END_OPCODES:
                self._branch(block, instruction)
                return

            follower = instruction.follower
            if follower is None:
                logger.warning(
                    "control flow runs off the end of the script after 0x%08X",
                    instruction.address,
                )
                return
            if self._stops_walk(follower.address):
                child = self._get_block(follower.address, block.subroutine)
                link_blocks(block, child, EdgeType.UNCONDITIONAL)
                return
            instruction = follower

    def _branch(self, block: Block, instruction: Instruction) -> None:
        opcode = instruction.opcode
        subroutine = block.subroutine

        successors: List[Tuple[int, EdgeType]] = []
        if opcode is Opcode.JMP:
            successors.append((instruction.branches[0].address, EdgeType.UNCONDITIONAL))
        elif opcode in (Opcode.JZ, Opcode.JNZ):
            successors.append((instruction.branches[0].address, EdgeType.CONDITIONAL_TRUE))
            successors.append((instruction.follower.address, EdgeType.CONDITIONAL_FALSE))
        elif opcode is Opcode.JSR:
            successors.append((instruction.branches[0].address, EdgeType.FUNCTION_CALL))
        elif opcode is Opcode.STORESTATE:
            successors.append((instruction.branches[0].address, EdgeType.STORE_STATE))
            successors.append((instruction.follower.address, EdgeType.UNCONDITIONAL))

        for address, edge_type in successors:
            child = self._get_block(address, subroutine)
            # A split may have moved the branching instruction to a new block.
            link_blocks(instruction.block, child, edge_type)

        if opcode is Opcode.JSR:
            callee = self._subroutines[instruction.branches[0].address]
            return_block = self._get_block(instruction.follower.address, subroutine)
            self._call_sites.append(CallSite(instruction, callee, return_block))

    def _link_returns(self) -> None:
        for site in self._call_sites:
            site.callee.callers.append(site.instruction)
            for exit_block in site.callee.exits():
                link_blocks(exit_block, site.return_block, EdgeType.FUNCTION_RETURN)


def construct_blocks(
    instructions: InstructionStore, subroutines: Dict[int, "SubRoutine"]
) -> List[Block]:
    """Build the control flow graph for ``instructions``."""

    return BlockBuilder(instructions, subroutines).build()


def find_parent_child_block(parent: Block, child: Block) -> Optional[int]:
    """Return the index of ``child`` within ``parent.children`` (``None`` if absent)."""

    for index, candidate in enumerate(parent.children):
        if candidate is child:
            return index
    return None


def get_parent_child_edge_type(parent: Block, child: Block) -> EdgeType:
    index = find_parent_child_block(parent, child)
    if index is None:
        raise ValueError(
            f"block 0x{child.address:08X} is not a child of block 0x{parent.address:08X}"
        )
    return parent.children_types[index]


def has_linear_path(block1: Block, block2: Block) -> bool:
    """Is ``block2`` reachable from ``block1`` through forward, local edges?

    Calls, returns, state captures and dead edges are not followed, neither
    are backward jumps.
    """

    visited: Set[int] = set()
    stack = [block1]
    while stack:
        block = stack.pop()
        if block is block2:
            return True
        if block.address in visited:
            continue
        visited.add(block.address)
        for child, edge_type in zip(block.children, block.children_types):
            if edge_type in _SUBROUTINE_EDGES or edge_type is EdgeType.DEAD:
                continue
            if child.address <= block.address:
                continue
            stack.append(child)
    return False


def get_next_block(blocks: Iterable[Block], block: Block) -> Optional[Block]:
    """Return the block with the next higher address."""

    following = [b for b in blocks if b.address > block.address]
    return min(following, key=lambda b: b.address, default=None)


def get_previous_block(blocks: Iterable[Block], block: Block) -> Optional[Block]:
    """Return the block with the next lower address."""

    preceding = [b for b in blocks if b.address < block.address]
    return max(preceding, key=lambda b: b.address, default=None)


def find_unreachable_blocks(blocks: Iterable[Block], root: Optional[Block]) -> List[Block]:
    """Return the blocks no live edge path from ``root`` leads to."""

    reached: Set[int] = set()
    if root is not None:
        pending = [root]
        while pending:
            block = pending.pop()
            if block.address in reached:
                continue
            reached.add(block.address)
            pending.extend(
                child
                for child, edge_type in zip(block.children, block.children_types)
                if edge_type is not EdgeType.DEAD
            )
    return sorted(
        (block for block in blocks if block.address not in reached), key=lambda b: b.address
    )


# --------------------------------------------------------------------------
# Dead edge analysis
# --------------------------------------------------------------------------

def _is_top_of_stack_copy(instruction: Instruction) -> bool:
    return instruction.opcode is Opcode.CPTOPSP and instruction.args == (-CELL_SIZE, CELL_SIZE)


def _jumper_opcode(block: Block) -> Optional[Opcode]:
    """Opcode of a block ending in ``CPTOPSP -4 4; JZ|JNZ``."""

    if len(block.instructions) < 2:
        return None
    copy, jump = block.instructions[-2:]
    if not _is_top_of_stack_copy(copy) or not jump.is_conditional():
        return None
    return jump.opcode


def _mark_dead(block: Block, edge_type: EdgeType) -> bool:
    changed = False
    for index, current in enumerate(block.children_types):
        if current is edge_type:
            block.children_types[index] = EdgeType.DEAD
            changed = True
    return changed


def _constant_condition(block: Block) -> bool:
    if len(block.instructions) < 2 or not block.has_conditional_children():
        return False
    constant, jump = block.instructions[-2:]
    if not jump.is_conditional():
        return False
    if constant.opcode is not Opcode.CONST or constant.type != InstructionType.INT:
        return False

    taken = (constant.constant == 0) == (jump.opcode is Opcode.JZ)
    dead = EdgeType.CONDITIONAL_FALSE if taken else EdgeType.CONDITIONAL_TRUE
    return _mark_dead(block, dead)


def _live_incoming(block: Block) -> List[Tuple[Block, EdgeType]]:
    incoming: List[Tuple[Block, EdgeType]] = []
    for parent in set(block.parents):
        for child, edge_type in zip(parent.children, parent.children_types):
            if child is block and edge_type is not EdgeType.DEAD:
                incoming.append((parent, edge_type))
    return incoming


def _repeated_test(block: Block) -> bool:
    if len(block.instructions) != 2 or not block.has_conditional_children():
        return False
    opcode = _jumper_opcode(block)
    if opcode is None:
        return False

    incoming = _live_incoming(block)
    if not incoming:
        return False
    for parent, edge_type in incoming:
        if edge_type is not EdgeType.CONDITIONAL_TRUE or _jumper_opcode(parent) is not opcode:
            return False
    return _mark_dead(block, EdgeType.CONDITIONAL_FALSE)


def _absorbed(block: Block) -> bool:
    if not block.parents or _live_incoming(block):
        return False
    changed = False
    for index, edge_type in enumerate(block.children_types):
        if edge_type is not EdgeType.DEAD:
            block.children_types[index] = EdgeType.DEAD
            changed = True
    return changed


_RULES = (_constant_condition, _repeated_test, _absorbed)
_ROOT_RULES = (_constant_condition,)


def find_dead_block_edges(blocks: Sequence[Block], root: Optional[Block] = None) -> int:
    """Mark edges that can never be taken as :attr:`EdgeType.DEAD`.

    ``root`` is the block execution starts in.  It is always entered, so only
    the constant condition rule applies to it.  Runs until no rule changes
    anything, so repeated calls are no-ops.  Returns the number of passes
    that changed at least one edge.
    """

    passes = 0
    changed = True
    while changed:
        changed = False
        for block in blocks:
            rules = _ROOT_RULES if block is root else _RULES
            for rule in rules:
                if rule(block):
                    logger.debug("%s: %s", rule.__name__.lstrip("_"), block.describe())
                    changed = True
        if changed:
            passes += 1
    return passes
