"""Subroutines and the heuristics identifying their roles.

The BioWare compiler lays every script out the same way.  Execution starts in
``_start``, which calls the global variable initialiser ``_global`` when the
script declares globals and ``main`` (or ``StartingConditional``) otherwise.
``_global`` sets up its frame with ``SAVEBP``, calls ``main`` and tears the
frame down again.  :func:`identify_subroutine_types` recognises that layout
from the call graph alone.  When more than one subroutine looks like a global
initialiser the first one is kept and the ambiguity is reported, the heuristic
never guesses beyond that.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

from .constants import Opcode
from .instruction import Instruction

if TYPE_CHECKING:  # pragma: no cover
    from .block import Block


logger = logging.getLogger(__name__)


class SubRoutineType(Enum):
    NONE = "none"
    START = "start"
    GLOBAL = "global"
    MAIN = "main"
    STORE_STATE = "store-state"


@dataclass(eq=False)
class SubRoutine:
    """All blocks reachable from one call target."""

    address: int
    type: SubRoutineType = SubRoutineType.NONE
    entry: Optional["Block"] = field(default=None, repr=False)
    blocks: List["Block"] = field(default_factory=list, repr=False)
    callers: List[Instruction] = field(default_factory=list, repr=False)

    @property
    def name(self) -> str:
        if self.type is SubRoutineType.START:
            return "_start"
        if self.type is SubRoutineType.GLOBAL:
            return "_global"
        if self.type is SubRoutineType.MAIN:
            return "main"
        if self.type is SubRoutineType.STORE_STATE:
            return f"sta_{self.address:08X}"
        return f"sub_{self.address:08X}"

    def instructions(self) -> List[Instruction]:
        return sorted(
            (instruction for block in self.blocks for instruction in block.instructions),
            key=lambda instruction: instruction.address,
        )

    def exits(self) -> List["Block"]:
        """Blocks that return to the caller."""

        return [
            block
            for block in self.blocks
            if block.instructions and block.instructions[-1].opcode is Opcode.RETN
        ]

    def calls(self) -> List[Tuple[Instruction, int]]:
        """JSR instructions of this subroutine and their destinations, in address order."""

        return [
            (instruction, instruction.branches[0].address)
            for instruction in self.instructions()
            if instruction.opcode is Opcode.JSR and instruction.branches
        ]

    def find_opcode(self, opcode: Opcode) -> Optional[Instruction]:
        for instruction in self.instructions():
            if instruction.opcode is opcode:
                return instruction
        return None


@dataclass(frozen=True)
class SubRoutineRoles:
    """Outcome of :func:`identify_subroutine_types`."""

    start: Optional[SubRoutine] = None
    global_: Optional[SubRoutine] = None
    main: Optional[SubRoutine] = None
    multiple_global: bool = False


def identify_subroutine_types(subroutines: Sequence[SubRoutine]) -> SubRoutineRoles:
    """Find the ``_start``, ``_global`` and ``main`` subroutines.

    Only looks at the finished call graph and does not modify anything, use
    :func:`apply_subroutine_roles` to tag the subroutines.
    """

    if not subroutines:
        return SubRoutineRoles()

    by_address = {sub.address: sub for sub in subroutines}
    start = min(subroutines, key=lambda sub: sub.address)

    candidates = [
        sub
        for sub in sorted(subroutines, key=lambda sub: sub.address)
        if sub is not start
        and sub.type is not SubRoutineType.STORE_STATE
        and sub.find_opcode(Opcode.SAVEBP) is not None
    ]
    global_ = candidates[0] if candidates else None
    multiple_global = len(candidates) > 1

    main: Optional[SubRoutine] = None
    if global_ is not None:
        savebp = global_.find_opcode(Opcode.SAVEBP)
        for instruction, target in global_.calls():
            if instruction.address > savebp.address:
                main = by_address.get(target)
                break
        if main is None:
            # Some compilers call main from _start right after _global.
            targets = [target for _, target in start.calls()]
            if global_.address in targets:
                following = targets[targets.index(global_.address) + 1 :]
                if following:
                    main = by_address.get(following[0])
    else:
        calls = start.calls()
        if len(calls) == 1:
            main = by_address.get(calls[0][1])

    if main is start or main is global_:
        main = None

    return SubRoutineRoles(start=start, global_=global_, main=main, multiple_global=multiple_global)


def apply_subroutine_roles(roles: SubRoutineRoles) -> None:
    if roles.start is not None:
        roles.start.type = SubRoutineType.START
    if roles.global_ is not None:
        roles.global_.type = SubRoutineType.GLOBAL
    if roles.main is not None:
        roles.main.type = SubRoutineType.MAIN
    if roles.multiple_global:
        logger.warning(
            "more than one candidate for the global initialiser, using 0x%08X",
            roles.global_.address,
        )
