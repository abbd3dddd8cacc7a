"""Symbolic stack analysis over a finished control flow graph.

The analyser simulates the NWScript value stack one 4-byte cell at a time,
starting at ``_start`` with an empty stack and following every live edge.
Calls are followed into the callee with the caller's real stack, so the
callee's parameters and the return value slot reserved by the caller are the
same :class:`Variable` objects on both sides.  Once a subroutine has been
analysed its net stack effect and the types it wrote into caller cells are
remembered and replayed for every further call.

Every block is walked at most once.  Its progress is tracked with a
:class:`StackAnalyzeState` and the stack depth it was entered with; reaching a
block again with a different depth means the control flow does not agree on
the stack layout and the analysis gives up.  Giving up never touches the
control flow graph, it only leaves :attr:`StackAnalysis.success` unset.

How a single opcode changes the stack is spelled out in
:meth:`StackAnalyzer._apply`.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from .actions import ActionSignature, VariableType
from .block import Block, EdgeType
from .constants import CELL_SIZE, InstructionType, Opcode, is_engine_pair
from .instruction import Instruction
from .subroutine import SubRoutine


logger = logging.getLogger(__name__)


class StackAnalyzeState(Enum):
    NONE = "none"
    IN_PROGRESS = "in-progress"
    FINISHED = "finished"


class StackAnalysisError(ValueError):
    """The stack simulation hit something it cannot make sense of."""


@dataclass(eq=False)
class Variable:
    """A single stack cell created somewhere in the script."""

    id: int
    type: VariableType
    creator: Optional[Instruction] = field(default=None, repr=False)
    readers: List[Instruction] = field(default_factory=list, repr=False)
    writers: List[Instruction] = field(default_factory=list, repr=False)
    is_global: bool = False

    def unify(self, other: VariableType, instruction: Instruction) -> None:
        if other is VariableType.ANY or other is self.type:
            return
        if self.type is VariableType.ANY:
            self.type = other
            return
        raise StackAnalysisError(
            f"0x{instruction.address:08X}: {instruction.mnemonic} expects {other.value}, "
            f"variable {self.id} is {self.type.value}"
        )


class VariableSpace(Sequence[Variable]):
    """Every variable created during one analysis, indexed by id."""

    def __init__(self) -> None:
        self._variables: List[Variable] = []

    def create(self, type_: VariableType, creator: Optional[Instruction]) -> Variable:
        variable = Variable(len(self._variables), type_, creator)
        self._variables.append(variable)
        return variable

    def __getitem__(self, index):  # type: ignore[override]
        return self._variables[index]

    def __len__(self) -> int:
        return len(self._variables)

    def __iter__(self) -> Iterator[Variable]:
        return iter(self._variables)


Stack = List[Variable]


@dataclass(frozen=True)
class SubRoutineEffect:
    """What a call to a subroutine does to the caller's stack.

    ``delta`` is ``None`` for subroutines that never return.  ``writes`` maps
    cell offsets relative to the stack depth at the call (negative, i.e. cells
    owned by the caller) to the type the callee stored there.
    """

    delta: Optional[int]
    writes: Mapping[int, VariableType] = field(default_factory=dict)


@dataclass
class StackAnalysis:
    """Result of :meth:`StackAnalyzer.analyze`."""

    success: bool = False
    error: Optional[str] = None
    variables: VariableSpace = field(default_factory=VariableSpace)
    globals: List[Variable] = field(default_factory=list)
    block_states: Dict[int, StackAnalyzeState] = field(default_factory=dict)
    block_depths: Dict[int, int] = field(default_factory=dict)
    subroutine_effects: Dict[int, SubRoutineEffect] = field(default_factory=dict)

    def state_of(self, block: Block) -> StackAnalyzeState:
        return self.block_states.get(block.address, StackAnalyzeState.NONE)

    def depth_at(self, block: Block) -> Optional[int]:
        return self.block_depths.get(block.address)


@dataclass
class _Frame:
    subroutine: SubRoutine
    base: int
    writes: Dict[int, VariableType] = field(default_factory=dict)
    delta: Optional[int] = None


_SINGLE_TYPES: Dict[int, VariableType] = {
    InstructionType.INT: VariableType.INT,
    InstructionType.FLOAT: VariableType.FLOAT,
    InstructionType.STRING: VariableType.STRING,
    InstructionType.OBJECT: VariableType.OBJECT,
}
for _index in range(10):
    _SINGLE_TYPES[InstructionType.ENGINE0 + _index] = VariableType(f"engine{_index}")

_I = (VariableType.INT,)
_F = (VariableType.FLOAT,)
_S = (VariableType.STRING,)
_O = (VariableType.OBJECT,)
_V = (VariableType.FLOAT,) * 3

# type byte -> (left operand cells, right operand cells, arithmetic result cells)
_BINARY_OPERANDS: Dict[int, Tuple[Tuple[VariableType, ...], ...]] = {
    InstructionType.INT_INT: (_I, _I, _I),
    InstructionType.INT_FLOAT: (_I, _F, _F),
    InstructionType.FLOAT_INT: (_F, _I, _F),
    InstructionType.FLOAT_FLOAT: (_F, _F, _F),
    InstructionType.STRING_STRING: (_S, _S, _S),
    InstructionType.OBJECT_OBJECT: (_O, _O, ()),
    InstructionType.VECTOR_VECTOR: (_V, _V, _V),
    InstructionType.VECTOR_FLOAT: (_V, _F, _V),
    InstructionType.FLOAT_VECTOR: (_F, _V, _V),
}

_INT_OPERATORS = frozenset(
    {
        Opcode.LOGAND,
        Opcode.LOGOR,
        Opcode.INCOR,
        Opcode.EXCOR,
        Opcode.BOOLAND,
        Opcode.SHLEFT,
        Opcode.SHRIGHT,
        Opcode.USHRIGHT,
        Opcode.MOD,
    }
)
_COMPARISONS = frozenset({Opcode.EQ, Opcode.NEQ, Opcode.GEQ, Opcode.GT, Opcode.LT, Opcode.LEQ})
_ARITHMETIC = frozenset({Opcode.ADD, Opcode.SUB, Opcode.MUL, Opcode.DIV})


class StackAnalyzer:
    """Run the stack simulation from the ``_start`` subroutine."""

    def __init__(
        self,
        start: Optional[SubRoutine],
        actions: Optional[Mapping[int, ActionSignature]] = None,
    ) -> None:
        self.start = start
        self.actions: Mapping[int, ActionSignature] = actions or {}
        self._result = StackAnalysis()
        self._active: Set[int] = set()
        self._base_pointers: List[Stack] = []

    def analyze(self) -> StackAnalysis:
        result = self._result
        if self.start is None or self.start.entry is None:
            result.error = "script has no start subroutine"
            return result

        try:
            self._analyze_subroutine(self.start, [])
        except StackAnalysisError as exc:
            result.error = str(exc)
            logger.warning("stack analysis failed: %s", exc)
            return result

        result.success = True
        logger.debug(
            "stack analysis created %d variables, %d globals",
            len(result.variables),
            len(result.globals),
        )
        return result

    # ------------------------------------------------------------------
    # control flow
    # ------------------------------------------------------------------
    def _analyze_subroutine(self, subroutine: SubRoutine, stack: Stack) -> SubRoutineEffect:
        effect = self._result.subroutine_effects.get(subroutine.address)
        if effect is not None:
            return effect
        if subroutine.address in self._active:
            raise StackAnalysisError(
                f"recursive call into {subroutine.name} before its stack effect is known"
            )

        self._active.add(subroutine.address)
        frame = _Frame(subroutine, len(stack))
        pending: Deque[Tuple[Block, Stack]] = deque()
        self._enqueue(subroutine.entry, stack, pending)

        while pending:
            block, current = pending.popleft()
            self._walk_block(frame, block, current, pending)

        self._active.discard(subroutine.address)
        effect = SubRoutineEffect(frame.delta, dict(frame.writes))
        self._result.subroutine_effects[subroutine.address] = effect
        return effect

    def _enqueue(self, block: Block, stack: Stack, pending: Deque[Tuple[Block, Stack]]) -> None:
        depth = len(stack)
        known = self._result.block_depths.get(block.address)
        if known is not None:
            if known != depth:
                raise StackAnalysisError(
                    f"block 0x{block.address:08X} entered with stack depth {depth}, "
                    f"previously {known}"
                )
            return
        self._result.block_depths[block.address] = depth
        self._result.block_states[block.address] = StackAnalyzeState.IN_PROGRESS
        pending.append((block, list(stack)))

    def _walk_block(
        self,
        frame: _Frame,
        block: Block,
        stack: Stack,
        pending: Deque[Tuple[Block, Stack]],
    ) -> None:
        for instruction in block.instructions:
            if instruction.opcode is Opcode.JSR:
                callee = instruction.branches[0].block.subroutine
                effect = self._analyze_subroutine(callee, list(stack))
                self._replay(effect, stack, instruction)
            else:
                self._apply(frame, instruction, stack)
        self._result.block_states[block.address] = StackAnalyzeState.FINISHED

        last = block.last
        if last.opcode is Opcode.RETN:
            delta = len(stack) - frame.base
            if frame.delta is not None and frame.delta != delta:
                raise StackAnalysisError(
                    f"{frame.subroutine.name} returns with stack deltas {frame.delta} and {delta}"
                )
            frame.delta = delta
            return

        if last.opcode is Opcode.JSR:
            callee = last.branches[0].block.subroutine
            if self._result.subroutine_effects[callee.address].delta is not None:
                self._enqueue(last.follower.block, stack, pending)
            return

        for child, edge_type in zip(block.children, block.children_types):
            if edge_type is EdgeType.DEAD or edge_type is EdgeType.FUNCTION_RETURN:
                continue
            if edge_type is EdgeType.STORE_STATE:
                # The continuation runs later on a copy of the saved stack.
                self._analyze_subroutine(child.subroutine, list(stack))
                continue
            self._enqueue(child, stack, pending)

    def _replay(self, effect: SubRoutineEffect, stack: Stack, instruction: Instruction) -> None:
        base = len(stack)
        for offset, type_ in effect.writes.items():
            index = base + offset
            if index < 0:
                raise StackAnalysisError(
                    f"0x{instruction.address:08X}: call writes below the bottom of the stack"
                )
            stack[index].unify(type_, instruction)
            stack[index].writers.append(instruction)
        if effect.delta is None:
            return
        if effect.delta < 0:
            self._pop(stack, -effect.delta, instruction)
        for _ in range(effect.delta):
            self._push(stack, VariableType.ANY, instruction)

    # ------------------------------------------------------------------
    # stack primitives
    # ------------------------------------------------------------------
    def _push(self, stack: Stack, type_: VariableType, instruction: Instruction) -> Variable:
        variable = self._result.variables.create(type_, instruction)
        stack.append(variable)
        return variable

    def _pop(self, stack: Stack, count: int, instruction: Instruction) -> List[Variable]:
        if count > len(stack):
            raise StackAnalysisError(
                f"0x{instruction.address:08X}: {instruction.mnemonic} underflows the stack "
                f"({count} cells needed, {len(stack)} available)"
            )
        if count == 0:
            return []
        popped = stack[-count:]
        del stack[-count:]
        for variable in popped:
            variable.readers.append(instruction)
        return popped

    def _pop_typed(
        self, stack: Stack, types: Sequence[VariableType], instruction: Instruction
    ) -> List[Variable]:
        popped = self._pop(stack, len(types), instruction)
        for variable, type_ in zip(popped, types):
            variable.unify(type_, instruction)
        return popped

    @staticmethod
    def _cells(value: int, instruction: Instruction) -> int:
        if value % CELL_SIZE:
            raise StackAnalysisError(
                f"0x{instruction.address:08X}: {instruction.mnemonic} uses unaligned offset {value}"
            )
        return value // CELL_SIZE

    def _slot(self, stack: Stack, offset: int, count: int, instruction: Instruction) -> int:
        start = len(stack) + self._cells(offset, instruction)
        if start < 0 or start + count > len(stack):
            raise StackAnalysisError(
                f"0x{instruction.address:08X}: {instruction.mnemonic} accesses cells outside the stack"
            )
        return start

    def _base_pointer(self, instruction: Instruction) -> Stack:
        if not self._base_pointers:
            raise StackAnalysisError(
                f"0x{instruction.address:08X}: {instruction.mnemonic} without SAVEBP"
            )
        return self._base_pointers[-1]

    def _single_type(self, instruction: Instruction) -> VariableType:
        type_ = _SINGLE_TYPES.get(instruction.type)
        if type_ is None:
            raise StackAnalysisError(
                f"0x{instruction.address:08X}: {instruction.mnemonic} has invalid type "
                f"0x{instruction.type:02X}"
            )
        return type_

    def _operands(self, instruction: Instruction) -> Tuple[Tuple[VariableType, ...], ...]:
        if is_engine_pair(instruction.type):
            engine = (VariableType(f"engine{instruction.type - InstructionType.ENGINE0_ENGINE0}"),)
            return engine, engine, ()
        operands = _BINARY_OPERANDS.get(instruction.type)
        if operands is None:
            raise StackAnalysisError(
                f"0x{instruction.address:08X}: {instruction.mnemonic} has invalid type "
                f"0x{instruction.type:02X}"
            )
        return operands

    # ------------------------------------------------------------------
    # opcode effects
    # ------------------------------------------------------------------
    def _apply(self, frame: _Frame, instruction: Instruction, stack: Stack) -> None:
        opcode = instruction.opcode

        if opcode in (Opcode.CPDOWNSP, Opcode.CPTOPSP, Opcode.CPDOWNBP, Opcode.CPTOPBP):
            offset, size = instruction.args
            count = self._cells(size, instruction)
            if count > len(stack):
                raise StackAnalysisError(
                    f"0x{instruction.address:08X}: {instruction.mnemonic} underflows the stack"
                )
            source = stack if opcode in (Opcode.CPDOWNSP, Opcode.CPTOPSP) else self._base_pointer(instruction)
            start = self._slot(source, offset, count, instruction)
            cells = source[start : start + count]
            if opcode in (Opcode.CPTOPSP, Opcode.CPTOPBP):
                for variable in cells:
                    variable.readers.append(instruction)
                    self._push(stack, variable.type, instruction)
                return
            for index, (target, value) in enumerate(zip(cells, stack[-count:])):
                target.unify(value.type, instruction)
                value.unify(target.type, instruction)
                target.writers.append(instruction)
                if source is stack and start + index < frame.base:
                    frame.writes[start + index - frame.base] = target.type
            return

        if opcode is Opcode.RSADD:
            self._push(stack, self._single_type(instruction), instruction)
            return

        if opcode is Opcode.CONST:
            self._push(stack, self._single_type(instruction), instruction)
            return

        if opcode is Opcode.ACTION:
            routine, argc = instruction.args
            signature = self.actions.get(routine)
            if signature is None:
                raise StackAnalysisError(
                    f"0x{instruction.address:08X}: unknown engine function {routine}"
                )
            try:
                params = signature.param_types(argc)
            except ValueError as exc:
                raise StackAnalysisError(f"0x{instruction.address:08X}: {exc}") from None
            for param in params:
                if param is VariableType.VECTOR:
                    self._pop_typed(stack, _V, instruction)
                elif param.cells:
                    self._pop_typed(stack, (param,), instruction)
            if signature.returns is VariableType.VECTOR:
                for type_ in _V:
                    self._push(stack, type_, instruction)
            elif signature.returns.cells:
                self._push(stack, signature.returns, instruction)
            return

        if opcode in _INT_OPERATORS:
            self._pop_typed(stack, _I + _I, instruction)
            self._push(stack, VariableType.INT, instruction)
            return

        if opcode in _COMPARISONS:
            if instruction.type == InstructionType.STRUCT_STRUCT:
                count = self._cells(instruction.args[0], instruction)
                self._pop(stack, 2 * count, instruction)
            else:
                left, right, _ = self._operands(instruction)
                self._pop_typed(stack, right, instruction)
                self._pop_typed(stack, left, instruction)
            self._push(stack, VariableType.INT, instruction)
            return

        if opcode in _ARITHMETIC:
            left, right, result = self._operands(instruction)
            if not result:
                raise StackAnalysisError(
                    f"0x{instruction.address:08X}: {instruction.mnemonic} is not an arithmetic type"
                )
            self._pop_typed(stack, right, instruction)
            self._pop_typed(stack, left, instruction)
            for type_ in result:
                self._push(stack, type_, instruction)
            return

        if opcode is Opcode.NEG:
            type_ = self._single_type(instruction)
            self._pop_typed(stack, (type_,), instruction)
            self._push(stack, type_, instruction)
            return

        if opcode in (Opcode.COMP, Opcode.NOTI):
            self._pop_typed(stack, _I, instruction)
            self._push(stack, VariableType.INT, instruction)
            return

        if opcode is Opcode.MOVSP:
            offset = instruction.args[0]
            if offset > 0:
                raise StackAnalysisError(
                    f"0x{instruction.address:08X}: MOVSP grows the stack by {offset}"
                )
            self._pop(stack, -self._cells(offset, instruction), instruction)
            return

        if opcode in (Opcode.JZ, Opcode.JNZ):
            self._pop_typed(stack, _I, instruction)
            return

        if opcode is Opcode.DESTRUCT:
            size, offset, keep = instruction.args
            count = self._cells(size, instruction)
            if count > len(stack):
                raise StackAnalysisError(
                    f"0x{instruction.address:08X}: DESTRUCT underflows the stack"
                )
            first = self._cells(offset, instruction)
            region = stack[len(stack) - count :]
            kept = region[first : first + self._cells(keep, instruction)]
            self._pop(stack, count, instruction)
            stack.extend(kept)
            return

        if opcode in (Opcode.DECISP, Opcode.INCISP, Opcode.DECIBP, Opcode.INCIBP):
            source = stack if opcode in (Opcode.DECISP, Opcode.INCISP) else self._base_pointer(instruction)
            variable = source[self._slot(source, instruction.args[0], 1, instruction)]
            variable.unify(VariableType.INT, instruction)
            variable.readers.append(instruction)
            variable.writers.append(instruction)
            return

        if opcode is Opcode.SAVEBP:
            snapshot = list(stack)
            if not self._result.globals:
                self._result.globals = snapshot
                for variable in snapshot:
                    variable.is_global = True
            self._base_pointers.append(snapshot)
            self._push(stack, VariableType.INT, instruction)
            return

        if opcode is Opcode.RESTOREBP:
            self._base_pointer(instruction)
            self._pop_typed(stack, _I, instruction)
            self._base_pointers.pop()
            return

        # JMP, RETN, NOP, STORESTATE and STORESTATEALL leave the stack alone.
