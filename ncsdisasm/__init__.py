"""Public package exports for the NCS control flow analyser."""

from .actions import ActionSignature, ActionTable, VariableType
from .block import Block, EdgeType
from .instruction import AddressType, Instruction, InstructionStore, ScriptParseError
from .listing import ListingRenderer
from .ncsfile import NCSFile
from .stack import StackAnalysis, StackAnalyzeState, StackAnalyzer, Variable, VariableSpace
from .subroutine import SubRoutine, SubRoutineType

__all__ = [
    "ActionSignature",
    "ActionTable",
    "VariableType",
    "Block",
    "EdgeType",
    "AddressType",
    "Instruction",
    "InstructionStore",
    "ScriptParseError",
    "ListingRenderer",
    "NCSFile",
    "StackAnalysis",
    "StackAnalyzeState",
    "StackAnalyzer",
    "Variable",
    "VariableSpace",
    "SubRoutine",
    "SubRoutineType",
]
