import logging

from ncs_builder import ScriptBuilder, action_script, globals_script

from ncsdisasm.block import Block
from ncsdisasm.constants import Opcode
from ncsdisasm.instruction import Instruction
from ncsdisasm.subroutine import (
    SubRoutine,
    SubRoutineRoles,
    SubRoutineType,
    apply_subroutine_roles,
    identify_subroutine_types,
)


def _call(address: int, target: int) -> Instruction:
    instruction = Instruction(address, Opcode.JSR, 0, 6, (target - address,))
    instruction.branches = [Instruction(target, Opcode.NOP, 0, 2)]
    return instruction


def _subroutine(address: int, *instructions: Instruction) -> SubRoutine:
    subroutine = SubRoutine(address)
    block = Block(address, list(instructions), subroutine=subroutine)
    subroutine.blocks.append(block)
    subroutine.entry = block
    return subroutine


def test_globals_layout_is_recognised() -> None:
    builder = globals_script()
    ncs = builder.load()

    assert ncs.start_subroutine.address == builder.address("start")
    assert ncs.global_subroutine.address == builder.address("global")
    assert ncs.main_subroutine.address == builder.address("main")
    assert not ncs.has_multiple_global

    assert [sub.name for sub in ncs.subroutines] == ["_start", "_global", "main"]
    assert [sub.type for sub in ncs.subroutines] == [
        SubRoutineType.START,
        SubRoutineType.GLOBAL,
        SubRoutineType.MAIN,
    ]

    call = ncs.find_instruction(builder.address("global_tail") - 6)
    assert ncs.global_subroutine.calls() == [(call, builder.address("main"))]
    assert ncs.main_subroutine.callers == [call]


def test_single_call_from_start_is_main() -> None:
    builder = action_script()
    ncs = builder.load()

    assert ncs.global_subroutine is None
    assert ncs.main_subroutine.address == builder.address("main")
    assert ncs.main_subroutine.name == "main"
    assert [block.address for block in ncs.main_subroutine.exits()] == [builder.address("main")]


def test_script_without_calls_has_no_main() -> None:
    ncs = ScriptBuilder().nop().retn().load()

    assert ncs.start_subroutine is not None
    assert ncs.start_subroutine.name == "_start"
    assert ncs.global_subroutine is None
    assert ncs.main_subroutine is None


def test_empty_script_has_no_subroutines() -> None:
    ncs = ScriptBuilder().load()

    assert ncs.size == 13
    assert ncs.blocks == ()
    assert ncs.root_block is None
    assert ncs.subroutines == ()
    assert ncs.start_subroutine is None
    assert ncs.global_subroutine is None
    assert ncs.main_subroutine is None


def test_multiple_global_candidates_are_flagged(caplog) -> None:
    builder = (
        ScriptBuilder()
        .label("start")
        .jsr("first")
        .jsr("second")
        .retn()
        .label("first")
        .savebp()
        .restorebp()
        .retn()
        .label("second")
        .savebp()
        .restorebp()
        .retn()
    )

    with caplog.at_level(logging.WARNING):
        ncs = builder.load()

    assert ncs.has_multiple_global
    assert ncs.global_subroutine.address == builder.address("first")
    # _global never calls anything, the call following it in _start is main.
    assert ncs.main_subroutine.address == builder.address("second")
    assert "more than one candidate" in caplog.text


def test_identification_does_not_modify_subroutines() -> None:
    start = _subroutine(0x0D, _call(0x0D, 0x20), Instruction(0x13, Opcode.RETN, 0, 2))
    global_ = _subroutine(
        0x20,
        _call(0x20, 0x40),
        Instruction(0x26, Opcode.SAVEBP, 0, 2),
        _call(0x28, 0x50),
        Instruction(0x2E, Opcode.RESTOREBP, 0, 2),
        Instruction(0x30, Opcode.RETN, 0, 2),
    )
    helper = _subroutine(0x40, Instruction(0x40, Opcode.RETN, 0, 2))
    main = _subroutine(0x50, Instruction(0x50, Opcode.RETN, 0, 2))

    roles = identify_subroutine_types([main, helper, global_, start])

    # Calls made before SAVEBP do not count as the call to main.
    assert roles == SubRoutineRoles(start=start, global_=global_, main=main)
    assert all(
        sub.type is SubRoutineType.NONE for sub in (start, global_, helper, main)
    )

    apply_subroutine_roles(roles)
    assert start.type is SubRoutineType.START
    assert global_.type is SubRoutineType.GLOBAL
    assert main.type is SubRoutineType.MAIN
    assert helper.type is SubRoutineType.NONE


def test_start_calling_itself_is_not_main() -> None:
    start = _subroutine(0x0D, _call(0x0D, 0x0D), Instruction(0x13, Opcode.RETN, 0, 2))

    roles = identify_subroutine_types([start])

    assert roles.start is start
    assert roles.main is None


def test_no_subroutines_give_empty_roles() -> None:
    assert identify_subroutine_types([]) == SubRoutineRoles()


def test_store_state_subroutine_is_never_global() -> None:
    start = _subroutine(0x0D, Instruction(0x0D, Opcode.RETN, 0, 2))
    state = _subroutine(0x20, Instruction(0x20, Opcode.SAVEBP, 0, 2))
    state.type = SubRoutineType.STORE_STATE

    roles = identify_subroutine_types([start, state])

    assert roles.global_ is None
    assert not roles.multiple_global
