import logging

from ncs_builder import ScriptBuilder, globals_script, loop_script

from ncsdisasm import NCSFile
from ncsdisasm.block import EdgeType, find_dead_block_edges


def _edge_snapshot(ncs: NCSFile) -> list:
    return [(block.address, list(block.children_types)) for block in ncs.blocks]


def _constant_branch(value: int, conditional: str) -> ScriptBuilder:
    builder = ScriptBuilder().label("start").consti(value)
    getattr(builder, conditional)("target")
    return builder.label("fall").retn().label("target").retn()


def test_constant_zero_with_jz_always_jumps() -> None:
    builder = _constant_branch(0, "jz")
    ncs = builder.load()

    entry = ncs.root_block
    fall = ncs.find_block(builder.address("fall"))

    assert entry.children_types == [EdgeType.CONDITIONAL_TRUE, EdgeType.DEAD]
    assert entry.has_unconditional_children()
    assert not entry.has_conditional_children()
    assert ncs.unreachable_blocks() == [fall]


def test_constant_zero_with_jnz_never_jumps() -> None:
    builder = _constant_branch(0, "jnz")
    ncs = builder.load()

    assert ncs.root_block.children_types == [EdgeType.DEAD, EdgeType.CONDITIONAL_FALSE]
    assert ncs.unreachable_blocks() == [ncs.find_block(builder.address("target"))]


def test_constant_one_with_jz_never_jumps() -> None:
    ncs = _constant_branch(1, "jz").load()

    assert ncs.root_block.children_types == [EdgeType.DEAD, EdgeType.CONDITIONAL_FALSE]


def test_repeated_test_of_a_known_true_value() -> None:
    builder = (
        ScriptBuilder()
        .label("start")
        .consti(0)
        .cptopsp(-4, 4)
        .jz("second")
        .movsp(-4)
        .jmp("end")
        .label("second")
        .cptopsp(-4, 4)
        .jz("done")
        .label("fall")
        .retn()
        .label("done")
        .movsp(-4)
        .label("end")
        .retn()
    )
    ncs = builder.load()

    entry = ncs.root_block
    second = ncs.find_block(builder.address("second"))
    fall = ncs.find_block(builder.address("fall"))

    # The entry block copies a value it did not just push as a constant.
    assert entry.children_types == [EdgeType.CONDITIONAL_TRUE, EdgeType.CONDITIONAL_FALSE]
    assert second.children_types == [EdgeType.CONDITIONAL_TRUE, EdgeType.DEAD]
    assert ncs.unreachable_blocks() == [fall]


def test_repeated_test_reached_by_fall_through_stays_live() -> None:
    builder = (
        ScriptBuilder()
        .label("start")
        .consti(0)
        .cptopsp(-4, 4)
        .jz("done")
        .label("second")
        .cptopsp(-4, 4)
        .jz("done")
        .retn()
        .label("done")
        .retn()
    )
    ncs = builder.load()

    second = ncs.find_block(builder.address("second"))

    assert second.children_types == [EdgeType.CONDITIONAL_TRUE, EdgeType.CONDITIONAL_FALSE]
    assert all(EdgeType.DEAD not in block.children_types for block in ncs.blocks)


def test_dead_edges_propagate_through_absorbed_blocks() -> None:
    builder = (
        ScriptBuilder()
        .label("start")
        .consti(1)
        .jz("island")
        .retn()
        .label("island")
        .nop()
        .jmp("tail")
        .label("tail")
        .retn()
    )
    ncs = builder.load()

    island = ncs.find_block(builder.address("island"))
    tail = ncs.find_block(builder.address("tail"))

    assert ncs.root_block.children_types == [EdgeType.DEAD, EdgeType.CONDITIONAL_FALSE]
    assert island.children_types == [EdgeType.DEAD]
    assert ncs.unreachable_blocks() == [island, tail]


def test_dead_edge_analysis_is_idempotent() -> None:
    scripts = [
        _constant_branch(0, "jz"),
        _constant_branch(1, "jnz"),
        globals_script(),
        loop_script(),
    ]

    for builder in scripts:
        ncs = builder.load()
        before = _edge_snapshot(ncs)

        assert find_dead_block_edges(ncs.blocks, ncs.root_block) == 0
        assert _edge_snapshot(ncs) == before


def test_dead_edge_count_reports_changing_passes() -> None:
    builder = (
        ScriptBuilder()
        .label("start")
        .consti(1)
        .jz("island")
        .retn()
        .label("island")
        .nop()
        .jmp("tail")
        .label("tail")
        .retn()
    )
    ncs = builder.load()
    island = ncs.find_block(builder.address("island"))

    ncs.root_block.children_types[0] = EdgeType.CONDITIONAL_TRUE
    island.children_types[0] = EdgeType.UNCONDITIONAL

    assert find_dead_block_edges(ncs.blocks) == 1
    assert ncs.find_block(builder.address("island")).children_types == [EdgeType.DEAD]


def test_entry_block_looping_on_itself_keeps_its_exit() -> None:
    builder = ScriptBuilder().label("start").consti(0).jnz("start").label("exit").retn()
    ncs = builder.load()

    root = ncs.root_block

    # Only the back edge into the entry is dead, the entry itself always runs.
    assert root.children_types == [EdgeType.DEAD, EdgeType.CONDITIONAL_FALSE]
    assert root.children[1] is ncs.find_block(builder.address("exit"))
    assert ncs.unreachable_blocks() == []


def test_dead_edges_are_logged_with_the_block(caplog) -> None:
    with caplog.at_level(logging.DEBUG, logger="ncsdisasm.block"):
        _constant_branch(0, "jz").load()

    assert "constant_condition: block 0x0000000D-0x00000019" in caplog.text
    assert "dead->0x00000019" in caplog.text
