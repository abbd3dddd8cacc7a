import json
from pathlib import Path

import pytest

from ncsdisasm.actions import ActionSignature, ActionTable, VariableType, parse_type


def test_action_table_loads_json(tmp_path: Path) -> None:
    path = tmp_path / "actions.json"
    payload = {
        "0": {"name": "Random", "returns": "int", "params": ["int"]},
        "0x1": {"name": "GetLocation", "returns": "location", "params": ["object"]},
        "2": {"params": ["string", "float"]},
        "comment": "ignored",
    }
    path.write_text(json.dumps(payload, indent=2), "utf-8")

    table = ActionTable.load(path)

    assert len(table) == 3
    assert table[0].name == "Random"
    assert table[0].returns is VariableType.INT
    assert table[1].returns is VariableType.ENGINE2
    assert table[1].params == (VariableType.OBJECT,)
    assert table[2].name == "action_2"
    assert table[2].returns is VariableType.VOID
    assert sorted(table) == [0, 1, 2]


def test_missing_action_table_is_empty(tmp_path: Path) -> None:
    table = ActionTable.load(tmp_path / "missing.json")

    assert len(table) == 0
    assert table.get(0) is None


def test_action_table_must_be_an_object(tmp_path: Path) -> None:
    path = tmp_path / "actions.json"
    path.write_text("[]", "utf-8")

    with pytest.raises(ValueError, match="JSON object"):
        ActionTable.load(path)


def test_unknown_types_are_rejected() -> None:
    assert parse_type(" Effect ") is VariableType.ENGINE0
    assert parse_type("vector") is VariableType.VECTOR

    with pytest.raises(ValueError, match="unknown NWScript type"):
        parse_type("struct")


def test_trailing_default_parameters_may_be_omitted() -> None:
    params = (VariableType.INT, VariableType.ENGINE0, VariableType.OBJECT, VariableType.FLOAT)
    signature = ActionSignature(7, "ApplyEffectToObject", VariableType.VOID, params)

    assert signature.param_types(3) == (
        VariableType.INT,
        VariableType.ENGINE0,
        VariableType.OBJECT,
    )
    with pytest.raises(ValueError, match="takes 4 parameters"):
        signature.param_types(5)


def test_cell_counts() -> None:
    assert VariableType.INT.cells == 1
    assert VariableType.VECTOR.cells == 3
    assert VariableType.VOID.cells == 0
    assert VariableType.ACTION.cells == 0
