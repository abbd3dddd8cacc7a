"""Engine function (``ACTION``) signatures.

Compiled scripts call into the game engine through ``ACTION <routine> <argc>``.
The bytecode does not say what a routine consumes or returns, that is defined
by the game's ``nwscript.nss``.  Stack analysis needs this information, so it
is loaded from a JSON document of the form::

    {
        "0": {"name": "Random", "returns": "int", "params": ["int"]},
        "1": {"name": "PrintString", "returns": "void", "params": ["string"]}
    }

Keys are routine numbers (decimal or ``0x`` prefixed).  A missing file
produces an empty table so callers can always construct one.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple


class VariableType(Enum):
    """Type of a single stack cell, or of an engine function parameter."""

    VOID = "void"
    ANY = "any"
    INT = "int"
    FLOAT = "float"
    STRING = "string"
    OBJECT = "object"
    VECTOR = "vector"
    ACTION = "action"
    ENGINE0 = "engine0"
    ENGINE1 = "engine1"
    ENGINE2 = "engine2"
    ENGINE3 = "engine3"
    ENGINE4 = "engine4"
    ENGINE5 = "engine5"
    ENGINE6 = "engine6"
    ENGINE7 = "engine7"
    ENGINE8 = "engine8"
    ENGINE9 = "engine9"

    @property
    def cells(self) -> int:
        """Number of stack cells a value of this type occupies."""

        if self in (VariableType.VOID, VariableType.ACTION):
            return 0
        if self is VariableType.VECTOR:
            return 3
        return 1


_TYPE_ALIASES: Dict[str, VariableType] = {
    "effect": VariableType.ENGINE0,
    "event": VariableType.ENGINE1,
    "location": VariableType.ENGINE2,
    "talent": VariableType.ENGINE3,
    "itemproperty": VariableType.ENGINE4,
}


def parse_type(name: str) -> VariableType:
    token = name.strip().lower()
    alias = _TYPE_ALIASES.get(token)
    if alias is not None:
        return alias
    try:
        return VariableType(token)
    except ValueError:
        raise ValueError(f"unknown NWScript type {name!r}") from None


@dataclass(frozen=True)
class ActionSignature:
    """Name, return type and parameter types of one engine function."""

    routine: int
    name: str
    returns: VariableType = VariableType.VOID
    params: Tuple[VariableType, ...] = ()

    def param_types(self, argc: int) -> Tuple[VariableType, ...]:
        """Parameters actually passed by a call with ``argc`` arguments.

        Trailing parameters with default values may be omitted by the caller.
        """

        if argc > len(self.params):
            raise ValueError(
                f"{self.name} takes {len(self.params)} parameters, called with {argc}"
            )
        return self.params[:argc]

    @classmethod
    def from_json(cls, routine: int, entry: Mapping[str, Any]) -> "ActionSignature":
        name = str(entry.get("name") or f"action_{routine}")
        returns = parse_type(str(entry.get("returns", "void")))
        params = tuple(parse_type(str(param)) for param in entry.get("params", ()))
        return cls(routine=routine, name=name, returns=returns, params=params)


class ActionTable(Mapping[int, ActionSignature]):
    """Lookup table from routine number to :class:`ActionSignature`."""

    def __init__(self, signatures: Optional[Mapping[int, ActionSignature]] = None) -> None:
        self._signatures: Dict[int, ActionSignature] = dict(signatures or {})

    @classmethod
    def load(cls, path: Path) -> "ActionTable":
        if not path.exists():
            return cls()

        data = json.loads(path.read_text("utf-8"))
        if not isinstance(data, Mapping):
            raise ValueError("action table must contain a JSON object")

        signatures: Dict[int, ActionSignature] = {}
        for key, entry in data.items():
            if not isinstance(entry, Mapping):
                continue
            routine = int(str(key), 0)
            signatures[routine] = ActionSignature.from_json(routine, entry)
        return cls(signatures)

    def __getitem__(self, routine: int) -> ActionSignature:
        return self._signatures[routine]

    def __iter__(self) -> Iterator[int]:
        return iter(self._signatures)

    def __len__(self) -> int:
        return len(self._signatures)
