"""JSON form of circuits.

A circuit serializes to ``{"cols": [[...], ...]}`` where each column lists one
token per wire: ``1`` for an empty slot, a gate's serialized id otherwise, or
``{"id": ..., "matrix": "{{...}}"}`` for a custom matrix gate. Columns read back
may omit trailing empty slots.
"""

from __future__ import annotations

import json
from typing import Any

from gridstats.circuit import CircuitDefinition, GateColumn
from gridstats.errors import SerializationError
from gridstats.gates import KNOWN_TO_SERIALIZER, Gate
from gridstats.matrix import Matrix

KNOWN_GATES: dict[str, Gate] = KNOWN_TO_SERIALIZER

EMPTY_SLOT = 1


def gate_to_json(gate: Gate | None) -> Any:
    if gate is None:
        return EMPTY_SLOT
    if gate.is_custom:
        return {"id": gate.serialized_id, "matrix": gate.matrix_at(0).to_text()}
    return gate.serialized_id


def gate_from_json(token: Any) -> Gate | None:
    if token == EMPTY_SLOT and not isinstance(token, bool):
        return None
    if isinstance(token, str):
        gate = KNOWN_GATES.get(token)
        if gate is None:
            raise SerializationError("Unrecognized gate id", {"id": token})
        return gate
    if isinstance(token, dict) and isinstance(token.get("id"), str):
        if "matrix" not in token:
            return gate_from_json(token["id"])
        try:
            matrix = Matrix.parse(str(token["matrix"]))
            return Gate.from_known_matrix(token["id"], matrix)
        except ValueError as e:
            raise SerializationError("Bad custom gate matrix", {"id": token["id"], "matrix": token["matrix"]}) from e
    raise SerializationError("Unrecognized gate token", {"token": token})


def to_json(circuit: CircuitDefinition) -> dict[str, Any]:
    return {"cols": [[gate_to_json(gate) for gate in column.gates] for column in circuit.columns]}


def from_json(payload: Any, num_wires: int | None = None) -> CircuitDefinition:
    """Builds a circuit from its JSON form.

    Without ``num_wires`` the circuit gets as many wires as its longest
    column (and never fewer than its gates need).
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("cols"), list):
        raise SerializationError("Expected an object with a 'cols' list", {"payload": payload})

    rows: list[list[Gate | None]] = []
    for index, col in enumerate(payload["cols"]):
        if not isinstance(col, list):
            raise SerializationError("Column isn't a list", {"col": index})
        rows.append([gate_from_json(token) for token in col])

    needed = max([1] + [row + gate.height for col in rows for row, gate in enumerate(col) if gate is not None])
    longest = max([1] + [len(col) for col in rows])
    wires = num_wires if num_wires is not None else max(longest, needed)
    if wires < needed:
        raise SerializationError("Circuit needs more wires", {"num_wires": wires, "needed": needed})

    try:
        columns = [GateColumn(col[:wires] + [None] * (wires - len(col))) for col in rows]
        return CircuitDefinition(wires, columns)
    except ValueError as e:
        raise SerializationError("Invalid circuit layout", {"reason": str(e)}) from e


def to_json_text(circuit: CircuitDefinition) -> str:
    return json.dumps(to_json(circuit), ensure_ascii=False)


def from_json_text(text: str, num_wires: int | None = None) -> CircuitDefinition:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise SerializationError("Malformed circuit JSON", {"position": e.pos}) from e
    return from_json(payload, num_wires)
