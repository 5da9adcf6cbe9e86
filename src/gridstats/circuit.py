"""Gate-grid circuits: columns of per-wire gate slots."""

from __future__ import annotations

import math
import textwrap
from collections.abc import Mapping, Sequence
from typing import override

from gridstats.controls import Controls
from gridstats.gates import Gate
from gridstats.kernels import Kernel

_EMPTY_DIAGRAM_CHARS = frozenset("-+ /")


class GateColumn:
    """One column of a circuit, holding at most one gate per wire.

    A gate of height ``h`` sits in its top wire's slot; the ``h - 1`` slots
    below it are covered and must stay empty.
    """
    __slots__ = ("gates",)

    gates: tuple[Gate | None, ...]

    def __init__(self, gates: Sequence[Gate | None]):
        covered_until = -1
        for row, gate in enumerate(gates):
            if gate is None:
                continue
            if row <= covered_until:
                raise ValueError(f"Gate {gate!r} at row {row} overlaps the gate above it")
            covered_until = row + gate.height - 1
        self.gates = tuple(gates)

    @staticmethod
    def empty(num_wires: int) -> GateColumn:
        return GateColumn([None] * num_wires)

    def __len__(self) -> int:
        return len(self.gates)

    def is_empty(self) -> bool:
        return all(gate is None for gate in self.gates)

    def occupied(self) -> list[tuple[int, Gate]]:
        return [(row, gate) for row, gate in enumerate(self.gates) if gate is not None]

    def covered_mask(self) -> int:
        """Wires covered by (but not the top wire of) a multi-wire gate."""
        mask = 0
        for row, gate in self.occupied():
            for k in range(1, gate.height):
                mask |= 1 << (row + k)
        return mask

    def gate_covering(self, row: int) -> tuple[int, Gate] | None:
        for top, gate in self.occupied():
            if top <= row < top + gate.height:
                return top, gate
        return None

    def controls(self) -> Controls:
        result = Controls.NONE
        for row, gate in self.occupied():
            if gate.is_control():
                result = result.and_(gate.controls_at(row))
        return result

    def swap_rows(self) -> list[int]:
        return [row for row, gate in self.occupied() if gate.is_swap_half()]

    def has_enabled_swap(self) -> bool:
        return len(self.swap_rows()) == 2

    def measure_mask(self, previous: int) -> int:
        mask = previous
        for row, gate in self.occupied():
            if gate.is_measurement():
                mask |= 1 << row
        return mask

    def with_gates_added(self, row: int, gate: Gate) -> GateColumn:
        gates = list(self.gates)
        gates[row] = gate
        return GateColumn(gates)

    def with_length(self, num_wires: int) -> GateColumn:
        """Truncated or padded to ``num_wires`` slots, dropping gates that no longer fit."""
        gates = list(self.gates[:num_wires]) + [None] * max(0, num_wires - len(self.gates))
        for row, gate in enumerate(gates):
            if gate is not None and row + gate.height > num_wires:
                gates[row] = None
        return GateColumn(gates)

    @override
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GateColumn):
            return NotImplemented
        return self.gates == other.gates

    @override
    def __hash__(self) -> int:
        return hash(self.gates)

    @override
    def __repr__(self) -> str:
        return f"GateColumn({list(self.gates)!r})"


class CircuitDefinition:
    """An immutable gate grid with ``num_wires`` wires.

    Modifications such as :meth:`with_wire_count` return new instances.
    """
    __slots__ = ("num_wires", "columns", "_measure_masks")

    num_wires: int
    columns: tuple[GateColumn, ...]
    _measure_masks: tuple[int, ...]

    def __init__(self, num_wires: int, columns: Sequence[GateColumn]):
        if num_wires < 1:
            raise ValueError(f"A circuit needs at least one wire, got {num_wires}")
        for index, column in enumerate(columns):
            if len(column) != num_wires:
                raise ValueError(f"Column {index} has {len(column)} slots but the circuit has {num_wires} wires")
            for row, gate in column.occupied():
                if row + gate.height > num_wires:
                    raise ValueError(f"Gate {gate!r} at column {index}, row {row} runs past the last wire")
        self.num_wires = num_wires
        self.columns = tuple(columns)

        masks: list[int] = []
        mask = 0
        for column in self.columns:
            mask = column.measure_mask(mask)
            masks.append(mask)
        self._measure_masks = tuple(masks)

    @staticmethod
    def from_text_diagram(gate_map: Mapping[str, Gate | None], text: str) -> CircuitDefinition:
        """Builds a circuit from a diagram with one line per wire and one character per column.

        ``-``, ``+`` and spaces are empty slots and ``/`` marks a slot covered
        by the multi-wire gate above it. Every other character must be a key
        of ``gate_map``. Common leading indentation is ignored.
        """
        lines = [line for line in textwrap.dedent(text).split("\n") if line.strip() != ""]
        if not lines:
            raise ValueError("Empty circuit diagram")
        num_cols = max(len(line) for line in lines)

        columns = []
        for col in range(num_cols):
            gates: list[Gate | None] = []
            for line in lines:
                char = line[col] if col < len(line) else " "
                if char in gate_map:
                    gates.append(gate_map[char])
                elif char in _EMPTY_DIAGRAM_CHARS:
                    gates.append(None)
                else:
                    raise ValueError(f"Unrecognized diagram character: {char!r}")
            columns.append(GateColumn(gates))
        return CircuitDefinition(len(lines), columns)

    # -- shape -------------------------------------------------------------

    @property
    def num_cols(self) -> int:
        return len(self.columns)

    def min_wires(self) -> int:
        """Smallest wire count that still fits every gate."""
        result = 1
        for column in self.columns:
            for row, gate in column.occupied():
                result = max(result, row + gate.height)
        return result

    def with_columns(self, columns: Sequence[GateColumn]) -> CircuitDefinition:
        return CircuitDefinition(self.num_wires, columns)

    def with_wire_count(self, num_wires: int) -> CircuitDefinition:
        if num_wires == self.num_wires:
            return self
        return CircuitDefinition(num_wires, [column.with_length(num_wires) for column in self.columns])

    def with_column_inserted(self, index: int, column: GateColumn | None = None) -> CircuitDefinition:
        inserted = column if column is not None else GateColumn.empty(self.num_wires)
        columns = list(self.columns)
        columns.insert(index, inserted)
        return CircuitDefinition(self.num_wires, columns)

    def with_trailing_empty_columns_removed(self) -> CircuitDefinition:
        columns = list(self.columns)
        while columns and columns[-1].is_empty():
            _ = columns.pop()
        return CircuitDefinition(self.num_wires, columns)

    # -- slot queries ------------------------------------------------------

    def gate_in_slot(self, col: int, row: int) -> Gate | None:
        if not 0 <= col < self.num_cols or not 0 <= row < self.num_wires:
            return None
        return self.columns[col].gates[row]

    def find_gate_covering_slot(self, col: int, row: int) -> tuple[int, Gate] | None:
        if not 0 <= col < self.num_cols:
            return None
        return self.columns[col].gate_covering(row)

    def gate_at_loc_is_disabled_reason(self, col: int, row: int) -> str | None:
        gate = self.gate_in_slot(col, row)
        if gate is None:
            return None
        if gate.is_swap_half() and not self.col_has_enabled_swap_gate(col):
            swaps = len(self.columns[col].swap_rows())
            return "need\nother\nswap" if swaps < 2 else "too\nmany\nswaps"
        return None

    # -- column queries ----------------------------------------------------

    def col_controls(self, col: int) -> Controls:
        if not 0 <= col < self.num_cols:
            return Controls.NONE
        return self.columns[col].controls()

    def operation_shaders_in_col_at(self, col: int, time: float) -> list[Kernel]:
        """Operation kernels of the column, top gate first."""
        if not 0 <= col < self.num_cols:
            return []
        column = self.columns[col]
        kernels: list[Kernel] = []
        for row, gate in column.occupied():
            if self.gate_at_loc_is_disabled_reason(col, row) is not None:
                continue
            kernels.extend(gate.operation_kernels(row, time))
        if column.has_enabled_swap():
            a, b = column.swap_rows()
            kernels.append(Kernel.swap(a, b))
        return kernels

    def get_setup_shaders_in_col(self, col: int, before: bool) -> list[Kernel]:
        if not 0 <= col < self.num_cols:
            return []
        kernels: list[Kernel] = []
        for row, gate in self.columns[col].occupied():
            kernels.extend(gate.setup_kernels(row, before))
        return kernels

    def col_is_measured_mask(self, col: int | float) -> int:
        """Wires that have been measured by the end of column ``col``.

        Columns past the end (including ``math.inf``) report the final mask.
        """
        if col < 0 or not self._measure_masks:
            return 0
        if col >= self.num_cols or math.isinf(col):
            return self._measure_masks[-1]
        return self._measure_masks[int(col)]

    def col_has_single_qubit_display_mask(self, col: int) -> int:
        if not 0 <= col < self.num_cols:
            return 0
        mask = 0
        for row, gate in self.columns[col].occupied():
            if gate.is_single_qubit_display:
                mask |= 1 << row
        return mask

    def col_has_non_local_gates(self, col: int) -> bool:
        """Whether some gate in the column acts on wires outside its own slots."""
        if not 0 <= col < self.num_cols:
            return False
        column = self.columns[col]
        return column.has_enabled_swap() or any(gate.is_non_local for _, gate in column.occupied())

    def col_has_enabled_swap_gate(self, col: int) -> bool:
        if not 0 <= col < self.num_cols:
            return False
        return self.columns[col].has_enabled_swap()

    def custom_stat_rows_in_col(self, col: int) -> list[int]:
        if not 0 <= col < self.num_cols:
            return []
        return [row for row, gate in self.columns[col].occupied() if gate.custom_stat is not None]

    # -- dunder ------------------------------------------------------------

    @override
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CircuitDefinition):
            return NotImplemented
        return self.num_wires == other.num_wires and self.columns == other.columns

    @override
    def __hash__(self) -> int:
        return hash((self.num_wires, self.columns))

    @override
    def __repr__(self) -> str:
        return f"CircuitDefinition({self.num_wires}, {list(self.columns)!r})"
