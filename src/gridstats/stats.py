"""Simulates a circuit column by column and collects what its displays show."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import numpy as np
import numpy.typing as npt

from gridstats.buffers import BufferHandle, BufferManager
from gridstats.circuit import CircuitDefinition
from gridstats.config import DEFAULT, Config
from gridstats.controls import Controls
from gridstats.errors import BufferAccountingError, KernelFaultError
from gridstats.kernels import (
    Kernel,
    KernelKind,
    decohere_matrix,
    pixels_to_amplitudes,
    pixels_to_qubit_density_matrices,
)
from gridstats.matrix import Matrix
from gridstats.serializer import to_json_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CircuitStats:
    """Everything the displays of a circuit show at one point in time.

    ``qubit_densities[col][wire]`` is the trace-normalized density matrix of
    ``wire`` just after column ``col``, with one extra entry past the last
    column covering every wire. Wires without a display in a column get a
    NaN matrix.
    """
    circuit_definition: CircuitDefinition
    time: float
    qubit_densities: tuple[tuple[Matrix, ...], ...]
    final_state: Matrix
    post_selection_survival_rate: float
    custom_stats_processed: Mapping[str, Any] = field(default_factory=dict)

    def qubit_density_matrix(self, wire: int, col: int | float) -> Matrix:
        if wire < 0:
            raise ValueError(f"Bad wire index: {wire} (col {col})")

        # The initial state is all-qubits-off.
        if col < 0 or wire >= self.circuit_definition.num_wires:
            return Matrix([[1, 0], [0, 0]])

        last = len(self.qubit_densities) - 1
        if last < 0:
            return Matrix.zero(2, 2).times(math.nan)
        densities = self.qubit_densities[last if col >= last else int(col)]
        if wire >= len(densities):
            return Matrix.zero(2, 2).times(math.nan)
        return densities[wire]

    def controlled_wire_probability_just_after(self, wire: int, col: int | float) -> float:
        """Probability ``wire`` is on after column ``col``, given that column's controls are met.

        A wire is never conditioned on itself.
        """
        return float(self.qubit_density_matrix(wire, col).raw_buffer()[6])

    def custom_stats_for_slot(self, col: int, row: int) -> Any | None:
        return self.custom_stats_processed.get(f"{col}:{row}")

    def with_time(self, time: float) -> CircuitStats:
        return replace(self, time=time)

    @staticmethod
    def nan_snapshot(circuit: CircuitDefinition, time: float, config: Config | None = None) -> CircuitStats:
        """The degraded result reported when computing a circuit's stats fails.

        Circuits wider than ``config.max_wires`` get a single NaN amplitude
        instead of a full-size state vector.
        """
        config = config or DEFAULT
        size = 1 if circuit.num_wires > config.max_wires else 1 << circuit.num_wires
        return CircuitStats(
            circuit,
            time,
            (),
            Matrix.zero(1, size).times(math.nan),
            math.nan,
            {},
        )

    @staticmethod
    def decohere_measured_bits_in_density_matrix(density: Matrix, measured_mask: int) -> Matrix:
        return decohere_matrix(density, measured_mask)

    @staticmethod
    def scatter_and_decohere_densities(
        raw_matrices: Sequence[Matrix],
        num_wires: int,
        qubit_span: int,
        measured_mask: int,
        display_mask: int,
    ) -> list[Matrix]:
        """Spreads the computed matrices over the rows that asked for them.

        Rows outside ``display_mask`` get a NaN matrix.
        """
        size = 1 << qubit_span
        nan_matrix = Matrix.zero(size, size).times(math.nan)
        span_mask = size - 1
        computed = iter(raw_matrices)
        result = []
        for row in range(num_wires - qubit_span + 1):
            if display_mask & (1 << row) == 0:
                result.append(nan_matrix)
                continue
            result.append(decohere_matrix(next(computed), (measured_mask >> row) & span_mask))
        return result

    @staticmethod
    def try_from_circuit_at_time(
        circuit: CircuitDefinition,
        time: float,
        *,
        config: Config | None = None,
        buffers: BufferManager | None = None,
    ) -> StatsOutcome:
        """Computes stats, reporting failure in the outcome instead of raising.

        Buffer accounting errors still raise while ``config.debug_buffers``
        is on.
        """
        config = config or DEFAULT
        try:
            stats = _compute(circuit, time, config, buffers or BufferManager(config))
            return StatsOutcome(stats)
        except BufferAccountingError as e:
            if config.debug_buffers:
                raise
            error: BaseException = e
        except Exception as e:
            error = e
        return StatsOutcome(CircuitStats.nan_snapshot(circuit, time, config), error, to_json_text(circuit))

    @staticmethod
    def from_circuit_at_time(
        circuit: CircuitDefinition,
        time: float,
        *,
        config: Config | None = None,
        buffers: BufferManager | None = None,
        on_error: Callable[[StatsOutcome], None] | None = None,
    ) -> CircuitStats:
        """Computes stats, defaulting to NaN results if anything goes wrong."""
        outcome = CircuitStats.try_from_circuit_at_time(circuit, time, config=config, buffers=buffers)
        if outcome.error is not None:
            logger.warning(
                "Defaulted to NaN results. Computing circuit values failed for %s",
                outcome.circuit_json,
                exc_info=outcome.error,
            )
            if on_error is not None:
                on_error(outcome)
        return outcome.stats


@dataclass(frozen=True, slots=True)
class StatsOutcome:
    stats: CircuitStats
    error: BaseException | None = None
    circuit_json: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _compute(circuit: CircuitDefinition, time: float, config: Config, buffers: BufferManager) -> CircuitStats:
    num_wires = circuit.num_wires
    num_cols = circuit.num_cols
    if num_wires > config.max_wires:
        raise ValueError(f"Circuit has {num_wires} wires, more than the limit of {config.max_wires}")

    with buffers:
        density_buffers: list[BufferHandle] = []
        custom_stat_buffers: list[BufferHandle] = []
        custom_stat_slots: list[tuple[int, int]] = []
        no_controls = buffers.control(num_wires, Controls.NONE)

        def apply_setup(state: BufferHandle, kernel: Kernel) -> BufferHandle:
            return buffers.apply_custom_shader(kernel, state, no_controls, time)

        def decohered(density: BufferHandle, measured_mask: int, wire_mask: int = 0) -> BufferHandle:
            if measured_mask == 0:
                return density
            return buffers.apply_custom_shader(Kernel.decohere(measured_mask, wire_mask), density, None, time)

        def advance(state: BufferHandle, col: int) -> BufferHandle:
            state = buffers.aggregate_with_reuse(state, circuit.get_setup_shaders_in_col(col, True), apply_setup)

            controls = circuit.col_controls(col)
            measured = circuit.col_is_measured_mask(col)
            control = buffers.control(num_wires, controls)
            state = buffers.aggregate_with_reuse(
                state,
                circuit.operation_shaders_in_col_at(col, time),
                lambda acc, kernel: buffers.apply_custom_shader(kernel, acc, control, time),
            )

            # After the operations, so post-selection in this column applies.
            for row in circuit.custom_stat_rows_in_col(col):
                gate = circuit.columns[col].gates[row]
                assert gate is not None
                kernel = gate.custom_stat_kernel(row)
                if kernel is None:
                    raise KernelFaultError(
                        f"Gate {gate.serialized_id!r} has no custom stat kernel",
                        {"col": col, "row": row, "custom_stat": gate.custom_stat},
                    )
                stat = buffers.evaluate_custom_stat(kernel, state, control, time)
                if kernel.kind == KernelKind.SPAN_DENSITY:
                    stat = decohered(stat, (measured >> row) & ((1 << kernel.span) - 1))
                custom_stat_slots.append((col, row))
                custom_stat_buffers.append(stat)

            display_mask = circuit.col_has_single_qubit_display_mask(col)
            density_buffers.append(decohered(
                buffers.superposition_to_qubit_densities(state, controls, display_mask),
                measured & display_mask,
                display_mask,
            ))
            buffers.release(control, "column control buffer")

            return buffers.aggregate_with_reuse(state, circuit.get_setup_shaders_in_col(col, False), apply_setup)

        output = buffers.aggregate_with_reuse(buffers.zero(num_wires), range(num_cols), advance)
        all_wires = (1 << num_wires) - 1
        density_buffers.append(decohered(
            buffers.superposition_to_qubit_densities(output, Controls.NONE, all_wires),
            circuit.col_is_measured_mask(num_cols),
            all_wires,
        ))
        buffers.release(no_controls, "no-controls buffer")

        pixels = buffers.merged_read_floats({
            "output": output,
            "densities": density_buffers,
            "custom_stats": custom_stat_buffers,
        })
        logger.debug(
            "Computed %d columns on %d wires with %d allocations in %d flushes",
            num_cols, num_wires, buffers.allocation_count, buffers.flush_count,
        )

    final: npt.NDArray[np.float32] = pixels["densities"][-1]
    unity = float(final[0] + final[6])
    final_state = pixels_to_amplitudes(pixels["output"], unity)

    qubit_densities = tuple(
        tuple(CircuitStats.scatter_and_decohere_densities(
            pixels_to_qubit_density_matrices(raw),
            num_wires,
            1,
            # Decohered on the device already.
            0,
            # Every wire is displayed after the last column.
            -1 if col == num_cols else circuit.col_has_single_qubit_display_mask(col),
        ))
        for col, raw in enumerate(pixels["densities"])
    )

    custom_stats: dict[str, Any] = {}
    for (col, row), raw in zip(custom_stat_slots, pixels["custom_stats"]):
        gate = circuit.gate_in_slot(col, row)
        assert gate is not None
        processed = raw if gate.post_processor is None else gate.post_processor(raw, circuit, col, row)
        custom_stats[f"{col}:{row}"] = processed

    return CircuitStats(circuit, time, qubit_densities, final_state, unity, custom_stats)
