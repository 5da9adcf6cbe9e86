from __future__ import annotations

import math
import unittest

from gridstats import gates as g
from gridstats.circuit import CircuitDefinition, GateColumn
from gridstats.controls import Controls
from gridstats.kernels import Kernel, KernelKind

GATE_MAP = {
    "X": g.X,
    "H": g.H,
    "Z": g.Z,
    "•": g.Control,
    "◦": g.AntiControl,
    "⊕": g.XAxisControl,
    "M": g.Measurement,
    "s": g.SwapHalf,
    "R": g.ReverseBitsFamily[3],
    "C": g.ChanceDisplay,
    "P": g.ChanceDisplayFamily[2],
    "0": g.PostSelectOff,
    "E": g.ErrorInjection,
    "t": g.XForward,
}


def circuit(text: str) -> CircuitDefinition:
    return CircuitDefinition.from_text_diagram(GATE_MAP, text)


class GateColumnTests(unittest.TestCase):
    def test_empty(self) -> None:
        col = GateColumn.empty(3)
        self.assertEqual(len(col), 3)
        self.assertTrue(col.is_empty())
        self.assertFalse(GateColumn([None, g.X]).is_empty())

    def test_overlap_rejected(self) -> None:
        with self.assertRaises(ValueError):
            GateColumn([g.ReverseBitsFamily[2], g.X])
        _ = GateColumn([g.ReverseBitsFamily[2], None, g.X])

    def test_covered_mask(self) -> None:
        col = GateColumn([None, g.ReverseBitsFamily[3], None, None, g.X])
        self.assertEqual(col.covered_mask(), 0b01100)
        self.assertEqual(col.gate_covering(3), (1, g.ReverseBitsFamily[3]))
        self.assertIsNone(col.gate_covering(0))

    def test_controls(self) -> None:
        col = GateColumn([g.Control, g.X, g.AntiControl])
        self.assertEqual(col.controls(), Controls(0b101, 0b001))
        self.assertEqual(GateColumn([g.X]).controls(), Controls.NONE)

    def test_with_gates_added(self) -> None:
        col = GateColumn.empty(2).with_gates_added(1, g.H)
        self.assertEqual(col, GateColumn([None, g.H]))


class CircuitDefinitionTests(unittest.TestCase):
    def test_from_text_diagram(self) -> None:
        c = circuit("""
            -H-
            -X•
            """.replace(" ", ""))
        self.assertEqual(c.num_wires, 2)
        self.assertEqual(c.num_cols, 3)
        self.assertEqual(c.gate_in_slot(1, 0), g.H)
        self.assertEqual(c.gate_in_slot(1, 1), g.X)
        self.assertEqual(c.gate_in_slot(2, 1), g.Control)
        self.assertIsNone(c.gate_in_slot(0, 0))
        self.assertIsNone(c.gate_in_slot(5, 0))

    def test_covered_slots_in_diagram(self) -> None:
        c = circuit("R\n/\n/\n")
        self.assertEqual(c.gate_in_slot(0, 0), g.ReverseBitsFamily[3])
        self.assertEqual(c.find_gate_covering_slot(0, 2), (0, g.ReverseBitsFamily[3]))
        with self.assertRaises(ValueError):
            circuit("?")

    def test_rejects_bad_shapes(self) -> None:
        with self.assertRaises(ValueError):
            CircuitDefinition(0, [])
        with self.assertRaises(ValueError):
            CircuitDefinition(2, [GateColumn.empty(3)])
        with self.assertRaises(ValueError):
            CircuitDefinition(2, [GateColumn([None, g.ReverseBitsFamily[2]])])

    def test_equality(self) -> None:
        self.assertEqual(circuit("XH\n-•"), circuit("XH\n-•"))
        self.assertNotEqual(circuit("XH\n-•"), circuit("XH\n-◦"))
        self.assertNotEqual(circuit("X"), circuit("X\n-"))

    def test_col_controls(self) -> None:
        c = circuit("•X-\n◦◦-\nX--")
        self.assertEqual(c.col_controls(0), Controls(0b011, 0b001))
        self.assertEqual(c.col_controls(1), Controls(0b010, 0b000))
        self.assertEqual(c.col_controls(2), Controls.NONE)
        self.assertEqual(c.col_controls(-1), Controls.NONE)
        self.assertEqual(c.col_controls(10), Controls.NONE)

    def test_operation_kernels_in_column(self) -> None:
        c = circuit("X\nH\n•")
        kernels = c.operation_shaders_in_col_at(0, 0)
        self.assertEqual([k.kind for k in kernels], [KernelKind.MATRIX, KernelKind.MATRIX])
        self.assertEqual([k.offset for k in kernels], [0, 1])
        self.assertEqual(c.operation_shaders_in_col_at(3, 0), [])

    def test_time_dependent_kernels(self) -> None:
        c = circuit("t")
        half = c.operation_shaders_in_col_at(0, 0.5)[0].matrix
        full = c.operation_shaders_in_col_at(0, 1)[0].matrix
        assert half is not None and full is not None
        self.assertTrue(full.is_approximately_equal_to(g.X.matrix_at(0)))
        self.assertTrue((half @ half).is_approximately_equal_to(g.X.matrix_at(0)))

    def test_swap_pairs(self) -> None:
        c = circuit("s\n-\ns")
        self.assertTrue(c.col_has_enabled_swap_gate(0))
        self.assertTrue(c.col_has_non_local_gates(0))
        self.assertEqual(c.operation_shaders_in_col_at(0, 0), [Kernel.swap(0, 2)])
        self.assertIsNone(c.gate_at_loc_is_disabled_reason(0, 0))

        lone = circuit("s\n-")
        self.assertFalse(lone.col_has_enabled_swap_gate(0))
        self.assertEqual(lone.operation_shaders_in_col_at(0, 0), [])
        self.assertIsNotNone(lone.gate_at_loc_is_disabled_reason(0, 0))

        crowded = circuit("s\ns\ns")
        self.assertEqual(crowded.operation_shaders_in_col_at(0, 0), [])
        self.assertIsNotNone(crowded.gate_at_loc_is_disabled_reason(0, 1))

    def test_reverse_bits_kernels(self) -> None:
        c = circuit("-\nR\n/\n/")
        self.assertEqual(c.operation_shaders_in_col_at(0, 0), [Kernel.swap(1, 3)])
        self.assertFalse(c.col_has_non_local_gates(0))

    def test_setup_kernels(self) -> None:
        c = circuit("⊕\n0\nX")
        before = c.get_setup_shaders_in_col(0, True)
        after = c.get_setup_shaders_in_col(0, False)
        self.assertEqual([k.offset for k in before], [0, 1])
        self.assertEqual([k.offset for k in after], [0])
        self.assertEqual(c.col_controls(0), Controls.bit(0, False))

    def test_measured_mask_is_inclusive_and_cumulative(self) -> None:
        c = circuit("-M--\n--M-")
        self.assertEqual(c.col_is_measured_mask(-1), 0)
        self.assertEqual(c.col_is_measured_mask(0), 0)
        self.assertEqual(c.col_is_measured_mask(1), 0b01)
        self.assertEqual(c.col_is_measured_mask(2), 0b11)
        self.assertEqual(c.col_is_measured_mask(3), 0b11)
        self.assertEqual(c.col_is_measured_mask(4), 0b11)
        self.assertEqual(c.col_is_measured_mask(math.inf), 0b11)
        self.assertEqual(CircuitDefinition(2, []).col_is_measured_mask(0), 0)

    def test_display_masks_and_custom_stat_rows(self) -> None:
        c = circuit("C-\n-P\nC/")
        self.assertEqual(c.col_has_single_qubit_display_mask(0), 0b101)
        self.assertEqual(c.col_has_single_qubit_display_mask(1), 0)
        self.assertEqual(c.custom_stat_rows_in_col(0), [])
        self.assertEqual(c.custom_stat_rows_in_col(1), [1])

    def test_modifications(self) -> None:
        c = circuit("X-\n-H")
        wider = c.with_wire_count(3)
        self.assertEqual(wider.num_wires, 3)
        self.assertEqual(wider.gate_in_slot(1, 1), g.H)
        self.assertEqual(wider.with_wire_count(2), c)
        self.assertIs(c.with_wire_count(2), c)

        dropped = circuit("R\n/\n/").with_wire_count(2)
        self.assertTrue(dropped.columns[0].is_empty())

        inserted = c.with_column_inserted(1)
        self.assertEqual(inserted.num_cols, 3)
        self.assertTrue(inserted.columns[1].is_empty())
        self.assertEqual(inserted.with_columns(c.columns), c)

        padded = c.with_column_inserted(2).with_column_inserted(3)
        self.assertEqual(padded.with_trailing_empty_columns_removed(), c)

    def test_min_wires(self) -> None:
        self.assertEqual(circuit("X\n-\n-").min_wires(), 1)
        self.assertEqual(circuit("-\nR\n/\n/\n-").min_wires(), 4)
        self.assertEqual(CircuitDefinition(3, []).min_wires(), 1)


if __name__ == "__main__":
    unittest.main()
