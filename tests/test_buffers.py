from __future__ import annotations

import unittest
from contextlib import redirect_stdout
from io import StringIO

import numpy as np
import torch

from gridstats.buffers import BufferHandle, BufferManager
from gridstats.config import Config
from gridstats.controls import Controls
from gridstats.errors import BufferAccountingError, KernelFaultError
from gridstats.kernels import Kernel
from gridstats.matrix import Matrix

X = Matrix.square(0, 1, 1, 0)


def cpu_config(**overrides: object) -> Config:
    config = Config(device="cpu", debug_buffers=True, pool_limit_bytes=1 << 20, dump_plan=False)
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


class BufferManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.buffers = BufferManager(cpu_config(), device=torch.device("cpu"))

    def test_zero_reads_back_basis_state(self) -> None:
        handle = self.buffers.zero(2)
        floats = self.buffers.merged_read_floats(handle)
        np.testing.assert_array_equal(floats, np.array([1, 0, 0, 0, 0, 0, 0, 0], dtype=np.float32))
        self.assertEqual(self.buffers.live_count, 0)
        self.buffers.assert_no_leaks()

    def test_apply_custom_shader_consumes_input(self) -> None:
        state = self.buffers.zero(1)
        output = self.buffers.apply_custom_shader(Kernel.apply_matrix(X, 0), state, None, 0.0)
        self.assertFalse(self.buffers.is_owned(state))
        self.assertTrue(self.buffers.is_owned(output))
        self.assertEqual(self.buffers.pending_count, 1)

        floats = self.buffers.merged_read_floats(output)
        np.testing.assert_array_equal(floats, np.array([0, 0, 1, 0], dtype=np.float32))
        self.assertEqual(self.buffers.pending_count, 0)
        self.buffers.assert_no_leaks()

    def test_execution_is_deferred_until_read(self) -> None:
        state = self.buffers.zero(1)
        output = self.buffers.apply_custom_shader(Kernel.fault(0), state, None, 0.0)
        self.assertEqual(self.buffers.flush_count, 0)
        with self.assertRaises(KernelFaultError):
            self.buffers.merged_read_floats(output)

    def test_double_release_detected(self) -> None:
        handle = self.buffers.zero(1)
        self.buffers.release(handle)
        with self.assertRaisesRegex(BufferAccountingError, "more than once"):
            self.buffers.release(handle)

    def test_use_after_release_detected(self) -> None:
        handle = self.buffers.zero(1)
        self.buffers.release(handle)
        with self.assertRaisesRegex(BufferAccountingError, "after release"):
            self.buffers.apply_custom_shader(Kernel.apply_matrix(X, 0), handle, None, 0.0)

    def test_leak_detected(self) -> None:
        _ = self.buffers.zero(1)
        with self.assertRaises(BufferAccountingError) as ctx:
            self.buffers.assert_no_leaks()
        self.assertEqual(ctx.exception.details["labels"], ["zero(1)"])

    def test_leak_reclaimed_outside_debug_mode(self) -> None:
        buffers = BufferManager(cpu_config(debug_buffers=False), device=torch.device("cpu"))
        _ = buffers.zero(1)
        with self.assertLogs("gridstats.buffers", level="WARNING"):
            buffers.assert_no_leaks()
        self.assertEqual(buffers.live_count, 0)

    def test_context_manager_checks_leaks(self) -> None:
        with self.assertRaises(BufferAccountingError):
            with self.buffers as buffers:
                _ = buffers.zero(1)

    def test_context_manager_reclaims_on_error(self) -> None:
        with self.assertRaises(KernelFaultError):
            with self.buffers as buffers:
                state = buffers.zero(1)
                out = buffers.apply_custom_shader(Kernel.fault(0), state, None, 0.0)
                buffers.merged_read_floats(out)
        self.assertEqual(self.buffers.live_count, 0)
        self.buffers.assert_no_leaks()

    def test_retain_needs_matching_release(self) -> None:
        handle = self.buffers.retain(self.buffers.zero(1))
        self.buffers.release(handle)
        self.assertTrue(self.buffers.is_owned(handle))
        self.buffers.release(handle)
        self.assertFalse(self.buffers.is_owned(handle))

    def test_released_buffers_are_pooled_and_reused(self) -> None:
        first = self.buffers.zero(3)
        tensor = self.buffers._slots[first.index].tensor
        self.buffers.release(first)
        self.assertEqual(self.buffers.pooled_bytes, 8 * 8)

        second = self.buffers.zero(3)
        self.assertIs(self.buffers._slots[second.index].tensor, tensor)
        self.assertEqual(self.buffers.pooled_bytes, 0)
        self.buffers.release(second)

    def test_pool_is_bounded(self) -> None:
        buffers = BufferManager(cpu_config(pool_limit_bytes=16), device=torch.device("cpu"))
        buffers.release(buffers.zero(3))
        self.assertEqual(buffers.pooled_bytes, 0)

    def test_inputs_not_recycled_before_pending_reads(self) -> None:
        state = self.buffers.zero(1)
        output = self.buffers.apply_custom_shader(Kernel.apply_matrix(X, 0), state, None, 0.0)
        # The consumed input is still waiting to be read by the pending node.
        self.assertEqual(self.buffers.pooled_bytes, 0)
        other = self.buffers.zero(1)
        self.assertIsNot(self.buffers._slots[other.index].tensor, self.buffers._slots[state.index].tensor)
        floats = self.buffers.merged_read_floats([output, other])
        np.testing.assert_array_equal(floats[0], np.array([0, 0, 1, 0], dtype=np.float32))
        np.testing.assert_array_equal(floats[1], np.array([1, 0, 0, 0], dtype=np.float32))

    def test_control_buffer(self) -> None:
        control = self.buffers.control(2, Controls.bit(1, True))
        floats = self.buffers.merged_read_floats(control)
        np.testing.assert_array_equal(floats, np.array([0, 0, 1, 1], dtype=np.float32))

    def test_superposition_to_qubit_densities_borrows(self) -> None:
        state = self.buffers.zero(2)
        densities = self.buffers.superposition_to_qubit_densities(state, Controls.NONE, 0b10)
        self.assertTrue(self.buffers.is_owned(state))
        result = self.buffers.merged_read_floats({"state": state, "densities": densities})
        np.testing.assert_array_equal(result["densities"], np.array([1, 0, 0, 0, 0, 0, 0, 0], dtype=np.float32))
        self.assertEqual(len(result["state"]), 8)
        self.buffers.assert_no_leaks()

    def test_merged_read_is_a_single_transfer(self) -> None:
        a = self.buffers.zero(1)
        b = self.buffers.zero(2)
        c = self.buffers.control(1, Controls.NONE)
        result = self.buffers.merged_read_floats({"a": a, "rest": [b, (c,)], "none": []})
        self.assertEqual(self.buffers.read_count, 1)
        self.assertEqual(len(result["a"]), 4)
        self.assertEqual(len(result["rest"][0]), 8)
        self.assertIsInstance(result["rest"][1], tuple)
        np.testing.assert_array_equal(result["rest"][1][0], np.array([1, 1], dtype=np.float32))
        self.assertEqual(result["none"], [])
        self.buffers.assert_no_leaks()

    def test_merged_read_rejects_non_handles(self) -> None:
        with self.assertRaises(TypeError):
            self.buffers.merged_read_floats({"a": 1})

    def test_aggregate_with_reuse_releases_superseded(self) -> None:
        def borrow_step(acc: BufferHandle, _: int) -> BufferHandle:
            return self.buffers.evaluate_custom_stat(Kernel.apply_matrix(X, 0), acc, None, 0.0)

        result = self.buffers.aggregate_with_reuse(self.buffers.zero(1), range(3), borrow_step)
        self.assertEqual(self.buffers.live_count, 1)
        floats = self.buffers.merged_read_floats(result)
        np.testing.assert_array_equal(floats, np.array([0, 0, 1, 0], dtype=np.float32))
        self.buffers.assert_no_leaks()

    def test_aggregate_with_reuse_over_consuming_steps(self) -> None:
        result = self.buffers.aggregate_with_reuse(
            self.buffers.zero(1),
            [Kernel.apply_matrix(X, 0)] * 4,
            lambda acc, kernel: self.buffers.apply_custom_shader(kernel, acc, None, 0.0),
        )
        self.assertLessEqual(self.buffers.peak_live_count, 2)
        floats = self.buffers.merged_read_floats(result)
        np.testing.assert_array_equal(floats, np.array([1, 0, 0, 0], dtype=np.float32))
        self.assertEqual(self.buffers.allocation_count, self.buffers.release_count)

    def test_aggregate_with_reuse_keeps_retained_references(self) -> None:
        initial = self.buffers.retain(self.buffers.zero(1))
        result = self.buffers.aggregate_with_reuse(
            initial,
            [Kernel.apply_matrix(X, 0)],
            lambda acc, kernel: self.buffers.apply_custom_shader(kernel, acc, None, 0.0),
        )
        self.assertTrue(self.buffers.is_owned(initial))
        self.buffers.release(initial)

        borrowed = self.buffers.retain(result)
        result = self.buffers.aggregate_with_reuse(
            borrowed,
            range(1),
            lambda acc, _: self.buffers.evaluate_custom_stat(Kernel.apply_matrix(X, 0), acc, None, 0.0),
        )
        self.assertTrue(self.buffers.is_owned(borrowed))
        self.buffers.release(borrowed)

        floats = self.buffers.merged_read_floats(result)
        np.testing.assert_array_equal(floats, np.array([1, 0, 0, 0], dtype=np.float32))
        self.buffers.assert_no_leaks()

    def test_dump_plan_prints_summary(self) -> None:
        buffers = BufferManager(cpu_config(dump_plan=True), device=torch.device("cpu"))
        handle = buffers.control(1, Controls.NONE)
        captured = StringIO()
        with redirect_stdout(captured):
            _ = buffers.merged_read_floats([handle])
        self.assertIn("[gridstats-flush] nodes=1", captured.getvalue())


if __name__ == "__main__":
    unittest.main()
