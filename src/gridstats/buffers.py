"""Ownership-tracked state buffers with deferred kernel dispatch.

Every buffer handed out by :class:`BufferManager` is owned by exactly one
caller. Passing a buffer to a consuming call (``apply_custom_shader``,
``merged_read_floats``) or to :meth:`BufferManager.release` gives it back.
Kernel applications only record :class:`DispatchNode` entries; they run when
the graph is flushed, which happens at read-back time.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any, TypeVar

import numpy as np
import numpy.typing as npt
import torch

from gridstats.config import DEFAULT, Config, resolve_device
from gridstats.controls import Controls
from gridstats.errors import BufferAccountingError
from gridstats.kernels import Kernel

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class BufferHandle:
    """Opaque reference to a buffer owned through a :class:`BufferManager`."""
    index: int


@dataclass(slots=True)
class _Slot:
    shape: tuple[int, ...]
    dtype: torch.dtype
    label: str
    tensor: torch.Tensor | None
    refs: int = 1
    pending_uses: int = 0

    @property
    def nbytes(self) -> int:
        count = 1
        for dim in self.shape:
            count *= dim
        return count * _itemsize(self.dtype)


@dataclass(frozen=True, slots=True)
class DispatchNode:
    kernel: Kernel
    source: BufferHandle | None
    control: BufferHandle | None
    output: BufferHandle
    time: float


@dataclass(slots=True)
class DispatchGraph:
    nodes: list[DispatchNode] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.nodes)

    def kind_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for node in self.nodes:
            name = node.kernel.kind.name
            counts[name] = counts.get(name, 0) + 1
        return counts


def _itemsize(dtype: torch.dtype) -> int:
    return torch.empty((), dtype=dtype).element_size()


class BufferManager:
    """Allocates, schedules against and reclaims state buffers.

    Usable as a context manager: a clean exit checks that every buffer was
    released, an exit by exception reclaims whatever is still outstanding.
    """
    device: torch.device
    config: Config
    allocation_count: int
    release_count: int
    read_count: int
    flush_count: int
    peak_live_count: int

    def __init__(self, config: Config | None = None, device: torch.device | None = None):
        self.config = config or DEFAULT
        self.device = device or resolve_device(self.config)
        self._slots: dict[int, _Slot] = {}
        self._pool: dict[tuple[tuple[int, ...], torch.dtype], list[torch.Tensor]] = {}
        self._pooled_bytes = 0
        self._graph = DispatchGraph()
        self._next_index = 0
        self._live = 0
        self.allocation_count = 0
        self.release_count = 0
        self.read_count = 0
        self.flush_count = 0
        self.peak_live_count = 0

    def __enter__(self) -> BufferManager:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is None:
            self.assert_no_leaks()
        else:
            self.abandon()

    # -- bookkeeping -------------------------------------------------------

    @property
    def live_count(self) -> int:
        return self._live

    @property
    def pooled_bytes(self) -> int:
        return self._pooled_bytes

    @property
    def pending_count(self) -> int:
        return len(self._graph)

    def live_labels(self) -> list[str]:
        return [slot.label for slot in self._slots.values() if slot.refs > 0]

    def _slot(self, handle: BufferHandle, usage: str) -> _Slot:
        slot = self._slots.get(handle.index)
        if slot is None:
            raise BufferAccountingError("Unknown buffer", {"handle": handle.index, "usage": usage})
        if slot.refs <= 0:
            raise BufferAccountingError(
                "Buffer used after release",
                {"handle": handle.index, "label": slot.label, "usage": usage},
            )
        return slot

    def is_owned(self, handle: BufferHandle) -> bool:
        slot = self._slots.get(handle.index)
        return slot is not None and slot.refs > 0

    def _refs(self, handle: BufferHandle) -> int:
        slot = self._slots.get(handle.index)
        return 0 if slot is None else slot.refs

    def _allocate(self, shape: tuple[int, ...], dtype: torch.dtype, label: str) -> BufferHandle:
        key = (shape, dtype)
        pooled = self._pool.get(key)
        if pooled:
            tensor = pooled.pop()
            self._pooled_bytes -= tensor.numel() * tensor.element_size()
        else:
            tensor = torch.empty(shape, dtype=dtype, device=self.device)

        handle = BufferHandle(self._next_index)
        self._next_index += 1
        self._slots[handle.index] = _Slot(shape=shape, dtype=dtype, label=label, tensor=tensor)
        self.allocation_count += 1
        self._live += 1
        self.peak_live_count = max(self.peak_live_count, self._live)
        return handle

    def _recycle(self, slot: _Slot) -> None:
        if slot.refs > 0 or slot.pending_uses > 0 or slot.tensor is None:
            return
        tensor = slot.tensor
        slot.tensor = None
        limit = self.config.pool_limit_bytes
        if limit is not None and self._pooled_bytes + slot.nbytes > limit:
            return
        self._pool.setdefault((slot.shape, slot.dtype), []).append(tensor)
        self._pooled_bytes += slot.nbytes

    def retain(self, handle: BufferHandle) -> BufferHandle:
        """Adds an owner to ``handle``. Each retain needs its own release."""
        self._slot(handle, "retain").refs += 1
        return handle

    def release(self, handle: BufferHandle, reason: str = "") -> None:
        slot = self._slots.get(handle.index)
        if slot is None or slot.refs <= 0:
            raise BufferAccountingError(
                "Buffer released more than once",
                {"handle": handle.index, "label": None if slot is None else slot.label, "reason": reason},
            )
        slot.refs -= 1
        self.release_count += 1
        if slot.refs == 0:
            self._live -= 1
        self._recycle(slot)

    def assert_no_leaks(self) -> None:
        """Checks that every allocated buffer has been released.

        In debug mode a leak raises :class:`BufferAccountingError`; otherwise
        it is logged and the leaked buffers are reclaimed.
        """
        leaked = self.live_labels()
        if not leaked:
            return
        if self.config.debug_buffers:
            raise BufferAccountingError("Buffers were never released", {"labels": leaked})
        logger.warning("Reclaiming %d leaked buffers: %s", len(leaked), leaked)
        self.abandon()

    def abandon(self) -> None:
        """Drops pending work and reclaims every outstanding buffer."""
        self._graph = DispatchGraph()
        for slot in self._slots.values():
            slot.pending_uses = 0
            if slot.refs > 0:
                self.release_count += slot.refs
                slot.refs = 0
                self._live -= 1
            self._recycle(slot)

    # -- allocation --------------------------------------------------------

    def zero(self, num_wires: int) -> BufferHandle:
        """A new buffer holding the all-wires-off basis state."""
        handle = self._allocate((1 << num_wires,), torch.complex64, f"zero({num_wires})")
        tensor = self._slots[handle.index].tensor
        assert tensor is not None
        _ = tensor.zero_()
        tensor[0] = 1
        return handle

    def control(self, num_wires: int, controls: Controls) -> BufferHandle:
        """A new boolean buffer marking the basis states allowed by ``controls``."""
        kernel = Kernel.control(controls)
        handle = self._allocate((1 << num_wires,), torch.bool, f"control({controls})")
        self._slots[handle.index].pending_uses += 1
        self._graph.nodes.append(DispatchNode(kernel, None, None, handle, 0.0))
        return handle

    # -- scheduling --------------------------------------------------------

    def _enqueue(
        self,
        kernel: Kernel,
        source: BufferHandle,
        control: BufferHandle | None,
        time: float,
        label: str,
    ) -> BufferHandle:
        source_slot = self._slot(source, label)
        control_slot = None if control is None else self._slot(control, label)
        num_wires = source_slot.shape[0].bit_length() - 1
        shape, dtype = kernel.output_spec(source_slot.shape, num_wires)
        output = self._allocate(shape, dtype, label)
        self._slots[output.index].pending_uses += 1
        source_slot.pending_uses += 1
        if control_slot is not None:
            control_slot.pending_uses += 1
        self._graph.nodes.append(DispatchNode(kernel, source, control, output, time))
        return output

    def apply_custom_shader(
        self,
        kernel: Kernel,
        buffer: BufferHandle,
        control_buffer: BufferHandle | None,
        time: float,
    ) -> BufferHandle:
        """Schedules ``kernel`` against ``buffer``, consuming it.

        ``control_buffer`` is only borrowed. The returned buffer is owned by
        the caller.
        """
        output = self._enqueue(kernel, buffer, control_buffer, time, f"{kernel.kind.name.lower()}@{kernel.offset}")
        self.release(buffer, "consumed by apply_custom_shader")
        return output

    def superposition_to_qubit_densities(
        self,
        buffer: BufferHandle,
        controls: Controls,
        wire_mask: int,
    ) -> BufferHandle:
        """Borrows ``buffer`` and returns packed 2x2 densities for each wire in ``wire_mask``."""
        return self._enqueue(
            Kernel.qubit_densities(controls, wire_mask), buffer, None, 0.0, f"densities(mask={wire_mask})"
        )

    def evaluate_custom_stat(
        self,
        kernel: Kernel,
        buffer: BufferHandle,
        control_buffer: BufferHandle | None,
        time: float,
    ) -> BufferHandle:
        """Borrows ``buffer`` and ``control_buffer``, returning the stat kernel's output."""
        return self._enqueue(kernel, buffer, control_buffer, time, f"stat:{kernel.kind.name.lower()}@{kernel.offset}")

    def aggregate_with_reuse(
        self,
        initial: BufferHandle,
        items: Iterable[T],
        fn: Callable[[BufferHandle, T], BufferHandle],
    ) -> BufferHandle:
        """Folds ``fn`` over ``items``, releasing every superseded accumulator.

        ``fn`` may either consume the accumulator it is given or only borrow
        it. A borrowed accumulator gives up the reference the fold holds once
        it is replaced; references retained elsewhere are left alone.
        """
        acc = initial
        for item in items:
            refs = self._refs(acc)
            nxt = fn(acc, item)
            if nxt != acc and self._refs(acc) == refs:
                self.release(acc, "superseded in aggregate_with_reuse")
            acc = nxt
        return acc

    # -- execution ---------------------------------------------------------

    @torch.inference_mode()
    def flush(self) -> None:
        """Runs every pending dispatch node in the order it was recorded."""
        graph = self._graph
        self._graph = DispatchGraph()
        if not graph.nodes:
            return

        if self.config.dump_plan:
            print(
                "[gridstats-flush] "
                f"nodes={len(graph)} "
                f"kinds={graph.kind_counts()} "
                f"live={self.live_count} "
                f"pooled={self._pooled_bytes}"
            )

        self.flush_count += 1
        try:
            for node in graph.nodes:
                self._run(node)
        except BaseException:
            for slot in self._slots.values():
                slot.pending_uses = 0
                self._recycle(slot)
            raise

    def _run(self, node: DispatchNode) -> None:
        source = None if node.source is None else self._slots[node.source.index]
        control = None if node.control is None else self._slots[node.control.index]
        output = self._slots[node.output.index]
        assert output.tensor is not None

        node.kernel.run(
            None if source is None else source.tensor,
            None if control is None else control.tensor,
            output.tensor,
            node.time,
        )

        for slot in (source, control, output):
            if slot is not None:
                slot.pending_uses -= 1
                self._recycle(slot)

    def merged_read_floats(self, structure: Any) -> Any:
        """Reads every buffer in ``structure`` back to the host in one transfer.

        ``structure`` may nest dicts, lists and tuples of handles; the result
        mirrors it with float32 arrays (complex buffers are interleaved
        real/imaginary). Each distinct handle is read once and then released.
        """
        self.flush()

        handles: dict[int, BufferHandle] = {}
        for handle in _walk(structure):
            _ = self._slot(handle, "merged_read_floats")
            handles.setdefault(handle.index, handle)

        flats: list[torch.Tensor] = []
        for index in handles:
            tensor = self._slots[index].tensor
            assert tensor is not None
            flats.append(_as_flat_floats(tensor))

        arrays: dict[int, npt.NDArray[np.float32]] = {}
        if flats:
            host = torch.cat(flats).cpu().numpy()
            self.read_count += 1
            start = 0
            for index, flat in zip(handles, flats):
                arrays[index] = host[start:start + flat.numel()]
                start += flat.numel()

        for handle in handles.values():
            self.release(handle, "consumed by merged_read_floats")

        return _rebuild(structure, arrays)


def _as_flat_floats(tensor: torch.Tensor) -> torch.Tensor:
    if tensor.is_complex():
        return torch.view_as_real(tensor.contiguous()).reshape(-1).to(torch.float32)
    return tensor.reshape(-1).to(torch.float32)


def _walk(structure: Any) -> Iterator[BufferHandle]:
    if isinstance(structure, BufferHandle):
        yield structure
    elif isinstance(structure, dict):
        for value in structure.values():
            yield from _walk(value)
    elif isinstance(structure, (list, tuple)):
        for value in structure:
            yield from _walk(value)
    else:
        raise TypeError(f"Not a buffer structure: {type(structure).__name__}")


def _rebuild(structure: Any, arrays: dict[int, npt.NDArray[np.float32]]) -> Any:
    if isinstance(structure, BufferHandle):
        return arrays[structure.index]
    if isinstance(structure, dict):
        return {key: _rebuild(value, arrays) for key, value in structure.items()}
    if isinstance(structure, tuple):
        return tuple(_rebuild(value, arrays) for value in structure)
    return [_rebuild(value, arrays) for value in structure]
