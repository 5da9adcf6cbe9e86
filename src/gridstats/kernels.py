"""State-transforming and statistic-extracting kernels.

Every kernel reads a source buffer (and optionally a boolean control buffer)
and writes into a freshly allocated output buffer. Kernels never keep state
between invocations.

Bit ``w`` of a basis index holds the value of wire ``w``, so wire 0 is the
least significant bit.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum

import numpy as np
import numpy.typing as npt
import torch

from gridstats.controls import Controls
from gridstats.errors import KernelFaultError
from gridstats.matrix import Matrix


class KernelKind(IntEnum):
    MATRIX = 1
    SWAP = 2
    FAULT = 3
    CONTROL = 4
    QUBIT_DENSITIES = 5
    SPAN_PROBABILITIES = 6
    SPAN_DENSITY = 7
    DECOHERE = 8


@dataclass(frozen=True, slots=True)
class Kernel:
    kind: KernelKind
    offset: int = 0
    span: int = 1
    matrix: Matrix | None = None
    aux: int = -1
    controls: Controls = Controls.NONE
    mask: int = 0
    message: str = ""

    @staticmethod
    def apply_matrix(matrix: Matrix, offset: int) -> Kernel:
        span = matrix.width().bit_length() - 1
        if matrix.width() != matrix.height() or matrix.width() != 1 << span:
            raise ValueError(f"Matrix must be square with a power-of-two size, got {matrix.height()}x{matrix.width()}")
        return Kernel(KernelKind.MATRIX, offset=offset, span=span, matrix=matrix)

    @staticmethod
    def swap(bit1: int, bit2: int) -> Kernel:
        if bit1 == bit2:
            raise ValueError(f"Can't swap a bit with itself: {bit1}")
        return Kernel(KernelKind.SWAP, offset=min(bit1, bit2), aux=max(bit1, bit2))

    @staticmethod
    def fault(offset: int, message: str = "Applied an Error Injection Gate") -> Kernel:
        return Kernel(KernelKind.FAULT, offset=offset, message=message)

    @staticmethod
    def control(controls: Controls) -> Kernel:
        return Kernel(KernelKind.CONTROL, controls=controls)

    @staticmethod
    def qubit_densities(controls: Controls, wire_mask: int) -> Kernel:
        return Kernel(KernelKind.QUBIT_DENSITIES, controls=controls, mask=wire_mask)

    @staticmethod
    def span_probabilities(offset: int, span: int) -> Kernel:
        return Kernel(KernelKind.SPAN_PROBABILITIES, offset=offset, span=span)

    @staticmethod
    def span_density(offset: int, span: int) -> Kernel:
        return Kernel(KernelKind.SPAN_DENSITY, offset=offset, span=span)

    @staticmethod
    def decohere(measured_mask: int, wire_mask: int = 0) -> Kernel:
        """Decoherence of a density buffer on the measured bits.

        With a ``wire_mask`` the buffer holds packed 2x2 matrices, one per
        wire in the mask, as written by :meth:`qubit_densities`.
        """
        return Kernel(KernelKind.DECOHERE, mask=measured_mask, aux=wire_mask)

    def output_spec(self, source_shape: tuple[int, ...], num_wires: int) -> tuple[tuple[int, ...], torch.dtype]:
        """Shape and dtype of the buffer this kernel writes."""
        if self.kind in (KernelKind.MATRIX, KernelKind.SWAP, KernelKind.FAULT, KernelKind.DECOHERE):
            return source_shape, torch.complex64
        if self.kind == KernelKind.CONTROL:
            return (1 << num_wires,), torch.bool
        if self.kind == KernelKind.QUBIT_DENSITIES:
            count = (self.mask & ((1 << num_wires) - 1)).bit_count()
            return (count, 2, 2), torch.complex64
        if self.kind == KernelKind.SPAN_PROBABILITIES:
            return (1 << self.span,), torch.float32
        return (1 << self.span, 1 << self.span), torch.complex64

    def run(self, source: torch.Tensor | None, control: torch.Tensor | None, out: torch.Tensor, time: float) -> None:
        _KERNELS[self.kind](self, source, control, out, time)


def control_mask(num_wires: int, controls: Controls, device: torch.device | None = None) -> torch.Tensor:
    """Boolean tensor marking the basis indices allowed by ``controls``."""
    indices = torch.arange(1 << num_wires, device=device, dtype=torch.int64)
    return (indices & controls.inclusion_mask) == controls.desired_value_mask


def decohere_measured_bits(density: torch.Tensor, measured_mask: int) -> torch.Tensor:
    """Zeroes density matrix entries whose row and column differ on a measured bit.

    Models deferred measurement: branches a mid-circuit measurement would have
    distinguished lose their coherence, but no branch is collapsed away.
    """
    if measured_mask == 0:
        return density
    n = density.shape[-1]
    r = torch.arange(n, device=density.device, dtype=torch.int64)
    keep = ((r[:, None] ^ r[None, :]) & measured_mask) == 0
    return torch.where(keep, density, torch.zeros((), dtype=density.dtype, device=density.device))


def _num_wires(state: torch.Tensor) -> int:
    return state.numel().bit_length() - 1


def _allowed(state: torch.Tensor, control: torch.Tensor | None) -> torch.Tensor:
    if control is None:
        return state
    return torch.where(control, state, torch.zeros((), dtype=state.dtype, device=state.device))


def _run_matrix(kernel: Kernel, source: torch.Tensor | None, control: torch.Tensor | None, out: torch.Tensor, time: float) -> None:
    assert source is not None and kernel.matrix is not None
    if kernel.offset + kernel.span > _num_wires(source):
        raise KernelFaultError("Matrix runs past the last wire", {"offset": kernel.offset, "span": kernel.span})
    m = kernel.matrix.to_torch(source.device)
    s = source.reshape(-1, 1 << kernel.span, 1 << kernel.offset)
    applied = torch.einsum("ij,hjl->hil", m, s).reshape(-1)
    if control is None:
        _ = out.copy_(applied)
    else:
        _ = out.copy_(torch.where(control, applied, source))


def _run_swap(kernel: Kernel, source: torch.Tensor | None, control: torch.Tensor | None, out: torch.Tensor, time: float) -> None:
    assert source is not None
    a, b = kernel.offset, kernel.aux
    indices = torch.arange(source.numel(), device=source.device, dtype=torch.int64)
    diff = ((indices >> a) ^ (indices >> b)) & 1
    partner = indices ^ (diff << a) ^ (diff << b)
    swapped = source[partner]
    if control is None:
        _ = out.copy_(swapped)
    else:
        _ = out.copy_(torch.where(control, swapped, source))


def _run_fault(kernel: Kernel, source: torch.Tensor | None, control: torch.Tensor | None, out: torch.Tensor, time: float) -> None:
    raise KernelFaultError(kernel.message, {"qubit": kernel.offset})


def _run_control(kernel: Kernel, source: torch.Tensor | None, control: torch.Tensor | None, out: torch.Tensor, time: float) -> None:
    _ = out.copy_(control_mask(_num_wires(out), kernel.controls, out.device))


def _run_qubit_densities(kernel: Kernel, source: torch.Tensor | None, control: torch.Tensor | None, out: torch.Tensor, time: float) -> None:
    assert source is not None
    n = _num_wires(source)
    wires = [w for w in range(n) if kernel.mask & (1 << w)]
    for i, wire in enumerate(wires):
        # A wire is never conditioned on itself.
        allowed = control_mask(n, kernel.controls.without_bit(wire), source.device)
        s = _allowed(source, allowed).reshape(-1, 2, 1 << wire)
        _ = out[i].copy_(torch.einsum("hil,hjl->ij", s, s.conj()))


def _run_span_probabilities(kernel: Kernel, source: torch.Tensor | None, control: torch.Tensor | None, out: torch.Tensor, time: float) -> None:
    assert source is not None
    s = _allowed(source, control).reshape(-1, 1 << kernel.span, 1 << kernel.offset)
    _ = out.copy_((s.abs() ** 2).sum(dim=(0, 2)))


def _run_span_density(kernel: Kernel, source: torch.Tensor | None, control: torch.Tensor | None, out: torch.Tensor, time: float) -> None:
    assert source is not None
    s = _allowed(source, control).reshape(-1, 1 << kernel.span, 1 << kernel.offset)
    _ = out.copy_(torch.einsum("hil,hjl->ij", s, s.conj()))


def _run_decohere(kernel: Kernel, source: torch.Tensor | None, control: torch.Tensor | None, out: torch.Tensor, time: float) -> None:
    assert source is not None
    if kernel.aux <= 0:
        _ = out.copy_(decohere_measured_bits(source, kernel.mask))
        return
    wires = [w for w in range(kernel.aux.bit_length()) if kernel.aux & (1 << w)]
    for i, wire in enumerate(wires):
        _ = out[i].copy_(decohere_measured_bits(source[i], (kernel.mask >> wire) & 1))


_KERNELS: dict[KernelKind, Callable[[Kernel, torch.Tensor | None, torch.Tensor | None, torch.Tensor, float], None]] = {
    KernelKind.MATRIX: _run_matrix,
    KernelKind.SWAP: _run_swap,
    KernelKind.FAULT: _run_fault,
    KernelKind.CONTROL: _run_control,
    KernelKind.QUBIT_DENSITIES: _run_qubit_densities,
    KernelKind.SPAN_PROBABILITIES: _run_span_probabilities,
    KernelKind.SPAN_DENSITY: _run_span_density,
    KernelKind.DECOHERE: _run_decohere,
}


# -- host-side interpretation of read-back floats ---------------------------

def pixels_to_amplitudes(floats: npt.NDArray[np.float32], unity: float) -> Matrix:
    """Column vector of amplitudes, normalized so the surviving mass is one."""
    raw = np.asarray(floats, dtype=np.float32).reshape(-1, 2)
    amps = (raw[:, 0] + 1j * raw[:, 1]).astype(np.complex64)
    with np.errstate(divide="ignore", invalid="ignore"):
        amps = amps / np.float32(np.sqrt(unity))
    return Matrix(amps.reshape(-1, 1))


def pixels_to_qubit_density_matrices(floats: npt.NDArray[np.float32]) -> list[Matrix]:
    """Trace-normalized 2x2 density matrices from packed reads.

    A matrix whose conditioned mass is zero comes back NaN-filled.
    """
    raw = np.asarray(floats, dtype=np.float32).reshape(-1, 2, 2, 2)
    result: list[Matrix] = []
    for packed in raw:
        rho = packed[..., 0] + 1j * packed[..., 1]
        trace = float(rho[0, 0].real + rho[1, 1].real)
        with np.errstate(divide="ignore", invalid="ignore"):
            result.append(Matrix(rho / np.float32(trace)))
    return result


def decohere_matrix(density: Matrix, measured_mask: int) -> Matrix:
    """Host-side :func:`decohere_measured_bits` for a :class:`Matrix`."""
    if measured_mask == 0:
        return density
    tensor = torch.from_numpy(np.array(density.to_numpy()))
    return Matrix(decohere_measured_bits(tensor, measured_mask).numpy())
