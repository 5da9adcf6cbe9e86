"""Gate types that can be placed in a circuit grid, plus the built-in catalog.

Serialized ids are permanent: circuits saved with an id must keep loading,
so ids are never removed or repurposed.
"""

from __future__ import annotations

import math
from collections.abc import Callable
from enum import IntEnum
from typing import Any, override

import numpy as np
import numpy.typing as npt

from gridstats.controls import Controls
from gridstats.kernels import Kernel, KernelKind
from gridstats.matrix import Matrix

PostProcessor = Callable[[npt.NDArray[np.float32], Any, int, int], Any]


class GateKind(IntEnum):
    MATRIX = 1
    CONTROL = 2
    SWAP_HALF = 3
    PERMUTATION = 4
    MEASUREMENT = 5
    POST_SELECT = 6
    DISPLAY = 7
    SPACER = 8
    FAULT = 9


class Gate:
    """A placeable gate type.

    ``height`` is the number of wires the gate spans (downward from the slot
    it is placed in) and ``width`` the number of columns it spans.
    """
    __slots__ = (
        "serialized_id", "name", "kind", "height", "width",
        "_matrix", "time_axis", "control_bit", "setup_before", "setup_after",
        "custom_stat", "post_processor", "is_single_qubit_display", "is_non_local",
        "is_custom",
    )

    serialized_id: str
    name: str
    kind: GateKind
    height: int
    width: int
    _matrix: Matrix | None
    time_axis: tuple[float, float, float] | None
    control_bit: bool | None
    setup_before: Matrix | None
    setup_after: Matrix | None
    custom_stat: KernelKind | None
    post_processor: PostProcessor | None
    is_single_qubit_display: bool
    is_non_local: bool
    is_custom: bool

    def __init__(
        self,
        serialized_id: str,
        name: str,
        kind: GateKind,
        *,
        height: int = 1,
        width: int = 1,
        matrix: Matrix | None = None,
        time_axis: tuple[float, float, float] | None = None,
        control_bit: bool | None = None,
        setup_before: Matrix | None = None,
        setup_after: Matrix | None = None,
        custom_stat: KernelKind | None = None,
        post_processor: PostProcessor | None = None,
        is_single_qubit_display: bool = False,
        is_non_local: bool = False,
        is_custom: bool = False,
    ):
        if height < 1 or width < 1:
            raise ValueError(f"Gate {serialized_id!r} must span at least one wire and column")
        if matrix is not None and matrix.width() != 1 << height:
            raise ValueError(f"Gate {serialized_id!r} matrix size {matrix.width()} doesn't match height {height}")
        self.serialized_id = serialized_id
        self.name = name
        self.kind = kind
        self.height = height
        self.width = width
        self._matrix = matrix
        self.time_axis = time_axis
        self.control_bit = control_bit
        self.setup_before = setup_before
        self.setup_after = setup_after
        self.custom_stat = custom_stat
        self.post_processor = post_processor
        self.is_single_qubit_display = is_single_qubit_display
        self.is_non_local = is_non_local
        self.is_custom = is_custom

    @staticmethod
    def from_known_matrix(serialized_id: str, matrix: Matrix, name: str | None = None) -> Gate:
        height = matrix.width().bit_length() - 1
        if matrix.width() != matrix.height() or matrix.width() != 1 << height or height < 1:
            raise ValueError(f"Gate matrix must be square with a power-of-two size, got {matrix.height()}x{matrix.width()}")
        return Gate(serialized_id, name or serialized_id, GateKind.MATRIX, height=height, matrix=matrix, is_custom=True)

    def has_known_matrix(self) -> bool:
        return self._matrix is not None or self.time_axis is not None

    def is_time_dependent(self) -> bool:
        return self.time_axis is not None

    def is_control(self) -> bool:
        return self.control_bit is not None

    def is_measurement(self) -> bool:
        return self.kind == GateKind.MEASUREMENT

    def is_swap_half(self) -> bool:
        return self.kind == GateKind.SWAP_HALF

    def matrix_at(self, time: float) -> Matrix:
        if self.time_axis is not None:
            x, y, z = self.time_axis
            return Matrix.from_pauli_rotation(x * time, y * time, z * time)
        if self._matrix is None:
            raise ValueError(f"Gate {self.serialized_id!r} has no known matrix")
        return self._matrix

    def controls_at(self, row: int) -> Controls:
        if self.control_bit is None:
            return Controls.NONE
        return Controls.bit(row, self.control_bit)

    def operation_kernels(self, row: int, time: float) -> list[Kernel]:
        """Kernels this gate contributes when its top wire is ``row``.

        Swap halves are paired up by the column, not by the gate.
        """
        if self.kind == GateKind.MATRIX:
            return [Kernel.apply_matrix(self.matrix_at(time), row)]
        if self.kind == GateKind.PERMUTATION:
            return [Kernel.swap(row + i, row + self.height - i - 1) for i in range(self.height // 2)]
        if self.kind == GateKind.FAULT:
            return [Kernel.fault(row)]
        return []

    def setup_kernels(self, row: int, before: bool) -> list[Kernel]:
        matrix = self.setup_before if before else self.setup_after
        if matrix is None:
            return []
        return [Kernel.apply_matrix(matrix, row)]

    def custom_stat_kernel(self, row: int) -> Kernel | None:
        if self.custom_stat == KernelKind.SPAN_PROBABILITIES:
            return Kernel.span_probabilities(row, self.height)
        if self.custom_stat == KernelKind.SPAN_DENSITY:
            return Kernel.span_density(row, self.height)
        return None

    def _key(self) -> tuple[str, Matrix | None]:
        return self.serialized_id, self._matrix if self.is_custom else None

    @override
    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, Gate):
            return NotImplemented
        return self._key() == other._key()

    @override
    def __hash__(self) -> int:
        return hash(self.serialized_id)

    @override
    def __repr__(self) -> str:
        return f"Gate({self.serialized_id!r})"


# -- custom stat post-processing --------------------------------------------

def _normalized_probabilities(raw: npt.NDArray[np.float32], circuit: Any, col: int, row: int) -> npt.NDArray[np.float32]:
    total = float(np.sum(raw))
    with np.errstate(divide="ignore", invalid="ignore"):
        return (np.asarray(raw, dtype=np.float32) / np.float32(total)).astype(np.float32)


def _normalized_density(raw: npt.NDArray[np.float32], circuit: Any, col: int, row: int) -> Matrix:
    size = math.isqrt(len(raw) // 2)
    density = Matrix.from_raw_floats(size, size, raw)
    trace = density.trace().real
    with np.errstate(divide="ignore", invalid="ignore"):
        return Matrix(density.to_numpy() / np.float32(trace))


# -- catalog ----------------------------------------------------------------

_S = 1 / math.sqrt(2)
_H_MATRIX = Matrix([[_S, _S], [_S, -_S]])

# Controls
Control = Gate("•", "Control", GateKind.CONTROL, control_bit=True)
AntiControl = Gate("◦", "Anti-Control", GateKind.CONTROL, control_bit=False)
XAxisControl = Gate("⊕", "X-Axis Control", GateKind.CONTROL, control_bit=False,
                    setup_before=_H_MATRIX, setup_after=_H_MATRIX)
XAxisAntiControl = Gate("⊖", "X-Axis Anti-Control", GateKind.CONTROL, control_bit=True,
                        setup_before=_H_MATRIX, setup_after=_H_MATRIX)

# Half turns
X = Gate("X", "Pauli X Gate", GateKind.MATRIX, matrix=Matrix([[0, 1], [1, 0]]))
Y = Gate("Y", "Pauli Y Gate", GateKind.MATRIX, matrix=Matrix([[0, -1j], [1j, 0]]))
Z = Gate("Z", "Pauli Z Gate", GateKind.MATRIX, matrix=Matrix([[1, 0], [0, -1]]))
H = Gate("H", "Hadamard Gate", GateKind.MATRIX, matrix=_H_MATRIX)

# Quarter turns and smaller roots
SqrtX = Gate("X^½", "√X Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0.25, 0, 0))
SqrtXInv = Gate("X^-½", "X^-½ Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(-0.25, 0, 0))
SqrtY = Gate("Y^½", "√Y Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, 0.25, 0))
SqrtYInv = Gate("Y^-½", "Y^-½ Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, -0.25, 0))
S = Gate("Z^½", "S Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, 0, 0.25))
SInv = Gate("Z^-½", "S^-1 Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, 0, -0.25))

Y3 = Gate("Y^⅓", "Y^⅓ Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, 1 / 6, 0))
Y3i = Gate("Y^-⅓", "Y^-⅓ Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, -1 / 6, 0))
Y4 = Gate("Y^¼", "Y^¼ Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, 1 / 8, 0))
Y4i = Gate("Y^-¼", "Y^-¼ Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, -1 / 8, 0))
Y8 = Gate("Y^⅛", "Y^⅛ Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, 1 / 16, 0))
Y8i = Gate("Y^-⅛", "Y^-⅛ Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, -1 / 16, 0))
Y16 = Gate("Y^⅟₁₆", "Y^⅟₁₆ Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, 1 / 32, 0))
Y16i = Gate("Y^-⅟₁₆", "Y^-⅟₁₆ Gate", GateKind.MATRIX, matrix=Matrix.from_pauli_rotation(0, -1 / 32, 0))

# Time dependent: at time t the gate is the axis' Pauli raised to the power t.
XForward = Gate("X^t", "X^t Gate", GateKind.MATRIX, time_axis=(0.5, 0, 0))
YForward = Gate("Y^t", "Y^t Gate", GateKind.MATRIX, time_axis=(0, 0.5, 0))
ZForward = Gate("Z^t", "Z^t Gate", GateKind.MATRIX, time_axis=(0, 0, 0.5))
XBackward = Gate("X^-t", "X^-t Gate", GateKind.MATRIX, time_axis=(-0.5, 0, 0))
YBackward = Gate("Y^-t", "Y^-t Gate", GateKind.MATRIX, time_axis=(0, -0.5, 0))
ZBackward = Gate("Z^-t", "Z^-t Gate", GateKind.MATRIX, time_axis=(0, 0, -0.5))

# Special
Measurement = Gate("Measure", "Measurement Gate", GateKind.MEASUREMENT)
SwapHalf = Gate("Swap", "Swap Gate [Half]", GateKind.SWAP_HALF)
SpacerGate = Gate("…", "Spacer", GateKind.SPACER)
ErrorInjection = Gate("__error__", "Error Injection Gate", GateKind.FAULT)

# Post-selection
PostSelectOff = Gate("|0⟩⟨0|", "Post-selection Gate [Off]", GateKind.POST_SELECT,
                     setup_before=Matrix([[1, 0], [0, 0]]))
PostSelectOn = Gate("|1⟩⟨1|", "Post-selection Gate [On]", GateKind.POST_SELECT,
                    setup_before=Matrix([[0, 0], [0, 1]]))
PostSelectPlus = Gate("|+⟩⟨+|", "Post-selection Gate [+]", GateKind.POST_SELECT,
                      setup_before=Matrix([[0.5, 0.5], [0.5, 0.5]]))
PostSelectMinus = Gate("|-⟩⟨-|", "Post-selection Gate [-]", GateKind.POST_SELECT,
                       setup_before=Matrix([[0.5, -0.5], [-0.5, 0.5]]))

# Single-qubit displays read the per-wire density pipeline.
ChanceDisplay = Gate("Chance", "Probability Display", GateKind.DISPLAY, is_single_qubit_display=True)
BlochSphereDisplay = Gate("Bloch", "Bloch Sphere Display", GateKind.DISPLAY, is_single_qubit_display=True)
DensityMatrixDisplay = Gate("Density", "Density Matrix Display", GateKind.DISPLAY, is_single_qubit_display=True)


def _family(first: int, last: int, maker: Callable[[int], Gate]) -> dict[int, Gate]:
    return {span: maker(span) for span in range(first, last + 1)}


ReverseBitsFamily = _family(2, 16, lambda span: Gate(
    f"rev{span}", "Reverse Bits Gate", GateKind.PERMUTATION, height=span))

ChanceDisplayFamily = _family(2, 16, lambda span: Gate(
    f"Chance{span}", "Probability Display", GateKind.DISPLAY, height=span,
    custom_stat=KernelKind.SPAN_PROBABILITIES, post_processor=_normalized_probabilities))

DensityMatrixDisplayFamily = _family(2, 8, lambda span: Gate(
    f"Density{span}", "Density Matrix Display", GateKind.DISPLAY, height=span,
    custom_stat=KernelKind.SPAN_DENSITY, post_processor=_normalized_density))


ALL_GATES: tuple[Gate, ...] = (
    Control, AntiControl, XAxisControl, XAxisAntiControl,
    X, Y, Z, H,
    SqrtX, SqrtXInv, SqrtY, SqrtYInv, S, SInv,
    Y3, Y3i, Y4, Y4i, Y8, Y8i, Y16, Y16i,
    XForward, YForward, ZForward, XBackward, YBackward, ZBackward,
    Measurement, SwapHalf, SpacerGate, ErrorInjection,
    PostSelectOff, PostSelectOn, PostSelectPlus, PostSelectMinus,
    ChanceDisplay, BlochSphereDisplay, DensityMatrixDisplay,
    *ReverseBitsFamily.values(),
    *ChanceDisplayFamily.values(),
    *DensityMatrixDisplayFamily.values(),
)

KNOWN_TO_SERIALIZER: dict[str, Gate] = {gate.serialized_id: gate for gate in ALL_GATES}
