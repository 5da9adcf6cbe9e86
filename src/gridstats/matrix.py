"""Dense complex matrices used for gate matrices, density matrices and output states."""

from __future__ import annotations

import math
from typing import override

import numpy as np
import numpy.typing as npt
import torch

Number = complex | float | int


def format_complex(value: Number) -> str:
    """Format a complex number compactly, e.g. ``1``, ``-i``, ``2-3i``, ``0.5+i``."""
    c = complex(value)

    def _part(x: float) -> str:
        if math.isfinite(x) and x == int(x) and abs(x) < 1e15:
            return str(int(x))
        return repr(float(x))

    if c.imag == 0:
        return _part(c.real)

    if c.imag == 1:
        imag = "i"
    elif c.imag == -1:
        imag = "-i"
    else:
        imag = _part(c.imag) + "i"

    if c.real == 0:
        return imag
    if not imag.startswith("-"):
        imag = "+" + imag
    return _part(c.real) + imag


def parse_complex(text: str) -> complex:
    """Inverse of :func:`format_complex`."""
    text = text.strip().replace(" ", "")
    if not text:
        raise ValueError("Empty complex number")
    if not text.endswith("i"):
        return complex(float(text))

    split = 0
    for pos in range(len(text) - 1, 0, -1):
        if text[pos] in "+-" and text[pos - 1] not in "eE":
            split = pos
            break

    real = float(text[:split]) if split else 0.0
    imag = text[split:-1]
    if imag in ("", "+"):
        return complex(real, 1.0)
    if imag == "-":
        return complex(real, -1.0)
    return complex(real, float(imag))


class Matrix:
    """An immutable complex64 matrix.

    Cells are addressed as ``cell(col, row)``; the backing array is stored
    row-major with shape ``(height, width)``.
    """
    __slots__ = ("_buffer",)

    _buffer: npt.NDArray[np.complex64]

    def __init__(self, data: npt.ArrayLike):
        buffer = np.array(data, dtype=np.complex64)
        if buffer.ndim != 2:
            raise ValueError(f"Matrix data must be 2D, got {buffer.ndim}D")
        buffer.setflags(write=False)
        self._buffer = buffer

    # -- construction ------------------------------------------------------

    @staticmethod
    def zero(width: int, height: int) -> Matrix:
        return Matrix(np.zeros((height, width), dtype=np.complex64))

    @staticmethod
    def identity(size: int) -> Matrix:
        return Matrix(np.eye(size, dtype=np.complex64))

    @staticmethod
    def square(*values: Number) -> Matrix:
        n = math.isqrt(len(values))
        if n * n != len(values):
            raise ValueError(f"Not a square number of values: {len(values)}")
        return Matrix(np.array(values, dtype=np.complex64).reshape(n, n))

    @staticmethod
    def col(*values: Number) -> Matrix:
        return Matrix(np.array(values, dtype=np.complex64).reshape(len(values), 1))

    @staticmethod
    def row(*values: Number) -> Matrix:
        return Matrix(np.array(values, dtype=np.complex64).reshape(1, len(values)))

    @staticmethod
    def from_raw_floats(width: int, height: int, floats: npt.ArrayLike) -> Matrix:
        """Builds a matrix from interleaved real/imaginary float values."""
        raw = np.asarray(floats, dtype=np.float32).reshape(height, width, 2)
        return Matrix(raw[..., 0] + 1j * raw[..., 1])

    @staticmethod
    def from_pauli_rotation(x: float, y: float, z: float) -> Matrix:
        """Returns the unitary rotating the Bloch sphere around (x, y, z) by |(x, y, z)| turns.

        The global phase is chosen so that half turns around an axis give the
        exact Pauli matrix, e.g. ``from_pauli_rotation(0.5, 0, 0)`` is ``X``.
        """
        sin_v = math.sqrt(x * x + y * y + z * z)
        if sin_v == 0:
            return Matrix.identity(2)

        theta = sin_v * math.pi * 2
        v = (x / sin_v, y / sin_v, z / sin_v)

        # e^{i theta/2} * (cos(theta/2) I - i sin(theta/2) v.sigma)
        phase = complex(math.cos(theta / 2), math.sin(theta / 2))
        c = math.cos(theta / 2)
        s = math.sin(theta / 2)
        a = phase * complex(c, -s * v[2])
        b = phase * complex(-s * v[1], -s * v[0])
        d = phase * complex(s * v[1], -s * v[0])
        e = phase * complex(c, s * v[2])
        return Matrix.square(a, b, d, e)

    # -- accessors ---------------------------------------------------------

    def width(self) -> int:
        return int(self._buffer.shape[1])

    def height(self) -> int:
        return int(self._buffer.shape[0])

    def cell(self, col: int, row: int) -> complex:
        return complex(self._buffer[row, col])

    def to_numpy(self) -> npt.NDArray[np.complex64]:
        return self._buffer

    def raw_buffer(self) -> npt.NDArray[np.float32]:
        """Interleaved real/imaginary parts, row-major."""
        return np.ascontiguousarray(self._buffer).view(np.float32).reshape(-1).copy()

    def to_torch(self, device: torch.device | None = None) -> torch.Tensor:
        return torch.tensor(np.array(self._buffer), dtype=torch.complex64, device=device)

    def is_nan(self) -> bool:
        return bool(np.isnan(self._buffer).any())

    # -- algebra -----------------------------------------------------------

    def times(self, other: Number | Matrix) -> Matrix:
        if isinstance(other, Matrix):
            return self @ other
        return Matrix(self._buffer * np.complex64(other))

    def __matmul__(self, other: Matrix) -> Matrix:
        if self.width() != other.height():
            raise ValueError(f"Incompatible shapes: {self._buffer.shape} @ {other._buffer.shape}")
        return Matrix(self._buffer @ other._buffer)

    def plus(self, other: Matrix) -> Matrix:
        if self._buffer.shape != other._buffer.shape:
            raise ValueError(f"Incompatible shapes: {self._buffer.shape} + {other._buffer.shape}")
        return Matrix(self._buffer + other._buffer)

    def adjoint(self) -> Matrix:
        return Matrix(self._buffer.conj().T)

    def tensor_product(self, other: Matrix) -> Matrix:
        return Matrix(np.kron(self._buffer, other._buffer))

    def trace(self) -> complex:
        if self.width() != self.height():
            raise ValueError("Trace of a non-square matrix")
        return complex(np.trace(self._buffer))

    def is_unitary(self, epsilon: float = 1e-5) -> bool:
        if self.width() != self.height():
            return False
        product = self._buffer @ self._buffer.conj().T
        return bool(np.allclose(product, np.eye(self.width()), atol=epsilon))

    def is_approximately_equal_to(self, other: object, epsilon: float = 1e-5) -> bool:
        if not isinstance(other, Matrix) or self._buffer.shape != other._buffer.shape:
            return False
        return bool(np.allclose(self._buffer, other._buffer, atol=epsilon, rtol=0))

    # -- text form ---------------------------------------------------------

    def to_text(self) -> str:
        rows = (",".join(format_complex(v) for v in row) for row in self._buffer.tolist())
        return "{" + ",".join("{" + r + "}" for r in rows) + "}"

    @staticmethod
    def parse(text: str) -> Matrix:
        text = text.strip().replace(" ", "")
        if not (text.startswith("{{") and text.endswith("}}")):
            raise ValueError(f"Not a matrix: {text!r}")
        rows = text[2:-2].split("},{")
        values: list[list[complex]] = [[parse_complex(v) for v in row.split(",")] for row in rows]
        if len({len(r) for r in values}) != 1:
            raise ValueError(f"Ragged matrix: {text!r}")
        return Matrix(values)

    # -- dunder ------------------------------------------------------------

    @override
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Matrix):
            return NotImplemented
        return self._buffer.shape == other._buffer.shape and bool(np.array_equal(self._buffer, other._buffer))

    @override
    def __hash__(self) -> int:
        return hash((self._buffer.shape, self._buffer.tobytes()))

    @override
    def __repr__(self) -> str:
        return f"Matrix({self.to_text()})"

