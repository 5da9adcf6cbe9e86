"""Exception types raised while building circuits and computing their stats."""

from __future__ import annotations

from typing import Any


class GridStatsError(Exception):
    """Base error carrying a dictionary of details for diagnostics."""
    details: dict[str, Any]

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.details = dict(details or {})

    def __str__(self) -> str:
        message = super().__str__()
        if not self.details:
            return message
        extra = ", ".join(f"{key}={value!r}" for key, value in self.details.items())
        return f"{message} ({extra})"


class ContradictionError(GridStatsError, ValueError):
    """Two control requirements disagree about the value of the same bit."""


class KernelFaultError(GridStatsError, RuntimeError):
    """An operation kernel failed while being evaluated."""


class BufferAccountingError(GridStatsError, RuntimeError):
    """A buffer was released twice, used after release, or never released."""


class SerializationError(GridStatsError, ValueError):
    """A circuit payload could not be converted to or from JSON."""
