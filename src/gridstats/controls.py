"""Bit requirements that a basis state must meet for an operation to apply."""

from __future__ import annotations

import math
from typing import ClassVar, override

from gridstats.errors import ContradictionError


class Controls:
    """Stores which bits of a basis index must hold which values.

    ``inclusion_mask`` selects the constrained bits and ``desired_value_mask``
    gives their required values. A negative inclusion mask stands for an
    unbounded set of constrained bits.
    """
    __slots__ = ("inclusion_mask", "desired_value_mask")

    NONE: ClassVar[Controls]

    inclusion_mask: int
    desired_value_mask: int

    def __init__(self, inclusion_mask: int, desired_value_mask: int):
        if desired_value_mask & ~inclusion_mask != 0:
            raise ValueError(
                f"Desired un-included bits: inclusion_mask={inclusion_mask}, "
                f"desired_value_mask={desired_value_mask}"
            )
        object.__setattr__(self, "inclusion_mask", inclusion_mask)
        object.__setattr__(self, "desired_value_mask", desired_value_mask)

    @override
    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError("Controls are immutable")

    @staticmethod
    def bit(bit_index: int, desired_value: bool) -> Controls:
        if bit_index < 0:
            raise ValueError(f"Out of range bit index: {bit_index}")
        mask = 1 << bit_index
        return Controls(mask, mask if desired_value else 0)

    def allows_state(self, state_index: int) -> bool:
        return (self.inclusion_mask & state_index) == self.desired_value_mask

    def desired_value_for(self, bit_index: int) -> bool | None:
        if self.inclusion_mask & (1 << bit_index) == 0:
            return None
        return self.desired_value_mask & (1 << bit_index) != 0

    def included_bit_count(self) -> int | float:
        if self.inclusion_mask < 0:
            return math.inf
        return self.inclusion_mask.bit_count()

    def without_bit(self, bit_index: int) -> Controls:
        """The same requirements, minus any requirement on ``bit_index``."""
        keep = ~(1 << bit_index)
        return Controls(self.inclusion_mask & keep, self.desired_value_mask & keep)

    def and_(self, other: Controls) -> Controls:
        """Requirements satisfied exactly when both ``self`` and ``other`` are.

        Raises:
            ContradictionError: If the two sets demand different values for a shared bit.
        """
        if (other.desired_value_mask & self.inclusion_mask) != (self.desired_value_mask & other.inclusion_mask):
            raise ContradictionError(
                "Contradictory controls.",
                {"this": str(self), "other": str(other)},
            )
        return Controls(
            self.inclusion_mask | other.inclusion_mask,
            self.desired_value_mask | other.desired_value_mask,
        )

    @override
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Controls):
            return NotImplemented
        return (self.inclusion_mask == other.inclusion_mask
                and self.desired_value_mask == other.desired_value_mask)

    @override
    def __hash__(self) -> int:
        return hash((self.inclusion_mask, self.desired_value_mask))

    @override
    def __repr__(self) -> str:
        return f"Controls({self.inclusion_mask}, {self.desired_value_mask})"

    @override
    def __str__(self) -> str:
        if self.inclusion_mask == 0:
            return "No Controls"
        if self.inclusion_mask < 0:
            return f"Controls: unbounded (desired={self.desired_value_mask})"

        chars = []
        for i in range(self.inclusion_mask.bit_length()):
            value = self.desired_value_for(i)
            chars.append("_" if value is None else "1" if value else "0")
        return "Controls: ...__" + "".join(reversed(chars))


Controls.NONE = Controls(0, 0)
