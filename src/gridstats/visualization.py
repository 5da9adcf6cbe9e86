import math

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns
from matplotlib.axes import Axes
from matplotlib.figure import Figure
from rich import print
from rich.table import Table
from rich.text import Text

from gridstats.stats import CircuitStats

_EIGHTHS = " ▏▎▍▌▋▊▉"


def format_basis(num: int, num_wires: int) -> str:
    """Ket label for a basis index, highest wire first."""
    return f"|{format(num, f'0{num_wires}b')}⟩"


def _render_probability_bar(probability: float, width: int = 12) -> Text:
    """A ``width``-cell bar filled to the nearest eighth of a cell."""
    if math.isnan(probability):
        return Text("?".ljust(width))
    full, part = divmod(round(max(0.0, min(1.0, probability)) * width * 8), 8)
    bar = "█" * full + (_EIGHTHS[part] if part else "")
    return Text(bar.ljust(width))


def _final_probabilities(stats: CircuitStats) -> np.ndarray:
    amplitudes = stats.final_state.to_numpy().reshape(-1)
    return (np.abs(amplitudes) ** 2).astype(np.float32)


def display_final_state(stats: CircuitStats) -> Table:
    """Print the final amplitudes of a circuit as a table."""
    amplitudes = stats.final_state.to_numpy().reshape(-1)
    probs = _final_probabilities(stats)
    num_wires = stats.circuit_definition.num_wires

    table = Table(show_header=True, title=f"Survival rate {stats.post_selection_survival_rate:.4f}")
    table.add_column("Basis", justify="left")
    table.add_column("Amplitude", justify="right")
    table.add_column("Probability", justify="right")
    table.add_column("Distribution", justify="left")

    for i, (amplitude, prob) in enumerate(zip(amplitudes, probs)):
        table.add_row(
            format_basis(i, num_wires),
            f"{complex(amplitude):.4f}",
            f"{float(prob):.4f}",
            _render_probability_bar(float(prob)),
        )

    print(table)
    return table


def _bar_chart(
    labels: list[str],
    values: list[float],
    *,
    xlabel: str,
    ylabel: str,
    title: str,
    width_per_bar: float,
    min_width: float,
    height: float,
    show: bool,
) -> tuple[Figure, Axes]:
    fig, ax = plt.subplots(figsize=(max(min_width, len(labels) * width_per_bar), height)) # pyright: ignore[reportUnknownMemberType]
    _ = sns.barplot(x=labels, y=values, ax=ax)
    _ = ax.set(xlabel=xlabel, ylabel=ylabel, ylim=(0, 1.0))
    _ = ax.set_title(title, fontweight="bold") # pyright: ignore[reportUnknownMemberType]
    fig.tight_layout()
    if show:
        plt.show() # pyright: ignore[reportUnknownMemberType]
    return fig, ax


def plot_final_state(stats: CircuitStats, title: str = "Final State Probability Distribution", show: bool = True) -> tuple[Figure, Axes]:
    """Plot the probability of each basis state at the end of the circuit.

    Args:
        stats: Computed stats of the circuit to visualize
        title: Title for the plot
        show: Whether to display the plot immediately (default: True)

    Returns:
        Tuple of (figure, axes) for further customization if needed
    """
    probs = [float(p) for p in _final_probabilities(stats)]
    num_wires = stats.circuit_definition.num_wires
    labels = [format(i, f"0{num_wires}b") for i in range(len(probs))]

    fig, ax = _bar_chart(
        labels, probs,
        xlabel="Basis State (Bit String)", ylabel="Probability", title=title,
        width_per_bar=0.5, min_width=10, height=6, show=False,
    )
    if len(labels) > 8:
        ax.tick_params(axis="x", labelrotation=45)
    # Small probabilities stay unlabeled.
    _ = ax.bar_label(ax.containers[0], labels=[f"{p:.3f}" if p > 0.01 else "" for p in probs]) # pyright: ignore[reportArgumentType]

    if show:
        plt.show() # pyright: ignore[reportUnknownMemberType]
    return fig, ax


def plot_wire_probabilities(stats: CircuitStats, col: int | float = math.inf, title: str | None = None, show: bool = True) -> tuple[Figure, Axes]:
    """Plot the chance each wire is on just after a column.

    Wires without a display in that column come out as NaN and are drawn
    as missing bars. The default column is the end of the circuit.
    """
    num_wires = stats.circuit_definition.num_wires
    where = "end of circuit" if col >= stats.circuit_definition.num_cols else f"column {col}"
    return _bar_chart(
        [f"q{w}" for w in range(num_wires)],
        [stats.controlled_wire_probability_just_after(w, col) for w in range(num_wires)],
        xlabel="Wire", ylabel="Chance On", title=title or f"Wire Probabilities ({where})",
        width_per_bar=0.6, min_width=6, height=4, show=show,
    )
