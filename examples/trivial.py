from gridstats import CircuitDefinition, CircuitStats
from gridstats import gates
from gridstats.visualization import display_final_state, plot_final_state, plot_wire_probabilities

circuit = CircuitDefinition.from_text_diagram(
    {"H": gates.H, "•": gates.Control, "X": gates.X, "M": gates.Measurement, "C": gates.ChanceDisplay},
    """
    H•MC
    -X-C
    """,
)

stats = CircuitStats.from_circuit_at_time(circuit, 0.0)
_ = display_final_state(stats)
_ = plot_wire_probabilities(stats, col=3, show=False)
_ = plot_final_state(stats)
