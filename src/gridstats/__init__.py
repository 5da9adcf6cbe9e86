from gridstats import gates
from gridstats.buffers import BufferHandle, BufferManager
from gridstats.circuit import CircuitDefinition, GateColumn
from gridstats.config import Config, resolve_device
from gridstats.controls import Controls
from gridstats.errors import (
    BufferAccountingError,
    ContradictionError,
    GridStatsError,
    KernelFaultError,
    SerializationError,
)
from gridstats.gates import Gate
from gridstats.matrix import Matrix
from gridstats.stats import CircuitStats, StatsOutcome

__all__ = [
    "gates", "Gate", "Matrix", "Controls", "CircuitDefinition", "GateColumn",
    "CircuitStats", "StatsOutcome", "BufferManager", "BufferHandle", "Config", "resolve_device",
    "GridStatsError", "ContradictionError", "KernelFaultError", "BufferAccountingError", "SerializationError",
]
