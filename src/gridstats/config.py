import os
from dataclasses import dataclass

import torch


def _int_from_env(name: str, default: int | None) -> int | None:
    val = os.getenv(name)
    if val is None:
        return default
    if val.lower() == "none":
        return None
    try:
        return int(val)
    except ValueError:
        return default


def _bool_from_env(name: str, default: bool) -> bool:
    """Return a boolean value parsed from the environment."""

    val = os.getenv(name)
    if val is None or not val.strip():
        return default
    val = val.strip().lower()
    if val in {"1", "true", "yes", "on"}:
        return True
    if val in {"0", "false", "no", "off"}:
        return False
    return default


def _device_from_env(name: str, default: str) -> str:
    val = os.getenv(name)
    if val is None or not val.strip():
        return default
    val = val.strip().lower()
    if val in {"auto", "cpu", "cuda", "mps"}:
        return val
    return default


@dataclass
class Config:
    """Runtime configuration defaults for gridstats.

    Values may be overridden via environment variables or by passing an
    explicit :class:`Config` to :class:`~gridstats.buffers.BufferManager`.
    """

    device: str = _device_from_env("GRIDSTATS_DEVICE", "auto")
    debug_buffers: bool = _bool_from_env("GRIDSTATS_DEBUG_BUFFERS", True)
    pool_limit_bytes: int | None = _int_from_env("GRIDSTATS_POOL_LIMIT_BYTES", 64 << 20)
    dump_plan: bool = _bool_from_env("GRIDSTATS_DUMP_PLAN", False)
    max_wires: int = _int_from_env("GRIDSTATS_MAX_WIRES", 16) or 16


# Global configuration instance used when modules import ``gridstats.config``.
DEFAULT = Config()


def resolve_device(config: Config | None = None) -> torch.device:
    """Return the torch device selected by ``config``.

    ``auto`` prefers cuda, then mps, then cpu. An explicitly requested
    accelerator that is not available falls back to cpu.
    """

    name = (config or DEFAULT).device
    if name == "cuda" or (name == "auto" and torch.cuda.is_available()):
        if torch.cuda.is_available():
            return torch.device("cuda")
        return torch.device("cpu")
    if name == "mps" or (name == "auto" and torch.backends.mps.is_available()):
        if torch.backends.mps.is_available():
            return torch.device("mps")
        return torch.device("cpu")
    return torch.device("cpu")
