"""Batched, watermark-driven incremental loads.

Copies rows from a source table into an append-only target table in
bounded batches. The resume point is always derived from the target
itself, so an interrupted or capped run is continued by running it again.

Usage:
    python -m batchload run orders.yaml
    python -m batchload check orders.yaml
    python -m batchload watermark orders.yaml
"""

from batchload.lib.config import LoadConfig, load_config
from batchload.lib.controller import IncrementalLoad, LoadResult, StopReason
from batchload.lib.runner import run_incremental_load

__version__ = "0.1.0"

__all__ = [
    "IncrementalLoad",
    "LoadConfig",
    "LoadResult",
    "StopReason",
    "load_config",
    "run_incremental_load",
]
