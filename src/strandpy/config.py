from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class StrandModeThresholds:
    """Cut-offs used to turn strandedness fractions into a strandMode label."""
    stranded: float = 0.90        # strandMode1 / strandMode2 above this -> 1 / 2
    unstranded_low: float = 0.40  # both fractions strictly inside (low, high) -> NA
    unstranded_high: float = 0.60


@dataclass(frozen=True)
class ClassifierSettings:
    """Stopping rule and warning limits for sample-level strandedness."""
    target_alignments: int = 200_000
    max_chunks: int = 10
    chunk_size: int = 1_000_000
    min_alignments: int = 100_000
    ambiguity_ceiling: float = 0.10


def check_chunk_size(chunk_size) -> int:
    if isinstance(chunk_size, bool) or not isinstance(chunk_size, int):
        raise ValueError(f"chunk size must be a positive integer, got {chunk_size!r}")
    if chunk_size <= 0:
        raise ValueError(f"chunk size must be a positive integer, got {chunk_size}")
    return chunk_size


def check_strand_mode(strand_mode: Optional[int]) -> int:
    if strand_mode is None or isinstance(strand_mode, bool) or strand_mode not in (0, 1, 2):
        raise ValueError("invalid strand mode (must be 0, 1, or 2)")
    return int(strand_mode)


def check_probability(p: float) -> float:
    try:
        p = float(p)
    except (TypeError, ValueError):
        raise ValueError(f"p must be a number in [0, 1], got {p!r}")
    if not 0.0 <= p <= 1.0:
        raise ValueError(f"p must be a number in [0, 1], got {p}")
    return p


def check_workers(workers: int) -> int:
    if isinstance(workers, bool) or not isinstance(workers, int) or workers < 1:
        raise ValueError(f"workers must be an integer >= 1, got {workers!r}")
    return workers
