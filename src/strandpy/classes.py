from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

# Minimal alignment data to keep chunks small in memory; coordinates are 0-based half-open
@dataclass
class AlignmentData:
    """Minimal alignment data to reduce memory footprint."""
    __slots__ = ('chr', 'start', 'end', 'strand', 'qname', 'is_paired', 'is_read1', 'is_read2')
    chr: str
    start: int
    end: int
    strand: str  # '+' or '-'
    qname: str
    is_paired: bool
    is_read1: bool
    is_read2: bool


def invert_strand(strand: str) -> str:
    if strand == "+":
        return "-"
    if strand == "-":
        return "+"
    return strand


@dataclass(frozen=True)
class Feature:
    """
    A stranded genomic region made of one or more disjoint intervals
    (e.g. the exons of a transcript, or a merged gene model).
    Intervals are 0-based half-open and sorted by start.
    """
    id: str
    chr: str
    strand: str
    intervals: Tuple[Tuple[int, int], ...]

    @property
    def start(self) -> int:
        return self.intervals[0][0]

    @property
    def end(self) -> int:
        return max(e for _, e in self.intervals)


@dataclass(frozen=True)
class AnnotationInterval:
    chr: str
    start: int
    end: int
    strand: str
    feature_id: str
    ordinal: int  # position of the owning Feature in index build order


@dataclass
class OverlapTally:
    """Running concordant/discordant/ambiguous counts for one sample."""
    concordant: int = 0
    discordant: int = 0
    ambiguous: int = 0

    @property
    def total(self) -> int:
        return self.concordant + self.discordant + self.ambiguous

    def __add__(self, other: "OverlapTally") -> "OverlapTally":
        return OverlapTally(
            self.concordant + other.concordant,
            self.discordant + other.discordant,
            self.ambiguous + other.ambiguous,
        )

    def __iadd__(self, other: "OverlapTally") -> "OverlapTally":
        self.concordant += other.concordant
        self.discordant += other.discordant
        self.ambiguous += other.ambiguous
        return self

    def to_row(self, sample: str) -> "StrandednessRow":
        n = self.total
        if n == 0:
            return StrandednessRow(sample, math.nan, math.nan, math.nan, 0)
        return StrandednessRow(
            sample=sample,
            strand_mode1=self.concordant / n,
            strand_mode2=self.discordant / n,
            ambiguous=self.ambiguous / n,
            n_alignments=n,
        )


@dataclass(frozen=True)
class StrandednessRow:
    sample: str
    strand_mode1: float
    strand_mode2: float
    ambiguous: float
    n_alignments: int
