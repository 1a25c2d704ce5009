from __future__ import annotations

from bisect import bisect_left
from typing import Dict, List, Optional, Sequence, Tuple

from .classes import AnnotationInterval, Feature
from .gfftools import harmonize_seqname


def check_features(features) -> Tuple[Feature, ...]:
    msg = "'features' should be a sequence of Feature objects."
    if isinstance(features, (str, bytes, Feature)):
        raise TypeError(msg)
    try:
        out = tuple(features)
    except TypeError:
        raise TypeError(msg) from None
    if not all(isinstance(f, Feature) for f in out):
        raise TypeError(msg)
    return out


class _Bucket:
    """Intervals of one chromosome/strand, sorted by start."""
    __slots__ = ("starts", "ends", "ordinals", "max_len")

    def __init__(self, intervals: List[AnnotationInterval]):
        intervals = sorted(intervals, key=lambda iv: (iv.start, iv.ordinal))
        self.starts = [iv.start for iv in intervals]
        self.ends = [iv.end for iv in intervals]
        self.ordinals = [iv.ordinal for iv in intervals]
        self.max_len = max((iv.end - iv.start for iv in intervals), default=0)

    def overlapping(self, start: int, end: int, out: set) -> None:
        # Only intervals starting in [start - max_len, end) can reach the query
        i = bisect_left(self.starts, start - self.max_len)
        starts, ends, ords = self.starts, self.ends, self.ordinals
        n = len(starts)
        while i < n and starts[i] < end:
            if ends[i] > start:
                out.add(ords[i])
            i += 1


class AnnotationIndex:
    """
    Read-only overlap index over a list of Features.

    Hits are reported as Feature ordinals (position in the list the index was
    built from), so the lowest ordinal is the first match in build order.
    """

    def __init__(self, features: Sequence[Feature]):
        self.features: Tuple[Feature, ...] = check_features(features)
        grouped: Dict[Tuple[str, str], List[AnnotationInterval]] = {}
        for ordinal, f in enumerate(self.features):
            for s, e in f.intervals:
                grouped.setdefault((f.chr, f.strand), []).append(
                    AnnotationInterval(f.chr, s, e, f.strand, f.id, ordinal)
                )
        self._buckets: Dict[Tuple[str, str], _Bucket] = {k: _Bucket(v) for k, v in grouped.items()}
        self._seqnames = {chrom: None for chrom, _ in self._buckets}
        self._seqname_cache: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self.features)

    @property
    def seqnames(self) -> List[str]:
        return list(self._seqnames)

    def resolve_seqname(self, name: str) -> str:
        hit = self._seqname_cache.get(name)
        if hit is None:
            hit = harmonize_seqname(name, self._seqnames) or name
            self._seqname_cache[name] = hit
        return hit

    def query(self, chrom: str, start: int, end: int, strand: str) -> List[int]:
        """Ordinals of Features overlapping [start, end) on a compatible strand, ascending."""
        out: set = set()
        for st in ((strand, "*") if strand in ("+", "-") else ("+", "-", "*")):
            b = self._buckets.get((chrom, st))
            if b is not None:
                b.overlapping(start, end, out)
        return sorted(out)

    def first_hit(self, chrom: str, start: int, end: int, strand: str) -> Optional[int]:
        hits = self.query(chrom, start, end, strand)
        return hits[0] if hits else None

    def count_hits(self, chrom: str, start: int, end: int, strand: str) -> int:
        return len(self.query(chrom, start, end, strand))
