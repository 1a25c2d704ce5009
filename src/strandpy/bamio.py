from __future__ import annotations
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence
import bamnostic as bn

from .classes import AlignmentData
from .config import check_chunk_size, check_strand_mode

# SAM flag bits
FLAG_PAIRED = 0x1
FLAG_PROPER_PAIR = 0x2
FLAG_UNMAPPED = 0x4
FLAG_REVERSE = 0x10
FLAG_READ1 = 0x40
FLAG_READ2 = 0x80
FLAG_SECONDARY = 0x100
FLAG_QCFAIL = 0x200
FLAG_DUPLICATE = 0x400

_ALWAYS_EXCLUDE = FLAG_UNMAPPED | FLAG_SECONDARY | FLAG_QCFAIL | FLAG_DUPLICATE
_PAIRED_REQUIRE = FLAG_PAIRED | FLAG_PROPER_PAIR

# CIGAR operations consuming the reference: M, D, N, =, X
_REF_CONSUMING = {0, 2, 3, 7, 8}


def passes_filter(flag: int, single_end: bool) -> bool:
    if flag & _ALWAYS_EXCLUDE:
        return False
    if not single_end and (flag & _PAIRED_REQUIRE) != _PAIRED_REQUIRE:
        return False
    return True


def _get_read_name(aln) -> str:
    for attr in ("query_name", "qname", "read_name"):
        v = getattr(aln, attr, None)
        if v:
            return v
    return ""


def _reference_end(aln, start: int) -> int:
    end = getattr(aln, "reference_end", None)
    if isinstance(end, int) and end > start:
        return end
    cigar = getattr(aln, "cigartuples", None) or getattr(aln, "cigar", None)
    if cigar and not isinstance(cigar, str):
        span = sum(n for op, n in cigar if op in _REF_CONSUMING)
        if span > 0:
            return start + span
    return start + 1


def _extract_alignment_data(aln) -> Optional[AlignmentData]:
    """Extract only necessary data from a bamnostic alignment."""
    chr_ = getattr(aln, "reference_name", None)
    if chr_ is None:
        return None
    flag = getattr(aln, "flag", 0) or 0
    # bamnostic uses 'pos' (0-based) instead of 'reference_start'
    start = getattr(aln, "pos", 0) or 0
    return AlignmentData(
        chr=chr_,
        start=start,
        end=_reference_end(aln, start),
        strand="-" if flag & FLAG_REVERSE else "+",
        qname=_get_read_name(aln),
        is_paired=bool(flag & FLAG_PAIRED),
        is_read1=bool(flag & FLAG_READ1),
        is_read2=bool(flag & FLAG_READ2),
    )


class AlignmentStream:
    """
    Chunked reader of one sample's alignments. Use as a context manager so
    the underlying handle is released on every exit path.
    """
    name: str = "sample"

    def open(self) -> None:
        raise NotImplementedError

    def read_chunk(self, max_records: int) -> List[AlignmentData]:
        """Next chunk of at most max_records filtered records; empty when exhausted."""
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> "AlignmentStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class BamAlignmentStream(AlignmentStream):
    def __init__(self, path: str | Path, single_end: bool = True, name: Optional[str] = None):
        self.path = str(path)
        self.single_end = single_end
        self.name = name or sample_name(self.path)
        self._bam = None
        self._it: Optional[Iterator] = None

    def open(self) -> None:
        if self._bam is not None:
            self.close()
        try:
            self._bam = bn.AlignmentFile(self.path, "rb")
        except Exception as e:
            raise RuntimeError(f"Could not open BAM: {self.path}: {e}")
        self._it = iter(self._bam)

    def read_chunk(self, max_records: int) -> List[AlignmentData]:
        check_chunk_size(max_records)
        if self._it is None:
            raise RuntimeError(f"BAM is not open: {self.path}")
        out: List[AlignmentData] = []
        for aln in self._it:
            if not passes_filter(getattr(aln, "flag", 0) or 0, self.single_end):
                continue
            data = _extract_alignment_data(aln)
            if data is None:
                continue
            out.append(data)
            if len(out) >= max_records:
                break
        return out

    def close(self) -> None:
        bam, self._bam, self._it = self._bam, None, None
        if bam is not None:
            bam.close()


class RecordStream(AlignmentStream):
    """Serve already decoded records in chunks (e.g. from another reader)."""

    def __init__(self, records: Sequence[AlignmentData], name: str = "sample"):
        self.records = list(records)
        self.name = name
        self._pos: Optional[int] = None

    def open(self) -> None:
        self._pos = 0

    def read_chunk(self, max_records: int) -> List[AlignmentData]:
        check_chunk_size(max_records)
        if self._pos is None:
            raise RuntimeError(f"Stream is not open: {self.name}")
        chunk = self.records[self._pos:self._pos + max_records]
        self._pos += len(chunk)
        return chunk

    def close(self) -> None:
        self._pos = None


class PairResolver:
    """
    Turn filtered records into the alignments used for overlap counting.

    Single-end records pass through. Mates are buffered by read name (also
    across chunks) and emitted once both are seen: strand_mode 1 gives the pair
    the strand of mate 1, strand_mode 2 the strand of mate 2, both spanning the
    leftmost start to the rightmost end; strand_mode 0 emits each mate on its own.
    """

    def __init__(self, strand_mode: int = 1, single_end: bool = True):
        self.strand_mode = check_strand_mode(strand_mode)
        self.single_end = single_end
        self._pending: Dict[str, AlignmentData] = {}

    @property
    def n_pending(self) -> int:
        return len(self._pending)

    def resolve(self, records: Sequence[AlignmentData]) -> List[AlignmentData]:
        if self.single_end:
            return list(records)
        out: List[AlignmentData] = []
        for rec in records:
            mate = self._pending.pop(rec.qname, None)
            if mate is None:
                self._pending[rec.qname] = rec
                continue
            out.extend(self._combine(mate, rec))
        return out

    def _combine(self, a: AlignmentData, b: AlignmentData) -> List[AlignmentData]:
        first, second = (a, b) if (a.is_read1 or b.is_read2) else (b, a)
        if self.strand_mode == 0:
            return [first, second]
        if first.chr != second.chr:
            return []
        strand = first.strand if self.strand_mode == 1 else second.strand
        return [AlignmentData(
            chr=first.chr,
            start=min(first.start, second.start),
            end=max(first.end, second.end),
            strand=strand,
            qname=first.qname,
            is_paired=True,
            is_read1=False,
            is_read2=False,
        )]


def sample_name(source) -> str:
    if isinstance(source, AlignmentStream):
        return source.name
    return Path(str(source)).name.replace(".bam", "")


def as_stream(source, single_end: bool = True) -> AlignmentStream:
    if isinstance(source, AlignmentStream):
        return source
    return BamAlignmentStream(source, single_end=single_end)
