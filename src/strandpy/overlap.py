from __future__ import annotations

import logging
import math
from typing import Dict, List, Sequence, Tuple, Union

from .classes import AlignmentData, OverlapTally, invert_strand
from .index import AnnotationIndex

_log = logging.getLogger("strandpy.overlap")


def match_strands(
    alignments: Sequence[AlignmentData],
    index: AnnotationIndex,
) -> Tuple[Dict[int, int], Dict[int, int]]:
    """
    One overlap per alignment on each strand: {alignment position -> Feature ordinal}
    for the alignment as-is (concordant) and with its strand inverted (discordant).
    The first Feature in index build order wins when several overlap.
    """
    conc: Dict[int, int] = {}
    disc: Dict[int, int] = {}
    for i, aln in enumerate(alignments):
        chrom = index.resolve_seqname(aln.chr)
        hit = index.first_hit(chrom, aln.start, aln.end, aln.strand)
        if hit is not None:
            conc[i] = hit
        hit = index.first_hit(chrom, aln.start, aln.end, invert_strand(aln.strand))
        if hit is not None:
            disc[i] = hit
    return conc, disc


def count_strand_overlaps(
    alignments: Sequence[AlignmentData],
    index: AnnotationIndex,
    *,
    report_all: bool = True,
    ambiguity_ceiling: float = 0.10,
    logger: logging.Logger | None = None,
) -> Union[OverlapTally, float]:
    """
    Classify alignments against annotated strands.

    Returns an OverlapTally (report_all=True) or the ratio of concordant
    alignments over concordant+discordant, ignoring ambiguous ones.
    """
    logger = logger or _log
    conc, disc = match_strands(alignments, index)

    # Alignments hitting annotations on both strands
    n_ambig = len(conc.keys() & disc.keys())
    n_conc = len(conc) - n_ambig
    n_disc = len(disc) - n_ambig

    n_used = n_conc + n_disc + n_ambig
    if n_used and n_ambig / n_used > ambiguity_ceiling:
        logger.warning(
            f"The proportion of alignments mapping to regions with transcripts annotated "
            f"to both strands is > {ambiguity_ceiling:.2f} ({n_ambig}/{n_used}), this can "
            f"cause strandedness value to be low."
        )

    if report_all:
        return OverlapTally(concordant=n_conc, discordant=n_disc, ambiguous=n_ambig)

    if n_conc + n_disc == 0:
        return math.nan
    return n_conc / (n_conc + n_disc)


def feature_hits(
    alignments: Sequence[AlignmentData],
    index: AnnotationIndex,
) -> Tuple[Dict[int, List[int]], Dict[int, List[int]]]:
    """All Feature ordinals overlapping each alignment, as-is and strand-inverted."""
    conc: Dict[int, List[int]] = {}
    disc: Dict[int, List[int]] = {}
    for i, aln in enumerate(alignments):
        chrom = index.resolve_seqname(aln.chr)
        hits = index.query(chrom, aln.start, aln.end, aln.strand)
        if hits:
            conc[i] = hits
        hits = index.query(chrom, aln.start, aln.end, invert_strand(aln.strand))
        if hits:
            disc[i] = hits
    return conc, disc
