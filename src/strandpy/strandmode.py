from __future__ import annotations

from dataclasses import dataclass, replace
from functools import partial
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union
import logging
import math

from .bamio import PairResolver, as_stream, sample_name
from .classes import Feature, OverlapTally, StrandednessRow
from .config import ClassifierSettings, StrandModeThresholds, check_chunk_size, check_workers
from .gfftools import is_standard_chromosome, keep_standard_chromosomes
from .index import AnnotationIndex
from .overlap import count_strand_overlaps
from .parallel import run_per_sample

Label = Union[int, str, None]


class SampleStrandClassifier:
    """
    Strandedness of one sample from a subset of its alignments.

    Chunks are folded into an OverlapTally until `target_alignments` alignments
    overlap a transcript, `max_chunks` chunks were read, or the stream runs dry.
    Pairs are always resolved with the strand of mate 1: alignments discordant
    under that convention are the concordant ones under the mate 2 convention.
    """

    def __init__(
        self,
        index: AnnotationIndex,
        *,
        single_end: bool = True,
        std_chrom: bool = True,
        settings: ClassifierSettings = ClassifierSettings(),
        logger: logging.Logger | None = None,
    ):
        check_chunk_size(settings.chunk_size)
        self.index = index
        self.single_end = single_end
        self.std_chrom = std_chrom
        self.settings = settings
        self.logger = logger or logging.getLogger("strandpy.strandmode")

    def _done(self, tally: OverlapTally, n_chunks: int) -> bool:
        return tally.total >= self.settings.target_alignments or n_chunks >= self.settings.max_chunks

    def run(self, source) -> StrandednessRow:
        s = self.settings
        stream = as_stream(source, single_end=self.single_end)
        name = sample_name(stream)
        resolver = PairResolver(strand_mode=1, single_end=self.single_end)
        self.logger.info(f"Computing strandedness from {name}")

        tally = OverlapTally()
        n_chunks = 0
        with stream:
            while not self._done(tally, n_chunks):
                alns = resolver.resolve(stream.read_chunk(s.chunk_size))
                if self.std_chrom:
                    alns = [a for a in alns if is_standard_chromosome(a.chr)]
                # No usable alignments in this chunk: treat the stream as exhausted
                if not alns:
                    break
                tally += count_strand_overlaps(
                    alns, self.index,
                    report_all=True,
                    ambiguity_ceiling=s.ambiguity_ceiling,
                    logger=self.logger,
                )
                n_chunks += 1
                self.logger.debug(
                    f"{name}: chunk {n_chunks}, {len(alns):,} alignments; running tally "
                    f"concordant={tally.concordant}, discordant={tally.discordant}, "
                    f"ambiguous={tally.ambiguous}, total={tally.total}"
                )
        if resolver.n_pending:
            self.logger.debug(f"{name}: {resolver.n_pending} mates left without their pair")

        if n_chunks >= s.max_chunks and tally.total < s.target_alignments:
            self.logger.warning(
                f"Reading {s.max_chunks} chunks of {s.chunk_size:,} records from {name} was not "
                f"enough to get >= {s.target_alignments:,} alignments overlapping a gene, "
                f"this can affect the accuracy of the strandedness"
            )
        if tally.total < s.min_alignments:
            self.logger.warning(
                f"Sample {name} had less than {s.min_alignments:,} alignments overlapping "
                f"exonic regions ({tally.total:,}), decreasing the accuracy of the strandedness value"
            )
        return tally.to_row(name)


def _label_one(row: StrandednessRow, t: StrandModeThresholds) -> Label:
    label: Label = "ambiguous"
    if row.strand_mode1 > t.stranded:
        label = 1
    if row.strand_mode2 > t.stranded:
        label = 2
    if (t.unstranded_low < row.strand_mode1 < t.unstranded_high
            and t.unstranded_low < row.strand_mode2 < t.unstranded_high):
        label = None
    return label


def decide_strand_mode(
    rows: Sequence[StrandednessRow],
    thresholds: StrandModeThresholds = StrandModeThresholds(),
) -> Union[Label, Dict[str, Label]]:
    """
    strandMode per sample from its strandedness row.

    Rules are applied in order and the last one that matches wins: "ambiguous",
    then 1 if strandMode1 > 0.90, then 2 if strandMode2 > 0.90, then NA (None)
    if both fractions lie strictly between 0.40 and 0.60. A single value is
    returned when all samples agree. Numeric labels stay integers only when no
    sample is "ambiguous" or NA; otherwise they are reported as "1"/"2".
    """
    labels = {row.sample: _label_one(row, thresholds) for row in rows}

    if any(v is None or v == "ambiguous" for v in labels.values()):
        labels = {k: (str(v) if isinstance(v, int) else v) for k, v in labels.items()}

    distinct = set(labels.values())
    if len(distinct) == 1:
        return distinct.pop()
    return labels


@dataclass(frozen=True)
class StrandModeResult:
    strand_mode: Union[Label, Dict[str, Label]]
    strandedness: List[StrandednessRow]

    def label_for(self, sample: str) -> Label:
        if isinstance(self.strand_mode, dict):
            return self.strand_mode[sample]
        return self.strand_mode

    def write_tsv(self, out_path: str | Path) -> Path:
        outp = Path(out_path)
        outp.parent.mkdir(parents=True, exist_ok=True)

        def fmt(x: float) -> str:
            return "NA" if math.isnan(x) else f"{x:.6f}"

        with open(outp, "w", encoding="utf-8") as fh:
            fh.write("sample\tstrandMode1\tstrandMode2\tambiguous\tNalignments\tstrandMode\n")
            for r in self.strandedness:
                label = self.label_for(r.sample)
                fh.write(
                    f"{r.sample}\t{fmt(r.strand_mode1)}\t{fmt(r.strand_mode2)}\t"
                    f"{fmt(r.ambiguous)}\t{r.n_alignments}\t{'NA' if label is None else label}\n"
                )
        return outp


def _strandedness_one_sample(source, classifier: SampleStrandClassifier) -> StrandednessRow:
    return classifier.run(source)


def identify_strand_mode(
    sources: Sequence,
    transcripts: Union[Sequence[Feature], AnnotationIndex],
    *,
    single_end: bool = True,
    std_chrom: bool = True,
    chunk_size: Optional[int] = None,
    workers: int = 1,
    thresholds: StrandModeThresholds = StrandModeThresholds(),
    settings: Optional[ClassifierSettings] = None,
    logger: logging.Logger | None = None,
) -> StrandModeResult:
    """
    Identify the strandMode of one or more samples (BAM paths or AlignmentStreams)
    against transcript models (exons grouped by transcript). A `chunk_size`
    given here overrides the one in `settings`.
    """
    logger = logger or logging.getLogger("strandpy.strandmode")
    check_workers(workers)
    if settings is None:
        settings = ClassifierSettings()
    if chunk_size is not None:
        settings = replace(settings, chunk_size=chunk_size)
    check_chunk_size(settings.chunk_size)

    if isinstance(transcripts, AnnotationIndex):
        index = transcripts
        if std_chrom:
            index = AnnotationIndex(keep_standard_chromosomes(list(index.features)))
    else:
        tx = list(transcripts)
        index = AnnotationIndex(keep_standard_chromosomes(tx) if std_chrom else tx)
    logger.info(f"Using {len(index):,} transcripts on {len(index.seqnames)} sequences")

    classifier = SampleStrandClassifier(
        index, single_end=single_end, std_chrom=std_chrom, settings=settings, logger=logger,
    )
    logger.info("Start processing BAM file(s)")
    by_sample = run_per_sample(
        partial(_strandedness_one_sample, classifier=classifier),
        sources, workers=workers, logger=logger,
    )
    rows = list(by_sample.values())
    return StrandModeResult(strand_mode=decide_strand_mode(rows, thresholds), strandedness=rows)
