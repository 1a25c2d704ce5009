from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Dict, List, Sequence, Tuple, Union
import logging

import numpy as np
from scipy.stats import binomtest

from .bamio import PairResolver, as_stream, sample_name
from .classes import AlignmentData, Feature
from .config import check_chunk_size, check_probability, check_strand_mode, check_workers
from .index import AnnotationIndex, check_features
from .overlap import feature_hits
from .parallel import run_per_sample

LAYERS = ("strness", "counts", "counts_invstrand", "p_value")


def strand_binomtest(counts: np.ndarray, counts_invstrand: np.ndarray, p: float) -> np.ndarray:
    """
    Upper-tail exact binomial p-value per feature: is the number of same-strand
    alignments larger than expected if a fraction p of them were same-strand?
    Features without same-strand alignments get 0 and are not tested.
    """
    counts = np.asarray(counts)
    counts_invstrand = np.asarray(counts_invstrand)
    pval = np.zeros(len(counts), dtype=float)
    for i in np.flatnonzero(counts > 0):
        k = int(counts[i])
        n = k + int(counts_invstrand[i])
        pval[i] = binomtest(k, n, p, alternative="greater").pvalue
    return pval


@dataclass(frozen=True)
class FeatureSampleResult:
    strness: np.ndarray
    counts: np.ndarray
    counts_invstrand: np.ndarray
    p_value: np.ndarray


class FeatureStrandednessEngine:
    """
    Per-feature counts of same-strand and opposite-strand alignments for one
    sample, accumulated over the whole stream.

    An alignment overlapping more than one feature on a strand is dropped from
    that strand's counts. With include_ambiguous=False, alignments overlapping
    features on both strands are dropped from both counts; with True they are
    counted on both.
    """

    def __init__(
        self,
        index: AnnotationIndex,
        *,
        single_end: bool = True,
        strand_mode: int = 1,
        include_ambiguous: bool = False,
        p: float = 0.6,
        chunk_size: int = 1_000_000,
        logger: logging.Logger | None = None,
    ):
        self.index = index
        self.single_end = single_end
        self.strand_mode = check_strand_mode(strand_mode)
        self.include_ambiguous = include_ambiguous
        self.p = check_probability(p)
        self.chunk_size = check_chunk_size(chunk_size)
        self.logger = logger or logging.getLogger("strandpy.feature")

    def count_chunk(
        self,
        alignments: Sequence[AlignmentData],
        counts: np.ndarray,
        counts_invstrand: np.ndarray,
    ) -> None:
        conc, disc = feature_hits(alignments, self.index)
        conc = {i: h[0] for i, h in conc.items() if len(h) == 1}
        disc = {i: h[0] for i, h in disc.items() if len(h) == 1}
        if not self.include_ambiguous:
            ambig = conc.keys() & disc.keys()
            for i in ambig:
                del conc[i]
                del disc[i]
        for f in conc.values():
            counts[f] += 1
        for f in disc.values():
            counts_invstrand[f] += 1

    def run(self, source) -> FeatureSampleResult:
        stream = as_stream(source, single_end=self.single_end)
        name = sample_name(stream)
        resolver = PairResolver(strand_mode=self.strand_mode, single_end=self.single_end)
        n = len(self.index)
        counts = np.zeros(n, dtype=np.int64)
        counts_invstrand = np.zeros(n, dtype=np.int64)

        self.logger.info(f"Computing strandedness by feature from {name}")
        n_chunks = 0
        n_alignments = 0
        with stream:
            while True:
                records = stream.read_chunk(self.chunk_size)
                if not records:
                    break
                alns = resolver.resolve(records)
                self.count_chunk(alns, counts, counts_invstrand)
                n_chunks += 1
                n_alignments += len(alns)
                self.logger.debug(f"{name}: chunk {n_chunks}, {len(alns):,} alignments")
        if resolver.n_pending:
            self.logger.debug(f"{name}: {resolver.n_pending} mates left without their pair")

        total = counts + counts_invstrand
        strness = np.zeros(n, dtype=float)
        wh = total > 0
        strness[wh] = counts[wh] / total[wh]
        self.logger.info(
            f"Done {name}: alignments={n_alignments:,}, features_with_hits={int(wh.sum())}"
        )
        return FeatureSampleResult(
            strness=strness,
            counts=counts,
            counts_invstrand=counts_invstrand,
            p_value=strand_binomtest(counts, counts_invstrand, self.p),
        )


@dataclass(frozen=True)
class FeatureCountTable:
    """features x samples matrices, one per layer, with the features as row metadata."""
    features: Tuple[Feature, ...]
    samples: Tuple[str, ...]
    strness: np.ndarray
    counts: np.ndarray
    counts_invstrand: np.ndarray
    p_value: np.ndarray

    @classmethod
    def from_samples(cls, features: Sequence[Feature], per_sample: Dict[str, FeatureSampleResult]):
        samples = tuple(per_sample)
        n = len(features)

        def stack(layer: str, dtype) -> np.ndarray:
            if not samples:
                return np.zeros((n, 0), dtype=dtype)
            return np.column_stack([getattr(per_sample[s], layer) for s in samples]).astype(dtype)

        return cls(
            features=tuple(features),
            samples=samples,
            strness=stack("strness", float),
            counts=stack("counts", np.int64),
            counts_invstrand=stack("counts_invstrand", np.int64),
            p_value=stack("p_value", float),
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return len(self.features), len(self.samples)

    def layer(self, name: str) -> np.ndarray:
        if name not in LAYERS:
            raise KeyError(f"Unknown layer {name!r}; expected one of {', '.join(LAYERS)}")
        return getattr(self, name)

    def write_tsv(self, prefix: str | Path) -> List[Path]:
        """One TSV per layer: <prefix>.<layer>.tsv with feature coordinates first."""
        prefix = Path(prefix)
        prefix.parent.mkdir(parents=True, exist_ok=True)
        written: List[Path] = []
        for name in LAYERS:
            values = self.layer(name)
            outp = prefix.parent / f"{prefix.name}.{name}.tsv"
            with open(outp, "w", encoding="utf-8") as fh:
                fh.write("feature_id\tchrom\tstart\tend\tstrand\t" + "\t".join(self.samples) + "\n")
                for f, row in zip(self.features, values):
                    if values.dtype.kind == "f":
                        vals = [f"{v:.6g}" for v in row]
                    else:
                        vals = [str(int(v)) for v in row]
                    # 1-based inclusive coordinates, as in GFF
                    fh.write(f"{f.id}\t{f.chr}\t{f.start + 1}\t{f.end}\t{f.strand}\t" + "\t".join(vals) + "\n")
            written.append(outp)
        return written


def _strness_one_sample(source, engine: FeatureStrandednessEngine) -> FeatureSampleResult:
    return engine.run(source)


def strness_by_feature(
    sources: Sequence,
    features: Union[Sequence[Feature], AnnotationIndex],
    *,
    single_end: bool = True,
    strand_mode: int = 1,
    chunk_size: int = 1_000_000,
    include_ambiguous: bool = False,
    p: float = 0.6,
    workers: int = 1,
    logger: logging.Logger | None = None,
) -> FeatureCountTable:
    """
    Strandedness of each feature in each sample, using all alignments of
    every sample (BAM paths or AlignmentStreams).
    """
    logger = logger or logging.getLogger("strandpy.feature")
    strand_mode = check_strand_mode(strand_mode)
    check_workers(workers)
    if isinstance(features, AnnotationIndex):
        index = features
    else:
        index = AnnotationIndex(check_features(features))

    engine = FeatureStrandednessEngine(
        index,
        single_end=single_end,
        strand_mode=strand_mode,
        include_ambiguous=include_ambiguous,
        p=p,
        chunk_size=chunk_size,
        logger=logger,
    )
    logger.info("Start processing BAM file(s)")
    per_sample = run_per_sample(
        partial(_strness_one_sample, engine=engine), sources, workers=workers, logger=logger,
    )
    return FeatureCountTable.from_samples(index.features, per_sample)
