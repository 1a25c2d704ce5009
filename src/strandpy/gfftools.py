from __future__ import annotations
from pathlib import Path
import gzip
import logging
import re
from typing import Dict, List, Optional, TextIO, Tuple

from .classes import Feature

_STANDARD_CHROM = re.compile(r"^(chr)?([1-9]|1[0-9]|2[0-2]|X|Y|M|MT)$")


def _open_text_auto(path: str | Path, mode: str = "rt") -> TextIO:
    p = Path(path)
    if p.suffix.lower() == ".gz":
        return gzip.open(p, mode, encoding="utf-8", errors="replace")
    return open(p, mode, encoding="utf-8", errors="replace")


def _parse_attrs(attr_field: str) -> Dict[str, str]:
    """Parse either GFF3 (key=value;) or GTF (key "value";) attribute columns."""
    out: Dict[str, str] = {}
    for kv in attr_field.strip().split(";"):
        kv = kv.strip()
        if not kv:
            continue
        if "=" in kv:
            k, v = kv.split("=", 1)
            out[k.strip()] = v.strip()
        elif " " in kv:
            k, v = kv.split(" ", 1)
            out[k.strip()] = v.strip().strip('"')
    return out


def _normalize_strand(strand: str) -> str:
    return strand if strand in ("+", "-") else "*"


def _read_exons(
    gff_path: str | Path,
) -> Tuple[Dict[str, List[Tuple[str, str, int, int]]], Dict[str, str]]:
    """
    Collect exon rows grouped by transcript (in file order) and the
    transcript -> gene mapping. Coordinates returned 0-based half-open.
    """
    exons_by_tx: Dict[str, List[Tuple[str, str, int, int]]] = {}
    tx_to_gene: Dict[str, str] = {}

    with _open_text_auto(gff_path) as fh:
        for line in fh:
            if not line.strip() or line.startswith("#"):
                continue
            cols = line.rstrip("\n").split("\t")
            if len(cols) < 9:
                continue
            chrom, _src, feature, start_s, end_s, _score, strand, _phase, attrs = cols[:9]
            A = _parse_attrs(attrs)
            try:
                start = int(start_s) - 1
                end = int(end_s)
            except ValueError:
                continue

            if feature in ("mRNA", "transcript", "primary_transcript", "lnc_RNA", "ncRNA"):
                tid = A.get("ID") or A.get("transcript_id")
                gid = A.get("Parent") or A.get("gene_id")
                if tid and gid:
                    tx_to_gene.setdefault(tid, gid.split(",")[0])
            elif feature == "exon":
                # GTF names the transcript directly; GFF3 links through Parent (possibly several)
                if "transcript_id" in A:
                    parents = [A["transcript_id"]]
                    if "gene_id" in A:
                        tx_to_gene.setdefault(A["transcript_id"], A["gene_id"])
                else:
                    parents = [p for p in A.get("Parent", "").split(",") if p]
                for tid in parents:
                    exons_by_tx.setdefault(tid, []).append(
                        (chrom, _normalize_strand(strand), start, end)
                    )
    return exons_by_tx, tx_to_gene


def _merge_intervals(intervals: List[Tuple[int, int]]) -> Tuple[Tuple[int, int], ...]:
    merged: List[List[int]] = []
    for s, e in sorted(intervals):
        if merged and s <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], e)
        else:
            merged.append([s, e])
    return tuple((s, e) for s, e in merged)


def _group_to_features(
    groups: Dict[str, List[Tuple[str, str, int, int]]],
    collapse: bool = False,
) -> List[Feature]:
    features: List[Feature] = []
    for gid, rows in groups.items():
        # A group spanning several chr/strand combinations is split per locus
        by_locus: Dict[Tuple[str, str], List[Tuple[int, int]]] = {}
        for chrom, strand, s, e in rows:
            by_locus.setdefault((chrom, strand), []).append((s, e))
        multi = len(by_locus) > 1
        for (chrom, strand), ivs in by_locus.items():
            ivs_m = _merge_intervals(ivs)
            if collapse:
                ivs_m = ((ivs_m[0][0], max(e for _, e in ivs_m)),)
            fid = f"{gid}:{chrom}:{strand}" if multi else gid
            features.append(Feature(id=fid, chr=chrom, strand=strand, intervals=ivs_m))
    return features


def load_exons_by_transcript(
    gff_path: str | Path,
    logger: logging.Logger | None = None,
) -> List[Feature]:
    """Load exons from a GFF3/GTF grouped by transcript, in file order."""
    exons_by_tx, _ = _read_exons(gff_path)
    features = _group_to_features(exons_by_tx)
    if logger:
        logger.info(f"Annotation loaded: {len(features)} transcripts from {gff_path}")
    return features


def load_features(
    gff_path: str | Path,
    by: str = "gene",
    collapse: bool = False,
    logger: logging.Logger | None = None,
) -> List[Feature]:
    """
    Load features for per-feature strandedness.

    by="gene" merges the exons of all transcripts of a gene into one feature,
    by="transcript" keeps one feature per transcript. With collapse=True each
    feature is reduced to its spanning range.
    """
    exons_by_tx, tx_to_gene = _read_exons(gff_path)
    groups: Dict[str, List[Tuple[str, str, int, int]]] = {}
    if by == "transcript":
        groups = exons_by_tx
    elif by == "gene":
        for tid, rows in exons_by_tx.items():
            groups.setdefault(tx_to_gene.get(tid, tid), []).extend(rows)
    else:
        raise ValueError(f"by must be 'gene' or 'transcript', got {by!r}")

    features = _group_to_features(groups, collapse=collapse)
    if logger:
        logger.info(f"Annotation loaded: {len(features)} {by} features from {gff_path}")
        if logger.isEnabledFor(logging.DEBUG):
            for f in features[:5]:
                logger.debug(f"  Example feature: {f.id} {f.chr}:{f.start}-{f.end}({f.strand}) n_intervals={len(f.intervals)}")
    return features


def is_standard_chromosome(name: str) -> bool:
    return bool(_STANDARD_CHROM.match(name))


def keep_standard_chromosomes(features: List[Feature]) -> List[Feature]:
    return [f for f in features if is_standard_chromosome(f.chr)]


def harmonize_seqname(name: str, known: Dict[str, None] | set) -> Optional[str]:
    """
    Map an alignment contig name onto the annotation's naming style
    (chr1 vs 1, chrM vs MT). Returns None when no variant is known.
    """
    if name in known:
        return name
    bare = name[3:] if name.startswith("chr") else name
    candidates = [bare, "chr" + bare]
    if bare in ("M", "MT"):
        candidates += ["M", "MT", "chrM", "chrMT"]
    for c in candidates:
        if c in known:
            return c
    return None
