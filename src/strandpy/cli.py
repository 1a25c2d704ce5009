import argparse
import glob
import logging
import os

from .config import ClassifierSettings, StrandModeThresholds
from .feature import strness_by_feature
from .gfftools import keep_standard_chromosomes, load_exons_by_transcript, load_features
from .strandmode import identify_strand_mode


def _make_logger(level: str) -> logging.Logger:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger("strandpy")
    # Configure once
    if not logger.handlers:
        handler = logging.StreamHandler()
        fmt = logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    logger.setLevel(lvl)
    return logger


def _expand_bam_patterns(bams: list[str], logger: logging.Logger) -> list[str]:
    seen = set()
    out: list[str] = []
    for pat in bams:
        matches = glob.glob(pat) if any(ch in pat for ch in "*?[]") else ([pat] if os.path.exists(pat) else [])
        for m in sorted(matches):
            if m not in seen:
                seen.add(m)
                out.append(m)
        if not matches:
            logger.warning(f"No BAMs matched: {pat}")
    return out


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _make_logger(args.log_level)

    bam_list = _expand_bam_patterns(args.bams, logger)
    if not bam_list:
        logger.error("No BAMs found.")
        return 1

    # Sample-level strandMode
    if args.cmd == "strandmode":
        try:
            transcripts = load_exons_by_transcript(args.gff, logger=logger)
            settings = ClassifierSettings(
                target_alignments=args.target,
                max_chunks=args.max_chunks,
                chunk_size=args.yield_size,
                min_alignments=args.min_alignments,
            )
            thresholds = StrandModeThresholds(
                stranded=args.stranded,
                unstranded_low=args.unstranded_low,
                unstranded_high=args.unstranded_high,
            )
            res = identify_strand_mode(
                bam_list,
                transcripts,
                single_end=args.single_end,
                std_chrom=not args.all_chrom,
                chunk_size=args.yield_size,
                workers=args.workers,
                thresholds=thresholds,
                settings=settings,
                logger=logger,
            )
        except ValueError as e:
            logger.error(str(e))
            return 2
        except Exception as e:
            logger.error(str(e))
            return 1
        logger.info(f"strandMode: {res.strand_mode}")
        outp = res.write_tsv(args.out)
        logger.info(f"Wrote strandedness table to {outp}")
        return 0

    # Strandedness per feature
    elif args.cmd == "by-feature":
        try:
            features = load_features(args.gff, by=args.by, collapse=args.collapse, logger=logger)
            if args.std_chrom:
                features = keep_standard_chromosomes(features)
            table = strness_by_feature(
                bam_list,
                features,
                single_end=args.single_end,
                strand_mode=args.strand_mode,
                chunk_size=args.yield_size,
                include_ambiguous=args.ambiguous,
                p=args.p,
                workers=args.workers,
                logger=logger,
            )
        except ValueError as e:
            logger.error(str(e))
            return 2
        except Exception as e:
            logger.error(str(e))
            return 1
        paths = table.write_tsv(args.out)
        logger.info(
            f"Wrote {len(paths)} tables with {table.shape[0]} features and {table.shape[1]} samples "
            f"to {args.out}.*.tsv"
        )
        return 0

    else:
        parser.error("Unknown command")

    return 2


def _add_common(sp: argparse.ArgumentParser) -> None:
    sp.add_argument(
        "bams",
        nargs="+",
        help="One or more BAM files or glob patterns (e.g., sample*.bam)."
    )
    sp.add_argument(
        "--gff",
        required=True,
        help="Gene annotations as GFF3 or GTF (optionally .gz)."
    )
    sp.add_argument(
        "--single-end",
        dest="single_end",
        action="store_true",
        help="Reads are single-end (default: paired-end, properly paired only)."
    )
    sp.add_argument(
        "--yield-size",
        dest="yield_size",
        type=int,
        default=1_000_000,
        help="Number of BAM records read per chunk (default 1000000)."
    )
    sp.add_argument(
        "-j", "--workers",
        type=int,
        default=1,
        help="Number of samples processed in parallel (default 1)."
    )
    sp.add_argument(
        "--log-level",
        default="INFO",
        choices=["ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO)."
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="strandpy",
        description="Infer library strandedness of RNA-seq BAMs from annotated transcripts."
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    # strandMode per sample
    s = sub.add_parser(
        "strandmode",
        help="Identify the strandMode (1, 2, NA or ambiguous) of each sample."
    )
    _add_common(s)
    s.add_argument(
        "--out",
        required=True,
        help="Output TSV with strandedness values and strandMode per sample."
    )
    s.add_argument(
        "--all-chrom",
        dest="all_chrom",
        action="store_true",
        help="Use alignments on all sequences, not only standard chromosomes."
    )
    s.add_argument(
        "--target",
        type=int,
        default=200_000,
        help="Stop reading a BAM once this many alignments overlap transcripts (default 200000)."
    )
    s.add_argument(
        "--max-chunks",
        dest="max_chunks",
        type=int,
        default=10,
        help="Maximum number of chunks read per BAM (default 10)."
    )
    s.add_argument(
        "--min-alignments",
        dest="min_alignments",
        type=int,
        default=100_000,
        help="Warn when a sample has fewer alignments overlapping transcripts (default 100000)."
    )
    s.add_argument(
        "--stranded",
        type=float,
        default=0.90,
        help="Fraction above which a sample is called strandMode 1 or 2 (default 0.90)."
    )
    s.add_argument(
        "--unstranded-low",
        dest="unstranded_low",
        type=float,
        default=0.40,
        help="Lower bound of the unstranded band (default 0.40)."
    )
    s.add_argument(
        "--unstranded-high",
        dest="unstranded_high",
        type=float,
        default=0.60,
        help="Upper bound of the unstranded band (default 0.60)."
    )

    # strandedness per feature
    f = sub.add_parser(
        "by-feature",
        help="Compute strandedness and a binomial test for each annotated feature."
    )
    _add_common(f)
    f.add_argument(
        "--out",
        required=True,
        help="Output prefix; writes <prefix>.strness.tsv, .counts.tsv, .counts_invstrand.tsv, .p_value.tsv."
    )
    f.add_argument(
        "--by",
        choices=["gene", "transcript"],
        default="gene",
        help="Feature level (default: gene)."
    )
    f.add_argument(
        "--collapse",
        action="store_true",
        help="Use the spanning range of each feature instead of its exons."
    )
    f.add_argument(
        "--strand-mode",
        dest="strand_mode",
        type=int,
        choices=[0, 1, 2],
        default=1,
        help="Strand of a pair: 1 = mate 1, 2 = mate 2, 0 = each mate on its own (default 1)."
    )
    f.add_argument(
        "--ambiguous",
        action="store_true",
        help="Count alignments overlapping features on both strands in both counts."
    )
    f.add_argument(
        "--p",
        type=float,
        default=0.6,
        help="Hypothesized same-strand probability for the binomial test (default 0.6)."
    )
    f.add_argument(
        "--std-chrom",
        dest="std_chrom",
        action="store_true",
        help="Keep only features on standard chromosomes."
    )
    return p


if __name__ == "__main__":
    raise SystemExit(main())
