import logging
import math

import pytest

from strandpy.bamio import RecordStream
from strandpy.classes import StrandednessRow
from strandpy.config import ClassifierSettings
from strandpy.index import AnnotationIndex
from strandpy.strandmode import (
    SampleStrandClassifier,
    StrandModeResult,
    decide_strand_mode,
    identify_strand_mode,
)


def row(sample, m1, m2, n=1000):
    return StrandednessRow(sample, m1, m2, max(0.0, 1.0 - m1 - m2), n)


# ============================================================================
# strandMode decision
# ============================================================================

@pytest.mark.parametrize("m1, m2, expected", [
    (0.90, 0.05, "ambiguous"),
    (0.901, 0.05, 1),
    (0.05, 0.90, "ambiguous"),
    (0.05, 0.95, 2),
    (0.40, 0.60, "ambiguous"),
    (0.60, 0.40, "ambiguous"),
    (0.41, 0.59, None),
    (0.50, 0.50, None),
    (0.70, 0.25, "ambiguous"),
])
def test_decision_boundaries(m1, m2, expected):
    assert decide_strand_mode([row("s1", m1, m2)]) == expected


def test_integer_labels_when_all_decided():
    sm = decide_strand_mode([row("s1", 0.97, 0.02), row("s2", 0.02, 0.97)])
    assert sm == {"s1": 1, "s2": 2}
    assert all(isinstance(v, int) for v in sm.values())


def test_labels_are_categorical_with_ambiguous_or_na():
    assert decide_strand_mode([row("s1", 0.97, 0.02), row("s2", 0.7, 0.2)]) == {"s1": "1", "s2": "ambiguous"}
    assert decide_strand_mode([row("s1", 0.02, 0.97), row("s2", 0.5, 0.5)]) == {"s1": "2", "s2": None}


def test_identical_labels_collapse():
    assert decide_strand_mode([row("a", 0.95, 0.01), row("b", 0.99, 0.0)]) == 1
    assert decide_strand_mode([row("a", 0.5, 0.5), row("b", 0.45, 0.55)]) is None


def test_decision_is_pure():
    rows = [row("a", 0.95, 0.01), row("b", 0.3, 0.3), row("c", 0.5, 0.5)]
    first = decide_strand_mode(rows)
    assert decide_strand_mode(rows) == first
    assert rows == [row("a", 0.95, 0.01), row("b", 0.3, 0.3), row("c", 0.5, 0.5)]


def test_nan_row_is_ambiguous():
    assert decide_strand_mode([StrandednessRow("s", math.nan, math.nan, math.nan, 0)]) == "ambiguous"


# ============================================================================
# Sample classifier
# ============================================================================

def _classifier(transcripts, **kw):
    settings = ClassifierSettings(**kw)
    return SampleStrandClassifier(AnnotationIndex(transcripts), settings=settings)


def test_all_concordant_sample(make_aln, one_transcript):
    alns = [make_aln("chr1", i, i + 50, "+") for i in range(0, 4000, 4)]
    r = _classifier(one_transcript, chunk_size=100).run(RecordStream(alns, name="s1"))
    assert r.strand_mode1 == 1.0
    assert r.strand_mode2 == 0.0
    assert r.n_alignments == 1000
    assert decide_strand_mode([r]) == 1


def test_unstranded_sample(make_aln, one_transcript):
    alns = [make_aln("chr1", 100, 150, "+"), make_aln("chr1", 100, 150, "-")] * 500
    r = _classifier(one_transcript, chunk_size=1000).run(RecordStream(alns, name="s1"))
    assert r.strand_mode1 == pytest.approx(0.5)
    assert r.strand_mode2 == pytest.approx(0.5)
    assert r.strand_mode1 + r.strand_mode2 + r.ambiguous == pytest.approx(1.0)
    assert decide_strand_mode([r]) is None


def test_stops_once_target_reached(make_aln, one_transcript):
    alns = [make_aln("chr1", 100, 150, "-")] * 1000
    stream = RecordStream(alns, name="s1")
    r = _classifier(one_transcript, chunk_size=100, target_alignments=250).run(stream)
    assert r.n_alignments == 300
    assert r.strand_mode2 == 1.0


def test_low_sample_and_chunk_cap_warnings(make_aln, one_transcript, caplog):
    alns = [make_aln("chr1", 100, 150, "+")] * 60_000
    clf = _classifier(one_transcript, chunk_size=5_000)
    with caplog.at_level(logging.WARNING):
        r = clf.run(RecordStream(alns, name="low"))
    assert r.n_alignments == 50_000
    assert "was not enough" in caplog.text
    assert "less than 100,000" in caplog.text
    assert "low" in caplog.text


def test_no_cap_warning_when_stream_ends(make_aln, one_transcript, caplog):
    alns = [make_aln("chr1", 100, 150, "+")] * 10
    with caplog.at_level(logging.WARNING):
        _classifier(one_transcript, chunk_size=5).run(RecordStream(alns, name="s1"))
    assert "was not enough" not in caplog.text
    assert "less than" in caplog.text


def test_non_standard_chromosomes_dropped(make_aln, one_transcript):
    alns = [make_aln("chrUn_KI270302v1", 100, 150, "+")] * 20
    r = _classifier(one_transcript, chunk_size=10).run(RecordStream(alns, name="s1"))
    assert r.n_alignments == 0
    assert math.isnan(r.strand_mode1)


def test_stops_at_first_chunk_without_usable_alignments(make_aln, one_transcript):
    alns = [make_aln("chrUn_KI270302v1", 100, 150, "+")] * 10 + [make_aln("chr1", 100, 150, "-")] * 10
    r = _classifier(one_transcript, chunk_size=10).run(RecordStream(alns, name="s"))
    assert r.n_alignments == 0
    assert math.isnan(r.strand_mode1)
    assert math.isnan(r.strand_mode2)


def test_unpaired_mates_logged(make_aln, one_transcript, caplog):
    records = [
        make_aln("chr1", 100, 150, "+", qname="q0", read1=True),
        make_aln("chr1", 300, 350, "-", qname="q0", read2=True),
        make_aln("chr1", 500, 550, "+", qname="lonely", read1=True),
    ]
    clf = SampleStrandClassifier(
        AnnotationIndex(one_transcript), single_end=False, settings=ClassifierSettings(chunk_size=10),
    )
    with caplog.at_level(logging.DEBUG, logger="strandpy.strandmode"):
        r = clf.run(RecordStream(records, name="pe"))
    assert r.n_alignments == 1
    assert "pe: 1 mates left without their pair" in caplog.text


def test_paired_reads_use_mate1_strand(make_aln, one_transcript):
    records = []
    for i in range(100):
        records.append(make_aln("chr1", 100, 150, "-", qname=f"q{i}", read1=True))
        records.append(make_aln("chr1", 300, 350, "+", qname=f"q{i}", read2=True))
    clf = SampleStrandClassifier(
        AnnotationIndex(one_transcript), single_end=False, settings=ClassifierSettings(chunk_size=25),
    )
    r = clf.run(RecordStream(records, name="pe"))
    assert r.n_alignments == 100
    assert r.strand_mode2 == 1.0
    assert decide_strand_mode([r]) == 2


def test_stream_closed_on_error(make_aln, one_transcript):
    class Exploding(RecordStream):
        def read_chunk(self, max_records):
            raise OSError("truncated file")

    stream = Exploding([make_aln("chr1", 100, 150, "+")], name="bad")
    with pytest.raises(OSError):
        _classifier(one_transcript).run(stream)
    assert stream._pos is None


def test_invalid_chunk_size(one_transcript):
    with pytest.raises(ValueError):
        _classifier(one_transcript, chunk_size=0)
    with pytest.raises(ValueError):
        identify_strand_mode([], one_transcript, chunk_size=-5)


# ============================================================================
# Driver
# ============================================================================

def test_identify_strand_mode_multiple_samples(make_aln, one_transcript):
    fwd = RecordStream([make_aln("chr1", 100, 150, "+")] * 50, name="fwd")
    rev = RecordStream([make_aln("chr1", 100, 150, "-")] * 50, name="rev")
    res = identify_strand_mode([fwd, rev], one_transcript, chunk_size=20)
    assert [r.sample for r in res.strandedness] == ["fwd", "rev"]
    assert res.strand_mode == {"fwd": 1, "rev": 2}
    assert res.label_for("rev") == 2


def test_chunk_size_overrides_settings(make_aln, one_transcript):
    stream = RecordStream([make_aln("chr1", 100, 150, "+")] * 50, name="s1")
    res = identify_strand_mode(
        [stream], one_transcript, chunk_size=10, settings=ClassifierSettings(max_chunks=1),
    )
    assert res.strandedness[0].n_alignments == 10


def test_identify_strand_mode_in_parallel(make_aln, one_transcript):
    samples = [
        RecordStream([make_aln("chr1", 100, 150, "+")] * 30, name="a"),
        RecordStream([make_aln("chr1", 100, 150, "+")] * 40, name="b"),
    ]
    serial = identify_strand_mode(samples, one_transcript, chunk_size=10)
    parallel = identify_strand_mode(samples, one_transcript, chunk_size=10, workers=2)
    assert parallel == serial
    assert parallel.strand_mode == 1


def test_write_tsv(tmp_path):
    res = StrandModeResult(
        strand_mode={"a": "1", "b": None},
        strandedness=[row("a", 0.95, 0.05), StrandednessRow("b", math.nan, math.nan, math.nan, 0)],
    )
    out = res.write_tsv(tmp_path / "sub" / "strandedness.tsv")
    lines = out.read_text().splitlines()
    assert lines[0] == "sample\tstrandMode1\tstrandMode2\tambiguous\tNalignments\tstrandMode"
    assert lines[1].startswith("a\t0.950000\t0.050000")
    assert lines[1].endswith("\t1000\t1")
    assert lines[2] == "b\tNA\tNA\tNA\t0\tNA"
