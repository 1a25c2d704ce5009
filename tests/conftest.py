import pytest

from strandpy.classes import AlignmentData, Feature


def _aln(chr_, start, end, strand, qname="r", read1=False, read2=False):
    return AlignmentData(chr_, start, end, strand, qname, read1 or read2, read1, read2)


@pytest.fixture
def make_aln():
    return _aln


@pytest.fixture
def one_transcript():
    """A single plus-strand transcript with two exons on chr1."""
    return [Feature("tx1", "chr1", "+", ((0, 5000), (6000, 10000)))]


@pytest.fixture
def fake_read():
    """Build an object looking like a bamnostic alignment."""
    class FakeRead:
        def __init__(self, name, flag, chrom="chr1", pos=100, end=150, cigar=None):
            self.query_name = name
            self.flag = flag
            self.reference_name = chrom
            self.pos = pos
            self.reference_end = end
            self.cigar = cigar
    return FakeRead


@pytest.fixture
def fake_alignmentfile():
    """Factory for a bamnostic.AlignmentFile replacement serving fixed reads."""
    opened = []

    def factory(reads):
        def fake(path, mode):
            class Dummy:
                closed = False

                def __iter__(self):
                    return iter(reads)

                def close(self):
                    self.closed = True

            bam = Dummy()
            opened.append((path, bam))
            return bam
        return fake

    factory.opened = opened
    return factory
