# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for trim_primers testing.

Provides temporary directories, SAM headers, builders for aligned read pairs,
primer tables, and a small reference for tag recalculation.
"""

import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

from trim_primers import AmpliconCatalog  # noqa: E402

# The amplicon used throughout: left primer 22 bp, right primer 20 bp
AMPLICON_ROW = ("chr1", 1010873, 1010894, 1011118, 1011137)
PRIMER_HEADER = "chrom\tleft_start\tleft_end\tright_start\tright_end\n"


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


def create_sam_header(
    contigs: list[tuple[str, int]],
    sort_order: str = "queryname",
) -> dict[str, Any]:
    """Create a minimal SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": sort_order},
        "SQ": [{"SN": name, "LN": length} for name, length in contigs],
        "PG": [{"ID": "test", "PN": "trim_primers_test", "VN": "0.1.0"}],
    }


@pytest.fixture
def sam_header() -> dict[str, Any]:
    return create_sam_header([("chr1", 2_000_000), ("chr2", 2_000_000)])


@pytest.fixture
def alignment_header(sam_header: dict[str, Any]) -> pysam.AlignmentHeader:
    return pysam.AlignmentHeader.from_dict(sam_header)


def write_primer_file(path: Path, rows: list[tuple]) -> Path:
    with open(path, "w") as f:
        f.write(PRIMER_HEADER)
        for row in rows:
            f.write("\t".join(str(v) for v in row) + "\n")
    return path


@pytest.fixture
def primer_file(temp_dir: Path) -> Path:
    """Primer table holding the single test amplicon."""
    return write_primer_file(temp_dir / "primers.tsv", [AMPLICON_ROW])


@pytest.fixture
def catalog(primer_file: Path) -> AmpliconCatalog:
    return AmpliconCatalog.load(primer_file)


def make_read(  # noqa: PLR0913
    header: pysam.AlignmentHeader,
    name: str,
    start: int,
    cigar: list[tuple[int, int]] | None,
    *,
    reverse: bool = False,
    read1: bool | None = None,
    contig: int = 0,
    sequence: str | None = None,
    qualities: list[int] | None = None,
    secondary: bool = False,
    supplementary: bool = False,
    unmapped: bool = False,
) -> pysam.AlignedSegment:
    """
    Build an aligned read. `start` is the 1-based alignment start. `read1`
    None means an unpaired read; True/False makes it R1/R2 of a pair.
    """
    read = pysam.AlignedSegment(header)
    read.query_name = name
    qlen = sum(ln for op, ln in cigar if op in (0, 1, 4, 7, 8)) if cigar else 100
    seq = sequence if sequence is not None else ("ACGT" * (qlen // 4 + 1))[:qlen]
    read.query_sequence = seq
    read.query_qualities = pysam.qualitystring_to_array("I" * len(seq)) if qualities is None else qualities
    read.reference_id = contig
    read.reference_start = start - 1
    read.mapping_quality = 60
    if read1 is not None:
        read.is_paired = True
        read.is_read1 = read1
        read.is_read2 = not read1
    read.is_reverse = reverse
    read.is_secondary = secondary
    read.is_supplementary = supplementary
    if unmapped:
        read.is_unmapped = True
        read.mapping_quality = 0
    else:
        read.cigartuples = cigar
    return read


@pytest.fixture
def read_builder(alignment_header: pysam.AlignmentHeader) -> Callable[..., pysam.AlignedSegment]:
    """make_read bound to the shared test header."""

    def build(*args: Any, **kwargs: Any) -> pysam.AlignedSegment:
        return make_read(alignment_header, *args, **kwargs)

    return build


def make_fr_pair(
    header: pysam.AlignmentHeader,
    name: str,
    insert_start: int,
    insert_end: int,
    read_length: int = 100,
    *,
    r1_reverse: bool = False,
) -> tuple[pysam.AlignedSegment, pysam.AlignedSegment]:
    """
    An FR pair of `read_length`M reads spanning [insert_start, insert_end].
    R1 is the forward mate unless `r1_reverse` is set.
    """
    fwd = make_read(
        header, name, insert_start, [(0, read_length)], reverse=False, read1=not r1_reverse
    )
    rev = make_read(
        header,
        name,
        insert_end - read_length + 1,
        [(0, read_length)],
        reverse=True,
        read1=r1_reverse,
    )
    return (rev, fwd) if r1_reverse else (fwd, rev)


@pytest.fixture
def pair_builder(alignment_header: pysam.AlignmentHeader) -> Callable[..., tuple]:
    def build(*args: Any, **kwargs: Any) -> tuple:
        return make_fr_pair(alignment_header, *args, **kwargs)

    return build


def cigar_query_length(read: pysam.AlignedSegment) -> int:
    return sum(ln for op, ln in read.cigartuples if op in (0, 1, 4, 7, 8))


# A reference for tag recalculation and end-to-end runs
REFERENCE_SEQUENCE = "ACGTTGCA" * 50  # 400 bp


@pytest.fixture
def reference_sequence() -> str:
    return REFERENCE_SEQUENCE


@pytest.fixture
def reference_fasta(temp_dir: Path, reference_sequence: str) -> Path:
    """Create a simple indexed reference FASTA file for testing."""
    ref_path = temp_dir / "reference.fasta"
    with open(ref_path, "w") as f:
        f.write(">test_reference\n")
        for i in range(0, len(reference_sequence), 60):
            f.write(f"{reference_sequence[i : i + 60]}\n")
    pysam.faidx(str(ref_path))
    return ref_path


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
