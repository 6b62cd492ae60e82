# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the FASTQ reconstruction tests.

This module provides shared fixtures for building alignment records in memory,
writing small SAM/BAM inputs with pysam, and reading FASTQ output back.
"""

import gzip
import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the modules we're testing
from read_pairing import AlignmentRecord, SamFlag

# (name, flag, sequence, reference_start or None when unmapped)
ReadSpec = tuple[str, int, str, int | None]

# Flags of a typical FR pair where both mates map
R1_MAPPED = 99  # paired, proper, mate reverse, read1
R2_MAPPED = 147  # paired, proper, reverse, read2
# read1 mapped, mate unmapped / read2 unmapped, mate mapped
R1_MATE_UNMAPPED = 73
R2_UNMAPPED = 133
# both unmapped
R1_BOTH_UNMAPPED = 77
R2_BOTH_UNMAPPED = 141

PAIRED_READS: list[ReadSpec] = [
    ("pairA", R1_MAPPED, "ACGTACGTAC", 0),
    ("pairB", R1_MAPPED, "GGGGCCCCAA", 5),
    ("halfC", R1_MATE_UNMAPPED, "AAAACCCCGG", 10),
    ("noneD", R1_BOTH_UNMAPPED, "ACACACACAC", None),
    ("pairA", R1_MAPPED | SamFlag.SECONDARY, "ACGTACGTAC", 30),
    ("pairA", R2_MAPPED, "TTGCAATTGC", 20),
    ("halfC", R2_UNMAPPED, "TTTTGGGGCC", None),
    ("pairB", R2_MAPPED, "CCAATTGGAA", 25),
    ("pairB", R1_MAPPED | SamFlag.SUPPLEMENTARY, "GGGGCC", 40),
    ("noneD", R2_BOTH_UNMAPPED, "GTGTGTGTGT", None),
    ("loneE", R1_MATE_UNMAPPED, "CATCATCATC", 12),
]

SINGLE_READS: list[ReadSpec] = [
    ("s1", 0, "ACGTACGTACGT", 0),
    ("s2", SamFlag.REVERSE, "AACCGGTTAACC", 8),
    ("s1", SamFlag.SECONDARY, "ACGTACGTACGT", 30),
    ("s3", SamFlag.UNMAPPED, "GATTACAGATTA", None),
]


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def reference_sequence() -> str:
    """Simple reference sequence the mapped test reads sit on."""
    return "ATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCGATCG"


def create_sam_header(reference_sequence: str) -> dict[str, Any]:
    """Create a minimal SAM header for testing."""
    return {
        "HD": {"VN": "1.6", "SO": "unsorted"},
        "SQ": [{"SN": "test_reference", "LN": len(reference_sequence)}],
        "PG": [{"ID": "test", "PN": "bam_to_fastq_test", "VN": "0.1.0"}],
    }


def make_segment(name: str, flag: int, seq: str, ref_start: int | None) -> pysam.AlignedSegment:
    """Build an AlignedSegment; `ref_start=None` makes it unmapped."""
    read = pysam.AlignedSegment()
    read.query_name = name
    read.query_sequence = seq
    read.query_qualities = [30] * len(seq)
    read.flag = int(flag)
    if ref_start is None:
        read.reference_id = -1
        read.reference_start = -1
        read.mapping_quality = 0
    else:
        read.reference_id = 0
        read.reference_start = ref_start
        read.cigartuples = [(0, len(seq))]
        read.mapping_quality = 60
    read.next_reference_id = -1
    read.next_reference_start = -1
    return read


def write_alignment(path: Path, reads: list[ReadSpec], reference_sequence: str) -> Path:
    """Write reads to SAM or BAM depending on the extension."""
    mode = "wb" if path.suffix == ".bam" else "w"
    header = create_sam_header(reference_sequence)
    with pysam.AlignmentFile(str(path), mode, header=header) as out:
        for name, flag, seq, ref_start in reads:
            out.write(make_segment(name, flag, seq, ref_start))
    return path


def read_fastq(path: Path) -> list[tuple[str, str, str]]:
    """Parse a (possibly gzipped) FASTQ into (name, sequence, quality) tuples."""
    opener = gzip.open if path.name.endswith(".gz") else open
    with opener(path, "rt") as handle:
        lines = [line.rstrip("\n") for line in handle]
    assert len(lines) % 4 == 0, f"Truncated FASTQ: {path}"
    return [
        (lines[i][1:], lines[i + 1], lines[i + 3])
        for i in range(0, len(lines), 4)
    ]


@pytest.fixture
def make_record() -> Callable[..., AlignmentRecord]:
    """Factory for in-memory records: make_record('r1', 99, seq='ACGT')."""

    def _make(name: str, flag: int, seq: str = "ACGT", quality: str | None = None) -> AlignmentRecord:
        return AlignmentRecord(name, int(flag), seq, "I" * len(seq) if quality is None else quality)

    return _make


@pytest.fixture
def alignment_writer(reference_sequence: str) -> Callable[[Path, list[ReadSpec]], Path]:
    """Write an arbitrary list of read specs to a SAM/BAM path."""

    def _write(path: Path, reads: list[ReadSpec]) -> Path:
        return write_alignment(path, reads, reference_sequence)

    return _write


@pytest.fixture
def paired_sam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """A paired-end sample covering all four mapping-status categories."""
    return write_alignment(temp_dir / "paired.sam", PAIRED_READS, reference_sequence)


@pytest.fixture
def single_sam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """A single-end sample with one secondary alignment."""
    return write_alignment(temp_dir / "single.sam", SINGLE_READS, reference_sequence)


@pytest.fixture
def empty_sam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """Create an empty SAM file with header only."""
    return write_alignment(temp_dir / "empty.sam", [], reference_sequence)


@pytest.fixture
def duplicate_sam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """A paired sample where three primary records share one read name."""
    reads: list[ReadSpec] = [
        ("pairA", R1_MAPPED, "ACGTACGTAC", 0),
        ("pairA", R2_MAPPED, "TTGCAATTGC", 20),
        ("dupF", R1_MAPPED, "ACGTAC", 2),
        ("dupF", R2_MAPPED, "ACGTAC", 22),
        ("dupF", R1_MAPPED, "ACGTAC", 4),
    ]
    return write_alignment(temp_dir / "dup.sam", reads, reference_sequence)


@pytest.fixture
def indexed_bam_file(temp_dir: Path, reference_sequence: str) -> Path:
    """Coordinate-sorted, indexed BAM of the paired sample."""
    unsorted = write_alignment(temp_dir / "unsorted.bam", PAIRED_READS, reference_sequence)
    sorted_path = temp_dir / "indexed.bam"
    pysam.sort("-o", str(sorted_path), str(unsorted))
    pysam.index(str(sorted_path))
    unsorted.unlink()
    return sorted_path


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
