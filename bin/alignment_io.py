"""
Alignment-record source: sample discovery, pysam file access, head sampling,
full record loading with flag statistics, and index statistics.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass
from itertools import islice
from pathlib import Path
from typing import TYPE_CHECKING

import polars as pl
import pysam
from loguru import logger

from read_pairing import (
    PHRED_OFFSET,
    AlignmentRecord,
    EmptySampleError,
    InputNotFoundError,
    SamFlag,
    has_bits,
    is_primary,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

# Recognised alignment file extensions, in discovery order
ALIGNMENT_SUFFIXES: tuple[str, ...] = (".bam", ".cram", ".sam")

# Emit a progress debug line after loading this many records
DEBUG_EVERY: int = 100_000

# Columns a sample sheet must provide
SAMPLE_SHEET_COLUMNS: tuple[str, ...] = ("sample", "path")


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class Sample:
    """A named sample and the alignment file holding its reads."""

    name: str
    path: Path


@dataclass(frozen=True)
class HeadSample:
    """Header facts plus the flags of the first records of a file."""

    sort_order: str | None
    references: int
    flags: list[int]


@dataclass
class FlagStats:
    """Counters over every record of a sample, in the spirit of `samtools flagstat`."""

    total: int = 0
    primary: int = 0
    secondary: int = 0
    supplementary: int = 0
    duplicates: int = 0
    qc_fail: int = 0
    mapped: int = 0
    paired: int = 0
    read1: int = 0
    read2: int = 0
    both_mapped: int = 0
    mate_unmapped: int = 0

    def update(self, flag: int) -> None:
        self.total += 1
        if flag & SamFlag.SECONDARY:
            self.secondary += 1
        if flag & SamFlag.SUPPLEMENTARY:
            self.supplementary += 1
        if flag & SamFlag.DUPLICATE:
            self.duplicates += 1
        if flag & SamFlag.QC_FAIL:
            self.qc_fail += 1
        if not is_primary(flag):
            return

        # primary from here on
        self.primary += 1
        if not flag & SamFlag.UNMAPPED:
            self.mapped += 1
        if not flag & SamFlag.PAIRED:
            return
        self.paired += 1
        if flag & SamFlag.READ1:
            self.read1 += 1
        if flag & SamFlag.READ2:
            self.read2 += 1
        if not flag & (SamFlag.UNMAPPED | SamFlag.MATE_UNMAPPED):
            self.both_mapped += 1
        if has_bits(flag, SamFlag.MATE_UNMAPPED) and not flag & SamFlag.UNMAPPED:
            self.mate_unmapped += 1

    def as_frame(self) -> pl.DataFrame:
        return pl.DataFrame(
            {"statistic": list(asdict(self).keys()), "count": list(asdict(self).values())},
        )


@dataclass(frozen=True)
class IndexStat:
    contig: str
    mapped: int
    unmapped: int


@dataclass
class LoadedSample:
    records: list[AlignmentRecord]
    stats: FlagStats


# --------------------------- SAMPLE DISCOVERY ------------------------------ #


def sample_name_from_path(path: Path) -> str:
    """Strip a known alignment extension from the file name."""
    name = path.name
    for suffix in ALIGNMENT_SUFFIXES:
        if name.lower().endswith(suffix):
            return name[: -len(suffix)]
    return path.stem


def read_sample_sheet(path: Path) -> list[Sample]:
    """
    Read a tab-separated sheet with `sample` and `path` columns. Relative paths
    resolve against the sheet's directory.
    """
    try:
        sheet = pl.read_csv(path, separator="\t")
    except pl.exceptions.PolarsError as err:
        msg = f"Cannot read sample sheet {path}: {err}"
        logger.error(msg)
        raise ValueError(msg) from err
    missing = [col for col in SAMPLE_SHEET_COLUMNS if col not in sheet.columns]
    if missing:
        msg = f"Sample sheet {path} is missing column(s): {', '.join(missing)}"
        logger.error(msg)
        raise ValueError(msg)

    samples = []
    for row in sheet.select(SAMPLE_SHEET_COLUMNS).iter_rows(named=True):
        aln_path = Path(str(row["path"]))
        if not aln_path.is_absolute():
            aln_path = path.parent / aln_path
        samples.append(Sample(str(row["sample"]), aln_path))
    logger.debug(f"Read {len(samples)} sample(s) from sheet {path}")
    return samples


def scan_directory(directory: Path) -> list[Sample]:
    """One sample per alignment file directly inside `directory`, sorted by name."""
    found = sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.name.lower().endswith(ALIGNMENT_SUFFIXES)
    )
    logger.debug(f"Found {len(found)} alignment file(s) in {directory}")
    return [Sample(sample_name_from_path(p), p) for p in found]


def discover_samples(
    paths: Iterable[Path] = (),
    input_dir: Path | None = None,
    sample_sheet: Path | None = None,
) -> list[Sample]:
    """Collect samples from explicit paths, a directory and a sheet; names must be unique."""
    samples = [Sample(sample_name_from_path(p), p) for p in paths]
    if input_dir is not None:
        samples.extend(scan_directory(input_dir))
    if sample_sheet is not None:
        samples.extend(read_sample_sheet(sample_sheet))

    counts = Counter(s.name for s in samples)
    duplicates = sorted(name for name, n in counts.items() if n > 1)
    if duplicates:
        msg = f"Duplicate sample name(s): {', '.join(duplicates)}"
        logger.error(msg)
        raise ValueError(msg)
    return samples


# ----------------------------- I/O UTILITIES ------------------------------- #


def _io_mode_from_ext(path: str) -> str:
    """Determine pysam read mode from filename extension."""
    lower = path.lower()
    if lower.endswith(".sam"):
        return "r"
    if lower.endswith(".bam"):
        return "rb"
    if lower.endswith(".cram"):
        return "rc"
    msg = "Input must end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(sample: Sample, reference: str | None = None) -> pysam.AlignmentFile:
    """
    Open a sample's SAM/BAM/CRAM for reading. Missing or unreadable files raise
    InputNotFoundError so the failure stays scoped to this sample.
    """
    path = str(sample.path)
    if not sample.path.is_file():
        msg = f"Input for sample '{sample.name}' not found: {path}"
        raise InputNotFoundError(msg)

    mode = _io_mode_from_ext(path)
    kwargs = {}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference

    logger.debug(f"Opening for read: {path} (mode={mode})")
    try:
        return pysam.AlignmentFile(path, mode, check_sq=False, **kwargs)
    except (OSError, ValueError) as err:
        msg = f"Cannot open input for sample '{sample.name}': {err}"
        raise InputNotFoundError(msg) from err


def record_from_segment(segment: pysam.AlignedSegment) -> AlignmentRecord:
    """Keep the name, the flag and the opaque sequence/quality payload."""
    quals = segment.query_qualities
    quality = "" if quals is None else "".join(chr(q + PHRED_OFFSET) for q in quals)
    return AlignmentRecord(
        name=segment.query_name or "",
        flag=segment.flag,
        sequence=segment.query_sequence or "",
        quality=quality,
    )


# ------------------------------ SOURCE OPS --------------------------------- #


def head_sample(sample: Sample, window: int, reference: str | None = None) -> HeadSample:
    """Read the header and the flags of the first `window` records."""
    assert window > 0, f"Sample window must be positive, got {window}"
    with open_alignment(sample, reference) as handle:
        header = handle.header.to_dict()
        flags = [segment.flag for segment in islice(handle, window)]
    head = HeadSample(
        sort_order=header.get("HD", {}).get("SO"),
        references=len(header.get("SQ", [])),
        flags=flags,
    )
    logger.debug(
        f"Head of '{sample.name}': sort_order={head.sort_order}, "
        f"references={head.references}, sampled={len(flags)}",
    )
    return head


def load_records(sample: Sample, reference: str | None = None) -> LoadedSample:
    """Read every record of a sample, gathering flag statistics on the way."""
    records: list[AlignmentRecord] = []
    stats = FlagStats()
    with open_alignment(sample, reference) as handle:
        for segment in handle:
            stats.update(segment.flag)
            records.append(record_from_segment(segment))
            if stats.total % DEBUG_EVERY == 0:
                logger.debug(f"Progress '{sample.name}': loaded={stats.total}")

    if not records:
        msg = f"Sample '{sample.name}' has no alignment records"
        raise EmptySampleError(msg)

    logger.info(
        f"Loaded '{sample.name}': total={stats.total}, primary={stats.primary}, "
        f"secondary={stats.secondary}, supplementary={stats.supplementary}, "
        f"mapped={stats.mapped}, paired={stats.paired}, both_mapped={stats.both_mapped}, "
        f"mate_unmapped={stats.mate_unmapped}",
    )
    return LoadedSample(records, stats)


def index_statistics(sample: Sample, reference: str | None = None) -> list[IndexStat]:
    """Per-contig mapped/unmapped counts from the index; empty without one."""
    with open_alignment(sample, reference) as handle:
        if not handle.has_index():
            logger.debug(f"No index for '{sample.name}'; skipping index statistics")
            return []
        return [
            IndexStat(stat.contig, stat.mapped, stat.unmapped)
            for stat in handle.get_index_statistics()
        ]
