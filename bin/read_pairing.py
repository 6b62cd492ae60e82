"""
Mapping-status classification and paired-stream reconstruction for aligned reads.

Everything in this module is a pure function over in-memory records: it never
opens files and never reads process-wide state, so each stage can be scheduled
on any executor and tested without alignment files on disk.

Stages, leaves first:
- classify_pairedness: Paired vs Single from a head sample of flags
- partition_records:   split primary records into four mapping-status categories
- merge_unmapped:      concatenate the three not-fully-mapped categories
- collate_by_name:     make records sharing a read name contiguous
- extract_fastq:       turn name groups into R1/R2 pairs and singletons
- join_branches:       concatenate the mapped and unmapped branch outputs
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntFlag, auto
from itertools import groupby
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

# Number of leading records inspected to decide pairedness
DEFAULT_SAMPLE_WINDOW: int = 1000

# Fraction of sampled records that must carry the paired bit
DEFAULT_PAIRED_THRESHOLD: float = 1.0

# Phred score used when a record carries no qualities
DEFAULT_QUALITY: int = 1
PHRED_OFFSET: int = 33

# Reads per name group that the extractor can pair
MAX_MATES: int = 2

_COMPLEMENT = str.maketrans(
    "ACGTURYKMBVDHNacgturykmbvdhn",
    "TGCAAYRMKVBHDNtgcaayrmkvbhdn",
)


# ------------------------------- ERROR TYPES ------------------------------- #


class PipelineError(Exception):
    """Base class for failures that abort a single sample."""


class InputNotFoundError(PipelineError):
    """The sample's alignment source is missing or cannot be opened."""


class EmptySampleError(PipelineError):
    """The sample has no alignment records at all."""


class DataConsistencyError(PipelineError):
    """The records contradict an invariant the pairing logic relies on."""


class DuplicateMateGroupError(DataConsistencyError):
    """More than two records share a read name in a collated stream."""


# ------------------------------- DATA TYPES -------------------------------- #


class SamFlag(IntFlag):
    """Bits of the SAM FLAG field."""

    PAIRED = 0x1
    PROPER_PAIR = 0x2
    UNMAPPED = 0x4
    MATE_UNMAPPED = 0x8
    REVERSE = 0x10
    MATE_REVERSE = 0x20
    READ1 = 0x40
    READ2 = 0x80
    SECONDARY = 0x100
    QC_FAIL = 0x200
    DUPLICATE = 0x400
    SUPPLEMENTARY = 0x800


NON_PRIMARY = SamFlag.SECONDARY | SamFlag.SUPPLEMENTARY


def has_bits(flag: int, bits: int) -> bool:
    """True when every bit of `bits` is set in `flag`."""
    return flag & bits == bits


def is_primary(flag: int) -> bool:
    """True for records that are neither secondary nor supplementary."""
    return not flag & NON_PRIMARY


class Classification(Enum):
    """Whether a sample is treated as paired-end or single-end."""

    PAIRED = auto()
    SINGLE = auto()


class Category(Enum):
    """Mapping status of a read and its mate."""

    MAP_MAP = auto()
    UNMAP_UNMAP = auto()
    UNMAP_MAP = auto()
    MAP_UNMAP = auto()

    def bit_test(self) -> tuple[int, int]:
        """Return (require_set, require_clear) bits for this category."""
        match self:
            case Category.MAP_MAP:
                return SamFlag.PAIRED, SamFlag.UNMAPPED | SamFlag.MATE_UNMAPPED
            case Category.UNMAP_UNMAP:
                return SamFlag.UNMAPPED | SamFlag.MATE_UNMAPPED, SamFlag.SECONDARY
            case Category.UNMAP_MAP:
                return SamFlag.UNMAPPED, SamFlag.MATE_UNMAPPED | SamFlag.SECONDARY
            case Category.MAP_UNMAP:
                return SamFlag.MATE_UNMAPPED, SamFlag.UNMAPPED | SamFlag.SECONDARY

    def matches(self, flag: int) -> bool:
        require_set, require_clear = self.bit_test()
        return has_bits(flag, require_set) and not flag & require_clear


# Order in which the not-fully-mapped categories are concatenated
UNMAPPED_CATEGORIES: tuple[Category, ...] = (
    Category.UNMAP_UNMAP,
    Category.MAP_UNMAP,
    Category.UNMAP_MAP,
)


@dataclass(frozen=True, slots=True)
class AlignmentRecord:
    """
    The parts of an alignment the pipeline needs. Only `name` and `flag` drive
    decisions; `sequence` and `quality` (Phred+33 string, as stored, i.e. in
    reference orientation) are carried through untouched.
    """

    name: str
    flag: int
    sequence: str = ""
    quality: str = ""

    @property
    def is_primary(self) -> bool:
        return is_primary(self.flag)


@dataclass(frozen=True, slots=True)
class FastqRecord:
    name: str
    sequence: str
    quality: str

    @classmethod
    def from_alignment(cls, record: AlignmentRecord, suffix: str = "") -> FastqRecord:
        """
        Derive a FASTQ entry in original read orientation. Reverse-strand
        records are reverse-complemented and their qualities reversed.
        """
        seq = record.sequence
        qual = record.quality or chr(DEFAULT_QUALITY + PHRED_OFFSET) * len(seq)
        if len(qual) != len(seq):
            msg = (
                f"Sequence/quality length mismatch for '{record.name}': "
                f"seq={len(seq)}, qual={len(qual)}"
            )
            raise DataConsistencyError(msg)
        if record.flag & SamFlag.REVERSE:
            seq = seq.translate(_COMPLEMENT)[::-1]
            qual = qual[::-1]
        return cls(f"{record.name}{suffix}", seq, qual)

    def to_text(self) -> str:
        return f"@{self.name}\n{self.sequence}\n+\n{self.quality}\n"


@dataclass(frozen=True)
class PairednessSummary:
    """Outcome of head-sampling a sample's flags."""

    sampled: int
    paired: int
    threshold: float
    classification: Classification

    @property
    def fraction(self) -> float:
        return self.paired / self.sampled if self.sampled else 0.0


@dataclass
class Partition:
    """Primary records split by mapping status, plus what was left out."""

    categories: dict[Category, list[AlignmentRecord]] = field(
        default_factory=lambda: {category: [] for category in Category},
    )
    excluded: int = 0  # secondary / supplementary
    dropped: int = 0  # primary, matched no category

    def __getitem__(self, category: Category) -> list[AlignmentRecord]:
        return self.categories[category]

    def counts(self) -> dict[Category, int]:
        return {category: len(records) for category, records in self.categories.items()}

    @property
    def total(self) -> int:
        return sum(len(records) for records in self.categories.values())


@dataclass(frozen=True)
class ReadPairOutput:
    """R1/R2 streams where entry i of each shares a read name."""

    r1: tuple[FastqRecord, ...] = ()
    r2: tuple[FastqRecord, ...] = ()

    def __post_init__(self) -> None:
        assert len(self.r1) == len(self.r2), (
            f"R1/R2 length mismatch: {len(self.r1)} != {len(self.r2)}"
        )

    def __len__(self) -> int:
        return len(self.r1)

    def is_empty(self) -> bool:
        return not self.r1


@dataclass(frozen=True)
class Extraction:
    """Everything one extraction pass over a collated stream produced."""

    pairs: ReadPairOutput = field(default_factory=ReadPairOutput)
    singletons: tuple[FastqRecord, ...] = ()


class BranchPresence(Enum):
    """Which extraction branches contributed to a join."""

    MAPPED = auto()
    UNMAPPED = auto()
    BOTH = auto()
    NEITHER = auto()

    @staticmethod
    def of(mapped: Extraction | None, unmapped: Extraction | None) -> BranchPresence:
        match (mapped is not None, unmapped is not None):
            case (True, True):
                return BranchPresence.BOTH
            case (True, False):
                return BranchPresence.MAPPED
            case (False, True):
                return BranchPresence.UNMAPPED
            case _:
                return BranchPresence.NEITHER


@dataclass(frozen=True)
class JoinedOutput:
    """
    Terminal artifacts of one sample. `pairs` and `singletons` are None when the
    corresponding output would be empty and must not be written at all.
    """

    pairs: ReadPairOutput | None = None
    singletons: tuple[FastqRecord, ...] | None = None

    def is_empty(self) -> bool:
        return self.pairs is None and self.singletons is None


# ------------------------------ CLASSIFIER --------------------------------- #


def classify_pairedness(
    flags: Iterable[int],
    threshold: float = DEFAULT_PAIRED_THRESHOLD,
) -> PairednessSummary:
    """
    Classify a sample from the flags of its leading records. The sample is
    Paired when the fraction of records with the paired bit reaches
    `threshold`; anything else, including a mostly-paired sample at the
    default threshold of 1.0, is treated as wholly single-end.

    An empty window classifies as Single and logs a warning.
    """
    assert 0.0 < threshold <= 1.0, f"Paired threshold must be in (0, 1], got {threshold}"

    sampled = 0
    paired = 0
    for flag in flags:
        sampled += 1
        if flag & SamFlag.PAIRED:
            paired += 1

    if sampled == 0:
        logger.warning("No records in the classification window; treating sample as single-end.")
        return PairednessSummary(0, 0, threshold, Classification.SINGLE)

    classification = (
        Classification.PAIRED if paired / sampled >= threshold else Classification.SINGLE
    )
    logger.debug(
        f"Pairedness: {paired}/{sampled} paired (threshold={threshold}) -> {classification.name}",
    )
    return PairednessSummary(sampled, paired, threshold, classification)


# ------------------------------ PARTITIONER -------------------------------- #


def categorize(flag: int) -> Category | None:
    """
    Return the single category a primary record's flag falls into, or None when
    it matches none. Matching more than one is a data-consistency error.
    """
    if not flag & SamFlag.PAIRED:
        return None
    hits = [category for category in Category if category.matches(flag)]
    if len(hits) > 1:
        msg = f"Flag {flag} matches several categories: {[c.name for c in hits]}"
        raise DataConsistencyError(msg)
    return hits[0] if hits else None


def partition_records(records: Iterable[AlignmentRecord]) -> Partition:
    """
    Route every primary record to exactly one mapping-status category.
    Secondary and supplementary records are excluded outright; primary
    records matching no category are dropped with a warning.
    """
    partition = Partition()
    for record in records:
        if not record.is_primary:
            partition.excluded += 1
            continue
        category = categorize(record.flag)
        if category is None:
            partition.dropped += 1
            logger.debug(f"Dropping '{record.name}': flag {record.flag} matches no category")
            continue
        partition[category].append(record)

    if partition.dropped:
        logger.warning(
            f"{partition.dropped} primary record(s) matched no mapping-status category and were dropped.",
        )
    counts = ", ".join(f"{c.name}={n}" for c, n in partition.counts().items())
    logger.debug(
        f"Partition: {counts}, excluded_nonprimary={partition.excluded}, dropped={partition.dropped}",
    )
    return partition


# -------------------------------- MERGER ----------------------------------- #


def merge_unmapped(
    unmap_unmap: Sequence[AlignmentRecord] | None = None,
    map_unmap: Sequence[AlignmentRecord] | None = None,
    unmap_map: Sequence[AlignmentRecord] | None = None,
) -> list[AlignmentRecord]:
    """
    Concatenate the three not-fully-mapped categories. Any input may be None or
    empty. Records are neither deduplicated nor reordered.
    """
    merged: list[AlignmentRecord] = []
    for stream in (unmap_unmap, map_unmap, unmap_map):
        if stream:
            merged.extend(stream)
    return merged


# ------------------------------- COLLATOR ---------------------------------- #


def collate_by_name(records: Iterable[AlignmentRecord]) -> list[AlignmentRecord]:
    """
    Reorder records so that those sharing a read name are contiguous. Groups
    appear in order of each name's first occurrence and keep their input order,
    so the same input always collates the same way.
    """
    groups: dict[str, list[AlignmentRecord]] = {}
    for record in records:
        groups.setdefault(record.name, []).append(record)
    return [record for group in groups.values() for record in group]


# ------------------------------- EXTRACTOR --------------------------------- #


def _name_groups(collated: Iterable[AlignmentRecord]) -> Iterator[tuple[str, list[AlignmentRecord]]]:
    """
    Yield runs of adjacent same-name records. Only the current run is held, so
    the input must already be collated.
    """
    for name, group in groupby(collated, key=lambda record: record.name):
        records = list(group)
        if len(records) > MAX_MATES:
            msg = f"{len(records)} records share read name '{name}'; cannot pair more than {MAX_MATES}"
            raise DuplicateMateGroupError(msg)
        yield name, records


def _orient_mates(name: str, mates: list[AlignmentRecord]) -> tuple[AlignmentRecord, AlignmentRecord]:
    first = [m for m in mates if m.flag & SamFlag.READ1 and not m.flag & SamFlag.READ2]
    second = [m for m in mates if m.flag & SamFlag.READ2 and not m.flag & SamFlag.READ1]
    if len(first) != 1 or len(second) != 1:
        flags = [m.flag for m in mates]
        msg = f"Cannot tell READ1 from READ2 for '{name}' (flags {flags})"
        raise DataConsistencyError(msg)
    return first[0], second[0]


def extract_fastq(
    collated: Iterable[AlignmentRecord],
    paired: bool = True,  # noqa: FBT001, FBT002
    mate_suffix: bool = False,  # noqa: FBT001, FBT002
) -> Extraction:
    """
    Turn a collated stream into FASTQ entries.

    In paired mode a two-record group becomes one R1 and one R2 entry and a
    one-record group becomes a singleton. In single mode every record is a
    singleton. Either way a group of more than two records fails with
    DuplicateMateGroupError.
    """
    r1: list[FastqRecord] = []
    r2: list[FastqRecord] = []
    singletons: list[FastqRecord] = []
    suffixes = ("/1", "/2") if mate_suffix else ("", "")

    for name, records in _name_groups(collated):
        if paired and len(records) == MAX_MATES:
            first, second = _orient_mates(name, records)
            r1.append(FastqRecord.from_alignment(first, suffixes[0]))
            r2.append(FastqRecord.from_alignment(second, suffixes[1]))
            continue
        singletons.extend(FastqRecord.from_alignment(record) for record in records)

    assert all(
        a.name.removesuffix(suffixes[0]) == b.name.removesuffix(suffixes[1])
        for a, b in zip(r1, r2)
    ), "R1/R2 names diverged during extraction"

    logger.debug(f"Extracted pairs={len(r1)} singletons={len(singletons)} (paired={paired})")
    return Extraction(ReadPairOutput(tuple(r1), tuple(r2)), tuple(singletons))


# -------------------------------- JOINER ----------------------------------- #


def join_branches(
    mapped: Extraction | None,
    unmapped: Extraction | None,
) -> JoinedOutput:
    """
    Concatenate mapped then unmapped branch output into a sample's final
    streams. Either branch may be absent. Empty results are suppressed (None)
    rather than returned as empty streams.
    """
    presence = BranchPresence.of(mapped, unmapped)
    match presence:
        case BranchPresence.BOTH:
            assert mapped is not None and unmapped is not None  # noqa: PT018
            r1 = mapped.pairs.r1 + unmapped.pairs.r1
            r2 = mapped.pairs.r2 + unmapped.pairs.r2
            singletons = mapped.singletons + unmapped.singletons
        case BranchPresence.MAPPED | BranchPresence.UNMAPPED:
            only = mapped if mapped is not None else unmapped
            assert only is not None
            r1, r2, singletons = only.pairs.r1, only.pairs.r2, only.singletons
        case BranchPresence.NEITHER:
            r1, r2, singletons = (), (), ()

    pairs = ReadPairOutput(r1, r2)
    logger.debug(
        f"Join ({presence.name}): pairs={len(pairs)} singletons={len(singletons)}",
    )
    return JoinedOutput(
        pairs=None if pairs.is_empty() else pairs,
        singletons=singletons or None,
    )
