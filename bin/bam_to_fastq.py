#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Reconstruct FASTQ reads from aligned SAM/BAM/CRAM files, one run over any number
of samples.

Each sample is first classified as paired- or single-end from a head sample of
its flags. Paired samples are partitioned by mapping status into four
categories; the fully mapped category and the merged not-fully-mapped
categories are collated by read name and extracted independently, and the two
branches are joined into `<sample>.1.fq` / `<sample>.2.fq` plus
`<sample>.singleton.fq`. Single-end samples go straight to collation and
extraction into `<sample>.singleton.fq`. Empty outputs are never written.

Samples run concurrently and fail independently.
"""

import argparse
import asyncio
import sys
from collections.abc import Sequence
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from functools import partial
from pathlib import Path

import polars as pl
from loguru import logger
from pydantic import Field
from pydantic.dataclasses import dataclass

from alignment_io import (
    FlagStats,
    LoadedSample,
    Sample,
    discover_samples,
    head_sample,
    index_statistics,
    load_records,
)
from fastq_sink import fastq_artifacts, publish_artifacts, write_table
from read_pairing import (
    DEFAULT_PAIRED_THRESHOLD,
    DEFAULT_SAMPLE_WINDOW,
    UNMAPPED_CATEGORIES,
    Category,
    Classification,
    EmptySampleError,
    Extraction,
    JoinedOutput,
    Partition,
    PipelineError,
    classify_pairedness,
    collate_by_name,
    extract_fastq,
    join_branches,
    merge_unmapped,
    partition_records,
)
from task_graph import TaskGraph

# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class PipelineConfig:
    """Everything the per-sample pipeline reads; no process-wide state."""

    outdir: Path
    compress: bool = False
    sample_window: int = Field(default=DEFAULT_SAMPLE_WINDOW, gt=0)
    paired_threshold: float = Field(default=DEFAULT_PAIRED_THRESHOLD, gt=0.0, le=1.0)
    mate_suffix: bool = False
    allow_empty: bool = False
    write_stats: bool = False
    reference: str | None = None
    workers: int = Field(default=4, gt=0)
    use_processes: bool = False


@dataclass
class SampleResult:
    """Outcome of one sample, one row of the run report."""

    sample: str
    status: str = "failed"
    classification: str | None = None
    records: int = 0
    map_map: int = 0
    unmap_unmap: int = 0
    unmap_map: int = 0
    map_unmap: int = 0
    pairs: int = 0
    singletons: int = 0
    files: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


# ----------------------------- LOGGING SETUP ------------------------------- #


# Quietest to loudest; SUCCESS is the level with no -v or -q
LOG_LEVELS: tuple[str, ...] = ("CRITICAL", "ERROR", "WARNING", "SUCCESS", "INFO", "DEBUG", "TRACE")


def configure_logging(verbose: int, quiet: int) -> str:
    """
    Send loguru output to stderr at a level `verbose - quiet` steps away from
    SUCCESS, clamped to CRITICAL and TRACE. Returns the chosen level.
    """
    logger.remove()
    base = LOG_LEVELS.index("SUCCESS")
    step = max(0, min(base + verbose - quiet, len(LOG_LEVELS) - 1))
    level = LOG_LEVELS[step]
    logger.add(sys.stderr, level=level)
    logger.debug(f"Logging at {level} (verbose={verbose}, quiet={quiet})")
    return level


# ---------------------------- GRAPH NODE FUNCS ------------------------------ #
# Module-level so they can be shipped to a process pool.


def _records(loaded: LoadedSample) -> list:
    return loaded.records


def _stats(loaded: LoadedSample) -> FlagStats:
    return loaded.stats


def _category(partition: Partition, category: Category) -> list:
    return partition[category]


def _merge(partition: Partition) -> list:
    return merge_unmapped(*(partition[category] for category in UNMAPPED_CATEGORIES))


def _primary_only(records: list) -> list:
    return [record for record in records if record.is_primary]


def _join_single(extraction: Extraction) -> JoinedOutput:
    # single-end samples have no pairs by construction
    return join_branches(extraction, None)


def _publish(
    joined: JoinedOutput,
    stats: FlagStats,
    sample: Sample,
    config: PipelineConfig,
) -> list[Path]:
    artifacts = fastq_artifacts(sample.name, joined, config.compress)
    if config.write_stats:
        artifacts[f"{sample.name}.flagstat.tsv"] = partial(write_table, stats.as_frame())
        idx = index_statistics(sample, config.reference)
        if idx:
            frame = pl.DataFrame([{"contig": s.contig, "mapped": s.mapped, "unmapped": s.unmapped} for s in idx])
            artifacts[f"{sample.name}.idxstats.tsv"] = partial(write_table, frame)
    return publish_artifacts(config.outdir, artifacts)


# ---------------------------- GRAPH WIRING ---------------------------------- #


def build_paired_graph(sample: Sample, config: PipelineConfig) -> TaskGraph:
    """
    load → partition → {MapMap collate, merge → collate} → extract ×2 → join → publish
    """
    name = sample.name
    graph = TaskGraph()
    load = graph.add(name, "load", load_records, sample=sample, reference=config.reference)
    records = graph.add(name, "records", _records, [load])
    stats = graph.add(name, "stats", _stats, [load])
    partition = graph.add(name, "partition", partition_records, [records])

    map_map = graph.add(name, "map_map", _category, [partition], category=Category.MAP_MAP)
    collate_mapped = graph.add(name, "collate_mapped", collate_by_name, [map_map])
    extract_mapped = graph.add(
        name, "extract_mapped", extract_fastq, [collate_mapped],
        paired=True, mate_suffix=config.mate_suffix,
    )

    merged = graph.add(name, "merge_unmapped", _merge, [partition])
    collate_unmapped = graph.add(name, "collate_unmapped", collate_by_name, [merged])
    extract_unmapped = graph.add(
        name, "extract_unmapped", extract_fastq, [collate_unmapped],
        paired=True, mate_suffix=config.mate_suffix,
    )

    join = graph.add(name, "join", join_branches, [extract_mapped, extract_unmapped])
    graph.add(name, "publish", _publish, [join, stats], sample=sample, config=config)
    return graph


def build_single_graph(sample: Sample, config: PipelineConfig) -> TaskGraph:
    """load → collate → extract → publish"""
    name = sample.name
    graph = TaskGraph()
    load = graph.add(name, "load", load_records, sample=sample, reference=config.reference)
    records = graph.add(name, "records", _records, [load])
    stats = graph.add(name, "stats", _stats, [load])
    primary = graph.add(name, "primary", _primary_only, [records])
    collated = graph.add(name, "collate", collate_by_name, [primary])
    extracted = graph.add(
        name, "extract", extract_fastq, [collated],
        paired=False, mate_suffix=config.mate_suffix,
    )
    join = graph.add(name, "join", _join_single, [extracted])
    graph.add(name, "publish", _publish, [join, stats], sample=sample, config=config)
    return graph


# ------------------------------ CORE LOGIC --------------------------------- #


def _summarize(result: SampleResult, outputs: dict, classification: Classification) -> None:
    name = result.sample
    stats: FlagStats = outputs[(name, "stats")]
    joined: JoinedOutput = outputs[(name, "join")]
    published: list[Path] = outputs[(name, "publish")]

    result.records = stats.total
    if classification is Classification.PAIRED:
        counts = outputs[(name, "partition")].counts()
        result.map_map = counts[Category.MAP_MAP]
        result.unmap_unmap = counts[Category.UNMAP_UNMAP]
        result.unmap_map = counts[Category.UNMAP_MAP]
        result.map_unmap = counts[Category.MAP_UNMAP]
    result.pairs = len(joined.pairs) if joined.pairs is not None else 0
    result.singletons = len(joined.singletons) if joined.singletons is not None else 0
    result.files = ",".join(path.name for path in published)
    result.status = "ok"


async def process_sample(
    sample: Sample,
    config: PipelineConfig,
    executor: Executor,
) -> SampleResult:
    """
    Classify one sample, then run the branch its classification selects.
    Failures are caught here so they never reach other samples.
    """
    result = SampleResult(sample.name)
    loop = asyncio.get_running_loop()
    try:
        head = await loop.run_in_executor(
            executor, head_sample, sample, config.sample_window, config.reference,
        )
        if not head.flags and not config.allow_empty:
            msg = f"Sample '{sample.name}' has no alignment records"
            raise EmptySampleError(msg)

        summary = classify_pairedness(head.flags, config.paired_threshold)
        result.classification = summary.classification.name.lower()
        logger.info(
            f"Sample '{sample.name}': {summary.paired}/{summary.sampled} sampled records paired "
            f"-> {summary.classification.name}",
        )

        if not head.flags:
            logger.warning(f"Sample '{sample.name}' is empty; nothing to write.")
            result.status = "ok"
            return result

        match summary.classification:
            case Classification.PAIRED:
                graph = build_paired_graph(sample, config)
            case Classification.SINGLE:
                graph = build_single_graph(sample, config)

        outputs = await graph.run(executor)
        _summarize(result, outputs, summary.classification)
    except (PipelineError, OSError, ValueError) as err:
        result.error = f"{type(err).__name__}: {err}"
        logger.error(f"Sample '{sample.name}' failed: {result.error}")
        return result

    logger.success(
        f"Sample '{sample.name}' done: pairs={result.pairs}, singletons={result.singletons}, "
        f"files=[{result.files}]",
    )
    return result


def make_executor(config: PipelineConfig) -> Executor:
    if config.use_processes:
        return ProcessPoolExecutor(max_workers=config.workers)
    return ThreadPoolExecutor(max_workers=config.workers, thread_name_prefix="bam2fq")


async def run_samples(samples: Sequence[Sample], config: PipelineConfig) -> list[SampleResult]:
    """Process every sample concurrently; results come back in input order."""
    with make_executor(config) as executor:
        return list(await asyncio.gather(
            *(process_sample(sample, config, executor) for sample in samples),
        ))


def write_report(results: Sequence[SampleResult], path: Path) -> None:
    """One TSV row per sample."""
    frame = pl.DataFrame(
        [
            {
                "sample": r.sample,
                "status": r.status,
                "classification": r.classification or "",
                "records": r.records,
                "map_map": r.map_map,
                "unmap_unmap": r.unmap_unmap,
                "unmap_map": r.unmap_map,
                "map_unmap": r.map_unmap,
                "pairs": r.pairs,
                "singletons": r.singletons,
                "files": r.files,
                "error": r.error or "",
            }
            for r in results
        ],
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    write_table(frame, path)
    logger.info(f"Wrote run report for {len(results)} sample(s) to {path}")


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Rebuild FASTQ reads from SAM/BAM/CRAM alignments, one sample per file:\n"
            "  - paired samples:  <sample>.1.fq, <sample>.2.fq, <sample>.singleton.fq\n"
            "  - single samples:  <sample>.singleton.fq\n"
            "Secondary and supplementary alignments are dropped; empty outputs are not written."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Inputs
    p.add_argument(
        "-i",
        "--input",
        dest="inputs",
        action="append",
        default=[],
        help="Input SAM/BAM/CRAM (repeatable); sample name is the file name without extension",
    )
    p.add_argument(
        "--input-dir",
        default=None,
        help="Directory whose *.bam, *.cram and *.sam files are each one sample",
    )
    p.add_argument(
        "--sample-sheet",
        default=None,
        help="TSV with 'sample' and 'path' columns",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM input)",
    )

    # Outputs
    p.add_argument(
        "-o",
        "--outdir",
        required=True,
        help="Directory for FASTQ output",
    )
    p.add_argument(
        "-z",
        "--compress",
        action="store_true",
        help="Write gzip-compressed .fq.gz files",
    )
    p.add_argument(
        "--mate-suffix",
        action="store_true",
        help="Append /1 and /2 to paired read names",
    )
    p.add_argument(
        "--write-stats",
        action="store_true",
        help="Also write <sample>.flagstat.tsv and, for indexed input, <sample>.idxstats.tsv",
    )
    p.add_argument(
        "--report",
        default=None,
        help="Write a per-sample TSV report to this path",
    )

    # Classification
    cls_group = p.add_argument_group("Classification")
    cls_group.add_argument(
        "--sample-window",
        type=int,
        default=DEFAULT_SAMPLE_WINDOW,
        help=f"Leading records inspected to decide pairedness (default: {DEFAULT_SAMPLE_WINDOW})",
    )
    cls_group.add_argument(
        "--paired-threshold",
        type=float,
        default=DEFAULT_PAIRED_THRESHOLD,
        help="Fraction of sampled records that must be paired (default: 1.0)",
    )
    cls_group.add_argument(
        "--allow-empty",
        action="store_true",
        help="Treat samples without records as empty single-end samples instead of failing them",
    )

    # Execution
    exec_group = p.add_argument_group("Execution")
    exec_group.add_argument(
        "-t",
        "--workers",
        type=int,
        default=4,
        help="Worker threads (or processes) shared by all samples",
    )
    exec_group.add_argument(
        "--processes",
        action="store_true",
        help="Run stages in a process pool instead of threads",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting FASTQ reconstruction run.")

    try:
        config = PipelineConfig(
            outdir=Path(args.outdir),
            compress=args.compress,
            sample_window=args.sample_window,
            paired_threshold=args.paired_threshold,
            mate_suffix=args.mate_suffix,
            allow_empty=args.allow_empty,
            write_stats=args.write_stats,
            reference=args.reference,
            workers=args.workers,
            use_processes=args.processes,
        )
        samples = discover_samples(
            [Path(p) for p in args.inputs],
            input_dir=Path(args.input_dir) if args.input_dir else None,
            sample_sheet=Path(args.sample_sheet) if args.sample_sheet else None,
        )
    except (OSError, ValueError) as e:
        logger.error(f"Invalid run configuration: {e}")
        sys.exit(1)

    if not samples:
        logger.error("No samples given; use --input, --input-dir or --sample-sheet.")
        sys.exit(1)
    logger.debug(f"PipelineConfig: {config}")
    logger.info(f"Processing {len(samples)} sample(s) with {config.workers} worker(s).")

    results = asyncio.run(run_samples(samples, config))
    if args.report:
        write_report(results, Path(args.report))

    failed = [r.sample for r in results if not r.ok]
    if failed:
        logger.error(f"{len(failed)} of {len(results)} sample(s) failed: {', '.join(failed)}")
        sys.exit(1)
    logger.success(f"All {len(results)} sample(s) converted.")


if __name__ == "__main__":
    main()
