"""
FASTQ sink: output naming, optional gzip compression, and all-or-nothing
publishing of one sample's artifacts.
"""

from __future__ import annotations

import gzip
import os
import tempfile
from enum import Enum
from functools import partial
from pathlib import Path
from typing import IO, TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    import polars as pl

    from read_pairing import FastqRecord, JoinedOutput


class OutputKind(Enum):
    """Terminal FASTQ streams of a sample and their file suffixes."""

    R1 = ".1.fq"
    R2 = ".2.fq"
    SINGLETON = ".singleton.fq"

    def filename(self, sample: str, compress: bool = False) -> str:  # noqa: FBT001, FBT002
        return f"{sample}{self.value}{'.gz' if compress else ''}"


def open_fastq(path: Path, compress: bool = False) -> IO[str]:  # noqa: FBT001, FBT002
    """Open a FASTQ file for text writing, gzip-compressed when asked."""
    if compress:
        return gzip.open(path, "wt")
    return open(path, "w")  # noqa: SIM115


def write_fastq(
    records: Iterable[FastqRecord],
    path: Path,
    compress: bool = False,  # noqa: FBT001, FBT002
) -> int:
    """Serialize records in order; returns how many were written."""
    count = 0
    with open_fastq(path, compress) as handle:
        for record in records:
            handle.write(record.to_text())
            count += 1
    logger.trace(f"Wrote {count} FASTQ record(s) to {path}")
    return count


def write_table(frame: pl.DataFrame, path: Path) -> None:
    frame.write_csv(path, separator="\t")


def fastq_artifacts(
    sample: str,
    joined: JoinedOutput,
    compress: bool = False,  # noqa: FBT001, FBT002
) -> dict[str, Callable[[Path], object]]:
    """
    Map output file names to writers for a sample's joined output. Suppressed
    (None) streams get no entry, so no empty file is ever created for them.
    """
    artifacts: dict[str, Callable[[Path], object]] = {}
    if joined.pairs is not None:
        artifacts[OutputKind.R1.filename(sample, compress)] = partial(
            write_fastq, joined.pairs.r1, compress=compress,
        )
        artifacts[OutputKind.R2.filename(sample, compress)] = partial(
            write_fastq, joined.pairs.r2, compress=compress,
        )
    if joined.singletons is not None:
        artifacts[OutputKind.SINGLETON.filename(sample, compress)] = partial(
            write_fastq, joined.singletons, compress=compress,
        )
    return artifacts


def _discard(paths: Iterable[Path]) -> None:
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            continue


def publish_artifacts(
    outdir: Path,
    artifacts: Mapping[str, Callable[[Path], object]],
) -> list[Path]:
    """
    Write every artifact to a temporary file in `outdir`, then rename them all
    into place. If anything fails, temporaries and already-renamed files are
    removed and the error propagates: either every artifact exists or none.
    """
    outdir.mkdir(parents=True, exist_ok=True)
    staged: dict[Path, Path] = {}
    published: list[Path] = []
    try:
        for filename, writer in artifacts.items():
            fd, tmp_name = tempfile.mkstemp(dir=outdir, prefix=f".{filename}.", suffix=".tmp")
            os.close(fd)
            tmp_path = Path(tmp_name)
            staged[tmp_path] = outdir / filename
            writer(tmp_path)

        for tmp_path, final_path in staged.items():
            tmp_path.replace(final_path)
            published.append(final_path)
    except BaseException:
        logger.debug(f"Publishing into {outdir} failed; removing {len(staged)} staged file(s)")
        _discard(staged)
        _discard(published)
        raise

    for path in published:
        logger.debug(f"Published {path}")
    return published
