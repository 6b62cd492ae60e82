"""
Tests for alignment_io.py: sample discovery, pysam access, head sampling,
record loading with flag statistics, and index statistics.
"""

from pathlib import Path

import polars as pl
import pytest
from alignment_io import (
    FlagStats,
    Sample,
    _io_mode_from_ext,
    discover_samples,
    head_sample,
    index_statistics,
    load_records,
    open_alignment,
    read_sample_sheet,
    sample_name_from_path,
)
from conftest import PAIRED_READS, R1_MAPPED, R2_MAPPED
from read_pairing import EmptySampleError, InputNotFoundError, SamFlag


class TestSampleNames:
    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("S1.bam", "S1"),
            ("S1.sorted.bam", "S1.sorted"),
            ("tumor.cram", "tumor"),
            ("x.SAM", "x"),
            ("notes.txt", "notes"),
        ],
    )
    def test_sample_name_from_path(self, filename, expected):
        assert sample_name_from_path(Path(filename)) == expected


class TestDiscovery:
    def test_explicit_paths(self, paired_sam_file, single_sam_file):
        samples = discover_samples([paired_sam_file, single_sam_file])
        assert [s.name for s in samples] == ["paired", "single"]
        assert samples[0].path == paired_sam_file

    def test_directory_scan_ignores_other_files(self, temp_dir, paired_sam_file, single_sam_file):
        (temp_dir / "readme.txt").write_text("not an alignment")
        samples = discover_samples(input_dir=temp_dir)
        assert [s.name for s in samples] == ["paired", "single"]

    def test_sample_sheet_resolves_relative_paths(self, temp_dir, paired_sam_file):
        sheet = temp_dir / "samples.tsv"
        pl.DataFrame({"sample": ["P1"], "path": [paired_sam_file.name]}).write_csv(sheet, separator="\t")
        samples = read_sample_sheet(sheet)
        assert samples == [Sample("P1", temp_dir / paired_sam_file.name)]

    def test_sample_sheet_missing_column(self, temp_dir):
        sheet = temp_dir / "bad.tsv"
        pl.DataFrame({"name": ["P1"], "file": ["x.bam"]}).write_csv(sheet, separator="\t")
        with pytest.raises(ValueError, match="missing column"):
            read_sample_sheet(sheet)

    def test_empty_sample_sheet(self, temp_dir):
        sheet = temp_dir / "empty.tsv"
        sheet.write_text("")
        with pytest.raises(ValueError, match="Cannot read sample sheet"):
            read_sample_sheet(sheet)

    def test_duplicate_names_rejected(self, paired_sam_file, temp_dir):
        with pytest.raises(ValueError, match="Duplicate sample name"):
            discover_samples([paired_sam_file], input_dir=temp_dir)


class TestOpenAlignment:
    @pytest.mark.parametrize(
        "path,mode",
        [("a.sam", "r"), ("a.BAM", "rb"), ("a.cram", "rc")],
    )
    def test_io_mode_from_ext(self, path, mode):
        assert _io_mode_from_ext(path) == mode

    def test_invalid_extension(self, temp_dir):
        bad = temp_dir / "reads.fastq"
        bad.write_text("")
        with pytest.raises(ValueError, match="Input must end with .sam, .bam, or .cram"):
            open_alignment(Sample("bad", bad))

    def test_missing_input(self, temp_dir):
        with pytest.raises(InputNotFoundError, match="not found"):
            open_alignment(Sample("ghost", temp_dir / "ghost.bam"))

    def test_unreadable_input(self, temp_dir):
        garbage = temp_dir / "garbage.bam"
        garbage.write_bytes(b"definitely not bgzf")
        with pytest.raises(InputNotFoundError, match="Cannot open input"):
            open_alignment(Sample("garbage", garbage))


class TestHeadSample:
    def test_window_limits_records(self, paired_sam_file):
        head = head_sample(Sample("paired", paired_sam_file), window=3)
        assert head.flags == [flag for _, flag, _, _ in PAIRED_READS[:3]]
        assert head.references == 1
        assert head.sort_order == "unsorted"

    def test_window_larger_than_file(self, paired_sam_file):
        head = head_sample(Sample("paired", paired_sam_file), window=1000)
        assert len(head.flags) == len(PAIRED_READS)

    def test_empty_file(self, empty_sam_file):
        assert head_sample(Sample("empty", empty_sam_file), window=1000).flags == []


class TestLoadRecords:
    def test_records_carry_name_flag_payload(self, paired_sam_file):
        loaded = load_records(Sample("paired", paired_sam_file))
        assert len(loaded.records) == len(PAIRED_READS)
        first = loaded.records[0]
        assert (first.name, first.flag, first.sequence) == PAIRED_READS[0][:3]
        assert first.quality == "?" * len(first.sequence)

    def test_flag_statistics(self, paired_sam_file):
        stats = load_records(Sample("paired", paired_sam_file)).stats
        assert stats.total == 11
        assert stats.secondary == 1
        assert stats.supplementary == 1
        assert stats.primary == 9
        assert stats.mapped == 6
        assert stats.paired == 9
        assert stats.read1 == 5
        assert stats.read2 == 4
        assert stats.both_mapped == 4
        assert stats.mate_unmapped == 2

    def test_empty_sample_fails(self, empty_sam_file):
        with pytest.raises(EmptySampleError):
            load_records(Sample("empty", empty_sam_file))

    def test_bam_input(self, temp_dir, alignment_writer):
        bam = alignment_writer(temp_dir / "pair.bam", [("r", R1_MAPPED, "ACGT", 0), ("r", R2_MAPPED, "TTAA", 10)])
        loaded = load_records(Sample("pair", bam))
        assert [r.flag for r in loaded.records] == [R1_MAPPED, R2_MAPPED]


class TestFlagStats:
    def test_non_primary_only_counted_as_such(self):
        stats = FlagStats()
        stats.update(R1_MAPPED | SamFlag.SECONDARY)
        stats.update(SamFlag.SUPPLEMENTARY | SamFlag.DUPLICATE | SamFlag.QC_FAIL)
        assert stats.total == 2
        assert stats.primary == 0
        assert stats.paired == 0
        assert stats.duplicates == 1
        assert stats.qc_fail == 1

    def test_as_frame(self):
        stats = FlagStats()
        stats.update(0)
        frame = stats.as_frame()
        assert frame.columns == ["statistic", "count"]
        row = frame.filter(pl.col("statistic") == "mapped").row(0)
        assert row == ("mapped", 1)


class TestIndexStatistics:
    def test_indexed_bam(self, indexed_bam_file):
        stats = index_statistics(Sample("indexed", indexed_bam_file))
        assert [s.contig for s in stats] == ["test_reference"]
        assert stats[0].mapped == 8  # six primary, one secondary, one supplementary

    def test_sam_has_no_index(self, paired_sam_file):
        assert index_statistics(Sample("paired", paired_sam_file)) == []
