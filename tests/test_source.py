from types import SimpleNamespace

import pytest

from pileupstats.errors import ArgumentError, UpstreamError
from pileupstats.models import DELETION, INTRON_INDEL, MATCH, MISMATCH, NORMAL_INDEL
from pileupstats.source import PileupOptions, event_from_read, run_name_from_spec
from pileupstats.validation import check_bam_index, detect_contig_style, resolve_fasta_contig


def make_pileup_read(seq, qpos, *, is_del=False, is_refskip=False, indel=0):
    return SimpleNamespace(
        alignment=SimpleNamespace(query_sequence=seq),
        query_position=None if (is_del or is_refskip) else qpos,
        is_del=is_del,
        is_refskip=is_refskip,
        indel=indel,
    )


def test_event_from_read_match_and_mismatch():
    ev = event_from_read(make_pileup_read("ACGT", 2), "G")
    assert ev.kind == MATCH
    assert ev.insertion is False

    ev = event_from_read(make_pileup_read("ACgT", 2, indel=3), "A")
    assert ev.kind == MISMATCH
    assert ev.mismatch_base == "G"
    assert ev.insertion is True


def test_event_from_read_n_and_missing_sequence():
    assert event_from_read(make_pileup_read("ANGT", 1), "C").mismatch_base == "N"
    assert event_from_read(make_pileup_read(None, 1), "C").mismatch_base == "N"


def test_event_from_read_gaps():
    ev = event_from_read(make_pileup_read("ACGT", 0, is_del=True), "A")
    assert (ev.kind, ev.indel_type) == (DELETION, NORMAL_INDEL)

    ev = event_from_read(make_pileup_read("ACGT", 0, is_refskip=True, is_del=True), "A")
    assert (ev.kind, ev.indel_type) == (DELETION, INTRON_INDEL)


def test_run_name_from_spec():
    assert run_name_from_spec("/data/SRR000001.bam") == "SRR000001"
    assert run_name_from_spec("sample.cram") == "sample"
    assert run_name_from_spec("SRR42") == "SRR42"


def test_resolve_fasta_contig():
    assert resolve_fasta_contig("chr1", ["chr1", "chr2"]) == "chr1"
    assert resolve_fasta_contig("1", ["chr1", "chr2"]) == "chr1"
    assert resolve_fasta_contig("chrM", ["1", "2", "MT"]) == "MT"
    assert resolve_fasta_contig("chrUn", ["1", "2"]) is None
    assert detect_contig_style([]) == "unknown"


@pytest.mark.parametrize("index_name", ["x.bam.bai", "x.bai", "x.bam.csi", "x.csi"])
def test_check_bam_index_accepts_index_layouts(tmp_path, index_name):
    bam = tmp_path / "x.bam"
    bam.write_bytes(b"")
    (tmp_path / index_name).write_bytes(b"")
    check_bam_index(bam)


@pytest.mark.parametrize("index_name", ["x.cram.crai", "x.crai"])
def test_check_bam_index_accepts_cram_index_layouts(tmp_path, index_name):
    cram = tmp_path / "x.cram"
    cram.write_bytes(b"")
    (tmp_path / index_name).write_bytes(b"")
    check_bam_index(cram)


def test_check_bam_index_missing(tmp_path):
    bam = tmp_path / "x.bam"
    bam.write_bytes(b"")
    (tmp_path / "other.csi").write_bytes(b"")
    with pytest.raises(UpstreamError, match="samtools index"):
        check_bam_index(bam)


def test_pileup_options():
    opts = PileupOptions()
    assert (opts.stepper, opts.max_depth) == ("nofilter", 1_000_000)
    assert not hasattr(opts, "min_base_quality")
    with pytest.raises(ArgumentError):
        PileupOptions(max_depth=0)
    with pytest.raises(ArgumentError):
        PileupOptions(stepper="samtools")
