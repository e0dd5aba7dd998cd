import io
from pathlib import Path

import pytest

from pileupstats.driver import run_pileup_stats
from pileupstats.errors import ArgumentError, UpstreamError
from pileupstats.reader import load_stream, stats_records
from pileupstats.source import PileupOptions
from pileupstats.toy_data import make_toy_data


@pytest.fixture()
def toy(tmp_path: Path):
    return make_toy_data(outdir=tmp_path / "toy")


def _records(toy, **kwargs):
    buf = io.BytesIO()
    summary = run_pileup_stats(toy["bam"], reference_fasta=toy["ref_fa"], out=buf, progress=False, **kwargs)
    loaded = load_stream(io.BytesIO(buf.getvalue()))
    assert loaded.complete
    assert loaded.remote_db == "toy.pileup_stat"
    return summary, {rec.ref_pos: (run, ref, rec) for run, ref, rec in stats_records(loaded)}


def test_toy_run_counts(toy):
    summary, rows = _records(toy)

    # reads cover 0-based 10..39; 30 and 31 are N in the reference
    assert sorted(rows) == [p for p in range(11, 41) if p not in (31, 32)]
    assert summary["counts"]["references"] == 2
    assert summary["counts"]["skipped_undefined_base"] == 2
    assert summary["counts"]["emitted"] == 28
    assert all(run == "toy" and ref == "chr1" for run, ref, _ in rows.values())


def test_toy_event_corrections(toy):
    _, rows = _records(toy)

    plain = rows[16][2]
    assert plain.depth == 8
    assert plain.mismatch_counts == (0, 0, 0)

    # position 21: C mismatch, N read base, deletion, spliced read
    rec = rows[21][2]
    assert rec.depth == 6
    assert rec.mismatch_counts == (1, 0, 0)
    assert rec.insertion_counts == (0, 0, 0, 0)
    assert rec.deletion_count == 1

    assert rows[22][2].deletion_count == 1
    assert rows[22][2].depth == 7

    # insertion after position 25 (reference A)
    ins = rows[25][2]
    assert ins.insertion_counts == (1, 0, 0, 0)
    assert ins.depth == 7


def test_toy_depth_cutoff(toy):
    summary, rows = _records(toy, depth_cutoff=6)
    assert 21 not in rows
    assert 25 in rows
    assert summary["counts"]["below_cutoff"] >= 1


def test_toy_tsv_output(toy):
    out = io.StringIO()
    run_pileup_stats(toy["bam"], reference_fasta=toy["ref_fa"], out=out, output_format="tsv", progress=False)
    lines = out.getvalue().splitlines()
    assert len(lines) == 28
    assert "toy\tchr1\t21\tA\t6\t{1,0,0}\t{0,0,0,0}\t1" in lines


def test_toy_ref_base_column(toy):
    _, rows = _records(toy, record_ref_base=True)
    assert rows[21][2].ref_base == "A"
    assert rows[22][2].ref_base == "C"


def test_run_name_override(toy):
    buf = io.BytesIO()
    summary = run_pileup_stats(
        toy["bam"], reference_fasta=toy["ref_fa"], out=buf, run_name="SRR42", progress=False
    )
    assert summary["run_name"] == "SRR42"
    loaded = load_stream(io.BytesIO(buf.getvalue()))
    assert loaded.remote_db == "SRR42.pileup_stat"


def test_unindexed_bam_is_upstream_error(toy):
    for p in Path(toy["bam"]).parent.glob("*.bai"):
        p.unlink()
    with pytest.raises(UpstreamError):
        run_pileup_stats(toy["bam"], reference_fasta=toy["ref_fa"], out=io.BytesIO(), progress=False)


def test_bad_format_rejected(toy):
    with pytest.raises(ArgumentError):
        run_pileup_stats(toy["bam"], reference_fasta=toy["ref_fa"], out=io.BytesIO(), output_format="csv")


def test_toy_max_depth_cap_is_an_error(toy):
    # position 16 has 8 reads, so a cap of 3 truncates it
    buf = io.BytesIO()
    with pytest.raises(UpstreamError, match="--max-depth"):
        run_pileup_stats(
            toy["bam"],
            reference_fasta=toy["ref_fa"],
            out=buf,
            options=PileupOptions(max_depth=3),
            progress=False,
        )
    assert load_stream(io.BytesIO(buf.getvalue())).complete is False


def test_toy_max_depth_above_coverage(toy):
    summary, rows = _records(toy, options=PileupOptions(max_depth=9))
    assert summary["counts"]["emitted"] == 28
    assert rows[16][2].depth == 8
