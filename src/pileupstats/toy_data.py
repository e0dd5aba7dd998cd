from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Sequence, Tuple

import pysam

from .utils import ensure_outdir, write_json

TOY_CONTIG = "chr1"
TOY_EMPTY_CONTIG = "chr2"
TOY_N_POSITIONS = (30, 31)  # 0-based
TOY_READ_START = 10


def toy_reference() -> str:
    seq = list(("ACGT" * 25)[:100])
    for pos0 in TOY_N_POSITIONS:
        seq[pos0] = "N"
    return "".join(seq)


def _write_fasta(path: Path, records: Sequence[Tuple[str, str]]) -> None:
    lines = []
    for contig, seq in records:
        lines.append(f">{contig}")
        for i in range(0, len(seq), 60):
            lines.append(seq[i : i + 60])
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def _make_read(
    name: str,
    start0: int,
    seq: str,
    cigartuples: List[Tuple[int, int]],
    mapq: int = 60,
) -> pysam.AlignedSegment:
    a = pysam.AlignedSegment()
    a.query_name = name
    a.query_sequence = seq
    a.flag = 0
    a.reference_id = 0
    a.reference_start = start0
    a.mapping_quality = mapq
    a.cigartuples = cigartuples
    a.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
    return a


def make_toy_data(*, outdir: str | Path) -> Dict[str, str]:
    """Create a tiny reference and BAM that exercise every pileup event type.

    All reads start at 0-based position 10 on ``chr1``:

    - r0-r2: 30M, reference bases only
    - r3: 30M with C at position 20 (reference A)
    - r4: 30M with N at position 20
    - r5: 10M2D18M, deletion over positions 20-21
    - r6: 10M5N15M, spliced over positions 20-24
    - r7: 15M2I13M, insertion after position 24

    Positions 30 and 31 of ``chr1`` are N in the reference. ``chr2`` has no reads.

    Returns
    -------
    dict
        Paths to the generated files.
    """
    outdir_p = ensure_outdir(outdir)

    ref_seq = toy_reference()
    ref_fa = outdir_p / "toy_ref.fa"
    _write_fasta(ref_fa, [(TOY_CONTIG, ref_seq), (TOY_EMPTY_CONTIG, ("TTGCA" * 8))])
    pysam.faidx(str(ref_fa))

    s = TOY_READ_START
    plain = ref_seq[s : s + 30]

    mismatch = list(plain)
    mismatch[10] = "C"
    n_base = list(plain)
    n_base[10] = "N"

    reads = [
        _make_read("r0", s, plain, [(0, 30)]),
        _make_read("r1", s, plain, [(0, 30)]),
        _make_read("r2", s, plain, [(0, 30)]),
        _make_read("r3", s, "".join(mismatch), [(0, 30)]),
        _make_read("r4", s, "".join(n_base), [(0, 30)]),
        _make_read("r5", s, ref_seq[s : s + 10] + ref_seq[s + 12 : s + 30], [(0, 10), (2, 2), (0, 18)]),
        _make_read("r6", s, ref_seq[s : s + 10] + ref_seq[s + 15 : s + 30], [(0, 10), (3, 5), (0, 15)]),
        _make_read("r7", s, ref_seq[s : s + 15] + "GG" + ref_seq[s + 15 : s + 28], [(0, 15), (1, 2), (0, 13)]),
    ]

    bam_path = outdir_p / "toy.bam"
    header = {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [
            {"SN": TOY_CONTIG, "LN": len(ref_seq)},
            {"SN": TOY_EMPTY_CONTIG, "LN": 40},
        ],
    }

    with pysam.AlignmentFile(str(bam_path), "wb", header=header) as bam:
        for r in reads:
            bam.write(r)

    pysam.index(str(bam_path))

    summary = {
        "ref_fa": str(ref_fa),
        "bam": str(bam_path),
        "outdir": str(outdir_p),
    }

    write_json(outdir_p / "toy_summary.json", summary)
    return summary
