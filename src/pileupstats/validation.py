from __future__ import annotations

import logging
from pathlib import Path
from typing import Collection, Iterable, Optional

from .errors import UpstreamError

logger = logging.getLogger(__name__)


_UCSC_PREFIX = "chr"


def check_bam_index(bam_path: str | Path) -> None:
    """Ensure a BAM has an index; raise UpstreamError with fix instructions."""
    bam = Path(bam_path)
    candidates = [
        bam.with_suffix(bam.suffix + ".bai"),
        bam.with_suffix(".bai"),
        bam.with_suffix(bam.suffix + ".csi"),
        bam.with_suffix(".csi"),
        bam.with_suffix(bam.suffix + ".crai"),
        bam.with_suffix(".crai"),
    ]
    if any(c.exists() for c in candidates):
        return
    raise UpstreamError("Alignment file is not indexed. Run: samtools index " + str(bam))


def check_fasta_index(fasta_path: str | Path) -> None:
    """Log when a FASTA has no .fai; pysam builds one on open if the directory is writable."""
    fa = Path(fasta_path)
    if not fa.with_suffix(fa.suffix + ".fai").exists():
        logger.info("Reference FASTA %s has no .fai index; pysam will try to create one.", fa)


def detect_contig_style(contigs: Iterable[str]) -> str:
    """Infer contig style: 'ucsc' if most contigs start with 'chr', else 'ensembl'."""
    names = [c for c in contigs if c]
    if not names:
        return "unknown"
    chr_like = [c for c in names if c.startswith(_UCSC_PREFIX)]
    if len(chr_like) >= max(1, int(0.5 * len(names))):
        return "ucsc"
    return "ensembl"


def remap_contig(contig: str, style: str) -> str:
    """Remap a contig name to the requested style (ucsc or ensembl)."""
    if style == "ucsc":
        if contig.startswith(_UCSC_PREFIX):
            return contig
        if contig == "MT":
            return "chrM"
        return f"{_UCSC_PREFIX}{contig}"
    if style == "ensembl":
        if contig.startswith(_UCSC_PREFIX):
            core = contig[len(_UCSC_PREFIX) :]
            if core == "M":
                return "MT"
            return core
        return contig
    return contig


def resolve_fasta_contig(contig: str, fasta_contigs: Collection[str]) -> Optional[str]:
    """Find the FASTA sequence for an alignment contig, tolerating chr1 vs 1 naming."""
    if contig in fasta_contigs:
        return contig
    style = detect_contig_style(fasta_contigs)
    remapped = remap_contig(contig, style)
    if remapped in fasta_contigs:
        logger.debug("Reference %s found in FASTA as %s", contig, remapped)
        return remapped
    return None
