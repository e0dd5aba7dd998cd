"""Pull-based access to a sequencing run through pysam.

A *run* is an indexed BAM/CRAM plus the reference FASTA its reads were
aligned to. The surface mirrors what the aggregation engine consumes:

    run.name
    run.references()            -> AlignmentReference ...
    reference.canonical_name
    reference.pileups()         -> PileupPosition ... (increasing 0-based position)
    position.reference_position / reference_base / depth
    position.events()           -> PileupEvent ... (lazy)

Every failure of pysam to open or advance is re-raised as UpstreamError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

import pysam

from .errors import ArgumentError, UpstreamError
from .models import DELETION, INTRON_INDEL, MATCH, MISMATCH, NORMAL_INDEL, PileupEvent
from .validation import check_bam_index, check_fasta_index, resolve_fasta_contig

logger = logging.getLogger(__name__)

STEPPERS = ("nofilter", "all")


@dataclass(frozen=True)
class PileupOptions:
    """Knobs passed to ``pysam.AlignmentFile.pileup``.

    stepper:
        ``nofilter`` keeps every alignment (secondary, duplicate, QC-fail);
        ``all`` applies pysam's default read filters.
    max_depth:
        pysam truncates columns at this many reads. A column that reaches it
        is an error, since its depth would no longer be exact.

    Base and mapping quality filters are not offered: pysam applies them to
    the reads of a column but not to its reported depth.
    """

    stepper: str = "nofilter"
    max_depth: int = 1_000_000

    def __post_init__(self) -> None:
        if self.stepper not in STEPPERS:
            raise ArgumentError(f"Unknown pileup stepper '{self.stepper}' (choose from {', '.join(STEPPERS)})")
        if self.max_depth <= 0:
            raise ArgumentError(f"max_depth must be > 0, got {self.max_depth}")


def event_from_read(read: pysam.PileupRead, ref_base: str) -> PileupEvent:
    """Translate one pysam PileupRead into a PileupEvent."""
    if read.is_refskip:
        return PileupEvent(DELETION, indel_type=INTRON_INDEL)
    if read.is_del:
        return PileupEvent(DELETION, indel_type=NORMAL_INDEL)

    insertion = read.indel > 0
    seq = read.alignment.query_sequence
    qpos = read.query_position
    # reads stored without SEQ ('*') show up as N
    base = seq[qpos].upper() if seq is not None and qpos is not None else "N"
    if base == ref_base:
        return PileupEvent(MATCH, insertion=insertion)
    return PileupEvent(MISMATCH, insertion=insertion, mismatch_base=base)


class PileupPosition:
    """One pileup column with the reference base at that position."""

    def __init__(self, column: pysam.PileupColumn, reference_base: str) -> None:
        self._column = column
        self.reference_position = int(column.reference_pos)
        self.reference_base = reference_base
        self.depth = int(column.nsegments)

    def events(self) -> Iterator[PileupEvent]:
        try:
            reads = self._column.pileups
        except (OSError, ValueError) as e:
            raise UpstreamError(f"Cannot read pileup events at position {self.reference_position + 1}: {e}") from e
        for read in reads:
            yield event_from_read(read, self.reference_base)


class AlignmentReference:
    def __init__(self, run: "AlignmentRun", name: str, length: int) -> None:
        self._run = run
        self.canonical_name = name
        self.length = int(length)

    def _sequence(self) -> str:
        fasta_name = resolve_fasta_contig(self.canonical_name, self._run.fasta.references)
        if fasta_name is None:
            raise UpstreamError(f"Reference '{self.canonical_name}' is not present in {self._run.reference_fasta}")
        try:
            return self._run.fasta.fetch(fasta_name).upper()
        except (OSError, ValueError, KeyError) as e:
            raise UpstreamError(f"Cannot load reference sequence '{fasta_name}': {e}") from e

    def pileups(self) -> Iterator[PileupPosition]:
        seq = self._sequence()
        opts = self._run.options
        try:
            columns = iter(
                self._run.bam.pileup(
                    self.canonical_name,
                    stepper=opts.stepper,
                    max_depth=opts.max_depth,
                    min_base_quality=0,
                    ignore_orphans=False,
                    ignore_overlaps=False,
                    truncate=False,
                )
            )
        except (OSError, ValueError, KeyError) as e:
            raise UpstreamError(f"Cannot access pileups for reference '{self.canonical_name}': {e}") from e

        while True:
            try:
                column = next(columns)
            except StopIteration:
                return
            except (OSError, ValueError) as e:
                raise UpstreamError(f"Pileup iteration failed on '{self.canonical_name}': {e}") from e
            pos0 = int(column.reference_pos)
            if column.nsegments >= opts.max_depth:
                raise UpstreamError(
                    f"Pileup depth at {self.canonical_name}:{pos0 + 1} reached the cap of {opts.max_depth} reads; "
                    "rerun with a larger --max-depth"
                )
            base = seq[pos0] if pos0 < len(seq) else "N"
            yield PileupPosition(column, base)


class AlignmentRun:
    """An opened run; use as a context manager or call :meth:`close`."""

    def __init__(
        self,
        spec: str,
        *,
        reference_fasta: str,
        name: Optional[str] = None,
        options: Optional[PileupOptions] = None,
    ) -> None:
        self.spec = str(spec)
        self.reference_fasta = str(reference_fasta)
        self.name = name or run_name_from_spec(self.spec)
        self.options = options or PileupOptions()

        check_bam_index(self.spec)
        check_fasta_index(self.reference_fasta)
        mode = "rc" if self.spec.endswith(".cram") else "rb"
        try:
            self.bam = pysam.AlignmentFile(self.spec, mode, reference_filename=self.reference_fasta)
        except (OSError, ValueError) as e:
            raise UpstreamError(f"Cannot open run '{self.spec}': {e}") from e
        try:
            self.fasta = pysam.FastaFile(self.reference_fasta)
        except (OSError, ValueError) as e:
            self.bam.close()
            raise UpstreamError(f"Cannot open reference FASTA '{self.reference_fasta}': {e}") from e

    def references(self) -> Iterator[AlignmentReference]:
        names: List[str] = list(self.bam.references)
        lengths: List[int] = list(self.bam.lengths)
        for name, length in zip(names, lengths):
            yield AlignmentReference(self, name, length)

    def close(self) -> None:
        self.bam.close()
        self.fasta.close()

    def __enter__(self) -> "AlignmentRun":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def run_name_from_spec(spec: str) -> str:
    """Default run name: the file name without its alignment suffix."""
    name = Path(spec).name
    for suffix in (".bam", ".cram", ".sam"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def open_run(
    spec: str,
    *,
    reference_fasta: str,
    name: Optional[str] = None,
    options: Optional[PileupOptions] = None,
) -> AlignmentRun:
    logger.info("Opening run '%s'", spec)
    return AlignmentRun(spec, reference_fasta=reference_fasta, name=name, options=options)
