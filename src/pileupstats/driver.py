from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional

from tqdm import tqdm

from .aggregate import ScanStats, scan_reference
from .emitter import StatsEmitter, TsvEmitter, open_stats_stream, register_stats_schema
from .errors import ArgumentError
from .source import PileupOptions, open_run

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("general-loader", "tsv")


def run_pileup_stats(
    spec: str,
    *,
    reference_fasta: str,
    out,
    depth_cutoff: int = 0,
    output_format: str = "general-loader",
    record_ref_base: bool = False,
    run_name: Optional[str] = None,
    options: Optional[PileupOptions] = None,
    progress: bool = True,
) -> Dict[str, object]:
    """Compute per-position statistics for every reference of one run.

    ``out`` is a binary stream for ``general-loader`` output and a text
    stream for ``tsv``. On failure the exception propagates and a
    general-loader stream is left without its end marker.

    Returns a summary dict with per-reference and total counters.
    """
    if output_format not in OUTPUT_FORMATS:
        raise ArgumentError(f"Unknown output format '{output_format}' (choose from {', '.join(OUTPUT_FORMATS)})")
    if depth_cutoff < 0:
        raise ArgumentError("depth cutoff must be >= 0")

    t0 = time.time()
    per_reference: List[Dict[str, object]] = []
    totals = ScanStats()

    with open_run(spec, reference_fasta=reference_fasta, name=run_name, options=options) as run:
        if output_format == "general-loader":
            logger.info("Preparing general loader stream for run '%s'", run.name)
            writer = open_stats_stream(out, run.name)
            schema = register_stats_schema(writer, record_ref_base=record_ref_base)
            emitter = StatsEmitter(writer, schema)
        else:
            emitter = TsvEmitter(out)
        emitter.set_run(run.name)

        logger.info("Accessing all references")
        for reference in run.references():
            name = reference.canonical_name
            logger.info("Processing reference '%s'", name)
            emitter.set_reference(name)

            positions = reference.pileups()
            if progress:
                positions = tqdm(positions, unit="pos", desc=name, leave=False)
            stats = scan_reference(positions, cutoff=depth_cutoff, sink=emitter.emit)
            totals.add(stats)
            per_reference.append(
                {
                    "reference": name,
                    "positions": stats.positions,
                    "skipped_undefined_base": stats.skipped_undefined_base,
                    "below_cutoff": stats.below_cutoff,
                    "emitted": stats.emitted,
                }
            )

        emitter.close()

    dt = time.time() - t0
    logger.info("Run '%s' done: %d rows from %d references", run.name, totals.emitted, len(per_reference))

    return {
        "run": spec,
        "run_name": run.name,
        "reference_fasta": str(reference_fasta),
        "depth_cutoff": int(depth_cutoff),
        "output_format": output_format,
        "record_ref_base": bool(record_ref_base),
        "references": per_reference,
        "counts": {
            "references": len(per_reference),
            "positions": totals.positions,
            "skipped_undefined_base": totals.skipped_undefined_base,
            "below_cutoff": totals.below_cutoff,
            "emitted": totals.emitted,
        },
        "runtime_seconds": float(dt),
    }
