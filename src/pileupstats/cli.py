from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .driver import OUTPUT_FORMATS, run_pileup_stats
from .emitter import format_tsv_row
from .errors import ArgumentError, PileupStatsError
from .reader import load_stream, stats_records
from .source import PileupOptions
from .toy_data import make_toy_data
from .utils import write_json

PROG = "pileup-stats"


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _non_negative_int(s: str) -> int:
    try:
        v = int(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not an integer: {s}")
    if v < 0:
        raise argparse.ArgumentTypeError(f"Must be >= 0: {s}")
    return v


def _positive_int(s: str) -> int:
    v = _non_negative_int(s)
    if v == 0:
        raise argparse.ArgumentTypeError(f"Must be > 0: {s}")
    return v


def _handle_error(err: Exception, *, log_path: Optional[Path] = None) -> int:
    if isinstance(err, PileupStatsError):
        msg = f"ERROR: {PROG}: {err}"
    else:
        msg = f"ERROR: {PROG}: {err.__class__.__name__}: {err}"

    sys.stderr.write(msg + "\n")
    if log_path is not None:
        sys.stderr.write(f"See log: {log_path}\n")
    return 2


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog=PROG,
        description=(
            "pileup-stats: per-position depth, mismatch, insertion and deletion counts "
            "for one sequencing run, written as a general loader stream."
        ),
    )
    p.add_argument("--version", action="version", version=f"{PROG} {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # stats
    # -----------------
    s = sub.add_parser(
        "stats",
        help="Compute pileup statistics for one run (indexed BAM/CRAM).",
    )
    s.add_argument(
        "runs",
        nargs="+",
        metavar="RUN",
        help="Run to process (sorted, indexed BAM/CRAM). Only one run per invocation.",
    )
    s.add_argument("--ref", required=True, type=_path_exists, help="Reference FASTA the run was aligned to.")
    s.add_argument(
        "--depth-cutoff",
        type=_non_negative_int,
        default=0,
        help="Only report positions whose corrected depth is strictly greater than this.",
    )
    s.add_argument(
        "--format",
        choices=list(OUTPUT_FORMATS),
        default="general-loader",
        help="Output format: binary general loader stream or tab-separated text.",
    )
    s.add_argument("--output", default="-", help="Output path (default: stdout).")
    s.add_argument("--run-name", default=None, help="Run name (default: file name without suffix).")
    s.add_argument("--record-ref-base", action="store_true", help="Add a REF_BASE column to the STATS table.")
    s.add_argument(
        "--stepper",
        choices=["nofilter", "all"],
        default="nofilter",
        help="pysam pileup stepper: nofilter keeps every alignment; all applies pysam's read filters.",
    )
    s.add_argument(
        "--max-depth",
        type=_positive_int,
        default=1_000_000,
        help="Maximum reads per pileup column read by pysam; a column reaching it is an error.",
    )
    s.add_argument("--summary-json", default=None, help="Write run counters as JSON to this path.")
    s.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    s.add_argument("--log-file", default=None, help="Also write log messages to this file.")
    s.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # dump
    # -----------------
    d = sub.add_parser(
        "dump",
        help="Decode a general loader stream and print the STATS rows as TSV.",
    )
    d.add_argument("stream", help="Stream file written by 'stats' ('-' for stdin).")
    d.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")

    # -----------------
    # make-toy-data
    # -----------------
    t = sub.add_parser(
        "make-toy-data",
        help="Generate a tiny reference FASTA and BAM for demos/tests.",
    )
    t.add_argument("--outdir", required=True, help="Output directory for toy data.")
    t.add_argument("--dry-run", action="store_true", help="Validate paths without writing files.")

    return p


def cmd_stats(args: argparse.Namespace) -> int:
    log_path = Path(args.log_file).expanduser().resolve() if args.log_file else None
    _setup_logging(args.verbose, logfile=log_path)

    logger = logging.getLogger("pileupstats")
    logger.info("%s %s", PROG, __version__)

    try:
        if len(args.runs) > 1:
            raise ArgumentError("only one run may be processed at a time")
        spec = args.runs[0]

        binary = args.format == "general-loader"
        to_stdout = args.output == "-"
        if to_stdout:
            out = sys.stdout.buffer if binary else sys.stdout
        else:
            out = open(args.output, "wb" if binary else "wt", encoding=None if binary else "utf-8")

        try:
            summary = run_pileup_stats(
                spec,
                reference_fasta=args.ref,
                out=out,
                depth_cutoff=int(args.depth_cutoff),
                output_format=args.format,
                record_ref_base=bool(args.record_ref_base),
                run_name=args.run_name,
                options=PileupOptions(stepper=args.stepper, max_depth=int(args.max_depth)),
                progress=not bool(args.no_progress),
            )
        finally:
            if not to_stdout:
                out.close()

        if args.summary_json:
            write_json(args.summary_json, summary)
            logger.info("Summary written: %s", args.summary_json)
        return 0
    except Exception as e:
        return _handle_error(e, log_path=log_path)


def cmd_dump(args: argparse.Namespace) -> int:
    _setup_logging(args.verbose, logfile=None)
    try:
        if args.stream == "-":
            loaded = load_stream(sys.stdin.buffer)
        else:
            with open(args.stream, "rb") as fh:
                loaded = load_stream(fh)
        for run_name, ref_name, record in stats_records(loaded):
            sys.stdout.write(format_tsv_row(run_name, ref_name, record))
        if not loaded.complete:
            raise PileupStatsError("stream is incomplete (no end-of-stream marker)")
        return 0
    except Exception as e:
        return _handle_error(e)


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    if args.dry_run:
        print(f"Would write toy data into: {outdir}")
        return 0

    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.cmd == "stats":
        return cmd_stats(args)
    if args.cmd == "dump":
        return cmd_dump(args)
    if args.cmd == "make-toy-data":
        return cmd_make_toy_data(args)

    parser.error(f"Unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
