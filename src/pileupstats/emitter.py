from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, TextIO, Tuple

import numpy as np

from .errors import ProtocolError
from .models import PositionRecord
from .writer import GeneralWriter, encode_cells

logger = logging.getLogger(__name__)

TABLE_NAME = "STATS"
REMOTE_DB_SUFFIX = ".pileup_stat"
SCHEMA_FILE = "align/pileup-stats.vschema"
SCHEMA_SPEC = "NCBI:pileup:db:pileup_stats #1"

RUN_NAME = "RUN_NAME"
REFERENCE_SPEC = "REFERENCE_SPEC"
REF_POS = "REF_POS"
REF_BASE = "REF_BASE"
DEPTH = "DEPTH"
MISMATCH_COUNTS = "MISMATCH_COUNTS"
INSERTION_COUNTS = "INSERTION_COUNTS"
DELETION_COUNT = "DELETION_COUNT"

# numpy dtype per column; text columns are 8-bit characters.
COLUMN_DTYPES: Dict[str, np.dtype] = {
    RUN_NAME: np.dtype(np.uint8),
    REFERENCE_SPEC: np.dtype(np.uint8),
    REF_POS: np.dtype(np.int64),
    REF_BASE: np.dtype(np.uint8),
    DEPTH: np.dtype(np.uint32),
    MISMATCH_COUNTS: np.dtype(np.uint32),
    INSERTION_COUNTS: np.dtype(np.uint32),
    DELETION_COUNT: np.dtype(np.uint32),
}


@dataclass(frozen=True)
class StatsSchema:
    """Table and column ids of the STATS table, fixed once the stream is open."""

    table_id: int
    columns: Tuple[Tuple[str, int], ...]

    def column_id(self, name: str) -> int:
        for col_name, col_id in self.columns:
            if col_name == name:
                return col_id
        raise ProtocolError(f"Column {name} is not registered in table {TABLE_NAME}")

    def has_column(self, name: str) -> bool:
        return any(col_name == name for col_name, _ in self.columns)


def stats_columns(*, record_ref_base: bool = False) -> Tuple[str, ...]:
    cols = [RUN_NAME, REFERENCE_SPEC, REF_POS]
    if record_ref_base:
        cols.append(REF_BASE)
    cols += [DEPTH, MISMATCH_COUNTS, INSERTION_COUNTS, DELETION_COUNT]
    return tuple(cols)


def open_stats_stream(out, run_name: str) -> GeneralWriter:
    """Start a general loader session for one run."""
    return GeneralWriter(out, run_name + REMOTE_DB_SUFFIX, SCHEMA_FILE, SCHEMA_SPEC)


def register_stats_schema(writer: GeneralWriter, *, record_ref_base: bool = False) -> StatsSchema:
    """Register the STATS table and its columns, then open the stream."""
    table_id = writer.add_table(TABLE_NAME)
    columns = tuple((name, writer.add_column(table_id, name)) for name in stats_columns(record_ref_base=record_ref_base))
    writer.open()
    return StatsSchema(table_id=table_id, columns=columns)


def _text_cell(value: str) -> Tuple[int, bytes, int]:
    raw = value.encode("utf-8")
    return COLUMN_DTYPES[RUN_NAME].itemsize * 8, raw, len(raw)


class StatsEmitter:
    """Write PositionRecords as rows of the STATS table.

    RUN_NAME and REFERENCE_SPEC are bound as column defaults and never
    written per row.
    """

    def __init__(self, writer: GeneralWriter, schema: StatsSchema) -> None:
        self.writer = writer
        self.schema = schema
        self._ref_base_col: Optional[int] = (
            schema.column_id(REF_BASE) if schema.has_column(REF_BASE) else None
        )
        self._cols = {
            name: schema.column_id(name)
            for name in (REF_POS, DEPTH, MISMATCH_COUNTS, INSERTION_COUNTS, DELETION_COUNT)
        }

    def set_run(self, run_name: str) -> None:
        bits, data, count = _text_cell(run_name)
        self.writer.column_default(self.schema.column_id(RUN_NAME), bits, data, count)

    def set_reference(self, reference_name: str) -> None:
        bits, data, count = _text_cell(reference_name)
        self.writer.column_default(self.schema.column_id(REFERENCE_SPEC), bits, data, count)

    def emit(self, record: PositionRecord) -> None:
        w = self.writer
        w.write(self._cols[REF_POS], *encode_cells(record.ref_pos, COLUMN_DTYPES[REF_POS]))
        if self._ref_base_col is not None:
            w.write(self._ref_base_col, *_text_cell(record.ref_base))
        w.write(self._cols[DEPTH], *encode_cells(record.depth, COLUMN_DTYPES[DEPTH]))
        w.write(self._cols[MISMATCH_COUNTS], *encode_cells(record.mismatch_counts, COLUMN_DTYPES[MISMATCH_COUNTS]))
        w.write(self._cols[INSERTION_COUNTS], *encode_cells(record.insertion_counts, COLUMN_DTYPES[INSERTION_COUNTS]))
        w.write(self._cols[DELETION_COUNT], *encode_cells(record.deletion_count, COLUMN_DTYPES[DELETION_COUNT]))
        w.next_row(self.schema.table_id)

    def close(self) -> None:
        self.writer.end_stream()


def format_tsv_row(run_name: str, reference_name: str, record: PositionRecord) -> str:
    m = record.mismatch_counts
    i = record.insertion_counts
    return (
        f"{run_name}\t{reference_name}\t{record.ref_pos}\t{record.ref_base}\t{record.depth}\t"
        f"{{{m[0]},{m[1]},{m[2]}}}\t{{{i[0]},{i[1]},{i[2]},{i[3]}}}\t{record.deletion_count}\n"
    )


class TsvEmitter:
    """Plain-text rendition of the STATS rows, one tab-separated line per record."""

    def __init__(self, out: TextIO) -> None:
        self.out = out
        self.run_name = ""
        self.reference_name = ""

    def set_run(self, run_name: str) -> None:
        self.run_name = run_name

    def set_reference(self, reference_name: str) -> None:
        self.reference_name = reference_name

    def emit(self, record: PositionRecord) -> None:
        self.out.write(format_tsv_row(self.run_name, self.reference_name, record))

    def close(self) -> None:
        self.out.flush()
