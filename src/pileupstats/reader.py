"""Decode a general loader stream back into tables.

This plays the role of the downstream loader closely enough to inspect and
test what :class:`~pileupstats.writer.GeneralWriter` produced: column
defaults are applied to every row that does not stage its own value.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterator, List, Optional, Tuple

import numpy as np

from .emitter import (
    COLUMN_DTYPES,
    DELETION_COUNT,
    DEPTH,
    INSERTION_COUNTS,
    MISMATCH_COUNTS,
    REF_BASE,
    REF_POS,
    REFERENCE_SPEC,
    RUN_NAME,
    TABLE_NAME,
)
from .errors import ProtocolError
from .models import PositionRecord
from .writer import (
    EVT_CELL_DATA,
    EVT_CELL_DEFAULT,
    EVT_END_STREAM,
    EVT_NEW_COLUMN,
    EVT_NEW_TABLE,
    EVT_NEXT_ROW,
    EVT_OPEN_STREAM,
    EVT_REMOTE_PATH,
    EVT_USE_SCHEMA,
    MAX_ID,
    SIGNATURE,
    VERSION,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Cell:
    elem_bits: int
    elem_count: int
    data: bytes
    byteorder: str = "="

    def values(self, dtype) -> np.ndarray:
        dt = np.dtype(dtype).newbyteorder(self.byteorder)
        if dt.itemsize * 8 != self.elem_bits:
            raise ProtocolError(f"Cell is {self.elem_bits}-bit, cannot decode as {np.dtype(dtype).name}")
        return np.frombuffer(self.data, dtype=dt, count=self.elem_count)

    def text(self) -> str:
        return self.data.decode("utf-8")


@dataclass(frozen=True)
class StreamEvent:
    code: int
    ident: int
    name: Optional[str] = None
    table_id: Optional[int] = None
    cell: Optional[Cell] = None
    extra: Optional[str] = None


@dataclass
class LoadedTable:
    name: str
    columns: List[Tuple[int, str]] = field(default_factory=list)
    rows: List[Dict[str, Cell]] = field(default_factory=list)


@dataclass
class LoadedStream:
    remote_db: Optional[str] = None
    schema_file: Optional[str] = None
    schema_spec: Optional[str] = None
    tables: Dict[str, LoadedTable] = field(default_factory=dict)
    complete: bool = False


def _padded(size: int) -> int:
    return size + (4 - size % 4) % 4


class _Cursor:
    def __init__(self, fh: BinaryIO, order: str) -> None:
        self.fh = fh
        self.order = order

    def read(self, n: int, *, what: str) -> bytes:
        raw = self.fh.read(n)
        if len(raw) != n:
            raise ProtocolError(f"Truncated general loader stream while reading {what}")
        return raw

    def u32(self, count: int, *, what: str) -> Tuple[int, ...]:
        return struct.unpack(f"{self.order}{count}I", self.read(4 * count, what=what))

    def blob(self, size: int, *, what: str) -> bytes:
        return self.read(_padded(size), what=what)[:size]


def _read_header(fh: BinaryIO) -> str:
    raw = fh.read(16)
    if len(raw) != 16 or raw[:8] != SIGNATURE:
        raise ProtocolError("Not a general loader stream (bad signature)")
    for order in ("<", ">"):
        endian, version = struct.unpack(f"{order}II", raw[8:])
        if endian == 1:
            if version != VERSION:
                raise ProtocolError(f"Unsupported general loader version {version}")
            return order
    raise ProtocolError("Unrecognized endian marker in general loader header")


def iter_events(fh: BinaryIO) -> Iterator[StreamEvent]:
    """Yield the events of a general loader stream in order."""
    order = _read_header(fh)
    cur = _Cursor(fh, order)

    while True:
        head = fh.read(4)
        if not head:
            return
        if len(head) != 4:
            raise ProtocolError("Truncated general loader stream while reading event header")
        (word,) = struct.unpack(f"{order}I", head)
        code, ident = word >> 24, word & MAX_ID

        if code in (EVT_REMOTE_PATH, EVT_NEW_TABLE):
            (size,) = cur.u32(1, what="string size")
            yield StreamEvent(code, ident, name=cur.blob(size, what="string").decode("utf-8"))
        elif code == EVT_USE_SCHEMA:
            fsize, ssize = cur.u32(2, what="schema sizes")
            body = cur.blob(fsize + ssize, what="schema names")
            yield StreamEvent(
                code,
                ident,
                name=body[:fsize].decode("utf-8"),
                extra=body[fsize:].decode("utf-8"),
            )
        elif code == EVT_NEW_COLUMN:
            table_id, size = cur.u32(2, what="column header")
            yield StreamEvent(code, ident, name=cur.blob(size, what="column name").decode("utf-8"), table_id=table_id)
        elif code in (EVT_CELL_DEFAULT, EVT_CELL_DATA):
            bits, count = cur.u32(2, what="cell header")
            size = bits * count // 8
            data = cur.blob(size, what="cell data")
            yield StreamEvent(code, ident, cell=Cell(bits, count, data, order))
        elif code in (EVT_OPEN_STREAM, EVT_NEXT_ROW, EVT_END_STREAM):
            yield StreamEvent(code, ident)
        else:
            raise ProtocolError(f"Unknown general loader event code {code}")


def load_stream(fh: BinaryIO) -> LoadedStream:
    """Materialize every table of a stream, applying column defaults per row."""
    out = LoadedStream()
    table_by_id: Dict[int, LoadedTable] = {}
    column_owner: Dict[int, Tuple[int, str]] = {}
    defaults: Dict[int, Cell] = {}
    staged: Dict[int, Dict[int, Cell]] = {}
    opened = False

    for ev in iter_events(fh):
        if out.complete:
            raise ProtocolError("Events found after end of stream")
        if ev.code == EVT_REMOTE_PATH:
            out.remote_db = ev.name
        elif ev.code == EVT_USE_SCHEMA:
            out.schema_file, out.schema_spec = ev.name, ev.extra
        elif ev.code == EVT_NEW_TABLE:
            tbl = LoadedTable(name=ev.name or "")
            table_by_id[ev.ident] = tbl
            out.tables[tbl.name] = tbl
            staged[ev.ident] = {}
        elif ev.code == EVT_NEW_COLUMN:
            if ev.table_id not in table_by_id:
                raise ProtocolError(f"Column {ev.name} refers to unknown table {ev.table_id}")
            column_owner[ev.ident] = (ev.table_id, ev.name or "")
            table_by_id[ev.table_id].columns.append((ev.ident, ev.name or ""))
        elif ev.code == EVT_OPEN_STREAM:
            opened = True
        elif ev.code in (EVT_CELL_DEFAULT, EVT_CELL_DATA):
            if not opened:
                raise ProtocolError("Cell event before open_stream")
            if ev.ident not in column_owner:
                raise ProtocolError(f"Cell event for unknown column {ev.ident}")
            assert ev.cell is not None
            if ev.code == EVT_CELL_DEFAULT:
                defaults[ev.ident] = ev.cell
            else:
                staged[column_owner[ev.ident][0]][ev.ident] = ev.cell
        elif ev.code == EVT_NEXT_ROW:
            if ev.ident not in table_by_id:
                raise ProtocolError(f"Row commit for unknown table {ev.ident}")
            tbl = table_by_id[ev.ident]
            row_cells = staged[ev.ident]
            row: Dict[str, Cell] = {}
            for col_id, col_name in tbl.columns:
                cell = row_cells.get(col_id, defaults.get(col_id))
                if cell is not None:
                    row[col_name] = cell
            tbl.rows.append(row)
            staged[ev.ident] = {}
        elif ev.code == EVT_END_STREAM:
            out.complete = True

    if not out.complete:
        logger.warning("General loader stream ended without an end-of-stream marker")
    return out


def stats_records(stream: LoadedStream) -> Iterator[Tuple[str, str, PositionRecord]]:
    """Yield (run name, reference name, record) for every row of the STATS table."""
    tbl = stream.tables.get(TABLE_NAME)
    if tbl is None:
        raise ProtocolError(f"Stream has no {TABLE_NAME} table")

    def _ints(row: Dict[str, Cell], name: str) -> Tuple[int, ...]:
        if name not in row:
            raise ProtocolError(f"{TABLE_NAME} row has no value for {name}")
        return tuple(int(v) for v in row[name].values(COLUMN_DTYPES[name]))

    for row in tbl.rows:
        run_name = row[RUN_NAME].text() if RUN_NAME in row else ""
        ref_name = row[REFERENCE_SPEC].text() if REFERENCE_SPEC in row else ""
        record = PositionRecord(
            ref_pos=_ints(row, REF_POS)[0],
            ref_base=row[REF_BASE].text() if REF_BASE in row else ".",
            depth=_ints(row, DEPTH)[0],
            mismatch_counts=_ints(row, MISMATCH_COUNTS),  # type: ignore[arg-type]
            insertion_counts=_ints(row, INSERTION_COUNTS),  # type: ignore[arg-type]
            deletion_count=_ints(row, DELETION_COUNT)[0],
        )
        yield run_name, ref_name, record
