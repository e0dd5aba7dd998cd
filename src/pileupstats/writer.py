"""General loader stream writer.

The stream is a self-describing sequence of binary events: a fixed header,
the session (remote database path and schema), table/column registration,
an ``open_stream`` marker, then cell defaults, cell data and row commits.
All integers are uint32 in native byte order; every event starts on a
4-byte boundary.

Header
------
``b"NCBIgnld"`` + uint32 endian marker (1) + uint32 version (1).

Events
------
Each event starts with a uint32 ``(code << 24) | id``, where ``id`` is a
1-based table or column id (0 when the event has none). See ``EVT_*`` below
for codes and :meth:`GeneralWriter._emit_*` for payload layouts.
"""

from __future__ import annotations

import logging
import struct
from typing import BinaryIO, Dict, Tuple, Union

import numpy as np

from .errors import ProtocolError

logger = logging.getLogger(__name__)

SIGNATURE = b"NCBIgnld"
ENDIAN_MARKER = 1
VERSION = 1

EVT_END_STREAM = 2
EVT_REMOTE_PATH = 3
EVT_USE_SCHEMA = 4
EVT_NEW_TABLE = 5
EVT_NEW_COLUMN = 6
EVT_OPEN_STREAM = 7
EVT_CELL_DEFAULT = 8
EVT_CELL_DATA = 9
EVT_NEXT_ROW = 11

MAX_ID = 0xFFFFFF

CellData = Union[bytes, bytearray, memoryview, np.ndarray, str]


def event_header(code: int, ident: int = 0) -> bytes:
    return struct.pack("=I", (code << 24) | (ident & MAX_ID))


def padding(size: int) -> bytes:
    return b"\0" * ((4 - size % 4) % 4)


def encode_cells(values, dtype) -> Tuple[int, bytes, int]:
    """Encode values as a native array of ``dtype``; return (elem_bits, data, elem_count)."""
    arr = np.ascontiguousarray(np.atleast_1d(np.asarray(values, dtype=dtype)))
    return arr.dtype.itemsize * 8, arr.tobytes(), int(arr.size)


def _as_bytes(data: CellData) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    if isinstance(data, np.ndarray):
        return np.ascontiguousarray(data).tobytes()
    return bytes(data)


class GeneralWriter:
    """Write one general loader session to a binary stream.

    Parameters
    ----------
    out:
        Binary file-like object (e.g. ``sys.stdout.buffer``).
    remote_db:
        Name of the database the loader should create.
    schema_file, schema_spec:
        Schema source file and the database spec within it.
    """

    def __init__(self, out: BinaryIO, remote_db: str, schema_file: str, schema_spec: str) -> None:
        self._out = out
        self._tables: Dict[int, str] = {}
        self._columns: Dict[int, Tuple[int, str]] = {}
        self._elem_bits: Dict[int, int] = {}
        self._opened = False
        self._ended = False
        self.rows_written = 0

        self._out.write(SIGNATURE + struct.pack("=II", ENDIAN_MARKER, VERSION))
        self._emit_string(EVT_REMOTE_PATH, remote_db)
        schema_file_b = schema_file.encode("utf-8")
        schema_spec_b = schema_spec.encode("utf-8")
        body = schema_file_b + schema_spec_b
        self._out.write(
            event_header(EVT_USE_SCHEMA)
            + struct.pack("=II", len(schema_file_b), len(schema_spec_b))
            + body
            + padding(len(body))
        )

    # -----------------
    # registration
    # -----------------

    def add_table(self, name: str) -> int:
        self._check_registration("add_table")
        table_id = len(self._tables) + 1
        self._tables[table_id] = name
        self._emit_string(EVT_NEW_TABLE, name, ident=table_id)
        return table_id

    def add_column(self, table_id: int, name: str) -> int:
        """Register a column; the same name registered twice yields two columns."""
        self._check_registration("add_column")
        if table_id not in self._tables:
            raise ProtocolError(f"add_column({name!r}): unknown table id {table_id}")
        column_id = len(self._columns) + 1
        if column_id > MAX_ID:
            raise ProtocolError("Too many columns for a general loader stream")
        self._columns[column_id] = (table_id, name)
        name_b = name.encode("utf-8")
        self._out.write(
            event_header(EVT_NEW_COLUMN, column_id)
            + struct.pack("=II", table_id, len(name_b))
            + name_b
            + padding(len(name_b))
        )
        return column_id

    def open(self) -> None:
        self._check_registration("open")
        self._opened = True
        self._out.write(event_header(EVT_OPEN_STREAM))
        logger.debug(
            "Opened general loader stream: %d table(s), %d column(s)",
            len(self._tables),
            len(self._columns),
        )

    # -----------------
    # data
    # -----------------

    def column_default(self, column_id: int, elem_bits: int, data: CellData, elem_count: int) -> None:
        """Bind a standing value for a column, used by every later row until replaced."""
        self._emit_cell(EVT_CELL_DEFAULT, column_id, elem_bits, data, elem_count)

    def write(self, column_id: int, elem_bits: int, data: CellData, elem_count: int) -> None:
        """Stage a value for one column of the current row."""
        self._emit_cell(EVT_CELL_DATA, column_id, elem_bits, data, elem_count)

    def next_row(self, table_id: int) -> None:
        """Commit the staged values of ``table_id`` as one row."""
        self._check_data("next_row")
        if table_id not in self._tables:
            raise ProtocolError(f"next_row: unknown table id {table_id}")
        self._out.write(event_header(EVT_NEXT_ROW, table_id))
        self.rows_written += 1

    def end_stream(self) -> None:
        if self._ended:
            return
        self._check_data("end_stream")
        self._out.write(event_header(EVT_END_STREAM))
        self._ended = True
        self._out.flush()

    close = end_stream

    def __enter__(self) -> "GeneralWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        # A failed run leaves the stream without an end marker, so the
        # loader treats it as an incomplete load.
        if exc_type is None:
            self.end_stream()

    # -----------------
    # internals
    # -----------------

    def _check_registration(self, op: str) -> None:
        if self._opened:
            raise ProtocolError(f"{op}: schema registration is closed once the stream is open")

    def _check_data(self, op: str) -> None:
        if not self._opened:
            raise ProtocolError(f"{op}: stream has not been opened")
        if self._ended:
            raise ProtocolError(f"{op}: stream has already ended")

    def _emit_string(self, code: int, value: str, *, ident: int = 0) -> None:
        raw = value.encode("utf-8")
        self._out.write(event_header(code, ident) + struct.pack("=I", len(raw)) + raw + padding(len(raw)))

    def _emit_cell(self, code: int, column_id: int, elem_bits: int, data: CellData, elem_count: int) -> None:
        op = "column_default" if code == EVT_CELL_DEFAULT else "write"
        self._check_data(op)
        if column_id not in self._columns:
            raise ProtocolError(f"{op}: unknown column id {column_id}")
        if elem_bits <= 0 or elem_bits % 8 != 0:
            raise ProtocolError(f"{op}: element width must be a positive multiple of 8 bits, got {elem_bits}")

        raw = _as_bytes(data)
        if len(raw) * 8 != elem_bits * elem_count:
            raise ProtocolError(
                f"{op}: {elem_count} x {elem_bits}-bit elements need {elem_bits * elem_count // 8} bytes, "
                f"got {len(raw)}"
            )

        known = self._elem_bits.setdefault(column_id, elem_bits)
        if known != elem_bits:
            name = self._columns[column_id][1]
            raise ProtocolError(f"{op}: column {name} was {known}-bit, got {elem_bits}-bit data")
        self._out.write(
            event_header(code, column_id) + struct.pack("=II", elem_bits, elem_count) + raw + padding(len(raw))
        )
