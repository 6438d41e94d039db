"""
Tabular decoding for uploaded files.

Delimited text is streamed in pandas chunks; spreadsheets are loaded whole
(first sheet only) because the workbook format gives no way to stream rows.
Either way the caller receives a :class:`RowStream` - a finite, single-use
sequence of ``{header: raw value}`` dicts.
"""
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pandas as pd

from bulkload.domain.ingest.errors import DecodeError

logger = logging.getLogger(__name__)

FORMAT_CSV = "csv"
FORMAT_EXCEL = "excel"

CSV_EXTENSIONS = (".csv", ".tsv", ".txt")
EXCEL_EXTENSIONS = (".xlsx", ".xlsm", ".xls")
SUPPORTED_EXTENSIONS = CSV_EXTENSIONS + EXCEL_EXTENSIONS

CANDIDATE_DELIMITERS = (",", ";", "\t", "|")
CSV_READ_CHUNK_ROWS = 10000
ENCODING_SNIFF_BYTES = 64 * 1024

Row = Dict[str, Any]


@dataclass
class RowStream:
    """Decoded rows plus the header list and the row count known up front."""

    columns: List[str]
    total_rows: int
    rows: Iterator[Row] = field(repr=False)
    _consumed: bool = field(default=False, repr=False)

    def __iter__(self) -> Iterator[Row]:
        if self._consumed:
            raise RuntimeError("RowStream has already been consumed; decode the file again")
        self._consumed = True
        return iter(self.rows)

    def chunks(self, size: int) -> Iterator[List[Row]]:
        """Yield consecutive slices of at most ``size`` rows, in file order."""
        if size < 1:
            raise ValueError("chunk size must be positive")
        batch: List[Row] = []
        for row in self:
            batch.append(row)
            if len(batch) >= size:
                yield batch
                batch = []
        if batch:
            yield batch

    @classmethod
    def from_rows(cls, columns: List[str], rows: List[Row]) -> "RowStream":
        return cls(columns=columns, total_rows=len(rows), rows=iter(rows))


def detect_format(file_name: str) -> str:
    """
    Map a file name to a format hint.

    Raises:
        ValueError: If the extension is not a supported tabular format
    """
    lowered = (file_name or "").lower()
    if lowered.endswith(CSV_EXTENSIONS):
        return FORMAT_CSV
    if lowered.endswith(EXCEL_EXTENSIONS):
        return FORMAT_EXCEL
    raise ValueError("Only CSV and Excel files are allowed.")


def clean_header(name: Any) -> str:
    """Strip byte-order marks and surrounding whitespace from a header cell."""
    return str(name).replace("\ufeff", "").strip()


def detect_delimiter(first_line: str) -> str:
    """Pick the candidate delimiter that occurs most often in the header line."""
    best = CANDIDATE_DELIMITERS[0]
    best_count = 0
    for candidate in CANDIDATE_DELIMITERS:
        count = first_line.count(candidate)
        if count > best_count:
            best, best_count = candidate, count
    return best


def _clean_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    if value is pd.NaT:
        return None
    return value


def _sniff_encoding(path: str) -> str:
    with open(path, "rb") as handle:
        head = handle.read(ENCODING_SNIFF_BYTES)
    try:
        head.decode("utf-8-sig")
        return "utf-8-sig"
    except UnicodeDecodeError as exc:
        # A multi-byte character cut at the sniff boundary is still UTF-8
        if exc.start >= len(head) - 4:
            return "utf-8-sig"
        logger.info("File %s is not valid UTF-8; decoding as latin-1", path)
        return "latin-1"


def _read_options(encoding: str, delimiter: str) -> Dict[str, Any]:
    # index_col=False keeps a trailing delimiter from turning the first field into the index
    return {
        "sep": delimiter,
        "dtype": str,
        "keep_default_na": False,
        "encoding": encoding,
        "index_col": False,
    }


def _count_csv_records(path: str, encoding: str, delimiter: str) -> int:
    """Count data records with the same parser settings that stream them."""
    reader = pd.read_csv(path, usecols=[0], chunksize=CSV_READ_CHUNK_ROWS, **_read_options(encoding, delimiter))
    with reader:
        return sum(len(frame) for frame in reader)


def _iter_csv_rows(path: str, encoding: str, delimiter: str, columns: List[str]) -> Iterator[Row]:
    try:
        reader = pd.read_csv(path, chunksize=CSV_READ_CHUNK_ROWS, **_read_options(encoding, delimiter))
        with reader:
            for frame in reader:
                frame.columns = columns
                for record in frame.to_dict("records"):
                    yield {key: _clean_value(value) for key, value in record.items()}
    except DecodeError:
        raise
    except Exception as exc:
        raise DecodeError(path, DecodeError.PHASE_PARSE, str(exc)) from exc


def decode_csv(path: str) -> RowStream:
    """Open a delimited text file and return a streaming :class:`RowStream`."""
    try:
        encoding = _sniff_encoding(path)
        with open(path, "r", encoding=encoding, newline="") as handle:
            first_line = handle.readline()
    except OSError as exc:
        raise DecodeError(path, DecodeError.PHASE_OPEN, str(exc)) from exc

    if not first_line.strip():
        raise DecodeError(path, DecodeError.PHASE_PARSE, "File is empty or has no header row")

    delimiter = detect_delimiter(first_line)
    try:
        header_frame = pd.read_csv(path, nrows=0, **_read_options(encoding, delimiter))
        total_rows = _count_csv_records(path, encoding, delimiter)
    except Exception as exc:
        raise DecodeError(path, DecodeError.PHASE_PARSE, str(exc)) from exc

    columns = [clean_header(name) for name in header_frame.columns]
    logger.info(
        "Decoding CSV %s: delimiter=%r, %d columns, %d rows",
        os.path.basename(path), delimiter, len(columns), total_rows,
    )
    return RowStream(
        columns=columns,
        total_rows=total_rows,
        rows=_iter_csv_rows(path, encoding, delimiter, columns),
    )


def read_first_sheet(path: str) -> Tuple[List[str], List[Row]]:
    """
    Load the first worksheet of a workbook into memory.

    Raises:
        DecodeError: If the workbook cannot be opened, has no sheets, or the
            first sheet is empty
    """
    engine = None if path.lower().endswith(".xls") else "openpyxl"
    try:
        workbook = pd.ExcelFile(path, engine=engine)
    except Exception as exc:
        raise DecodeError(path, DecodeError.PHASE_OPEN, f"Could not read Excel file: {exc}") from exc

    with workbook:
        if not workbook.sheet_names:
            raise DecodeError(path, DecodeError.PHASE_PARSE, "Workbook contains no sheets")
        sheet_name = workbook.sheet_names[0]
        try:
            df = workbook.parse(sheet_name=sheet_name, dtype=object)
        except Exception as exc:
            raise DecodeError(path, DecodeError.PHASE_PARSE, f"Could not read sheet '{sheet_name}': {exc}") from exc

    if len(df.columns) == 0:
        raise DecodeError(path, DecodeError.PHASE_PARSE, f"First sheet '{sheet_name}' is empty")

    columns = [clean_header(name) for name in df.columns]
    df.columns = columns
    records = df.to_dict("records")

    # Convert pandas NaN/NaT values to None for database compatibility
    rows = [{key: _clean_value(value) for key, value in record.items()} for record in records]

    logger.info(
        "Decoded sheet '%s' of %s: %d columns, %d rows",
        sheet_name, os.path.basename(path), len(columns), len(rows),
    )
    return columns, rows


def decode_excel(path: str) -> RowStream:
    columns, rows = read_first_sheet(path)
    return RowStream.from_rows(columns, rows)


def decode(source_path: str, format_hint: Optional[str] = None) -> RowStream:
    """
    Decode ``source_path`` into a single-use :class:`RowStream`.

    Args:
        source_path: Path of the uploaded file on disk
        format_hint: ``"csv"`` or ``"excel"``; derived from the extension when omitted

    Raises:
        DecodeError: On any open or parse failure
    """
    if not os.path.exists(source_path):
        raise DecodeError(source_path, DecodeError.PHASE_OPEN, "File does not exist")

    if format_hint is None:
        try:
            format_hint = detect_format(source_path)
        except ValueError as exc:
            raise DecodeError(source_path, DecodeError.PHASE_OPEN, str(exc)) from exc

    if format_hint == FORMAT_CSV:
        return decode_csv(source_path)
    if format_hint == FORMAT_EXCEL:
        return decode_excel(source_path)
    raise DecodeError(source_path, DecodeError.PHASE_OPEN, f"Unsupported format '{format_hint}'")


def decode_to_rows(source_path: str, format_hint: Optional[str] = None) -> Tuple[List[str], List[Row]]:
    """Fully materialize a decode. Runs inside the isolated decode worker."""
    stream = decode(source_path, format_hint)
    return stream.columns, list(stream)
