"""
Turns uploaded CSV / XLSX bytes into a list of ordered raw rows.

Every row is a plain ``dict`` (column label -> str | int | float | date |
datetime | None) in file column order. No field interpretation happens here;
that is left to ``field_normalizer``.
"""
import logging
from datetime import date, datetime
from io import BytesIO, StringIO
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd

from app.core.config import FileFormat
from app.core.exceptions import TabularParseError, UnsupportedFileError
from app.services.field_normalizer import FIELD_ALIASES, RawRow, RawValue, normalize_label

logger = logging.getLogger(__name__)

CSV_CONTENT_TYPES = ("text/csv", "application/csv")
SPREADSHEET_CONTENT_TYPES = (
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
)

# how far down a report preamble may push the real header
HEADER_SCAN_LINES = 30

_HEADER_TOKENS = frozenset(
    normalize_label(alias) for aliases in FIELD_ALIASES.values() for alias in aliases
)


def detect_format(filename: Optional[str], content_type: Optional[str]) -> FileFormat:
    name = (filename or "").strip().lower()
    ctype = (content_type or "").split(";")[0].strip().lower()

    # Browsers on Windows send application/vnd.ms-excel for .csv files too,
    # so the extension wins over the MIME type.
    if name.endswith(".csv"):
        return FileFormat.CSV
    if name.endswith((".xlsx", ".xls")):
        return FileFormat.SPREADSHEET
    if ctype in CSV_CONTENT_TYPES:
        return FileFormat.CSV
    if ctype in SPREADSHEET_CONTENT_TYPES or "spreadsheetml" in ctype:
        return FileFormat.SPREADSHEET

    raise UnsupportedFileError(
        "Unsupported file type, upload a CSV or XLSX file",
        details={"filename": filename, "content_type": content_type},
    )


def decode_csv_bytes(content: bytes) -> str:
    """UTF-8 (BOM stripped), then Windows-1252, then UTF-8 with replacement."""
    for encoding in ("utf-8-sig", "cp1252"):
        try:
            return content.decode(encoding)
        except UnicodeDecodeError:
            continue
    logger.warning("CSV is neither valid UTF-8 nor Windows-1252, decoding with replacement")
    return content.decode("utf-8", errors="replace")


def _split_line(line: str) -> List[str]:
    delimiter = ";" if ";" in line else ","
    return [cell.strip().strip('"') for cell in line.split(delimiter)]


def header_score(cells: Sequence) -> int:
    """Number of cells that look like a known column label."""
    score = 0
    for cell in cells:
        label = normalize_label(cell)
        if not label:
            continue
        if label in _HEADER_TOKENS or any(len(token) >= 4 and token in label for token in _HEADER_TOKENS):
            score += 1
    return score


def find_header_index(lines: Sequence[Sequence]) -> int:
    """
    Index of the most header-like line among the first ``HEADER_SCAN_LINES``.

    Falls back to 0 when nothing scores at least two recognizable labels, so a
    file with unknown headers is still read from its first line.
    """
    best_index, best_score = 0, 1
    for index, cells in enumerate(lines[:HEADER_SCAN_LINES]):
        score = header_score(cells)
        if score > best_score:
            best_index, best_score = index, score
    return best_index


def _to_native(value) -> RawValue:
    if value is None:
        return None
    if isinstance(value, pd.Timestamp):
        if pd.isna(value):
            return None
        value = value.to_pydatetime()
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and value != value:
        return None
    if isinstance(value, datetime):
        # spreadsheets store plain dates as midnight timestamps
        if value.hour == value.minute == value.second == value.microsecond == 0:
            return value.date()
        return value
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _clean_headers(labels: Sequence) -> List[str]:
    headers: List[str] = []
    seen = {}
    for position, label in enumerate(labels, start=1):
        text = "" if label is None or (isinstance(label, float) and label != label) else str(label).strip()
        if not text or text.startswith("Unnamed:"):
            text = f"column_{position}"
        if text in seen:
            seen[text] += 1
            text = f"{text}_{seen[text]}"
        else:
            seen[text] = 1
        headers.append(text)
    return headers


def _frame_to_rows(df: pd.DataFrame) -> List[RawRow]:
    df = df.replace({np.nan: None})
    rows: List[RawRow] = []
    for record in df.to_dict(orient="records"):
        row = {column: _to_native(value) for column, value in record.items()}
        if any(value is not None for value in row.values()):
            rows.append(row)
    return rows


def _parse_csv(content: bytes) -> List[RawRow]:
    text = decode_csv_bytes(content)
    lines = text.splitlines()
    if not any(line.strip() for line in lines):
        raise TabularParseError("File is empty or has no valid data")

    header_index = find_header_index([_split_line(line) for line in lines])
    delimiter = ";" if ";" in lines[header_index] else ","
    if header_index:
        logger.info(f"Skipping {header_index} preamble line(s) before the CSV header")

    try:
        df = pd.read_csv(
            StringIO(text),
            sep=delimiter,
            skiprows=header_index,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise TabularParseError(f"Could not parse CSV file: {exc}") from exc

    df.columns = _clean_headers(df.columns)
    return _frame_to_rows(df)


def _read_first_sheet(content: bytes) -> pd.DataFrame:
    try:
        return pd.read_excel(BytesIO(content), sheet_name=0, header=None, engine="openpyxl")
    except Exception as exc:
        logger.info(f"openpyxl could not read the workbook ({exc}), retrying as legacy .xls")
    try:
        return pd.read_excel(BytesIO(content), sheet_name=0, header=None, engine="xlrd")
    except Exception as exc:
        raise TabularParseError("Could not read spreadsheet, the file is corrupt or not an Excel workbook") from exc


def _parse_spreadsheet(content: bytes) -> List[RawRow]:
    raw = _read_first_sheet(content)
    raw = raw.dropna(how="all")
    if raw.empty:
        raise TabularParseError("File is empty or has no valid data")

    values = raw.values.tolist()
    header_index = find_header_index(values)
    if header_index:
        logger.info(f"Skipping {header_index} preamble row(s) before the spreadsheet header")

    df = pd.DataFrame(values[header_index + 1:], columns=_clean_headers(values[header_index]))
    return _frame_to_rows(df)


def parse_upload(content: bytes, filename: Optional[str], content_type: Optional[str]) -> List[RawRow]:
    """
    Parse an uploaded file into raw rows.

    Raises ``UnsupportedFileError`` for anything that is not CSV or a
    spreadsheet, and ``TabularParseError`` when the bytes cannot be read or
    yield no data rows. Fully blank rows are dropped.
    """
    file_format = detect_format(filename, content_type)
    if not content:
        raise TabularParseError("File is empty or has no valid data")

    if file_format == FileFormat.CSV:
        rows = _parse_csv(content)
    else:
        rows = _parse_spreadsheet(content)

    if not rows:
        raise TabularParseError("File is empty or has no valid data")

    logger.info(f"Parsed {len(rows)} row(s) from {filename!r} ({file_format.value})")
    return rows
