"""
File decoder — streams CSV or spreadsheet rows as header-keyed dicts.

Each decoder is single-use: iterate it once, then read ``total_rows``.
"""

from __future__ import annotations

import csv
import logging
import os
import zipfile
from typing import Iterator, Literal, Optional

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from holdings_import.config import CSV_DELIMITER
from holdings_import.errors import DecodeError
from holdings_import.models import RawRecord

logger = logging.getLogger(__name__)

FileFormat = Literal["csv", "spreadsheet"]

_EXTENSIONS: dict[str, FileFormat] = {
    ".csv": "csv",
    ".txt": "csv",
    ".xlsx": "spreadsheet",
    ".xlsm": "spreadsheet",
}

# Anything openpyxl raises for a damaged workbook, at load or while reading
# rows.  XML parse errors (stdlib or lxml) derive from SyntaxError.
_SPREADSHEET_ERRORS = (
    OSError,
    InvalidFileException,
    zipfile.BadZipFile,
    KeyError,
    ValueError,
    TypeError,
    SyntaxError,
)


def detect_format(path: str) -> FileFormat:
    """Infer the file format from its extension."""
    ext = os.path.splitext(path)[1].lower()
    fmt = _EXTENSIONS.get(ext)
    if fmt is None:
        raise DecodeError(f"Unsupported file type '{ext or os.path.basename(path)}'. Use CSV or XLSX.")
    return fmt


class FileDecoder:
    """Lazy, finite, non-restartable sequence of raw records."""

    def __init__(
        self,
        path: str,
        fmt: Optional[FileFormat] = None,
        delimiter: Optional[str] = None,
    ):
        self.path = path
        self.name = os.path.basename(path)
        self.format: FileFormat = fmt or detect_format(path)
        self.delimiter = delimiter or CSV_DELIMITER
        self.headers: list[str] = []
        self.total_rows: Optional[int] = None
        self._consumed = False

    def __iter__(self) -> Iterator[RawRecord]:
        if self._consumed:
            raise DecodeError(f"{self.name} has already been read")
        self._consumed = True

        rows = self._iter_csv() if self.format == "csv" else self._iter_spreadsheet()
        count = 0
        for record in rows:
            count += 1
            yield record

        self.total_rows = count
        if count == 0:
            raise DecodeError(f"{self.name} contains no data rows")
        logger.info("Decoded %s: %d rows", self.name, count)

    # ── CSV ──────────────────────────────────────────────────────────────────

    def _iter_csv(self) -> Iterator[RawRecord]:
        try:
            # utf-8-sig strips the BOM that registry exports usually carry
            with open(self.path, newline="", encoding="utf-8-sig") as f:
                reader = csv.reader(f, delimiter=self.delimiter)
                header = next(reader, None)
                if not header or not any(h.strip() for h in header):
                    raise DecodeError(f"{self.name} has no header row")
                self.headers = [h.strip() for h in header]

                for row in reader:
                    if not any(cell.strip() for cell in row):
                        continue
                    yield _zip_row(self.headers, row)
        except OSError as e:
            raise DecodeError(f"Could not read {self.name}: {e}") from e
        except (UnicodeDecodeError, csv.Error) as e:
            raise DecodeError(f"CSV parsing error in {self.name}: {e}") from e

    # ── Spreadsheet ──────────────────────────────────────────────────────────

    def _iter_spreadsheet(self) -> Iterator[RawRecord]:
        try:
            workbook = load_workbook(self.path, read_only=True, data_only=True)
        except _SPREADSHEET_ERRORS as e:
            raise DecodeError(f"Spreadsheet parsing error in {self.name}: {e}") from e

        try:
            if not workbook.worksheets:
                raise DecodeError(f"{self.name} has no worksheets")
            # Only the first worksheet is read
            rows = workbook.worksheets[0].iter_rows(values_only=True)
            header = next(rows, None)
            if not header or all(v is None for v in header):
                raise DecodeError(f"{self.name} has no header row")
            self.headers = [_cell_text(v).strip() for v in header]

            for values in rows:
                cells = [_cell_text(v) for v in values]
                if not any(c.strip() for c in cells):
                    continue
                yield _zip_row(self.headers, cells)
        except _SPREADSHEET_ERRORS as e:
            raise DecodeError(f"Spreadsheet parsing error in {self.name}: {e}") from e
        finally:
            workbook.close()


def _cell_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _zip_row(headers: list[str], cells: list[str]) -> RawRecord:
    record: RawRecord = {}
    for i, label in enumerate(headers):
        if not label:
            continue
        record[label] = cells[i] if i < len(cells) else ""
    return record


def decode_file(
    path: str,
    fmt: Optional[FileFormat] = None,
    delimiter: Optional[str] = None,
) -> FileDecoder:
    """Open *path* for decoding. Fails fast on unknown extensions or missing files."""
    if not os.path.isfile(path):
        raise DecodeError(f"File not found: {path}")
    return FileDecoder(path, fmt=fmt, delimiter=delimiter)


def count_rows(
    path: str,
    fmt: Optional[FileFormat] = None,
    delimiter: Optional[str] = None,
) -> int:
    """Run a full pass over *path* and return its data-row count."""
    decoder = decode_file(path, fmt=fmt, delimiter=delimiter)
    for _ in decoder:
        pass
    return decoder.total_rows or 0
