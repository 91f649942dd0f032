"""Decode uploaded workbooks into a plain row/column grid.

``.xlsx`` files go through openpyxl, legacy ``.xls`` through xlrd; the
format is sniffed from the leading bytes rather than trusted from a
filename. Only the first worksheet holding any data is returned.
"""
from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime, time
from io import BytesIO
from typing import Any

import openpyxl
import xlrd

from .exceptions import ExternalStockParseError
from .units import to_float_or_none

_XLSX_MAGIC = b"PK\x03\x04"
_XLS_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"

_THOUSANDS_GROUPED = re.compile(r"^-?\d{1,3}(\.\d{3})+$")


class SheetGrid:
    """Rectangular view over one worksheet; indices are 0-based."""

    def __init__(self, title: str, rows: list[list[Any]]) -> None:
        self.title = title
        self.rows = rows

    @property
    def nrows(self) -> int:
        return len(self.rows)

    def width(self, row_index: int) -> int:
        if not 0 <= row_index < len(self.rows):
            return 0
        return len(self.rows[row_index])

    def cell(self, row_index: int, col_index: int) -> Any:
        if not 0 <= row_index < len(self.rows):
            return None
        row = self.rows[row_index]
        if not 0 <= col_index < len(row):
            return None
        return row[col_index]

    def text(self, row_index: int, col_index: int) -> str:
        return cell_text(self.cell(row_index, col_index)).strip()

    def row_texts(self, row_index: int) -> list[str]:
        return [self.text(row_index, col) for col in range(self.width(row_index))]


def _trim(values: list[Any]) -> list[Any]:
    end = len(values)
    while end and cell_text(values[end - 1]).strip() == "":
        end -= 1
    return values[:end]


def cell_text(value: Any) -> str:
    """Render a decoded cell as text the way it reads on screen."""

    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    # rich text runs and other wrappers stringify to their plain content
    return str(value)


def parse_number_loose(value: Any) -> float | None:
    """Parse a quantity cell written with Italian or plain number formatting.

    ``1.234,5`` and ``1234,5`` read as 1234.5; ``1.234`` (dot grouping only)
    reads as 1234; ``12.5`` stays 12.5. Returns ``None`` for non-numbers.
    """

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return to_float_or_none(value)
    text = "".join(cell_text(value).split())
    if not text:
        return None
    if "," in text:
        text = text.replace(".", "").replace(",", ".", 1)
    elif _THOUSANDS_GROUPED.match(text):
        text = text.replace(".", "")
    try:
        return to_float_or_none(float(text))
    except ValueError:
        return None


def normalize_header(value: Any) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""

    text = unicodedata.normalize("NFKD", cell_text(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = re.sub(r"[^\w\s]|_", "", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def _load_xlsx(data: bytes) -> list[SheetGrid]:
    workbook = openpyxl.load_workbook(BytesIO(data), read_only=True, data_only=True)
    try:
        sheets = []
        for worksheet in workbook.worksheets:
            rows = [_trim(list(values)) for values in worksheet.iter_rows(values_only=True)]
            sheets.append(SheetGrid(worksheet.title, rows))
        return sheets
    finally:
        workbook.close()


def _xls_value(cell: Any) -> Any:
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return None
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return bool(cell.value)
    return cell.value


def _load_xls(data: bytes) -> list[SheetGrid]:
    workbook = xlrd.open_workbook(file_contents=data)
    sheets = []
    for sheet in workbook.sheets():
        rows = [
            _trim([_xls_value(cell) for cell in sheet.row(row_index)])
            for row_index in range(sheet.nrows)
        ]
        sheets.append(SheetGrid(sheet.name, rows))
    return sheets


def load_first_sheet(data: bytes) -> SheetGrid:
    """Return the first worksheet with at least one non-empty row."""

    if not data:
        raise ExternalStockParseError("Empty file")
    try:
        if data.startswith(_XLSX_MAGIC):
            sheets = _load_xlsx(data)
        elif data.startswith(_XLS_MAGIC):
            sheets = _load_xls(data)
        else:
            raise ExternalStockParseError("Unsupported file: expected an .xlsx or .xls workbook")
    except ExternalStockParseError:
        raise
    except Exception as exc:
        raise ExternalStockParseError(f"Unreadable workbook: {exc}") from exc

    for sheet in sheets:
        if any(sheet.rows):
            return sheet
    raise ExternalStockParseError("Workbook has no worksheet with data")


__all__ = [
    "SheetGrid",
    "cell_text",
    "load_first_sheet",
    "normalize_header",
    "parse_number_loose",
]
