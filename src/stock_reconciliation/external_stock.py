"""Extract an item code -> on-hand quantity map from an external stock export.

The export's layout is not fixed: the header may sit anywhere, may wrap over
two physical rows, and may repeat when the tool concatenates several report
sections in one sheet. Header cells are scored per role against the
vocabulary tables below; a row (or pair of rows) is a header block when both
a code column and a quantity column clear :data:`MIN_HEADER_SCORE` in
different columns. Data rows run until the next header block or the end of
the sheet, and quantities for a repeated code are summed.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from .comparison import looks_like_item_code, normalize_external_code
from .exceptions import ExternalStockParseError
from .spreadsheet import SheetGrid, load_first_sheet, normalize_header, parse_number_loose

logger = logging.getLogger(__name__)


class HeaderRole(str, enum.Enum):
    CODE = "code"
    QUANTITY = "quantity"
    UNIT = "unit"


# Scores keyed by the header with every space removed. Exact matches use
# EXACT_SCORES; otherwise the best CONTAINS_SCORES rule whose fragments all
# occur in the header applies.
EXACT_SCORES: dict[HeaderRole, dict[str, int]] = {
    HeaderRole.CODE: {
        "codicearticolo": 100,
        "codarticolo": 100,
        "codiceart": 95,
        "codart": 95,
        "itemcode": 90,
        "codice": 80,
        "cod": 70,
        "code": 60,
        "sku": 60,
    },
    HeaderRole.QUANTITY: {
        "giacenzaqta1": 100,
        "qtagiacenza1": 100,
        "giacfisc1": 95,
        "giacenzaqta": 90,
        "giacenza": 85,
        "qta1": 80,
        "quantita1": 80,
        "giacenza1": 80,
        "onhand": 75,
        "qta": 50,
        "quantita": 50,
        "qty": 45,
    },
    HeaderRole.UNIT: {
        "um1": 100,
        "um": 90,
        "udm": 90,
        "unitamisura": 80,
        "uom": 80,
    },
}

CONTAINS_SCORES: dict[HeaderRole, tuple[tuple[tuple[str, ...], int], ...]] = {
    HeaderRole.CODE: (
        (("cod", "art"), 85),
    ),
    HeaderRole.QUANTITY: (
        (("giacenza", "qta"), 90),
        (("giac", "1"), 75),
        (("giacenza",), 70),
        (("giac",), 60),
        (("qta", "1"), 60),
        (("quantita",), 45),
        (("qta",), 40),
    ),
    HeaderRole.UNIT: (),
}

MIN_HEADER_SCORE = 40

# Words that mark a row as a header row even when it has few distinct cells.
_HEADER_HINTS = ("cod", "art", "giacenza", "qta")
_MAX_SEEN_HEADERS = 30


def score_header(text: str, role: HeaderRole) -> int:
    """Score how strongly ``text`` labels a column of the given ``role``."""

    compact = normalize_header(text).replace(" ", "")
    if not compact:
        return 0
    exact = EXACT_SCORES[role].get(compact)
    if exact is not None:
        return exact
    best = 0
    for fragments, score in CONTAINS_SCORES[role]:
        if score > best and all(fragment in compact for fragment in fragments):
            best = score
    return best


@dataclass(frozen=True)
class HeaderBlock:
    """Position of one detected header; row indices are 0-based."""

    header_row: int
    row_span: int
    code_col: int
    quantity_col: int
    unit_col: int | None = None

    @property
    def first_data_row(self) -> int:
        return self.header_row + self.row_span


@dataclass
class ExternalStock:
    quantities: dict[str, float] = field(default_factory=dict)
    sections: list[HeaderBlock] = field(default_factory=list)
    seen_headers: list[str] = field(default_factory=list)


def _is_title_row(sheet: SheetGrid, row_index: int) -> bool:
    texts = [text for text in sheet.row_texts(row_index) if text]
    if not texts:
        return True
    joined = " ".join(texts).lower()
    distinct = {text.lower() for text in texts}
    return len(distinct) <= 2 and not any(hint in joined for hint in _HEADER_HINTS)


def _numeric_at(sheet: SheetGrid, row_index: int, cols: tuple[int, ...]) -> bool:
    """True when any of ``cols`` in the row holds a number, i.e. looks like data."""

    return any(parse_number_loose(sheet.text(row_index, col)) is not None for col in cols)


def _best_columns(headers: list[str]) -> tuple[int, int, int | None, int] | None:
    """Best ``(code_col, qty_col, unit_col, score)`` for a header row, if any."""

    code_scores = [score_header(text, HeaderRole.CODE) for text in headers]
    qty_scores = [score_header(text, HeaderRole.QUANTITY) for text in headers]

    best: tuple[int, int, int] | None = None
    for code_col, code_score in enumerate(code_scores):
        if code_score < MIN_HEADER_SCORE:
            continue
        for qty_col, qty_score in enumerate(qty_scores):
            if qty_col == code_col or qty_score < MIN_HEADER_SCORE:
                continue
            total = code_score + qty_score
            if best is None or total > best[2]:
                best = (code_col, qty_col, total)
    if best is None:
        return None

    code_col, qty_col, total = best
    unit_col = None
    unit_best = 0
    for col, text in enumerate(headers):
        if col in (code_col, qty_col):
            continue
        score = score_header(text, HeaderRole.UNIT)
        if score >= MIN_HEADER_SCORE and score > unit_best:
            unit_col, unit_best = col, score
    return code_col, qty_col, unit_col, total


def find_header_at(sheet: SheetGrid, row_index: int) -> HeaderBlock | None:
    """Return the header block starting at ``row_index``, if there is one.

    The row alone and the row joined cell by cell with the next one (a
    header wrapped over two lines) are both scored; the higher total wins
    and a tie goes to the single row. A candidate whose code or quantity
    cell holds a number is a data row, not a header.
    """

    if not 0 <= row_index < sheet.nrows or _is_title_row(sheet, row_index):
        return None

    best: tuple[int, HeaderBlock] | None = None
    single = _best_columns(sheet.row_texts(row_index))
    if single is not None and not _numeric_at(sheet, row_index, single[:2]):
        best = (single[3], HeaderBlock(row_index, 1, *single[:3]))

    next_index = row_index + 1
    if next_index < sheet.nrows:
        width = max(sheet.width(row_index), sheet.width(next_index))
        joined = [
            f"{sheet.text(row_index, col)} {sheet.text(next_index, col)}".strip()
            for col in range(width)
        ]
        pair = _best_columns(joined)
        if (
            pair is not None
            and (best is None or pair[3] > best[0])
            and not _numeric_at(sheet, row_index, pair[:2])
            and not _numeric_at(sheet, next_index, pair[:2])
        ):
            best = (pair[3], HeaderBlock(row_index, 2, *pair[:3]))

    return best[1] if best is not None else None


def _unit_factor(unit: str) -> int:
    if unit == "LT":
        return 1000
    if unit == "CL":
        return 10
    return 1


def scan_sheet(sheet: SheetGrid) -> ExternalStock:
    """Walk ``sheet`` section by section, summing quantities per code."""

    result = ExternalStock()
    seen: dict[str, None] = {}

    def remember(row_index: int) -> None:
        for text in sheet.row_texts(row_index):
            if text and len(text) <= 80 and any(ch.isalpha() for ch in text):
                seen.setdefault(text)

    row_index = 0
    while row_index < sheet.nrows:
        remember(row_index)
        remember(row_index + 1)
        block = find_header_at(sheet, row_index)
        if block is None:
            row_index += 1
            continue

        result.sections.append(block)
        data_row = block.first_data_row
        while data_row < sheet.nrows and find_header_at(sheet, data_row) is None:
            quantity = parse_number_loose(sheet.cell(data_row, block.quantity_col))
            code = normalize_external_code(sheet.text(data_row, block.code_col))
            if quantity is not None and looks_like_item_code(code):
                if block.unit_col is not None:
                    quantity *= _unit_factor(sheet.text(data_row, block.unit_col).upper())
                result.quantities[code] = result.quantities.get(code, 0) + quantity
            data_row += 1
        row_index = data_row

    result.seen_headers = list(seen)[:_MAX_SEEN_HEADERS]
    return result


def scan_external_stock(data: bytes) -> ExternalStock:
    """Decode ``data`` and scan its first populated worksheet.

    Raises :class:`ExternalStockParseError` when no code/quantity row could
    be extracted, listing the header-like texts that were seen.
    """

    sheet = load_first_sheet(data)
    result = scan_sheet(sheet)
    if not result.quantities:
        sample = " | ".join(result.seen_headers) or "-"
        raise ExternalStockParseError(
            "No rows extracted from the external stock file. "
            "Expected a CODE column and an on-hand QUANTITY (GIACENZA/QTA) column. "
            f"Headers seen (first {_MAX_SEEN_HEADERS}): {sample}",
            seen_headers=result.seen_headers,
        )
    logger.info(
        "Parsed external stock sheet %r: %d codes in %d section(s)",
        sheet.title,
        len(result.quantities),
        len(result.sections),
    )
    return result


def parse_external_stock(data: bytes) -> dict[str, float]:
    """Return the code -> quantity map of an external stock workbook."""

    return scan_external_stock(data).quantities


__all__ = [
    "CONTAINS_SCORES",
    "EXACT_SCORES",
    "ExternalStock",
    "HeaderBlock",
    "HeaderRole",
    "MIN_HEADER_SCORE",
    "find_header_at",
    "parse_external_stock",
    "scan_external_stock",
    "scan_sheet",
    "score_header",
]
