"""Merge the latest internal counts with an external stock map.

Both sides are keyed by the same normalized code. ``diff`` is always
``internal - external``, so a negative value is a shortfall against the
external file.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .units import to_float_or_none

_CODE_CHARS = re.compile(r"^[A-Z0-9]+$")


@dataclass(frozen=True)
class SnapshotRow:
    """Most recent submission of one item, joined with its catalog data."""

    item_id: int
    code: str
    description: str = ""
    qty: int = 0
    qty_open_grams: int = 0
    qty_total_ml: int = 0
    unit_price: float | None = None
    volume_per_unit: float | None = None
    weight_per_unit: float | None = None
    unit_label: str | None = None


@dataclass(frozen=True)
class ComparisonLine:
    code: str
    description: str
    qty_internal: float
    qty_external: float
    diff: float
    unit_price: float | None
    ml_per_unit: float | None
    found_internal: bool
    found_external: bool

    @property
    def is_volume(self) -> bool:
        return self.ml_per_unit is not None


@dataclass(frozen=True)
class ComparisonTotals:
    pieces_internal: float = 0
    pieces_external: float = 0
    pieces_diff: float = 0
    liters_internal: float = 0
    liters_external: float = 0
    liters_diff: float = 0
    value_diff: float = 0
    missing_internal: int = 0
    missing_external: int = 0


def normalize_external_code(value: Any) -> str:
    """First whitespace-separated token, uppercased."""

    tokens = str(value if value is not None else "").split()
    return tokens[0].upper() if tokens else ""


def looks_like_item_code(code: str) -> bool:
    """Reject blanks, labels, totals and single-character noise."""

    if not code or len(code) < 2 or len(code) > 30:
        return False
    if ":" in code or code.startswith("TOTALE"):
        return False
    if not any(ch.isdigit() for ch in code):
        return False
    return bool(_CODE_CHARS.match(code))


def _positive_or_none(value: Any) -> float | None:
    number = to_float_or_none(value)
    if number is None or number <= 0:
        return None
    return number


def build_comparison(
    internal_rows: Iterable[SnapshotRow],
    external_map: Mapping[str, float],
    *,
    only_internal: bool = False,
    only_external_matches: bool = False,
) -> list[ComparisonLine]:
    """Return one :class:`ComparisonLine` per code, sorted by code.

    ``only_internal`` drops codes present only in ``external_map``.
    ``only_external_matches`` keeps only internal rows whose code the
    external file also lists, for comparing against a partial export.
    """

    external: dict[str, float] = {}
    for raw_code, quantity in external_map.items():
        code = normalize_external_code(raw_code)
        if not looks_like_item_code(code):
            continue
        external[code] = external.get(code, 0) + (to_float_or_none(quantity) or 0)

    internal: dict[str, SnapshotRow] = {}
    for row in internal_rows:
        code = normalize_external_code(row.code)
        if looks_like_item_code(code):
            internal[code] = row

    if only_external_matches:
        internal = {code: row for code, row in internal.items() if code in external}

    codes = set(internal)
    if not only_internal:
        codes.update(external)

    lines: list[ComparisonLine] = []
    for code in sorted(codes):
        row = internal.get(code)
        ml_per_unit = _positive_or_none(row.volume_per_unit) if row else None
        if row is None:
            qty_internal: float = 0
        elif ml_per_unit is not None:
            qty_internal = row.qty_total_ml
        else:
            qty_internal = row.qty
        qty_external = external.get(code, 0)
        lines.append(
            ComparisonLine(
                code=code,
                description=row.description if row else "",
                qty_internal=qty_internal,
                qty_external=qty_external,
                diff=qty_internal - qty_external,
                unit_price=to_float_or_none(row.unit_price) if row else None,
                ml_per_unit=ml_per_unit,
                found_internal=row is not None,
                found_external=code in external,
            )
        )
    return lines


def summarize_comparison(lines: Iterable[ComparisonLine]) -> ComparisonTotals:
    """Aggregate piece, litre and currency differences over ``lines``."""

    totals = dict.fromkeys(
        (
            "pieces_internal",
            "pieces_external",
            "pieces_diff",
            "liters_internal",
            "liters_external",
            "liters_diff",
            "value_diff",
        ),
        0.0,
    )
    missing_internal = missing_external = 0
    for line in lines:
        if line.is_volume:
            totals["liters_internal"] += line.qty_internal / 1000
            totals["liters_external"] += line.qty_external / 1000
            totals["liters_diff"] += line.diff / 1000
            if line.unit_price is not None:
                totals["value_diff"] += line.diff / line.ml_per_unit * line.unit_price
        else:
            totals["pieces_internal"] += line.qty_internal
            totals["pieces_external"] += line.qty_external
            totals["pieces_diff"] += line.diff
            if line.unit_price is not None:
                totals["value_diff"] += line.diff * line.unit_price
        missing_internal += not line.found_internal
        missing_external += not line.found_external
    return ComparisonTotals(
        **totals,
        missing_internal=missing_internal,
        missing_external=missing_external,
    )


__all__ = [
    "ComparisonLine",
    "ComparisonTotals",
    "SnapshotRow",
    "build_comparison",
    "looks_like_item_code",
    "normalize_external_code",
    "summarize_comparison",
]
