"""Measurement kinds and quantity canonicalization.

Every item is stocked in exactly one unit system:

* volume items (``volume_per_unit > 0``) are counted in total millilitres,
* weight items (unit label ``KG`` and ``weight_per_unit > 0``) in grams,
* everything else in discrete pieces.

The checks run in that order, so an item carrying both a volume and a
``KG`` label is a volume item. Nothing in this module touches the store.
"""
from __future__ import annotations

import enum
import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any


class MeasurementKind(str, enum.Enum):
    PIECE = "piece"
    WEIGHT = "weight"
    VOLUME = "volume"


@dataclass(frozen=True)
class ItemMeta:
    """Conversion attributes of an item as read from the catalog."""

    id: int
    code: str = ""
    volume_per_unit: float | None = None
    weight_per_unit: float | None = None
    unit_label: str | None = None

    @classmethod
    def from_record(cls, record: Any) -> "ItemMeta":
        """Build from an ORM ``Item`` or a mapping with the same keys."""

        return cls(
            id=int(_field(record, "id")),
            code=normalize_item_code(_field(record, "code")),
            volume_per_unit=to_float_or_none(_field(record, "volume_per_unit")),
            weight_per_unit=to_float_or_none(_field(record, "weight_per_unit")),
            unit_label=(str(_field(record, "unit_label") or "").strip() or None),
        )


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def to_float_or_none(value: Any) -> float | None:
    """Return ``value`` as a finite float, or ``None`` when it is not one."""

    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return number


def to_count(value: Any) -> int:
    """Coerce arbitrary input to a non-negative integer, defaulting to ``0``."""

    number = to_float_or_none(value)
    if number is None:
        return 0
    return max(0, math.trunc(number))


def normalize_unit_label(value: Any) -> str:
    return str(value or "").strip().upper()


def normalize_item_code(value: Any) -> str:
    """Strip every kind of whitespace (including NBSP) from a catalog code."""

    return "".join(str(value or "").split())


def measurement_kind(meta: ItemMeta) -> MeasurementKind:
    volume = meta.volume_per_unit
    if volume is not None and volume > 0:
        return MeasurementKind.VOLUME
    weight = meta.weight_per_unit
    if normalize_unit_label(meta.unit_label) == "KG" and weight is not None and weight > 0:
        return MeasurementKind.WEIGHT
    return MeasurementKind.PIECE


def grams_per_unit(weight_per_unit: float) -> int:
    # half-up, so 0.0325 kg is 33 g rather than banker's 32
    return math.floor(weight_per_unit * 1000 + 0.5)


def canonical_quantity(row: Any, meta: ItemMeta) -> int:
    """Return the single stock quantity of ``row`` in the unit implied by ``meta``.

    ``row`` may be an ORM submission, a pydantic model or a plain mapping
    exposing ``qty``, ``qty_open_grams`` and ``qty_total_ml``. Malformed or
    missing numbers count as zero; the result is never negative.
    """

    kind = measurement_kind(meta)
    if kind is MeasurementKind.VOLUME:
        return to_count(_field(row, "qty_total_ml"))
    if kind is MeasurementKind.WEIGHT:
        pieces = to_count(_field(row, "qty"))
        open_grams = to_count(_field(row, "qty_open_grams"))
        return max(0, grams_per_unit(meta.weight_per_unit or 0) * pieces + open_grams)
    return to_count(_field(row, "qty"))


__all__ = [
    "ItemMeta",
    "MeasurementKind",
    "canonical_quantity",
    "grams_per_unit",
    "measurement_kind",
    "normalize_item_code",
    "normalize_unit_label",
    "to_count",
    "to_float_or_none",
]
