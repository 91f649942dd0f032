"""Stock reconciliation: count log projection, external stock parsing and comparison."""
from __future__ import annotations

from .comparison import ComparisonLine, build_comparison, summarize_comparison
from .external_stock import parse_external_stock
from .ledger import apply_waste, backfill_ledger, rebuild_ledger, record_submission, sync_ledger
from .units import ItemMeta, MeasurementKind, canonical_quantity, measurement_kind

__all__ = [
    "ComparisonLine",
    "ItemMeta",
    "MeasurementKind",
    "apply_waste",
    "backfill_ledger",
    "build_comparison",
    "canonical_quantity",
    "measurement_kind",
    "parse_external_stock",
    "rebuild_ledger",
    "record_submission",
    "summarize_comparison",
    "sync_ledger",
]
