"""Pydantic schemas used by the API and returned by the ledger operations."""
from __future__ import annotations

from datetime import date
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field

# Raw counts are coerced by the canonicalizer, so loose input is accepted here.
RawCount = Union[int, float, str, None]


class SubmissionRowIn(BaseModel):
    item_id: int
    qty: RawCount = Field(0, description="Closed/discrete units.")
    qty_open_grams: RawCount = Field(0, description="Loose grams, weight items only.")
    qty_total_ml: RawCount = Field(0, description="Total millilitres, volume items only.")


class SubmissionCreate(BaseModel):
    submission_date: date
    operator_name: str | None = Field(None, max_length=80)
    rows: list[SubmissionRowIn]


class WasteCreate(BaseModel):
    waste_date: date = Field(default_factory=date.today)
    operator_name: str | None = Field(None, max_length=80)
    rows: list[SubmissionRowIn]


class SyncResult(BaseModel):
    updated_count: int = 0
    deposit_id: int | None = None


class SubmissionResult(BaseModel):
    saved: int
    sync: SyncResult | None = None
    sync_warning: str | None = Field(
        None, description="Set when the counts were saved but the ledger could not be updated."
    )


class RebuildRequest(BaseModel):
    max_items: int | None = Field(None, gt=0)
    max_rows_scanned: int | None = Field(None, gt=0)


class RebuildResult(BaseModel):
    rebuilt_count: int
    scanned_rows: int
    deposit_id: int


class BackfillRequest(BaseModel):
    max_missing: int | None = Field(None, gt=0)
    max_rows_scanned: int | None = Field(None, gt=0)


class BackfillResult(BaseModel):
    filled_count: int
    scanned_rows: int
    deposit_id: int


class WasteResult(BaseModel):
    touched: int
    deposit_id: int
    header_id: int = Field(description="Id of the recorded waste log entry.")


class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: int
    code: str | None
    stock_qty: int
    measurement_kind: Literal["piece", "weight", "volume"]
    is_active: bool


class ComparisonLineOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    description: str
    qty_internal: float
    qty_external: float
    diff: float
    unit_price: float | None = None
    ml_per_unit: float | None = None
    found_internal: bool
    found_external: bool


class ComparisonTotalsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    pieces_internal: float
    pieces_external: float
    pieces_diff: float
    liters_internal: float
    liters_external: float
    liters_diff: float
    value_diff: float
    missing_internal: int
    missing_external: int


class HeaderBlockOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    header_row: int
    row_span: int
    code_col: int
    quantity_col: int
    unit_col: int | None = None


class ComparisonOut(BaseModel):
    lines: list[ComparisonLineOut]
    totals: ComparisonTotalsOut
    sections: list[HeaderBlockOut]


class HealthStatus(BaseModel):
    status: Literal["ok"] = "ok"
    environment: str


__all__ = [
    "BackfillRequest",
    "BackfillResult",
    "ComparisonLineOut",
    "ComparisonOut",
    "ComparisonTotalsOut",
    "HeaderBlockOut",
    "HealthStatus",
    "LedgerEntryOut",
    "RebuildRequest",
    "RebuildResult",
    "SubmissionCreate",
    "SubmissionResult",
    "SubmissionRowIn",
    "SyncResult",
    "WasteCreate",
    "WasteResult",
]
