"""Database models for the stock ledger and the count submission log."""
from __future__ import annotations

from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin providing created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class Location(Base, TimestampMixin):
    """A point of sale."""

    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    deposits: Mapped[list["Deposit"]] = relationship(back_populates="location")


class Item(Base, TimestampMixin):
    """Stock keeping unit with optional volume/weight conversion attributes."""

    __tablename__ = "items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    unit_label: Mapped[str | None] = mapped_column(String(16))
    volume_per_unit: Mapped[float | None] = mapped_column(Float)
    weight_per_unit: Mapped[float | None] = mapped_column(Float)
    unit_price: Mapped[float | None] = mapped_column(Numeric(12, 4, asdecimal=False))


class Deposit(Base, TimestampMixin):
    """Warehouse record; each location owns one technical deposit for its ledger."""

    __tablename__ = "deposits"
    __table_args__ = (
        UniqueConstraint("location_id", "code", name="uq_deposits_location_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id", ondelete="CASCADE"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    location: Mapped[Location] = relationship(back_populates="deposits")
    entries: Mapped[list["DepositItem"]] = relationship(back_populates="deposit")


class DepositItem(Base, TimestampMixin):
    """Materialized current stock of one item inside a deposit."""

    __tablename__ = "deposit_items"
    __table_args__ = (
        UniqueConstraint("deposit_id", "item_id", name="uq_deposit_items_deposit_item"),
        CheckConstraint("stock_qty >= 0", name="ck_deposit_items_stock_qty_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    deposit_id: Mapped[int] = mapped_column(
        ForeignKey("deposits.id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    imported_code: Mapped[str | None] = mapped_column(String(64))
    stock_qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    deposit: Mapped[Deposit] = relationship(back_populates="entries")
    item: Mapped[Item] = relationship()


class InventorySubmission(Base):
    """One physical count. Rows are append-only; corrections are new rows."""

    __tablename__ = "inventory_submissions"
    __table_args__ = (
        CheckConstraint("qty >= 0", name="ck_inventory_submissions_qty_positive"),
        CheckConstraint("qty_open_grams >= 0", name="ck_inventory_submissions_grams_positive"),
        CheckConstraint("qty_total_ml >= 0", name="ck_inventory_submissions_ml_positive"),
        Index(
            "ix_inventory_submissions_location_recency",
            "location_id",
            "submission_date",
            "created_at",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    submission_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_open_grams: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_total_ml: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    operator_name: Mapped[str | None] = mapped_column(String(80))

    item: Mapped[Item] = relationship()


class WasteHeader(Base):
    """One write-off event at a location; its rows are never edited."""

    __tablename__ = "waste_headers"
    __table_args__ = (
        Index("ix_waste_headers_location_date", "location_id", "waste_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    location_id: Mapped[int] = mapped_column(
        ForeignKey("locations.id", ondelete="CASCADE"), nullable=False
    )
    waste_date: Mapped[date] = mapped_column(Date, nullable=False)
    operator_name: Mapped[str | None] = mapped_column(String(80))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    rows: Mapped[list["WasteRow"]] = relationship(back_populates="header")


class WasteRow(Base):
    """Written-off quantity of one item, in the same fields as a count."""

    __tablename__ = "waste_rows"
    __table_args__ = (
        CheckConstraint("qty >= 0", name="ck_waste_rows_qty_positive"),
        CheckConstraint("qty_open_grams >= 0", name="ck_waste_rows_grams_positive"),
        CheckConstraint("qty_total_ml >= 0", name="ck_waste_rows_ml_positive"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    header_id: Mapped[int] = mapped_column(
        ForeignKey("waste_headers.id", ondelete="CASCADE"), nullable=False
    )
    item_id: Mapped[int] = mapped_column(ForeignKey("items.id", ondelete="CASCADE"), nullable=False)
    qty: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_open_grams: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    qty_total_ml: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    header: Mapped[WasteHeader] = relationship(back_populates="rows")


__all__ = [
    "Deposit",
    "DepositItem",
    "InventorySubmission",
    "Item",
    "Location",
    "TimestampMixin",
    "WasteHeader",
    "WasteRow",
]
