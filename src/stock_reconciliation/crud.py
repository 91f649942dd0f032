"""Store access for deposits, the ledger, the count log and the waste log.

Every call that reaches the database goes through :func:`retrying`, so
callers never decide retry policy themselves; they only pass ``settings``.
Write helpers commit their own work: a ledger upsert that fails halfway
leaves earlier chunks in place.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from datetime import date, datetime, timezone
from typing import Any, NamedTuple

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession

from .comparison import SnapshotRow
from .config import Settings, get_settings
from .models import (
    Deposit,
    DepositItem,
    InventorySubmission,
    Item,
    Location,
    WasteHeader,
    WasteRow,
)
from .retry import retrying
from .units import ItemMeta, to_count

logger = logging.getLogger(__name__)

_NEWEST_FIRST = (
    InventorySubmission.submission_date.desc(),
    InventorySubmission.created_at.desc(),
    InventorySubmission.id.desc(),
)


class LedgerWrite(NamedTuple):
    item_id: int
    imported_code: str | None
    stock_qty: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(values: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


async def create_location(session: AsyncSession, code: str, name: str) -> Location:
    location = Location(code=code, name=name)
    session.add(location)
    await session.flush()
    return location


@retrying("locations.get")
async def get_location(session: AsyncSession, location_id: int) -> Location:
    stmt = select(Location).where(Location.id == location_id)
    result = await session.execute(stmt)
    location = result.scalar_one_or_none()
    if location is None:
        raise NoResultFound(f"Location {location_id} not found")
    return location


@retrying("deposits.find")
async def _find_deposit_id(session: AsyncSession, location_id: int, code: str) -> int | None:
    stmt = select(Deposit.id).where(Deposit.location_id == location_id, Deposit.code == code)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


@retrying("deposits.insert")
async def _insert_deposit(session: AsyncSession, location_id: int, code: str, name: str) -> int:
    deposit = Deposit(location_id=location_id, code=code, name=name, is_active=True)
    session.add(deposit)
    await session.flush()
    deposit_id = deposit.id
    await session.commit()
    return deposit_id


async def find_technical_deposit(
    session: AsyncSession, location_id: int, settings: Settings | None = None
) -> int | None:
    """Return the id of the location's technical deposit, or ``None`` if it was never created."""

    settings = settings or get_settings()
    return await _find_deposit_id(
        session, location_id, settings.technical_deposit_code, settings=settings
    )


async def get_or_create_technical_deposit(
    session: AsyncSession, location_id: int, settings: Settings | None = None
) -> int:
    """Return the id of the location's technical deposit, creating it on first use.

    Must be called with no pending work on ``session``: a concurrent creator
    winning the unique ``(location_id, code)`` race is handled by rolling
    back and reading the row it committed.
    """

    settings = settings or get_settings()
    deposit_id = await find_technical_deposit(session, location_id, settings)
    if deposit_id is not None:
        return deposit_id

    try:
        deposit_id = await _insert_deposit(
            session,
            location_id,
            settings.technical_deposit_code,
            settings.technical_deposit_name,
            settings=settings,
        )
    except IntegrityError:
        await session.rollback()
        deposit_id = await find_technical_deposit(session, location_id, settings)
        if deposit_id is None:
            raise
        logger.info(
            "Technical deposit for location %s was created concurrently (id=%s)",
            location_id,
            deposit_id,
        )
        return deposit_id

    logger.info("Created technical deposit %s for location %s", deposit_id, location_id)
    return deposit_id


@retrying("items.fetch_meta")
async def _fetch_items(session: AsyncSession, item_ids: Sequence[int]) -> list[Item]:
    result = await session.execute(select(Item).where(Item.id.in_(item_ids)))
    return list(result.scalars())


async def fetch_item_meta(
    session: AsyncSession, item_ids: Iterable[int], settings: Settings | None = None
) -> dict[int, ItemMeta]:
    """Catalog attributes of ``item_ids``; unknown ids are simply absent."""

    settings = settings or get_settings()
    ids = sorted(set(item_ids))
    metas: dict[int, ItemMeta] = {}
    for chunk in _chunks(ids, settings.ledger_chunk_size):
        for item in await _fetch_items(session, chunk, settings=settings):
            metas[item.id] = ItemMeta.from_record(item)
    return metas


def _insert_for(session: AsyncSession) -> Any:
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Ledger upsert is not supported on {dialect}")


@retrying("deposit_items.upsert")
async def _upsert_ledger_chunk(
    session: AsyncSession, deposit_id: int, chunk: Sequence[LedgerWrite]
) -> None:
    now = _utcnow()
    values = [
        {
            "deposit_id": deposit_id,
            "item_id": entry.item_id,
            "imported_code": entry.imported_code or None,
            "stock_qty": entry.stock_qty,
            "is_active": True,
            "created_at": now,
            "updated_at": now,
        }
        for entry in chunk
    ]
    stmt = _insert_for(session)(DepositItem).values(values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[DepositItem.deposit_id, DepositItem.item_id],
        set_={
            "imported_code": stmt.excluded.imported_code,
            "stock_qty": stmt.excluded.stock_qty,
            "is_active": stmt.excluded.is_active,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await session.execute(stmt)
    await session.commit()


async def upsert_ledger_entries(
    session: AsyncSession,
    deposit_id: int,
    entries: Sequence[LedgerWrite],
    settings: Settings | None = None,
) -> int:
    """Upsert ``entries`` keyed by ``(deposit_id, item_id)``, one commit per chunk."""

    settings = settings or get_settings()
    written = 0
    for chunk in _chunks(list(entries), settings.ledger_chunk_size):
        await _upsert_ledger_chunk(session, deposit_id, chunk, settings=settings)
        written += len(chunk)
    return written


@retrying("inventory_submissions.page")
async def fetch_history_page(
    session: AsyncSession, location_id: int, offset: int, limit: int
) -> list[InventorySubmission]:
    stmt = (
        select(InventorySubmission)
        .where(InventorySubmission.location_id == location_id)
        .order_by(*_NEWEST_FIRST)
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars())


async def iter_history(
    session: AsyncSession,
    location_id: int,
    page_size: int,
    settings: Settings | None = None,
) -> AsyncIterator[list[InventorySubmission]]:
    """Yield the location's submissions newest first, one page at a time."""

    offset = 0
    while True:
        page = await fetch_history_page(
            session, location_id, offset, page_size, settings=settings
        )
        if page:
            yield page
        if len(page) < page_size:
            return
        offset += len(page)


@retrying("deposit_items.item_ids")
async def ledger_item_ids(session: AsyncSession, deposit_id: int) -> set[int]:
    result = await session.execute(
        select(DepositItem.item_id).where(DepositItem.deposit_id == deposit_id)
    )
    return set(result.scalars())


@retrying("deposit_items.fetch")
async def _fetch_ledger_rows(
    session: AsyncSession, deposit_id: int, item_ids: Sequence[int]
) -> dict[int, int]:
    result = await session.execute(
        select(DepositItem.item_id, DepositItem.stock_qty).where(
            DepositItem.deposit_id == deposit_id, DepositItem.item_id.in_(item_ids)
        )
    )
    return {row.item_id: row.stock_qty for row in result}


async def fetch_ledger_quantities(
    session: AsyncSession,
    deposit_id: int,
    item_ids: Iterable[int],
    settings: Settings | None = None,
) -> dict[int, int]:
    settings = settings or get_settings()
    quantities: dict[int, int] = {}
    for chunk in _chunks(sorted(set(item_ids)), settings.ledger_chunk_size):
        quantities.update(
            await _fetch_ledger_rows(session, deposit_id, chunk, settings=settings)
        )
    return quantities


@retrying("deposit_items.update")
async def set_ledger_quantities(
    session: AsyncSession, deposit_id: int, quantities: Mapping[int, int]
) -> None:
    now = _utcnow()
    for item_id, stock_qty in quantities.items():
        await session.execute(
            update(DepositItem)
            .where(DepositItem.deposit_id == deposit_id, DepositItem.item_id == item_id)
            .values(stock_qty=max(0, stock_qty), updated_at=now)
        )
    await session.commit()


@retrying("inventory_submissions.insert")
async def insert_submissions(
    session: AsyncSession,
    location_id: int,
    submission_date: date,
    rows: Sequence[Mapping[str, Any]],
    operator_name: str | None = None,
) -> list[InventorySubmission]:
    """Append ``rows`` to the submission log and commit."""

    submissions = [
        InventorySubmission(
            location_id=location_id,
            item_id=int(row["item_id"]),
            submission_date=submission_date,
            qty=to_count(row.get("qty")),
            qty_open_grams=to_count(row.get("qty_open_grams")),
            qty_total_ml=to_count(row.get("qty_total_ml")),
            operator_name=operator_name,
        )
        for row in rows
    ]
    session.add_all(submissions)
    await session.commit()
    return submissions


@retrying("waste.insert")
async def insert_waste(
    session: AsyncSession,
    location_id: int,
    waste_date: date,
    rows: Sequence[Mapping[str, Any]],
    operator_name: str | None = None,
) -> int:
    """Record a write-off and its rows in one commit; returns the header id."""

    header = WasteHeader(
        location_id=location_id, waste_date=waste_date, operator_name=operator_name
    )
    header.rows = [
        WasteRow(
            item_id=int(row["item_id"]),
            qty=to_count(row.get("qty")),
            qty_open_grams=to_count(row.get("qty_open_grams")),
            qty_total_ml=to_count(row.get("qty_total_ml")),
        )
        for row in rows
    ]
    session.add(header)
    await session.flush()
    header_id = header.id
    await session.commit()
    return header_id


@retrying("deposit_items.list")
async def list_ledger(session: AsyncSession, deposit_id: int) -> list[tuple[DepositItem, Item]]:
    stmt = (
        select(DepositItem, Item)
        .join(Item, DepositItem.item_id == Item.id)
        .where(DepositItem.deposit_id == deposit_id)
        .order_by(Item.code)
    )
    result = await session.execute(stmt)
    return [(entry, item) for entry, item in result.all()]


@retrying("inventory_submissions.snapshot")
async def latest_snapshot(
    session: AsyncSession, location_id: int, as_of: date | None = None
) -> list[SnapshotRow]:
    """Most recent submission per item at ``location_id``, on or before ``as_of``.

    The per-item pick happens in the database, so only one row per item is
    loaded however long the history is.
    """

    ranked = select(
        InventorySubmission.id.label("submission_id"),
        func.row_number()
        .over(partition_by=InventorySubmission.item_id, order_by=_NEWEST_FIRST)
        .label("recency"),
    ).where(InventorySubmission.location_id == location_id)
    if as_of is not None:
        ranked = ranked.where(InventorySubmission.submission_date <= as_of)
    ranked = ranked.subquery()

    stmt = (
        select(InventorySubmission, Item)
        .join(ranked, InventorySubmission.id == ranked.c.submission_id)
        .join(Item, InventorySubmission.item_id == Item.id)
        .where(ranked.c.recency == 1)
        .order_by(Item.code)
    )
    result = await session.execute(stmt)
    return [
        SnapshotRow(
            item_id=item.id,
            code=item.code,
            description=item.description or "",
            qty=submission.qty,
            qty_open_grams=submission.qty_open_grams,
            qty_total_ml=submission.qty_total_ml,
            unit_price=item.unit_price,
            volume_per_unit=item.volume_per_unit,
            weight_per_unit=item.weight_per_unit,
            unit_label=item.unit_label,
        )
        for submission, item in result.all()
    ]


__all__ = [
    "LedgerWrite",
    "create_location",
    "fetch_history_page",
    "fetch_item_meta",
    "fetch_ledger_quantities",
    "find_technical_deposit",
    "get_location",
    "get_or_create_technical_deposit",
    "insert_submissions",
    "insert_waste",
    "iter_history",
    "latest_snapshot",
    "ledger_item_ids",
    "list_ledger",
    "set_ledger_quantities",
    "upsert_ledger_entries",
]
