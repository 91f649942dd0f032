"""Project the append-only submission log onto the per-location stock ledger.

The log is the source of truth and the ledger a derived cache. All writes
are upserts keyed by ``(deposit_id, item_id)``, so re-running any of these
operations with the same inputs leaves the ledger unchanged.

Only strictly positive canonical quantities are written. A count of zero
therefore never clears an existing ledger row; product has not yet decided
whether a real stock-out should be written as an explicit zero.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import date
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from . import crud
from .config import Settings, get_settings
from .exceptions import PreconditionError
from .schemas import BackfillResult, RebuildResult, SubmissionResult, SyncResult, WasteResult
from .units import ItemMeta, canonical_quantity, to_count

logger = logging.getLogger(__name__)


def _row_value(row: Any, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def _int_field(row: Any, name: str) -> int | None:
    value = _row_value(row, name)
    if value is None or isinstance(value, bool) or str(value).strip() == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _item_id(row: Any) -> int | None:
    return _int_field(row, "item_id")


def _require_location(location_id: int | None) -> int:
    if location_id is None or str(location_id).strip() == "":
        raise PreconditionError("location_id is required")
    return int(location_id)


def _clean_rows(rows: Iterable[Any]) -> list[dict[str, int]]:
    """Rows with a usable item id, their counts coerced to non-negative ints."""

    clean = []
    for row in rows:
        item_id = _item_id(row)
        if item_id is None:
            continue
        clean.append(
            {
                "item_id": item_id,
                "qty": to_count(_row_value(row, "qty")),
                "qty_open_grams": to_count(_row_value(row, "qty_open_grams")),
                "qty_total_ml": to_count(_row_value(row, "qty_total_ml")),
            }
        )
    return clean


def index_metas(records: Iterable[Any]) -> dict[int, ItemMeta]:
    """Key catalog records by id; records without a usable id are skipped."""

    metas: dict[int, ItemMeta] = {}
    for record in records:
        if isinstance(record, ItemMeta):
            metas[record.id] = record
        elif _int_field(record, "id") is not None:
            meta = ItemMeta.from_record(record)
            metas[meta.id] = meta
    return metas


def latest_by_item(rows: Iterable[Any]) -> dict[int, Any]:
    """Key ``rows`` by item id; a later row for the same item replaces an earlier one."""

    latest: dict[int, Any] = {}
    for row in rows:
        item_id = _item_id(row)
        if item_id is not None:
            latest[item_id] = row
    return latest


def project_rows(
    rows_by_item: Mapping[int, Any], metas: Mapping[int, ItemMeta]
) -> list[crud.LedgerWrite]:
    """Canonicalize each row; items without metadata or with zero stock are left out."""

    writes = []
    for item_id, row in rows_by_item.items():
        meta = metas.get(item_id)
        if meta is None:
            continue
        stock_qty = canonical_quantity(row, meta)
        if stock_qty <= 0:
            continue
        writes.append(crud.LedgerWrite(item_id, meta.code or None, stock_qty))
    return writes


async def sync_ledger(
    session: AsyncSession,
    location_id: int,
    submitted_rows: Sequence[Any],
    items_meta: Iterable[Any],
    settings: Settings | None = None,
) -> SyncResult:
    """Apply a just-saved batch of counts to the location's ledger.

    Only items in ``submitted_rows`` are touched; ``items_meta`` holds the
    catalog attributes of those items (``ItemMeta``, ORM items or mappings).
    """

    settings = settings or get_settings()
    location_id = _require_location(location_id)
    if not submitted_rows:
        return SyncResult(updated_count=0, deposit_id=None)

    deposit_id = await crud.get_or_create_technical_deposit(session, location_id, settings)
    writes = project_rows(latest_by_item(submitted_rows), index_metas(items_meta))
    updated = await crud.upsert_ledger_entries(session, deposit_id, writes, settings)
    logger.debug("Synced %d ledger rows for location %s", updated, location_id)
    return SyncResult(updated_count=updated, deposit_id=deposit_id)


async def _scan_latest(
    session: AsyncSession,
    location_id: int,
    settings: Settings,
    *,
    limit: int,
    max_rows_scanned: int,
    skip: Callable[[int], bool] = lambda item_id: False,
) -> tuple[dict[int, Any], int]:
    """Walk history newest first, keeping the first row seen per item.

    Stops after ``limit`` items are kept or ``max_rows_scanned`` rows read.
    """

    found: dict[int, Any] = {}
    scanned = 0
    page_size = min(settings.history_page_size, max_rows_scanned)
    async for page in crud.iter_history(session, location_id, page_size, settings):
        for row in page:
            if scanned >= max_rows_scanned or len(found) >= limit:
                return found, scanned
            scanned += 1
            if row.item_id in found or skip(row.item_id):
                continue
            found[row.item_id] = row
        if scanned >= max_rows_scanned or len(found) >= limit:
            break
    return found, scanned


async def rebuild_ledger(
    session: AsyncSession,
    location_id: int,
    max_items: int | None = None,
    max_rows_scanned: int | None = None,
    settings: Settings | None = None,
) -> RebuildResult:
    """Recompute ledger rows from the full submission history.

    Additive within the scan window: rows for items not reached by the scan
    are left as they are.
    """

    settings = settings or get_settings()
    location_id = _require_location(location_id)
    max_items = max_items or settings.rebuild_max_items
    max_rows_scanned = max_rows_scanned or settings.rebuild_max_rows_scanned

    deposit_id = await crud.get_or_create_technical_deposit(session, location_id, settings)
    latest, scanned = await _scan_latest(
        session, location_id, settings, limit=max_items, max_rows_scanned=max_rows_scanned
    )
    metas = await crud.fetch_item_meta(session, list(latest), settings)
    rebuilt = await crud.upsert_ledger_entries(
        session, deposit_id, project_rows(latest, metas), settings
    )
    logger.info(
        "Rebuilt ledger for location %s: %d rows written, %d items found, %d history rows scanned",
        location_id,
        rebuilt,
        len(latest),
        scanned,
    )
    return RebuildResult(rebuilt_count=rebuilt, scanned_rows=scanned, deposit_id=deposit_id)


async def backfill_ledger(
    session: AsyncSession,
    location_id: int,
    max_missing: int | None = None,
    max_rows_scanned: int | None = None,
    settings: Settings | None = None,
) -> BackfillResult:
    """Add ledger rows for items in history that the ledger does not hold yet.

    Existing ledger rows are never touched.
    """

    settings = settings or get_settings()
    location_id = _require_location(location_id)
    max_missing = max_missing or settings.backfill_max_missing
    max_rows_scanned = max_rows_scanned or settings.rebuild_max_rows_scanned

    deposit_id = await crud.get_or_create_technical_deposit(session, location_id, settings)
    existing = await crud.ledger_item_ids(session, deposit_id, settings=settings)
    missing, scanned = await _scan_latest(
        session,
        location_id,
        settings,
        limit=max_missing,
        max_rows_scanned=max_rows_scanned,
        skip=existing.__contains__,
    )
    metas = await crud.fetch_item_meta(session, list(missing), settings)
    filled = await crud.upsert_ledger_entries(
        session, deposit_id, project_rows(missing, metas), settings
    )
    logger.info(
        "Backfilled ledger for location %s: %d rows added (%d already present), %d rows scanned",
        location_id,
        filled,
        len(existing),
        scanned,
    )
    return BackfillResult(filled_count=filled, scanned_rows=scanned, deposit_id=deposit_id)


async def apply_waste(
    session: AsyncSession,
    location_id: int,
    rows: Sequence[Any],
    waste_date: date | None = None,
    operator_name: str | None = None,
    settings: Settings | None = None,
) -> WasteResult:
    """Record a write-off, then subtract it from existing ledger rows, flooring at zero.

    The waste log is written first and stays written if the ledger update
    fails. Rows for unknown items or with nothing written off are dropped;
    items the ledger does not hold are logged but not created.
    """

    settings = settings or get_settings()
    location_id = _require_location(location_id)
    if not rows:
        raise PreconditionError("No waste rows to apply")

    clean = [
        row
        for row in _clean_rows(rows)
        if row["qty"] > 0 or row["qty_open_grams"] > 0 or row["qty_total_ml"] > 0
    ]
    metas = await crud.fetch_item_meta(session, [row["item_id"] for row in clean], settings)
    clean = [row for row in clean if row["item_id"] in metas]
    if not clean:
        raise PreconditionError("No valid waste rows to apply")

    header_id = await crud.insert_waste(
        session,
        location_id,
        waste_date or date.today(),
        clean,
        operator_name,
        settings=settings,
    )

    deposit_id = await crud.get_or_create_technical_deposit(session, location_id, settings)
    current = await crud.fetch_ledger_quantities(
        session, deposit_id, [row["item_id"] for row in clean], settings
    )
    remaining = dict(current)
    for row in clean:
        item_id = row["item_id"]
        if item_id in remaining:
            remaining[item_id] = max(0, remaining[item_id] - canonical_quantity(row, metas[item_id]))

    changed = {item_id: qty for item_id, qty in remaining.items() if qty != current[item_id]}
    if changed:
        await crud.set_ledger_quantities(session, deposit_id, changed, settings=settings)
    logger.info(
        "Waste %s for location %s: %d rows logged, %d ledger rows reduced",
        header_id,
        location_id,
        len(clean),
        len(changed),
    )
    return WasteResult(touched=len(changed), deposit_id=deposit_id, header_id=header_id)


async def record_submission(
    session: AsyncSession,
    location_id: int,
    submission_date: date,
    rows: Sequence[Any],
    operator_name: str | None = None,
    settings: Settings | None = None,
) -> SubmissionResult:
    """Append a count batch to the log, then bring the ledger up to date.

    The counts stay saved when the ledger update fails for any reason; the
    failure comes back as ``sync_warning``.
    """

    settings = settings or get_settings()
    location_id = _require_location(location_id)
    if not rows:
        raise PreconditionError("No rows to save")
    if len(rows) > settings.max_submission_rows:
        raise PreconditionError(
            f"Too many rows in one submission (max {settings.max_submission_rows})"
        )
    await crud.get_location(session, location_id, settings=settings)

    clean = _clean_rows(rows)
    if not clean:
        raise PreconditionError("No valid rows to save")

    await crud.insert_submissions(
        session, location_id, submission_date, clean, operator_name, settings=settings
    )

    try:
        metas = await crud.fetch_item_meta(session, [row["item_id"] for row in clean], settings)
        sync = await sync_ledger(session, location_id, clean, metas.values(), settings)
    except Exception as exc:
        await session.rollback()
        logger.warning(
            "Counts for location %s saved but ledger sync failed: %s",
            location_id,
            exc,
            exc_info=True,
        )
        return SubmissionResult(saved=len(clean), sync=None, sync_warning=str(exc) or repr(exc))
    return SubmissionResult(saved=len(clean), sync=sync)


__all__ = [
    "apply_waste",
    "backfill_ledger",
    "index_metas",
    "latest_by_item",
    "project_rows",
    "rebuild_ledger",
    "record_submission",
    "sync_ledger",
]
