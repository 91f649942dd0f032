"""FastAPI router configuration."""
from __future__ import annotations

from datetime import date
from typing import Sequence

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import NoResultFound, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, ledger, schemas
from .comparison import build_comparison, summarize_comparison
from .config import Settings, configure_logging, get_settings
from .database import get_session
from .exceptions import ExternalStockParseError, PreconditionError
from .external_stock import scan_external_stock
from .units import ItemMeta, measurement_kind

router = APIRouter()


def provide_settings() -> Settings:
    """Dependency returning the active :class:`Settings` instance."""

    return get_settings()


def _not_found(exc: NoResultFound) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _server_error(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.get("/health", response_model=schemas.HealthStatus, tags=["system"])
async def health_check(settings: Settings = Depends(provide_settings)) -> schemas.HealthStatus:
    return schemas.HealthStatus(environment=settings.environment)


@router.post(
    "/locations/{location_id}/submissions",
    response_model=schemas.SubmissionResult,
    status_code=status.HTTP_201_CREATED,
)
async def create_submission(
    location_id: int,
    payload: schemas.SubmissionCreate,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> schemas.SubmissionResult:
    try:
        return await ledger.record_submission(
            session,
            location_id,
            payload.submission_date,
            payload.rows,
            operator_name=payload.operator_name,
            settings=settings,
        )
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    except PreconditionError as exc:
        raise _bad_request(exc) from exc
    except SQLAlchemyError as exc:
        raise _server_error(exc) from exc


@router.get("/locations/{location_id}/ledger", response_model=list[schemas.LedgerEntryOut])
async def list_ledger(
    location_id: int,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> Sequence[schemas.LedgerEntryOut]:
    try:
        await crud.get_location(session, location_id, settings=settings)
        deposit_id = await crud.find_technical_deposit(session, location_id, settings)
        if deposit_id is None:
            return []
        rows = await crud.list_ledger(session, deposit_id, settings=settings)
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    except SQLAlchemyError as exc:
        raise _server_error(exc) from exc
    return [
        schemas.LedgerEntryOut(
            item_id=entry.item_id,
            code=entry.imported_code or item.code,
            stock_qty=entry.stock_qty,
            measurement_kind=measurement_kind(ItemMeta.from_record(item)).value,
            is_active=entry.is_active,
        )
        for entry, item in rows
    ]


@router.post("/locations/{location_id}/ledger/rebuild", response_model=schemas.RebuildResult)
async def rebuild_ledger(
    location_id: int,
    payload: schemas.RebuildRequest | None = None,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> schemas.RebuildResult:
    payload = payload or schemas.RebuildRequest()
    try:
        await crud.get_location(session, location_id, settings=settings)
        return await ledger.rebuild_ledger(
            session,
            location_id,
            max_items=payload.max_items,
            max_rows_scanned=payload.max_rows_scanned,
            settings=settings,
        )
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    except SQLAlchemyError as exc:
        raise _server_error(exc) from exc


@router.post("/locations/{location_id}/ledger/backfill", response_model=schemas.BackfillResult)
async def backfill_ledger(
    location_id: int,
    payload: schemas.BackfillRequest | None = None,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> schemas.BackfillResult:
    payload = payload or schemas.BackfillRequest()
    try:
        await crud.get_location(session, location_id, settings=settings)
        return await ledger.backfill_ledger(
            session,
            location_id,
            max_missing=payload.max_missing,
            max_rows_scanned=payload.max_rows_scanned,
            settings=settings,
        )
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    except SQLAlchemyError as exc:
        raise _server_error(exc) from exc


@router.post("/locations/{location_id}/waste", response_model=schemas.WasteResult)
async def apply_waste(
    location_id: int,
    payload: schemas.WasteCreate,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> schemas.WasteResult:
    try:
        await crud.get_location(session, location_id, settings=settings)
        return await ledger.apply_waste(
            session,
            location_id,
            payload.rows,
            waste_date=payload.waste_date,
            operator_name=payload.operator_name,
            settings=settings,
        )
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    except PreconditionError as exc:
        raise _bad_request(exc) from exc
    except SQLAlchemyError as exc:
        raise _server_error(exc) from exc


@router.post("/locations/{location_id}/comparisons", response_model=schemas.ComparisonOut)
async def compare_with_external_stock(
    location_id: int,
    file: UploadFile = File(...),
    as_of: date | None = Form(None),
    only_internal: bool = Form(False),
    only_external_matches: bool = Form(False),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> schemas.ComparisonOut:
    try:
        await crud.get_location(session, location_id, settings=settings)
    except NoResultFound as exc:
        raise _not_found(exc) from exc
    except SQLAlchemyError as exc:
        raise _server_error(exc) from exc

    data = await file.read()
    try:
        external = await run_in_threadpool(scan_external_stock, data)
    except ExternalStockParseError as exc:
        raise _bad_request(exc) from exc

    try:
        snapshot = await crud.latest_snapshot(session, location_id, as_of, settings=settings)
    except SQLAlchemyError as exc:
        raise _server_error(exc) from exc
    lines = build_comparison(
        snapshot,
        external.quantities,
        only_internal=only_internal,
        only_external_matches=only_external_matches,
    )
    return schemas.ComparisonOut(
        lines=[schemas.ComparisonLineOut.model_validate(line) for line in lines],
        totals=schemas.ComparisonTotalsOut.model_validate(summarize_comparison(lines)),
        sections=[schemas.HeaderBlockOut.model_validate(block) for block in external.sections],
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    app = FastAPI(title=settings.app_name)
    app.dependency_overrides[provide_settings] = lambda: settings
    app.include_router(router)
    return app


app = create_app()


__all__ = ["app", "create_app", "router"]
