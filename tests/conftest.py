from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stock_reconciliation import crud
from stock_reconciliation.api import create_app
from stock_reconciliation.config import Settings
from stock_reconciliation.database import Base, create_engine, get_session, make_session_factory
from stock_reconciliation.models import Deposit, DepositItem, Item


@pytest.fixture()
def settings(tmp_path) -> Settings:
    db_path = tmp_path / "test.db"
    return Settings(
        database_url=f"sqlite+aiosqlite:///{db_path}",
        environment="test",
        app_name="Test Stock Reconciliation",
        retry_base_delay=0,
    )


@pytest.fixture()
async def session_factory(settings: Settings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield make_session_factory(engine)

    await engine.dispose()


@pytest.fixture()
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def location_id(session: AsyncSession) -> int:
    location = await crud.create_location(session, code="PV01", name="Punto vendita 1")
    await session.commit()
    return location.id


@pytest.fixture()
async def item_ids(session: AsyncSession) -> dict[str, int]:
    """Catalog covering the three unit systems plus a tobacco-like edge case."""

    items = {
        "screw": Item(code="A100", description="Viti", unit_label="PZ", unit_price=2.0),
        "bottle": Item(
            code="B200",
            description="Gin 75cl",
            unit_label="PZ",
            volume_per_unit=750,
            unit_price=15.0,
        ),
        "cheese": Item(
            code="C300",
            description="Parmigiano 32g",
            unit_label="KG",
            weight_per_unit=0.032,
            unit_price=1.5,
        ),
        "tobacco": Item(
            code="T400", description="Sigarette", unit_label="PZ", weight_per_unit=0.02
        ),
    }
    session.add_all(items.values())
    await session.commit()
    return {name: item.id for name, item in items.items()}


@pytest.fixture()
def read_ledger(
    session: AsyncSession, settings: Settings
) -> Callable[[int], Awaitable[dict[int, int]]]:
    """Return ``item_id -> stock_qty`` of a location's technical deposit."""

    async def _read(location_id: int) -> dict[int, int]:
        stmt = (
            select(DepositItem.item_id, DepositItem.stock_qty)
            .join(Deposit, DepositItem.deposit_id == Deposit.id)
            .where(
                Deposit.location_id == location_id,
                Deposit.code == settings.technical_deposit_code,
            )
        )
        result = await session.execute(stmt)
        return {row.item_id: row.stock_qty for row in result}

    return _read


@pytest.fixture()
async def app(
    settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> AsyncIterator[FastAPI]:
    async def override_get_session() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    app = create_app(settings)
    app.dependency_overrides[get_session] = override_get_session

    yield app


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
