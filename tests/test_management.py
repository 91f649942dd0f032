from __future__ import annotations

import json

from sqlalchemy import inspect

from stock_reconciliation import main as server, management
from stock_reconciliation.config import Settings
from stock_reconciliation.database import create_engine, engine_options


async def test_init_database_creates_tables(tmp_path) -> None:
    engine = create_engine(database_url=f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")

    created = await management.init_database(engine)

    async with engine.connect() as conn:
        tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    await engine.dispose()
    expected = {
        "locations",
        "items",
        "deposits",
        "deposit_items",
        "inventory_submissions",
        "waste_headers",
        "waste_rows",
    }
    assert expected <= set(tables)
    assert created == sorted(created)
    assert expected <= set(created)


def test_engine_options_only_tune_pool_for_server_databases() -> None:
    assert engine_options("sqlite+aiosqlite:///./stock.db") == {"echo": False}
    assert engine_options("postgresql+asyncpg://u:p@db/stock", echo=True) == {
        "echo": True,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


def test_init_db_command_prints_tables(monkeypatch, capsys) -> None:
    async def fake_init_database():
        return ["deposits", "items"]

    monkeypatch.setattr(management, "init_database", fake_init_database)

    management.main(["init-db"])

    assert json.loads(capsys.readouterr().out) == {"tables": ["deposits", "items"]}


def test_serve_command_runs_app_factory(monkeypatch) -> None:
    calls = []

    def fake_run(target, **kwargs):
        calls.append((target, kwargs))

    monkeypatch.setattr(server.uvicorn, "run", fake_run)
    monkeypatch.setattr(
        server,
        "get_settings",
        lambda: Settings(api_host="127.0.0.1", api_port=9001, environment="test"),
    )

    management.main(["serve"])

    target, kwargs = calls[0]
    assert target == "stock_reconciliation.api:create_app"
    assert kwargs["factory"] is True
    assert (kwargs["host"], kwargs["port"], kwargs["reload"]) == ("127.0.0.1", 9001, False)


def test_parser_reads_rebuild_limits() -> None:
    args = management.build_parser().parse_args(["rebuild", "7", "--max-items", "50"])

    assert args.command == "rebuild"
    assert args.location_id == 7
    assert args.max_items == 50
    assert args.max_rows is None


def test_rebuild_command_prints_summary(monkeypatch, capsys) -> None:
    calls = []

    async def fake_rebuild(location_id, max_items, max_rows):
        calls.append((location_id, max_items, max_rows))
        return {"rebuilt_count": 2, "scanned_rows": 9, "deposit_id": 1}

    monkeypatch.setattr(management, "_rebuild", fake_rebuild)

    management.main(["rebuild", "3", "--max-rows", "100"])

    assert calls == [(3, None, 100)]
    assert json.loads(capsys.readouterr().out) == {
        "rebuilt_count": 2,
        "scanned_rows": 9,
        "deposit_id": 1,
    }


def test_backfill_command_passes_limits(monkeypatch, capsys) -> None:
    calls = []

    async def fake_backfill(location_id, max_missing, max_rows):
        calls.append((location_id, max_missing, max_rows))
        return {"filled_count": 0, "scanned_rows": 0, "deposit_id": 1}

    monkeypatch.setattr(management, "_backfill", fake_backfill)

    management.main(["backfill", "4", "--max-missing", "10"])

    assert calls == [(4, 10, None)]
    assert json.loads(capsys.readouterr().out)["filled_count"] == 0
