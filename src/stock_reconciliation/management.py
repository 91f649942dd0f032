"""Administrative commands: schema setup and ledger repair.

Run as ``stock-reconciliation <command>`` or
``python -m stock_reconciliation.management <command>``. Every command
except ``serve`` prints a one-line JSON summary on stdout.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncEngine

from . import ledger, main as server
from .config import configure_logging
from .database import Base, SessionFactory, engine

logger = logging.getLogger(__name__)


async def init_database(db_engine: AsyncEngine | None = None) -> list[str]:
    """Create any missing tables and return the names of all known tables."""

    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    tables = sorted(Base.metadata.tables)
    logger.info("Schema ready: %s", ", ".join(tables))
    return tables


async def _init_db() -> dict:
    return {"tables": await init_database()}


async def _rebuild(location_id: int, max_items: int | None, max_rows: int | None) -> dict:
    async with SessionFactory() as session:
        result = await ledger.rebuild_ledger(
            session, location_id, max_items=max_items, max_rows_scanned=max_rows
        )
    return result.model_dump()


async def _backfill(location_id: int, max_missing: int | None, max_rows: int | None) -> dict:
    async with SessionFactory() as session:
        result = await ledger.backfill_ledger(
            session, location_id, max_missing=max_missing, max_rows_scanned=max_rows
        )
    return result.model_dump()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stock-reconciliation")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init-db", help="Create database tables.")
    commands.add_parser("serve", help="Run the HTTP API.")

    rebuild = commands.add_parser("rebuild", help="Recompute a location's ledger from history.")
    rebuild.add_argument("location_id", type=int)
    rebuild.add_argument("--max-items", type=int, default=None)
    rebuild.add_argument("--max-rows", type=int, default=None)

    backfill = commands.add_parser("backfill", help="Add ledger rows missing for a location.")
    backfill.add_argument("location_id", type=int)
    backfill.add_argument("--max-missing", type=int, default=None)
    backfill.add_argument("--max-rows", type=int, default=None)
    return parser


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    if args.command == "serve":
        server.run()
        return

    configure_logging()
    if args.command == "init-db":
        summary = asyncio.run(_init_db())
    elif args.command == "rebuild":
        summary = asyncio.run(_rebuild(args.location_id, args.max_items, args.max_rows))
    else:
        summary = asyncio.run(_backfill(args.location_id, args.max_missing, args.max_rows))
    print(json.dumps(summary))


if __name__ == "__main__":
    main()
