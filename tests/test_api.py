from __future__ import annotations

from io import BytesIO

import pytest
import xlwt
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from stock_reconciliation import crud
from stock_reconciliation.models import Deposit, WasteHeader

XLS_MIME = "application/vnd.ms-excel"


def _xls_bytes(rows) -> bytes:
    workbook = xlwt.Workbook()
    sheet = workbook.add_sheet("Export")
    for row_index, row in enumerate(rows):
        for col_index, value in enumerate(row):
            sheet.write(row_index, col_index, value)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


async def _submit(client: AsyncClient, location_id: int, rows, day="2024-03-01"):
    return await client.post(
        f"/locations/{location_id}/submissions",
        json={"submission_date": day, "operator_name": "Luca", "rows": rows},
    )


async def test_health_endpoint(client: AsyncClient) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "environment": "test"}


async def test_submission_updates_ledger(client: AsyncClient, location_id, item_ids) -> None:
    response = await _submit(
        client,
        location_id,
        [
            {"item_id": item_ids["screw"], "qty": 4},
            {"item_id": item_ids["bottle"], "qty": 1, "qty_total_ml": "1700"},
            {"item_id": item_ids["cheese"], "qty": 3, "qty_open_grams": 10},
        ],
    )

    assert response.status_code == 201
    body = response.json()
    assert body["saved"] == 3
    assert body["sync"]["updated_count"] == 3
    assert body["sync_warning"] is None

    ledger = await client.get(f"/locations/{location_id}/ledger")
    assert ledger.status_code == 200
    entries = {entry["code"]: entry for entry in ledger.json()}
    assert entries["A100"]["stock_qty"] == 4
    assert entries["A100"]["measurement_kind"] == "piece"
    assert entries["B200"]["stock_qty"] == 1700
    assert entries["B200"]["measurement_kind"] == "volume"
    assert entries["C300"]["stock_qty"] == 106
    assert entries["C300"]["measurement_kind"] == "weight"


async def test_ledger_of_fresh_location_is_empty_without_creating_deposit(
    client: AsyncClient, session, location_id
) -> None:
    response = await client.get(f"/locations/{location_id}/ledger")

    assert response.status_code == 200
    assert response.json() == []
    assert (await session.execute(select(func.count()).select_from(Deposit))).scalar_one() == 0


async def test_submission_for_unknown_location_is_404(client: AsyncClient, item_ids) -> None:
    response = await _submit(client, 9999, [{"item_id": item_ids["screw"], "qty": 1}])

    assert response.status_code == 404


async def test_empty_submission_is_400(client: AsyncClient, location_id) -> None:
    response = await _submit(client, location_id, [])

    assert response.status_code == 400
    assert "No rows" in response.json()["detail"]


async def test_rebuild_and_backfill_endpoints(client: AsyncClient, location_id, item_ids) -> None:
    await _submit(client, location_id, [{"item_id": item_ids["screw"], "qty": 4}])
    await _submit(client, location_id, [{"item_id": item_ids["screw"], "qty": 6}], day="2024-03-02")

    rebuild = await client.post(f"/locations/{location_id}/ledger/rebuild")
    assert rebuild.status_code == 200
    assert rebuild.json()["rebuilt_count"] == 1
    assert rebuild.json()["scanned_rows"] == 2

    backfill = await client.post(
        f"/locations/{location_id}/ledger/backfill", json={"max_missing": 10}
    )
    assert backfill.status_code == 200
    assert backfill.json()["filled_count"] == 0

    ledger = await client.get(f"/locations/{location_id}/ledger")
    assert [entry["stock_qty"] for entry in ledger.json()] == [6]


async def test_rebuild_rejects_invalid_limits(client: AsyncClient, location_id) -> None:
    response = await client.post(
        f"/locations/{location_id}/ledger/rebuild", json={"max_items": 0}
    )

    assert response.status_code == 422


async def test_waste_endpoint(client: AsyncClient, location_id, item_ids) -> None:
    await _submit(client, location_id, [{"item_id": item_ids["screw"], "qty": 4}])

    response = await client.post(
        f"/locations/{location_id}/waste",
        json={"rows": [{"item_id": item_ids["screw"], "qty": 10}]},
    )

    assert response.status_code == 200
    assert response.json()["touched"] == 1
    ledger = await client.get(f"/locations/{location_id}/ledger")
    assert ledger.json()[0]["stock_qty"] == 0


async def test_waste_endpoint_logs_date_and_operator(
    client: AsyncClient, session, location_id, item_ids
) -> None:
    response = await client.post(
        f"/locations/{location_id}/waste",
        json={
            "waste_date": "2024-03-04",
            "operator_name": "Sara",
            "rows": [{"item_id": item_ids["bottle"], "qty_total_ml": 100}],
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["touched"] == 0
    header = (await session.execute(select(WasteHeader))).scalar_one()
    assert body["header_id"] == header.id
    assert header.waste_date.isoformat() == "2024-03-04"
    assert header.operator_name == "Sara"


async def test_waste_with_unknown_items_only_is_400(client: AsyncClient, location_id) -> None:
    response = await client.post(
        f"/locations/{location_id}/waste", json={"rows": [{"item_id": 9999, "qty": 1}]}
    )

    assert response.status_code == 400


async def test_comparison_upload(client: AsyncClient, location_id, item_ids) -> None:
    await _submit(
        client,
        location_id,
        [
            {"item_id": item_ids["screw"], "qty": 12},
            {"item_id": item_ids["bottle"], "qty_total_ml": 1700},
        ],
    )
    export = _xls_bytes(
        [
            ["Codice articolo", "Descrizione", "Giacenza qta1"],
            ["A100", "Viti", 15],
            ["B200", "Gin", 1500],
            ["Z900", "Altro", 4],
        ]
    )

    response = await client.post(
        f"/locations/{location_id}/comparisons",
        files={"file": ("giacenze.xls", export, XLS_MIME)},
    )

    assert response.status_code == 200
    body = response.json()
    lines = {line["code"]: line for line in body["lines"]}
    assert lines["A100"]["diff"] == -3
    assert lines["B200"]["diff"] == 200
    assert lines["Z900"]["found_internal"] is False
    assert body["totals"]["missing_internal"] == 1
    assert body["sections"] == [
        {"header_row": 0, "row_span": 1, "code_col": 0, "quantity_col": 2, "unit_col": None}
    ]


@pytest.mark.parametrize(
    "form, expected_codes",
    [
        ({"only_internal": "true"}, ["A100"]),
        ({"only_external_matches": "true"}, ["Z900"]),
    ],
)
async def test_comparison_filters(
    client: AsyncClient, location_id, item_ids, form, expected_codes
) -> None:
    await _submit(client, location_id, [{"item_id": item_ids["screw"], "qty": 12}])
    export = _xls_bytes([["Codice", "Giacenza"], ["Z900", 4]])

    response = await client.post(
        f"/locations/{location_id}/comparisons",
        data=form,
        files={"file": ("giacenze.xls", export, XLS_MIME)},
    )

    assert response.status_code == 200
    assert [line["code"] for line in response.json()["lines"]] == expected_codes


async def test_comparison_as_of_uses_older_counts(client: AsyncClient, location_id, item_ids) -> None:
    await _submit(client, location_id, [{"item_id": item_ids["screw"], "qty": 5}], day="2024-03-01")
    await _submit(client, location_id, [{"item_id": item_ids["screw"], "qty": 9}], day="2024-03-05")
    export = _xls_bytes([["Codice", "Giacenza"], ["A100", 5]])

    response = await client.post(
        f"/locations/{location_id}/comparisons",
        data={"as_of": "2024-03-02"},
        files={"file": ("giacenze.xls", export, XLS_MIME)},
    )

    assert response.status_code == 200
    assert response.json()["lines"][0]["diff"] == 0


async def test_comparison_with_unusable_file_is_400(client: AsyncClient, location_id) -> None:
    export = _xls_bytes([["Articolo", "Prezzo"], ["X1", 3.5]])

    response = await client.post(
        f"/locations/{location_id}/comparisons",
        files={"file": ("listino.xls", export, XLS_MIME)},
    )

    assert response.status_code == 400
    assert "Articolo" in response.json()["detail"]


async def test_comparison_store_failure_is_500(
    client: AsyncClient, location_id, monkeypatch
) -> None:
    async def broken_snapshot(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(crud, "latest_snapshot", broken_snapshot)
    export = _xls_bytes([["Codice", "Giacenza"], ["A100", 5]])

    response = await client.post(
        f"/locations/{location_id}/comparisons",
        files={"file": ("giacenze.xls", export, XLS_MIME)},
    )

    assert response.status_code == 500
