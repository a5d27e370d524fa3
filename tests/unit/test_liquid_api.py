import pytest

from pegledger.core.ledger import store
from pegledger.db.models.progress import LAST_BASE_CHAIN_AUDIT_HEIGHT, LAST_SIDE_CHAIN_HEIGHT
from tests.fakes import address_output, pegin_input


async def _seed(session_factory) -> None:
    async with session_factory() as session:
        await store.insert_peg_event(
            session,
            {"side_height": 5, "side_time": 1704412800, "amount_sat": 70_000, "side_txid": "IN", "side_output_index": 0},
        )
        await store.insert_federation_utxo(
            session,
            {
                "txid": "T1",
                "output_index": 1,
                "address": "A",
                "amount_sat": 70_000,
                "created_height": 800,
                "created_time": 1704412800,
                "last_verified_height": 810,
            },
        )
        await store.insert_federation_address(session, "A")
        await store.set_progress(session, LAST_SIDE_CHAIN_HEIGHT, 5)
        await store.set_progress(session, LAST_BASE_CHAIN_AUDIT_HEIGHT, 810)
        await session.commit()


@pytest.mark.asyncio
async def test_read_endpoints_return_projections(client, session_factory):
    await _seed(session_factory)

    resp = await client.get("/api/v1/liquid/pegs")
    assert resp.status_code == 200
    assert resp.json() == {"amount": 70_000, "last_side_height": 5}

    resp = await client.get("/api/v1/liquid/reserves")
    assert resp.json() == {"amount": 70_000, "last_audit_height": 810}

    resp = await client.get("/api/v1/liquid/pegs/month")
    assert resp.json() == [{"date": "2024-01-01", "net_amount": 70_000}]

    resp = await client.get("/api/v1/liquid/reserves/month")
    assert resp.json() == [{"date": "2024-01-01", "amount": 70_000}]

    resp = await client.get("/api/v1/liquid/reserves/addresses")
    assert resp.json() == [{"address": "A", "balance": 70_000, "last_verified_height": 810}]

    resp = await client.get("/api/v1/liquid/reserves/utxos")
    body = resp.json()
    assert [(u["txid"], u["output_index"], u["amount"]) for u in body] == [("T1", 1, 70_000)]

    resp = await client.get("/api/v1/liquid/reserves/addresses/count")
    assert resp.json() == {"count": 1}


@pytest.mark.asyncio
async def test_reserve_status_reads_base_chain_node(client, session_factory, bitcoin):
    await _seed(session_factory)
    bitcoin.tip = 811
    bitcoin.headers = 811

    resp = await client.get("/api/v1/liquid/reserves/status")

    assert resp.status_code == 200
    assert resp.json() == {
        "current_base_height": 811,
        "base_header_height": 811,
        "last_audit_height": 810,
        "is_synced": True,
    }


@pytest.mark.asyncio
async def test_reserve_status_node_failure_uses_error_envelope(client, bitcoin):
    bitcoin.fail_on["getblockchaininfo"] = lambda _: True

    resp = await client.get("/api/v1/liquid/reserves/status")

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "E002"
    assert resp.json()["error"]["details"]["chain"] == "bitcoin"


@pytest.mark.asyncio
async def test_invalid_query_uses_validation_envelope(client):
    resp = await client.get("/api/v1/liquid/reserves/addresses", params={"limit": 0})

    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "E009"


@pytest.mark.asyncio
async def test_admin_endpoints_require_token(client):
    resp = await client.post("/api/v1/admin/sync/pegs")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "E006"

    resp = await client.get("/api/v1/admin/progress", headers={"X-Admin-Token": "wrong"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_admin_sync_triggers_engine_runs(client, admin_headers, liquid, bitcoin):
    bitcoin.add_block(40, [{"txid": "B1", "vin": [], "vout": [address_output(0, "0.001", "A")]}])
    liquid.add_block(3, [{"txid": "L3", "vin": [pegin_input("B1", 0)], "vout": []}])
    liquid.tip = 3
    bitcoin.tip = 60
    bitcoin.utxos.add(("B1", 0))

    resp = await client.post("/api/v1/admin/sync/pegs", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "synced"
    assert resp.json()["end_height"] == 3
    assert resp.json()["blocks_processed"] == 3

    resp = await client.post("/api/v1/admin/sync/audit", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "synced"
    assert resp.json()["target_height"] == 59

    resp = await client.get("/api/v1/admin/progress", headers=admin_headers)
    assert resp.json() == {"last_side_chain_height": 3, "last_base_chain_audit_height": 59}

    resp = await client.get("/api/v1/liquid/pegs")
    assert resp.json()["amount"] == 100_000


@pytest.mark.asyncio
async def test_admin_sync_reports_busy_engine(client, admin_headers, scanner):
    assert scanner.guard.try_acquire()
    try:
        resp = await client.post("/api/v1/admin/sync/pegs", headers=admin_headers)
    finally:
        scanner.guard.release()

    assert resp.status_code == 200
    assert resp.json()["status"] == "skipped_busy"


@pytest.mark.asyncio
async def test_health_and_request_id(client):
    resp = await client.get("/healthz")
    assert resp.json() == {"status": "ok"}

    resp = await client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.headers["X-Request-ID"] == "abc-123"

    resp = await client.get("/healthz", headers={"X-Request-ID": "bad id with spaces"})
    assert resp.headers["X-Request-ID"] != "bad id with spaces"


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_http_counters(client):
    await client.get("/healthz")

    resp = await client.get("/metrics")

    assert resp.status_code == 200
    assert "pegledger_http_requests_total" in resp.text
