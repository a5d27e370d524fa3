import json
from decimal import Decimal

import httpx
import pytest

from pegledger.chain.client import output_address, to_satoshis
from pegledger.chain.rpc import JsonRpcChainClient
from pegledger.utils.exceptions import ChainClientError


def _client(handler, seen: list) -> JsonRpcChainClient:
    def _recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(json.loads(request.content))

    return JsonRpcChainClient(
        "bitcoin", "http://node:8332", "rpcuser", "rpcpass", transport=httpx.MockTransport(_recording)
    )


def _ok(result_json: str, request_id: int = 1) -> httpx.Response:
    # Raw body so float literals reach the client untouched.
    body = '{"result": %s, "error": null, "id": %d}' % (result_json, request_id)
    return httpx.Response(200, content=body.encode(), headers={"content-type": "application/json"})


@pytest.mark.asyncio
async def test_call_sends_json_rpc_with_basic_auth():
    seen: list[httpx.Request] = []
    client = _client(lambda payload: _ok("812345", payload["id"]), seen)
    try:
        assert await client.get_tip_height() == 812345
    finally:
        await client.aclose()

    payload = json.loads(seen[0].content)
    assert payload["method"] == "getblockcount"
    assert payload["params"] == []
    assert seen[0].headers["authorization"].startswith("Basic ")


@pytest.mark.asyncio
async def test_block_by_height_resolves_hash_then_fetches_verbose_block():
    seen: list[httpx.Request] = []

    def handler(payload):
        if payload["method"] == "getblockhash":
            return _ok('"00ab"')
        return _ok('{"hash": "00ab", "height": 900, "time": 1, "tx": []}')

    client = _client(handler, seen)
    try:
        block = await client.get_block_by_height(900)
    finally:
        await client.aclose()

    assert block["height"] == 900
    calls = [json.loads(r.content) for r in seen]
    assert [(c["method"], c["params"]) for c in calls] == [("getblockhash", [900]), ("getblock", ["00ab", 2])]


@pytest.mark.asyncio
async def test_amounts_are_parsed_as_decimal():
    client = _client(
        lambda payload: _ok('{"txid": "T1", "vout": [{"n": 0, "value": 0.29999999, "scriptPubKey": {"address": "A"}}]}'),
        [],
    )
    try:
        tx = await client.get_raw_transaction("T1")
    finally:
        await client.aclose()

    value = tx["vout"][0]["value"]
    assert isinstance(value, Decimal)
    assert to_satoshis(value) == 29_999_999


@pytest.mark.asyncio
async def test_gettxout_null_means_spent():
    client = _client(lambda payload: _ok("null"), [])
    try:
        assert await client.get_utxo_exists("T1", 0) is False
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_sync_status_from_blockchain_info():
    client = _client(lambda payload: _ok('{"blocks": 100, "headers": 104}'), [])
    try:
        status = await client.get_sync_status()
    finally:
        await client.aclose()

    assert (status.current_height, status.header_height, status.header_lag) == (100, 104, 4)


@pytest.mark.asyncio
async def test_rpc_error_raises_chain_client_error():
    def handler(payload):
        body = {"result": None, "error": {"code": -5, "message": "No such mempool or blockchain transaction"}, "id": 1}
        return httpx.Response(500, json=body)

    client = _client(handler, [])
    try:
        with pytest.raises(ChainClientError) as exc_info:
            await client.get_raw_transaction("missing")
    finally:
        await client.aclose()

    assert exc_info.value.rpc_code == -5
    assert exc_info.value.method == "getrawtransaction"
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_http_error_without_json_body_raises():
    client = _client(lambda payload: httpx.Response(401, content=b"Unauthorized"), [])
    try:
        with pytest.raises(ChainClientError) as exc_info:
            await client.get_tip_height()
    finally:
        await client.aclose()

    assert exc_info.value.details["status_code"] == 401


@pytest.mark.asyncio
async def test_transport_failure_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = JsonRpcChainClient("liquid", "http://node:7041", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(ChainClientError) as exc_info:
            await client.get_tip_height()
    finally:
        await client.aclose()

    assert exc_info.value.chain == "liquid"


def test_to_satoshis_is_exact():
    assert to_satoshis(Decimal("0.5")) == 50_000_000
    assert to_satoshis(Decimal("21000000")) == 2_100_000_000_000_000
    assert to_satoshis("0.00000001") == 1
    assert to_satoshis(None) == 0


def test_output_address_prefers_single_address_field():
    assert output_address({"scriptPubKey": {"address": "A", "addresses": ["B"]}}) == "A"
    assert output_address({"scriptPubKey": {"addresses": ["B", "C"]}}) == "B"
    assert output_address({"scriptPubKey": {"type": "nulldata"}}) == ""
