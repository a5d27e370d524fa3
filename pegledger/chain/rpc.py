from __future__ import annotations

import itertools
import logging
from decimal import Decimal
from typing import Any, Optional

import httpx

from pegledger.chain.client import Block, SyncStatus, Transaction
from pegledger.utils.exceptions import ChainClientError
from pegledger.utils.metrics import RPC_CALLS_TOTAL

logger = logging.getLogger(__name__)


class JsonRpcChainClient:
    """Bitcoin Core / Elements JSON-RPC client.

    Usage:
        client = JsonRpcChainClient("bitcoin", "http://127.0.0.1:8332", "user", "pass")
        height = await client.get_tip_height()
        await client.aclose()
    """

    def __init__(
        self,
        name: str,
        url: str,
        user: str = "",
        password: str = "",
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.name = name
        self.url = url
        auth = (user, password) if user or password else None
        self._http = httpx.AsyncClient(auth=auth, timeout=timeout, transport=transport)
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def call(self, method: str, *params: Any) -> Any:
        payload = {
            "jsonrpc": "1.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }

        try:
            response = await self._http.post(self.url, json=payload)
        except httpx.HTTPError as exc:
            RPC_CALLS_TOTAL.labels(chain=self.name, method=method, result="transport_error").inc()
            raise ChainClientError(
                f"{self.name} RPC {method} failed: {exc}", chain=self.name, method=method
            ) from exc

        # Bitcoin Core answers JSON-RPC errors with HTTP 404/500 and a JSON body.
        try:
            body = response.json(parse_float=Decimal)
        except ValueError as exc:
            RPC_CALLS_TOTAL.labels(chain=self.name, method=method, result="http_error").inc()
            raise ChainClientError(
                f"{self.name} RPC {method} returned HTTP {response.status_code}",
                chain=self.name,
                method=method,
                details={"status_code": response.status_code},
            ) from exc

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            RPC_CALLS_TOTAL.labels(chain=self.name, method=method, result="rpc_error").inc()
            raise ChainClientError(
                f"{self.name} RPC {method} error: {error.get('message')}",
                chain=self.name,
                method=method,
                rpc_code=error.get("code"),
            )
        if response.status_code >= 400 or not isinstance(body, dict):
            RPC_CALLS_TOTAL.labels(chain=self.name, method=method, result="http_error").inc()
            raise ChainClientError(
                f"{self.name} RPC {method} returned HTTP {response.status_code}",
                chain=self.name,
                method=method,
                details={"status_code": response.status_code},
            )

        RPC_CALLS_TOTAL.labels(chain=self.name, method=method, result="ok").inc()
        return body.get("result")

    async def get_tip_height(self) -> int:
        return int(await self.call("getblockcount"))

    async def get_block_by_height(self, height: int) -> Block:
        block_hash = await self.call("getblockhash", height)
        return await self.call("getblock", block_hash, 2)

    async def get_raw_transaction(self, txid: str) -> Transaction:
        return await self.call("getrawtransaction", txid, True)

    async def get_block(self, block_hash: str) -> Block:
        return await self.call("getblock", block_hash, 1)

    async def get_utxo_exists(self, txid: str, output_index: int) -> bool:
        # gettxout returns null for spent or unknown outputs.
        result = await self.call("gettxout", txid, output_index, False)
        return result is not None

    async def get_sync_status(self) -> SyncStatus:
        info = await self.call("getblockchaininfo")
        return SyncStatus(current_height=int(info["blocks"]), header_height=int(info["headers"]))


def build_liquid_client(settings) -> JsonRpcChainClient:
    return JsonRpcChainClient(
        "liquid",
        settings.LIQUID_RPC_URL,
        settings.LIQUID_RPC_USER,
        settings.LIQUID_RPC_PASSWORD,
        timeout=settings.RPC_TIMEOUT_SECONDS,
    )


def build_bitcoin_client(settings) -> JsonRpcChainClient:
    return JsonRpcChainClient(
        "bitcoin",
        settings.BITCOIN_RPC_URL,
        settings.BITCOIN_RPC_USER,
        settings.BITCOIN_RPC_PASSWORD,
        timeout=settings.RPC_TIMEOUT_SECONDS,
    )
