"""Chain node capability used by the sync engines.

Blocks and transactions are passed around as the decoded JSON objects the
node returns (`getblock <hash> 2`, `getrawtransaction <txid> true`); numeric
values are parsed as `Decimal` so satoshi conversion is exact.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

SATS_PER_COIN = Decimal(100_000_000)

Block = dict[str, Any]
Transaction = dict[str, Any]


@dataclass(frozen=True)
class SyncStatus:
    current_height: int
    header_height: int

    @property
    def header_lag(self) -> int:
        return max(0, self.header_height - self.current_height)


class ChainClient(Protocol):
    name: str

    async def get_tip_height(self) -> int: ...

    async def get_block_by_height(self, height: int) -> Block: ...

    async def get_raw_transaction(self, txid: str) -> Transaction: ...

    async def get_block(self, block_hash: str) -> Block: ...

    async def get_utxo_exists(self, txid: str, output_index: int) -> bool: ...

    async def get_sync_status(self) -> SyncStatus: ...


def to_satoshis(value: Any) -> int:
    """Convert a coin-denominated RPC amount to integer satoshis."""
    if value is None:
        return 0
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return int((amount * SATS_PER_COIN).to_integral_value())


def output_address(output: dict[str, Any]) -> str:
    script = output.get("scriptPubKey") or {}
    address = script.get("address")
    if address:
        return str(address)
    addresses = script.get("addresses") or []
    return str(addresses[0]) if addresses else ""
