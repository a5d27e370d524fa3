from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pegledger.chain.client import Block, ChainClient, output_address, to_satoshis
from pegledger.core.ledger import store
from pegledger.core.sync_result import RunStatus, SyncRunResult
from pegledger.db.models.progress import LAST_SIDE_CHAIN_HEIGHT
from pegledger.utils.metrics import SYNC_EVENTS_TOTAL
from pegledger.utils.observability import log_duration
from pegledger.utils.request_id import new_sync_run_id, sync_run_id_var
from pegledger.utils.run_guard import RunGuard

logger = logging.getLogger(__name__)

ENGINE_NAME = "peg_scanner"


class PegScanner:
    """Walks the side chain and records peg-ins, peg-outs and the federation
    outputs created by peg-ins.

    Each side-chain block is applied in one unit of work together with the
    `last_side_chain_height` cursor, so a block is either fully recorded or
    not at all.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        liquid: ChainClient,
        bitcoin: ChainClient,
        *,
        native_asset_id: str,
        guard: Optional[RunGuard] = None,
    ):
        self.session_factory = session_factory
        self.liquid = liquid
        self.bitcoin = bitcoin
        self.native_asset_id = native_asset_id
        self.guard = guard or RunGuard(ENGINE_NAME)

    async def run(self, *, stop_event: Optional[asyncio.Event] = None) -> SyncRunResult:
        with self.guard.hold() as acquired:
            if not acquired:
                SYNC_EVENTS_TOTAL.labels(engine=ENGINE_NAME, result="skipped_busy").inc()
                return SyncRunResult(engine=ENGINE_NAME, status=RunStatus.SKIPPED_BUSY)

            token = sync_run_id_var.set(new_sync_run_id(ENGINE_NAME))
            try:
                result = await self._run(stop_event)
            except Exception:
                SYNC_EVENTS_TOTAL.labels(engine=ENGINE_NAME, result="error").inc()
                raise
            finally:
                sync_run_id_var.reset(token)

        SYNC_EVENTS_TOTAL.labels(engine=ENGINE_NAME, result=result.status.value).inc()
        return result

    async def _run(self, stop_event: Optional[asyncio.Event]) -> SyncRunResult:
        tip = await self.liquid.get_tip_height()

        async with self.session_factory() as session:
            async with session.begin():
                cursor = await store.get_progress(session, LAST_SIDE_CHAIN_HEIGHT)

            result = SyncRunResult(
                engine=ENGINE_NAME,
                status=RunStatus.UP_TO_DATE,
                start_height=cursor + 1,
                end_height=cursor,
                target_height=tip,
            )

            for height in range(cursor + 1, tip + 1):
                if stop_event is not None and stop_event.is_set():
                    result.status = RunStatus.STOPPED
                    break

                with log_duration(logger, "peg_scanner.sync_block", height=height):
                    block = await self.liquid.get_block_by_height(height)
                    async with store.unit_of_work(session, op="peg_scanner.sync_block", height=height):
                        pegs = await self.parse_block(session, block)
                        await store.set_progress(session, LAST_SIDE_CHAIN_HEIGHT, height)

                result.end_height = height
                result.blocks_processed += 1
                result.status = RunStatus.SYNCED
                if pegs:
                    logger.info("peg_scanner.block_synced height=%s pegs=%s tip=%s", height, pegs, tip)
                else:
                    logger.debug("peg_scanner.block_synced height=%s pegs=0 tip=%s", height, tip)

        return result

    async def parse_block(self, session: AsyncSession, block: Block) -> int:
        """Record all peg events of one side-chain block. Returns how many were new."""
        recorded = 0
        for tx in block.get("tx") or []:
            peg_in_indexes: set[int] = set()
            for index, vin in enumerate(tx.get("vin") or []):
                if vin.get("is_pegin"):
                    peg_in_indexes.add(index)
                    if await self._record_peg_in(session, block, tx, index, vin):
                        recorded += 1
            for vout in tx.get("vout") or []:
                if await self._record_peg_out(session, block, tx, vout, peg_in_indexes):
                    recorded += 1
        return recorded

    async def _record_peg_in(
        self,
        session: AsyncSession,
        block: Block,
        tx: dict[str, Any],
        input_index: int,
        vin: dict[str, Any],
    ) -> bool:
        base_tx = await self.bitcoin.get_raw_transaction(vin["txid"])
        base_block = await self.bitcoin.get_block(base_tx["blockhash"])
        prevout = _find_output(base_tx, int(vin.get("vout") or 0))

        amount = to_satoshis(prevout.get("value"))
        address = output_address(prevout)
        base_index = int(prevout.get("n", vin.get("vout") or 0))
        base_height = int(base_block["height"])
        base_time = int(base_block["time"])

        inserted = await store.insert_peg_event(
            session,
            {
                "side_height": int(block["height"]),
                "side_time": int(block["time"]),
                "amount_sat": amount,
                "side_txid": tx["txid"],
                "side_output_index": input_index,
                "base_address": address,
                "base_txid": base_tx["txid"],
                "base_output_index": base_index,
                "base_height": base_height,
                "base_time": base_time,
                "is_final": True,
            },
        )
        if not inserted:
            logger.debug("peg_scanner.peg_in_exists txid=%s index=%s", tx["txid"], input_index)
            return False

        if address:
            await store.insert_federation_address(session, address)

        # One block before confirmation, so the audit verifies it at least once.
        await store.insert_federation_utxo(
            session,
            {
                "txid": base_tx["txid"],
                "output_index": base_index,
                "address": address,
                "amount_sat": amount,
                "created_height": base_height,
                "created_time": base_time,
                "last_verified_height": base_height - 1,
            },
        )
        audit_cursor = await store.recompute_audit_cursor(session)
        logger.debug(
            "peg_scanner.peg_in height=%s txid=%s amount_sat=%s base_outpoint=%s:%s audit_cursor=%s",
            block["height"], tx["txid"], amount, base_tx["txid"], base_index, audit_cursor,
        )
        return True

    async def _record_peg_out(
        self,
        session: AsyncSession,
        block: Block,
        tx: dict[str, Any],
        vout: dict[str, Any],
        peg_in_indexes: set[int],
    ) -> bool:
        script = vout.get("scriptPubKey") or {}
        if script.get("pegout_chain"):
            is_final = False
        elif (
            script.get("type") == "nulldata"
            and vout.get("value")
            and vout.get("value") > 0
            and vout.get("asset") == self.native_asset_id
        ):
            # Burn of the native asset without a peg-out instruction.
            is_final = True
        else:
            return False

        pegout_addresses = script.get("pegout_addresses") or []
        address = script.get("pegout_address") or (pegout_addresses[0] if pegout_addresses else "")
        amount = -to_satoshis(vout.get("value"))
        if amount == 0:
            return False

        # Peg-ins key on the input index and peg-outs on the output index,
        # so both can claim the same (txid, index) slot; the later one is dropped.
        if int(vout["n"]) in peg_in_indexes:
            logger.warning(
                "peg_scanner.event_key_collision height=%s txid=%s index=%s amount_sat=%s dropped=peg_out",
                block["height"], tx["txid"], vout["n"], amount,
            )

        inserted = await store.insert_peg_event(
            session,
            {
                "side_height": int(block["height"]),
                "side_time": int(block["time"]),
                "amount_sat": amount,
                "side_txid": tx["txid"],
                "side_output_index": int(vout["n"]),
                "base_address": address,
                "base_txid": "",
                "base_output_index": 0,
                "base_height": 0,
                "base_time": 0,
                "is_final": is_final,
            },
        )
        if inserted:
            logger.debug(
                "peg_scanner.peg_out height=%s txid=%s n=%s amount_sat=%s final=%s",
                block["height"], tx["txid"], vout["n"], amount, is_final,
            )
        return inserted


def _find_output(tx: dict[str, Any], index: int) -> dict[str, Any]:
    outputs = tx.get("vout") or []
    for output in outputs:
        if output.get("n") == index:
            return output
    return outputs[index]
