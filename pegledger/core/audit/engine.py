from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pegledger.chain.client import ChainClient, output_address, to_satoshis
from pegledger.core.ledger import store
from pegledger.core.sync_result import RunStatus, SyncRunResult
from pegledger.db.models.federation_utxo import FederationUtxo
from pegledger.db.models.progress import LAST_BASE_CHAIN_AUDIT_HEIGHT
from pegledger.utils.metrics import AUDIT_CHECKS_TOTAL, SYNC_EVENTS_TOTAL
from pegledger.utils.observability import log_duration
from pegledger.utils.request_id import new_sync_run_id, sync_run_id_var
from pegledger.utils.run_guard import RunGuard

logger = logging.getLogger(__name__)

ENGINE_NAME = "federation_audit"

Outpoint = tuple[str, int]


class FederationAuditEngine:
    """Walks the base chain and keeps the federation UTXO set verified.

    At height `h` the candidates are the unspent outputs last verified at
    `h - 1`. Near the tip a `gettxout` per candidate is enough to advance it
    straight to the confirmed tip; otherwise (or when that check fails) block
    `h` is scanned for spends of the candidates and for new outputs paying
    the federation change addresses.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bitcoin: ChainClient,
        *,
        change_addresses: Iterable[str],
        confirmation_offset: int = 1,
        fast_path_window: int = 150,
        max_header_lag: int = 2,
        guard: Optional[RunGuard] = None,
    ):
        self.session_factory = session_factory
        self.bitcoin = bitcoin
        self.change_addresses = frozenset(change_addresses)
        self.confirmation_offset = confirmation_offset
        self.fast_path_window = fast_path_window
        self.max_header_lag = max_header_lag
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
        async with self.session_factory() as session:
            async with session.begin():
                pegged_in = await store.has_peg_ins(session)
            if not pegged_in:
                logger.debug("federation_audit.not_ready reason=no_pegins")
                return SyncRunResult(engine=ENGINE_NAME, status=RunStatus.NOT_READY_NO_PEGINS)

            status = await self.bitcoin.get_sync_status()
            if status.header_lag > self.max_header_lag:
                logger.info(
                    "federation_audit.not_ready reason=node_lagging blocks=%s headers=%s",
                    status.current_height, status.header_height,
                )
                return SyncRunResult(engine=ENGINE_NAME, status=RunStatus.NOT_READY_NODE_LAGGING)

            confirmed_tip = await self.bitcoin.get_tip_height() - self.confirmation_offset
            result = SyncRunResult(
                engine=ENGINE_NAME, status=RunStatus.UP_TO_DATE, target_height=confirmed_tip
            )

            while True:
                if stop_event is not None and stop_event.is_set():
                    result.status = RunStatus.STOPPED
                    break

                async with store.unit_of_work(session, op="federation_audit.audit_height"):
                    # Re-read each round: a peg-in committed meanwhile may pull the cursor back.
                    cursor = await store.get_progress(session, LAST_BASE_CHAIN_AUDIT_HEIGHT)
                    height = cursor + 1
                    if height > confirmed_tip:
                        break
                    with log_duration(logger, "federation_audit.audit_height", height=height):
                        new_cursor = await self.audit_height(session, height, confirmed_tip)

                if result.start_height is None:
                    result.start_height = height
                result.end_height = new_cursor
                result.blocks_processed += 1
                result.status = RunStatus.SYNCED

        return result

    async def audit_height(self, session: AsyncSession, height: int, confirmed_tip: int) -> int:
        """Verify every candidate due at `height`. Returns the recomputed audit cursor.

        Must run inside a unit of work; nothing is committed here.
        """
        candidates = await store.load_audit_candidates(session, height)
        remaining: dict[Outpoint, FederationUtxo] = {
            (utxo.txid, utxo.output_index): utxo for utxo in candidates
        }

        fast_advanced = 0
        if remaining and confirmed_tip - height < self.fast_path_window:
            fast_advanced = await self._fast_path(session, remaining, confirmed_tip)

        spent = discovered = 0
        if remaining:
            spent, discovered = await self._slow_path(session, remaining, height)

        cursor = await store.recompute_audit_cursor(session, audited_height=height)
        logger.debug(
            "federation_audit.height_done height=%s tip=%s candidates=%s fast_advanced=%s spent=%s discovered=%s cursor=%s",
            height, confirmed_tip, len(candidates), fast_advanced, spent, discovered, cursor,
        )
        return cursor

    async def _fast_path(
        self, session: AsyncSession, remaining: dict[Outpoint, FederationUtxo], confirmed_tip: int
    ) -> int:
        still_unspent: list[Outpoint] = []
        for outpoint in list(remaining):
            # Unspent at the tip means unspent at every height since the last verification.
            if await self.bitcoin.get_utxo_exists(*outpoint):
                still_unspent.append(outpoint)
                del remaining[outpoint]
                AUDIT_CHECKS_TOTAL.labels(path="fast", result="unspent").inc()
            else:
                AUDIT_CHECKS_TOTAL.labels(path="fast", result="miss").inc()

        await store.advance_verified_height(session, still_unspent, height=confirmed_tip)
        return len(still_unspent)

    async def _slow_path(
        self, session: AsyncSession, remaining: dict[Outpoint, FederationUtxo], height: int
    ) -> tuple[int, int]:
        block = await self.bitcoin.get_block_by_height(height)
        block_time = int(block["time"])
        spent = discovered = 0

        for tx in block.get("tx") or []:
            for vin in tx.get("vin") or []:
                if "txid" not in vin:
                    continue  # coinbase
                outpoint = (vin["txid"], int(vin.get("vout", 0)))
                utxo = remaining.pop(outpoint, None)
                if utxo is None:
                    continue
                await store.mark_utxo_spent(
                    session, *outpoint, height=height, spent_time=block_time
                )
                spent += 1
                AUDIT_CHECKS_TOTAL.labels(path="slow", result="spent").inc()
                logger.info(
                    "federation_audit.utxo_spent outpoint=%s:%s amount_sat=%s height=%s spending_txid=%s",
                    outpoint[0], outpoint[1], utxo.amount_sat, height, tx.get("txid"),
                )

            for vout in tx.get("vout") or []:
                address = output_address(vout)
                if address not in self.change_addresses:
                    continue
                amount = to_satoshis(vout.get("value"))
                inserted = await store.insert_federation_utxo(
                    session,
                    {
                        "txid": tx["txid"],
                        "output_index": int(vout["n"]),
                        "address": address,
                        "amount_sat": amount,
                        "created_height": height,
                        "created_time": block_time,
                        "last_verified_height": height,
                    },
                )
                if not inserted:
                    continue
                discovered += 1
                # Later transactions in this same block may spend it.
                remaining[(tx["txid"], int(vout["n"]))] = FederationUtxo(
                    txid=tx["txid"], output_index=int(vout["n"]), address=address, amount_sat=amount
                )
                logger.info(
                    "federation_audit.change_discovered outpoint=%s:%s amount_sat=%s address=%s height=%s",
                    tx["txid"], vout["n"], amount, address, height,
                )

        for _ in remaining:
            AUDIT_CHECKS_TOTAL.labels(path="slow", result="unspent").inc()
        await store.advance_verified_height(session, remaining.keys(), height=height)
        return spent, discovered
