import asyncio

import pytest
from sqlalchemy import select

from pegledger.core.ledger import store
from pegledger.core.sync_result import RunStatus
from pegledger.db.models.federation_utxo import FederationUtxo
from pegledger.db.models.progress import LAST_BASE_CHAIN_AUDIT_HEIGHT
from pegledger.utils.exceptions import ChainClientError
from tests.fakes import BLOCK_TIME_BASE, CHANGE_ADDRESS, address_output


async def _seed_peg_in(session, *, txid="T1", output_index=0, amount=50_000_000, base_height=900) -> None:
    """Ledger state right after the scanner recorded a peg-in confirmed at `base_height`."""
    await store.insert_peg_event(
        session,
        {
            "side_height": 100,
            "side_time": BLOCK_TIME_BASE,
            "amount_sat": amount,
            "side_txid": f"S-{txid}",
            "side_output_index": 0,
            "base_address": "A",
            "base_txid": txid,
            "base_output_index": output_index,
            "base_height": base_height,
            "base_time": BLOCK_TIME_BASE,
            "is_final": True,
        },
    )
    await store.insert_federation_utxo(
        session,
        {
            "txid": txid,
            "output_index": output_index,
            "address": "A",
            "amount_sat": amount,
            "created_height": base_height,
            "created_time": BLOCK_TIME_BASE,
            "last_verified_height": base_height - 1,
        },
    )
    await store.recompute_audit_cursor(session)
    await session.commit()


async def _utxo(session_factory, txid: str, output_index: int) -> FederationUtxo:
    async with session_factory() as session:
        return (
            await session.execute(
                select(FederationUtxo).where(
                    FederationUtxo.txid == txid, FederationUtxo.output_index == output_index
                )
            )
        ).scalar_one()


async def _audit_cursor(session_factory) -> int:
    async with session_factory() as session:
        return await store.get_progress(session, LAST_BASE_CHAIN_AUDIT_HEIGHT)


def _spend_with_change_block(bitcoin) -> None:
    bitcoin.add_block(
        900,
        [
            {
                "txid": "SPEND",
                "vin": [{"txid": "T1", "vout": 0}],
                "vout": [address_output(0, "0.2", "bc1quser")]
                + [address_output(n, "0.0001", "bc1qother") for n in range(1, 9)]
                + [address_output(9, "0.3", CHANGE_ADDRESS)],
            }
        ],
    )


@pytest.mark.asyncio
async def test_fast_path_advances_to_confirmed_tip_without_block_fetch(
    db_session, session_factory, audit_engine, bitcoin
):
    await _seed_peg_in(db_session)
    bitcoin.tip = 1001  # confirmed tip 1000
    bitcoin.utxos.add(("T1", 0))

    result = await audit_engine.run()

    assert result.status == RunStatus.SYNCED
    assert result.target_height == 1000
    assert result.blocks_processed == 1
    utxo = await _utxo(session_factory, "T1", 0)
    assert utxo.unspent is True
    assert utxo.last_verified_height == 1000
    assert bitcoin.calls_to("getblock") == []
    assert await _audit_cursor(session_factory) == 1000


@pytest.mark.asyncio
async def test_slow_path_marks_spend_and_discovers_change(db_session, session_factory, audit_engine, bitcoin):
    await _seed_peg_in(db_session)
    _spend_with_change_block(bitcoin)

    # Far from the tip: the block itself is scanned.
    async with store.unit_of_work(db_session, op="test.audit_height"):
        cursor = await audit_engine.audit_height(db_session, 900, confirmed_tip=5000)

    spent = await _utxo(session_factory, "T1", 0)
    assert spent.unspent is False
    assert spent.last_verified_height == 900
    assert spent.spent_time == BLOCK_TIME_BASE + 900 * 600

    change = await _utxo(session_factory, "SPEND", 9)
    assert change.unspent is True
    assert change.last_verified_height == 900
    assert change.amount_sat == 30_000_000
    assert change.address == CHANGE_ADDRESS
    assert change.created_height == 900

    assert cursor == 900
    assert bitcoin.calls_to("gettxout") == []


@pytest.mark.asyncio
async def test_fast_path_miss_falls_back_to_block_scan(db_session, session_factory, audit_engine, bitcoin):
    await _seed_peg_in(db_session)
    _spend_with_change_block(bitcoin)
    bitcoin.tip = 1001
    bitcoin.utxos.add(("SPEND", 9))

    result = await audit_engine.run()

    assert result.status == RunStatus.SYNCED
    assert bitcoin.calls_to("getblock") == [900]
    assert (await _utxo(session_factory, "T1", 0)).unspent is False
    # The change output was fast-path verified on the following height.
    assert (await _utxo(session_factory, "SPEND", 9)).last_verified_height == 1000
    assert await _audit_cursor(session_factory) == 1000


@pytest.mark.asyncio
async def test_spent_output_is_never_revived(db_session, session_factory, audit_engine, bitcoin):
    await _seed_peg_in(db_session)
    _spend_with_change_block(bitcoin)
    async with store.unit_of_work(db_session, op="test.audit_height"):
        await audit_engine.audit_height(db_session, 900, confirmed_tip=5000)

    async with store.unit_of_work(db_session, op="test.reinsert"):
        inserted = await store.insert_federation_utxo(
            db_session,
            {
                "txid": "T1",
                "output_index": 0,
                "address": "A",
                "amount_sat": 50_000_000,
                "created_height": 900,
                "created_time": BLOCK_TIME_BASE,
                "last_verified_height": 950,
            },
        )
        advanced = await store.advance_verified_height(db_session, [("T1", 0)], height=2000)

    assert inserted is False
    assert advanced == 0
    utxo = await _utxo(session_factory, "T1", 0)
    assert utxo.unspent is False
    assert utxo.last_verified_height == 900


@pytest.mark.asyncio
async def test_audit_waits_for_first_peg_in(audit_engine, bitcoin):
    bitcoin.tip = 1001

    result = await audit_engine.run()

    assert result.status == RunStatus.NOT_READY_NO_PEGINS
    assert bitcoin.calls == []


@pytest.mark.asyncio
async def test_audit_waits_while_node_is_catching_up(db_session, session_factory, audit_engine, bitcoin):
    await _seed_peg_in(db_session)
    bitcoin.tip = 1001
    bitcoin.headers = 1010

    result = await audit_engine.run()

    assert result.status == RunStatus.NOT_READY_NODE_LAGGING
    assert await _audit_cursor(session_factory) == 899
    assert bitcoin.calls_to("gettxout") == []


@pytest.mark.asyncio
async def test_audit_cursor_tracks_lowest_unspent_output(db_session, session_factory, audit_engine, bitcoin):
    await _seed_peg_in(db_session, txid="T1", base_height=900)
    await _seed_peg_in(db_session, txid="T2", base_height=950)
    bitcoin.tip = 1001
    bitcoin.utxos.update({("T1", 0), ("T2", 0)})

    assert await _audit_cursor(session_factory) == 899

    await audit_engine.run()

    for txid in ("T1", "T2"):
        assert (await _utxo(session_factory, txid, 0)).last_verified_height == 1000
    async with session_factory() as session:
        assert await store.min_unspent_verified_height(session) == await store.get_progress(
            session, LAST_BASE_CHAIN_AUDIT_HEIGHT
        )


@pytest.mark.asyncio
async def test_stop_event_ends_run_between_heights(db_session, audit_engine, bitcoin):
    await _seed_peg_in(db_session)
    bitcoin.tip = 1001
    stop = asyncio.Event()
    stop.set()

    result = await audit_engine.run(stop_event=stop)

    assert result.status == RunStatus.STOPPED
    assert result.blocks_processed == 0


@pytest.mark.asyncio
async def test_fault_mid_height_rolls_back_to_last_committed_height(
    db_session, session_factory, audit_engine, bitcoin
):
    await _seed_peg_in(db_session, txid="T1", base_height=900)
    await _seed_peg_in(db_session, txid="T2", base_height=901)
    _spend_with_change_block(bitcoin)
    bitcoin.tip = 1001
    # At 901 the change output passes the fast path, T2 needs the block.
    bitcoin.utxos.add(("SPEND", 9))
    bitcoin.fail_on["getblock"] = lambda height: height == 901

    with pytest.raises(ChainClientError):
        await audit_engine.run()

    assert await _audit_cursor(session_factory) == 900
    spent = await _utxo(session_factory, "T1", 0)
    assert spent.unspent is False
    assert spent.last_verified_height == 900
    assert (await _utxo(session_factory, "SPEND", 9)).last_verified_height == 900
    assert (await _utxo(session_factory, "T2", 0)).last_verified_height == 900

    # The next run resumes at the failed height.
    bitcoin.fail_on.clear()
    bitcoin.utxos.add(("T2", 0))
    result = await audit_engine.run()

    assert result.start_height == 901
    assert await _audit_cursor(session_factory) == 1000


@pytest.mark.asyncio
async def test_run_is_skipped_while_another_run_holds_the_guard(db_session, session_factory, audit_engine, bitcoin):
    await _seed_peg_in(db_session)
    bitcoin.tip = 1001
    assert audit_engine.guard.try_acquire()
    try:
        result = await audit_engine.run()
    finally:
        audit_engine.guard.release()

    assert result.status == RunStatus.SKIPPED_BUSY
    assert bitcoin.calls == []
    assert await _audit_cursor(session_factory) == 899
