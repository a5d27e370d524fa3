from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pegledger.db.models.federation_address import FederationAddress
from pegledger.db.models.federation_utxo import FederationUtxo
from pegledger.db.models.peg_event import PegEvent
from pegledger.db.models.progress import (
    LAST_BASE_CHAIN_AUDIT_HEIGHT,
    LAST_SIDE_CHAIN_HEIGHT,
    Progress,
)
from pegledger.utils.exceptions import StoreError
from pegledger.utils.metrics import SYNC_HEIGHT

logger = logging.getLogger(__name__)


@asynccontextmanager
async def unit_of_work(session: AsyncSession, *, op: str, **fields: Any) -> AsyncIterator[AsyncSession]:
    """Commit everything executed in the block, or roll all of it back.

    Database errors surface as StoreError; any other exception (RPC failure,
    cancellation) is re-raised unchanged after the rollback.
    """
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise StoreError(
            f"Ledger unit of work {op} failed: {exc.__class__.__name__}",
            details={"op": op, **{k: str(v) for k, v in fields.items()}},
        ) from exc
    except BaseException:
        await session.rollback()
        raise


def _dialect_insert(session: AsyncSession):
    bind = session.get_bind()
    dialect_name = bind.dialect.name if bind is not None else None
    if dialect_name == "sqlite":
        return sqlite_insert
    if dialect_name in {"postgresql", "postgres"}:
        return pg_insert
    raise RuntimeError(f"Unsupported SQL dialect for ledger upserts: {dialect_name!r}")


async def insert_if_absent(
    session: AsyncSession,
    model,
    values: dict[str, Any],
    *,
    conflict_columns: Iterable[str],
) -> bool:
    """INSERT ... ON CONFLICT DO NOTHING. Returns True if a row was inserted."""
    table = model.__table__
    insert_fn = _dialect_insert(session)
    stmt = (
        insert_fn(table)
        .values(**values)
        .on_conflict_do_nothing(index_elements=[table.c[name] for name in conflict_columns])
        .returning(table.c.id)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None


async def insert_peg_event(session: AsyncSession, values: dict[str, Any]) -> bool:
    return await insert_if_absent(
        session, PegEvent, values, conflict_columns=("side_txid", "side_output_index")
    )


async def insert_federation_address(session: AsyncSession, address: str) -> bool:
    return await insert_if_absent(
        session, FederationAddress, {"address": address}, conflict_columns=("address",)
    )


async def insert_federation_utxo(session: AsyncSession, values: dict[str, Any]) -> bool:
    return await insert_if_absent(
        session, FederationUtxo, {"unspent": True, "spent_time": 0, **values},
        conflict_columns=("txid", "output_index"),
    )


async def mark_utxo_spent(
    session: AsyncSession, txid: str, output_index: int, *, height: int, spent_time: int
) -> bool:
    # Only live rows transition; a spent row is never touched again.
    result = await session.execute(
        update(FederationUtxo)
        .where(
            FederationUtxo.txid == txid,
            FederationUtxo.output_index == output_index,
            FederationUtxo.unspent.is_(True),
        )
        .values(unspent=False, spent_time=spent_time, last_verified_height=height)
    )
    return (result.rowcount or 0) > 0


async def advance_verified_height(
    session: AsyncSession, outpoints: Iterable[tuple[str, int]], *, height: int
) -> int:
    advanced = 0
    for txid, output_index in outpoints:
        result = await session.execute(
            update(FederationUtxo)
            .where(
                FederationUtxo.txid == txid,
                FederationUtxo.output_index == output_index,
                FederationUtxo.unspent.is_(True),
                FederationUtxo.last_verified_height < height,
            )
            .values(last_verified_height=height)
        )
        advanced += result.rowcount or 0
    return advanced


async def load_audit_candidates(session: AsyncSession, height: int) -> list[FederationUtxo]:
    """Unspent outputs whose state is known up to `height - 1` and must be checked at `height`."""
    return list(
        (
            await session.execute(
                select(FederationUtxo)
                .where(
                    FederationUtxo.unspent.is_(True),
                    FederationUtxo.last_verified_height == height - 1,
                )
                .order_by(FederationUtxo.id.asc())
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
    )


async def has_peg_ins(session: AsyncSession) -> bool:
    found = (
        await session.execute(select(PegEvent.id).where(PegEvent.amount_sat > 0).limit(1))
    ).scalar_one_or_none()
    return found is not None


async def ensure_progress_rows(
    session: AsyncSession, *, side_baseline: int, audit_baseline: int
) -> None:
    """Create both progress cursors at their baselines if they don't exist yet."""
    for name, value in (
        (LAST_SIDE_CHAIN_HEIGHT, side_baseline),
        (LAST_BASE_CHAIN_AUDIT_HEIGHT, audit_baseline),
    ):
        existing = await session.get(Progress, name)
        if existing is None:
            session.add(Progress(name=name, value=int(value)))
            logger.info("ledger.progress_created name=%s value=%s", name, value)
    await session.commit()


async def get_progress(session: AsyncSession, name: str, *, for_update: bool = False) -> int:
    stmt = select(Progress.value).where(Progress.name == name)
    if for_update:
        stmt = stmt.with_for_update()
    value = (await session.execute(stmt)).scalar_one_or_none()
    if value is None:
        raise StoreError(f"Progress cursor {name} is not initialized", details={"name": name})
    return int(value)


async def set_progress(session: AsyncSession, name: str, value: int) -> None:
    result = await session.execute(
        update(Progress).where(Progress.name == name).values(value=int(value))
    )
    if not result.rowcount:
        raise StoreError(f"Progress cursor {name} is not initialized", details={"name": name})
    SYNC_HEIGHT.labels(cursor=name).set(int(value))


async def min_unspent_verified_height(session: AsyncSession) -> int | None:
    value = (
        await session.execute(
            select(func.min(FederationUtxo.last_verified_height)).where(
                FederationUtxo.unspent.is_(True)
            )
        )
    ).scalar_one_or_none()
    return int(value) if value is not None else None


async def recompute_audit_cursor(session: AsyncSession, *, audited_height: int | None = None) -> int:
    """Persist the audit cursor as min(last_verified_height) over unspent outputs.

    With no unspent outputs there is nothing to pull the cursor back, so it
    stays at its current value or moves up to `audited_height`.

    The cursor row is locked before the min is read, so a writer that
    committed outputs while we waited is included in the min.
    """
    current = await get_progress(session, LAST_BASE_CHAIN_AUDIT_HEIGHT, for_update=True)
    lowest = await min_unspent_verified_height(session)
    if lowest is None:
        lowest = max(current, audited_height) if audited_height is not None else current
    await set_progress(session, LAST_BASE_CHAIN_AUDIT_HEIGHT, lowest)
    return lowest
