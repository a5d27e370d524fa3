import logging
from typing import List

from sqlalchemy import func, literal_column, select
from sqlalchemy.ext.asyncio import AsyncSession

from pegledger.chain.client import ChainClient
from pegledger.config import settings
from pegledger.core.ledger import store
from pegledger.db.models.federation_address import FederationAddress
from pegledger.db.models.federation_utxo import FederationUtxo
from pegledger.db.models.peg_event import PegEvent
from pegledger.db.models.progress import LAST_BASE_CHAIN_AUDIT_HEIGHT, LAST_SIDE_CHAIN_HEIGHT
from pegledger.schemas.reporting import (
    AddressBalance,
    AuditStatus,
    CurrentReserves,
    CurrentSupply,
    FederationUtxoItem,
    MonthlyPegs,
    MonthlyReserves,
    ProgressCursors,
)
from pegledger.utils.observability import log_duration

logger = logging.getLogger(__name__)


def is_audit_synced(
    *,
    current_height: int,
    header_height: int,
    last_audit_height: int,
    max_header_lag: int,
    max_cursor_lag: int,
) -> bool:
    return (
        header_height - current_height <= max_header_lag
        and current_height - last_audit_height <= max_cursor_lag
    )


class ReportingService:
    """Read-only projections over committed ledger rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _month_bucket(self, unix_column):
        """SQL expression rendering a unix timestamp column as 'YYYY-MM-01'.

        Format strings are inlined (not bound) so Postgres sees the same
        expression in SELECT and GROUP BY.
        """
        dialect = self.session.get_bind().dialect.name
        if dialect == "sqlite":
            return func.strftime(literal_column("'%Y-%m-01'"), unix_column, literal_column("'unixepoch'"))
        return func.to_char(func.to_timestamp(unix_column), literal_column("'YYYY-MM-01'"))

    async def progress(self) -> ProgressCursors:
        return ProgressCursors(
            last_side_chain_height=await store.get_progress(self.session, LAST_SIDE_CHAIN_HEIGHT),
            last_base_chain_audit_height=await store.get_progress(
                self.session, LAST_BASE_CHAIN_AUDIT_HEIGHT
            ),
        )

    async def current_supply(self) -> CurrentSupply:
        total = (await self.session.execute(select(func.sum(PegEvent.amount_sat)))).scalar_one_or_none()
        return CurrentSupply(
            amount=int(total or 0),
            last_side_height=await store.get_progress(self.session, LAST_SIDE_CHAIN_HEIGHT),
        )

    async def current_reserves(self) -> CurrentReserves:
        total = (
            await self.session.execute(
                select(func.sum(FederationUtxo.amount_sat)).where(FederationUtxo.unspent.is_(True))
            )
        ).scalar_one_or_none()
        return CurrentReserves(
            amount=int(total or 0),
            last_audit_height=await store.get_progress(self.session, LAST_BASE_CHAIN_AUDIT_HEIGHT),
        )

    async def audit_status(self, bitcoin: ChainClient) -> AuditStatus:
        status = await bitcoin.get_sync_status()
        last_audit = await store.get_progress(self.session, LAST_BASE_CHAIN_AUDIT_HEIGHT)
        return AuditStatus(
            current_base_height=status.current_height,
            base_header_height=status.header_height,
            last_audit_height=last_audit,
            is_synced=is_audit_synced(
                current_height=status.current_height,
                header_height=status.header_height,
                last_audit_height=last_audit,
                max_header_lag=settings.AUDIT_MAX_HEADER_LAG,
                max_cursor_lag=settings.AUDIT_MAX_CURSOR_LAG,
            ),
        )

    async def pegs_by_month(self) -> List[MonthlyPegs]:
        bucket = self._month_bucket(PegEvent.side_time).label("month")
        with log_duration(logger, "reporting.pegs_by_month"):
            rows = (
                await self.session.execute(
                    select(bucket, func.sum(PegEvent.amount_sat)).group_by(bucket).order_by(bucket)
                )
            ).all()
        return [MonthlyPegs(date=month, net_amount=int(total or 0)) for month, total in rows]

    async def reserves_by_month(self) -> List[MonthlyReserves]:
        bucket = self._month_bucket(FederationUtxo.created_time).label("month")
        with log_duration(logger, "reporting.reserves_by_month"):
            rows = (
                await self.session.execute(
                    select(bucket, func.sum(FederationUtxo.amount_sat))
                    .where(FederationUtxo.unspent.is_(True))
                    .group_by(bucket)
                    .order_by(bucket)
                )
            ).all()
        return [MonthlyReserves(date=month, amount=int(total or 0)) for month, total in rows]

    async def top_addresses(self, limit: int | None = None) -> List[AddressBalance]:
        balance = func.sum(FederationUtxo.amount_sat).label("balance")
        stmt = (
            select(FederationUtxo.address, balance, func.max(FederationUtxo.last_verified_height))
            .where(FederationUtxo.unspent.is_(True))
            .group_by(FederationUtxo.address)
            .order_by(balance.desc(), FederationUtxo.address.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = (await self.session.execute(stmt)).all()
        return [
            AddressBalance(address=address, balance=int(total or 0), last_verified_height=int(verified))
            for address, total, verified in rows
        ]

    async def federation_utxos(self) -> List[FederationUtxoItem]:
        utxos = (
            await self.session.execute(
                select(FederationUtxo)
                .where(FederationUtxo.unspent.is_(True))
                .order_by(FederationUtxo.created_time.desc(), FederationUtxo.id.desc())
            )
        ).scalars().all()
        return [
            FederationUtxoItem(
                txid=u.txid,
                output_index=u.output_index,
                address=u.address,
                amount=u.amount_sat,
                created_height=u.created_height,
                created_time=u.created_time,
            )
            for u in utxos
        ]

    async def federation_address_count(self) -> int:
        return int(
            (await self.session.execute(select(func.count()).select_from(FederationAddress))).scalar_one()
        )
