from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from pegledger.api import deps
from pegledger.core.reporting.service import ReportingService
from pegledger.core.sync_loop import SyncRuntime
from pegledger.schemas.common import ErrorEnvelope
from pegledger.schemas.reporting import (
    AddressBalance,
    AuditStatus,
    CurrentReserves,
    CurrentSupply,
    FederationAddressCount,
    FederationUtxoItem,
    MonthlyPegs,
    MonthlyReserves,
)

router = APIRouter(prefix="/liquid")


@router.get("/pegs", response_model=CurrentSupply)
async def current_supply(reporting: ReportingService = Depends(deps.get_reporting_service)):
    return await reporting.current_supply()


@router.get("/reserves", response_model=CurrentReserves)
async def current_reserves(reporting: ReportingService = Depends(deps.get_reporting_service)):
    return await reporting.current_reserves()


@router.get(
    "/reserves/status",
    response_model=AuditStatus,
    responses={502: {"model": ErrorEnvelope}, 503: {"model": ErrorEnvelope}},
)
async def audit_status(
    reporting: ReportingService = Depends(deps.get_reporting_service),
    runtime: SyncRuntime = Depends(deps.get_sync_runtime),
):
    """Base-chain node height vs. audit cursor. Fails with 502 if the node is unreachable."""
    return await reporting.audit_status(runtime.bitcoin)


@router.get("/pegs/month", response_model=List[MonthlyPegs])
async def pegs_by_month(reporting: ReportingService = Depends(deps.get_reporting_service)):
    return await reporting.pegs_by_month()


@router.get("/reserves/month", response_model=List[MonthlyReserves])
async def reserves_by_month(reporting: ReportingService = Depends(deps.get_reporting_service)):
    return await reporting.reserves_by_month()


@router.get("/reserves/addresses", response_model=List[AddressBalance])
async def top_addresses(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    reporting: ReportingService = Depends(deps.get_reporting_service),
):
    return await reporting.top_addresses(limit=limit)


@router.get("/reserves/utxos", response_model=List[FederationUtxoItem])
async def federation_utxos(reporting: ReportingService = Depends(deps.get_reporting_service)):
    return await reporting.federation_utxos()


@router.get("/reserves/addresses/count", response_model=FederationAddressCount)
async def federation_address_count(reporting: ReportingService = Depends(deps.get_reporting_service)):
    return FederationAddressCount(count=await reporting.federation_address_count())
