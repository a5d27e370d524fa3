import logging

from fastapi import APIRouter, Depends

from pegledger.api import deps
from pegledger.core.reporting.service import ReportingService
from pegledger.core.sync_loop import SyncRuntime
from pegledger.core.sync_result import SyncRunResult
from pegledger.schemas.common import ErrorEnvelope
from pegledger.schemas.reporting import ProgressCursors, SyncRunResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    dependencies=[Depends(deps.require_admin)],
    responses={403: {"model": ErrorEnvelope}},
)


def _to_response(result: SyncRunResult) -> SyncRunResponse:
    return SyncRunResponse(
        engine=result.engine,
        status=result.status.value,
        start_height=result.start_height,
        end_height=result.end_height,
        target_height=result.target_height,
        blocks_processed=result.blocks_processed,
    )


@router.post("/sync/pegs", response_model=SyncRunResponse)
async def sync_pegs(runtime: SyncRuntime = Depends(deps.get_sync_runtime)):
    """Run the peg scanner up to the current side-chain tip.

    Returns `skipped_busy` if a background run is in progress.
    """
    result = await runtime.peg_scanner.run()
    logger.info("admin.sync_pegs status=%s blocks=%s", result.status.value, result.blocks_processed)
    return _to_response(result)


@router.post("/sync/audit", response_model=SyncRunResponse)
async def sync_audit(runtime: SyncRuntime = Depends(deps.get_sync_runtime)):
    result = await runtime.federation_audit.run()
    logger.info("admin.sync_audit status=%s blocks=%s", result.status.value, result.blocks_processed)
    return _to_response(result)


@router.get("/progress", response_model=ProgressCursors)
async def progress(reporting: ReportingService = Depends(deps.get_reporting_service)):
    return await reporting.progress()
