import asyncio
import time
from typing import AsyncGenerator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from pegledger.config import settings
from pegledger.core.reporting.service import ReportingService
from pegledger.core.sync_loop import SyncRuntime
from pegledger.db.session import get_db_session
from pegledger.utils.error_codes import ErrorCode
from pegledger.utils.exceptions import ForbiddenException, PegLedgerException, TooManyRequestsException


_rate_limit_lock = asyncio.Lock()
_rate_limit_counters: dict[tuple[int, str], int] = {}


async def rate_limit(request: Request) -> None:
    if not settings.RATE_LIMIT_ENABLED:
        return

    client_host = (request.client.host if request.client else None) or "unknown"
    window_seconds = max(1, int(settings.RATE_LIMIT_WINDOW_SECONDS))
    limit = max(1, int(settings.RATE_LIMIT_REQUESTS_PER_WINDOW))

    redis_client = getattr(getattr(request.app, "state", None), "redis", None)
    if settings.REDIS_ENABLED and redis_client is not None:
        bucket = int(time.time() // window_seconds)
        key = f"pegledger:rl:{client_host}:{bucket}"

        current = await redis_client.incr(key)
        if current == 1:
            await redis_client.expire(key, window_seconds + 1)
    else:
        bucket = int(time.monotonic() // window_seconds)
        async with _rate_limit_lock:
            current = _rate_limit_counters.get((bucket, client_host), 0) + 1
            _rate_limit_counters[(bucket, client_host)] = current
            _rate_limit_counters.pop((bucket - 1, client_host), None)

    if current > limit:
        raise TooManyRequestsException(details={"window_seconds": window_seconds, "limit": limit})


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_db_session():
        yield session


async def get_reporting_service(db: AsyncSession = Depends(get_db)) -> ReportingService:
    return ReportingService(db)


async def get_sync_runtime(request: Request) -> SyncRuntime:
    runtime = getattr(request.app.state, "sync_runtime", None)
    if runtime is None:
        raise PegLedgerException(
            "Sync runtime is not initialized", code=ErrorCode.E003, status_code=503
        )
    return runtime


async def require_admin(
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
) -> None:
    if x_admin_token is None or x_admin_token != settings.ADMIN_TOKEN:
        raise ForbiddenException("Admin token required")
