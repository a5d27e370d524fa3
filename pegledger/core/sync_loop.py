from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pegledger.chain.rpc import JsonRpcChainClient, build_bitcoin_client, build_liquid_client
from pegledger.core.audit.engine import FederationAuditEngine
from pegledger.core.ledger import store
from pegledger.core.pegs.scanner import PegScanner
from pegledger.core.sync_result import SyncRunResult
from pegledger.utils.distributed_lock import redis_distributed_lock, sync_lock_key
from pegledger.utils.exceptions import ConflictException
from pegledger.utils.metrics import SYNC_EVENTS_TOTAL

logger = logging.getLogger(__name__)

Engine = Union[PegScanner, FederationAuditEngine]


@dataclass
class SyncRuntime:
    liquid: Any
    bitcoin: Any
    peg_scanner: PegScanner
    federation_audit: FederationAuditEngine

    async def aclose(self) -> None:
        for client in (self.liquid, self.bitcoin):
            if isinstance(client, JsonRpcChainClient):
                await client.aclose()


def build_runtime(settings, session_factory: async_sessionmaker[AsyncSession]) -> SyncRuntime:
    liquid = build_liquid_client(settings)
    bitcoin = build_bitcoin_client(settings)
    return SyncRuntime(
        liquid=liquid,
        bitcoin=bitcoin,
        peg_scanner=PegScanner(
            session_factory,
            liquid,
            bitcoin,
            native_asset_id=settings.LIQUID_NATIVE_ASSET_ID,
        ),
        federation_audit=FederationAuditEngine(
            session_factory,
            bitcoin,
            change_addresses=settings.federation_change_addresses,
            confirmation_offset=settings.AUDIT_CONFIRMATION_OFFSET,
            fast_path_window=settings.AUDIT_FAST_PATH_WINDOW,
            max_header_lag=settings.AUDIT_MAX_HEADER_LAG,
        ),
    )


async def init_progress(settings, session_factory: async_sessionmaker[AsyncSession]) -> None:
    async with session_factory() as session:
        await store.ensure_progress_rows(
            session,
            side_baseline=settings.PEG_SCANNER_START_HEIGHT,
            audit_baseline=settings.AUDIT_START_HEIGHT,
        )


def _engine_name(engine: Engine) -> str:
    return engine.guard.name


async def run_engine_once(
    engine: Engine,
    *,
    reason: str,
    redis_client: Optional[Any] = None,
    lock_ttl_seconds: int = 60,
    stop_event: Optional[asyncio.Event] = None,
) -> Optional[SyncRunResult]:
    """Run one engine pass from a background loop.

    Errors are logged, never raised: the next tick resumes from the last
    committed cursor.
    """
    name = _engine_name(engine)
    try:
        async with redis_distributed_lock(
            redis_client,
            sync_lock_key(name),
            ttl_seconds=lock_ttl_seconds,
            wait_timeout_seconds=0.0,
            refresh_interval_seconds=max(1.0, lock_ttl_seconds / 3),
        ):
            result = await engine.run(stop_event=stop_event)
    except ConflictException:
        SYNC_EVENTS_TOTAL.labels(engine=name, result="skipped_locked").inc()
        logger.debug("sync.skipped_locked engine=%s reason=%s", name, reason)
        return None
    except Exception:
        logger.exception("sync.run_failed engine=%s reason=%s", name, reason)
        return None

    if result.did_work:
        logger.info(
            "sync.run_done engine=%s reason=%s status=%s heights=%s..%s target=%s",
            name, reason, result.status.value, result.start_height, result.end_height, result.target_height,
        )
    return result


async def sync_loop(
    engine: Engine,
    *,
    interval_seconds: int,
    stop_event: asyncio.Event,
    redis_client: Optional[Any] = None,
    lock_ttl_seconds: int = 0,
) -> None:
    interval = max(1, int(interval_seconds or 60))
    if lock_ttl_seconds <= 0:
        lock_ttl_seconds = max(30, interval)

    # Run once at startup.
    await run_engine_once(
        engine,
        reason="startup",
        redis_client=redis_client,
        lock_ttl_seconds=lock_ttl_seconds,
        stop_event=stop_event,
    )

    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass

        await run_engine_once(
            engine,
            reason="periodic",
            redis_client=redis_client,
            lock_ttl_seconds=lock_ttl_seconds,
            stop_event=stop_event,
        )
