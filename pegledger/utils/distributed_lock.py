from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from pegledger.utils.exceptions import ConflictException

logger = logging.getLogger(__name__)


_UNLOCK_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
else
  return 0
end
""".strip()

_EXTEND_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('expire', KEYS[1], ARGV[2])
else
  return 0
end
""".strip()


def sync_lock_key(engine: str) -> str:
    return f"pegledger:sync:{engine}"


async def _keep_alive(redis_client: Any, key: str, token: str, *, ttl_seconds: int, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            extended = await redis_client.eval(_EXTEND_LUA, 1, key, token, int(ttl_seconds))
        except Exception:
            logger.warning("sync.lock_refresh_failed key=%s", key, exc_info=True)
            continue
        if not extended:
            logger.warning("sync.lock_lost key=%s", key)
            return


@asynccontextmanager
async def redis_distributed_lock(
    redis_client: Optional[Any],
    key: str,
    *,
    ttl_seconds: int = 15,
    wait_timeout_seconds: float = 0.0,
    poll_interval_seconds: float = 0.05,
    refresh_interval_seconds: Optional[float] = None,
) -> AsyncIterator[None]:
    """Best-effort cross-replica lock around one sync run.

    If redis_client is None, this becomes a no-op.

    With refresh_interval_seconds set, the TTL is pushed forward on that
    interval for as long as the block runs, so long catch-up runs keep the
    lock.

    Raises ConflictException if the lock can't be acquired within wait_timeout_seconds.
    """
    if redis_client is None:
        yield
        return

    if ttl_seconds <= 0:
        raise ValueError("ttl_seconds must be positive")
    if wait_timeout_seconds < 0:
        raise ValueError("wait_timeout_seconds must be non-negative")
    if poll_interval_seconds <= 0:
        raise ValueError("poll_interval_seconds must be positive")
    if refresh_interval_seconds is not None and refresh_interval_seconds <= 0:
        raise ValueError("refresh_interval_seconds must be positive")

    token = secrets.token_urlsafe(16)
    deadline = time.monotonic() + wait_timeout_seconds

    acquired = False
    refresher: Optional[asyncio.Task] = None
    try:
        while True:
            ok = await redis_client.set(key, token, nx=True, ex=int(ttl_seconds))
            if ok:
                acquired = True
                break

            if time.monotonic() >= deadline:
                raise ConflictException(
                    "Sync already running on another replica",
                    details={"lock_key": key},
                )

            await asyncio.sleep(poll_interval_seconds)

        if refresh_interval_seconds is not None:
            refresher = asyncio.create_task(
                _keep_alive(
                    redis_client, key, token, ttl_seconds=ttl_seconds, interval=refresh_interval_seconds
                )
            )

        yield
    finally:
        if refresher is not None:
            refresher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await refresher
        if acquired:
            try:
                await redis_client.eval(_UNLOCK_LUA, 1, key, token)
            except Exception:
                # The lock expires on its own; don't mask the original exception.
                pass
