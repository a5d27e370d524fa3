from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
import logging
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from pegledger.api.router import api_router
from pegledger.api.v1 import health
from pegledger.config import settings
from pegledger.db.session import AsyncSessionLocal, engine
from pegledger.utils.error_codes import ERROR_MESSAGES, ErrorCode
from pegledger.utils.exceptions import PegLedgerException


logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    level = getattr(logging, str(settings.LOG_LEVEL or "INFO").upper(), logging.INFO)
    logging.getLogger("pegledger").setLevel(level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from pegledger.core.sync_loop import build_runtime, init_progress, sync_loop

    _configure_logging()

    app.state.redis = None
    app.state._bg_stop_event = asyncio.Event()
    app.state._bg_tasks = []

    await init_progress(settings, AsyncSessionLocal)

    if settings.REDIS_ENABLED:
        import redis.asyncio as redis

        client = redis.from_url(settings.REDIS_URL, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except Exception as exc:
            await client.aclose()
            raise RuntimeError("Redis enabled but unavailable") from exc

        app.state.redis = client

    runtime = build_runtime(settings, AsyncSessionLocal)
    app.state.sync_runtime = runtime

    loops = (
        (settings.PEG_SCANNER_ENABLED, runtime.peg_scanner, settings.PEG_SCANNER_INTERVAL_SECONDS),
        (settings.FEDERATION_AUDIT_ENABLED, runtime.federation_audit, settings.FEDERATION_AUDIT_INTERVAL_SECONDS),
    )
    for enabled, sync_engine, interval in loops:
        if not enabled:
            continue
        task = asyncio.create_task(
            sync_loop(
                sync_engine,
                interval_seconds=interval,
                stop_event=app.state._bg_stop_event,
                redis_client=app.state.redis,
                lock_ttl_seconds=settings.SYNC_LOCK_TTL_SECONDS,
            )
        )
        app.state._bg_tasks.append(task)
        logger.info("lifespan.sync_loop_started engine=%s interval=%s", sync_engine.guard.name, interval)

    try:
        yield
    finally:
        app.state._bg_stop_event.set()
        tasks = list(app.state._bg_tasks or [])
        if tasks:
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        app.state._bg_tasks = []

        try:
            await runtime.aclose()
        except Exception:
            logger.exception("lifespan.rpc_close_failed")
        app.state.sync_runtime = None

        client = getattr(app.state, "redis", None)
        if client is not None:
            try:
                await client.aclose()
            finally:
                app.state.redis = None

        # Ensure DB connections/threads are cleaned up (aiosqlite keeps a worker thread).
        await engine.dispose()


app = FastAPI(title="Peg Ledger", debug=settings.DEBUG, lifespan=lifespan)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    from pegledger.utils.request_id import new_request_id, request_id_var, validate_request_id

    incoming_rid = request.headers.get("X-Request-ID")
    rid = validate_request_id(incoming_rid) or new_request_id()
    token = request_id_var.set(rid)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)

    response.headers["X-Request-ID"] = rid
    return response


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    if not settings.METRICS_ENABLED:
        return await call_next(request)

    start = time.perf_counter()
    response = await call_next(request)
    elapsed_s = time.perf_counter() - start

    from pegledger.utils.metrics import HTTP_REQUEST_DURATION_SECONDS, HTTP_REQUESTS_TOTAL

    # Route template keeps label cardinality bounded; unmatched paths share one label.
    route_path = getattr(request.scope.get("route"), "path", None)
    path_label = route_path if isinstance(route_path, str) and route_path else "__unmatched__"
    method = request.method
    status = str(getattr(response, "status_code", 0))

    HTTP_REQUESTS_TOTAL.labels(method=method, path=path_label, status=status).inc()
    HTTP_REQUEST_DURATION_SECONDS.labels(method=method, path=path_label).observe(elapsed_s)
    return response


@app.exception_handler(PegLedgerException)
async def pegledger_exception_handler(request: Request, exc: PegLedgerException):
    if exc.status_code >= 500:
        logger.warning("api.error path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "code": ErrorCode.E009.value,
                "message": ERROR_MESSAGES[ErrorCode.E009],
                "details": {"errors": exc.errors()},
            }
        },
    )


app.include_router(api_router, prefix="/api/v1")
app.include_router(health.router, tags=["Health"])


if settings.METRICS_ENABLED:

    @app.get("/metrics")
    async def metrics():
        from pegledger.utils.metrics import render_metrics

        payload, content_type = render_metrics()
        return Response(content=payload, media_type=content_type)
