"""
Peg ledger: pytest fixtures.

Provides:
- A fresh SQLite database per test (schema + progress rows)
- In-memory fake Liquid / Bitcoin nodes
- An HTTP client bound to the FastAPI app with those fakes wired in
"""
from __future__ import annotations

from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from pegledger.core.audit.engine import FederationAuditEngine
from pegledger.core.ledger import store
from pegledger.core.pegs.scanner import PegScanner
from pegledger.core.sync_loop import SyncRuntime
from pegledger.db.models import Base
from tests.fakes import CHANGE_ADDRESS, NATIVE_ASSET, FakeChainClient


# =============================================================================
# Database
# =============================================================================
@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'pegledger-test.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 10},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    factory = async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with factory() as session:
        await store.ensure_progress_rows(session, side_baseline=0, audit_baseline=0)
    return factory


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# =============================================================================
# Chain fakes and engines
# =============================================================================
@pytest.fixture
def liquid() -> FakeChainClient:
    return FakeChainClient("liquid")


@pytest.fixture
def bitcoin() -> FakeChainClient:
    return FakeChainClient("bitcoin")


@pytest.fixture
def scanner(session_factory, liquid, bitcoin) -> PegScanner:
    return PegScanner(session_factory, liquid, bitcoin, native_asset_id=NATIVE_ASSET)


@pytest.fixture
def audit_engine(session_factory, bitcoin) -> FederationAuditEngine:
    return FederationAuditEngine(session_factory, bitcoin, change_addresses={CHANGE_ADDRESS})


# =============================================================================
# HTTP client
# =============================================================================
@pytest_asyncio.fixture
async def client(session_factory, liquid, bitcoin, scanner, audit_engine, monkeypatch):
    from pegledger.api import deps
    from pegledger.config import settings
    from pegledger.main import app

    monkeypatch.setattr(settings, "RATE_LIMIT_ENABLED", False)

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[deps.get_db] = _get_db
    app.state.sync_runtime = SyncRuntime(
        liquid=liquid, bitcoin=bitcoin, peg_scanner=scanner, federation_audit=audit_engine
    )
    app.state.redis = None

    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c
    finally:
        app.dependency_overrides.clear()
        app.state.sync_runtime = None


@pytest.fixture
def admin_headers() -> dict[str, str]:
    from pegledger.config import settings

    return {"X-Admin-Token": settings.ADMIN_TOKEN}
