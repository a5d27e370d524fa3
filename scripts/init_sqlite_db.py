import asyncio
import os
import sys

# Add repo root to import path (so `import pegledger` works when run as a script)
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pegledger.config import settings
from pegledger.core.sync_loop import init_progress
from pegledger.db.models import Base  # noqa: F401  (ensures models are registered)
from pegledger.db.session import AsyncSessionLocal, engine


async def init_db() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await init_progress(settings, AsyncSessionLocal)
    await engine.dispose()


if __name__ == "__main__":
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    asyncio.run(init_db())
