"""Run one peg scan and/or federation audit pass against the configured nodes.

Usage:
    python scripts/run_sync_once.py --engine pegs
    python scripts/run_sync_once.py --engine all
"""

import argparse
import asyncio
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pegledger.config import settings
from pegledger.core.sync_loop import build_runtime, init_progress
from pegledger.db.session import AsyncSessionLocal, engine


async def main(engine_name: str) -> int:
    await init_progress(settings, AsyncSessionLocal)
    runtime = build_runtime(settings, AsyncSessionLocal)
    try:
        engines = []
        if engine_name in ("pegs", "all"):
            engines.append(runtime.peg_scanner)
        if engine_name in ("audit", "all"):
            engines.append(runtime.federation_audit)

        for sync_engine in engines:
            result = await sync_engine.run()
            print(
                f"{result.engine}: status={result.status.value} "
                f"heights={result.start_height}..{result.end_height} "
                f"target={result.target_height} blocks={result.blocks_processed}"
            )
    finally:
        await runtime.aclose()
        await engine.dispose()
    return 0


if __name__ == "__main__":
    p = argparse.ArgumentParser(description="Run one sync pass of the peg ledger engines")
    p.add_argument("--engine", choices=("pegs", "audit", "all"), default="all")
    p.add_argument("--log-level", default=settings.LOG_LEVEL)
    args = p.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    raise SystemExit(asyncio.run(main(args.engine)))
