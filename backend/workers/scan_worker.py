"""Scan worker: runs the scheduler tick, proposal expiry and execution upkeep.

Run from backend dir:
  python -m workers.scan_worker

Any number of these may run side by side; job claims are compare-and-set
updates, so each due job runs on exactly one worker per tick.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import AsyncSessionLocal, init_database
from services.invariants import check_execution_invariants
from services.promotion import run_promotion_sweep
from services.proposal_store import expire_stale_proposals
from services.reconciliation import reconcile_stale_submitting, sync_open_executions
from services.scan_scheduler import cleanup_expired_locks, default_worker_id, run_scheduler_tick

logging.basicConfig(
    level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO")),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("scan_worker")


def _trade_credentials_configured() -> bool:
    return bool(settings.EXCHANGE_TRADE_API_KEY and settings.EXCHANGE_TRADE_API_SECRET)


async def run_worker_iteration(
    worker_id: str,
    *,
    session_factory=AsyncSessionLocal,
    gateway=None,
) -> dict[str, Any]:
    """One pass: tick, expire, clear dead locks, reconcile, promote, audit."""
    summary: dict[str, Any] = {"worker_id": worker_id}

    tick = await run_scheduler_tick(session_factory, worker_id=worker_id)
    summary["claimed"] = tick["claimed"]
    summary["outcomes"] = [result.get("outcome") for result in tick["results"]]

    async with session_factory() as session:
        summary["expired_proposals"] = tick["expired_proposals"] + await expire_stale_proposals(session)
        summary["released_locks"] = await cleanup_expired_locks(session)

    if gateway is None and _trade_credentials_configured():
        from services.exchange import get_trading_gateway

        gateway = get_trading_gateway()
    if gateway is not None:
        async with session_factory() as session:
            summary["reconcile"] = await reconcile_stale_submitting(session, gateway)
        async with session_factory() as session:
            summary["sync"] = await sync_open_executions(session, gateway)

    async with session_factory() as session:
        summary["promotion"] = await run_promotion_sweep(session)

    async with session_factory() as session:
        audit = await check_execution_invariants(session)
    summary["invariant_violations"] = len(audit["violations"])
    return summary


async def run_worker_loop(
    *,
    worker_id: Optional[str] = None,
    session_factory=AsyncSessionLocal,
    gateway=None,
    max_iterations: Optional[int] = None,
) -> None:
    worker_id = worker_id or default_worker_id()
    interval = max(1, int(settings.SCHEDULER_TICK_INTERVAL_SECONDS))
    logger.info("Scan worker started (worker_id=%s, interval=%ss)", worker_id, interval)

    iterations = 0
    while True:
        try:
            summary = await run_worker_iteration(
                worker_id, session_factory=session_factory, gateway=gateway
            )
            if summary["claimed"] or summary.get("invariant_violations"):
                logger.info("Worker pass: %s", summary)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Scan worker pass failed: %s", exc)

        iterations += 1
        if max_iterations is not None and iterations >= max_iterations:
            return
        await asyncio.sleep(interval)


async def main() -> None:
    Path(_BACKEND).parent.joinpath("data").mkdir(parents=True, exist_ok=True)
    await init_database()
    logger.info("Database initialized")
    try:
        await run_worker_loop()
    except asyncio.CancelledError:
        logger.info("Scan worker shutting down")
    finally:
        from services.exchange import close_gateways

        await close_gateways()


if __name__ == "__main__":
    asyncio.run(main())
