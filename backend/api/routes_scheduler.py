"""Privileged scheduler tick, for deployments driven by an external cron."""

from fastapi import APIRouter, Depends

from api.deps import require_scheduler_secret
from services.scan_scheduler import run_scheduler_tick
from utils.logger import scheduler_logger as logger

router = APIRouter(prefix="/scheduler", tags=["Scheduler"])


@router.post("/tick", dependencies=[Depends(require_scheduler_secret)])
async def scheduler_tick():
    result = await run_scheduler_tick()
    logger.info(
        "Scheduler tick via API",
        worker_id=result["worker_id"],
        claimed=result["claimed"],
        expired_proposals=result["expired_proposals"],
    )
    return result
