"""Scan job status and control for the calling user."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user
from models.database import get_db_session
from services import scan_scheduler

router = APIRouter(prefix="/scan", tags=["Scan"])


@router.get("/status")
async def get_scan_status(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await scan_scheduler.get_scan_status(session, user_id)


@router.post("/pause")
async def pause_scan(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await scan_scheduler.pause_scan(session, user_id)


@router.post("/resume")
async def resume_scan(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await scan_scheduler.resume_scan(session, user_id)


@router.post("/run-now")
async def run_scan_now(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await scan_scheduler.request_immediate_scan(session, user_id)
