"""
Trading API Routes

Kill switch, proposal execution and the execution ledger.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user
from models.database import get_db_session
from services.execution_coordinator import execute_proposal
from services.execution_ledger import list_executions
from services.invariants import check_execution_invariants
from services.promotion import get_promotion_status
from services.trading_settings import read_trading_settings, set_trading_enabled

router = APIRouter(prefix="/trading", tags=["Trading"])


class TradingEnabledRequest(BaseModel):
    enabled: bool


class ExecuteRequest(BaseModel):
    proposal_id: str = Field(..., min_length=1)


@router.get("/enabled")
async def get_trading_enabled(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await read_trading_settings(session, user_id)


@router.put("/enabled")
async def update_trading_enabled(
    request: TradingEnabledRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await set_trading_enabled(session, user_id, request.enabled, updated_by=user_id)


@router.post("/execute")
async def execute(
    request: ExecuteRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Execute an approved proposal.

    Safe to retry: a repeat call reconciles by clientOrderId instead of
    placing again. Returns 202 (via the error handler) while another attempt
    is still submitting.
    """
    return await execute_proposal(session, user_id, request.proposal_id)


@router.get("/executions")
async def get_executions(
    proposal_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    executions = await list_executions(session, user_id, proposal_id=proposal_id, limit=limit)
    return {"executions": executions, "total": len(executions)}


@router.get("/promotion")
async def get_promotion(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Current level, its order ceiling and progress toward the next level."""
    return await get_promotion_status(session, user_id)


@router.get("/invariants")
async def get_invariants(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await check_execution_invariants(session, user_id)
