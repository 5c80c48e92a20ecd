"""
Proposal API Routes

Review queue for trade proposals: list, create, accept, modify, decline.
Accepting never places an order; execution is a separate call.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user
from models.database import get_db_session
from services import proposal_store
from services.policy_store import get_active_policy

router = APIRouter(prefix="/proposals", tags=["Proposals"])


class ProposalCreateRequest(BaseModel):
    asset: str
    side: str
    order_type: str = "market"
    order_value_eur: float
    limit_price: Optional[float] = None
    confidence: int
    rationale: dict[str, Any] = Field(default_factory=dict)


class DecisionRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=2000)


class ModifyRequest(BaseModel):
    changes: dict[str, Any] = Field(default_factory=dict)
    note: Optional[str] = Field(default=None, max_length=2000)


@router.get("")
async def list_proposals(
    status: Optional[str] = Query(default=None, description="PROPOSED, APPROVED, ..."),
    limit: int = Query(default=100, ge=1, le=500),
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    await proposal_store.expire_stale_proposals(session, user_id)
    proposals = await proposal_store.list_proposals(session, user_id, status=status, limit=limit)
    return {"proposals": proposals, "total": len(proposals)}


@router.get("/{proposal_id}")
async def get_proposal(
    proposal_id: str,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    proposal = await proposal_store.get_proposal(session, user_id, proposal_id)
    if proposal is None:
        raise HTTPException(status_code=404, detail="Proposal not found")
    return proposal


@router.get("/{proposal_id}/actions")
async def list_proposal_actions(
    proposal_id: str,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    if await proposal_store.get_proposal_row(session, user_id, proposal_id) is None:
        raise HTTPException(status_code=404, detail="Proposal not found")
    return {"actions": await proposal_store.list_proposal_actions(session, user_id, proposal_id)}


@router.post("")
async def create_proposal(
    request: ProposalCreateRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    policy = await get_active_policy(session, user_id)
    return await proposal_store.create_proposal(
        session,
        user_id,
        request.model_dump(),
        created_by="USER",
        policy=policy,
    )


@router.post("/{proposal_id}/accept")
async def accept_proposal(
    proposal_id: str,
    request: Optional[DecisionRequest] = None,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    note = request.note if request else None
    return await proposal_store.accept_proposal(session, user_id, proposal_id, note=note)


@router.post("/{proposal_id}/modify")
async def modify_proposal(
    proposal_id: str,
    request: ModifyRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    policy = await get_active_policy(session, user_id)
    return await proposal_store.modify_proposal(
        session,
        user_id,
        proposal_id,
        request.changes,
        policy=policy,
        note=request.note,
    )


@router.post("/{proposal_id}/decline")
async def decline_proposal(
    proposal_id: str,
    request: Optional[DecisionRequest] = None,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    note = request.note if request else None
    return await proposal_store.decline_proposal(session, user_id, proposal_id, note=note)
