"""
Policy API Routes

Create, edit and activate the per-user agent policy.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user
from models.database import get_db_session
from services import policy_store

router = APIRouter(prefix="/policies", tags=["Policies"])


# ==================== REQUEST MODELS ====================


class PolicyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    config: dict[str, Any] = Field(default_factory=dict)
    activate: bool = False


class PolicyFromPresetRequest(BaseModel):
    preset_id: str
    name: Optional[str] = None
    overrides: dict[str, Any] = Field(default_factory=dict)
    activate: bool = True


class PolicyUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, max_length=120)
    config: Optional[dict[str, Any]] = None


# ==================== ENDPOINTS ====================


@router.get("")
async def list_policies(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return {"policies": await policy_store.list_policies(session, user_id)}


@router.get("/presets")
async def list_presets():
    return {"presets": policy_store.list_policy_presets()}


@router.get("/active")
async def get_active_policy(
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    policy = await policy_store.get_active_policy(session, user_id)
    if policy is None:
        raise HTTPException(status_code=404, detail="No active policy")
    return policy


@router.get("/{policy_id}")
async def get_policy(
    policy_id: str,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    policy = await policy_store.get_policy(session, user_id, policy_id)
    if policy is None:
        raise HTTPException(status_code=404, detail="Policy not found")
    return policy


@router.post("")
async def create_policy(
    request: PolicyCreateRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await policy_store.create_policy(
        session,
        user_id,
        name=request.name,
        config=request.config,
        activate=request.activate,
    )


@router.post("/from-preset")
async def create_policy_from_preset(
    request: PolicyFromPresetRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await policy_store.create_policy_from_preset(
        session,
        user_id,
        request.preset_id,
        name=request.name,
        overrides=request.overrides,
        activate=request.activate,
    )


@router.put("/{policy_id}")
async def update_policy(
    policy_id: str,
    request: PolicyUpdateRequest,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await policy_store.update_policy(
        session, user_id, policy_id, name=request.name, config=request.config
    )


@router.post("/{policy_id}/activate")
async def activate_policy(
    policy_id: str,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await policy_store.activate_policy(session, user_id, policy_id)


@router.post("/{policy_id}/deactivate")
async def deactivate_policy(
    policy_id: str,
    user_id: str = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await policy_store.deactivate_policy(session, user_id, policy_id)
